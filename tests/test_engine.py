from __future__ import annotations

from datetime import date

import pytest

from advent_gifts.engine import GiftEngine
from advent_gifts.errors import AmountOverflowError, ValidationError
from advent_gifts.models import GiftSpecification, HolderBalance, LedgerSnapshot, LedgerTransaction, Variant
from advent_gifts.project_constants import U64_MAX

from conftest import utc

EXCLUDED = {"Treasury", "Dev"}


def _snapshot(day):
    d = date(2025, 12, day)
    txs = (
        LedgerTransaction("t1", utc(2025, 12, day, 23, 59, 59), "pool", "Treasury", 900, "buy"),
        LedgerTransaction("t2", utc(2025, 12, day, 23, 59, 58), "pool", "A", 500, "buy"),
        LedgerTransaction("t3", utc(2025, 12, day, 23, 59, 57), "pool", "B", 300, "buy"),
        LedgerTransaction("t4", utc(2025, 12, day, 23, 10), "Dev", "pool", 50, "sell"),
        LedgerTransaction("t5", utc(2025, 12, day, 23, 20), "pool", "A", 10, "buy"),
    )
    holders = (
        HolderBalance("Treasury", 10**12),
        HolderBalance("Dev", 10**9),
        HolderBalance("A", 1_000),
        HolderBalance("B", 3_000),
        HolderBalance("C", 500),
    )
    return LedgerSnapshot(day=day, date=d, transactions=txs, holder_balances=holders)


SPECS = [
    {"day": 1, "type": "proportional_holders", "params": {}},
    {"day": 2, "type": "top_buyers_airdrop", "params": {"top_n": 5}},
    {"day": 3, "type": "deterministic_random", "params": {"winner_count": 5}},
    {"day": 4, "type": "full_donation_to_ngo", "params": {"ngo_wallet": "Ngo"}},
    {"day": 5, "type": "last_second_hour", "params": {"winner_count": 5}},
    {"day": 6, "type": "most_active_trader", "params": {}},
]


class TestGiftEngine:
    @pytest.mark.parametrize("entry", SPECS, ids=[s["type"] for s in SPECS])
    def test_excluded_wallets_never_win(self, entry) -> None:
        engine = GiftEngine(EXCLUDED, salt="salt")
        spec = GiftSpecification.from_entry(entry)
        result = engine.execute(spec, _snapshot(spec.day), 10_000_000, entropy_hex="abcd1234")
        assert result.winners
        assert not {w.wallet for w in result.winners} & EXCLUDED

    @pytest.mark.parametrize("entry", SPECS, ids=[s["type"] for s in SPECS])
    def test_total_never_exceeds_pool(self, entry) -> None:
        engine = GiftEngine(EXCLUDED, salt="salt")
        spec = GiftSpecification.from_entry(entry)
        result = engine.execute(spec, _snapshot(spec.day), 10_000_007, entropy_hex="abcd1234")
        assert result.total_distributed == sum(w.amount for w in result.winners)
        assert result.total_distributed <= 10_000_007

    @pytest.mark.parametrize("entry", SPECS, ids=[s["type"] for s in SPECS])
    def test_same_inputs_same_result(self, entry) -> None:
        spec = GiftSpecification.from_entry(entry)
        a = GiftEngine(EXCLUDED, "salt").execute(spec, _snapshot(spec.day), 1_000_000, "abcd1234")
        b = GiftEngine(EXCLUDED, "salt").execute(spec, _snapshot(spec.day), 1_000_000, "abcd1234")
        assert a == b

    def test_day_mismatch(self) -> None:
        spec = GiftSpecification.from_entry(SPECS[0])
        with pytest.raises(ValidationError):
            GiftEngine().execute(spec, _snapshot(2), 100)

    def test_entropy_required_for_random(self) -> None:
        spec = GiftSpecification.from_entry(SPECS[2])
        assert GiftEngine.requires_entropy(spec)
        with pytest.raises(ValidationError):
            GiftEngine().execute(spec, _snapshot(3), 100)

    def test_entropy_ignored_elsewhere(self) -> None:
        spec = GiftSpecification.from_entry(SPECS[0])
        assert not GiftEngine.requires_entropy(spec)
        a = GiftEngine().execute(spec, _snapshot(1), 100, entropy_hex="aa")
        b = GiftEngine().execute(spec, _snapshot(1), 100, entropy_hex="bb")
        assert a == b

    def test_pool_must_be_u64(self) -> None:
        spec = GiftSpecification.from_entry(SPECS[0])
        with pytest.raises(AmountOverflowError):
            GiftEngine().execute(spec, _snapshot(1), U64_MAX + 1)

    def test_ngo_wallet_on_exclusion_list(self) -> None:
        spec = GiftSpecification.from_entry({"day": 4, "type": "full_donation_to_ngo", "params": {"ngo_wallet": "Dev"}})
        with pytest.raises(ValidationError):
            GiftEngine(EXCLUDED).execute(spec, _snapshot(4), 100)


class TestVariantNames:
    def test_supported_variants(self) -> None:
        assert set(GiftEngine.supported_variants()) == {v.value for v in Variant}
        assert len(GiftEngine.supported_variants()) == 6

    def test_alias(self) -> None:
        spec = GiftSpecification.from_entry({"day": 4, "type": "ngo_donation", "params": {"ngo_wallet": "N"}})
        assert spec.variant is Variant.NGO_DONATION

    def test_unknown_type(self) -> None:
        with pytest.raises(ValidationError):
            GiftSpecification.from_entry({"day": 1, "type": "lottery", "params": {}})

    def test_invalid_day(self) -> None:
        with pytest.raises(ValidationError):
            GiftSpecification.from_entry({"day": 25, "type": "proportional_holders", "params": {}})
