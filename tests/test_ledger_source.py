from __future__ import annotations

import asyncio
import threading

import pytest

from advent_gifts.errors import TransientExternalError
from advent_gifts.ledger_source import RpcLedgerSource
from advent_gifts.models import LedgerTransaction
from advent_gifts.rpc import RpcClient
from advent_gifts.token_accounts import TOKEN_PROGRAM_ID

from conftest import ChainSimulator, account_b64, owner_name, track_store_threads, utc


def _run(sim, store, calendar, fn, mint="Mint"):
    async def go():
        async with RpcClient("https://rpc.test", transport=sim.transport()) as rpc:
            source = RpcLedgerSource(rpc, store, calendar, mint, program_ids=(TOKEN_PROGRAM_ID,))
            return await fn(source)

    return asyncio.run(go())


class TestHolderSnapshot:
    def test_scanned_once_then_served_from_store(self, store, calendar) -> None:
        sim = ChainSimulator()
        sim.accounts = [account_b64(1, 100), account_b64(2, 200), account_b64(1, 50)]
        first = _run(sim, store, calendar, lambda s: s.fetch_holder_snapshot(1))
        assert [(h.wallet, h.balance) for h in first] == sorted([(owner_name(1), 150), (owner_name(2), 200)])

        sim.accounts = [account_b64(3, 999)]
        second = _run(sim, store, calendar, lambda s: s.fetch_holder_snapshot(1))
        assert second == first
        assert [r["method"] for r in sim.requests] == ["getProgramAccounts"]

    def test_requires_mint(self, store, calendar) -> None:
        with pytest.raises(TransientExternalError):
            _run(ChainSimulator(), store, calendar, lambda s: s.fetch_holder_snapshot(1), mint="")


class TestEntropy:
    def test_last_blockhash_of_day_is_remembered(self, store, calendar) -> None:
        end_ts = int(calendar.day_window(1)[1].timestamp())
        sim = ChainSimulator(base_time=end_ts - 3000)
        expected_slot = sim.expected_last_slot_before(end_ts)

        entropy = _run(sim, store, calendar, lambda s: s.fetch_entropy(1))
        assert entropy == f"Hash{expected_slot}"
        assert store.get_entropy("day:1") == entropy

        sim.requests.clear()
        again = _run(sim, store, calendar, lambda s: s.fetch_entropy(1))
        assert again == entropy
        assert sim.requests == []

    def test_hour_entropy_has_its_own_key(self, store, calendar) -> None:
        end_ts = int(calendar.hour_window(1, 10)[1].timestamp())
        sim = ChainSimulator(base_time=end_ts - 3000)
        entropy = _run(sim, store, calendar, lambda s: s.fetch_hour_entropy(1, 10))
        assert store.get_entropy("day:1:hour:10") == entropy
        assert store.get_entropy("day:1") is None

    def test_future_cutoff_is_transient(self, store, calendar) -> None:
        sim = ChainSimulator(base_time=0)
        with pytest.raises(TransientExternalError):
            _run(sim, store, calendar, lambda s: s.fetch_entropy(1))
        assert store.get_entropy("day:1") is None


class TestStoredLedgerData:
    def test_transactions_and_fees(self, store, calendar) -> None:
        tx = LedgerTransaction("s1", utc(2025, 12, 1, 5), "pool", "A", 10, "buy")
        store.insert_transactions(1, [tx])
        assert _run(ChainSimulator(), store, calendar, lambda s: s.fetch_transactions(1)) == [tx]

        with pytest.raises(TransientExternalError):
            _run(ChainSimulator(), store, calendar, lambda s: s.fetch_day_fees(1))
        store.set_day_fees(1, 42)
        assert _run(ChainSimulator(), store, calendar, lambda s: s.fetch_day_fees(1)) == 42

    def test_store_reads_stay_off_the_event_loop(self, store, calendar, monkeypatch) -> None:
        store.set_day_fees(1, 7)
        store.remember_entropy("day:1", "cafe")
        names = ("get_transactions", "get_day_fees", "get_entropy")
        seen = track_store_threads(monkeypatch, store, names)

        async def all_reads(source):
            await source.fetch_transactions(1)
            await source.fetch_day_fees(1)
            return await source.fetch_entropy(1)

        assert _run(ChainSimulator(), store, calendar, all_reads) == "cafe"
        assert set(seen) == set(names)
        assert threading.get_ident() not in seen.values()
