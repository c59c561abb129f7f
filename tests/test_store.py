from __future__ import annotations

import pytest

from advent_gifts.models import (
    ExecutionRecord,
    ExecutionState,
    ExecutionStatus,
    HolderBalance,
    HourlyDistributionRow,
    LedgerTransaction,
    PayoutState,
)
from advent_gifts.project_constants import U64_MAX
from advent_gifts.store import GiftStore

from conftest import utc


class TestInitialize:
    def test_creates_parent_dir_and_is_idempotent(self, tmp_path) -> None:
        s = GiftStore(str(tmp_path / "nested" / "dir" / "gifts.db"))
        s.initialize()
        s.initialize()
        assert (tmp_path / "nested" / "dir" / "gifts.db").exists()


class TestDailyPayoutAnchor:
    def test_only_one_claim_wins(self, store) -> None:
        assert store.claim_daily_payout(1, "exec-a", "proportional_holders", {"winners": []})
        assert not store.claim_daily_payout(1, "exec-b", "proportional_holders", {"winners": []})
        assert store.get_daily_payout(1).execution_id == "exec-a"

    def test_failed_submit_can_be_taken_over(self, store) -> None:
        store.claim_daily_payout(2, "exec-a", "top_buyers_airdrop", {})
        assert store.mark_daily_payout(2, "exec-a", PayoutState.SUBMIT_FAILED)
        assert store.claim_daily_payout(2, "exec-b", "top_buyers_airdrop", {"n": 1})

        row = store.get_daily_payout(2)
        assert row.execution_id == "exec-b"
        assert row.state is PayoutState.CLAIMED
        assert row.result == {"n": 1}

    def test_submitted_payout_cannot_be_taken_over(self, store) -> None:
        store.claim_daily_payout(3, "exec-a", "deterministic_random", {})
        store.mark_daily_payout(3, "exec-a", PayoutState.SUBMITTED, ["sig1", "sig2"])
        assert not store.claim_daily_payout(3, "exec-b", "deterministic_random", {})

        row = store.get_daily_payout(3)
        assert row.state is PayoutState.SUBMITTED
        assert row.receipts == ("sig1", "sig2")

    def test_mark_requires_owner(self, store) -> None:
        store.claim_daily_payout(4, "exec-a", "full_donation_to_ngo", {})
        assert not store.mark_daily_payout(4, "exec-b", PayoutState.RECORDED)

    def test_large_amounts_survive(self, store) -> None:
        result = {"total_distributed": str(U64_MAX)}
        store.claim_daily_payout(5, "e", "last_second_hour", result)
        assert int(store.get_daily_payout(5).result["total_distributed"]) == U64_MAX


class TestHourlyAnchor:
    def _row(self, wallet="A", trace="t1"):
        return HourlyDistributionRow(day=1, hour=10, wallet=wallet, amount=100, block_entropy="ee", trace_id=trace)

    def test_one_row_per_hour(self, store) -> None:
        assert store.insert_hourly_row(self._row())
        assert not store.insert_hourly_row(self._row("B", "t2"))
        assert [r.wallet for r in store.hourly_rows(1)] == ["A"]

    def test_receipt_attached_once(self, store) -> None:
        store.insert_hourly_row(self._row())
        store.attach_hourly_receipt(1, 10, "sig-1", utc(2025, 12, 1, 11, 1))
        store.attach_hourly_receipt(1, 10, "sig-2", utc(2025, 12, 1, 11, 2))
        row = store.get_hourly_row(1, 10)
        assert row.tx_signature == "sig-1"
        assert row.distributed_at == utc(2025, 12, 1, 11, 1)

    def test_rows_listing(self, store) -> None:
        store.insert_hourly_row(self._row())
        store.insert_hourly_row(HourlyDistributionRow(2, 0, "C", 5, "ff", "t3"))
        assert [(r.day, r.hour) for r in store.hourly_rows()] == [(1, 10), (2, 0)]
        assert store.get_hourly_row(3, 0) is None


class TestLedgerData:
    def test_holder_snapshot_is_write_once(self, store) -> None:
        first = store.ensure_holder_snapshot(1, [HolderBalance("B", 2), HolderBalance("A", U64_MAX)])
        second = store.ensure_holder_snapshot(1, [HolderBalance("Z", 9)])
        assert first == second == (HolderBalance("A", U64_MAX), HolderBalance("B", 2))
        assert store.get_holder_snapshot(2) is None

    def test_transactions_keep_microseconds_and_order(self, store) -> None:
        txs = [
            LedgerTransaction("s2", utc(2025, 12, 1, 23, 59, 59, 999_000), "pool", "A", U64_MAX, "buy"),
            LedgerTransaction("s1", utc(2025, 12, 1, 23, 0, 0, 1), "B", "pool", 5, "sell"),
            LedgerTransaction("s3", utc(2025, 12, 2, 0, 0, 0), "pool", "C", 1, "buy"),
        ]
        assert store.insert_transactions(1, txs[:2]) == 2
        assert store.insert_transactions(1, txs[:2]) == 0
        store.insert_transactions(2, txs[2:])

        day1 = store.get_transactions(1)
        assert day1 == [txs[1], txs[0]]

        window = store.get_transactions_between(utc(2025, 12, 1, 23), utc(2025, 12, 2))
        assert [t.signature for t in window] == ["s1", "s2"]

    def test_day_fees_upsert(self, store) -> None:
        assert store.get_day_fees(1) is None
        store.set_day_fees(1, 10)
        store.set_day_fees(1, U64_MAX)
        assert store.get_day_fees(1) == U64_MAX

    def test_entropy_is_write_once(self, store) -> None:
        assert store.remember_entropy("day:3", "aaaa", slot=5) == "aaaa"
        assert store.remember_entropy("day:3", "bbbb", slot=6) == "aaaa"
        assert store.get_entropy("day:4") is None

    def test_vanished_write_once_rows_raise(self, store, monkeypatch) -> None:
        monkeypatch.setattr(store, "get_entropy", lambda key: None)
        monkeypatch.setattr(store, "get_holder_snapshot", lambda day: None)
        with pytest.raises(RuntimeError):
            store.remember_entropy("day:3", "aaaa")
        with pytest.raises(RuntimeError):
            store.ensure_holder_snapshot(1, [HolderBalance("A", 1)])


class TestExecutionStatus:
    def test_latest_version_wins(self, store) -> None:
        store.append_status(ExecutionStatus(1, ExecutionState.RUNNING, 1))
        store.append_status(ExecutionStatus(1, ExecutionState.RETRYING, 1, error="boom"))
        store.append_status(ExecutionStatus(1, ExecutionState.COMPLETED, 2, last_attempt=utc(2025, 12, 2, 0, 5)))
        store.append_status(ExecutionStatus(2, ExecutionState.FAILED, 3))

        assert store.get_status(1).state is ExecutionState.COMPLETED
        assert store.get_status(1).last_attempt == utc(2025, 12, 2, 0, 5)
        assert [s.state for s in store.status_history(1)] == [
            ExecutionState.RUNNING,
            ExecutionState.RETRYING,
            ExecutionState.COMPLETED,
        ]
        assert [(s.day, s.state) for s in store.all_statuses()] == [
            (1, ExecutionState.COMPLETED),
            (2, ExecutionState.FAILED),
        ]
        assert store.get_status(3) is None

    def test_execution_completes_once(self, store) -> None:
        store.insert_execution(ExecutionRecord("e1", 1, "proportional_holders", utc(2025, 12, 2), "running", summary={"a": 1}))
        store.complete_execution("e1", "completed", utc(2025, 12, 2, 0, 1), {"b": 2})
        store.complete_execution("e1", "failed", utc(2025, 12, 2, 0, 2), {"c": 3})

        record = store.get_execution("e1")
        assert record.status == "completed"
        assert record.end_time == utc(2025, 12, 2, 0, 1)
        assert record.summary == {"a": 1, "b": 2}


class TestAudit:
    def test_newest_first_and_filter(self, store) -> None:
        store.append_audit("reveal_gift", {"day": 1})
        store.append_audit("daily_gift_executed", {"day": 1}, resource_type="day", resource_id="1")
        store.append_audit("reveal_gift", {"day": 2}, actor="operator")

        entries = store.audit_entries()
        assert [e.payload["day"] for e in entries] == [2, 1, 1]
        assert entries[0].actor == "operator"
        assert [e.payload["day"] for e in store.audit_entries(action="reveal_gift")] == [2, 1]
        assert len(store.audit_entries(limit=1)) == 1
