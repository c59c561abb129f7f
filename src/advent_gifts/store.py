"""SQLite persistence for the gift pipeline.

A new connection is opened per call (WAL mode, busy timeout, Row factory),
so the store can be shared between the daily and hourly tasks and across
processes. Methods are synchronous; the async orchestration layer runs them
in the default executor.

Amounts are stored as TEXT: u64 values do not fit SQLite's signed INTEGER.
The two idempotency anchors (``daily_payout.day`` and
``hourly_airdrop(day, hour)``) are UNIQUE constraints written with
conditional inserts.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import (
    AuditEntry,
    DailyPayoutRow,
    ExecutionRecord,
    ExecutionState,
    ExecutionStatus,
    GiftSpecification,
    HolderBalance,
    HourlyDistributionRow,
    LedgerTransaction,
    PayoutState,
    StepEntry,
)

log = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS gift_spec (
        day INTEGER PRIMARY KEY,
        type TEXT NOT NULL,
        entry_json TEXT NOT NULL,
        salt TEXT NOT NULL,
        leaf TEXT NOT NULL,
        proof_json TEXT NOT NULL,
        commitment_hash TEXT NOT NULL,
        revealed_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS holder_snapshot (
        day INTEGER PRIMARY KEY,
        balances_json TEXT NOT NULL,
        holder_count INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tx_raw (
        signature TEXT PRIMARY KEY,
        day INTEGER NOT NULL,
        block_time_us INTEGER NOT NULL,
        from_wallet TEXT NOT NULL,
        to_wallet TEXT,
        amount TEXT NOT NULL,
        kind TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tx_raw_day ON tx_raw(day, block_time_us)",
    """
    CREATE TABLE IF NOT EXISTS ledger_entropy (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        slot INTEGER,
        recorded_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS day_fees (
        day INTEGER PRIMARY KEY,
        amount TEXT NOT NULL,
        recorded_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS execution_status (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        day INTEGER NOT NULL,
        state TEXT NOT NULL,
        attempts INTEGER NOT NULL,
        last_attempt TEXT,
        error TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_execution_status_day ON execution_status(day, id)",
    """
    CREATE TABLE IF NOT EXISTS execution_summary (
        execution_id TEXT PRIMARY KEY,
        day INTEGER NOT NULL,
        variant TEXT NOT NULL,
        start_time TEXT NOT NULL,
        end_time TEXT,
        status TEXT NOT NULL,
        summary_json TEXT NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS execution_step (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        execution_id TEXT NOT NULL,
        step_number INTEGER NOT NULL,
        step_name TEXT NOT NULL,
        message TEXT NOT NULL,
        level TEXT NOT NULL,
        data_json TEXT NOT NULL,
        ts TEXT NOT NULL,
        UNIQUE(execution_id, step_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_payout (
        day INTEGER PRIMARY KEY,
        execution_id TEXT NOT NULL,
        variant TEXT NOT NULL,
        result_json TEXT NOT NULL,
        state TEXT NOT NULL,
        receipts_json TEXT NOT NULL DEFAULT '[]',
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hourly_airdrop (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        day INTEGER NOT NULL,
        hour INTEGER NOT NULL,
        wallet TEXT NOT NULL,
        amount TEXT NOT NULL,
        block_entropy TEXT NOT NULL,
        trace_id TEXT NOT NULL,
        tx_signature TEXT,
        distributed_at TEXT,
        UNIQUE(day, hour)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ts TEXT NOT NULL,
        actor TEXT NOT NULL,
        action TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        resource_type TEXT,
        resource_id TEXT
    )
    """,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _to_us(dt: datetime) -> int:
    return (dt - _EPOCH) // timedelta(microseconds=1)


def _from_us(us: int) -> datetime:
    return _EPOCH + timedelta(microseconds=us)


def _dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


class GiftStore:
    """SQLite-backed repositories for specs, snapshots, executions and anchors."""

    def __init__(self, db_path: str, busy_timeout_ms: int = 30_000) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout_ms / 1000)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        parent = Path(self.db_path).parent
        parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            with conn:
                for stmt in SCHEMA:
                    conn.execute(stmt)
        finally:
            conn.close()
        log.debug("Store initialized at %s", self.db_path)

    def _write(self, sql: str, params: Sequence[Any] = ()) -> int:
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute(sql, params)
                return cur.rowcount
        finally:
            conn.close()

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchone()
        finally:
            conn.close()

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    # ── Gift specifications ──────────────────────────────────

    def insert_gift_spec(self, spec: GiftSpecification, revealed_at: Optional[datetime] = None) -> bool:
        """Write-once per day. Returns False when the day is already revealed."""
        inserted = self._write(
            "INSERT OR IGNORE INTO gift_spec "
            "(day, type, entry_json, salt, leaf, proof_json, commitment_hash, revealed_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                spec.day,
                spec.variant.value,
                json.dumps(spec.entry(), ensure_ascii=False),
                spec.salt,
                spec.leaf,
                json.dumps(list(spec.proof)),
                spec.commitment_hash,
                _iso(revealed_at or _utcnow()),
            ),
        )
        return inserted == 1

    def get_gift_spec(self, day: int) -> Optional[GiftSpecification]:
        row = self._fetchone("SELECT * FROM gift_spec WHERE day = ?", (day,))
        if row is None:
            return None
        return GiftSpecification.from_entry(
            json.loads(row["entry_json"]),
            salt=row["salt"],
            leaf=row["leaf"],
            proof=json.loads(row["proof_json"]),
            commitment_hash=row["commitment_hash"],
        )

    def revealed_days(self) -> List[int]:
        return [r["day"] for r in self._fetchall("SELECT day FROM gift_spec ORDER BY day")]

    # ── Ledger data ──────────────────────────────────────────

    def ensure_holder_snapshot(
        self, day: int, balances: Iterable[HolderBalance], created_at: Optional[datetime] = None
    ) -> Tuple[HolderBalance, ...]:
        """Store the snapshot if none exists, then return whatever is stored."""
        ordered = sorted(balances, key=lambda h: h.wallet)
        inserted = self._write(
            "INSERT OR IGNORE INTO holder_snapshot (day, balances_json, holder_count, created_at) "
            "VALUES (?, ?, ?, ?)",
            (
                day,
                _dumps([[h.wallet, str(h.balance)] for h in ordered]),
                len(ordered),
                _iso(created_at or _utcnow()),
            ),
        )
        if inserted:
            log.info("Day %d: holder snapshot stored (%d holders)", day, len(ordered))
        stored = self.get_holder_snapshot(day)
        if stored is None:
            raise RuntimeError(f"Day {day}: holder snapshot missing right after insert")
        return stored

    def get_holder_snapshot(self, day: int) -> Optional[Tuple[HolderBalance, ...]]:
        row = self._fetchone("SELECT balances_json FROM holder_snapshot WHERE day = ?", (day,))
        if row is None:
            return None
        return tuple(HolderBalance(wallet=w, balance=int(b)) for w, b in json.loads(row["balances_json"]))

    def insert_transactions(self, day: int, transactions: Iterable[LedgerTransaction]) -> int:
        """Record normalized transactions. Known signatures are ignored."""
        rows = [
            (tx.signature, day, _to_us(tx.block_time), tx.from_wallet, tx.to_wallet, str(tx.amount), tx.kind)
            for tx in transactions
        ]
        conn = self._connect()
        try:
            with conn:
                before = conn.total_changes
                conn.executemany(
                    "INSERT OR IGNORE INTO tx_raw "
                    "(signature, day, block_time_us, from_wallet, to_wallet, amount, kind) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    rows,
                )
                return conn.total_changes - before
        finally:
            conn.close()

    @staticmethod
    def _tx_from_row(row: sqlite3.Row) -> LedgerTransaction:
        return LedgerTransaction(
            signature=row["signature"],
            block_time=_from_us(row["block_time_us"]),
            from_wallet=row["from_wallet"],
            to_wallet=row["to_wallet"],
            amount=int(row["amount"]),
            kind=row["kind"],
        )

    def get_transactions(self, day: int) -> List[LedgerTransaction]:
        rows = self._fetchall(
            "SELECT * FROM tx_raw WHERE day = ? ORDER BY block_time_us, signature", (day,)
        )
        return [self._tx_from_row(r) for r in rows]

    def get_transactions_between(self, start: datetime, end: datetime) -> List[LedgerTransaction]:
        """Transactions with start <= block_time < end."""
        rows = self._fetchall(
            "SELECT * FROM tx_raw WHERE block_time_us >= ? AND block_time_us < ? "
            "ORDER BY block_time_us, signature",
            (_to_us(start), _to_us(end)),
        )
        return [self._tx_from_row(r) for r in rows]

    def set_day_fees(self, day: int, amount: int) -> None:
        self._write(
            "INSERT INTO day_fees (day, amount, recorded_at) VALUES (?, ?, ?) "
            "ON CONFLICT(day) DO UPDATE SET amount = excluded.amount, recorded_at = excluded.recorded_at",
            (day, str(amount), _iso(_utcnow())),
        )

    def get_day_fees(self, day: int) -> Optional[int]:
        row = self._fetchone("SELECT amount FROM day_fees WHERE day = ?", (day,))
        return int(row["amount"]) if row else None

    def remember_entropy(self, key: str, value: str, slot: Optional[int] = None) -> str:
        """Write-once. Returns the value stored first for ``key``."""
        self._write(
            "INSERT OR IGNORE INTO ledger_entropy (key, value, slot, recorded_at) VALUES (?, ?, ?, ?)",
            (key, value, slot, _iso(_utcnow())),
        )
        stored = self.get_entropy(key)
        if stored is None:
            raise RuntimeError(f"Entropy {key!r} missing right after insert")
        return stored

    def get_entropy(self, key: str) -> Optional[str]:
        row = self._fetchone("SELECT value FROM ledger_entropy WHERE key = ?", (key,))
        return row["value"] if row else None

    # ── Execution status (append-only versions) ──────────────

    def append_status(self, status: ExecutionStatus, created_at: Optional[datetime] = None) -> None:
        self._write(
            "INSERT INTO execution_status (day, state, attempts, last_attempt, error, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                status.day,
                status.state.value,
                status.attempts,
                _iso(status.last_attempt),
                status.error,
                _iso(created_at or _utcnow()),
            ),
        )

    @staticmethod
    def _status_from_row(row: sqlite3.Row) -> ExecutionStatus:
        return ExecutionStatus(
            day=row["day"],
            state=ExecutionState(row["state"]),
            attempts=row["attempts"],
            last_attempt=_parse_dt(row["last_attempt"]),
            error=row["error"],
        )

    def get_status(self, day: int) -> Optional[ExecutionStatus]:
        row = self._fetchone(
            "SELECT * FROM execution_status WHERE day = ? ORDER BY id DESC LIMIT 1", (day,)
        )
        return self._status_from_row(row) if row else None

    def status_history(self, day: int) -> List[ExecutionStatus]:
        rows = self._fetchall("SELECT * FROM execution_status WHERE day = ? ORDER BY id", (day,))
        return [self._status_from_row(r) for r in rows]

    def all_statuses(self) -> List[ExecutionStatus]:
        rows = self._fetchall(
            "SELECT s.* FROM execution_status s "
            "JOIN (SELECT day, MAX(id) AS id FROM execution_status GROUP BY day) latest "
            "ON s.id = latest.id ORDER BY s.day"
        )
        return [self._status_from_row(r) for r in rows]

    # ── Execution records and steps ──────────────────────────

    def insert_execution(self, record: ExecutionRecord) -> None:
        self._write(
            "INSERT INTO execution_summary (execution_id, day, variant, start_time, status, summary_json) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                record.execution_id,
                record.day,
                record.variant,
                _iso(record.start_time),
                record.status,
                _dumps(record.summary),
            ),
        )

    def complete_execution(
        self, execution_id: str, status: str, end_time: datetime, summary: Dict[str, Any]
    ) -> None:
        """Set the terminal status once. Running records are the only ones updated."""
        row = self._fetchone(
            "SELECT summary_json FROM execution_summary WHERE execution_id = ?", (execution_id,)
        )
        if row is None:
            raise KeyError(execution_id)
        merged = {**json.loads(row["summary_json"]), **summary}
        self._write(
            "UPDATE execution_summary SET status = ?, end_time = ?, summary_json = ? "
            "WHERE execution_id = ? AND end_time IS NULL",
            (status, _iso(end_time), _dumps(merged), execution_id),
        )

    def append_step(self, entry: StepEntry) -> None:
        self._write(
            "INSERT INTO execution_step "
            "(execution_id, step_number, step_name, message, level, data_json, ts) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                entry.execution_id,
                entry.step_number,
                entry.step_name,
                entry.message,
                entry.level,
                _dumps(entry.data),
                _iso(entry.timestamp),
            ),
        )

    def get_steps(self, execution_id: str) -> List[StepEntry]:
        rows = self._fetchall(
            "SELECT * FROM execution_step WHERE execution_id = ? ORDER BY step_number", (execution_id,)
        )
        return [
            StepEntry(
                execution_id=r["execution_id"],
                step_number=r["step_number"],
                step_name=r["step_name"],
                message=r["message"],
                level=r["level"],
                data=json.loads(r["data_json"]),
                timestamp=datetime.fromisoformat(r["ts"]),
            )
            for r in rows
        ]

    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        row = self._fetchone("SELECT * FROM execution_summary WHERE execution_id = ?", (execution_id,))
        return self._record_from_row(row) if row else None

    def executions_for_day(self, day: int) -> List[ExecutionRecord]:
        rows = self._fetchall(
            "SELECT * FROM execution_summary WHERE day = ? ORDER BY start_time, rowid", (day,)
        )
        return [self._record_from_row(r) for r in rows]

    def _record_from_row(self, row: sqlite3.Row) -> ExecutionRecord:
        return ExecutionRecord(
            execution_id=row["execution_id"],
            day=row["day"],
            variant=row["variant"],
            start_time=datetime.fromisoformat(row["start_time"]),
            status=row["status"],
            end_time=_parse_dt(row["end_time"]),
            summary=json.loads(row["summary_json"]),
            step_log=tuple(self.get_steps(row["execution_id"])),
        )

    # ── Daily payout anchor ──────────────────────────────────

    def claim_daily_payout(
        self, day: int, execution_id: str, variant: str, result: Dict[str, Any]
    ) -> bool:
        """Take the (day) anchor before any transfer is submitted.

        A day whose previous submit failed before anything was paid can be
        reclaimed; any other existing row means the payout already belongs to
        another execution.
        """
        now = _iso(_utcnow())
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO daily_payout "
                    "(day, execution_id, variant, result_json, state, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (day, execution_id, variant, _dumps(result), PayoutState.CLAIMED.value, now),
                )
                if cur.rowcount == 1:
                    return True
                cur = conn.execute(
                    "UPDATE daily_payout SET execution_id = ?, variant = ?, result_json = ?, "
                    "state = ?, receipts_json = '[]', updated_at = ? "
                    "WHERE day = ? AND state = ?",
                    (
                        execution_id,
                        variant,
                        _dumps(result),
                        PayoutState.CLAIMED.value,
                        now,
                        day,
                        PayoutState.SUBMIT_FAILED.value,
                    ),
                )
                return cur.rowcount == 1
        finally:
            conn.close()

    def mark_daily_payout(
        self,
        day: int,
        execution_id: str,
        state: PayoutState,
        receipts: Optional[Sequence[str]] = None,
    ) -> bool:
        if receipts is None:
            changed = self._write(
                "UPDATE daily_payout SET state = ?, updated_at = ? WHERE day = ? AND execution_id = ?",
                (state.value, _iso(_utcnow()), day, execution_id),
            )
        else:
            changed = self._write(
                "UPDATE daily_payout SET state = ?, receipts_json = ?, updated_at = ? "
                "WHERE day = ? AND execution_id = ?",
                (state.value, json.dumps(list(receipts)), _iso(_utcnow()), day, execution_id),
            )
        return changed == 1

    def get_daily_payout(self, day: int) -> Optional[DailyPayoutRow]:
        row = self._fetchone("SELECT * FROM daily_payout WHERE day = ?", (day,))
        if row is None:
            return None
        return DailyPayoutRow(
            day=row["day"],
            execution_id=row["execution_id"],
            variant=row["variant"],
            result=json.loads(row["result_json"]),
            state=PayoutState(row["state"]),
            receipts=tuple(json.loads(row["receipts_json"])),
            updated_at=_parse_dt(row["updated_at"]),
        )

    # ── Hourly anchor ────────────────────────────────────────

    def insert_hourly_row(self, row: HourlyDistributionRow) -> bool:
        """Conditional insert on (day, hour). False means someone got there first."""
        inserted = self._write(
            "INSERT OR IGNORE INTO hourly_airdrop "
            "(day, hour, wallet, amount, block_entropy, trace_id, tx_signature, distributed_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                row.day,
                row.hour,
                row.wallet,
                str(row.amount),
                row.block_entropy,
                row.trace_id,
                row.tx_signature,
                _iso(row.distributed_at),
            ),
        )
        return inserted == 1

    def attach_hourly_receipt(self, day: int, hour: int, tx_signature: str, distributed_at: datetime) -> None:
        self._write(
            "UPDATE hourly_airdrop SET tx_signature = ?, distributed_at = ? "
            "WHERE day = ? AND hour = ? AND tx_signature IS NULL",
            (tx_signature, _iso(distributed_at), day, hour),
        )

    @staticmethod
    def _hourly_from_row(row: sqlite3.Row) -> HourlyDistributionRow:
        return HourlyDistributionRow(
            day=row["day"],
            hour=row["hour"],
            wallet=row["wallet"],
            amount=int(row["amount"]),
            block_entropy=row["block_entropy"],
            trace_id=row["trace_id"],
            tx_signature=row["tx_signature"],
            distributed_at=_parse_dt(row["distributed_at"]),
        )

    def get_hourly_row(self, day: int, hour: int) -> Optional[HourlyDistributionRow]:
        row = self._fetchone("SELECT * FROM hourly_airdrop WHERE day = ? AND hour = ?", (day, hour))
        return self._hourly_from_row(row) if row else None

    def hourly_rows(self, day: Optional[int] = None) -> List[HourlyDistributionRow]:
        if day is None:
            rows = self._fetchall("SELECT * FROM hourly_airdrop ORDER BY day, hour")
        else:
            rows = self._fetchall("SELECT * FROM hourly_airdrop WHERE day = ? ORDER BY hour", (day,))
        return [self._hourly_from_row(r) for r in rows]

    # ── Audit log ────────────────────────────────────────────

    def append_audit(
        self,
        action: str,
        payload: Dict[str, Any],
        actor: str = "system",
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        ts: Optional[datetime] = None,
    ) -> None:
        self._write(
            "INSERT INTO audit_log (ts, actor, action, payload_json, resource_type, resource_id) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (_iso(ts or _utcnow()), actor, action, _dumps(payload), resource_type, resource_id),
        )

    def audit_entries(self, limit: int = 100, action: Optional[str] = None) -> List[AuditEntry]:
        if action is None:
            rows = self._fetchall("SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,))
        else:
            rows = self._fetchall(
                "SELECT * FROM audit_log WHERE action = ? ORDER BY id DESC LIMIT ?", (action, limit)
            )
        return [
            AuditEntry(
                ts=datetime.fromisoformat(r["ts"]),
                actor=r["actor"],
                action=r["action"],
                payload=json.loads(r["payload_json"]),
                resource_type=r["resource_type"],
                resource_id=r["resource_id"],
            )
            for r in rows
        ]
