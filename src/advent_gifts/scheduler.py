"""Daily execution: one revealed gift per advent day, paid exactly once.

Per-day state lives in the store as append-only ExecutionStatus versions:

    pending -> running -> completed
                       -> retrying -> running ...
                       -> failed

The daily payout row (UNIQUE on day) is claimed before anything is
submitted. It is what stops a second process, a forced rerun or a retry
from paying the same day twice.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import time, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypeVar

from .clock import Clock, SeasonCalendar, next_fire_time
from .commitment import verify_spec
from .engine import GiftEngine
from .errors import (
    GiftError,
    IdempotencyConflict,
    IntegrityError,
    PartialExecutionError,
    TransientExternalError,
    ValidationError,
)
from .execution_log import ExecutionLedger
from .ledger_source import LedgerSource
from .models import (
    ExecutionRecord,
    ExecutionState,
    ExecutionStatus,
    GiftResult,
    GiftSpecification,
    LedgerSnapshot,
    PayoutState,
    check_day,
)
from .store import GiftStore
from .transfers import TransferBatch, TransferExecutor

log = logging.getLogger(__name__)

T = TypeVar("T")

PHASES = (
    "close_day_window",
    "holder_snapshot",
    "load_spec",
    "fetch_entropy",
    "execute_gift",
    "build_batches",
    "simulate",
    "submit",
    "persist",
)


class RunInFlightError(GiftError):
    """A non-forced run was requested while another run is active."""


class ExecutionCancelled(GiftError):
    """Cancellation was requested; honored at the next phase boundary."""


class PayoutInProgress(IdempotencyConflict):
    """Another live execution holds the daily payout row and has not recorded yet."""


@dataclass(frozen=True)
class DayComputation:
    day: int
    spec: GiftSpecification
    distributable_pool: int
    day_fees: int
    entropy: Optional[str]
    result: GiftResult
    batches: Tuple[TransferBatch, ...]
    transaction_count: int
    holder_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "day": self.day,
            "variant": self.spec.variant.value,
            "distributable_pool": str(self.distributable_pool),
            "day_fees": str(self.day_fees),
            "entropy": self.entropy,
            "transaction_count": self.transaction_count,
            "holder_count": self.holder_count,
            "result": self.result.to_dict(),
            "batches": [b.to_dict() for b in self.batches],
        }


class _Trace:
    """Step sink for one pipeline pass. Dry runs only log."""

    def __init__(self, day: int, ledger: Optional[ExecutionLedger] = None, execution_id: str = "") -> None:
        self.day = day
        self.ledger = ledger
        self.execution_id = execution_id

    async def step(self, name: str, message: str, data: Optional[Dict[str, Any]] = None, level: str = "info") -> None:
        if self.ledger is not None:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None, functools.partial(self.ledger.log_step, self.execution_id, name, message, data, level)
            )
        else:
            log.info("[dry-run] day %d %s: %s %s", self.day, name, message, data or "")


class GiftScheduler:
    def __init__(
        self,
        store: GiftStore,
        ledger_source: LedgerSource,
        executor: TransferExecutor,
        engine: GiftEngine,
        clock: Clock,
        calendar: SeasonCalendar,
        *,
        retry_attempts: int = 3,
        retry_delay_s: float = 60.0,
        io_timeout_s: float = 30.0,
        payout_lease_s: Optional[float] = None,
        daily_fee_cap: Optional[int] = None,
        close_time: time = time(0, 5),
    ) -> None:
        if retry_attempts < 1:
            raise ValidationError("retry_attempts must be at least 1")
        self.store = store
        self.ledger_source = ledger_source
        self.executor = executor
        self.engine = engine
        self.clock = clock
        self.calendar = calendar
        self.retry_attempts = retry_attempts
        self.retry_delay_s = retry_delay_s
        self.io_timeout_s = io_timeout_s
        # An owner silent for longer than this is presumed dead
        self.payout_lease_s = payout_lease_s if payout_lease_s is not None else 2 * io_timeout_s
        self.daily_fee_cap = daily_fee_cap
        self.close_time = close_time
        self.execution_log = ExecutionLedger(store, clock.now)
        self._in_flight: Set[int] = set()
        self._cancel_requested = False
        self._stopped = False

    # ── helpers ──────────────────────────────────────────────

    async def _io(self, what: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.io_timeout_s)
        except asyncio.TimeoutError:
            raise TransientExternalError(f"{what} timed out after {self.io_timeout_s}s") from None

    async def _db(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    def request_cancel(self) -> bool:
        """Stop the active run at its next phase boundary. False when idle."""
        if not self._in_flight:
            log.info("Cancel requested with no run in flight; ignored")
            return False
        self._cancel_requested = True
        return True

    def _checkpoint(self, phase: int) -> None:
        if self._cancel_requested:
            self._cancel_requested = False
            raise ExecutionCancelled(f"Cancelled before phase {phase} ({PHASES[phase - 1]})")

    async def _set_status(self, day: int, state: ExecutionState, attempts: int, error: Optional[str] = None) -> ExecutionStatus:
        status = ExecutionStatus(day=day, state=state, attempts=attempts, last_attempt=self.clock.now(), error=error)
        await self._db(self.store.append_status, status, self.clock.now())
        log.debug("Day %d -> %s (attempt %d)", day, state.value, attempts)
        return status

    # ── phases 1-7 (shared with dry runs) ────────────────────

    async def _compute(self, day: int, trace: _Trace, cancellable: bool = True) -> DayComputation:
        def boundary(n: int) -> None:
            if cancellable:
                self._checkpoint(n)

        boundary(1)
        await trace.step(PHASES[0], "Closing day window")
        _, window_end = self.calendar.day_window(day)
        if self.clock.now() < window_end:
            raise ValidationError(f"Day {day} window is still open until {window_end.isoformat()}")
        transactions = await self._io("fetch_transactions", self.ledger_source.fetch_transactions(day))
        day_fees = await self._io("fetch_day_fees", self.ledger_source.fetch_day_fees(day))
        pool = day_fees if self.daily_fee_cap is None else min(day_fees, self.daily_fee_cap)
        await trace.step(
            PHASES[0],
            "Day window closed",
            {"transactions": len(transactions), "day_fees": str(day_fees), "distributable_pool": str(pool)},
        )

        boundary(2)
        await trace.step(PHASES[1], "Ensuring holder snapshot")
        holders = await self._io("fetch_holder_snapshot", self.ledger_source.fetch_holder_snapshot(day))
        await trace.step(PHASES[1], "Holder snapshot ready", {"holders": len(holders)})

        boundary(3)
        await trace.step(PHASES[2], "Loading revealed gift")
        spec = await self._db(self.store.get_gift_spec, day)
        if spec is None:
            raise ValidationError(f"Day {day} has not been revealed")
        verify_spec(spec)
        await trace.step(PHASES[2], "Gift loaded and verified", {"type": spec.variant.value, "leaf": spec.leaf})

        boundary(4)
        entropy: Optional[str] = None
        await trace.step(PHASES[3], "Checking entropy requirement", {"type": spec.variant.value})
        if self.engine.requires_entropy(spec):
            entropy = await self._io("fetch_entropy", self.ledger_source.fetch_entropy(day))
            await trace.step(PHASES[3], "Entropy fetched", {"entropy": entropy})
        else:
            await trace.step(PHASES[3], "Entropy not required")

        boundary(5)
        await trace.step(PHASES[4], "Executing gift")
        snapshot = LedgerSnapshot(
            day=day,
            date=self.calendar.date_for_day(day),
            transactions=tuple(transactions),
            holder_balances=tuple(holders),
        )
        result = self.engine.execute(spec, snapshot, pool, entropy)
        await trace.step(
            PHASES[4],
            "Gift executed",
            {"winners": len(result.winners), "total_distributed": str(result.total_distributed)},
        )

        boundary(6)
        await trace.step(PHASES[5], "Building transfer batches")
        batches = self.executor.build_batches(list(result.winners))
        await trace.step(PHASES[5], "Batches built", {"batches": len(batches)})

        boundary(7)
        await trace.step(PHASES[6], "Simulating batches")
        if batches and not await self._io("simulate", self.executor.simulate(batches)):
            raise TransientExternalError(f"Day {day}: batch simulation failed")
        await trace.step(PHASES[6], "Simulation passed")

        return DayComputation(
            day=day,
            spec=spec,
            distributable_pool=pool,
            day_fees=day_fees,
            entropy=entropy,
            result=result,
            batches=tuple(batches),
            transaction_count=len(transactions),
            holder_count=len(holders),
        )

    # ── phases 8-9 ───────────────────────────────────────────

    async def _attempt(self, day: int, attempt: int) -> DayComputation:
        spec = await self._db(self.store.get_gift_spec, day)
        variant = spec.variant.value if spec else "unrevealed"
        execution_id = await self._db(
            self.execution_log.start_execution, day, variant, {"attempt": attempt}
        )
        trace = _Trace(day, self.execution_log, execution_id)
        try:
            computed = await self._compute(day, trace)

            self._checkpoint(8)
            await trace.step(PHASES[7], "Claiming daily payout anchor")
            claimed = await self._db(
                self.store.claim_daily_payout, day, execution_id, variant, computed.result.to_dict()
            )
            if not claimed:
                await self._explain_lost_claim(day)
            try:
                receipts: List[str] = []
                if computed.batches:
                    receipts = await self._io("submit", self.executor.submit(list(computed.batches)))
            except Exception:
                await self._db(self.store.mark_daily_payout, day, execution_id, PayoutState.SUBMIT_FAILED)
                raise
            await self._db(self.store.mark_daily_payout, day, execution_id, PayoutState.SUBMITTED, receipts)
            await trace.step(PHASES[7], "Batches submitted", {"receipts": receipts})
        except IdempotencyConflict as e:
            reason = "payout_in_progress" if isinstance(e, PayoutInProgress) else "already_paid"
            await trace.step(PHASES[7], str(e), level="warning")
            await self._db(self.execution_log.complete, execution_id, "skipped", {"reason": reason})
            raise
        except Exception as e:
            await trace.step("error", f"{type(e).__name__}: {e}", level="error")
            await self._db(self.execution_log.complete, execution_id, "failed", {"error": str(e)})
            raise

        # Winners are paid from here on; nothing below may trigger a retry
        try:
            await trace.step(PHASES[8], "Persisting execution record")
            summary = {
                "winners": [w.to_dict() for w in computed.result.winners],
                "total_distributed": str(computed.result.total_distributed),
                "distributable_pool": str(computed.distributable_pool),
                "entropy": computed.entropy,
                "receipts": receipts,
                "metadata": computed.result.metadata,
            }
            await self._db(self.execution_log.complete, execution_id, "completed", summary)
            await self._db(self.store.mark_daily_payout, day, execution_id, PayoutState.RECORDED)
            await self._db(
                self.execution_log.audit,
                "daily_gift_executed",
                {"day": day, "execution_id": execution_id, "total_distributed": str(computed.result.total_distributed)},
                resource_type="daily_payout",
                resource_id=str(day),
            )
            await trace.step(PHASES[8], "Execution recorded")
        except Exception as e:
            partial = PartialExecutionError(
                f"Day {day}: payout submitted but recording failed: {e}",
                day=day,
                result=computed.result,
                receipts=receipts,
            )
            try:
                await self._db(self.execution_log.complete, execution_id, "failed", {"error": str(partial)})
            except Exception:
                log.exception("Day %d: could not mark execution %s failed", day, execution_id)
            raise partial from e
        return computed

    async def _explain_lost_claim(self, day: int) -> None:
        """Raise the error that matches whoever holds the daily payout row.

        A recorded payout, or one whose owner finished its execution record,
        is a harmless duplicate. A row stuck in claimed or submitted whose
        owner is gone means winners may have been paid without a record, and
        the day must stay failed until someone reconciles it.
        """
        row = await self._db(self.store.get_daily_payout, day)
        if row is None or row.state is PayoutState.SUBMIT_FAILED:
            raise TransientExternalError(f"day:{day} payout row changed hands while claiming")
        if row.state is PayoutState.RECORDED:
            raise IdempotencyConflict(f"day:{day} already paid by execution {row.execution_id}")

        owner = await self._db(self.store.get_execution, row.execution_id)
        if owner is not None and owner.status == "completed":
            raise IdempotencyConflict(f"day:{day} already paid by execution {row.execution_id}")
        if owner is not None and owner.status == "running" and self._recently_active(owner):
            raise PayoutInProgress(f"day:{day} payout is {row.state.value} by live execution {row.execution_id}")
        raise PartialExecutionError(
            f"Day {day}: payout row left {row.state.value} by execution {row.execution_id}; "
            "reconcile before rerunning",
            day=day,
            result=row.result,
            receipts=list(row.receipts),
        )

    def _recently_active(self, record: ExecutionRecord) -> bool:
        last = record.step_log[-1].timestamp if record.step_log else record.start_time
        return self.clock.now() - last <= timedelta(seconds=self.payout_lease_s)

    async def run_day(self, day: int, force: bool = False) -> ExecutionStatus:
        """Execute ``day`` with bounded retries and return the final status."""
        check_day(day)
        current = await self._db(self.store.get_status, day)
        if not force:
            if current is not None and current.state == ExecutionState.COMPLETED:
                log.info("Day %d already completed; skipping", day)
                return current
            if self._in_flight:
                raise RunInFlightError(f"A run is already in flight (days {sorted(self._in_flight)})")
        if force:
            log.warning("Day %d: forced run requested", day)

        self._in_flight.add(day)
        try:
            return await self._run_with_retries(day)
        finally:
            self._in_flight.discard(day)
            if not self._in_flight:
                self._cancel_requested = False

    async def _run_with_retries(self, day: int) -> ExecutionStatus:
        attempt = 0
        while True:
            attempt += 1
            await self._set_status(day, ExecutionState.RUNNING, attempt)
            try:
                computed = await self._attempt(day, attempt)
            except PayoutInProgress as e:
                log.warning("Day %d: %s; leaving the status to that run", day, e)
                current = await self._db(self.store.get_status, day)
                return current or ExecutionStatus(day=day, state=ExecutionState.RUNNING, attempts=attempt)
            except IdempotencyConflict as e:
                log.info("Day %d: %s; treating as completed", day, e)
                return await self._set_status(day, ExecutionState.COMPLETED, attempt)
            except PartialExecutionError as e:
                log.error("Day %d: %s (result kept in daily_payout for reconciliation)", day, e)
                return await self._set_status(day, ExecutionState.FAILED, attempt, str(e))
            except ExecutionCancelled as e:
                log.warning("Day %d: %s", day, e)
                return await self._set_status(day, ExecutionState.PENDING, attempt, str(e))
            except (ValidationError, IntegrityError) as e:
                log.error("Day %d: %s: %s (not retried)", day, type(e).__name__, e)
                return await self._set_status(day, ExecutionState.FAILED, attempt, str(e))
            except Exception as e:
                if attempt >= self.retry_attempts:
                    log.error("Day %d: attempt %d/%d failed: %s; giving up", day, attempt, self.retry_attempts, e)
                    return await self._set_status(day, ExecutionState.FAILED, attempt, str(e))
                log.warning(
                    "Day %d: attempt %d/%d failed: %s; retrying in %.0fs",
                    day,
                    attempt,
                    self.retry_attempts,
                    e,
                    self.retry_delay_s,
                )
                await self._set_status(day, ExecutionState.RETRYING, attempt, str(e))
                await self.clock.sleep(self.retry_delay_s)
                continue

            log.info(
                "Day %d completed: %d winners, %d distributed",
                day,
                len(computed.result.winners),
                computed.result.total_distributed,
            )
            return await self._set_status(day, ExecutionState.COMPLETED, attempt)

    async def dry_run_day(self, day: int) -> DayComputation:
        """Phases 1-7 through the same code path, with nothing recorded or paid."""
        check_day(day)
        return await self._compute(day, _Trace(day), cancellable=False)

    # ── status and logs ──────────────────────────────────────

    def status(self, day: int) -> ExecutionStatus:
        check_day(day)
        current = self.store.get_status(day)
        return current or ExecutionStatus(day=day, state=ExecutionState.PENDING)

    def all_statuses(self) -> List[ExecutionStatus]:
        known = {s.day: s for s in self.store.all_statuses()}
        return [known.get(d) or ExecutionStatus(day=d, state=ExecutionState.PENDING) for d in range(1, self.calendar.num_days + 1)]

    # ── ticker ───────────────────────────────────────────────

    def stop(self) -> None:
        self._stopped = True

    async def run_forever(self) -> None:
        """Fire once a day at the close time and settle the previous UTC date."""
        log.info("Daily scheduler started (fires at %s UTC)", self.close_time.strftime("%H:%M"))
        while not self._stopped:
            now = self.clock.now()
            fire_at = next_fire_time(now, self.close_time)
            await self.clock.sleep((fire_at - now).total_seconds())
            if self._stopped:
                break
            day = self.calendar.day_to_execute(self.clock.now())
            if day is None:
                log.debug("No advent day to settle at %s", self.clock.now().isoformat())
                continue
            try:
                status = await self.run_day(day)
            except GiftError as e:
                log.error("Daily run for day %d failed: %s", day, e)
                continue
            log.info("Daily run for day %d finished: %s", day, status.state.value)
