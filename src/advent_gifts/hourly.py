"""Hourly token airdrop for days whose gift enables ``token_airdrop``.

Each elapsed UTC hour picks one buyer from that hour. The row for
``(day, hour)`` is inserted before the transfer is attempted, so a crash
between the two can leave an unpaid row but never a second payment.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, FrozenSet, Iterable, List, Optional, Sequence, TypeVar

from . import randomness
from .clock import Clock, SeasonCalendar, next_hour_boundary
from .errors import GiftError, TransientExternalError, ValidationError
from .ledger_source import LedgerSource
from .models import (
    GiftSpecification,
    HourlyDistributionRow,
    HourlyOutcome,
    HourlyStatus,
    LedgerTransaction,
    check_day,
    check_hour,
)
from .project_constants import HOURS_PER_DAY
from .store import GiftStore
from .transfers import TransferExecutor

log = logging.getLogger(__name__)

T = TypeVar("T")

MANUAL_OVERRIDE_ENTROPY = "manual_override"


def hour_buyers(
    transactions: Iterable[LedgerTransaction],
    start: datetime,
    end: datetime,
    excluded: FrozenSet[str],
) -> List[str]:
    """Distinct buyers with start <= block_time < end, sorted by wallet."""
    wallets = set()
    for tx in transactions:
        if tx.kind != "buy" or tx.amount <= 0 or not start <= tx.block_time < end:
            continue
        wallet = tx.participant()
        if wallet and wallet not in excluded:
            wallets.add(wallet)
    return sorted(wallets)


def amount_per_winner(spec: GiftSpecification) -> int:
    cfg = spec.token_airdrop
    try:
        total = int(cfg.get("total_amount", 0))
        winners = int(cfg.get("winners", HOURS_PER_DAY))
    except (TypeError, ValueError):
        raise ValidationError(f"Day {spec.day}: token_airdrop total_amount/winners must be integers") from None
    if total < 0 or winners < 1:
        raise ValidationError(f"Day {spec.day}: token_airdrop needs total_amount >= 0 and winners >= 1")
    return total // winners


class HourlyDistributor:
    def __init__(
        self,
        store: GiftStore,
        ledger_source: LedgerSource,
        executor: TransferExecutor,
        clock: Clock,
        calendar: SeasonCalendar,
        *,
        salt: str = "",
        excluded_wallets: Iterable[str] = (),
        io_timeout_s: float = 30.0,
        tick_offset: timedelta = timedelta(minutes=1),
    ) -> None:
        self.store = store
        self.ledger_source = ledger_source
        self.executor = executor
        self.clock = clock
        self.calendar = calendar
        self.salt = salt
        self.excluded: FrozenSet[str] = frozenset(excluded_wallets)
        self.io_timeout_s = io_timeout_s
        self.tick_offset = tick_offset
        self._stopped = False

    async def _io(self, what: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.io_timeout_s)
        except asyncio.TimeoutError:
            raise TransientExternalError(f"{what} timed out after {self.io_timeout_s}s") from None

    async def _db(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def _audit(self, action: str, day: int, hour: int, **payload) -> None:
        await self._db(
            self.store.append_audit,
            action,
            {"day": day, "hour": hour, **payload},
            resource_type="hourly_airdrop",
            resource_id=f"{day}-{hour}",
            ts=self.clock.now(),
        )

    async def _skipped(self, day: int, hour: int, reason: str, dry_run: bool, **kw) -> HourlyOutcome:
        log.info("Hourly %d/%02d skipped: %s", day, hour, reason)
        if not dry_run:
            await self._audit("hourly_airdrop_skipped", day, hour, reason=reason)
        return HourlyOutcome(status=HourlyStatus.SKIPPED, day=day, hour=hour, reason=reason, dry_run=dry_run, **kw)

    async def tick(self, now: Optional[datetime] = None) -> Optional[HourlyOutcome]:
        """Process the hour that just ended. None outside the season."""
        now = now or self.clock.now()
        target = self.calendar.previous_hour_target(now)
        if target is None:
            if self.calendar.advent_day_for_date(now.date()) == 1:
                return await self._skipped(1, 0, "no_previous_hour", dry_run=False)
            return None
        day, hour = target
        return await self.execute_hour(day, hour)

    async def execute_hour(
        self, day: int, hour: int, override: Optional[Sequence[str]] = None
    ) -> HourlyOutcome:
        try:
            return await self._run(day, hour, override, dry_run=False)
        except GiftError as e:
            log.error("Hourly %d/%02d failed: %s", day, hour, e)
            await self._audit("hourly_airdrop_failed", day, hour, error=str(e))
            raise

    async def dry_run_hour(self, day: int, hour: int, override: Optional[Sequence[str]] = None) -> HourlyOutcome:
        return await self._run(day, hour, override, dry_run=True)

    async def _run(
        self, day: int, hour: int, override: Optional[Sequence[str]], dry_run: bool
    ) -> HourlyOutcome:
        check_day(day)
        check_hour(hour)
        start, end = self.calendar.hour_window(day, hour)
        if self.clock.now() < end:
            raise ValidationError(f"Hour {day}/{hour:02d} has not ended yet ({end.isoformat()})")

        spec = await self._db(self.store.get_gift_spec, day)
        if spec is None:
            return await self._skipped(day, hour, "gift_not_revealed", dry_run)
        if not spec.token_airdrop.get("enabled"):
            return await self._skipped(day, hour, "hourly_airdrop_disabled", dry_run)

        existing = await self._db(self.store.get_hourly_row, day, hour)
        if existing is not None:
            log.info("Hourly %d/%02d already distributed to %s", day, hour, existing.wallet)
            return HourlyOutcome(
                status=HourlyStatus.ALREADY_DISTRIBUTED,
                day=day,
                hour=hour,
                winner=existing.wallet,
                amount=existing.amount,
                block_entropy=existing.block_entropy,
                tx_signature=existing.tx_signature,
                dry_run=dry_run,
            )

        amount = amount_per_winner(spec)
        if override is not None:
            candidates = [w for w in override if w and w not in self.excluded]
            if not candidates:
                return await self._skipped(day, hour, "override_recipients_excluded", dry_run)
            winner = candidates[0]
            entropy = MANUAL_OVERRIDE_ENTROPY
            eligible_count = len(candidates)
            log.warning("Hourly %d/%02d: manual override recipient %s", day, hour, winner)
        else:
            transactions = await self._io("fetch_transactions", self.ledger_source.fetch_transactions(day))
            eligible = hour_buyers(transactions, start, end, self.excluded)
            if not eligible:
                return await self._skipped(day, hour, "no_eligible_buyers", dry_run)
            entropy = await self._io("fetch_hour_entropy", self.ledger_source.fetch_hour_entropy(day, hour))
            seed = randomness.seed(entropy, randomness.context_salt(self.salt, day, hour))
            winner = randomness.shuffle(eligible, seed)[0]
            eligible_count = len(eligible)

        if amount == 0:
            return await self._skipped(day, hour, "zero_amount", dry_run, winner=winner, eligible_count=eligible_count)

        if dry_run:
            return HourlyOutcome(
                status=HourlyStatus.DISTRIBUTED,
                day=day,
                hour=hour,
                winner=winner,
                amount=amount,
                block_entropy=entropy,
                eligible_count=eligible_count,
                dry_run=True,
            )

        trace_id = uuid.uuid4().hex
        row = HourlyDistributionRow(
            day=day, hour=hour, wallet=winner, amount=amount, block_entropy=entropy, trace_id=trace_id
        )
        if not await self._db(self.store.insert_hourly_row, row):
            log.info("Hourly %d/%02d claimed concurrently; nothing to do", day, hour)
            taken = await self._db(self.store.get_hourly_row, day, hour)
            return HourlyOutcome(
                status=HourlyStatus.ALREADY_DISTRIBUTED,
                day=day,
                hour=hour,
                winner=taken.wallet if taken else None,
                amount=taken.amount if taken else 0,
            )

        signature = await self._io("transfer", self.executor.transfer(winner, amount))
        await self._db(self.store.attach_hourly_receipt, day, hour, signature, self.clock.now())
        await self._audit(
            "hourly_airdrop_distributed",
            day,
            hour,
            wallet=winner,
            amount=str(amount),
            block_entropy=entropy,
            tx_signature=signature,
            trace_id=trace_id,
            eligible_count=eligible_count,
        )
        log.info("Hourly %d/%02d: %d to %s (%s)", day, hour, amount, winner, signature)
        return HourlyOutcome(
            status=HourlyStatus.DISTRIBUTED,
            day=day,
            hour=hour,
            winner=winner,
            amount=amount,
            block_entropy=entropy,
            tx_signature=signature,
            eligible_count=eligible_count,
        )

    def stop(self) -> None:
        self._stopped = True

    async def run_forever(self) -> None:
        log.info("Hourly distributor started")
        while not self._stopped:
            now = self.clock.now()
            await self.clock.sleep((next_hour_boundary(now, self.tick_offset) - now).total_seconds())
            if self._stopped:
                break
            try:
                outcome = await self.tick()
            except GiftError as e:
                log.error("Hourly tick failed: %s", e)
                continue
            if outcome is not None:
                log.info("Hourly %d/%02d: %s", outcome.day, outcome.hour, outcome.status.value)
