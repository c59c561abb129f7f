from __future__ import annotations

import logging
from typing import FrozenSet, Iterable, List, Optional

from .allocation import check_u64
from .errors import ValidationError
from .models import GiftResult, GiftSpecification, LedgerSnapshot, Variant
from .variants import VARIANTS, GiftContext

log = logging.getLogger(__name__)


class GiftEngine:
    """Runs one day's gift rule over an immutable ledger snapshot.

    Pure computation: the engine never touches the network, the database or
    the clock. Everything it needs is passed in, so a result can be replayed
    from the published snapshot, entropy and salt.
    """

    def __init__(self, excluded_wallets: Iterable[str] = (), salt: str = "") -> None:
        self.excluded: FrozenSet[str] = frozenset(excluded_wallets)
        self.salt = salt

    @staticmethod
    def supported_variants() -> List[str]:
        return [v.value for v in Variant]

    @staticmethod
    def requires_entropy(spec: GiftSpecification) -> bool:
        return VARIANTS[spec.variant].requires_entropy

    def execute(
        self,
        spec: GiftSpecification,
        snapshot: LedgerSnapshot,
        distributable_pool: int,
        entropy_hex: Optional[str] = None,
    ) -> GiftResult:
        if spec.day != snapshot.day:
            raise ValidationError(f"Snapshot is for day {snapshot.day}, spec is for day {spec.day}")
        check_u64(distributable_pool, "distributable_pool")

        handler = VARIANTS[spec.variant]
        if handler.requires_entropy and not entropy_hex:
            raise ValidationError(f"Day {spec.day}: {spec.variant.value} requires ledger entropy")

        ctx = GiftContext(excluded=self.excluded, salt=self.salt, snapshot_date=snapshot.date)
        log.debug(
            "Day %d: running %s over %d transactions, %d holders, pool=%d",
            spec.day,
            spec.variant.value,
            len(snapshot.transactions),
            len(snapshot.holder_balances),
            distributable_pool,
        )
        result = handler.run(
            spec,
            snapshot.transactions,
            snapshot.holder_balances,
            distributable_pool,
            entropy_hex if handler.requires_entropy else None,
            ctx,
        )

        leaked = [w.wallet for w in result.winners if w.wallet in self.excluded]
        if leaked:
            raise ValidationError(f"Day {spec.day}: excluded wallets selected: {leaked}")

        if result.winners:
            log.info(
                "Day %d: %s selected %d winners, total=%d",
                spec.day,
                spec.variant.value,
                len(result.winners),
                result.total_distributed,
            )
        else:
            log.info("Day %d: %s produced no winners (%s)", spec.day, spec.variant.value, result.metadata.get("reason"))
        return result
