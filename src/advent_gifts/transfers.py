from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import List, Protocol, Sequence, Tuple

from .errors import ValidationError
from .models import Winner
from .project_constants import TRANSFER_BATCH_SIZE

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferBatch:
    index: int
    transfers: Tuple[Winner, ...]

    @property
    def total(self) -> int:
        return sum(w.amount for w in self.transfers)

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "total": str(self.total),
            "transfers": [w.to_dict() for w in self.transfers],
        }


def build_batches(winners: Sequence[Winner], batch_size: int = TRANSFER_BATCH_SIZE) -> List[TransferBatch]:
    """Pack winners into fixed-size transfer batches, skipping zero amounts."""
    if batch_size < 1:
        raise ValidationError("batch_size must be positive")
    payable = [w for w in winners if w.amount > 0]
    return [
        TransferBatch(index=i // batch_size, transfers=tuple(payable[i : i + batch_size]))
        for i in range(0, len(payable), batch_size)
    ]


class TransferExecutor(Protocol):
    """Signing and broadcasting live outside this package; this is the seam."""

    def build_batches(self, winners: Sequence[Winner]) -> List[TransferBatch]: ...

    async def simulate(self, batches: Sequence[TransferBatch]) -> bool: ...

    async def submit(self, batches: Sequence[TransferBatch]) -> List[str]: ...

    async def transfer(self, wallet: str, amount: int) -> str: ...


def _receipt(kind: str, payload: str) -> str:
    return f"dryrun-{kind}-" + hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]


@dataclass
class DryRunTransferExecutor:
    """Records what would be sent and returns deterministic fake receipts."""

    source_wallet: str = ""
    batch_size: int = TRANSFER_BATCH_SIZE
    submitted: List[TransferBatch] = field(default_factory=list)
    single_transfers: List[Tuple[str, int]] = field(default_factory=list)

    def build_batches(self, winners: Sequence[Winner]) -> List[TransferBatch]:
        return build_batches(winners, self.batch_size)

    async def simulate(self, batches: Sequence[TransferBatch]) -> bool:
        for batch in batches:
            for w in batch.transfers:
                if not w.wallet or w.amount <= 0:
                    log.warning("Batch %d: invalid transfer %s", batch.index, w)
                    return False
        return True

    async def submit(self, batches: Sequence[TransferBatch]) -> List[str]:
        receipts = []
        for batch in batches:
            payload = "|".join(f"{w.wallet}:{w.amount}" for w in batch.transfers)
            receipts.append(_receipt("batch", f"{self.source_wallet}|{batch.index}|{payload}"))
            self.submitted.append(batch)
            log.info("[dryrun] batch %d: %d transfers, total=%d", batch.index, len(batch.transfers), batch.total)
        return receipts

    async def transfer(self, wallet: str, amount: int) -> str:
        self.single_transfers.append((wallet, amount))
        log.info("[dryrun] transfer %d to %s", amount, wallet)
        return _receipt("transfer", f"{self.source_wallet}|{wallet}|{amount}|{len(self.single_transfers)}")
