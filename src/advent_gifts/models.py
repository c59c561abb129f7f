from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from .errors import ValidationError
from .project_constants import COMMITMENT_FIELDS, HOURS_PER_DAY, NUM_DAYS


class Variant(str, enum.Enum):
    PROPORTIONAL_HOLDERS = "proportional_holders"
    TOP_BUYERS = "top_buyers_airdrop"
    DETERMINISTIC_RANDOM = "deterministic_random"
    NGO_DONATION = "full_donation_to_ngo"
    LAST_SECOND_HOUR = "last_second_hour"
    MOST_ACTIVE_TRADER = "most_active_trader"

    @classmethod
    def parse(cls, name: str) -> "Variant":
        name = _VARIANT_ALIASES.get(name, name)
        try:
            return cls(name)
        except ValueError:
            raise ValidationError(f"Unknown gift type: {name!r}") from None


_VARIANT_ALIASES = {"ngo_donation": Variant.NGO_DONATION.value}


def check_day(day: int) -> int:
    if not isinstance(day, int) or isinstance(day, bool) or not 1 <= day <= NUM_DAYS:
        raise ValidationError(f"Invalid advent day: {day!r} (expected 1..{NUM_DAYS})")
    return day


def check_hour(hour: int) -> int:
    if not isinstance(hour, int) or isinstance(hour, bool) or not 0 <= hour < HOURS_PER_DAY:
        raise ValidationError(f"Invalid hour: {hour!r} (expected 0..{HOURS_PER_DAY - 1})")
    return hour


@dataclass(frozen=True)
class GiftSpecification:
    day: int
    variant: Variant
    params: Dict[str, Any]
    distribution_source: str = "treasury_daily_fees"
    notes: str = ""
    # The entry exactly as committed, including keys such as hint or sub_hint
    raw_entry: Dict[str, Any] = field(default_factory=dict)
    commitment_hash: str = ""
    salt: str = ""
    leaf: str = ""
    proof: Tuple[str, ...] = ()

    def entry(self) -> Dict[str, Any]:
        """The exact object that was committed (no salt/leaf/proof)."""
        if self.raw_entry:
            return dict(self.raw_entry)
        return {
            "day": self.day,
            "type": self.variant.value,
            "params": self.params,
            "distribution_source": self.distribution_source,
            "notes": self.notes,
        }

    @classmethod
    def from_entry(
        cls,
        entry: Dict[str, Any],
        *,
        salt: str = "",
        leaf: str = "",
        proof: Optional[List[str]] = None,
        commitment_hash: str = "",
    ) -> "GiftSpecification":
        if not isinstance(entry, dict):
            raise ValidationError("Gift entry must be an object")
        if "type" not in entry:
            raise ValidationError(f"Gift for day {entry.get('day')} missing type")
        params = entry.get("params")
        if not isinstance(params, dict):
            raise ValidationError(f"Gift for day {entry.get('day')} missing params")
        return cls(
            day=check_day(entry.get("day")),
            variant=Variant.parse(entry["type"]),
            params=params,
            distribution_source=entry.get("distribution_source", "treasury_daily_fees"),
            notes=entry.get("notes", ""),
            raw_entry={k: v for k, v in entry.items() if k not in COMMITMENT_FIELDS},
            commitment_hash=commitment_hash,
            salt=salt,
            leaf=leaf,
            proof=tuple(proof or ()),
        )

    @property
    def token_airdrop(self) -> Dict[str, Any]:
        cfg = self.params.get("token_airdrop")
        return cfg if isinstance(cfg, dict) else {}


@dataclass(frozen=True)
class LedgerTransaction:
    signature: str
    block_time: datetime  # UTC, tz-aware
    from_wallet: str
    to_wallet: Optional[str]
    amount: int
    kind: str  # buy | sell | transfer

    def participant(self) -> Optional[str]:
        """Wallet credited with this trade.

        A buy credits the receiving side, a sell the sending side. Plain
        transfers fall back to the sender.
        """
        if self.kind == "buy":
            return self.to_wallet or None
        return self.from_wallet or None


@dataclass(frozen=True)
class HolderBalance:
    wallet: str
    balance: int


@dataclass(frozen=True)
class LedgerSnapshot:
    day: int
    date: date
    transactions: Tuple[LedgerTransaction, ...]
    holder_balances: Tuple[HolderBalance, ...]


@dataclass(frozen=True)
class Winner:
    wallet: str
    amount: int
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        # amounts can exceed 2^53; keep them as strings in JSON
        return {"wallet": self.wallet, "amount": str(self.amount), "reason": self.reason}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Winner":
        return cls(wallet=d["wallet"], amount=int(d["amount"]), reason=d.get("reason", ""))


@dataclass(frozen=True)
class GiftResult:
    winners: Tuple[Winner, ...]
    total_distributed: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        total = sum(w.amount for w in self.winners)
        if total != self.total_distributed:
            raise ValueError(
                f"total_distributed={self.total_distributed} != sum(winners)={total}"
            )

    @classmethod
    def build(cls, winners: List[Winner], **metadata: Any) -> "GiftResult":
        return cls(
            winners=tuple(winners),
            total_distributed=sum(w.amount for w in winners),
            metadata=metadata,
        )

    @classmethod
    def empty(cls, reason: str, **metadata: Any) -> "GiftResult":
        return cls(winners=(), total_distributed=0, metadata={"reason": reason, **metadata})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "winners": [w.to_dict() for w in self.winners],
            "total_distributed": str(self.total_distributed),
            "metadata": self.metadata,
        }


class ExecutionState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionStatus:
    day: int
    state: ExecutionState
    attempts: int = 0
    last_attempt: Optional[datetime] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class StepEntry:
    execution_id: str
    step_number: int
    step_name: str
    message: str
    level: str
    data: Dict[str, Any]
    timestamp: datetime


@dataclass(frozen=True)
class ExecutionRecord:
    execution_id: str
    day: int
    variant: str
    start_time: datetime
    status: str
    end_time: Optional[datetime] = None
    summary: Dict[str, Any] = field(default_factory=dict)
    step_log: Tuple[StepEntry, ...] = ()


@dataclass(frozen=True)
class HourlyDistributionRow:
    day: int
    hour: int
    wallet: str
    amount: int
    block_entropy: str
    trace_id: str
    tx_signature: Optional[str] = None
    distributed_at: Optional[datetime] = None


class HourlyStatus(str, enum.Enum):
    DISTRIBUTED = "distributed"
    SKIPPED = "skipped"
    ALREADY_DISTRIBUTED = "already_distributed"


@dataclass(frozen=True)
class HourlyOutcome:
    status: HourlyStatus
    day: int
    hour: int
    winner: Optional[str] = None
    amount: int = 0
    block_entropy: str = ""
    tx_signature: Optional[str] = None
    eligible_count: int = 0
    reason: Optional[str] = None
    dry_run: bool = False


class PayoutState(str, enum.Enum):
    CLAIMED = "claimed"
    SUBMITTED = "submitted"
    SUBMIT_FAILED = "submit_failed"
    RECORDED = "recorded"


@dataclass(frozen=True)
class DailyPayoutRow:
    day: int
    execution_id: str
    variant: str
    result: Dict[str, Any]
    state: PayoutState
    receipts: Tuple[str, ...] = ()
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class AuditEntry:
    ts: datetime
    actor: str
    action: str
    payload: Dict[str, Any]
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
