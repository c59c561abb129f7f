from __future__ import annotations

from typing import Any, Dict, FrozenSet, Iterable, List, Sequence, Tuple

from .errors import AmountOverflowError, ValidationError
from .models import GiftSpecification, HolderBalance, Winner
from .project_constants import U64_MAX, U128_MAX


def check_u64(value: int, what: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= U64_MAX:
        raise AmountOverflowError(f"{what}={value!r} is not an unsigned 64-bit amount")
    return value


def mul_div(a: int, b: int, d: int) -> int:
    """floor(a * b / d) with u64 operands and a u128 intermediate."""
    check_u64(a, "multiplicand")
    check_u64(b, "multiplier")
    if d <= 0:
        raise ValidationError("Division by a non-positive weight")
    product = a * b
    if product > U128_MAX:
        raise AmountOverflowError(f"{a} * {b} overflows 128 bits")
    return check_u64(product // d, "share")


def pool_for(distributable_pool: int, percent: int) -> int:
    check_u64(distributable_pool, "distributable_pool")
    return mul_div(distributable_pool, percent, 100)


def proportional_split(
    weights: Sequence[Tuple[str, int]],
    pool: int,
    reason_prefix: str,
) -> List[Winner]:
    """Truncating per-wallet split. The shortfall is at most len(weights) - 1."""
    total = sum(w for _, w in weights)
    if total > U128_MAX:
        raise AmountOverflowError("Total weight overflows 128 bits")
    if total <= 0:
        return []
    return [
        Winner(wallet=wallet, amount=mul_div(weight, pool, total), reason=f"{reason_prefix}_{weight}")
        for wallet, weight in weights
    ]


def equal_split(wallets: Sequence[str], pool: int, reason: str) -> List[Winner]:
    if not wallets:
        return []
    each = pool // len(wallets)
    return [Winner(wallet=w, amount=each, reason=reason) for w in wallets]


def drop_excluded(holders: Iterable[HolderBalance], excluded: FrozenSet[str]) -> List[HolderBalance]:
    return [h for h in holders if h.wallet not in excluded]


def meets_minimum(balance: int, minimum: int, comparison: str) -> bool:
    if comparison == "gt":
        return balance > minimum
    return balance >= minimum


# --- parameter access -------------------------------------------------------


def param_int(
    spec: GiftSpecification,
    key: str,
    default: int,
    lo: int = 0,
    hi: int = U64_MAX,
) -> int:
    raw: Any = spec.params.get(key, default)
    if isinstance(raw, bool):
        raise ValidationError(f"Day {spec.day}: param {key}={raw!r} must be an integer")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Day {spec.day}: param {key}={raw!r} must be an integer") from None
    if not lo <= value <= hi:
        raise ValidationError(f"Day {spec.day}: param {key}={value} outside [{lo}, {hi}]")
    return value


def param_percent(spec: GiftSpecification, key: str, default: int) -> int:
    return param_int(spec, key, default, 0, 100)


def param_choice(spec: GiftSpecification, key: str, default: str, choices: Tuple[str, ...]) -> str:
    value = spec.params.get(key, default)
    if value not in choices:
        raise ValidationError(f"Day {spec.day}: param {key}={value!r} not in {choices}")
    return value


def summarize(winners: List[Winner], pool: int) -> Dict[str, Any]:
    distributed = sum(w.amount for w in winners)
    return {
        "distribution_pool": str(pool),
        "winner_count": len(winners),
        "dust": str(pool - distributed),
    }
