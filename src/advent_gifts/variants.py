"""The six gift rules.

Every handler is a pure function of its arguments: no I/O, no clock reads,
no randomness beyond the seed derived from the entropy it is handed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from . import randomness
from .allocation import (
    drop_excluded,
    equal_split,
    meets_minimum,
    param_choice,
    param_int,
    param_percent,
    pool_for,
    proportional_split,
    summarize,
)
from .errors import ValidationError
from .models import (
    GiftResult,
    GiftSpecification,
    HolderBalance,
    LedgerTransaction,
    Variant,
    Winner,
)

COMPARISONS = ("gte", "gt")


@dataclass(frozen=True)
class GiftContext:
    excluded: FrozenSet[str]
    salt: str
    snapshot_date: date


Handler = Callable[
    [GiftSpecification, Sequence[LedgerTransaction], Sequence[HolderBalance], int, Optional[str], GiftContext],
    GiftResult,
]


@dataclass(frozen=True)
class VariantHandler:
    run: Handler
    requires_entropy: bool = False


def proportional_holders(spec, transactions, holders, distributable_pool, entropy_hex, ctx) -> GiftResult:
    percent = param_percent(spec, "allocation_percent", 40)
    min_balance = param_int(spec, "min_balance", 0)
    comparison = param_choice(spec, "min_balance_comparison", "gte", COMPARISONS)

    eligible = sorted(
        (
            h
            for h in drop_excluded(holders, ctx.excluded)
            if h.balance > 0 and meets_minimum(h.balance, min_balance, comparison)
        ),
        key=lambda h: h.wallet,
    )
    if not eligible:
        return GiftResult.empty(
            "no_eligible_holders", total_holders=len(holders), min_balance=min_balance
        )

    pool = pool_for(distributable_pool, percent)
    winners = proportional_split(
        [(h.wallet, h.balance) for h in eligible], pool, "proportional_balance"
    )
    return GiftResult.build(
        winners,
        eligible_count=len(eligible),
        total_balance=str(sum(h.balance for h in eligible)),
        min_balance=min_balance,
        min_balance_comparison=comparison,
        has_hourly_airdrops=bool(spec.token_airdrop.get("enabled")),
        **summarize(winners, pool),
    )


def top_buyers(spec, transactions, holders, distributable_pool, entropy_hex, ctx) -> GiftResult:
    percent = param_percent(spec, "allocation_percent", 40)
    top_n = param_int(spec, "top_n", 10, lo=1)

    volumes: Dict[str, int] = {}
    for tx in transactions:
        if tx.kind != "buy":
            continue
        wallet = tx.participant()
        if not wallet or wallet in ctx.excluded:
            continue
        volumes[wallet] = volumes.get(wallet, 0) + tx.amount

    ranked = sorted(
        ((w, v) for w, v in volumes.items() if v > 0), key=lambda wv: (-wv[1], wv[0])
    )[:top_n]
    if not ranked:
        return GiftResult.empty("no_buyers", unique_buyers=len(volumes))

    pool = pool_for(distributable_pool, percent)
    winners = proportional_split(ranked, pool, "top_buyer_volume")
    return GiftResult.build(
        winners,
        top_n=top_n,
        total_volume=str(sum(v for _, v in ranked)),
        unique_buyers=len(volumes),
        **summarize(winners, pool),
    )


def deterministic_random(spec, transactions, holders, distributable_pool, entropy_hex, ctx) -> GiftResult:
    percent = param_percent(spec, "allocation_percent", 40)
    min_balance = param_int(spec, "min_balance", 0)
    comparison = param_choice(spec, "min_balance_comparison", "gte", COMPARISONS)
    winner_count = param_int(spec, "winner_count", 10, lo=1)
    if not entropy_hex:
        raise ValidationError(f"Day {spec.day}: {spec.variant.value} requires ledger entropy")

    eligible = sorted(
        h.wallet
        for h in drop_excluded(holders, ctx.excluded)
        if h.balance > 0 and meets_minimum(h.balance, min_balance, comparison)
    )
    if not eligible:
        return GiftResult.empty("no_eligible_holders", total_holders=len(holders))

    context = randomness.context_salt(ctx.salt, spec.day)
    seed = randomness.seed(entropy_hex, context)
    selected = randomness.select(eligible, winner_count, seed)

    pool = pool_for(distributable_pool, percent)
    winners = equal_split(selected, pool, "random_selection")
    return GiftResult.build(
        winners,
        seed=seed.hex(),
        entropy=entropy_hex,
        eligible_count=len(eligible),
        **summarize(winners, pool),
    )


def ngo_donation(spec, transactions, holders, distributable_pool, entropy_hex, ctx) -> GiftResult:
    percent = param_percent(spec, "percent", 100)
    wallet = spec.params.get("ngo_wallet")
    if not wallet or not isinstance(wallet, str):
        raise ValidationError(f"Day {spec.day}: NGO wallet not specified in gift params")
    if wallet in ctx.excluded:
        raise ValidationError(f"Day {spec.day}: NGO wallet {wallet} is on the exclusion list")

    pool = pool_for(distributable_pool, percent)
    winners = [Winner(wallet=wallet, amount=pool, reason="full_donation")]
    return GiftResult.build(winners, ngo_wallet=wallet, percent=percent, **summarize(winners, pool))


def _param_time(spec: GiftSpecification, key: str, default: str) -> time:
    raw = spec.params.get(key, default)
    try:
        return time.fromisoformat(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Day {spec.day}: param {key}={raw!r} is not HH:MM:SS[.ffffff]") from None


def _at(day: date, t: time) -> datetime:
    return datetime.combine(day, t, tzinfo=timezone.utc)


def last_second_hour(spec, transactions, holders, distributable_pool, entropy_hex, ctx) -> GiftResult:
    percent = param_percent(spec, "allocation_percent", 40)
    winner_count = param_int(spec, "winner_count", 5, lo=1)
    start = _at(ctx.snapshot_date, _param_time(spec, "window_start", "23:00:00"))
    end = _at(ctx.snapshot_date, _param_time(spec, "window_end", "23:59:59.999999"))
    cutoff = _at(ctx.snapshot_date, _param_time(spec, "cutoff", "23:59:59.999000"))
    if end < start:
        raise ValidationError(f"Day {spec.day}: window_end precedes window_start")

    in_window: List[Tuple[float, datetime, str, str]] = []
    for tx in transactions:
        wallet = tx.participant()
        if not wallet or wallet in ctx.excluded:
            continue
        if start <= tx.block_time <= end:
            distance = abs((cutoff - tx.block_time).total_seconds())
            in_window.append((distance, tx.block_time, tx.signature, wallet))

    if not in_window:
        return GiftResult.empty("no_window_transactions", window_start=start.isoformat(), window_end=end.isoformat())

    in_window.sort(key=lambda r: (r[0], r[1], r[2]))
    picked: List[Tuple[float, datetime, str, str]] = []
    seen = set()
    for row in in_window:
        if row[3] in seen:
            continue
        seen.add(row[3])
        picked.append(row)
        if len(picked) == winner_count:
            break

    pool = pool_for(distributable_pool, percent)
    each = pool // len(picked)
    winners = [
        Winner(wallet=wallet, amount=each, reason=f"last_second_{block_time.isoformat()}")
        for _, block_time, _, wallet in picked
    ]
    return GiftResult.build(
        winners,
        cutoff=cutoff.isoformat(),
        window_transactions=len(in_window),
        closest=[
            {"wallet": wallet, "signature": sig, "seconds_from_cutoff": round(distance, 6)}
            for distance, _, sig, wallet in picked
        ],
        **summarize(winners, pool),
    )


def most_active_trader(spec, transactions, holders, distributable_pool, entropy_hex, ctx) -> GiftResult:
    percent = param_percent(spec, "allocation_percent", 100)
    min_trades = param_int(spec, "min_trades", 1, lo=1)

    # dict keeps first-seen order, which breaks ties
    counts: Dict[str, int] = {}
    for tx in transactions:
        wallet = tx.participant()
        if not wallet or wallet in ctx.excluded:
            continue
        counts[wallet] = counts.get(wallet, 0) + 1

    best: Optional[Tuple[str, int]] = None
    for wallet, count in counts.items():
        if count < min_trades:
            continue
        if best is None or count > best[1]:
            best = (wallet, count)

    if best is None:
        return GiftResult.empty("no_eligible_traders", min_trades=min_trades, total_wallets=len(counts))

    pool = pool_for(distributable_pool, percent)
    wallet, count = best
    winners = [Winner(wallet=wallet, amount=pool, reason=f"most_active_trader_{count}_transactions")]
    return GiftResult.build(
        winners,
        winner_tx_count=count,
        total_wallets=len(counts),
        **summarize(winners, pool),
    )


VARIANTS: Dict[Variant, VariantHandler] = {
    Variant.PROPORTIONAL_HOLDERS: VariantHandler(proportional_holders),
    Variant.TOP_BUYERS: VariantHandler(top_buyers),
    Variant.DETERMINISTIC_RANDOM: VariantHandler(deterministic_random, requires_entropy=True),
    Variant.NGO_DONATION: VariantHandler(ngo_donation),
    Variant.LAST_SECOND_HOUR: VariantHandler(last_second_hour),
    Variant.MOST_ACTIVE_TRADER: VariantHandler(most_active_trader),
}

_missing = set(Variant) - set(VARIANTS)
if _missing:
    raise RuntimeError(f"Gift variants without a handler: {sorted(v.value for v in _missing)}")
