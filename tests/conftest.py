from __future__ import annotations

import base64
import json
import struct
import threading
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import base58
import httpx
import pytest

from advent_gifts.clock import SeasonCalendar
from advent_gifts.commitment import create_commitment, reveal_day
from advent_gifts.errors import TransientExternalError
from advent_gifts.models import HolderBalance, LedgerTransaction
from advent_gifts.store import GiftStore

SEASON_START = date(2025, 12, 1)
SALT = "season-salt"
FIXED_SALTS = [f"{i:02d}" * 32 for i in range(1, 25)]
CREATED_AT = datetime(2025, 11, 20, 12, 0, tzinfo=timezone.utc)
MINT_KEY = bytes(range(32))


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def owner_key(n: int) -> bytes:
    return bytes([n]) * 32


def owner_name(n: int) -> str:
    return base58.b58encode(owner_key(n)).decode("ascii")


def account_b64(owner: int, amount: int, size: int = 165) -> str:
    """Base64 SPL token account data: mint | owner | amount, zero padded."""
    raw = MINT_KEY + owner_key(owner) + struct.pack("<Q", amount)
    return base64.b64encode(raw + bytes(size - len(raw))).decode("ascii")


def track_store_threads(monkeypatch, store: GiftStore, names: Sequence[str]) -> Dict[str, int]:
    """Record which thread first runs each named store method."""
    seen: Dict[str, int] = {}
    for name in names:
        original = getattr(store, name)

        def wrapped(*args, _name=name, _original=original, **kwargs):
            seen.setdefault(_name, threading.get_ident())
            return _original(*args, **kwargs)

        monkeypatch.setattr(store, name, wrapped)
    return seen


def make_entries(overrides: Optional[Dict[int, Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
    """24 committed gift entries with one of every variant in the first week."""
    base: Dict[int, Dict[str, Any]] = {
        1: {
            "type": "proportional_holders",
            "params": {
                "allocation_percent": 40,
                "min_balance": 100,
                "min_balance_comparison": "gt",
                "token_airdrop": {"enabled": True, "total_amount": 2400, "winners": 24},
            },
            "hint": "Holders first",
        },
        2: {"type": "top_buyers_airdrop", "params": {"top_n": 2, "allocation_percent": 40}},
        3: {"type": "deterministic_random", "params": {"winner_count": 2, "allocation_percent": 40}},
        4: {"type": "full_donation_to_ngo", "params": {"ngo_wallet": "NgoWallet", "percent": 100}},
        5: {"type": "last_second_hour", "params": {"winner_count": 2, "allocation_percent": 40}},
        6: {"type": "most_active_trader", "params": {"min_trades": 1}},
    }
    entries = []
    for day in range(1, 25):
        spec = dict(base.get(day, {"type": "proportional_holders", "params": {"allocation_percent": 40}}))
        if overrides and day in overrides:
            spec = overrides[day]
        entries.append({"day": day, "distribution_source": "treasury_daily_fees", **spec})
    return entries


def commit(entries: Optional[List[Dict[str, Any]]] = None):
    return create_commitment(entries or make_entries(), FIXED_SALTS, now=CREATED_AT)


def reveal_all(store: GiftStore, artifacts) -> None:
    for reveal in artifacts.reveals:
        reveal_day(store, reveal, artifacts.public)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self._now = now
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += timedelta(seconds=seconds)


class FakeLedgerSource:
    def __init__(
        self,
        transactions: Sequence[LedgerTransaction] = (),
        holders: Sequence[HolderBalance] = (),
        fees: Optional[int] = 10_000_000_000,
        entropy: str = "abcd1234",
    ) -> None:
        self.transactions = list(transactions)
        self.holders = list(holders)
        self.fees = fees
        self.entropy = entropy
        self.calls: Counter = Counter()
        self.fail_transactions = 0

    async def fetch_transactions(self, day: int) -> List[LedgerTransaction]:
        self.calls["fetch_transactions"] += 1
        if self.fail_transactions:
            self.fail_transactions -= 1
            raise TransientExternalError("ledger unavailable")
        return list(self.transactions)

    async def fetch_holder_snapshot(self, day: int) -> List[HolderBalance]:
        self.calls["fetch_holder_snapshot"] += 1
        return list(self.holders)

    async def fetch_entropy(self, day: int) -> str:
        self.calls["fetch_entropy"] += 1
        return self.entropy

    async def fetch_hour_entropy(self, day: int, hour: int) -> str:
        self.calls["fetch_hour_entropy"] += 1
        return f"{self.entropy}-{day}-{hour}"

    async def fetch_day_fees(self, day: int) -> int:
        self.calls["fetch_day_fees"] += 1
        if self.fees is None:
            raise TransientExternalError("fees not recorded")
        return self.fees


class ChainSimulator:
    """A fake Solana RPC endpoint for httpx.MockTransport.

    Slot ``s`` has block time ``base_time + s // 2``; slots divisible by
    ``skip_every`` produced no block.
    """

    def __init__(self, head: int = 10_000, base_time: int = 1_000_000, skip_every: int = 7) -> None:
        self.head = head
        self.base_time = base_time
        self.skip_every = skip_every
        self.requests: List[Dict[str, Any]] = []
        self.accounts: List[str] = []

    def skipped(self, slot: int) -> bool:
        return slot % self.skip_every == 0

    def block_time(self, slot: int) -> int:
        return self.base_time + slot // 2

    def blockhash(self, slot: int) -> str:
        return f"Hash{slot}"

    def expected_last_slot_before(self, ts: int) -> int:
        return max(s for s in range(self.head + 1) if not self.skipped(s) and self.block_time(s) < ts)

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        method, params = body["method"], body["params"]

        def ok(result: Any) -> httpx.Response:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

        def skipped(slot: int) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "jsonrpc": "2.0",
                    "id": body["id"],
                    "error": {"code": -32007, "message": f"Slot {slot} was skipped"},
                },
            )

        if method == "getSlot":
            return ok(self.head)
        if method == "getBlockTime":
            slot = params[0]
            return skipped(slot) if self.skipped(slot) else ok(self.block_time(slot))
        if method == "getBlock":
            slot = params[0]
            return skipped(slot) if self.skipped(slot) else ok({"blockhash": self.blockhash(slot)})
        if method == "getProgramAccounts":
            return ok([{"pubkey": f"acc{i}", "account": {"data": [b64, "base64"]}} for i, b64 in enumerate(self.accounts)])
        return httpx.Response(400, json={"error": "unknown method"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def store(tmp_path) -> GiftStore:
    s = GiftStore(str(tmp_path / "gifts.db"))
    s.initialize()
    return s


@pytest.fixture
def calendar() -> SeasonCalendar:
    return SeasonCalendar(SEASON_START)


@pytest.fixture
def artifacts():
    return commit()


@pytest.fixture
def revealed_store(store: GiftStore, artifacts) -> GiftStore:
    reveal_all(store, artifacts)
    return store
