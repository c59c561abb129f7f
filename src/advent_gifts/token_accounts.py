from __future__ import annotations

import base64
import binascii
import struct
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set, Tuple

import base58

from .models import HolderBalance

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"


def parse_owner_and_amount(account_data: bytes) -> Optional[Tuple[str, int]]:
    """
    Standard token account layout (works for classic; Token-2022 typically keeps these offsets too).
    Mint(0-32) | Owner(32-64) | Amount(64-72)
    """
    if len(account_data) < 72:
        return None

    owner = base58.b58encode(account_data[32:64]).decode("ascii")
    amount = struct.unpack("<Q", account_data[64:72])[0]
    return owner, amount


def aggregate_holders_from_b64(b64_items: Iterable[str]) -> Dict[str, int]:
    """Sum token balances per owner. One owner can hold several token accounts."""
    balances: Dict[str, int] = defaultdict(int)

    for b64_str in b64_items:
        try:
            raw = base64.b64decode(b64_str, validate=True)
        except (binascii.Error, ValueError):
            continue

        parsed = parse_owner_and_amount(raw)
        if not parsed:
            continue

        owner, amount = parsed
        if amount > 0:
            balances[owner] += int(amount)

    return dict(balances)


def to_holder_balances(owner_to_balance: Dict[str, int]) -> List[HolderBalance]:
    # Deterministic ordering (critical for reproducibility)
    return [HolderBalance(wallet=w, balance=b) for w, b in sorted(owner_to_balance.items())]


def load_excluded_wallets(path: Optional[str]) -> Set[str]:
    if not path:
        return set()
    out: Set[str] = set()
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            w = line.strip()
            if not w or w.startswith("#"):
                continue
            out.add(w)
    return out
