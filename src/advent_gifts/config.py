from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import date, time
from typing import FrozenSet, Optional

from dotenv import find_dotenv, load_dotenv

from .clock import parse_close_time
from .errors import ConfigError, ValidationError
from .project_constants import U64_MAX
from .token_accounts import load_excluded_wallets

TRANSFER_MODES = ("dryrun",)


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_int(name: str, default: int, lo: int = 0, hi: int = U64_MAX) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name}={raw!r} is not an integer") from None
    if not lo <= value <= hi:
        raise ConfigError(f"{name}={value} outside [{lo}, {hi}]")
    return value


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name}={raw!r} is not a number") from None
    if value < 0:
        raise ConfigError(f"{name} must not be negative")
    return value


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    db_path: str = "advent_gifts.db"
    salt: str = ""
    season_start: date = date(2025, 12, 1)
    daily_close_time: time = time(0, 5)
    retry_attempts: int = 3
    retry_delay_s: float = 60.0
    io_timeout_s: float = 30.0
    daily_fee_cap: Optional[int] = None
    excluded_wallets: FrozenSet[str] = field(default_factory=frozenset)
    token_mint: str = ""
    treasury_wallet: str = ""
    airdrop_wallet: str = ""
    transfer_mode: str = "dryrun"

    @staticmethod
    def from_env(
        rpc_url_override: str | None = None,
        db_path_override: str | None = None,
        require_rpc: bool = True,
    ) -> "Settings":
        load_dotenv(find_dotenv(usecwd=True))

        # If user provides --rpc-url, trust it.
        # Otherwise, use RPC_URL from env if present, else build helius url from key.
        rpc_url = rpc_url_override or _env("RPC_URL")
        helius_key = _env("HELIUS_API_KEY")
        if not rpc_url and helius_key:
            rpc_url = f"https://mainnet.helius-rpc.com/?api-key={helius_key}"
        if not rpc_url and require_rpc:
            raise ConfigError("Missing HELIUS_API_KEY (or RPC_URL). Put it in .env or export it.")

        raw_start = _env("SEASON_START", "2025-12-01")
        try:
            season_start = date.fromisoformat(raw_start)
        except ValueError:
            raise ConfigError(f"SEASON_START={raw_start!r} is not YYYY-MM-DD") from None

        try:
            close_time = parse_close_time(_env("DAILY_CLOSE_TIME", "00:05"))
        except ValidationError as e:
            raise ConfigError(str(e)) from None

        excluded = {w.strip() for w in _env("EXCLUDED_WALLETS").split(",") if w.strip()}
        excluded |= load_excluded_wallets(_env("EXCLUDED_WALLETS_FILE") or None)
        # Project wallets never receive their own gifts
        for name in ("DEV_WALLET", "AIRDROP_WALLET", "TREASURY_WALLET"):
            if _env(name):
                excluded.add(_env(name))

        transfer_mode = _env("TRANSFER_MODE", "dryrun").lower()
        if transfer_mode not in TRANSFER_MODES:
            raise ConfigError(f"TRANSFER_MODE={transfer_mode!r} not supported (expected one of {TRANSFER_MODES})")

        fee_cap = _env_int("DAILY_FEE_CAP", -1, lo=-1)

        return Settings(
            rpc_url=rpc_url,
            db_path=db_path_override or _env("GIFTS_DB_PATH", "advent_gifts.db"),
            salt=_env("GIFTS_SALT"),
            season_start=season_start,
            daily_close_time=close_time,
            retry_attempts=_env_int("GIFT_RETRY_ATTEMPTS", 3, lo=1, hi=100),
            retry_delay_s=_env_float("GIFT_RETRY_DELAY_S", 60.0),
            io_timeout_s=_env_float("IO_TIMEOUT_S", 30.0),
            daily_fee_cap=None if fee_cap < 0 else fee_cap,
            excluded_wallets=frozenset(excluded),
            token_mint=_env("TOKEN_MINT"),
            treasury_wallet=_env("TREASURY_WALLET"),
            airdrop_wallet=_env("AIRDROP_WALLET"),
            transfer_mode=transfer_mode,
        )
