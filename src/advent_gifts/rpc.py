from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .errors import GiftError, TransientExternalError

log = logging.getLogger(__name__)

# Solana target: 400ms per slot
SLOT_SECONDS = 0.4

# getBlockTime / getBlock answers for slots that produced no block
SKIPPED_SLOT_CODES = (-32007, -32009, -32004)


class RpcError(TransientExternalError):
    def __init__(self, method: str, error: Dict[str, Any]) -> None:
        super().__init__(f"RPC error from {method}: {error}")
        self.method = method
        self.code = error.get("code") if isinstance(error, dict) else None


class RpcClient:
    def __init__(
        self,
        rpc_url: str,
        timeout_s: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.client = httpx.AsyncClient(timeout=timeout_s, transport=transport)
        self._next_id = 0

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "RpcClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _post(self, method: str, params: List[Any]) -> Dict[str, Any]:
        self._next_id += 1
        payload = {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": params}
        try:
            resp = await self.client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientExternalError(f"{method}: RPC timeout ({e})") from e
        except httpx.TransportError as e:
            raise TransientExternalError(f"{method}: RPC transport error ({e})") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientExternalError(f"{method}: RPC returned HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise GiftError(f"{method}: RPC returned HTTP {resp.status_code}: {resp.text[:200]}")

        data = resp.json()
        if "error" in data:
            raise RpcError(method, data["error"])
        return data

    async def get_slot(self, commitment: str = "finalized") -> int:
        """Returns the current slot."""
        data = await self._post("getSlot", [{"commitment": commitment}])
        return int(data["result"])

    async def get_block_time(self, slot: int) -> Optional[int]:
        """Unix timestamp for a slot, or None when the slot was skipped."""
        try:
            data = await self._post("getBlockTime", [slot])
        except RpcError as e:
            if e.code in SKIPPED_SLOT_CODES:
                return None
            raise
        result = data.get("result")
        return int(result) if result is not None else None

    async def get_blockhash_for_slot(self, slot: int) -> str:
        data = await self._post(
            "getBlock",
            [
                slot,
                {
                    "encoding": "json",
                    "transactionDetails": "none",
                    "rewards": False,
                    "commitment": "finalized",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        result = data.get("result")
        if not result or "blockhash" not in result:
            raise TransientExternalError(f"Slot {slot}: getBlock returned no blockhash.")
        return result["blockhash"]

    async def get_program_accounts_base64(
        self,
        program_id: str,
        mint: str,
        classic_token_program: bool,
    ) -> List[str]:
        """
        Returns base64 strings for account data.
        Note: For classic SPL Token accounts, we enforce dataSize=165.
        Token-2022 accounts can vary due to extensions.
        """
        filters: List[Dict[str, Any]] = [{"memcmp": {"offset": 0, "bytes": mint}}]
        if classic_token_program:
            filters.append({"dataSize": 165})

        data = await self._post(
            "getProgramAccounts",
            [program_id, {"encoding": "base64", "filters": filters, "commitment": "finalized"}],
        )
        # item['account']['data'] is [base64_str, "base64"]
        return [item["account"]["data"][0] for item in data.get("result", [])]

    async def _first_block_from(self, slot: int, limit: int) -> Tuple[int, Optional[int]]:
        """First non-skipped slot in [slot, limit) and its block time."""
        s = slot
        while s < limit:
            t = await self.get_block_time(s)
            if t is not None:
                return s, t
            s += 1
        return limit, None

    async def last_slot_before(self, unix_ts: int) -> int:
        """Highest finalized slot whose block time is strictly before ``unix_ts``.

        Binary search over getBlockTime, seeded with a 400ms-per-slot estimate.
        Raises TransientExternalError if the chain has not reached ``unix_ts``
        yet, since the answer could still change.
        """
        head = await self.get_slot()
        head_slot, head_time = head, await self.get_block_time(head)
        while head_time is None and head_slot > 0:
            head_slot -= 1
            head_time = await self.get_block_time(head_slot)
        if head_time is None or head_time < unix_ts:
            raise TransientExternalError(f"Chain has not finalized past {unix_ts} yet (head slot {head})")

        span = max(1000, int((head_time - unix_ts) / SLOT_SECONDS * 1.2))
        hi = head_slot
        lo = max(0, hi - span)
        while True:
            lo_slot, lo_time = await self._first_block_from(lo, hi)
            if lo_time is not None and lo_time < unix_ts:
                lo = lo_slot
                break
            if lo == 0:
                raise GiftError(f"No block before {unix_ts}")
            hi = lo
            lo = max(0, lo - span)
            span *= 2

        while hi - lo > 1:
            mid = (lo + hi) // 2
            s, t = await self._first_block_from(mid, hi)
            if t is not None and t < unix_ts:
                lo = s
            else:
                hi = mid
        log.debug("Last slot before %d: %d", unix_ts, lo)
        return lo
