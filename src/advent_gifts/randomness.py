"""Reproducible randomness derived from ledger entropy.

Anyone holding the published blockhash and the revealed salt can recompute
every draw: the seed is ``sha256(entropy + "|" + context_salt)`` and the
permutation is a Fisher-Yates shuffle fed by a SHA-256 counter-mode byte
stream over that seed. No system RNG is involved.
"""

from __future__ import annotations

import hashlib
from typing import Iterator, List, Optional, Sequence, TypeVar

T = TypeVar("T")

_WORD_BYTES = 8
_WORD_SPACE = 1 << (8 * _WORD_BYTES)


def seed(entropy_hex: str, context_salt: str) -> bytes:
    return hashlib.sha256(f"{entropy_hex}|{context_salt}".encode("utf-8")).digest()


def context_salt(base_salt: str, day: int, hour: Optional[int] = None) -> str:
    if hour is None:
        return f"day{day}|{base_salt}"
    return f"day{day}-hour{hour}|{base_salt}"


def byte_stream(seed_bytes: bytes) -> Iterator[bytes]:
    counter = 0
    while True:
        yield hashlib.sha256(seed_bytes + counter.to_bytes(8, "big")).digest()
        counter += 1


class _WordReader:
    def __init__(self, seed_bytes: bytes) -> None:
        self._blocks = byte_stream(seed_bytes)
        self._buf = b""

    def next_word(self) -> int:
        while len(self._buf) < _WORD_BYTES:
            self._buf += next(self._blocks)
        word, self._buf = self._buf[:_WORD_BYTES], self._buf[_WORD_BYTES:]
        return int.from_bytes(word, "big")

    def below(self, bound: int) -> int:
        """Uniform integer in [0, bound) by rejection sampling."""
        limit = _WORD_SPACE - (_WORD_SPACE % bound)
        while True:
            w = self.next_word()
            if w < limit:
                return w % bound


def shuffle(items: Sequence[T], seed_bytes: bytes) -> List[T]:
    out = list(items)
    reader = _WordReader(seed_bytes)
    for i in range(len(out) - 1, 0, -1):
        j = reader.below(i + 1)
        out[i], out[j] = out[j], out[i]
    return out


def select(items: Sequence[T], count: int, seed_bytes: bytes) -> List[T]:
    return shuffle(items, seed_bytes)[: max(0, count)]
