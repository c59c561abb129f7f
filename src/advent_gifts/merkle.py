"""Merkle commitment over the advent gift entries.

Leaves keep their day order (no sorting): the index of a leaf is part of
what a verifier checks. Each leaf is ``sha256(canonical_json(entry) + salt)``
and each parent is ``sha256(left_hex + right_hex)``. A level with an odd
number of nodes pairs its last node with itself.
"""

from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

from .errors import ValidationError
from .project_constants import COMMITMENT_FIELDS, NUM_DAYS


def sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def canonical_json(obj: Any) -> str:
    """Key order and whitespace independent JSON encoding.

    Unknown types are rejected rather than stringified so two machines can
    never disagree about what was hashed.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hash_leaf(entry: Dict[str, Any], salt: str) -> str:
    committed = {k: v for k, v in entry.items() if k not in COMMITMENT_FIELDS}
    return sha256_hex(canonical_json(committed) + salt)


def hash_pair(left: str, right: str) -> str:
    return sha256_hex(left + right)


@dataclass(frozen=True)
class CommitmentTree:
    leaves: Tuple[str, ...]
    levels: Tuple[Tuple[str, ...], ...]

    @property
    def root(self) -> str:
        return self.levels[-1][0]

    @property
    def depth(self) -> int:
        return len(self.levels)


def build_levels(leaves: Sequence[str]) -> Tuple[Tuple[str, ...], ...]:
    if not leaves:
        raise ValidationError("Cannot build Merkle tree from empty leaves")

    levels: List[Tuple[str, ...]] = [tuple(leaves)]
    current = levels[0]
    while len(current) > 1:
        nxt: List[str] = []
        for i in range(0, len(current), 2):
            left = current[i]
            right = current[i + 1] if i + 1 < len(current) else left
            nxt.append(hash_pair(left, right))
        current = tuple(nxt)
        levels.append(current)
    return tuple(levels)


def build(
    entries: Sequence[Dict[str, Any]],
    salts: Sequence[str],
    expected_count: int = NUM_DAYS,
) -> CommitmentTree:
    """Build the commitment tree for the full, day-ordered entry list."""
    if len(entries) != len(salts):
        raise ValidationError("Number of entries must match number of salts")
    if len(entries) != expected_count:
        raise ValidationError(f"Must have exactly {expected_count} entries, got {len(entries)}")

    days = [e.get("day") for e in entries]
    if days != list(range(1, expected_count + 1)):
        raise ValidationError("Entries must cover days 1..%d exactly once, in order" % expected_count)

    leaves = [hash_leaf(entry, salt) for entry, salt in zip(entries, salts)]
    return CommitmentTree(leaves=tuple(leaves), levels=build_levels(leaves))


def proof(tree: CommitmentTree, index: int) -> List[str]:
    """Sibling hashes from the leaf level up to (not including) the root."""
    if not 0 <= index < len(tree.leaves):
        raise ValidationError(f"Leaf index {index} out of range")

    path: List[str] = []
    idx = index
    for level in tree.levels[:-1]:
        sibling = idx - 1 if idx % 2 == 1 else idx + 1
        # No sibling on an odd-sized level: the node was paired with itself
        path.append(level[sibling] if sibling < len(level) else level[idx])
        idx //= 2
    return path


def proof_for_day(tree: CommitmentTree, day: int) -> List[str]:
    return proof(tree, day - 1)


def verify(leaf: str, proof_path: Sequence[str], root: str, index: int, num_leaves: int = NUM_DAYS) -> bool:
    # Odd levels pair their last node with itself, so an index past the end
    # can walk the same path as a real leaf.
    if not 0 <= index < num_leaves:
        return False
    node = leaf
    idx = index
    for sibling in proof_path:
        if idx % 2 == 1:
            node = hash_pair(sibling, node)
        else:
            node = hash_pair(node, sibling)
        idx //= 2
    return idx == 0 and node == root


def generate_salt() -> str:
    return secrets.token_hex(32)


def generate_salts(n: int = NUM_DAYS) -> List[str]:
    return [generate_salt() for _ in range(n)]
