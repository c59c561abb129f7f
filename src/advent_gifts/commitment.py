from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from . import merkle
from .errors import IntegrityError, ValidationError
from .models import GiftSpecification
from .project_constants import CANONICAL_FORM, HASH_ALGORITHM, NUM_DAYS, SEASON

log = logging.getLogger(__name__)

COMMITMENT_FILE = "commitment.json"
PRIVATE_FILE = "private-merkle-data.json"
REVEALS_DIR = "reveals"


@dataclass(frozen=True)
class CommitmentArtifacts:
    public: Dict[str, Any]
    private: Dict[str, Any]
    reveals: List[Dict[str, Any]]

    @property
    def root(self) -> str:
        return self.public["root"]


def create_commitment(
    entries: Sequence[Dict[str, Any]],
    salts: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
) -> CommitmentArtifacts:
    """Build the public commitment, the private reveal data and all 24 reveals.

    Entries are validated (each must parse as a GiftSpecification) and sorted
    by day before hashing.
    """
    for e in entries:
        GiftSpecification.from_entry(e)

    ordered = sorted(entries, key=lambda e: e["day"])
    salts = list(salts) if salts is not None else merkle.generate_salts(len(ordered))
    tree = merkle.build(ordered, salts)
    created_at = (now or datetime.now(timezone.utc)).isoformat()

    public = {
        "season": SEASON,
        "root": tree.root,
        "hashAlgorithm": HASH_ALGORITHM,
        "numEntries": len(ordered),
        "canonical": CANONICAL_FORM,
        "createdAt": created_at,
    }
    private = {
        "season": SEASON,
        "entries": list(ordered),
        "salts": salts,
        "leaves": list(tree.leaves),
        "root": tree.root,
        "createdAt": created_at,
    }
    reveals = [
        {
            "day": entry["day"],
            "entry": entry,
            "salt": salts[i],
            "leaf": tree.leaves[i],
            "proof": merkle.proof(tree, i),
            "root": tree.root,
        }
        for i, entry in enumerate(ordered)
    ]
    log.info("Commitment built: root=%s entries=%d depth=%d", tree.root, len(ordered), tree.depth)
    return CommitmentArtifacts(public=public, private=private, reveals=reveals)


def write_artifacts(artifacts: CommitmentArtifacts, out_dir: str) -> Path:
    base = Path(out_dir)
    (base / REVEALS_DIR).mkdir(parents=True, exist_ok=True)
    _write_json(base / COMMITMENT_FILE, artifacts.public)
    _write_json(base / PRIVATE_FILE, artifacts.private)
    for reveal in artifacts.reveals:
        _write_json(base / REVEALS_DIR / f"day-{reveal['day']:02d}.json", reveal)
    return base


def _write_json(path: Path, obj: Any) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2)


def load_json(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_entries(path: str) -> List[Dict[str, Any]]:
    """Accepts ``{"gifts": [...]}`` or a bare list of entries."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("gifts", data.get("entries"))
    if not isinstance(data, list):
        raise ValidationError(f"{path}: expected a list of gift entries")
    return data


def verify_reveal(reveal: Dict[str, Any], commitment: Dict[str, Any]) -> GiftSpecification:
    """Check a per-day reveal against the previously published commitment.

    Returns the revealed specification. Any disagreement raises IntegrityError.
    """
    try:
        day = int(reveal["day"])
        entry = reveal["entry"]
        salt = reveal["salt"]
        leaf = reveal["leaf"]
        proof = list(reveal["proof"])
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed reveal object: {e}") from e
    if not isinstance(entry, dict):
        raise ValidationError(f"Malformed reveal object: entry must be an object, got {type(entry).__name__}")

    published_root = commitment.get("root")
    if commitment.get("hashAlgorithm", HASH_ALGORITHM) != HASH_ALGORITHM:
        raise IntegrityError(f"Unsupported hash algorithm {commitment.get('hashAlgorithm')!r}")
    if reveal.get("root") != published_root:
        raise IntegrityError(
            f"Day {day}: reveal root {reveal.get('root')} != published root {published_root}"
        )
    if entry.get("day") != day:
        raise IntegrityError(f"Day {day}: revealed entry is for day {entry.get('day')}")

    recomputed = merkle.hash_leaf(entry, salt)
    if recomputed != leaf:
        raise IntegrityError(f"Day {day}: leaf mismatch (recomputed {recomputed}, revealed {leaf})")
    num_entries = int(commitment.get("numEntries", NUM_DAYS))
    if not merkle.verify(leaf, proof, published_root, day - 1, num_entries):
        raise IntegrityError(f"Day {day}: Merkle proof does not verify against {published_root}")

    return GiftSpecification.from_entry(
        entry, salt=salt, leaf=leaf, proof=proof, commitment_hash=published_root
    )


def verify_spec(spec: GiftSpecification) -> None:
    """Re-check a stored specification before it is executed."""
    if not spec.leaf or not spec.commitment_hash:
        raise IntegrityError(f"Day {spec.day}: specification carries no commitment proof")
    if merkle.hash_leaf(spec.entry(), spec.salt) != spec.leaf:
        raise IntegrityError(f"Day {spec.day}: stored entry no longer matches its leaf")
    if not merkle.verify(spec.leaf, spec.proof, spec.commitment_hash, spec.day - 1, NUM_DAYS):
        raise IntegrityError(f"Day {spec.day}: stored proof does not verify")


def reveal_day(store: Any, reveal: Dict[str, Any], commitment: Dict[str, Any]) -> GiftSpecification:
    """Verify a reveal and persist it. A day can only ever hold one entry."""
    spec = verify_reveal(reveal, commitment)
    if not 1 <= spec.day <= NUM_DAYS:
        raise ValidationError(f"Invalid day {spec.day}")

    if not store.insert_gift_spec(spec):
        existing = store.get_gift_spec(spec.day)
        if existing is None or existing.leaf != spec.leaf:
            raise IntegrityError(f"Day {spec.day} was already revealed with a different entry")
        log.info("Day %d already revealed (leaf %s)", spec.day, spec.leaf)
        return existing

    store.append_audit(
        "reveal_gift",
        {"day": spec.day, "type": spec.variant.value, "leaf": spec.leaf, "root": spec.commitment_hash},
        resource_type="gift_spec",
        resource_id=str(spec.day),
    )
    log.info("Day %d revealed and verified against root %s", spec.day, spec.commitment_hash)
    return spec
