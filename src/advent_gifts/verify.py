from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

from . import merkle, randomness
from .commitment import COMMITMENT_FILE, PRIVATE_FILE, REVEALS_DIR, load_json, verify_reveal
from .errors import IntegrityError


def verify_reveal_file(reveal_path: str, commitment_path: str) -> Dict[str, Any]:
    """Check one ``reveals/day-XX.json`` against a published ``commitment.json``."""
    reveal = load_json(reveal_path)
    commitment = load_json(commitment_path)
    spec = verify_reveal(reveal, commitment)
    return {
        "ok": True,
        "day": spec.day,
        "type": spec.variant.value,
        "leaf": spec.leaf,
        "root": commitment["root"],
    }


def verify_artifact_dir(path: str) -> Dict[str, Any]:
    """Verify every reveal in an artifact directory and, when the private
    data is present, rebuild the whole tree from it."""
    base = Path(path)
    commitment = load_json(str(base / COMMITMENT_FILE))

    verified: List[int] = []
    for reveal_path in sorted((base / REVEALS_DIR).glob("day-*.json")):
        verified.append(verify_reveal(load_json(str(reveal_path)), commitment).day)

    private_path = base / PRIVATE_FILE
    if private_path.exists():
        private = load_json(str(private_path))
        tree = merkle.build(private["entries"], private["salts"], expected_count=commitment.get("numEntries", 24))
        if tree.root != commitment["root"]:
            raise IntegrityError(f"Root mismatch: commitment={commitment['root']} recomputed={tree.root}")
        if list(tree.leaves) != list(private["leaves"]):
            raise IntegrityError("Private leaves do not match the recomputed leaves")

    return {
        "ok": True,
        "root": commitment["root"],
        "verified_days": verified,
        "private_data_checked": private_path.exists(),
    }


def verify_random_draw(audit: Dict[str, Any]) -> Dict[str, Any]:
    """Recompute a seeded selection from its published inputs.

    ``audit`` holds ``entropy``, ``salt``, ``day``, optional ``hour``, the
    ``eligible`` wallets (sorted) and the ``selected`` wallets in order.
    """
    hour = audit.get("hour")
    context = randomness.context_salt(audit["salt"], int(audit["day"]), None if hour is None else int(hour))
    seed = randomness.seed(audit["entropy"], context)
    expected = list(audit["selected"])
    recomputed = randomness.select(sorted(audit["eligible"]), len(expected), seed)
    if recomputed != expected:
        raise IntegrityError(f"Selection mismatch: audit={expected} recomputed={recomputed}")
    return {"ok": True, "seed_hex": seed.hex(), "selected": recomputed}
