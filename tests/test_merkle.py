"""Commitment tree: leaf hashing, proofs and binding."""

from __future__ import annotations

import copy

import pytest

from advent_gifts import merkle
from advent_gifts.errors import ValidationError

from conftest import FIXED_SALTS, make_entries


def _tree():
    entries = make_entries()
    return entries, merkle.build(entries, FIXED_SALTS)


class TestCanonicalLeaf:
    def test_key_order_does_not_change_leaf(self) -> None:
        a = {"day": 1, "type": "x", "params": {"b": 2, "a": 1}}
        b = {"params": {"a": 1, "b": 2}, "type": "x", "day": 1}
        assert merkle.hash_leaf(a, "s") == merkle.hash_leaf(b, "s")

    def test_commitment_fields_are_not_hashed(self) -> None:
        entry = {"day": 1, "type": "x", "params": {}}
        decorated = {**entry, "salt": "zz", "leaf": "ab", "proof": ["cd"], "hash": "ef"}
        assert merkle.hash_leaf(entry, "s") == merkle.hash_leaf(decorated, "s")

    def test_salt_changes_leaf(self) -> None:
        entry = {"day": 1, "type": "x", "params": {}}
        assert merkle.hash_leaf(entry, "s1") != merkle.hash_leaf(entry, "s2")

    def test_canonical_json_is_compact_and_sorted(self) -> None:
        assert merkle.canonical_json({"b": [1, {"d": 1, "c": 2}], "a": "é"}) == '{"a":"é","b":[1,{"c":2,"d":1}]}'


class TestTreeShape:
    def test_odd_level_pairs_last_node_with_itself(self) -> None:
        a, b, c = (merkle.sha256_hex(x) for x in "abc")
        levels = merkle.build_levels([a, b, c])
        expected_root = merkle.hash_pair(merkle.hash_pair(a, b), merkle.hash_pair(c, c))
        assert levels[-1] == (expected_root,)

    def test_24_leaves_give_six_levels(self) -> None:
        _, tree = _tree()
        assert [len(level) for level in tree.levels] == [24, 12, 6, 3, 2, 1]
        assert tree.depth == 6

    def test_leaves_keep_day_order(self) -> None:
        entries, tree = _tree()
        for i, entry in enumerate(entries):
            assert tree.leaves[i] == merkle.hash_leaf(entry, FIXED_SALTS[i])

    def test_wrong_entry_count_rejected(self) -> None:
        entries = make_entries()[:23]
        with pytest.raises(ValidationError):
            merkle.build(entries, FIXED_SALTS[:23])

    def test_salt_count_mismatch_rejected(self) -> None:
        with pytest.raises(ValidationError):
            merkle.build(make_entries(), FIXED_SALTS[:23])

    def test_out_of_order_days_rejected(self) -> None:
        entries = make_entries()
        entries[0], entries[1] = entries[1], entries[0]
        with pytest.raises(ValidationError):
            merkle.build(entries, FIXED_SALTS)

    def test_empty_leaves_rejected(self) -> None:
        with pytest.raises(ValidationError):
            merkle.build_levels([])


class TestProofs:
    def test_every_leaf_verifies(self) -> None:
        _, tree = _tree()
        for i, leaf in enumerate(tree.leaves):
            assert merkle.verify(leaf, merkle.proof(tree, i), tree.root, i)

    def test_proof_for_day_uses_day_minus_one(self) -> None:
        _, tree = _tree()
        assert merkle.proof_for_day(tree, 7) == merkle.proof(tree, 6)

    def test_mutating_an_entry_breaks_verification(self) -> None:
        entries, tree = _tree()
        mutated = copy.deepcopy(entries[4])
        mutated["params"]["winner_count"] = 3
        leaf = merkle.hash_leaf(mutated, FIXED_SALTS[4])
        assert leaf != tree.leaves[4]
        assert not merkle.verify(leaf, merkle.proof(tree, 4), tree.root, 4)

    def test_wrong_index_fails(self) -> None:
        _, tree = _tree()
        assert not merkle.verify(tree.leaves[2], merkle.proof(tree, 2), tree.root, 3)

    def test_index_beyond_tree_fails(self) -> None:
        _, tree = _tree()
        # same low bits as index 2 but an extra high bit
        assert not merkle.verify(tree.leaves[2], merkle.proof(tree, 2), tree.root, 2 + 64)

    def test_index_past_last_leaf_fails(self) -> None:
        _, tree = _tree()
        # index 24 walks the duplicated path of leaf 16
        assert not merkle.verify(tree.leaves[16], merkle.proof(tree, 16), tree.root, 24)
        assert merkle.verify(tree.leaves[16], merkle.proof(tree, 16), tree.root, 16)

    def test_leaf_count_bounds_index(self) -> None:
        leaves = [merkle.sha256_hex(str(i)) for i in range(5)]
        tree = merkle.CommitmentTree(leaves=tuple(leaves), levels=merkle.build_levels(leaves))
        path = merkle.proof(tree, 4)
        assert merkle.verify(leaves[4], path, tree.root, 4, num_leaves=5)
        assert not merkle.verify(leaves[4], path, tree.root, 5, num_leaves=5)
        assert not merkle.verify(leaves[4], path, tree.root, -1, num_leaves=5)

    def test_proof_from_other_leaf_fails(self) -> None:
        _, tree = _tree()
        assert not merkle.verify(tree.leaves[0], merkle.proof(tree, 1), tree.root, 0)

    def test_proof_index_out_of_range(self) -> None:
        _, tree = _tree()
        with pytest.raises(ValidationError):
            merkle.proof(tree, 24)


class TestSalts:
    def test_salts_are_32_random_bytes(self) -> None:
        salts = merkle.generate_salts(24)
        assert len(salts) == 24
        assert len(set(salts)) == 24
        assert all(len(s) == 64 for s in salts)
        int(salts[0], 16)
