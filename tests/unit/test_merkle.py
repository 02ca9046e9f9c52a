"""
Unit tests for the set-commitment Merkle tree.

Tests cover:
1. Fixed values (empty set, single leaf, two leaves)
2. Order independence and set equality
3. Proof soundness for every member
4. Rejection of forged, tampered and stale proofs
5. Odd-level promotion
"""

import random

import pytest

from chanroot.core.encoding import leaf_digest, leaf_digests
from chanroot.core.errors import LeafNotFound
from chanroot.core.merkle import (
    EMPTY_ROOT,
    MerkleProof,
    MerkleTree,
    ProofStep,
    build_root,
    generate_proof,
    hash_pair,
    verify_path,
    verify_proof,
)
from chanroot.crypto import sha256


def leaves(n, channel="c"):
    return leaf_digests(channel, range(1, n + 1))


# =============================================================================
# Fixed Values
# =============================================================================


class TestFixedValues:
    """Tests for the degenerate shapes."""

    def test_empty_root(self):
        """Empty set root is sha256 of the empty string."""
        assert build_root([]) == EMPTY_ROOT == sha256(b"")

    def test_single_leaf_root_is_leaf(self):
        leaf = leaf_digest("c", 1)
        assert build_root([leaf]) == leaf

    def test_single_leaf_proof_is_empty(self):
        leaf = leaf_digest("c", 1)
        proof = generate_proof([leaf], leaf)
        assert len(proof) == 0
        assert verify_proof(leaf, leaf, proof)
        assert verify_path(leaf, leaf, [])

    def test_two_leaves(self):
        a, b = leaf_digest("c", 1), leaf_digest("c", 2)
        lo, hi = sorted([a, b])
        assert build_root([a, b]) == sha256(lo + hi)

    def test_hash_pair_commutative(self):
        a, b = leaf_digest("c", 1), leaf_digest("c", 2)
        assert hash_pair(a, b) == hash_pair(b, a)

    def test_rejects_non_digest_leaf(self):
        with pytest.raises(ValueError):
            MerkleTree([b"short"])


# =============================================================================
# Order Independence
# =============================================================================


class TestOrderIndependence:
    """Root must depend on the set only."""

    @pytest.mark.parametrize("n", [2, 3, 5, 8, 13, 33])
    def test_shuffled_input_same_root(self, n):
        base = leaves(n)
        expected = build_root(base)
        rng = random.Random(n)
        for _ in range(10):
            shuffled = list(base)
            rng.shuffle(shuffled)
            assert build_root(shuffled) == expected

    def test_duplicates_collapse(self):
        base = leaves(4)
        assert build_root(base + base[:2]) == build_root(base)

    def test_different_sets_differ(self):
        assert build_root(leaves(4)) != build_root(leaves(5))
        assert build_root(leaves(4)) != build_root(leaves(4, channel="d"))

    def test_same_set_via_different_histories(self):
        """Mint 1..5 then burn 3 equals a direct build over {1, 2, 4, 5}."""
        after_burn = [leaf for leaf in leaves(5) if leaf != leaf_digest("c", 3)]
        direct = leaf_digests("c", [5, 4, 2, 1])
        assert build_root(after_burn) == build_root(direct)


# =============================================================================
# Soundness
# =============================================================================


class TestSoundness:
    """Every member proves, against exactly this root."""

    @pytest.mark.parametrize("n", [1, 2, 3, 4, 5, 7, 9, 16, 17, 100])
    def test_every_member_verifies(self, n):
        tree = MerkleTree(leaves(n))
        for leaf in tree.leaves:
            proof = tree.prove(leaf)
            assert proof.root == tree.root
            assert verify_proof(tree.root, leaf, proof)
            assert verify_path(tree.root, leaf, proof.siblings)

    def test_proof_length_is_logarithmic(self):
        tree = MerkleTree(leaves(1024))
        assert len(tree.prove(tree.leaves[0])) == 10

    def test_prove_non_member_raises(self):
        tree = MerkleTree(leaves(4))
        with pytest.raises(LeafNotFound):
            tree.prove(leaf_digest("c", 99))

    def test_prove_on_empty_tree_raises(self):
        with pytest.raises(LeafNotFound):
            MerkleTree([]).prove(leaf_digest("c", 1))

    def test_contains(self):
        tree = MerkleTree(leaves(3))
        assert leaf_digest("c", 2) in tree
        assert leaf_digest("c", 4) not in tree
        assert b"junk" not in tree


# =============================================================================
# Negative Proofs
# =============================================================================


class TestForgedProofs:
    """Verification must fail for anything but the genuine path."""

    def setup_method(self):
        self.tree = MerkleTree(leaves(7))
        self.leaf = leaf_digest("c", 3)
        self.proof = self.tree.prove(self.leaf)

    def test_non_member_with_member_path(self):
        assert not verify_path(self.tree.root, leaf_digest("c", 8), self.proof.siblings)

    def test_tampered_sibling(self):
        siblings = list(self.proof.siblings)
        siblings[0] = bytes([siblings[0][0] ^ 1]) + siblings[0][1:]
        assert not verify_path(self.tree.root, self.leaf, siblings)

    def test_truncated_path(self):
        assert not verify_path(self.tree.root, self.leaf, self.proof.siblings[:-1])

    def test_extended_path(self):
        assert not verify_path(self.tree.root, self.leaf, self.proof.siblings + [self.leaf])

    def test_reordered_path(self):
        assert not verify_path(self.tree.root, self.leaf, list(reversed(self.proof.siblings)))

    def test_wrong_root(self):
        assert not verify_path(build_root(leaves(8)), self.leaf, self.proof.siblings)

    def test_flipped_direction_flag(self):
        step = self.proof.steps[0]
        forged = MerkleProof(
            leaf=self.proof.leaf,
            root=self.proof.root,
            steps=(ProofStep(step.sibling, not step.is_left),) + self.proof.steps[1:],
        )
        assert not verify_proof(self.tree.root, self.leaf, forged)

    @pytest.mark.parametrize("bad", [b"", b"x" * 31, b"x" * 33, None, "0" * 64])
    def test_malformed_input_is_false(self, bad):
        assert not verify_path(bad, self.leaf, self.proof.siblings)
        assert not verify_path(self.tree.root, bad, self.proof.siblings)
        assert not verify_path(self.tree.root, self.leaf, [bad])

    def test_stale_proof_fails_after_mutation(self):
        """Proof for the old root does not verify against the root after a mint."""
        grown = MerkleTree(leaves(8))
        assert not verify_path(grown.root, self.leaf, self.proof.siblings)
        assert verify_path(grown.root, self.leaf, grown.prove(self.leaf).siblings)

    def test_new_leaf_fails_against_old_root(self):
        """After a mint, the new leaf is not provable against the previous root."""
        grown = MerkleTree(leaves(8))
        minted = leaf_digest("c", 8)
        candidates = [grown.prove(minted).siblings, [], self.proof.siblings]
        candidates += [self.tree.prove(leaf).siblings for leaf in self.tree.leaves]
        for path in candidates:
            assert not verify_path(self.tree.root, minted, path)


# =============================================================================
# Odd Promotion
# =============================================================================


class TestOddPromotion:
    """Odd trailing node moves up unchanged and adds no proof step."""

    def test_three_leaves(self):
        a, b, c = sorted(leaves(3))
        assert build_root([a, b, c]) == hash_pair(hash_pair(a, b), c)

    def test_promoted_leaf_has_short_proof(self):
        tree = MerkleTree(leaves(3))
        promoted = tree.leaves[-1]
        proof = tree.prove(promoted)
        assert len(proof) == 1
        assert proof.siblings == [hash_pair(tree.leaves[0], tree.leaves[1])]

    def test_five_leaves(self):
        a, b, c, d, e = sorted(leaves(5))
        expected = hash_pair(hash_pair(hash_pair(a, b), hash_pair(c, d)), e)
        assert build_root([a, b, c, d, e]) == expected


class TestProofSerialization:
    """Tests for the hex dict form."""

    def test_dict_round_trip(self):
        tree = MerkleTree(leaves(6))
        proof = tree.prove(tree.leaves[2])
        restored = MerkleProof.from_dict(proof.to_dict())
        assert restored == proof
        assert verify_proof(tree.root, restored.leaf, restored)

    def test_dict_is_hex(self):
        proof = MerkleTree(leaves(2)).prove(leaf_digest("c", 1))
        data = proof.to_dict()
        assert data["root"].startswith("0x")
        assert len(data["steps"]) == 1
