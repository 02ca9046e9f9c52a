"""
Set-commitment Merkle tree for channel membership.

Conceptual Background:
---------------------
A channel's issued tokens are committed to with a single 32-byte root that the
external ledger stores. A mint is honored only if the ledger can recompute
that root from the new token's leaf and a short sibling path.

The root must be a pure function of the *set* of leaves. Two rules make it so:

1. Leaves are sorted byte-wise before the bottom level is laid out, so
   insertion order never reaches the tree.
2. Every internal node is sha256(min(a, b) || max(a, b)). Because each pair is
   ordered by value, a verifier needs no left/right information: it folds the
   running hash with each sibling in byte order.

Odd levels promote their last node unchanged to the next level (no
self-pairing). A promoted node contributes no step to a proof.

Fixed values:
- Empty set: EMPTY_ROOT = sha256(b"")
- Single leaf: root == that leaf, proof is empty

This is not an incremental structure. Every mutation rebuilds the whole tree
from the current leaf set, trading throughput for auditability.

Properties:
----------
- Build: O(n log n) (sort + level hashing)
- Prove: O(n log n) (rebuild) + O(log n) path extraction
- Verify: O(log n)
"""

from bisect import bisect_left
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

from chanroot.crypto import DIGEST_SIZE, bytes_to_hex, hex_to_bytes, sha256
from chanroot.core.errors import LeafNotFound
from chanroot.utils.logger import get_logger

logger = get_logger("merkle")

EMPTY_ROOT = sha256(b"")


# =============================================================================
# Node Hashing
# =============================================================================


def hash_pair(a: bytes, b: bytes) -> bytes:
    """Hash two nodes in byte order, so hash_pair(a, b) == hash_pair(b, a)."""
    lo, hi = (a, b) if a <= b else (b, a)
    return sha256(lo + hi)


# =============================================================================
# Proofs
# =============================================================================


@dataclass(frozen=True)
class ProofStep:
    """
    One level of a membership proof.

    Attributes:
        sibling: 32-byte sibling digest
        is_left: True if the sibling is hashed first (sibling <= running hash)
    """
    sibling: bytes
    is_left: bool


@dataclass(frozen=True)
class MerkleProof:
    """
    Sibling path from one leaf to one root.

    A proof is meaningful only for the (leaf, root) pair it was generated for.
    Any mutation of the leaf set produces a new root and makes it stale.
    """
    leaf: bytes
    root: bytes
    steps: Tuple[ProofStep, ...] = ()

    @property
    def siblings(self) -> List[bytes]:
        """Wire form accepted by the external ledger: ordered 32-byte siblings."""
        return [step.sibling for step in self.steps]

    def __len__(self) -> int:
        return len(self.steps)

    def to_dict(self) -> dict:
        return {
            "leaf": bytes_to_hex(self.leaf),
            "root": bytes_to_hex(self.root),
            "steps": [
                {"sibling": bytes_to_hex(s.sibling), "is_left": s.is_left}
                for s in self.steps
            ],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MerkleProof":
        return cls(
            leaf=hex_to_bytes(data["leaf"]),
            root=hex_to_bytes(data["root"]),
            steps=tuple(
                ProofStep(hex_to_bytes(s["sibling"]), bool(s["is_left"]))
                for s in data["steps"]
            ),
        )


# =============================================================================
# Merkle Tree
# =============================================================================


class MerkleTree:
    """
    Binary Merkle tree over an unordered set of 32-byte leaves.

    Duplicate leaves collapse. All levels are kept so proofs can be extracted
    without rehashing.

    Attributes:
        levels: levels[0] is the sorted leaf list, levels[-1] == [root]
    """

    def __init__(self, leaves: Iterable[bytes] = ()):
        unique = set()
        for leaf in leaves:
            if not isinstance(leaf, (bytes, bytearray)) or len(leaf) != DIGEST_SIZE:
                raise ValueError(f"Leaf must be {DIGEST_SIZE} bytes")
            unique.add(bytes(leaf))

        self.levels: List[List[bytes]] = self._build(sorted(unique))
        logger.debug(f"Built tree: {len(unique)} leaves, depth {max(len(self.levels) - 1, 0)}")

    @staticmethod
    def _build(sorted_leaves: List[bytes]) -> List[List[bytes]]:
        if not sorted_leaves:
            return []

        levels = [sorted_leaves]
        layer = sorted_leaves
        while len(layer) > 1:
            next_layer = [
                hash_pair(layer[i], layer[i + 1])
                for i in range(0, len(layer) - 1, 2)
            ]
            if len(layer) % 2 == 1:
                next_layer.append(layer[-1])  # promote unchanged
            levels.append(next_layer)
            layer = next_layer
        return levels

    @property
    def root(self) -> bytes:
        if not self.levels:
            return EMPTY_ROOT
        return self.levels[-1][0]

    @property
    def leaves(self) -> List[bytes]:
        return list(self.levels[0]) if self.levels else []

    def __len__(self) -> int:
        return len(self.levels[0]) if self.levels else 0

    def __contains__(self, leaf: bytes) -> bool:
        return self._index_of(leaf) is not None

    def _index_of(self, leaf: bytes):
        if not self.levels or not _is_digest(leaf):
            return None
        leaf = bytes(leaf)
        sorted_leaves = self.levels[0]
        i = bisect_left(sorted_leaves, leaf)
        if i < len(sorted_leaves) and sorted_leaves[i] == leaf:
            return i
        return None

    def prove(self, leaf: bytes) -> MerkleProof:
        """
        Generate the membership proof for a leaf.

        Raises:
            LeafNotFound: if the leaf is not in the tree
        """
        index = self._index_of(leaf)
        if index is None:
            raise LeafNotFound(
                "Leaf is not a member of the set",
                {"leaf": bytes_to_hex(leaf) if isinstance(leaf, (bytes, bytearray)) else repr(leaf)},
            )

        steps = []
        current = leaf
        for layer in self.levels[:-1]:
            sibling_index = index ^ 1
            if sibling_index < len(layer):
                sibling = layer[sibling_index]
                steps.append(ProofStep(sibling=sibling, is_left=sibling <= current))
                current = hash_pair(current, sibling)
            index //= 2

        return MerkleProof(leaf=bytes(leaf), root=self.root, steps=tuple(steps))


# =============================================================================
# Functional API
# =============================================================================


def build_root(leaves: Iterable[bytes]) -> bytes:
    """Root of the set of leaves. Order and duplicates are irrelevant."""
    return MerkleTree(leaves).root


def generate_proof(leaves: Iterable[bytes], target: bytes) -> MerkleProof:
    """Proof for target against the root of exactly this leaf set."""
    return MerkleTree(leaves).prove(target)


def verify_path(root: bytes, leaf: bytes, siblings: Sequence[bytes]) -> bool:
    """
    Verify a wire proof.

    Folds the leaf with each sibling in byte order and compares with the
    claimed root. Pure: consults nothing but its arguments. Malformed input
    yields False rather than an exception.
    """
    if not _is_digest(root) or not _is_digest(leaf):
        return False

    current = bytes(leaf)
    for sibling in siblings:
        if not _is_digest(sibling):
            return False
        current = hash_pair(current, bytes(sibling))

    return current == root


def verify_proof(root: bytes, leaf: bytes, proof: MerkleProof) -> bool:
    """
    Verify a structured proof.

    Besides the fold performed by verify_path, every step's is_left flag must
    agree with the byte order of the values it claims to describe.
    """
    if not _is_digest(root) or not _is_digest(leaf):
        return False

    current = bytes(leaf)
    for step in proof.steps:
        if not _is_digest(step.sibling):
            return False
        if step.is_left != (step.sibling <= current):
            return False
        current = hash_pair(current, step.sibling)

    return current == root


def _is_digest(value) -> bool:
    return isinstance(value, (bytes, bytearray)) and len(value) == DIGEST_SIZE
