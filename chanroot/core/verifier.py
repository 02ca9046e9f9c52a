"""
External verifier boundary.

The external verifier (a ledger contract) is the authority on every channel's
root. The engine proposes a root transition as one RootUpdate; acceptance by
the verifier is the commit point of a mutation.

Wire layout (fixed for every caller):
- every digest (root, leaf, sibling) is exactly 32 raw bytes
- a proof is an ordered list of 32-byte siblings, leaf-to-root
- a leaf is sha256 of the canonical "{channel_id}:{token_number}" string
- to_dict() renders bytes as 0x-prefixed lowercase hex

prev_root is the staleness nonce: the verifier refuses any update whose
prev_root differs from the root it currently stores.

LedgerVerifier is an in-memory reference implementation of the contract-side
check. It is what the engine is tested against and what tooling can use for
dry runs.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import Deque, Dict, List, Optional, Protocol, runtime_checkable

from chanroot.crypto import bytes_to_hex
from chanroot.core.encoding import leaf_digest
from chanroot.core.errors import (
    InvalidChannelId,
    InvalidTokenNumber,
    RootMismatch,
    VerifierRejected,
)
from chanroot.core.merkle import verify_path
from chanroot.utils.logger import get_logger
from chanroot.utils.validation import validate_hash, validate_proof

logger = get_logger("verifier")


class UpdateKind(IntEnum):
    """Kind of root transition being proposed."""
    CREATE = 0
    MINT = 1
    BURN = 2


@dataclass(frozen=True)
class RootUpdate:
    """
    A proposed root transition, submitted as one unit.

    Attributes:
        channel_id: Channel being mutated
        kind: CREATE, MINT or BURN
        new_root: Root over the mutated leaf set
        prev_root: Root the mutation was computed from (None for CREATE)
        token_number: Token minted or burned (None for CREATE)
        leaf: Leaf digest of that token
        proof: Siblings for the leaf. MINT: against new_root (None for a
            singleton set). BURN: against prev_root.
        next_token_number: Counter after the mutation
    """
    channel_id: str
    kind: UpdateKind
    new_root: bytes
    prev_root: Optional[bytes] = None
    token_number: Optional[int] = None
    leaf: Optional[bytes] = None
    proof: Optional[List[bytes]] = None
    next_token_number: int = 1

    def to_dict(self) -> dict:
        return {
            "channel_id": self.channel_id,
            "kind": self.kind.name.lower(),
            "new_root": bytes_to_hex(self.new_root),
            "prev_root": bytes_to_hex(self.prev_root) if self.prev_root is not None else None,
            "token_number": self.token_number,
            "leaf": bytes_to_hex(self.leaf) if self.leaf is not None else None,
            "proof": [bytes_to_hex(s) for s in self.proof] if self.proof is not None else None,
            "next_token_number": self.next_token_number,
        }


@dataclass(frozen=True)
class SubmissionReceipt:
    """Acknowledgement of an accepted update."""
    channel_id: str
    kind: UpdateKind
    root: bytes
    version: int


@runtime_checkable
class ExternalVerifier(Protocol):
    """Interface the channel state machine requires from the ledger side."""

    async def submit_root(self, update: RootUpdate) -> SubmissionReceipt:
        ...

    async def get_root(self, channel_id: str) -> Optional[bytes]:
        ...

    async def get_next_token_number(self, channel_id: str) -> Optional[int]:
        ...


# =============================================================================
# Reference Ledger
# =============================================================================


@dataclass
class LedgerChannel:
    """Verifier-side channel record."""
    root: bytes
    next_token_number: int
    version: int = 0


class LedgerVerifier:
    """
    In-memory external verifier.

    Checks, per update kind:
    - CREATE: channel unknown; next_token_number >= 1
    - MINT: prev_root matches; token_number equals the stored counter;
      leaf equals the recomputed leaf; proof verifies leaf against new_root
      (an absent or empty proof therefore requires new_root == leaf)
    - BURN: prev_root matches; token_number below the counter; leaf equals
      the recomputed leaf; proof verifies leaf against the stored root
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.channels: Dict[str, LedgerChannel] = {}
        self.submissions: List[RootUpdate] = []
        self._injected: Deque[Exception] = deque()

    # =========================================================================
    # Test Hooks
    # =========================================================================

    def fail_next(self, error: Exception) -> None:
        """Make the next submission raise error instead of being processed."""
        self._injected.append(error)

    def set_root(self, channel_id: str, root: bytes) -> None:
        """Overwrite a stored root (simulates another writer)."""
        self.channels[channel_id].root = root
        self.channels[channel_id].version += 1

    # =========================================================================
    # ExternalVerifier
    # =========================================================================

    async def get_root(self, channel_id: str) -> Optional[bytes]:
        channel = self.channels.get(channel_id)
        return channel.root if channel else None

    async def get_next_token_number(self, channel_id: str) -> Optional[int]:
        channel = self.channels.get(channel_id)
        return channel.next_token_number if channel else None

    async def submit_root(self, update: RootUpdate) -> SubmissionReceipt:
        if self.latency:
            await asyncio.sleep(self.latency)

        self.submissions.append(update)
        if self._injected:
            raise self._injected.popleft()

        valid, err = validate_hash(update.new_root, "new_root")
        if not valid:
            self._reject(update, err)

        if update.kind == UpdateKind.CREATE:
            return self._create(update)

        channel = self.channels.get(update.channel_id)
        if channel is None:
            self._reject(update, "channel not found")

        if update.prev_root != channel.root:
            logger.warning(f"Stale update for {update.channel_id}: prev_root does not match stored root")
            raise RootMismatch(
                "prev_root does not match the stored root",
                {
                    "channel_id": update.channel_id,
                    "stored_root": bytes_to_hex(channel.root),
                    "prev_root": bytes_to_hex(update.prev_root) if update.prev_root else None,
                },
            )

        if update.token_number is None or update.leaf is None:
            self._reject(update, "token_number and leaf are required")
        try:
            expected_leaf = leaf_digest(update.channel_id, update.token_number)
        except (InvalidChannelId, InvalidTokenNumber) as e:
            self._reject(update, e.message)
        if update.leaf != expected_leaf:
            self._reject(update, "leaf does not match token id")

        proof = update.proof or []
        valid, err = validate_proof(proof)
        if not valid:
            self._reject(update, err)

        if update.kind == UpdateKind.MINT:
            return self._mint(update, channel, proof)
        if update.kind == UpdateKind.BURN:
            return self._burn(update, channel, proof)

        self._reject(update, f"unknown update kind {update.kind}")

    # =========================================================================
    # Checks
    # =========================================================================

    def _create(self, update: RootUpdate) -> SubmissionReceipt:
        if update.channel_id in self.channels:
            self._reject(update, "channel already exists")
        if update.next_token_number < 1:
            self._reject(update, "next_token_number must be >= 1")

        self.channels[update.channel_id] = LedgerChannel(
            root=update.new_root,
            next_token_number=update.next_token_number,
        )
        return self._accept(update, self.channels[update.channel_id])

    def _mint(self, update: RootUpdate, channel: LedgerChannel, proof: List[bytes]) -> SubmissionReceipt:
        if update.token_number != channel.next_token_number:
            self._reject(update, f"expected token number {channel.next_token_number}")
        if not verify_path(update.new_root, update.leaf, proof):
            self._reject(update, "invalid proof")

        channel.root = update.new_root
        channel.next_token_number += 1
        return self._accept(update, channel)

    def _burn(self, update: RootUpdate, channel: LedgerChannel, proof: List[bytes]) -> SubmissionReceipt:
        if update.token_number >= channel.next_token_number:
            self._reject(update, "token was never minted")
        if not verify_path(channel.root, update.leaf, proof):
            self._reject(update, "invalid proof of prior membership")

        channel.root = update.new_root
        return self._accept(update, channel)

    def _accept(self, update: RootUpdate, channel: LedgerChannel) -> SubmissionReceipt:
        channel.version += 1
        logger.debug(f"Accepted {update.kind.name} for {update.channel_id} (v{channel.version})")
        return SubmissionReceipt(
            channel_id=update.channel_id,
            kind=update.kind,
            root=channel.root,
            version=channel.version,
        )

    def _reject(self, update: RootUpdate, reason: str):
        logger.warning(f"Rejected {update.kind.name} for {update.channel_id}: {reason}")
        raise VerifierRejected(reason, {"channel_id": update.channel_id, "kind": update.kind.name})
