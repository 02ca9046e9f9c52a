"""
Channel State Machine - per-channel orchestration of the commitment.

Conceptual Background:
---------------------
Each channel owns a leaf set (token numbers currently issued), the root the
external verifier holds for that set, and a token counter that only grows.

Every mutation is a two-party commit:

1. Read the committed snapshot
2. Compute the mutated set, its root, and the proof the verifier needs
3. Submit the RootUpdate to the external verifier (the commit point)
4. Write the local index, then publish the new in-memory snapshot

The sequence runs under one asyncio.Lock per channel, so mutations of a
channel are totally ordered and the Nth always starts from the state the
(N-1)th committed. Different channels never share a lock.

Failure Handling:
----------------
- Verifier rejection or timeout: nothing is committed. A retry re-derives
  the token number from the committed snapshot.
- Verifier reports a different prior root, or the local index cannot be
  written after acceptance: the channel is marked for resync and refuses
  mutations until resync() proves the local set matches the verifier root.
- Mint outcome unknown: the receiver is held until resync() finds out
  whether the token was committed.

Burn Policy:
-----------
Every burn proves prior membership: the update carries the removed leaf and
its proof against the root being replaced, together with the new root.

Snapshots (Channel) are immutable; a commit swaps the whole snapshot, so no
partial update is ever observable.
"""

import asyncio
import weakref
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Dict, FrozenSet, Iterable, List, MutableMapping, Optional, Set, Union

from chanroot.crypto import bytes_to_hex
from chanroot.core.config import EngineConfig
from chanroot.core.encoding import TokenId, check_channel_id, check_token_number, leaf_digests
from chanroot.core.errors import (
    ChannelNotFound,
    ChanrootError,
    DuplicateChannel,
    InvalidOwner,
    LeafNotFound,
    LocalCommitFailed,
    RootMismatch,
    StaleProof,
    VerifierRejected,
)
from chanroot.core.merkle import MerkleProof, MerkleTree, build_root, verify_proof
from chanroot.core.ownership import (
    ACTION_BURN,
    ACTION_TRANSFER,
    OwnershipAuthorization,
    OwnershipRegistry,
    check_address,
)
from chanroot.core.storage import ChannelRecord, StorageManager
from chanroot.core.verifier import ExternalVerifier, RootUpdate, SubmissionReceipt, UpdateKind
from chanroot.utils.logger import get_logger

logger = get_logger("channel")


class ChannelState(IntEnum):
    """Lifecycle state. ACTIVE is long-lived and never left."""
    UNINITIALIZED = 0
    ACTIVE = 1


@dataclass(frozen=True)
class Channel:
    """
    Committed snapshot of one channel.

    Attributes:
        channel_id: Channel identifier
        leaf_set: Token numbers minted and not burned
        committed_root: Root accepted by the external verifier for leaf_set
        next_token_number: Next number to mint; never reissued
    """
    channel_id: str
    leaf_set: FrozenSet[int]
    committed_root: bytes
    next_token_number: int
    state: ChannelState = ChannelState.ACTIVE

    @property
    def total_supply(self) -> int:
        return len(self.leaf_set)

    def token_ids(self) -> List[TokenId]:
        return [TokenId(self.channel_id, n) for n in sorted(self.leaf_set)]

    def leaves(self) -> List[bytes]:
        return leaf_digests(self.channel_id, self.leaf_set)

    def tree(self) -> MerkleTree:
        return MerkleTree(self.leaves())


class ChannelManager:
    """
    Orchestrates every channel's commitment.

    The external verifier and the persistent index are injected. Without a
    storage manager the engine keeps state in memory only.

    Attributes:
        verifier: External verifier (commit authority)
        storage_manager: Persistent index, or None
        ownership: Owner records used to authorize burns and transfers
    """

    def __init__(
        self,
        verifier: ExternalVerifier,
        storage_manager: Optional[StorageManager] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.verifier = verifier
        self.storage_manager = storage_manager
        self.config = config or EngineConfig()
        self.ownership = OwnershipRegistry(storage_manager)

        self._channels: Dict[str, Channel] = {}
        self._needs_resync: Set[str] = set()
        # Receivers of mints whose outcome is unknown, applied by resync
        self._pending_owners: Dict[str, Dict[int, str]] = {}
        # A lock is bound to the loop that first waits on it
        self._locks: MutableMapping[asyncio.AbstractEventLoop, Dict[str, asyncio.Lock]] = (
            weakref.WeakKeyDictionary()
        )

    def _lock(self, channel_id: str) -> asyncio.Lock:
        locks = self._locks.setdefault(asyncio.get_running_loop(), {})
        lock = locks.get(channel_id)
        if lock is None:
            lock = locks[channel_id] = asyncio.Lock()
        return lock

    # =========================================================================
    # State Access
    # =========================================================================

    def get_channel(self, channel_id: str) -> Channel:
        """
        Committed snapshot of a channel, loading it from the index if needed.

        Raises:
            ChannelNotFound: channel was never created
        """
        channel = self._channels.get(channel_id)
        if channel is not None:
            return channel

        record = self.storage_manager.load_channel(channel_id) if self.storage_manager else None
        if record is None:
            raise ChannelNotFound(f"Channel {channel_id} not found", {"channel_id": channel_id})

        leaf_set = frozenset(t.token_number for t in self.storage_manager.load_leaf_set(channel_id))
        channel = Channel(
            channel_id=channel_id,
            leaf_set=leaf_set,
            committed_root=record.merkle_root,
            next_token_number=record.next_token_number,
        )
        if build_root(channel.leaves()) != record.merkle_root:
            logger.warning(f"Index for {channel_id} does not match its stored root; resync required")
            self._needs_resync.add(channel_id)

        self._channels[channel_id] = channel
        logger.debug(f"Loaded {channel_id} from index: {channel.total_supply} tokens")
        return channel

    def channel_state(self, channel_id: str) -> ChannelState:
        try:
            return self.get_channel(channel_id).state
        except ChannelNotFound:
            return ChannelState.UNINITIALIZED

    def channel_ids(self) -> List[str]:
        ids = set(self._channels)
        if self.storage_manager:
            ids.update(self.storage_manager.channel_ids())
        return sorted(ids)

    def needs_resync(self, channel_id: str) -> bool:
        return channel_id in self._needs_resync

    def get_channel_info(self, channel_id: str) -> dict:
        channel = self.get_channel(channel_id)
        return {
            "channel_id": channel.channel_id,
            "merkle_root": bytes_to_hex(channel.committed_root),
            "total_supply": channel.total_supply,
            "next_token_number": channel.next_token_number,
            "needs_resync": self.needs_resync(channel_id),
        }

    def get_next_token_number(self, channel_id: str) -> Optional[int]:
        try:
            return self.get_channel(channel_id).next_token_number
        except ChannelNotFound:
            return None

    def is_minted(self, token_id: Union[str, TokenId]) -> bool:
        """True if the token is currently in its channel's leaf set."""
        token = TokenId.parse(token_id) if isinstance(token_id, str) else token_id
        try:
            return token.token_number in self.get_channel(token.channel_id).leaf_set
        except ChannelNotFound:
            return False

    def owner_of(self, token_id: Union[str, TokenId]) -> Optional[str]:
        token = TokenId.parse(token_id) if isinstance(token_id, str) else token_id
        return self.ownership.owner_of(token)

    def tokens_for_owner(self, owner: str, from_index: int = 0, limit: Optional[int] = None) -> List[TokenId]:
        return self.ownership.tokens_for_owner(
            owner, from_index, limit if limit is not None else self.config.default_page_limit
        )

    def supply_for_owner(self, owner: str) -> int:
        return self.ownership.supply_for_owner(owner)

    # =========================================================================
    # Proofs
    # =========================================================================

    def get_proof(self, channel_id: str, token_number: int) -> MerkleProof:
        """
        Membership proof for a token against the committed root.

        Raises:
            LeafNotFound: token is not currently issued
        """
        check_token_number(token_number)
        channel = self.get_channel(channel_id)
        if token_number not in channel.leaf_set:
            raise LeafNotFound(
                f"Token {channel_id}:{token_number} is not in the leaf set",
                {"channel_id": channel_id, "token_number": token_number},
            )
        return channel.tree().prove(TokenId(channel_id, token_number).leaf)

    def check_proof(self, channel_id: str, proof: MerkleProof) -> bool:
        """
        Check a proof against the channel's committed root.

        Raises:
            StaleProof: proof was generated for a superseded root
        """
        channel = self.get_channel(channel_id)
        if proof.root != channel.committed_root:
            raise StaleProof(
                "Proof was generated against a superseded root",
                {
                    "channel_id": channel_id,
                    "proof_root": bytes_to_hex(proof.root),
                    "committed_root": bytes_to_hex(channel.committed_root),
                },
            )
        return verify_proof(channel.committed_root, proof.leaf, proof)

    def verify_membership(self, channel_id: str, token_number: int, proof: MerkleProof) -> bool:
        """check_proof, additionally requiring the proof to be about this token."""
        if proof.leaf != TokenId(channel_id, token_number).leaf:
            return False
        return self.check_proof(channel_id, proof)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create_channel(
        self,
        channel_id: str,
        initial_token_numbers: Iterable[int] = (),
        owner: Optional[str] = None,
    ) -> Channel:
        """
        Create a channel over an initial (possibly empty) set of tokens.

        Args:
            channel_id: New channel identifier
            initial_token_numbers: Tokens already issued
            owner: Owner recorded for every initial token

        Raises:
            DuplicateChannel: channel is already active
        """
        check_channel_id(channel_id)
        leaf_set = frozenset(check_token_number(n) for n in initial_token_numbers)
        owner = check_address(owner) if owner is not None else None

        async with self._lock(channel_id):
            if self.channel_state(channel_id) == ChannelState.ACTIVE:
                raise DuplicateChannel(f"Channel {channel_id} already exists", {"channel_id": channel_id})

            channel = Channel(
                channel_id=channel_id,
                leaf_set=leaf_set,
                committed_root=build_root(leaf_digests(channel_id, leaf_set)),
                next_token_number=max(leaf_set) + 1 if leaf_set else 1,
            )
            update = RootUpdate(
                channel_id=channel_id,
                kind=UpdateKind.CREATE,
                new_root=channel.committed_root,
                next_token_number=channel.next_token_number,
            )
            await self._submit(update)

            if self.storage_manager:
                self._commit_local(
                    channel_id,
                    self.storage_manager.create_channel,
                    ChannelRecord(channel_id, channel.committed_root, channel.next_token_number),
                    set(channel.token_ids()),
                    owner,
                )

            self._channels[channel_id] = channel
            for token in channel.token_ids():
                self.ownership.record(token, owner)

        logger.info(
            f"Created {channel_id}: {channel.total_supply} tokens, "
            f"root={bytes_to_hex(channel.committed_root)[:10]}..."
        )
        return channel

    # =========================================================================
    # Mutations
    # =========================================================================

    async def mint_next(self, channel_id: str, receiver: str) -> TokenId:
        """
        Mint the channel's next token to receiver.

        The proof accompanying the mint is for the new leaf against the new
        root. When the new set holds only this token no proof is sent: the
        root is the leaf itself.

        When the outcome is unknown (timeout, transport error, or an index
        write failing after acceptance) the receiver stays pending and
        resync() records it as owner if the token turns out to be committed.
        The first unknown attempt for a token number keeps the claim.

        Returns:
            The minted TokenId
        """
        receiver = check_address(receiver, "receiver")

        async with self._lock(channel_id):
            channel = self._mutable_channel(channel_id)

            token = TokenId(channel_id, check_token_number(channel.next_token_number))
            new_set = channel.leaf_set | {token.token_number}
            tree = MerkleTree(leaf_digests(channel_id, new_set))
            proof = tree.prove(token.leaf) if len(new_set) > 1 else None

            update = RootUpdate(
                channel_id=channel_id,
                kind=UpdateKind.MINT,
                new_root=tree.root,
                prev_root=channel.committed_root,
                token_number=token.token_number,
                leaf=token.leaf,
                proof=proof.siblings if proof is not None else None,
                next_token_number=token.token_number + 1,
            )
            pending = self._pending_owners.setdefault(channel_id, {})
            claimed = token.token_number not in pending
            if claimed:
                pending[token.token_number] = receiver
            try:
                await self._submit(update)
            except ChanrootError as e:
                # A definite refusal leaves the number free for the next receiver
                if claimed and e.details.get("outcome") != "unknown":
                    del pending[token.token_number]
                raise

            if self.storage_manager:
                self._commit_local(
                    channel_id,
                    self.storage_manager.commit_mint,
                    token,
                    receiver,
                    tree.root,
                    update.next_token_number,
                )

            del pending[token.token_number]
            self._channels[channel_id] = replace(
                channel,
                leaf_set=frozenset(new_set),
                committed_root=tree.root,
                next_token_number=update.next_token_number,
            )
            self.ownership.record(token, receiver)

        logger.info(f"Minted {token} to {receiver}, root={bytes_to_hex(tree.root)[:10]}...")
        return token

    async def burn(
        self,
        channel_id: str,
        token_number: int,
        authorization: Optional[OwnershipAuthorization],
    ) -> Channel:
        """
        Burn a token, authorized by its recorded owner.

        Returns:
            The new committed snapshot

        Raises:
            LeafNotFound: token is not currently issued
            OwnershipViolation: authorization missing or not from the owner
        """
        check_token_number(token_number)

        async with self._lock(channel_id):
            channel = self._mutable_channel(channel_id)
            if token_number not in channel.leaf_set:
                raise LeafNotFound(
                    f"Token {channel_id}:{token_number} is not in the leaf set",
                    {"channel_id": channel_id, "token_number": token_number},
                )

            token = TokenId(channel_id, token_number)
            self.ownership.check(ACTION_BURN, token, channel.committed_root, authorization)

            membership = channel.tree().prove(token.leaf)
            new_set = channel.leaf_set - {token_number}
            new_root = build_root(leaf_digests(channel_id, new_set))

            update = RootUpdate(
                channel_id=channel_id,
                kind=UpdateKind.BURN,
                new_root=new_root,
                prev_root=channel.committed_root,
                token_number=token_number,
                leaf=token.leaf,
                proof=membership.siblings,
                next_token_number=channel.next_token_number,
            )
            await self._submit(update)

            if self.storage_manager:
                self._commit_local(channel_id, self.storage_manager.commit_burn, token, new_root)

            channel = replace(channel, leaf_set=frozenset(new_set), committed_root=new_root)
            self._channels[channel_id] = channel
            self.ownership.forget(token)

        logger.info(f"Burned {token}, root={bytes_to_hex(new_root)[:10]}...")
        return channel

    async def burn_token(self, token_id: str, authorization: Optional[OwnershipAuthorization]) -> Channel:
        """burn() addressed by canonical "{channel_id}:{token_number}" string."""
        token = TokenId.parse(token_id)
        return await self.burn(token.channel_id, token.token_number, authorization)

    async def transfer(
        self,
        token_id: Union[str, TokenId],
        new_owner: str,
        authorization: Optional[OwnershipAuthorization],
    ) -> TokenId:
        """
        Move a token to new_owner. The leaf set and root are untouched.

        Raises:
            LeafNotFound: token is not currently issued
            OwnershipViolation: authorization missing or not from the owner
            InvalidOwner: new_owner is malformed or already the owner
        """
        token = TokenId.parse(token_id) if isinstance(token_id, str) else token_id
        new_owner = check_address(new_owner, "new_owner")

        async with self._lock(token.channel_id):
            channel = self.get_channel(token.channel_id)
            if token.token_number not in channel.leaf_set:
                raise LeafNotFound(f"Token {token} is not in the leaf set", {"token_id": str(token)})

            record = self.ownership.check(
                ACTION_TRANSFER, token, channel.committed_root, authorization, new_owner
            )
            if record.owner == new_owner:
                raise InvalidOwner("The token owner and the receiver should be different", {"token_id": str(token)})

            nonce = record.nonce + 1
            if self.storage_manager:
                self.storage_manager.save_owner(token, new_owner, nonce)
            self.ownership.record(token, new_owner, nonce)

        logger.info(f"Transferred {token} from {record.owner} to {new_owner}")
        return token

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def check_root(self, channel_id: str) -> bool:
        """
        Compare the local committed root with the verifier's stored root.

        Raises:
            RootMismatch: roots differ (channel is marked for resync)
        """
        async with self._lock(channel_id):
            channel = self.get_channel(channel_id)
            external = await self._call(self.verifier.get_root(channel_id))
            if external != channel.committed_root:
                self._needs_resync.add(channel_id)
                logger.warning(f"Root mismatch on {channel_id}; resync required")
                raise RootMismatch(
                    "Local root diverges from the verifier root",
                    {
                        "channel_id": channel_id,
                        "local_root": bytes_to_hex(channel.committed_root),
                        "external_root": bytes_to_hex(external) if external else None,
                    },
                )
        return True

    async def resync(self, channel_id: str, token_numbers: Optional[Iterable[int]] = None) -> Channel:
        """
        Re-derive a channel's leaf set from an authoritative source.

        Args:
            channel_id: Channel to reconcile
            token_numbers: Authoritative token list. If None, the persistent
                index is used (or the in-memory set without one).

        Tokens whose mint outcome was unknown get the pending receiver as
        owner when they come back in the leaf set without one.

        Returns:
            The reconciled snapshot

        Raises:
            RootMismatch: the derived set does not produce the verifier's root
            ChannelNotFound: neither side knows the channel
        """
        check_channel_id(channel_id)

        async with self._lock(channel_id):
            try:
                current = self.get_channel(channel_id)
            except ChannelNotFound:
                current = None

            if token_numbers is not None:
                leaf_set = frozenset(check_token_number(n) for n in token_numbers)
            elif self.storage_manager:
                leaf_set = frozenset(t.token_number for t in self.storage_manager.load_leaf_set(channel_id))
            elif current is not None:
                leaf_set = current.leaf_set
            else:
                raise ChannelNotFound(f"Channel {channel_id} not found", {"channel_id": channel_id})

            external = await self._call(self.verifier.get_root(channel_id))
            if external is None:
                raise ChannelNotFound(
                    f"Verifier has no channel {channel_id}", {"channel_id": channel_id}
                )

            root = build_root(leaf_digests(channel_id, leaf_set))
            if root != external:
                self._needs_resync.add(channel_id)
                logger.warning(f"Resync of {channel_id} failed: derived root does not match verifier")
                raise RootMismatch(
                    "Derived leaf set does not match the verifier root",
                    {
                        "channel_id": channel_id,
                        "derived_root": bytes_to_hex(root),
                        "external_root": bytes_to_hex(external),
                    },
                )

            candidates = [max(leaf_set) + 1 if leaf_set else 1]
            if current is not None:
                candidates.append(current.next_token_number)
            external_next = await self._call(self.verifier.get_next_token_number(channel_id))
            if external_next is not None:
                candidates.append(external_next)

            channel = Channel(
                channel_id=channel_id,
                leaf_set=leaf_set,
                committed_root=root,
                next_token_number=max(candidates),
            )

            recovered = {
                n: owner
                for n, owner in self._pending_owners.get(channel_id, {}).items()
                if n in leaf_set
            }

            if self.storage_manager:
                self._commit_local(
                    channel_id,
                    self.storage_manager.save_channel,
                    ChannelRecord(channel_id, root, channel.next_token_number),
                    set(channel.token_ids()),
                    recovered,
                )

            self._channels[channel_id] = channel
            self._needs_resync.discard(channel_id)
            self._pending_owners.pop(channel_id, None)
            if self.storage_manager:
                self.ownership.forget_channel(channel_id)
            else:
                if current is not None:
                    for number in current.leaf_set - leaf_set:
                        self.ownership.forget(TokenId(channel_id, number))
                for number, owner in recovered.items():
                    token = TokenId(channel_id, number)
                    if self.ownership.owner_of(token) is None:
                        self.ownership.record(token, owner)
            if recovered:
                logger.info(f"Recovered owners of {len(recovered)} token(s) in {channel_id}")

        logger.warning(
            f"Resynced {channel_id}: {channel.total_supply} tokens, next={channel.next_token_number}"
        )
        return channel

    # =========================================================================
    # Two-Party Commit
    # =========================================================================

    def _mutable_channel(self, channel_id: str) -> Channel:
        channel = self.get_channel(channel_id)
        if channel_id in self._needs_resync:
            raise RootMismatch(
                f"Channel {channel_id} must be resynced before further mutations",
                {"channel_id": channel_id},
            )
        return channel

    async def _call(self, awaitable):
        """Await a verifier call under the submission timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.submission_timeout)
        except asyncio.TimeoutError:
            raise VerifierRejected(
                f"Verifier did not answer within {self.config.submission_timeout}s",
                {"timeout": self.config.submission_timeout, "outcome": "unknown"},
            ) from None

    async def _submit(self, update: RootUpdate) -> SubmissionReceipt:
        """
        Submit one update. Returning means the verifier accepted it.

        Errors carry details["outcome"] == "unknown" when the verifier may
        have applied the update anyway.

        Raises:
            VerifierRejected: refused, timed out or failed in transport
            RootMismatch: verifier holds a different prior root
        """
        try:
            receipt = await self._call(self.verifier.submit_root(update))
        except RootMismatch:
            self._needs_resync.add(update.channel_id)
            logger.warning(f"{update.kind.name} on {update.channel_id} hit a stale root; resync required")
            raise
        except ChanrootError as e:
            logger.warning(f"{update.kind.name} on {update.channel_id} rejected: {e.message}")
            raise
        except Exception as e:
            logger.error(f"{update.kind.name} on {update.channel_id} failed in transport: {e}")
            raise VerifierRejected(
                f"Submission failed: {e}",
                {"channel_id": update.channel_id, "kind": update.kind.name, "outcome": "unknown"},
            ) from e

        if receipt.root != update.new_root:
            self._needs_resync.add(update.channel_id)
            raise RootMismatch(
                "Verifier acknowledged a different root",
                {
                    "channel_id": update.channel_id,
                    "submitted_root": bytes_to_hex(update.new_root),
                    "acknowledged_root": bytes_to_hex(receipt.root),
                    "outcome": "unknown",
                },
            )
        return receipt

    def _commit_local(self, channel_id: str, write, *args):
        """Write the index after verifier acceptance."""
        try:
            write(*args)
        except Exception as e:
            self._needs_resync.add(channel_id)
            logger.error(f"Index write for {channel_id} failed after verifier acceptance: {e}")
            raise LocalCommitFailed(
                "Verifier accepted the update but the local index could not be written",
                {"channel_id": channel_id},
            ) from e
