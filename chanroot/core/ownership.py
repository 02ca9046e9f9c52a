"""
Ownership records and authorizations.

Ownership never affects the commitment: a transfer rewrites an owner record
and leaves the leaf set and root untouched. It matters to the engine only
because a burn must be authorized by the current owner.

Authorization:
-------------
The owner signs keccak256 of a message that binds the action to one token,
one owner nonce and one committed root:

    chanroot:<action>:<channel_id>:<token_number>:<nonce>:<root hex>[:<new owner>]

The nonce increments on every transfer, so a signature cannot be replayed
after ownership has moved and come back. Binding the root means a burn
signature is only good for the snapshot it was made against.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from chanroot.crypto import KeyPair, bytes_to_hex, is_valid_address, keccak256, recover_addresses, sign
from chanroot.core.encoding import TokenId
from chanroot.core.errors import InvalidOwner, OwnershipViolation
from chanroot.core.storage import OwnerRecord, StorageManager
from chanroot.utils.logger import get_logger
from chanroot.utils.validation import validate_signature

logger = get_logger("ownership")

ACTION_BURN = "burn"
ACTION_TRANSFER = "transfer"


@dataclass(frozen=True)
class OwnershipAuthorization:
    """Proof of current ownership passed in with a burn or transfer."""
    owner: str
    signature: bytes


def authorization_message(
    action: str,
    token_id: TokenId,
    nonce: int,
    root: bytes,
    new_owner: Optional[str] = None,
) -> bytes:
    """32-byte hash the owner signs."""
    parts = ["chanroot", action, token_id.channel_id, str(token_id.token_number), str(nonce), bytes_to_hex(root)]
    if new_owner is not None:
        parts.append(new_owner.lower())
    return keccak256(":".join(parts).encode("utf-8"))


def authorize(
    keypair: KeyPair,
    action: str,
    token_id: TokenId,
    nonce: int,
    root: bytes,
    new_owner: Optional[str] = None,
) -> OwnershipAuthorization:
    """Sign an authorization with the owner's key."""
    message_hash = authorization_message(action, token_id, nonce, root, new_owner)
    return OwnershipAuthorization(owner=keypair.address, signature=sign(message_hash, keypair.private_key))


class OwnershipRegistry:
    """
    Owner records for every live token.

    With a StorageManager the index is the source of truth and this registry
    is a read-through cache; without one, records live only in memory. Writes
    to the index are made by the caller as part of its own commit, then
    mirrored here with record()/forget().
    """

    def __init__(self, storage_manager: Optional[StorageManager] = None):
        self.storage_manager = storage_manager
        self._records: Dict[TokenId, OwnerRecord] = {}

    def get(self, token_id: TokenId) -> Optional[OwnerRecord]:
        record = self._records.get(token_id)
        if record is None and self.storage_manager:
            record = self.storage_manager.load_owner(token_id)
            if record is not None:
                self._records[token_id] = record
        return record

    def owner_of(self, token_id: TokenId) -> Optional[str]:
        record = self.get(token_id)
        return record.owner if record else None

    def record(self, token_id: TokenId, owner: Optional[str], nonce: int = 0) -> None:
        self._records[token_id] = OwnerRecord(owner=owner.lower() if owner else None, nonce=nonce)

    def forget(self, token_id: TokenId) -> None:
        self._records.pop(token_id, None)

    def forget_channel(self, channel_id: str) -> None:
        for token_id in [t for t in self._records if t.channel_id == channel_id]:
            del self._records[token_id]

    def tokens_for_owner(self, owner: str, from_index: int = 0, limit: int = 50) -> List[TokenId]:
        owner = owner.lower()
        if self.storage_manager:
            return self.storage_manager.tokens_for_owner(owner, from_index, limit)
        owned = sorted(t for t, r in self._records.items() if r.owner == owner)
        return owned[from_index:from_index + limit]

    def supply_for_owner(self, owner: str) -> int:
        owner = owner.lower()
        if self.storage_manager:
            return self.storage_manager.supply_for_owner(owner)
        return sum(1 for r in self._records.values() if r.owner == owner)

    def check(
        self,
        action: str,
        token_id: TokenId,
        root: bytes,
        authorization: Optional[OwnershipAuthorization],
        new_owner: Optional[str] = None,
    ) -> OwnerRecord:
        """
        Verify that authorization comes from the recorded owner.

        Returns:
            The current owner record

        Raises:
            OwnershipViolation: no authorization, no recorded owner, a
                different owner, or a signature that does not recover to it
        """
        details = {"token_id": str(token_id), "action": action}

        if authorization is None:
            raise OwnershipViolation("Proof of ownership is required", details)

        record = self.get(token_id)
        if record is None or record.owner is None:
            raise OwnershipViolation("Token has no recorded owner", details)

        claimed = authorization.owner.lower() if isinstance(authorization.owner, str) else None
        if claimed != record.owner:
            logger.warning(f"{action} of {token_id} attempted by non-owner {authorization.owner}")
            raise OwnershipViolation("Caller is not the recorded owner", details)

        valid, err = validate_signature(authorization.signature)
        if not valid:
            raise OwnershipViolation(err, details)

        message_hash = authorization_message(action, token_id, record.nonce, root, new_owner)
        if record.owner not in recover_addresses(message_hash, authorization.signature):
            logger.warning(f"{action} of {token_id}: signature does not match owner {record.owner}")
            raise OwnershipViolation("Signature does not match the recorded owner", details)

        return record


def check_address(address: str, name: str = "owner") -> str:
    if not is_valid_address(address):
        raise InvalidOwner(f"{name} is not a valid address", {name: address})
    return address.lower()
