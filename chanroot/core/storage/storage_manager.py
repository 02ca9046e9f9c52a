from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set

from chanroot.core.encoding import TokenId
from chanroot.core.storage.sqlite_adapter import SQLiteAdapter
from chanroot.utils.logger import get_logger

logger = get_logger("storage.manager")


@dataclass(frozen=True)
class ChannelRecord:
    """Persisted channel header."""
    channel_id: str
    merkle_root: bytes
    next_token_number: int


@dataclass(frozen=True)
class OwnerRecord:
    """Current owner of a token and the nonce its next authorization must carry."""
    owner: Optional[str]
    nonce: int = 0


@dataclass(frozen=True)
class RootHistoryEntry:
    version: int
    merkle_root: bytes
    kind: str
    token_number: Optional[int]


class StorageManager:
    """
    Persistent index for channels.

    Coordinates data persistence using the SQLite adapter. Handles:
    - Leaf sets (token rows per channel)
    - Channel headers (committed root, token counter)
    - Owner records for transfer/burn authorization
    - Root history

    Consulted before and after a mutation, never while a root is being
    computed.
    """

    def __init__(self, data_dir: Path, db_name: str = "chanroot.db"):
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.adapter = SQLiteAdapter(self.db_path)

        logger.info(f"StorageManager initialized at {self.db_path}")

    def close(self):
        self.adapter.close()

    # =========================================================================
    # Leaf Sets
    # =========================================================================

    def load_leaf_set(self, channel_id: str) -> Set[TokenId]:
        return {TokenId(channel_id, n) for n in self.adapter.get_token_numbers(channel_id)}

    def save_leaf_set(self, channel_id: str, leaf_set: Set[TokenId]):
        """Replace the channel's token rows. Owners of surviving tokens are kept."""
        for token in leaf_set:
            if token.channel_id != channel_id:
                raise ValueError(f"Token {token} does not belong to channel {channel_id}")
        self.adapter.replace_token_numbers(channel_id, [t.token_number for t in leaf_set])

    # =========================================================================
    # Owners
    # =========================================================================

    def load_owner(self, token_id: TokenId) -> Optional[OwnerRecord]:
        row = self.adapter.get_owner(token_id.channel_id, token_id.token_number)
        if row is None:
            return None
        return OwnerRecord(owner=row['owner_id'], nonce=row['owner_nonce'])

    def save_owner(self, token_id: TokenId, owner: str, nonce: int):
        self.adapter.set_owner(token_id.channel_id, token_id.token_number, owner, nonce)

    def tokens_for_owner(self, owner: str, from_index: int = 0, limit: int = 50) -> List[TokenId]:
        return [
            TokenId(channel_id, n)
            for channel_id, n in self.adapter.get_tokens_for_owner(owner, from_index, limit)
        ]

    def supply_for_owner(self, owner: str) -> int:
        return self.adapter.count_tokens_for_owner(owner)

    # =========================================================================
    # Channels
    # =========================================================================

    def load_channel(self, channel_id: str) -> Optional[ChannelRecord]:
        row = self.adapter.get_channel(channel_id)
        if row is None:
            return None
        return ChannelRecord(
            channel_id=row['channel_id'],
            merkle_root=bytes(row['merkle_root']),
            next_token_number=row['next_token_number'],
        )

    def channel_ids(self) -> List[str]:
        return self.adapter.get_channel_ids()

    def create_channel(self, record: ChannelRecord, leaf_set: Set[TokenId], owner: Optional[str] = None):
        self.adapter.insert_channel(
            record.channel_id,
            record.merkle_root,
            record.next_token_number,
            [(t.token_number, owner) for t in sorted(leaf_set)],
        )

    def save_channel(
        self,
        record: ChannelRecord,
        leaf_set: Set[TokenId],
        owners: Optional[Dict[int, str]] = None,
    ):
        """
        Overwrite a channel header and its leaf set (used by resync).

        owners maps token numbers to owners for tokens that have no recorded
        owner yet, e.g. mints the verifier accepted but the index missed.
        """
        for token in leaf_set:
            if token.channel_id != record.channel_id:
                raise ValueError(f"Token {token} does not belong to channel {record.channel_id}")
        self.adapter.replace_channel(
            record.channel_id,
            record.merkle_root,
            record.next_token_number,
            [t.token_number for t in leaf_set],
            owners,
        )

    def commit_mint(self, token_id: TokenId, owner: Optional[str], merkle_root: bytes, next_token_number: int):
        self.adapter.apply_mint(
            token_id.channel_id, token_id.token_number, owner, merkle_root, next_token_number
        )

    def commit_burn(self, token_id: TokenId, merkle_root: bytes):
        self.adapter.apply_burn(token_id.channel_id, token_id.token_number, merkle_root)

    def root_history(self, channel_id: str) -> List[RootHistoryEntry]:
        return [
            RootHistoryEntry(
                version=row['version'],
                merkle_root=bytes(row['merkle_root']),
                kind=row['kind'],
                token_number=row['token_number'],
            )
            for row in self.adapter.get_root_history(channel_id)
        ]
