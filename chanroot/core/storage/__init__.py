"""
Persistent Storage Module.

Provides SQLite-backed persistence for:
- Channel headers (committed root, token counter)
- Leaf sets and owner records
- Root history
"""

from chanroot.core.storage.sqlite_adapter import SQLiteAdapter
from chanroot.core.storage.storage_manager import (
    ChannelRecord,
    OwnerRecord,
    RootHistoryEntry,
    StorageManager,
)

__all__ = ["SQLiteAdapter", "StorageManager", "ChannelRecord", "OwnerRecord", "RootHistoryEntry"]
