import sqlite3
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from chanroot.utils.logger import get_logger

logger = get_logger("storage.sqlite")


class SQLiteAdapter:
    """
    SQLite backend for the persistent channel index.

    Provides:
    1. Channel records (committed root, token counter)
    2. Token rows (the leaf set) with owner records
    3. Root history (one row per accepted root transition)

    Every statement is parameterized. Multi-row updates run in a single
    transaction so the index never exposes a half-applied mutation.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn_local = threading.local()

        if not db_path.parent.exists():
            db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            self._conn_local.conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                check_same_thread=False
            )
            self._conn_local.conn.row_factory = sqlite3.Row
            self._conn_local.conn.execute("PRAGMA journal_mode=WAL;")
            self._conn_local.conn.execute("PRAGMA synchronous=NORMAL;")
        return self._conn_local.conn

    def close(self):
        """Close this thread's connection."""
        conn = getattr(self._conn_local, "conn", None)
        if conn is not None:
            conn.close()
            del self._conn_local.conn

    def _init_schema(self):
        """Initialize database schema."""
        conn = self._get_conn()
        with conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS channels (
                    channel_id TEXT PRIMARY KEY,
                    merkle_root BLOB NOT NULL,
                    next_token_number INTEGER NOT NULL
                )
            """)

            # One row per minted-and-not-burned token
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tokens (
                    channel_id TEXT NOT NULL,
                    token_number INTEGER NOT NULL,
                    owner_id TEXT,
                    owner_nonce INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (channel_id, token_number)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tokens_owner ON tokens(owner_id);")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS root_history (
                    channel_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    merkle_root BLOB NOT NULL,
                    kind TEXT NOT NULL,
                    token_number INTEGER,
                    PRIMARY KEY (channel_id, version)
                )
            """)
        logger.debug(f"Schema ready at {self.db_path}")

    # =========================================================================
    # Channel Operations
    # =========================================================================

    def get_channel(self, channel_id: str) -> Optional[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT channel_id, merkle_root, next_token_number FROM channels WHERE channel_id = ?",
            (channel_id,)
        )
        return cursor.fetchone()

    def get_channel_ids(self) -> List[str]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT channel_id FROM channels ORDER BY channel_id")
        return [row['channel_id'] for row in cursor]

    def insert_channel(
        self,
        channel_id: str,
        merkle_root: bytes,
        next_token_number: int,
        tokens: Iterable[Tuple[int, Optional[str]]],
    ):
        """Create a channel with its initial tokens. Fails if it exists."""
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT INTO channels (channel_id, merkle_root, next_token_number) VALUES (?, ?, ?)",
                (channel_id, merkle_root, next_token_number)
            )
            conn.executemany(
                "INSERT INTO tokens (channel_id, token_number, owner_id) VALUES (?, ?, ?)",
                [(channel_id, n, owner) for n, owner in tokens]
            )
            self._append_history(conn, channel_id, merkle_root, "create", None)

    # =========================================================================
    # Token Operations
    # =========================================================================

    def get_token_numbers(self, channel_id: str) -> List[int]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT token_number FROM tokens WHERE channel_id = ? ORDER BY token_number",
            (channel_id,)
        )
        return [row['token_number'] for row in cursor]

    def _replace_token_numbers(self, conn: sqlite3.Connection, channel_id: str, token_numbers: Iterable[int]):
        wanted = set(token_numbers)
        existing = {
            row['token_number']
            for row in conn.execute(
                "SELECT token_number FROM tokens WHERE channel_id = ?", (channel_id,)
            )
        }
        conn.executemany(
            "DELETE FROM tokens WHERE channel_id = ? AND token_number = ?",
            [(channel_id, n) for n in existing - wanted]
        )
        conn.executemany(
            "INSERT INTO tokens (channel_id, token_number) VALUES (?, ?)",
            [(channel_id, n) for n in sorted(wanted - existing)]
        )

    def replace_token_numbers(self, channel_id: str, token_numbers: Iterable[int]):
        """Make the channel's token rows exactly token_numbers, keeping surviving owners."""
        conn = self._get_conn()
        with conn:
            self._replace_token_numbers(conn, channel_id, token_numbers)

    def replace_channel(
        self,
        channel_id: str,
        merkle_root: bytes,
        next_token_number: int,
        token_numbers: Iterable[int],
        owners: Optional[Dict[int, str]] = None,
    ):
        """
        Atomically overwrite a channel header and its token rows.

        owners fills in the owner of rows that have none; recorded owners win.
        """
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO channels (channel_id, merkle_root, next_token_number) VALUES (?, ?, ?)",
                (channel_id, merkle_root, next_token_number)
            )
            self._replace_token_numbers(conn, channel_id, token_numbers)
            conn.executemany(
                "UPDATE tokens SET owner_id = ? WHERE channel_id = ? AND token_number = ? AND owner_id IS NULL",
                [(owner_id, channel_id, n) for n, owner_id in (owners or {}).items()]
            )
            self._append_history(conn, channel_id, merkle_root, "resync", None)

    def get_owner(self, channel_id: str, token_number: int) -> Optional[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT owner_id, owner_nonce FROM tokens WHERE channel_id = ? AND token_number = ?",
            (channel_id, token_number)
        )
        return cursor.fetchone()

    def set_owner(self, channel_id: str, token_number: int, owner_id: str, owner_nonce: int):
        conn = self._get_conn()
        with conn:
            cursor = conn.execute(
                "UPDATE tokens SET owner_id = ?, owner_nonce = ? WHERE channel_id = ? AND token_number = ?",
                (owner_id, owner_nonce, channel_id, token_number)
            )
            if cursor.rowcount != 1:
                raise KeyError(f"{channel_id}:{token_number}")

    def get_tokens_for_owner(self, owner_id: str, offset: int, limit: int) -> List[Tuple[str, int]]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT channel_id, token_number FROM tokens WHERE owner_id = ? "
            "ORDER BY channel_id, token_number LIMIT ? OFFSET ?",
            (owner_id, limit, offset)
        )
        return [(row['channel_id'], row['token_number']) for row in cursor]

    def count_tokens_for_owner(self, owner_id: str) -> int:
        conn = self._get_conn()
        cursor = conn.execute("SELECT COUNT(*) AS cnt FROM tokens WHERE owner_id = ?", (owner_id,))
        return cursor.fetchone()['cnt']

    # =========================================================================
    # Mutations
    # =========================================================================

    def apply_mint(
        self,
        channel_id: str,
        token_number: int,
        owner_id: Optional[str],
        merkle_root: bytes,
        next_token_number: int,
    ):
        """Atomically add a token and advance the channel."""
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT INTO tokens (channel_id, token_number, owner_id) VALUES (?, ?, ?)",
                (channel_id, token_number, owner_id)
            )
            conn.execute(
                "UPDATE channels SET merkle_root = ?, next_token_number = ? WHERE channel_id = ?",
                (merkle_root, next_token_number, channel_id)
            )
            self._append_history(conn, channel_id, merkle_root, "mint", token_number)

    def apply_burn(self, channel_id: str, token_number: int, merkle_root: bytes):
        """Atomically remove a token and update the channel root."""
        conn = self._get_conn()
        with conn:
            conn.execute(
                "DELETE FROM tokens WHERE channel_id = ? AND token_number = ?",
                (channel_id, token_number)
            )
            conn.execute(
                "UPDATE channels SET merkle_root = ? WHERE channel_id = ?",
                (merkle_root, channel_id)
            )
            self._append_history(conn, channel_id, merkle_root, "burn", token_number)

    # =========================================================================
    # Root History
    # =========================================================================

    def _append_history(
        self,
        conn: sqlite3.Connection,
        channel_id: str,
        merkle_root: bytes,
        kind: str,
        token_number: Optional[int],
    ):
        row = conn.execute(
            "SELECT COALESCE(MAX(version), 0) AS v FROM root_history WHERE channel_id = ?",
            (channel_id,)
        ).fetchone()
        conn.execute(
            "INSERT INTO root_history (channel_id, version, merkle_root, kind, token_number) "
            "VALUES (?, ?, ?, ?, ?)",
            (channel_id, row['v'] + 1, merkle_root, kind, token_number)
        )

    def get_root_history(self, channel_id: str) -> List[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT version, merkle_root, kind, token_number FROM root_history "
            "WHERE channel_id = ? ORDER BY version",
            (channel_id,)
        )
        return cursor.fetchall()
