"""Durable key/value storage for client state.

Values are opaque text blobs. Every write replaces the whole value for its
key in a single transaction, so a reader never observes a partial blob and
the last writer wins.
"""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

# Persisted keys
MESSAGES_KEY = "atrium_messages"
USER_KEY = "auth_user"
PASSWORD_KEY = "auth_password"

KV_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class LocalStorage:
    """SQLite-backed key/value store."""

    def __init__(self, db_path: str | Path):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self._in_memory = str(db_path) == ":memory:"
        self.db_path = Path(db_path).expanduser() if not self._in_memory else None
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if self._in_memory:
            self._conn = sqlite3.connect(":memory:")
        else:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path))

        self._conn.executescript(KV_SCHEMA)
        self._conn.commit()
        logger.debug(f"LocalStorage connected to {self.db_path or ':memory:'}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def get(self, key: str) -> str | None:
        conn = self._ensure_connected()
        row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        conn = self._ensure_connected()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, datetime.now().isoformat()),
            )

    def delete(self, key: str) -> bool:
        """Remove a key.

        Returns:
            True if the key existed.
        """
        conn = self._ensure_connected()
        with conn:
            cursor = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def keys(self) -> list[str]:
        conn = self._ensure_connected()
        return [row[0] for row in conn.execute("SELECT key FROM kv_store ORDER BY key")]
