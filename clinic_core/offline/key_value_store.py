# =============================================================================
# clinic_core/offline/key_value_store.py
# Durable Key-Value Store (SQLite)
# =============================================================================
"""
KeyValueStore - best-effort persistent map of string keys to JSON values.

This is the only component that touches storage media. Callers treat it as
best effort:
- get() never raises; unreadable content is logged and the fallback returned
- set()/delete() report failures as False instead of raising
- each key is written atomically; there are no cross-key transactions
"""

from __future__ import annotations
import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Union
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheRecord:
    """A stored entry and the time it was last written."""
    key: str
    value: Any
    saved_at: str


class KeyValueStore:
    """
    SQLite-backed durable key-value store.

    Usage:
        store = KeyValueStore("local_data/clinic_sync.db")
        store.set("patients", [{"id": "1"}])
        store.get("patients", [])
    """

    DEFAULT_DB_PATH = Path("local_data") / "clinic_sync.db"

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT,
            saved_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialized = False
        self.initialize()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "connection", None) is None:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10)
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.connection

    @contextmanager
    def transaction(self):
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def initialize(self) -> bool:
        """Create the storage directory and schema."""
        if self._initialized:
            return True

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self.transaction() as conn:
                conn.execute(self.SCHEMA)
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Error initializing key-value store at {self.db_path}: {e}")
            return False

        self._initialized = True
        logger.info(f"Key-value store initialized at: {self.db_path}")
        return True

    # =========================================================================
    # CONTRACT
    # =========================================================================

    def get(self, key: str, fallback: Any = None) -> Any:
        """
        Read a value.

        Args:
            key: Entry key
            fallback: Returned when the key is missing or unreadable

        Returns:
            Decoded JSON value or fallback
        """
        record = self.get_record(key)
        if record is None:
            return fallback
        return record.value

    def get_record(self, key: str) -> Optional[CacheRecord]:
        """Read the full record for a key, or None if missing/unreadable."""
        row = self._fetch_row(key)
        if row is None:
            return None

        raw_value, saved_at = row
        try:
            value = json.loads(raw_value)
        except (TypeError, ValueError) as e:
            logger.warning(f"Unreadable value for key '{key}': {e}")
            return None

        return CacheRecord(key=key, value=value, saved_at=saved_at)

    def has(self, key: str) -> bool:
        """True when a row exists for the key, readable or not."""
        return self._fetch_row(key) is not None

    def set(self, key: str, value: Any) -> bool:
        """
        Write a value.

        Returns:
            True if the value was persisted
        """
        try:
            payload = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.error(f"Value for key '{key}' is not serializable: {e}")
            return False

        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO kv_store (key, value, saved_at)
                    VALUES (?, ?, ?)
                    """,
                    [key, payload, datetime.now().isoformat()]
                )
            return True
        except sqlite3.Error as e:
            logger.error(f"Error writing key '{key}': {e}")
            return False

    def delete(self, key: str) -> bool:
        """
        Remove a key. Deleting a missing key is not an error.

        Returns:
            True if the store is consistent afterwards
        """
        try:
            with self.transaction() as conn:
                conn.execute("DELETE FROM kv_store WHERE key = ?", [key])
            return True
        except sqlite3.Error as e:
            logger.error(f"Error deleting key '{key}': {e}")
            return False

    def keys(self, prefix: str = "") -> List[str]:
        """List stored keys, optionally restricted to a prefix."""
        try:
            conn = self._get_connection()
            cursor = conn.execute(
                "SELECT key FROM kv_store WHERE key LIKE ? ORDER BY key",
                [f"{prefix}%"]
            )
            rows = cursor.fetchall()
        except sqlite3.Error as e:
            logger.error(f"Error listing keys: {e}")
            return []
        # LIKE treats '_' and '%' as wildcards
        return [row[0] for row in rows if row[0].startswith(prefix)]

    def _fetch_row(self, key: str):
        try:
            conn = self._get_connection()
            cursor = conn.execute(
                "SELECT value, saved_at FROM kv_store WHERE key = ?",
                [key]
            )
            return cursor.fetchone()
        except sqlite3.Error as e:
            logger.error(f"Error reading key '{key}': {e}")
            return None

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.debug(f"Error closing connection: {e}")
            self._connections.clear()
        self._local = threading.local()
