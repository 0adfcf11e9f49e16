"""Durable key-value stores backing the operation log, cache and sync state."""

from __future__ import annotations

from copy import deepcopy
import json
import logging
from pathlib import Path
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Protocol

from ..errors import StorageUnavailableError

logger = logging.getLogger("branchsync.storage.kv")


class KeyValueStore(Protocol):
    """Minimal durable key-value capability the engine depends on.

    Values are JSON-compatible structures. ``get`` returns ``None`` for a
    missing key.
    """

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> List[str]: ...


class MemoryStore:
    """In-process store used by tests and ephemeral terminals."""

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            return deepcopy(self._data.get(key))

    def set(self, key: str, value: Any) -> None:
        # Round-trip through JSON so non-serializable payloads fail here,
        # the same way they would against a durable backend.
        encoded = json.dumps(value)
        with self._lock:
            self._data[key] = json.loads(encoded)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def size_bytes(self) -> int:
        with self._lock:
            return sum(len(k) + len(json.dumps(v)) for k, v in self._data.items())


class SQLiteStore:
    """SQLite-backed key-value store.

    Every ``set`` commits immediately so a crash after it returns never loses
    the write.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def initialize(self) -> None:
        """Open the database and create the table."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        self._conn.commit()
        logger.debug("Opened key-value store at %s", self.db_path)

    def _connection(self) -> sqlite3.Connection:
        if not self._conn:
            raise RuntimeError("Store not initialized")
        return self._conn

    def get(self, key: str) -> Any:
        with self._lock:
            row = self._connection().execute(
                "SELECT value FROM kv WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value)
        with self._lock:
            conn = self._connection()
            conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = CURRENT_TIMESTAMP
                """,
                (key, encoded),
            )
            conn.commit()

    def remove(self, key: str) -> None:
        with self._lock:
            conn = self._connection()
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()

    def keys(self, prefix: str = "") -> List[str]:
        # Prefix match done in Python; LIKE would treat '_' in keys as a wildcard.
        with self._lock:
            rows = self._connection().execute("SELECT key FROM kv ORDER BY key").fetchall()
        return [row[0] for row in rows if row[0].startswith(prefix)]

    def size_bytes(self) -> int:
        """Bytes used by the database file and its write-ahead log."""
        total = 0
        for suffix in ("", "-wal"):
            path = Path(f"{self.db_path}{suffix}")
            try:
                total += path.stat().st_size
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise StorageUnavailableError(f"Cannot stat {path}: {exc}") from exc
        return total

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None


__all__ = ["KeyValueStore", "MemoryStore", "SQLiteStore"]
