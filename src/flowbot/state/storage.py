"""Storage adapters for persisted state variables."""

from __future__ import annotations

import fnmatch
import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class StoredValue:
    value: Any
    expires_at: float | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def expired(self, now: float | None = None) -> bool:
        return self.expires_at is not None and (now or time.time()) >= self.expires_at


@runtime_checkable
class StorageAdapter(Protocol):
    """Key/value storage for state variables."""

    async def get(self, key: str) -> StoredValue | None: ...

    async def set(self, key: str, value: StoredValue) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def has(self, key: str) -> bool: ...

    async def keys(self, pattern: str | None = None) -> list[str]: ...

    async def clear(self) -> None: ...

    async def close(self) -> None: ...


class MemoryStorage:
    """In-process storage; expired entries are dropped when read."""

    def __init__(self) -> None:
        self._data: dict[str, StoredValue] = {}

    async def get(self, key: str) -> StoredValue | None:
        stored = self._data.get(key)
        if stored is None:
            return None
        if stored.expired():
            del self._data[key]
            return None
        return stored

    async def set(self, key: str, value: StoredValue) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def has(self, key: str) -> bool:
        return await self.get(key) is not None

    async def keys(self, pattern: str | None = None) -> list[str]:
        now = time.time()
        live = [k for k, v in self._data.items() if not v.expired(now)]
        if pattern:
            live = [k for k in live if fnmatch.fnmatchcase(k, pattern)]
        return sorted(live)

    async def clear(self) -> None:
        self._data.clear()

    async def close(self) -> None:
        self._data.clear()


class SQLiteStorage:
    """SQLite-backed storage (WAL mode, JSON-encoded values)."""

    def __init__(self, db_path: Path | str) -> None:
        target = str(db_path)
        if target != ":memory:":
            path = Path(target).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            target = str(path)
        self._conn = sqlite3.connect(target, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );
        """)
        self._conn.commit()

    async def get(self, key: str) -> StoredValue | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM state WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        stored = StoredValue(
            value=json.loads(row["value"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
        if stored.expired():
            await self.delete(key)
            return None
        return stored

    async def set(self, key: str, value: StoredValue) -> None:
        with self._lock:
            self._conn.execute(
                """INSERT OR REPLACE INTO state (key, value, expires_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    key,
                    json.dumps(value.value, default=str),
                    value.expires_at,
                    value.created_at,
                    value.updated_at,
                ),
            )
            self._conn.commit()

    async def delete(self, key: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM state WHERE key = ?", (key,))
            self._conn.commit()
        return cursor.rowcount > 0

    async def has(self, key: str) -> bool:
        return await self.get(key) is not None

    async def keys(self, pattern: str | None = None) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key FROM state WHERE expires_at IS NULL OR expires_at > ? ORDER BY key",
                (time.time(),),
            ).fetchall()
        keys = [row["key"] for row in rows]
        if pattern:
            keys = [k for k in keys if fnmatch.fnmatchcase(k, pattern)]
        return keys

    async def clear(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM state")
            self._conn.commit()

    async def close(self) -> None:
        self._conn.close()


def create_storage(backend: str = "memory", path: str | None = None) -> StorageAdapter:
    """Build the storage adapter named by config."""
    if backend == "memory":
        return MemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(path or "~/.local/share/flowbot/state.db")
    raise ValueError(f"Unknown storage backend: {backend}")
