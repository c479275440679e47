"""
Durable key-value storage using async SQLite.

Holds small JSON records that must survive process restarts; today that is
only the daily-energy checkpoint.  Backed by a SQLite database file in WAL
mode, like the rest of the daemon's on-disk state.

Operations:
- get(key): Return the stored record for *key*, or None.
- set(key, record): Insert or replace the record for *key*.
- close(): Close the underlying database connection.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-14: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import aiosqlite

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_UPSERT_SQL = """\
INSERT INTO kv (key, value) VALUES (?, ?)
ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = datetime('now');
"""

_SELECT_SQL = "SELECT value FROM kv WHERE key = ?;"


class KeyValueStore:
    """Durable async key-value store backed by a SQLite database.

    Records are JSON-serialised mappings.  Each :meth:`set` is committed
    before it returns.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.

    Usage::

        async with KeyValueStore(path="/data/state.db") as kv:
            await kv.set("daily_energy_checkpoint", {"day": 739900})
            record = await kv.get("daily_energy_checkpoint")
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> KeyValueStore:
        """Enter async context manager: open the database."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager: close the database."""
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, key: str) -> dict[str, Any] | None:
        """Return the record stored under *key*, or None if absent.

        Raises:
            json.JSONDecodeError: If the stored value is not valid JSON.
        """
        assert self._db is not None, "Store not opened. Call open() or use async with."
        cursor = await self._db.execute(_SELECT_SQL, (key,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    async def set(self, key: str, record: Mapping[str, Any]) -> None:
        """Insert or replace the record stored under *key*."""
        assert self._db is not None, "Store not opened. Call open() or use async with."
        await self._db.execute(_UPSERT_SQL, (key, json.dumps(dict(record))))
        await self._db.commit()
