"""Key/value blob store for resumable tailing progress."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Protocol

import aiosqlite

logger = logging.getLogger("shadowlog.db")

DEFAULT_PROGRESS_KEY = "shadowlog.state"


class ProgressRepository(Protocol):
    async def load(self) -> dict[str, Any] | None: ...

    async def save(self, snapshot: dict[str, Any]) -> None: ...


class SqliteProgressRepository:
    """Persist one JSON snapshot under a fixed key in ``kv_store``."""

    def __init__(self, db: aiosqlite.Connection, key: str = DEFAULT_PROGRESS_KEY):
        self.db = db
        self.key = key

    async def load(self) -> dict[str, Any] | None:
        async with self.db.execute(
            "SELECT value FROM kv_store WHERE key = ?", (self.key,)
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        try:
            data = json.loads(row[0])
        except ValueError:
            logger.warning("Discarding unreadable progress snapshot under key %s", self.key)
            return None
        return data if isinstance(data, dict) else None

    async def save(self, snapshot: dict[str, Any]) -> None:
        await self.db.execute(
            """INSERT INTO kv_store (key, value, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                 value=excluded.value, updated_at=excluded.updated_at""",
            (
                self.key,
                json.dumps(snapshot),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        await self.db.commit()

    async def delete(self) -> None:
        await self.db.execute("DELETE FROM kv_store WHERE key = ?", (self.key,))
        await self.db.commit()


class MemoryProgressRepository:
    """In-process stand-in used when no database is configured."""

    def __init__(self, snapshot: dict[str, Any] | None = None):
        self.snapshot = snapshot
        self.saves = 0

    async def load(self) -> dict[str, Any] | None:
        return json.loads(json.dumps(self.snapshot)) if self.snapshot is not None else None

    async def save(self, snapshot: dict[str, Any]) -> None:
        self.snapshot = json.loads(json.dumps(snapshot))
        self.saves += 1
