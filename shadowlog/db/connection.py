"""Database connection factory.

Provides a singleton async SQLite connection with WAL mode for the progress
snapshot store.
"""
from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from shadowlog import config

logger = logging.getLogger("shadowlog.db")

_connection: aiosqlite.Connection | None = None


async def get_connection(db_path: str | Path | None = None) -> aiosqlite.Connection:
    """Return the singleton database connection, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    path = Path(db_path or config.DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(path))
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA busy_timeout=5000")
    logger.info("Database connection established: %s", path)
    _connection = conn
    return _connection


def is_connected() -> bool:
    return _connection is not None


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()
        _connection = None
        logger.info("Database connection closed")
