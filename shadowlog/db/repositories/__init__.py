"""Repository package for persisted state."""

from .progress import (
    DEFAULT_PROGRESS_KEY,
    MemoryProgressRepository,
    ProgressRepository,
    SqliteProgressRepository,
)

__all__ = [
    "DEFAULT_PROGRESS_KEY",
    "MemoryProgressRepository",
    "ProgressRepository",
    "SqliteProgressRepository",
]
