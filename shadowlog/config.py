"""shadowlog configuration."""
import os
from dataclasses import dataclass
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def default_codex_home() -> Path:
    return Path.home() / ".codex"


def resolve_codex_home() -> Path:
    override = (os.getenv("SHADOWLOG_CODEX_HOME") or "").strip()
    env_home = (os.getenv("CODEX_HOME") or "").strip()
    return Path(override or env_home or default_codex_home()).expanduser()


# Project root (one level up from shadowlog/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Database
DB_PATH = os.getenv("SHADOWLOG_DB_PATH", str(PROJECT_ROOT / "data" / "shadowlog_state.db"))
PERSIST_KEY = os.getenv("SHADOWLOG_PERSIST_KEY", "shadowlog.state")

# Observability
OTEL_ENABLED = _env_bool("SHADOWLOG_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("SHADOWLOG_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("SHADOWLOG_OTEL_SERVICE_NAME", "shadowlog")
PROM_PORT = _env_int("SHADOWLOG_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("SHADOWLOG_HOST", "127.0.0.1")
FRONTEND_ORIGIN = os.getenv("SHADOWLOG_FRONTEND_ORIGIN", "http://localhost:3000")
PORT = int(os.getenv("SHADOWLOG_PORT", "8000"))


@dataclass
class StoreSettings:
    """Tuning knobs for one SessionStore instance."""

    codex_home: Path
    include_archived: bool = False
    watch: bool = True
    watcher_debounce_ms: int = 500
    watch_settle_ms: int = 200
    sessions_notify_interval_ms: int = 500
    persist_debounce_ms: int = 500
    rewind_bytes: int = 4096
    dedup_capacity: int = 50_000
    retry_base_ms: int = 200
    retry_cap_ms: int = 5000
    retry_max_attempts: int = 6
    max_chunk_bytes: int = 4 * 1024 * 1024

    def watch_roots(self) -> list[Path]:
        roots = [self.codex_home / "sessions"]
        if self.include_archived:
            roots.append(self.codex_home / "archived_sessions")
        return roots


def load_store_settings() -> StoreSettings:
    """Build store settings from the current environment."""
    return StoreSettings(
        codex_home=resolve_codex_home(),
        include_archived=_env_bool("SHADOWLOG_INCLUDE_ARCHIVED", False),
        watch=_env_bool("SHADOWLOG_WATCH", True),
        watcher_debounce_ms=_env_int("SHADOWLOG_WATCHER_DEBOUNCE_MS", 500),
        watch_settle_ms=_env_int("SHADOWLOG_WATCH_SETTLE_MS", 200),
        sessions_notify_interval_ms=_env_int("SHADOWLOG_SESSIONS_NOTIFY_INTERVAL_MS", 500),
        persist_debounce_ms=_env_int("SHADOWLOG_PERSIST_DEBOUNCE_MS", 500),
        rewind_bytes=max(0, _env_int("SHADOWLOG_REWIND_BYTES", 4096)),
        dedup_capacity=max(1, _env_int("SHADOWLOG_DEDUP_CAPACITY", 50_000)),
        retry_base_ms=max(0, _env_int("SHADOWLOG_RETRY_BASE_MS", 200)),
        retry_cap_ms=max(0, _env_int("SHADOWLOG_RETRY_CAP_MS", 5000)),
        retry_max_attempts=max(0, _env_int("SHADOWLOG_RETRY_MAX_ATTEMPTS", 6)),
        max_chunk_bytes=max(1, _env_int("SHADOWLOG_MAX_CHUNK_BYTES", 4 * 1024 * 1024)),
    )
