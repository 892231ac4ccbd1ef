"""Discover rollout files under a Codex home and group them into sessions."""
from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any

from shadowlog.date_utils import epoch_ms_to_iso, to_iso
from shadowlog.models import SessionInfo

logger = logging.getLogger("shadowlog.locator")

ROLLOUT_FILE_RE = re.compile(r"rollout-.*\.jsonl$", re.IGNORECASE)
_META_SCAN_BYTES = 256 * 1024


def is_rollout_file(path: str | Path) -> bool:
    return bool(ROLLOUT_FILE_RE.search(Path(path).name))


def normalize_path(path: str | Path) -> str:
    return os.path.normpath(os.path.abspath(str(path)))


def session_key_for(file_path: str | Path) -> str:
    return os.path.dirname(normalize_path(file_path))


def iter_rollout_files(root: Path) -> list[str]:
    if not root.is_dir():
        return []
    found: list[str] = []
    # os.walk does not follow symlinked directories by default.
    for dirpath, _dirnames, filenames in os.walk(root, onerror=lambda exc: logger.debug("Skipping %s", exc)):
        for name in filenames:
            if is_rollout_file(name):
                found.append(normalize_path(os.path.join(dirpath, name)))
    return found


def read_first_session_meta(file_path: str | Path) -> dict[str, Any] | None:
    """Return the first ``session_meta`` record within the head of a file."""
    with open(file_path, "rb") as fh:
        head = fh.read(_META_SCAN_BYTES)
    for raw_line in head.decode("utf-8", errors="replace").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except ValueError:
            continue
        if isinstance(record, dict) and record.get("type") == "session_meta":
            return record
    return None


def _file_mtime_ms(path: str) -> float:
    try:
        return os.stat(path).st_mtime_ns / 1_000_000
    except OSError:
        return 0.0


def build_session_info(session_key: str, rollout_files: list[str]) -> SessionInfo:
    files = sorted(rollout_files)
    meta: dict[str, Any] | None = None
    try:
        meta = read_first_session_meta(files[0]) if files else None
    except OSError as exc:
        logger.debug("Could not read session meta from %s: %s", files[0], exc)

    payload = meta.get("payload") if meta else None
    if not isinstance(payload, dict):
        payload = {}

    mtimes = [_file_mtime_ms(f) for f in files]
    positive = [m for m in mtimes if m > 0]
    max_mtime = max(mtimes) if mtimes else 0.0
    min_mtime = min(positive) if positive else 0.0

    created_at = to_iso(payload.get("timestamp")) or to_iso(meta.get("timestamp") if meta else None)
    if not created_at and min_mtime:
        created_at = epoch_ms_to_iso(min_mtime)

    def _opt_str(value: Any) -> str | None:
        return value if isinstance(value, str) and value else None

    return SessionInfo(
        sessionKey=session_key,
        sessionId=_opt_str(payload.get("id")),
        cwd=_opt_str(payload.get("cwd")),
        model=_opt_str(payload.get("model")) or _opt_str(payload.get("model_provider")),
        createdAt=created_at,
        updatedAt=epoch_ms_to_iso(max_mtime) if max_mtime else None,
        rolloutFiles=files,
    )


def sort_sessions(sessions: list[SessionInfo]) -> None:
    sessions.sort(key=lambda s: s.updatedAt or "", reverse=True)


def scan_sessions(codex_home: str | Path, include_archived: bool = False) -> list[SessionInfo]:
    """Scan ``sessions/`` (and optionally ``archived_sessions/``) for rollouts.

    Files are grouped by containing directory; each group is one session.
    A missing or non-directory root yields an empty list.
    """
    root = Path(codex_home).expanduser()
    if not root.is_dir():
        logger.info("Codex home not found, no sessions to scan: %s", root)
        return []

    files = iter_rollout_files(root / "sessions")
    if include_archived:
        files.extend(iter_rollout_files(root / "archived_sessions"))

    by_dir: dict[str, list[str]] = {}
    for file_path in files:
        by_dir.setdefault(os.path.dirname(file_path), []).append(file_path)

    sessions = [build_session_info(key, group) for key, group in by_dir.items()]
    sort_sessions(sessions)
    logger.info("Scanned %d rollout files into %d sessions under %s", len(files), len(sessions), root)
    return sessions
