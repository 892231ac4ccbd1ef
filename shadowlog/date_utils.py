"""Shared timestamp normalization helpers."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def _format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    cleaned = _FRACTION_RE.sub(r"\1", cleaned.replace("Z", "+00:00").replace("z", "+00:00"))
    try:
        return datetime.fromisoformat(cleaned)
    except ValueError:
        return None


def to_iso(value: Any) -> str | None:
    """Normalize a record timestamp to ``YYYY-MM-DDTHH:MM:SS.mmmZ``.

    Only strings and datetimes are accepted; anything unparseable yields None
    so callers can fall back to sequence ordering.
    """
    if isinstance(value, datetime):
        return _format_datetime_utc(value)
    if not isinstance(value, str):
        return None
    parsed = _parse_datetime_token(value)
    if parsed is None:
        return None
    return _format_datetime_utc(parsed)


def epoch_ms_to_iso(value_ms: float) -> str:
    return _format_datetime_utc(datetime.fromtimestamp(value_ms / 1000.0, tz=timezone.utc))


def utc_now_iso() -> str:
    return _format_datetime_utc(datetime.now(timezone.utc))
