"""Read-only helpers over a session's event list."""
from __future__ import annotations

import json
from collections import Counter
from typing import Iterable, Mapping, Optional

from shadowlog.models import CallPair, SessionStats, ShadowEvent, TagCount

TOP_TAG_LIMIT = 15
SEARCH_RESULT_LIMIT = 200


def filter_events(
    events: Iterable[ShadowEvent],
    *,
    only_mcp: bool = False,
    only_shell: bool = False,
    only_errors: bool = False,
    kinds: Optional[Iterable[str]] = None,
) -> list[ShadowEvent]:
    wanted_kinds = set(kinds) if kinds else None
    out: list[ShadowEvent] = []
    for event in events:
        if only_errors and event.severity != "error":
            continue
        if only_mcp and "mcp" not in event.tags:
            continue
        if only_shell and "shell" not in event.tags:
            continue
        if wanted_kinds is not None and event.kind not in wanted_kinds:
            continue
        out.append(event)
    return out


def _search_text(event: ShadowEvent, translation_cache: Mapping[str, str]) -> str:
    text = f"{event.kind} {event.title} {json.dumps(event.details, ensure_ascii=False, default=str)}"
    for key, translated in translation_cache.items():
        if event.id in key:
            text += f" {translated}"
    return text.lower()


def search_events(
    events: Iterable[ShadowEvent],
    query: str,
    translation_cache: Optional[Mapping[str, str]] = None,
    limit: int = SEARCH_RESULT_LIMIT,
) -> list[ShadowEvent]:
    """Case-insensitive literal match over kind, title, details and translations."""
    needle = (query or "").strip().lower()
    if not needle:
        return []
    cache = translation_cache or {}
    matches: list[ShadowEvent] = []
    for event in events:
        if needle in _search_text(event, cache):
            matches.append(event)
            if len(matches) >= limit:
                break
    return matches


def compute_stats(events: Iterable[ShadowEvent]) -> SessionStats:
    by_kind: Counter[str] = Counter()
    by_tag: Counter[str] = Counter()
    errors = 0
    warns = 0
    total = 0
    for event in events:
        total += 1
        by_kind[event.kind] += 1
        if event.severity == "error":
            errors += 1
        elif event.severity == "warn":
            warns += 1
        by_tag.update(event.tags)

    return SessionStats(
        total=total,
        byKind=dict(by_kind),
        topTags=[TagCount(tag=tag, count=count) for tag, count in by_tag.most_common(TOP_TAG_LIMIT)],
        errors=errors,
        warns=warns,
    )


def index_call_event(index: dict[str, CallPair], event: ShadowEvent) -> None:
    """Slot a tool-call or tool-result into ``index`` by its call id.

    Events without a call id are left standalone.
    """
    call_id = event.relatedCallId
    if not call_id or event.kind not in ("tool-call", "tool-result"):
        return
    pair = index.get(call_id)
    if pair is None:
        pair = CallPair(callId=call_id)
        index[call_id] = pair
    if event.kind == "tool-call":
        if pair.call is None:
            pair.call = event
    elif pair.result is None:
        pair.result = event


def build_call_pairs(events: Iterable[ShadowEvent]) -> dict[str, CallPair]:
    index: dict[str, CallPair] = {}
    for event in events:
        index_call_event(index, event)
    return index
