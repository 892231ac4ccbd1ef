"""Live, deduplicated, resumable index of tailed rollout sessions.

One ``SessionStore`` per Codex home. All mutable state (resume states,
session index, event lists, dedup sets) lives on the instance and is only
touched from the event loop; merges never await, so they cannot interleave.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Callable, Optional

from pydantic import ValidationError

from shadowlog.config import StoreSettings
from shadowlog.date_utils import epoch_ms_to_iso
from shadowlog.db.dedup import EventDeduper
from shadowlog.db.file_watcher import FileWatcher
from shadowlog.db.repositories.progress import MemoryProgressRepository, ProgressRepository
from shadowlog.db.retry import RetryPolicy
from shadowlog.db.scheduler import Debouncer, FlushScheduler, Throttle
from shadowlog.models import (
    PERSISTED_STATE_VERSION,
    CallPair,
    FileProgress,
    FileResumeState,
    PersistedProgress,
    PollOutcome,
    RawRecord,
    SessionInfo,
    ShadowEvent,
)
from shadowlog.observability import (
    record_ingestion,
    record_parser_failure,
    record_poll_retry,
    record_tool_result,
    start_span,
)
from shadowlog.parsers.extractor import ExtractContext, extract_shadow_events
from shadowlog.parsers.jsonl import IncrementalJsonlParser
from shadowlog.parsers.locator import (
    is_rollout_file,
    normalize_path,
    scan_sessions,
    session_key_for,
    sort_sessions,
)
from shadowlog.session_queries import index_call_event

logger = logging.getLogger("shadowlog.store")

_MIN_FLUSH_DELAY_MS = 50

Listener = Callable[..., Any]


def event_sort_key(event: ShadowEvent) -> tuple[str, int]:
    return (event.ts or "", event.seq)


def _first_session_meta_id(records: list[RawRecord]) -> Optional[str]:
    for record in records:
        if record.type == "session_meta" and isinstance(record.payload, dict):
            session_id = record.payload.get("id")
            if isinstance(session_id, str) and session_id:
                return session_id
    return None


def _add_listener(listeners: list[Listener], listener: Listener) -> Callable[[], None]:
    listeners.append(listener)

    def _remove() -> None:
        if listener in listeners:
            listeners.remove(listener)

    return _remove


class SessionStore:
    def __init__(
        self,
        settings: StoreSettings,
        progress_repository: Optional[ProgressRepository] = None,
        parser: Optional[IncrementalJsonlParser] = None,
        watcher: Optional[FileWatcher] = None,
    ):
        self.settings = settings
        self._repo: ProgressRepository = progress_repository or MemoryProgressRepository()
        self._parser = parser or IncrementalJsonlParser(settings.max_chunk_bytes)
        self._watcher = watcher
        self._retry = self._retry_policy(settings)

        self._sessions: list[SessionInfo] = []
        self._sessions_by_key: dict[str, SessionInfo] = {}
        self._events_by_session: dict[str, list[ShadowEvent]] = {}
        self._file_states: dict[str, FileResumeState] = {}
        self._dedupers: dict[str, EventDeduper] = {}
        self._call_pairs: dict[str, dict[str, CallPair]] = {}
        self._file_locks: dict[str, asyncio.Lock] = {}
        self._persisted = PersistedProgress()

        self._scheduler = FlushScheduler()
        self._flush_debouncer = Debouncer(self.flush_pending_files, self._flush_delay(settings))
        self._persist_debouncer = Debouncer(self.save_persisted, settings.persist_debounce_ms / 1000.0)
        self._sessions_throttle = Throttle(
            self._emit_sessions_changed, settings.sessions_notify_interval_ms / 1000.0
        )

        self._sessions_listeners: list[Listener] = []
        self._session_events_listeners: list[Listener] = []
        self._appended_listeners: list[Listener] = []
        self._stopped = False

    # ── Settings ───────────────────────────────────────────────────

    @staticmethod
    def _retry_policy(settings: StoreSettings) -> RetryPolicy:
        return RetryPolicy.from_millis(
            settings.retry_base_ms, settings.retry_cap_ms, settings.retry_max_attempts
        )

    @staticmethod
    def _flush_delay(settings: StoreSettings) -> float:
        return max(_MIN_FLUSH_DELAY_MS, settings.watcher_debounce_ms) / 1000.0

    @property
    def root_label(self) -> str:
        return str(self.settings.codex_home)

    @property
    def watcher(self) -> Optional[FileWatcher]:
        return self._watcher

    async def reload_settings(self, settings: StoreSettings) -> None:
        """Apply new settings, rescan and restart the watcher."""
        self.settings = settings
        self._parser.max_chunk_bytes = max(1, settings.max_chunk_bytes)
        self._retry = self._retry_policy(settings)
        self._flush_debouncer.delay = self._flush_delay(settings)
        self._persist_debouncer.delay = settings.persist_debounce_ms / 1000.0
        self._sessions_throttle.interval = settings.sessions_notify_interval_ms / 1000.0
        await self.rescan_sessions()
        await self._start_watcher()

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        self._stopped = False
        await self.load_persisted()
        await self.rescan_sessions()
        await self._start_watcher()

    async def stop(self) -> None:
        """Stop scheduling polls and release the watcher. In-flight polls finish."""
        self._stopped = True
        self._flush_debouncer.cancel()
        self._sessions_throttle.cancel()
        self._persist_debouncer.cancel()
        self._scheduler.clear()
        if self._watcher is not None:
            await self._watcher.stop()
        await self._persist_debouncer.wait_idle()
        await self.save_persisted()

    async def _start_watcher(self) -> None:
        if self._watcher is not None:
            await self._watcher.stop()
        if not self.settings.watch or self._stopped:
            return
        if self._watcher is None:
            self._watcher = FileWatcher()
        await self._watcher.start(
            self,
            self.settings.watch_roots(),
            self.settings.watch_settle_ms,
            anchor=self.settings.codex_home,
        )

    # ── Consumer API ───────────────────────────────────────────────

    def get_sessions(self) -> list[SessionInfo]:
        return self._sessions

    def get_session(self, session_key: str) -> Optional[SessionInfo]:
        return self._sessions_by_key.get(session_key)

    def get_events(self, session_key: str) -> list[ShadowEvent]:
        """Events sorted by (ts, seq). Callers must not mutate the list."""
        return self._events_by_session.get(session_key, [])

    def get_call_pair(self, session_key: str, call_id: str) -> Optional[CallPair]:
        return self._call_pairs.get(session_key, {}).get(call_id)

    def get_translation_cache(self) -> dict[str, str]:
        if self._persisted.translationCache is None:
            self._persisted.translationCache = {}
        return self._persisted.translationCache

    def get_file_state(self, file_path: str) -> Optional[FileResumeState]:
        return self._file_states.get(normalize_path(file_path))

    def on_sessions_changed(self, listener: Callable[[], Any]) -> Callable[[], None]:
        return _add_listener(self._sessions_listeners, listener)

    def on_session_events_changed(self, listener: Callable[[str], Any]) -> Callable[[], None]:
        return _add_listener(self._session_events_listeners, listener)

    def on_events_appended(self, listener: Callable[[str, list[ShadowEvent]], Any]) -> Callable[[], None]:
        return _add_listener(self._appended_listeners, listener)

    async def warm_session(self, session_key: str) -> list[PollOutcome]:
        """Catch up every rollout file of a session before it is read."""
        session = self._sessions_by_key.get(session_key)
        if session is None:
            return []
        outcomes = [await self._poll_with_retry(path) for path in list(session.rolloutFiles)]
        self._emit_session_events_changed(session_key)
        return outcomes

    async def warm_rollout_file(self, file_path: str) -> PollOutcome:
        path = normalize_path(file_path)
        await self._ensure_session_for_file(path, rescan=False)
        outcome = await self._poll_with_retry(path)
        self._emit_session_events_changed(outcome.sessionKey)
        return outcome

    def clear_session(self, session_key: str) -> None:
        self._events_by_session.pop(session_key, None)
        self._dedupers.pop(session_key, None)
        self._call_pairs.pop(session_key, None)

    async def rescan_sessions(self) -> list[SessionInfo]:
        """Rebuild the session index from disk.

        Event lists, resume states and dedup sets are keyed by path and
        survive; recency already observed is never moved backwards.
        """
        sessions = await asyncio.to_thread(
            scan_sessions, self.settings.codex_home, self.settings.include_archived
        )
        previous = self._sessions_by_key
        for session in sessions:
            old = previous.get(session.sessionKey)
            if old is None:
                continue
            if old.updatedAt and (not session.updatedAt or old.updatedAt > session.updatedAt):
                session.updatedAt = old.updatedAt
            session.sessionId = session.sessionId or old.sessionId
            session.cwd = session.cwd or old.cwd
            session.model = session.model or old.model
        sort_sessions(sessions)
        self._sessions = sessions
        self._sessions_by_key = {s.sessionKey: s for s in sessions}
        self._sessions_throttle()
        return sessions

    # ── Change notifications ───────────────────────────────────────

    def enqueue_file_change(self, file_path: str) -> bool:
        """Watcher entry point. Paths are coalesced until the debounce fires."""
        if self._stopped or not is_rollout_file(file_path):
            return False
        self._scheduler.enqueue(normalize_path(file_path))
        self._flush_debouncer.trigger()
        return True

    async def flush_pending_files(self) -> list[PollOutcome]:
        batch = self._scheduler.begin_flush()
        if batch is None:
            # A flush is already running; pick these paths up next cycle.
            if not self._stopped:
                self._flush_debouncer.trigger()
            return []

        outcomes: list[PollOutcome] = []
        try:
            for path in batch:
                outcomes.append(await self._on_file_changed(path))
        finally:
            if self._scheduler.finish_flush() and not self._stopped:
                self._flush_debouncer.trigger()
        return outcomes

    async def _on_file_changed(self, path: str) -> PollOutcome:
        session_key = session_key_for(path)
        try:
            await self._ensure_session_for_file(path, rescan=True)
            outcome = await self._poll_with_retry(path)
        except Exception as exc:
            logger.exception("Unexpected failure while ingesting %s", path)
            outcome = PollOutcome(filePath=path, sessionKey=session_key, error=str(exc))
        self._emit_session_events_changed(session_key)
        return outcome

    async def _ensure_session_for_file(self, path: str, rescan: bool) -> SessionInfo:
        session_key = session_key_for(path)
        if rescan and session_key not in self._sessions_by_key:
            await self.rescan_sessions()

        session = self._sessions_by_key.get(session_key)
        if session is None:
            try:
                mtime_ms = (await asyncio.to_thread(os.stat, path)).st_mtime_ns / 1_000_000
                updated_at: Optional[str] = epoch_ms_to_iso(mtime_ms)
            except OSError:
                updated_at = None
            session = SessionInfo(sessionKey=session_key, rolloutFiles=[path], updatedAt=updated_at)
            self._sessions.append(session)
            self._sessions_by_key[session_key] = session
            sort_sessions(self._sessions)
            self._sessions_throttle()
        elif path not in session.rolloutFiles:
            session.rolloutFiles = sorted([*session.rolloutFiles, path])
            self._sessions_throttle()
        return session

    # ── Polling ────────────────────────────────────────────────────

    async def _poll_with_retry(self, file_path: str) -> PollOutcome:
        path = normalize_path(file_path)
        session_key = session_key_for(path)
        lock = self._file_locks.setdefault(path, asyncio.Lock())
        async with lock:
            started = time.perf_counter()
            attempt = 0
            while True:
                try:
                    with start_span("shadowlog.poll", {"file": path, "attempt": attempt}):
                        outcome = await self._poll_once(path, session_key)
                    outcome.attempts = attempt + 1
                    record_ingestion(
                        "rollout", "ok", (time.perf_counter() - started) * 1000, root=self.root_label
                    )
                    return outcome
                except OSError as exc:
                    if not self._retry.should_retry(attempt):
                        logger.error(
                            "Giving up on %s after %d attempts: %s", path, attempt + 1, exc
                        )
                        record_ingestion(
                            "rollout", "error", (time.perf_counter() - started) * 1000, root=self.root_label
                        )
                        return PollOutcome(
                            filePath=path, sessionKey=session_key, attempts=attempt + 1, error=str(exc)
                        )
                    delay = self._retry.delay_for(attempt)
                    logger.warning("Poll of %s failed (%s), retrying in %.2fs", path, exc, delay)
                    record_poll_retry(root=self.root_label)
                    attempt += 1
                    await asyncio.sleep(delay)

    async def _poll_once(self, path: str, session_key: str) -> PollOutcome:
        st = await asyncio.to_thread(os.stat, path)
        mtime_ms = st.st_mtime_ns / 1_000_000
        rotated = False
        if path not in self._file_states and not self._validate_persisted_progress(
            path, st.st_size, mtime_ms
        ):
            logger.info("Saved progress no longer matches %s, reading it from the start", path)
            self._persisted.fileProgress.pop(path, None)
            rotated = True

        state = self._get_or_create_file_state(path)
        result = await asyncio.to_thread(self._parser.poll, path, state)
        new_state = result.state or state
        self._file_states[path] = new_state

        fresh = self._merge_records(session_key, path, result.records)

        newest_ts = max((e.ts for e in fresh if e.ts), default=None)
        mtime_iso = epoch_ms_to_iso(new_state.lastMtimeMs or mtime_ms)
        recency = max(newest_ts, mtime_iso) if newest_ts else mtime_iso
        if self._update_session_updated_at(session_key, recency):
            self._sessions_throttle()

        self._persisted.fileProgress[path] = FileProgress(
            # Only complete lines count as consumed; the pending fragment is re-read.
            byteOffset=max(0, new_state.byteOffset - len(new_state.partialBuffer)),
            lastSize=new_state.lastSize if new_state.lastSize is not None else st.st_size,
            lastMtimeMs=new_state.lastMtimeMs if new_state.lastMtimeMs is not None else mtime_ms,
        )
        self.schedule_persist_save()

        return PollOutcome(
            filePath=path,
            sessionKey=session_key,
            appended=len(fresh),
            truncated=result.truncated or rotated,
        )

    def _validate_persisted_progress(self, path: str, size: int, mtime_ms: float) -> bool:
        progress = self._persisted.fileProgress.get(path)
        if progress is None:
            return True
        if size < progress.byteOffset:
            return False
        if mtime_ms < progress.lastMtimeMs:
            return False
        return True

    def _get_or_create_file_state(self, path: str) -> FileResumeState:
        existing = self._file_states.get(path)
        if existing is not None:
            return existing

        progress = self._persisted.fileProgress.get(path)
        rewind = max(0, self.settings.rewind_bytes)
        offset = max(0, progress.byteOffset - rewind) if progress else 0
        state = FileResumeState(
            filePath=path,
            byteOffset=offset,
            lastSize=progress.lastSize if progress else None,
            lastMtimeMs=progress.lastMtimeMs if progress else None,
            skipToNewline=offset > 0 and rewind > 0,
        )
        self._file_states[path] = state
        return state

    def _merge_records(self, session_key: str, path: str, records: list[RawRecord]) -> list[ShadowEvent]:
        session = self._sessions_by_key.get(session_key)
        session_id = session.sessionId if session else None
        if session_id is None:
            session_id = _first_session_meta_id(records)
        ctx = ExtractContext(sessionKey=session_key, filePath=path, sessionId=session_id)
        deduper = self._dedupers.get(session_key)
        if deduper is None:
            deduper = EventDeduper(self.settings.dedup_capacity)
            self._dedupers[session_key] = deduper

        fresh: list[ShadowEvent] = []
        parse_errors = 0
        for record in records:
            if record.type == "parse_error":
                parse_errors += 1
            for event in extract_shadow_events(ctx, record):
                if deduper.add(event.id):
                    fresh.append(event)

        if parse_errors:
            logger.warning("%d malformed line(s) in %s", parse_errors, path)
            record_parser_failure("jsonl", root=self.root_label, count=parse_errors)

        if not fresh:
            return fresh

        events = self._events_by_session.setdefault(session_key, [])
        events.extend(fresh)
        events.sort(key=event_sort_key)

        pairs = self._call_pairs.setdefault(session_key, {})
        for event in fresh:
            index_call_event(pairs, event)
            if event.kind == "tool-result":
                tool = event.details.get("tool", {}).get("name", "")
                record_tool_result(tool, event.severity, root=self.root_label)
            elif event.source == "session_meta" and session is not None:
                self._apply_session_meta(session, event)

        self._emit_events_appended(session_key, fresh)
        return fresh

    @staticmethod
    def _apply_session_meta(session: SessionInfo, event: ShadowEvent) -> None:
        details = event.details
        session.sessionId = session.sessionId or event.sessionId
        if not session.cwd and isinstance(details.get("cwd"), str):
            session.cwd = details["cwd"]
        model = details.get("model") or details.get("model_provider")
        if not session.model and isinstance(model, str):
            session.model = model
        if not session.createdAt and event.ts:
            session.createdAt = event.ts

    def _update_session_updated_at(self, session_key: str, iso: Optional[str]) -> bool:
        if not iso:
            return False
        session = self._sessions_by_key.get(session_key)
        if session is None:
            return False
        if session.updatedAt and iso <= session.updatedAt:
            return False
        session.updatedAt = iso
        sort_sessions(self._sessions)
        return True

    # ── Persistence ────────────────────────────────────────────────

    async def load_persisted(self) -> PersistedProgress:
        try:
            raw = await self._repo.load()
        except Exception:
            logger.exception("Could not load saved progress, starting fresh")
            raw = None
        self._persisted = self.validate_snapshot(raw)
        logger.info("Loaded saved progress for %d files", len(self._persisted.fileProgress))
        return self._persisted

    @staticmethod
    def validate_snapshot(raw: Any) -> PersistedProgress:
        """Accept only a well-formed snapshot of the current version."""
        if not raw:
            return PersistedProgress()
        if not isinstance(raw, dict) or raw.get("version") != PERSISTED_STATE_VERSION:
            logger.warning("Ignoring saved progress with unsupported version")
            return PersistedProgress()
        try:
            return PersistedProgress.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Ignoring malformed saved progress: %s", exc.error_count())
            return PersistedProgress()

    def schedule_persist_save(self) -> None:
        if self._stopped:
            return
        self._persist_debouncer.trigger()

    async def save_persisted(self) -> None:
        snapshot = self._persisted.model_dump(mode="json", exclude_none=True)
        try:
            await self._repo.save(snapshot)
        except Exception:
            logger.exception("Failed to save tailing progress")

    # ── Notification fan-out ───────────────────────────────────────

    def _notify(self, listeners: list[Listener], *args: Any) -> None:
        for listener in list(listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception("Store listener %r failed", listener)

    def _emit_sessions_changed(self) -> None:
        self._notify(self._sessions_listeners)

    def _emit_session_events_changed(self, session_key: str) -> None:
        self._notify(self._session_events_listeners, session_key)

    def _emit_events_appended(self, session_key: str, events: list[ShadowEvent]) -> None:
        self._notify(self._appended_listeners, session_key, events)
