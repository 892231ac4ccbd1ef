"""File watcher service using watchfiles.

Monitors the sessions directories for appended or newly created rollout files
and hands their paths to the session store's pending-file queue.
"""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Optional

from watchfiles import Change, awatch

from shadowlog.parsers.locator import is_rollout_file, iter_rollout_files, normalize_path

logger = logging.getLogger("shadowlog.watcher")

ROOT_POLL_SECONDS = 2.0


def rollout_filter(change: Change, path: str) -> bool:
    return change != Change.deleted and is_rollout_file(path)


def _is_under(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


class FileWatcher:
    """Background file watcher that feeds change notifications to a store.

    Uses `watchfiles` (Rust-accelerated) for efficient watching. The watch
    layer's debounce doubles as the settle delay that keeps half-written
    lines from racing the poll.

    Watch roots that do not exist yet are covered by watching ``anchor``
    (the Codex home) instead; if the anchor is missing too, the loop waits
    for it to appear.
    """

    root_poll_seconds = ROOT_POLL_SECONDS

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    async def start(
        self,
        store: Any,
        watch_paths: Iterable[Path],
        settle_ms: int = 200,
        anchor: Optional[Path] = None,
    ) -> None:
        """Start watching ``watch_paths`` in a background task."""
        if self._running:
            logger.warning("File watcher already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._watch_loop(
                store,
                [Path(p) for p in watch_paths],
                settle_ms,
                Path(anchor) if anchor is not None else None,
            )
        )
        logger.info("File watcher started")

    async def stop(self) -> None:
        """Stop the file watcher and release the watch subscription."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._stop_event = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @staticmethod
    def _resolve_targets(watch_paths: list[Path], anchor: Optional[Path]) -> list[Path]:
        targets: dict[str, Path] = {}
        for root in watch_paths:
            if root.is_dir():
                targets[normalize_path(root)] = root
            elif anchor is not None and anchor.is_dir():
                targets[normalize_path(anchor)] = anchor
        return list(targets.values())

    async def _wait_for_targets(self, watch_paths: list[Path], anchor: Optional[Path]) -> list[Path]:
        """Block until some watch root (or the anchor) exists, or stop is requested."""
        logger.warning(
            "No watch paths exist yet, checking again every %.1fs: %s",
            self.root_poll_seconds, [str(p) for p in watch_paths],
        )
        while self._running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.root_poll_seconds)
                return []
            except asyncio.TimeoutError:
                targets = self._resolve_targets(watch_paths, anchor)
                if targets:
                    return targets
        return []

    async def _watch_loop(
        self,
        store: Any,
        watch_paths: list[Path],
        settle_ms: int,
        anchor: Optional[Path] = None,
    ) -> None:
        roots = [normalize_path(p) for p in watch_paths]
        try:
            targets = self._resolve_targets(watch_paths, anchor)
            if not targets:
                targets = await self._wait_for_targets(watch_paths, anchor)
                if not targets:
                    return
                # Files written before the watch attached would otherwise be missed.
                for root in watch_paths:
                    for path in iter_rollout_files(root):
                        store.enqueue_file_change(path)

            logger.info("Watching %d directories: %s", len(targets), [str(p) for p in targets])
            async for changes in awatch(
                *targets,
                watch_filter=rollout_filter,
                debounce=max(1, int(settle_ms)),
                stop_event=self._stop_event,
            ):
                if not self._running:
                    break
                changed = self._classify_changes(changes, roots)
                if changed:
                    logger.debug("Detected %d rollout changes", len(changed))
                for path in changed:
                    store.enqueue_file_change(path)
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
        except Exception as e:
            logger.error("File watcher error: %s", e)
        finally:
            self._running = False

    def _classify_changes(
        self,
        changes: set[tuple[Change, str]],
        roots: Optional[list[str]] = None,
    ) -> list[str]:
        """Reduce raw watchfiles changes to absolute rollout paths to poll.

        Deletions are ignored; a later add of the same path re-ingests it.
        When ``roots`` is given, paths outside every root are dropped (an
        anchor watch sees the whole Codex home).
        """
        result: dict[str, None] = {}
        for change_type, path_str in changes:
            if change_type not in (Change.added, Change.modified):
                continue
            if not is_rollout_file(path_str):
                continue
            path = normalize_path(path_str)
            if roots is not None and not any(_is_under(path, root) for root in roots):
                continue
            result[path] = None
        return sorted(result)
