"""Debounce, single-flight and throttle primitives for the session store.

``FlushScheduler`` holds the pending-file bookkeeping as a plain state machine
so it can be driven synchronously; ``Debouncer`` and ``Throttle`` attach it to
the running asyncio loop with ``call_later`` handles.
"""
from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Callable, Optional


class FlushScheduler:
    """Coalesces file-change notifications into serialized flush batches.

    enqueue()       -> path joins the pending set; caller (re)arms its timer.
    begin_flush()   -> the batch to poll, or None if a flush is in flight
                       (caller re-arms instead of interleaving).
    finish_flush()  -> True when paths arrived during the flush and the timer
                       must be re-armed for the next cycle.
    """

    def __init__(self) -> None:
        self._pending: dict[str, None] = {}
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    def enqueue(self, path: str) -> None:
        self._pending[path] = None

    def begin_flush(self) -> Optional[list[str]]:
        if self._in_flight:
            return None
        self._in_flight = True
        batch = list(self._pending)
        self._pending.clear()
        return batch

    def finish_flush(self) -> bool:
        self._in_flight = False
        return bool(self._pending)

    def clear(self) -> None:
        self._pending.clear()


def _run_callback(callback: Callable[[], Any], tasks: set[asyncio.Task]) -> None:
    result = callback()
    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        tasks.add(task)
        task.add_done_callback(tasks.discard)


class Debouncer:
    """Runs ``callback`` once ``delay`` seconds after the last ``trigger()``.

    A new trigger cancels and replaces the pending timer. Coroutine callbacks
    are scheduled as tasks on the running loop.
    """

    def __init__(self, callback: Callable[[], Any], delay: float):
        self.callback = callback
        self.delay = max(0.0, float(delay))
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def wait_idle(self) -> None:
        """Wait for callbacks already started by this debouncer."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _fire(self) -> None:
        self._handle = None
        _run_callback(self.callback, self._tasks)


class Throttle:
    """Calls ``callback`` at most once per ``interval`` seconds.

    Calls inside the window collapse into a single trailing call delivered
    when the window ends.
    """

    def __init__(
        self,
        callback: Callable[[], Any],
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.callback = callback
        self.interval = max(0.0, float(interval))
        self._clock = clock
        self._last: Optional[float] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()

    def __call__(self) -> None:
        now = self._clock()
        remaining = 0.0 if self._last is None else self.interval - (now - self._last)
        if remaining <= 0:
            self._last = now
            _run_callback(self.callback, self._tasks)
            return
        if self._handle is not None:
            return
        self._handle = asyncio.get_running_loop().call_later(remaining, self._fire_trailing)

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire_trailing(self) -> None:
        self._handle = None
        self._last = self._clock()
        _run_callback(self.callback, self._tasks)
