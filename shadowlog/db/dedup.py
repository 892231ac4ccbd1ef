"""Bounded FIFO set of already-ingested event ids."""
from __future__ import annotations

from collections import deque


class EventDeduper:
    def __init__(self, capacity: int):
        self.capacity = max(1, int(capacity))
        self._order: deque[str] = deque()
        self._seen: set[str] = set()

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, event_id: str) -> bool:
        """Record ``event_id``. Returns False if it was already present."""
        if event_id in self._seen:
            return False
        self._seen.add(event_id)
        self._order.append(event_id)
        while len(self._order) > self.capacity:
            self._seen.discard(self._order.popleft())
        return True
