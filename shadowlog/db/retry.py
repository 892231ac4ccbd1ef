"""Exponential backoff for transient rollout I/O failures."""
from __future__ import annotations

from dataclasses import dataclass


def backoff_delay(attempt: int, base_delay: float, cap: float) -> float:
    """Delay before retry number ``attempt + 1``: ``min(cap, base * 2**attempt)``."""
    if attempt < 0:
        attempt = 0
    return min(cap, base_delay * (2 ** attempt))


@dataclass(frozen=True)
class RetryPolicy:
    base_delay: float = 0.2
    cap: float = 5.0
    max_attempts: int = 6

    @classmethod
    def from_millis(cls, base_ms: int, cap_ms: int, max_attempts: int) -> "RetryPolicy":
        return cls(base_delay=base_ms / 1000.0, cap=cap_ms / 1000.0, max_attempts=max_attempts)

    def should_retry(self, attempt: int) -> bool:
        """``attempt`` counts failures so far, starting at 0."""
        return attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        return backoff_delay(attempt, self.base_delay, self.cap)
