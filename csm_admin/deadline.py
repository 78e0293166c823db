"""
Deadline helper shared by every long-running call.

A Deadline is an absolute point on the monotonic clock. Calls take one
optionally and derive per-attempt timeouts from what remains.
"""

import time
from typing import Callable, Optional

from .errors import DeadlineExceeded


class Deadline:
    """Absolute monotonic deadline."""

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.seconds = seconds
        self._expires_at = None if seconds is None else clock() + seconds

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    @classmethod
    def coalesce(cls, deadline: Optional["Deadline"], default_seconds: Optional[float]) -> "Deadline":
        """Return deadline if given, otherwise a new one of default_seconds."""
        if deadline is not None:
            return deadline
        return cls(default_seconds)

    @property
    def is_bounded(self) -> bool:
        return self._expires_at is not None

    def remaining(self) -> Optional[float]:
        """Seconds left (never negative), or None when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def cap(self, timeout: Optional[float]) -> Optional[float]:
        """Clamp a timeout so it never outlives the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)

    def check(self, what: str) -> None:
        if self.expired():
            raise DeadlineExceeded(what, self.seconds)

    def __repr__(self) -> str:
        if self._expires_at is None:
            return "Deadline(never)"
        return f"Deadline(remaining={self.remaining():.1f}s)"
