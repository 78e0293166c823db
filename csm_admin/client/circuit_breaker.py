"""
Per-backend Circuit Breaker

Stops a client from hammering a backend whose calls keep exhausting their
retries. Each backend service (hsm, pcs, bos, bss, cfs, ims, vault) gets one
named circuit, shared by every ServiceClient talking to it.

States:
    CLOSED     calls go through; exhausted calls are counted in a window
    OPEN       calls fail fast with BackendUnavailable
    HALF_OPEN  the recovery timeout passed; one call at a time is let
               through as a trial, the rest fail fast

A failed trial reopens the circuit with a longer recovery timeout
(doubled, up to max_recovery_timeout). A successful trial closes it and
restores the configured timeout.

Usage:
    breaker = CircuitBreaker.get("hsm", CircuitConfig(failure_threshold=5))
    if not breaker.allow_request():
        raise BackendUnavailable("hsm", breaker.retry_after())
    ...
    breaker.record_success()   # or breaker.record_failure(error)
                               # or breaker.release() when the call proved nothing
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitConfig:
    """Thresholds for one backend circuit."""

    failure_threshold: int = 5  # exhausted calls within failure_window
    failure_window: float = 60.0
    recovery_timeout: float = 30.0
    max_recovery_timeout: float = 300.0
    backoff_multiplier: float = 2.0


class CircuitBreaker:
    """Failure gate for one backend service."""

    _registry: Dict[str, "CircuitBreaker"] = {}
    _registry_lock = threading.Lock()

    def __init__(self, name: str, config: CircuitConfig = None, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.config = config or CircuitConfig()
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._failure_times: Deque[float] = deque()
        self._opened_at: Optional[float] = None
        self._recovery_timeout = self.config.recovery_timeout
        self._trial_in_flight = False

        self.rejected_calls = 0
        self.opened_count = 0

    @classmethod
    def get(cls, name: str, config: CircuitConfig = None) -> "CircuitBreaker":
        """The shared circuit of a backend; config only applies on first use."""
        with cls._registry_lock:
            breaker = cls._registry.get(name)
            if breaker is None:
                breaker = cls._registry[name] = cls(name, config)
            return breaker

    @classmethod
    def clear_registry(cls) -> None:
        with cls._registry_lock:
            cls._registry.clear()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _current_state(self) -> CircuitState:
        """State after applying the recovery timeout. Caller holds the lock."""
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self._recovery_timeout:
            self._state = CircuitState.HALF_OPEN
            logger.info(f"Backend '{self.name}' circuit half-open, next call is a trial")
        return self._state

    def allow_request(self) -> bool:
        """Admit a call. In HALF_OPEN only one trial may be in flight."""
        with self._lock:
            state = self._current_state()
            if state == CircuitState.OPEN or (state == CircuitState.HALF_OPEN and self._trial_in_flight):
                self.rejected_calls += 1
                return False
            if state == CircuitState.HALF_OPEN:
                self._trial_in_flight = True
            return True

    def release(self) -> None:
        """End a trial call that neither succeeded nor failed against the backend."""
        with self._lock:
            if self._trial_in_flight:
                self._trial_in_flight = False
                logger.debug(f"Backend '{self.name}' trial released without a verdict")

    def retry_after(self) -> Optional[float]:
        """Seconds until a trial call is allowed, None unless open."""
        with self._lock:
            if self._current_state() != CircuitState.OPEN:
                return None
            return max(0.0, self._opened_at + self._recovery_timeout - self._clock())

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def record_success(self) -> None:
        with self._lock:
            state = self._current_state()
            if state == CircuitState.HALF_OPEN:
                self._restore()
                logger.info(f"Backend '{self.name}' circuit closed after successful trial")
            elif state == CircuitState.CLOSED:
                self._expire_failures()

    def record_failure(self, error: Exception = None) -> None:
        with self._lock:
            now = self._clock()
            state = self._current_state()
            self._failure_times.append(now)
            if state == CircuitState.HALF_OPEN:
                self._recovery_timeout = min(
                    self._recovery_timeout * self.config.backoff_multiplier, self.config.max_recovery_timeout
                )
                self._trip(now, error)
            elif state == CircuitState.CLOSED:
                self._expire_failures()
                if len(self._failure_times) >= self.config.failure_threshold:
                    self._trip(now, error)

    def reset(self) -> None:
        with self._lock:
            self._restore()

    def get_status(self) -> Dict[str, Any]:
        retry_after = self.retry_after()
        with self._lock:
            return {
                "name": self.name,
                "state": self._current_state().value,
                "current_failures": len(self._failure_times),
                "rejected_calls": self.rejected_calls,
                "opened_count": self.opened_count,
                "trial_in_flight": self._trial_in_flight,
                "recovery_timeout": self._recovery_timeout,
                "retry_after": retry_after,
            }

    def _expire_failures(self) -> None:
        cutoff = self._clock() - self.config.failure_window
        while self._failure_times and self._failure_times[0] <= cutoff:
            self._failure_times.popleft()

    def _trip(self, now: float, error: Exception = None) -> None:
        self._state = CircuitState.OPEN
        self._trial_in_flight = False
        self._opened_at = now
        self.opened_count += 1
        cause = f": {error}" if error else ""
        logger.warning(
            f"Backend '{self.name}' circuit open after {len(self._failure_times)} failed call(s){cause}; "
            f"failing fast for {self._recovery_timeout:.1f}s"
        )

    def _restore(self) -> None:
        self._state = CircuitState.CLOSED
        self._trial_in_flight = False
        self._failure_times.clear()
        self._opened_at = None
        self._recovery_timeout = self.config.recovery_timeout
