"""
Circuit breaker for calls to the catalog store.

    CLOSED --(failure_threshold consecutive failures)--> OPEN
    OPEN   --(cooldown elapsed, next check)------------> CLOSED (counter reset, one attempt let through)
    any    --(success)---------------------------------> CLOSED

While OPEN, callers are expected to skip the real call and serve whatever they
have cached. The breaker is an ordinary object owned by whoever builds the
fetcher, so tests and separate apps never share counters.
"""

import logging
import threading
import time
from typing import Callable, Dict, Any

from api.enums import CircuitState

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_COOLDOWN_SECONDS = 30.0


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        name: str = "catalog",
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self._failure_threshold = failure_threshold
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._name = name
        self._failure_count = 0
        self._last_failure_time = 0.0
        # Request handlers may run in a threadpool
        self._lock = threading.Lock()

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def state(self) -> CircuitState:
        """Current state. Reading it performs the cooldown check, so an expired OPEN resets here."""
        with self._lock:
            return self._check_state()

    def _check_state(self) -> CircuitState:
        if self._failure_count < self._failure_threshold:
            return CircuitState.CLOSED

        if self._clock() - self._last_failure_time > self._cooldown:
            logger.info(
                f"{self._name} circuit breaker cooldown elapsed after {self._failure_count} failures, "
                "allowing a new attempt"
            )
            self._failure_count = 0
            self._last_failure_time = 0.0
            return CircuitState.CLOSED

        return CircuitState.OPEN

    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def allow_request(self) -> bool:
        """True when the protected call should be attempted."""
        return not self.is_open()

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()
            if self._failure_count == self._failure_threshold:
                logger.warning(
                    f"{self._name} circuit breaker opened for {self._cooldown:.0f}s "
                    f"(consecutive failures: {self._failure_count})"
                )

    def record_success(self) -> None:
        with self._lock:
            if self._failure_count > 0:
                logger.info(f"{self._name} recovered after {self._failure_count} failures")
            self._failure_count = 0
            self._last_failure_time = 0.0

    def reset(self) -> None:
        self.record_success()

    def get_stats(self) -> Dict[str, Any]:
        state = self.state
        return {
            "name": self._name,
            "state": state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self._failure_threshold,
            "cooldown_seconds": self._cooldown,
        }
