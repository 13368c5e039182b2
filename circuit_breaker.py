"""
CIRCUIT BREAKER
===============
Guards collaborator calls (market data, order gateway) so a dead endpoint
fails fast instead of stalling every loop iteration:

  CLOSED     calls pass; consecutive failures are counted
  OPEN       calls raise CircuitBreakerError until the reset timeout passes
  HALF_OPEN  one trial call; success closes, failure re-opens
"""

import time
import threading
from typing import Any, Callable, Optional
from enum import Enum
import logging

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED    = "CLOSED"
    OPEN      = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerError(Exception):
    """Raised instead of calling through an open circuit."""


class CircuitBreaker:

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if (self._state is CircuitState.OPEN
                    and self._clock() - self._opened_at >= self.reset_timeout):
                logger.info(f"[{self.name}] Circuit HALF_OPEN (probing)")
                self._state = CircuitState.HALF_OPEN
            return self._state

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        logger.error(f"🔴 [{self.name}] Circuit OPEN after {self._failures} failures")

    def record_success(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info(f"✅ [{self.name}] Circuit CLOSED (recovered)")
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if (self._state is CircuitState.HALF_OPEN
                    or self._failures >= self.failure_threshold):
                self._trip()

    def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Raises:
            CircuitBreakerError: circuit is OPEN
            whatever `func` raises (after counting the failure)
        """
        if self.state is CircuitState.OPEN:
            remaining = self.reset_timeout - (self._clock() - self._opened_at)
            raise CircuitBreakerError(
                f"Circuit '{self.name}' is OPEN (retry in {remaining:.1f}s)"
            )
        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result
