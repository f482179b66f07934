"""Circuit breaker guarding sandbox provider calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Fails fast after repeated provider errors until a cool-down elapses."""

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.timeout:
                self._state = CircuitState.HALF_OPEN
                logger.info("Circuit %s half-open, allowing a trial call", self.name)
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("Circuit %s closed", self.name)
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failures += 1
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state != CircuitState.OPEN:
                logger.warning("Circuit %s opened after %d failures", self.name, self._failures)
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        state = self.state
        if state == CircuitState.OPEN or (state == CircuitState.HALF_OPEN and self._trial_in_flight):
            raise CircuitOpenError(f"Circuit {self.name} is open")
        trial = state == CircuitState.HALF_OPEN
        self._trial_in_flight = trial
        try:
            result = await func()
        except Exception:
            self.record_failure()
            raise
        finally:
            if trial:
                self._trial_in_flight = False
        self.record_success()
        return result

    def snapshot(self) -> dict[str, object]:
        return {"name": self.name, "state": self.state.value, "failures": self._failures}
