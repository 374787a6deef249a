"""Circuit breaker guarding the GitHub + dedup store unit of work.

The breaker has three states:
- CLOSED: normal operation, calls pass through
- OPEN: recent calls kept failing, calls are rejected without running
- HALF_OPEN: the timeout has passed and a single probe call is allowed

Usage:
    breaker = CircuitBreaker(failure_threshold=5, timeout_ms=60_000)
    try:
        result = await breaker.execute(lambda: update_check_run(...))
    except CircuitOpenError:
        ...
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

from src.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Counts consecutive failures and fails fast once the threshold is hit.

    Any exception raised by the wrapped call counts as a failure, including
    dedup store errors: skipping the dedup check could duplicate mutations.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout_ms: int = 60_000,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.timeout_ms = timeout_ms
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_at: float | None = None
        self._probe_in_flight = False

    def _time_until_retry(self, now: float) -> float:
        if self.last_failure_at is None:
            return 0.0
        return max(0.0, self.timeout_ms - (now - self.last_failure_at))

    def _before_call(self) -> bool:
        now = self._clock()
        if self.state is CircuitState.OPEN:
            remaining = self._time_until_retry(now)
            if remaining > 0:
                raise CircuitOpenError(retry_after=remaining / 1000)
            self.state = CircuitState.HALF_OPEN
            logger.info("Circuit breaker transitioning to HALF_OPEN")
        if self.state is CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError()
            self._probe_in_flight = True
            return True
        return False

    def _on_success(self) -> None:
        if self.state is not CircuitState.CLOSED:
            logger.info("Circuit breaker CLOSED after successful probe")
        self.failure_count = 0
        self.state = CircuitState.CLOSED

    def _on_failure(self, error: BaseException) -> None:
        self.failure_count += 1
        self.last_failure_at = self._clock()
        if self.failure_count >= self.failure_threshold:
            if self.state is not CircuitState.OPEN:
                logger.warning(
                    "Circuit breaker OPENED after %d failures: %s",
                    self.failure_count,
                    error,
                )
            self.state = CircuitState.OPEN

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run *fn* unless the circuit is open; re-raise its failures."""
        is_probe = self._before_call()
        try:
            result = await fn()
        except Exception as exc:
            self._on_failure(exc)
            raise
        else:
            self._on_success()
            return result
        finally:
            if is_probe:
                self._probe_in_flight = False

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_at = None
        self._probe_in_flight = False
        logger.info("Circuit breaker manually reset")
