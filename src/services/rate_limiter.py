"""In-memory sliding-window rate limiter keyed by client identifier.

State lives in this process only: it resets on restart and is not shared
between instances, so each replica enforces its own limit.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


def client_identifier(headers: Mapping[str, str]) -> str:
    """Pick the rate-limit bucket for a request.

    Clients without either proxy header all share the ``"unknown"`` bucket.
    """
    return headers.get("x-forwarded-for") or headers.get("x-real-ip") or "unknown"


class RateLimiter:
    """Sliding-window request counter.

    Args:
        window_ms: Length of the trailing window in milliseconds.
        max_requests: Requests allowed per identifier inside the window.
        clock: Millisecond clock, injectable for tests.
    """

    _PRUNE_INTERVAL = 500  # drop idle identifiers every N calls

    def __init__(
        self,
        window_ms: int = 60_000,
        max_requests: int = 100,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self.window_ms = window_ms
        self.max_requests = max_requests
        self._clock = clock
        self._hits: dict[str, list[float]] = {}
        self._calls = 0

    def _prune_idle(self, now: float, window_ms: int) -> None:
        dead = [k for k, ts in self._hits.items() if not ts or now - ts[-1] >= window_ms]
        for k in dead:
            del self._hits[k]

    def is_rate_limited(
        self,
        identifier: str,
        window_ms: int | None = None,
        max_requests: int | None = None,
    ) -> bool:
        """Return True when *identifier* has used up its window.

        A rejected call is not recorded, so it does not extend the penalty.
        """
        window = self.window_ms if window_ms is None else window_ms
        limit = self.max_requests if max_requests is None else max_requests
        now = self._clock()

        self._calls += 1
        if self._calls % self._PRUNE_INTERVAL == 0:
            self._prune_idle(now, window)

        timestamps = [t for t in self._hits.get(identifier, []) if now - t < window]
        if len(timestamps) >= limit:
            self._hits[identifier] = timestamps
            return True

        timestamps.append(now)
        self._hits[identifier] = timestamps
        return False

    def reset(self) -> None:
        self._hits.clear()
        self._calls = 0
