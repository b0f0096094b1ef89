"""In-memory sliding window rate limiter for the auth endpoints."""

from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Deque, DefaultDict, Protocol


@dataclass(frozen=True, slots=True)
class RateDecision:
    """Outcome of a rate check; ``retry_after`` is whole seconds until a slot frees up."""

    allowed: bool
    retry_after: int = 0


class RateLimiter(Protocol):
    def check(self, key: str) -> RateDecision: ...


class SlidingWindowRateLimiter:
    """Thread-safe sliding window rate limiter keyed by action and client."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        *,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise limiter parameters and per-key storage."""
        self._max_requests = max_requests
        self._window = window_seconds
        self._timer = timer
        self._events: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()

    def check(self, key: str) -> RateDecision:
        now = self._timer()
        with self._lock:
            queue = self._events[key]
            while queue and now - queue[0] >= self._window:
                queue.popleft()
            if len(queue) >= self._max_requests:
                wait = self._window - (now - queue[0])
                return RateDecision(False, max(1, math.ceil(wait)))
            queue.append(now)
            return RateDecision(True)
