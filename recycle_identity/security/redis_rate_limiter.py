"""Redis-backed sliding window rate limiter shared by all service replicas."""

from __future__ import annotations

import math
import time
from typing import Callable, Final

from redis import Redis
from redis.exceptions import ResponseError

from .rate_limiter import RateDecision


class RedisSlidingWindowRateLimiter:
    """Distributed sliding window limiter implemented with Redis sorted sets.

    Each key holds one sorted-set member per admitted request scored by its
    millisecond timestamp. The Lua script trims, counts and admits in one
    round trip; when admission is refused it reports the oldest score so the
    caller can compute ``Retry-After``.
    """

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local window_ms = tonumber(ARGV[1])
    local max_requests = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, '-inf', now_ms - window_ms)
    if redis.call('ZCARD', key) >= max_requests then
        local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        return {0, tonumber(oldest[2])}
    end
    local seq = redis.call('INCR', key .. ':seq')
    redis.call('PEXPIRE', key .. ':seq', window_ms)
    redis.call('ZADD', key, now_ms, now_ms .. ':' .. seq)
    redis.call('PEXPIRE', key, window_ms)
    return {1, 0}
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "identity-rate",
        timer: Callable[[], float] = time.time,
    ) -> None:
        """Initialise the Redis client, window configuration, and Lua script cache."""
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._timer = timer
        self._script = client.register_script(self._LUA_SCRIPT)

    def check(self, key: str) -> RateDecision:
        now_ms = int(self._timer() * 1000)
        redis_key = f"{self._key_prefix}:{key}"
        try:
            allowed, oldest_ms = self._script(
                keys=[redis_key], args=[self._window_ms, self._max_requests, now_ms]
            )
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command" in message and "eval" in message:
                return self._check_without_lua(redis_key, now_ms)
            raise
        return self._decision(int(allowed) == 1, int(oldest_ms), now_ms)

    def _check_without_lua(self, redis_key: str, now_ms: int) -> RateDecision:
        """Same algorithm issued as individual commands for servers without scripting."""
        self._client.zremrangebyscore(redis_key, "-inf", now_ms - self._window_ms)
        if self._client.zcard(redis_key) >= self._max_requests:
            oldest = self._client.zrange(redis_key, 0, 0, withscores=True)
            return self._decision(False, int(oldest[0][1]) if oldest else now_ms, now_ms)
        seq = self._client.incr(f"{redis_key}:seq")
        self._client.pexpire(f"{redis_key}:seq", self._window_ms)
        self._client.zadd(redis_key, {f"{now_ms}:{seq}": now_ms})
        self._client.pexpire(redis_key, self._window_ms)
        return RateDecision(True)

    def _decision(self, allowed: bool, oldest_ms: int, now_ms: int) -> RateDecision:
        if allowed:
            return RateDecision(True)
        wait_ms = oldest_ms + self._window_ms - now_ms
        return RateDecision(False, max(1, math.ceil(wait_ms / 1000)))
