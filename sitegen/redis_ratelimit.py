from __future__ import annotations

import time
from typing import Optional, Tuple

import redis

from sitegen import ratelimit


class RedisRateLimiter:
    """Fixed-window limiter shared across processes; same return shape as sitegen.ratelimit."""

    def __init__(
        self,
        redis_url: str,
        window_seconds: Optional[int] = None,
        max_requests: Optional[int] = None,
        client: Optional[redis.Redis] = None,
    ) -> None:
        self.window_seconds = int(window_seconds or ratelimit.WINDOW_SECONDS)
        self.max_requests = int(max_requests or ratelimit.MAX_REQUESTS)
        # from_url does not connect until the first command
        self._client = client or redis.from_url(redis_url, decode_responses=True)

    def _bucket_key(self, prefix: str, key: str, now: int) -> str:
        bucket = (prefix or "default").strip() or "default"
        user_key = (key or "anon").strip() or "anon"
        window_start = now - (now % self.window_seconds)
        return f"sitegen:rl:{bucket}:{user_key}:{window_start}"

    def check_and_increment(self, prefix: str, key: str, now: Optional[int] = None) -> Tuple[bool, int, int]:
        current_ts = now or int(time.time())
        bucket_key = self._bucket_key(prefix, key, current_ts)
        pipe = self._client.pipeline()
        pipe.incr(bucket_key, 1)
        pipe.expire(bucket_key, self.window_seconds)
        count, _ = pipe.execute()
        used = int(count)
        remaining = max(0, self.max_requests - used)
        reset_ts = current_ts - (current_ts % self.window_seconds) + self.window_seconds
        return (used <= self.max_requests, remaining, reset_ts)
