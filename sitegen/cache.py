from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import redis

from sitegen import config

log = logging.getLogger(__name__)

CACHEABLE_OPERATIONS = {"chat", "completion"}


class ModelListCache:
    """Model ids reported by the gateway, remembered for `ttl` seconds.

    Owned by one gateway client; the clock is injectable so expiry can be
    driven from tests without sleeping.
    """

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = float(ttl)
        self._clock = clock
        self._models: Optional[List[str]] = None
        self._stored_at = 0.0

    def get(self) -> Optional[List[str]]:
        if self._models is None:
            return None
        if self.ttl > 0 and self._clock() - self._stored_at >= self.ttl:
            self._models = None
            return None
        return list(self._models)

    def put(self, models: Sequence[str]) -> None:
        self._models = [str(m) for m in models]
        self._stored_at = self._clock()

    def invalidate(self) -> None:
        self._models = None


def cache_key(operation: str, model: str, messages: Any, params: Optional[Dict[str, Any]] = None) -> str:
    if isinstance(messages, list):
        content: Any = [{"role": m.get("role"), "content": m.get("content")} for m in messages if isinstance(m, dict)]
    else:
        content = messages
    relevant = {k: (params or {}).get(k) for k in ("temperature", "max_tokens", "top_p")}
    h = hashlib.sha256()
    h.update(json.dumps({"operation": operation, "model": model, "content": content, "params": relevant}, sort_keys=True).encode("utf-8"))
    return f"ai:cache:{operation}:{model}:{h.hexdigest()[:16]}"


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    def set(self, key: str, value: Dict[str, Any], ttl: int) -> None: ...


class FileCacheBackend:
    def __init__(self, directory: Optional[str] = None):
        self.directory = Path(directory or config.CACHE_DIR)

    def _path(self, key: str) -> Path:
        safe = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.directory / f"{safe}.json"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                entry = json.load(f)
        except (OSError, ValueError):
            return None
        expires = entry.get("expires_at") or 0
        if expires and time.time() > expires:
            path.unlink(missing_ok=True)
            return None
        return entry.get("value")

    def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        entry = {"value": value, "expires_at": time.time() + ttl if ttl > 0 else 0}
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(entry, f, ensure_ascii=False, separators=(",", ":"))
        tmp.replace(path)


class RedisCacheBackend:
    def __init__(self, url: Optional[str] = None):
        # from_url is lazy; no network traffic until the first command
        self._client = redis.from_url(url or config.REDIS_URL, decode_responses=True)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._client.get(key)
        return json.loads(raw) if raw else None

    def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        raw = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        if ttl > 0:
            self._client.setex(key, ttl, raw)
        else:
            self._client.set(key, raw)


class ResponseCache:
    """Content-addressed cache for non-streaming chat completions."""

    def __init__(self, backend: Optional[CacheBackend] = None, ttl: Optional[int] = None):
        if backend is None:
            backend = RedisCacheBackend() if config.REDIS_URL else FileCacheBackend()
        self.backend = backend
        self.ttl = int(config.CACHE_TTL_SECS if ttl is None else ttl)
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.cost_savings = 0.0

    def get(self, operation: str, model: str, messages: Any, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        if operation not in CACHEABLE_OPERATIONS:
            return None
        key = cache_key(operation, model, messages, params)
        try:
            value = self.backend.get(key)
        except (OSError, redis.RedisError) as exc:
            log.warning("cache.get failed key=%s err=%r", key, exc)
            value = None
        with self._lock:
            if value is None:
                self.misses += 1
            else:
                self.hits += 1
                self.cost_savings += float(value.get("cost") or 0.0)
        log.debug("cache.%s key=%s", "hit" if value is not None else "miss", key)
        return value

    def set(self, operation: str, model: str, messages: Any, params: Optional[Dict[str, Any]], value: Dict[str, Any]) -> None:
        if operation not in CACHEABLE_OPERATIONS:
            return
        key = cache_key(operation, model, messages, params)
        try:
            self.backend.set(key, value, self.ttl)
        except (OSError, redis.RedisError) as exc:
            log.warning("cache.set failed key=%s err=%r", key, exc)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "total_requests": total,
                "hit_rate": (self.hits / total) if total else 0.0,
                "cost_savings": round(self.cost_savings, 6),
            }
