from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import redis

from sitegen import config

log = logging.getLogger(__name__)

_FIELDS = ("generations", "failures", "tokens", "cost")


@dataclass
class UsageRecord:
    generation_id: str
    success: bool
    cost: float = 0.0
    tokens: int = 0
    duration: float = 0.0
    models: list = field(default_factory=list)
    fallback_used: bool = False


class UsageSink(Protocol):
    def record(self, usage: UsageRecord) -> None: ...


class LoggingUsageSink:
    def record(self, usage: UsageRecord) -> None:
        log.info(
            "usage generation=%s success=%s cost=%.6f tokens=%d duration=%.2fs models=%s fallback=%s",
            usage.generation_id,
            usage.success,
            usage.cost,
            usage.tokens,
            usage.duration,
            usage.models,
            usage.fallback_used,
        )


def _empty() -> Dict[str, float]:
    return {"generations": 0, "failures": 0, "tokens": 0, "cost": 0.0}


class UsageCounter:
    """Running usage totals in redis, mirrored to a JSON file.

    Any redis failure falls back to the file so totals keep accumulating.
    """

    def __init__(self, path: Optional[str] = None, redis_url: Optional[str] = None, key: Optional[str] = None):
        self.path = Path(path or os.getenv("USAGE_FILE", "cache/usage.json"))
        self.key = key or os.getenv("REDIS_USAGE_KEY", "sitegen:usage")
        self._lock = threading.Lock()
        url = config.REDIS_URL if redis_url is None else redis_url
        self._client: Optional[redis.Redis] = None
        if url:
            timeout = float(os.getenv("REDIS_USAGE_TIMEOUT", "0.35") or 0.35)
            try:
                self._client = redis.from_url(url, decode_responses=True, socket_timeout=timeout, socket_connect_timeout=timeout)
            except (ValueError, redis.RedisError) as exc:
                log.warning("usage: failed to initialize Redis client: %s", exc)

    def _read(self) -> Dict[str, float]:
        if not self.path.exists():
            return _empty()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError):
            return _empty()
        if not isinstance(data, dict):
            return _empty()
        out = _empty()
        for name in _FIELDS:
            try:
                out[name] = max(0, type(out[name])(data.get(name, 0)))
            except (TypeError, ValueError):
                pass
        return out

    def _write(self, state: Dict[str, float]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(state, separators=(",", ":")), encoding="utf-8")
        tmp.replace(self.path)

    def _file_add(self, delta: Dict[str, float]) -> Dict[str, float]:
        with self._lock:
            state = self._read()
            for name, value in delta.items():
                state[name] = state.get(name, 0) + value
            self._write(state)
            return state

    def _redis_add(self, delta: Dict[str, float]) -> Optional[Dict[str, float]]:
        if self._client is None:
            return None
        try:
            pipe = self._client.pipeline()
            pipe.hincrby(self.key, "generations", int(delta["generations"]))
            pipe.hincrby(self.key, "failures", int(delta["failures"]))
            pipe.hincrby(self.key, "tokens", int(delta["tokens"]))
            pipe.hincrbyfloat(self.key, "cost", float(delta["cost"]))
            gens, fails, tokens, cost = pipe.execute()
        except redis.RedisError as exc:
            log.warning("usage: Redis increment failed, falling back to file: %s", exc)
            return None
        state = {"generations": int(gens), "failures": int(fails), "tokens": int(tokens), "cost": float(cost)}
        with self._lock:
            self._write(state)
        return state

    def record(self, usage: UsageRecord) -> None:
        delta = {
            "generations": 1,
            "failures": 0 if usage.success else 1,
            "tokens": int(usage.tokens),
            "cost": float(usage.cost),
        }
        if self._redis_add(delta) is None:
            self._file_add(delta)

    def totals(self) -> Dict[str, Any]:
        if self._client is not None:
            try:
                raw = self._client.hgetall(self.key)
            except redis.RedisError as exc:
                log.warning("usage: Redis read failed, falling back to file: %s", exc)
            else:
                if raw:
                    return {
                        "generations": int(raw.get("generations", 0)),
                        "failures": int(raw.get("failures", 0)),
                        "tokens": int(raw.get("tokens", 0)),
                        "cost": float(raw.get("cost", 0.0)),
                    }
        with self._lock:
            return dict(self._read())
