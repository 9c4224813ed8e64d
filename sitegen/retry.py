from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from sitegen import config
from sitegen.cancel import CancelToken
from sitegen.errors import is_retryable, retry_after_seconds

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 16.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_retries=max(0, config.MAX_RETRIES),
            base_delay=config.BACKOFF_BASE_SECS,
            multiplier=config.BACKOFF_MULTIPLIER,
            max_delay=config.BACKOFF_MAX_SECS,
            jitter=config.JITTER_FACTOR,
        )

    def delay_for(self, attempt: int, exc: Optional[BaseException] = None, rng: Callable[[], float] = random.random) -> float:
        """Backoff before retry number `attempt` (0-based)."""
        hinted = retry_after_seconds(exc) if exc is not None else None
        if hinted is not None:
            return min(hinted, self.max_delay)
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        return delay + delay * self.jitter * rng()


async def run_with_retry(
    work: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    classify: Callable[[BaseException], bool] = is_retryable,
    cancel: Optional[CancelToken] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    label: str = "",
) -> T:
    """Run `work` until it succeeds, fails terminally, or retries run out.

    Non-retryable errors and the error from the final attempt propagate
    unchanged. With `max_retries=R` a persistently retryable failure is
    attempted R+1 times.
    """
    policy = policy or RetryPolicy.from_config()
    if sleep is None:
        sleep = cancel.sleep if cancel is not None else asyncio.sleep
    attempt = 0
    while True:
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            return await work()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not classify(exc):
                raise
            if attempt >= policy.max_retries:
                log.warning("retry.exhausted %s attempts=%d err=%r", label, attempt + 1, exc)
                raise
            delay = policy.delay_for(attempt, exc)
            attempt += 1
            log.info("retry.backoff %s attempt=%d delay=%.2fs err=%r", label, attempt, delay, exc)
            await sleep(delay)
