from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from sitegen.errors import GenerationCancelled


class CancelToken:
    """Caller-owned cancellation signal with an optional deadline.

    The token is checked by the retry executor before each attempt and while
    backing off, by the stream assembler on every fragment, and by the
    orchestrator between stages.
    """

    def __init__(self, timeout: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._event: Optional[asyncio.Event] = None
        self._fired = False
        self._reason = "generation cancelled"
        self.deadline: Optional[float] = clock() + timeout if timeout is not None else None

    def cancel(self, reason: str = "generation cancelled by caller") -> None:
        self._reason = reason
        self._fired = True
        if self._event is not None:
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._fired:
            return True
        if self.deadline is not None and self._clock() >= self.deadline:
            self._reason = "generation deadline exceeded"
            return True
        return False

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise GenerationCancelled(self._reason)

    async def sleep(self, seconds: float) -> None:
        """Sleep that wakes early (and raises) when the token fires."""
        self.raise_if_cancelled()
        wait_for = max(0.0, seconds)
        remaining = self.remaining()
        if remaining is not None and remaining < wait_for:
            wait_for = remaining
        # Bound to the running loop on first use
        if self._event is None:
            self._event = asyncio.Event()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=wait_for)
        except asyncio.TimeoutError:
            pass
        self.raise_if_cancelled()
