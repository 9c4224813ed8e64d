from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, Optional, Union

from sitegen import config
from sitegen.cancel import CancelToken
from sitegen.errors import GenerationCancelled, GenerationError, TransientProviderError
from sitegen.llm_parsing import balanced_spans, extract_payload, repair_json_loose
from sitegen.providers import StreamDelta, estimate_tokens

log = logging.getLogger(__name__)

Fragment = Union[str, StreamDelta]

# Expected duration used to turn elapsed time into a progress estimate
_EXPECTED_STREAM_SECS = 20.0
_STREAM_PROGRESS_CAP = 80

_FIELD_WEIGHTS = {"id": 10, "name": 10, "pages": 20, "globalStyles": 15, "navigation": 15, "metadata": 10}


@dataclass
class StreamBuffer:
    text: str = ""
    chunks: int = 0
    tokens: int = 0
    usage_tokens: Optional[int] = None
    partial: Optional[Dict[str, Any]] = None
    partial_confidence: int = 0

    def append(self, delta: StreamDelta) -> None:
        self.text += delta.content
        self.chunks += 1
        if delta.usage is not None:
            self.usage_tokens = delta.usage.total_tokens
        self.tokens = self.usage_tokens if self.usage_tokens is not None else estimate_tokens(self.text)


@dataclass
class StreamEvent:
    kind: str
    progress: int = 0
    tokens: int = 0
    content: str = ""
    partial: Optional[Dict[str, Any]] = None
    confidence: int = 0
    payload: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = field(default=None)


def partial_confidence(obj: Dict[str, Any]) -> int:
    """Structural completeness of a speculative parse, 0-100."""
    score = sum(weight for key, weight in _FIELD_WEIGHTS.items() if key in obj)
    pages = obj.get("pages")
    if isinstance(pages, list) and pages:
        filled = sum(1 for p in pages if isinstance(p, dict) and (p.get("components") or p.get("content")))
        score += int(20 * filled / len(pages))
    return min(100, score)


def speculative_parse(text: str) -> Optional[Dict[str, Any]]:
    """Best-effort parse of an incomplete buffer; never raises."""
    start = text.find("{")
    if start == -1:
        return None
    try:
        value = json.loads(repair_json_loose(text[start:]))
        if isinstance(value, dict):
            return value
    except ValueError:
        pass
    spans = balanced_spans(text)
    if spans:
        s, e = spans[-1]
        try:
            value = json.loads(text[s:e])
        except ValueError:
            return None
        return value if isinstance(value, dict) else None
    return None


class StreamAssembler:
    """Accumulates one streamed completion and surfaces speculative partials."""

    def __init__(
        self,
        model: str,
        interval: Optional[float] = None,
        min_partial_chars: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        cancel: Optional[CancelToken] = None,
    ):
        self.model = model
        self.interval = config.STREAM_VALIDATION_INTERVAL_SECS if interval is None else interval
        self.min_partial_chars = config.STREAM_MIN_PARTIAL_CHARS if min_partial_chars is None else min_partial_chars
        self._clock = clock
        self.cancel = cancel
        self.buffer = StreamBuffer()
        self._started: Optional[float] = None
        self._finished: Optional[float] = None
        self._last_check: Optional[float] = None

    def _progress(self) -> int:
        elapsed = self._clock() - (self._started or self._clock())
        return int(min(elapsed / _EXPECTED_STREAM_SECS * _STREAM_PROGRESS_CAP, _STREAM_PROGRESS_CAP))

    def _maybe_partial(self) -> Optional[StreamEvent]:
        now = self._clock()
        if len(self.buffer.text) < self.min_partial_chars:
            return None
        if self._last_check is not None and now - self._last_check < self.interval:
            return None
        self._last_check = now
        obj = speculative_parse(self.buffer.text)
        if obj is None:
            log.debug("stream.partial model=%s miss at %d chars", self.model, len(self.buffer.text))
            return None
        self.buffer.partial = obj
        self.buffer.partial_confidence = partial_confidence(obj)
        return StreamEvent(
            "partial",
            progress=self._progress(),
            tokens=self.buffer.tokens,
            partial=obj,
            confidence=self.buffer.partial_confidence,
        )

    def _fail(self, exc: BaseException) -> GenerationError:
        if isinstance(exc, GenerationError):
            exc.context["partial_text"] = self.buffer.text
            exc.context.setdefault("chunks", self.buffer.chunks)
            return exc
        wrapped = TransientProviderError(f"Stream from {self.model} failed: {exc}", model=self.model)
        wrapped.context["partial_text"] = self.buffer.text
        wrapped.context["chunks"] = self.buffer.chunks
        return wrapped

    async def events(self, fragments: AsyncIterable[Fragment]) -> AsyncIterator[StreamEvent]:
        """Yield chunk/partial events per fragment and one final complete event."""
        self._started = self._clock()
        source = fragments.__aiter__()
        try:
            while True:
                if self.cancel is not None and self.cancel.cancelled:
                    raise GenerationCancelled(f"stream from {self.model} cancelled")
                try:
                    item = await source.__anext__()
                except StopAsyncIteration:
                    break
                except (GenerationCancelled, asyncio.CancelledError):
                    raise
                except Exception as exc:
                    err = self._fail(exc)
                    yield StreamEvent("error", progress=self._progress(), tokens=self.buffer.tokens, error=err.to_dict())
                    if err is exc:
                        raise
                    raise err from exc
                delta = item if isinstance(item, StreamDelta) else StreamDelta(content=str(item))
                self.buffer.append(delta)
                yield StreamEvent("chunk", progress=self._progress(), tokens=self.buffer.tokens, content=delta.content)
                partial = self._maybe_partial()
                if partial is not None:
                    yield partial
        finally:
            self._finished = self._clock()
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

        if self.cancel is not None:
            self.cancel.raise_if_cancelled()
        payload = extract_payload(self.buffer.text, self.model)
        log.info("stream.complete model=%s chunks=%d tokens=%d", self.model, self.buffer.chunks, self.buffer.tokens)
        yield StreamEvent("complete", progress=_STREAM_PROGRESS_CAP, tokens=self.buffer.tokens, payload=payload, confidence=100)

    async def collect(self, fragments: AsyncIterable[Fragment]) -> Dict[str, Any]:
        payload: Optional[Dict[str, Any]] = None
        async for event in self.events(fragments):
            if event.kind == "complete":
                payload = event.payload
        if payload is None:
            raise GenerationError(f"stream from {self.model} ended without a payload")
        return payload

    def stats(self) -> Dict[str, Any]:
        end = self._finished if self._finished is not None else self._clock()
        return {
            "model": self.model,
            "chunks": self.buffer.chunks,
            "tokens": self.buffer.tokens,
            "duration": (end - self._started) if self._started is not None else 0.0,
            "bufferSize": len(self.buffer.text),
        }
