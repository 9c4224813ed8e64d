from typing import Any, Dict, List, Optional

from sitegen.providers import Completion, ImageResult, StreamDelta, Usage


class FakeProvider:
    """In-memory ProviderClient.

    `responses` maps a model name to either one reply or a list of replies
    consumed in order (the last one repeats). A reply is response text or an
    exception instance to raise.
    """

    def __init__(self, responses: Dict[str, Any], chunk_size: int = 7, usage: Optional[Usage] = None, cached: bool = False):
        self.responses = responses
        self.cached = cached
        self.chunk_size = chunk_size
        self.usage = usage or Usage(10, 20, 30)
        self.calls: List[Dict[str, Any]] = []
        self._served: Dict[str, int] = {}

    def _next(self, model: str) -> Any:
        replies = self.responses.get(model, RuntimeError(f"unknown model {model}"))
        if isinstance(replies, list):
            idx = self._served.get(model, 0)
            self._served[model] = idx + 1
            return replies[min(idx, len(replies) - 1)]
        return replies

    def _log(self, kind: str, model: str, options: Dict[str, Any]) -> None:
        meta = options.get("metadata") or {}
        self.calls.append({"kind": kind, "model": model, "stage": meta.get("stage"), "task": meta.get("task")})

    async def complete(self, model: str, messages, **options) -> Completion:
        self._log("complete", model, options)
        reply = self._next(model)
        if isinstance(reply, BaseException):
            raise reply
        return Completion(model=model, text=reply, usage=self.usage, cached=self.cached)

    async def stream(self, model: str, messages, **options):
        self._log("stream", model, options)
        reply = self._next(model)
        if isinstance(reply, BaseException):
            raise reply
        for i in range(0, len(reply), self.chunk_size):
            yield StreamDelta(content=reply[i : i + self.chunk_size])

    async def generate_image(self, prompt: str, model: str, size: str = "1024x1024", quality: str = "standard", n: int = 1):
        self._log("image", model, {})
        reply = self._next(model)
        if isinstance(reply, BaseException):
            raise reply
        return ImageResult(model=model, urls=[reply] * n)

    async def list_models(self) -> List[str]:
        return list(self.responses)

    def models_called(self, stage: Optional[str] = None) -> List[str]:
        return [c["model"] for c in self.calls if stage is None or c["stage"] == stage]


class ListSink:
    def __init__(self):
        self.records = []

    def record(self, usage) -> None:
        self.records.append(usage)


async def no_sleep(_seconds: float) -> None:
    return None
