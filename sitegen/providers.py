from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx
import requests

from sitegen import config
from sitegen.cache import ModelListCache, ResponseCache
from sitegen.errors import (
    ProviderError,
    TerminalProviderError,
    TransientProviderError,
    error_from_response,
)

log = logging.getLogger(__name__)

Message = Dict[str, str]


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Usage":
        data = data or {}
        prompt = int(data.get("prompt_tokens") or 0)
        completion = int(data.get("completion_tokens") or 0)
        total = int(data.get("total_tokens") or (prompt + completion))
        return cls(prompt, completion, total)

    def to_dict(self) -> Dict[str, int]:
        return {"prompt": self.prompt_tokens, "completion": self.completion_tokens, "total": self.total_tokens}


@dataclass
class Completion:
    model: str
    text: str
    usage: Usage = field(default_factory=Usage)
    duration: float = 0.0
    finish_reason: Optional[str] = None
    cached: bool = False

    @property
    def cost(self) -> float:
        return config.calculate_cost(self.model, self.usage.prompt_tokens, self.usage.completion_tokens)


@dataclass
class StreamDelta:
    content: str = ""
    usage: Optional[Usage] = None


@dataclass
class ImageResult:
    model: str
    urls: List[str]
    revised_prompt: Optional[str] = None
    duration: float = 0.0

    @property
    def cost(self) -> float:
        return config.image_cost(self.model, len(self.urls))


class ProviderClient(Protocol):
    """What the retry/fallback layers need from an upstream model service."""

    async def complete(self, model: str, messages: List[Message], **options: Any) -> Completion: ...

    def stream(self, model: str, messages: List[Message], **options: Any) -> AsyncIterator[StreamDelta]: ...

    async def generate_image(
        self, prompt: str, model: str, size: str = "1024x1024", quality: str = "standard", n: int = 1
    ) -> ImageResult: ...

    async def list_models(self) -> List[str]: ...


def estimate_tokens(text: str) -> int:
    return int(math.ceil(len(text or "") / 4.0))


class LiteLLMGateway:
    """Adapter for an OpenAI-compatible LiteLLM proxy."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        model_cache: Optional[ModelListCache] = None,
        response_cache: Optional[ResponseCache] = None,
    ):
        self.base_url = (base_url or config.LITELLM_API_BASE).rstrip("/")
        self.api_key = config.LITELLM_API_KEY if api_key is None else api_key
        self.timeout = float(timeout or config.ATTEMPT_TIMEOUT_SECS)
        self._client = client
        self.model_cache = model_cache or ModelListCache(ttl=config.MODEL_LIST_TTL_SECS)
        self.response_cache = response_cache

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _chat_body(self, model: str, messages: List[Message], options: Dict[str, Any], stream: bool) -> Dict[str, Any]:
        settings = config.model_settings(model)
        body: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": options.get("max_tokens", settings["max_tokens"]),
            "temperature": options.get("temperature", settings["temperature"]),
            "top_p": options.get("top_p", settings["top_p"]),
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}
        if options.get("json_mode", settings["json_mode"]):
            body["response_format"] = {"type": "json_object"}
        if options.get("metadata"):
            body["metadata"] = dict(options["metadata"])
        return body

    async def _post(self, path: str, body: Dict[str, Any], model: Optional[str]) -> httpx.Response:
        try:
            return await self.client.post(f"{self.base_url}{path}", headers=self._headers(), json=body, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"Request to gateway timed out for {model}: {exc!r}", model=model) from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"Network error reaching gateway for {model}: {exc!r}", model=model) from exc

    async def complete(self, model: str, messages: List[Message], **options: Any) -> Completion:
        body = self._chat_body(model, messages, options, stream=False)
        if self.response_cache is not None:
            cached = self.response_cache.get("chat", model, messages, body)
            if cached is not None:
                return Completion(
                    model=cached.get("model") or model,
                    text=cached.get("text") or "",
                    usage=Usage.from_dict(cached.get("usage")),
                    finish_reason=cached.get("finish_reason"),
                    cached=True,
                )
        start = time.monotonic()
        log.info("gateway.complete model=%s messages=%d", model, len(messages))
        resp = await self._post("/chat/completions", body, model)
        if resp.status_code == 400 and "response_format" in body:
            # Some upstreams reject JSON mode; retry once without it
            log.warning("gateway.complete model=%s rejected json mode; retrying without", model)
            body.pop("response_format", None)
            resp = await self._post("/chat/completions", body, model)
        if resp.status_code != 200:
            raise error_from_response(resp.status_code, resp.text, model, resp.headers.get("retry-after"))
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientProviderError(f"Gateway returned a non-JSON body for {model}", model=model) from exc
        choices = data.get("choices") or [{}]
        message = choices[0].get("message") or {}
        text = message.get("content")
        if not isinstance(text, str):
            raise TerminalProviderError(f"Gateway returned no message content for {model}", model=model)
        completion = Completion(
            model=data.get("model") or model,
            text=text,
            usage=Usage.from_dict(data.get("usage")),
            duration=time.monotonic() - start,
            finish_reason=choices[0].get("finish_reason"),
        )
        if self.response_cache is not None:
            self.response_cache.set(
                "chat",
                model,
                messages,
                body,
                {
                    "model": completion.model,
                    "text": completion.text,
                    "usage": {
                        "prompt_tokens": completion.usage.prompt_tokens,
                        "completion_tokens": completion.usage.completion_tokens,
                        "total_tokens": completion.usage.total_tokens,
                    },
                    "finish_reason": completion.finish_reason,
                    "cost": completion.cost,
                },
            )
        return completion

    async def stream(self, model: str, messages: List[Message], **options: Any) -> AsyncIterator[StreamDelta]:
        """Yield content deltas from a server-sent-events chat completion."""
        body = self._chat_body(model, messages, options, stream=True)
        url = f"{self.base_url}/chat/completions"
        log.info("gateway.stream model=%s messages=%d", model, len(messages))
        try:
            async with self.client.stream("POST", url, headers=self._headers(), json=body, timeout=self.timeout) as resp:
                if resp.status_code != 200:
                    raw = await resp.aread()
                    raise error_from_response(
                        resp.status_code,
                        raw.decode("utf-8", errors="replace"),
                        model,
                        resp.headers.get("retry-after"),
                    )
                async for line in resp.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    payload = line[len("data:"):].strip()
                    if payload == "[DONE]":
                        return
                    try:
                        event = json.loads(payload)
                    except ValueError:
                        log.debug("gateway.stream model=%s skipped malformed line", model)
                        continue
                    choices = event.get("choices") or []
                    delta = (choices[0].get("delta") or {}) if choices else {}
                    content = delta.get("content") or ""
                    usage = Usage.from_dict(event["usage"]) if event.get("usage") else None
                    if content or usage:
                        yield StreamDelta(content=content, usage=usage)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"Stream from gateway timed out for {model}: {exc!r}", model=model) from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"Stream from gateway broke for {model}: {exc!r}", model=model) from exc

    async def generate_image(
        self, prompt: str, model: str = "", size: str = "1024x1024", quality: str = "standard", n: int = 1
    ) -> ImageResult:
        model = model or config.IMAGE_MODEL
        body: Dict[str, Any] = {"model": model, "prompt": prompt, "size": size, "n": n}
        if model == "dall-e-3":
            body["quality"] = quality
        start = time.monotonic()
        resp = await self._post("/images/generations", body, model)
        if resp.status_code != 200:
            raise error_from_response(resp.status_code, resp.text, model, resp.headers.get("retry-after"))
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientProviderError(f"Gateway returned a non-JSON body for {model}", model=model) from exc
        items = data.get("data") or []
        urls = [item.get("url") for item in items if isinstance(item, dict) and item.get("url")]
        if not urls:
            raise TerminalProviderError(f"Gateway returned no images for {model}", model=model)
        revised = items[0].get("revised_prompt") if isinstance(items[0], dict) else None
        return ImageResult(model=model, urls=urls, revised_prompt=revised, duration=time.monotonic() - start)

    async def list_models(self) -> List[str]:
        cached = self.model_cache.get()
        if cached is not None:
            return cached
        try:
            resp = await self.client.get(f"{self.base_url}/models", headers=self._headers(), timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise TransientProviderError(f"Could not list gateway models: {exc!r}") from exc
        if resp.status_code != 200:
            raise error_from_response(resp.status_code, resp.text)
        models = [m.get("id") for m in (resp.json().get("data") or []) if isinstance(m, dict) and m.get("id")]
        self.model_cache.put(models)
        return list(models)

    async def is_available(self, model: str) -> bool:
        try:
            return model in await self.list_models()
        except ProviderError:
            return False

    def status(self) -> Dict[str, Any]:
        return {
            "provider": "litellm",
            "base_url": self.base_url,
            "has_token": bool(self.api_key),
            "tasks": dict(config.TASKS),
            "response_cache": self.response_cache.stats() if self.response_cache is not None else None,
        }

    def probe(self) -> Dict[str, Any]:
        """Synchronous liveness check against the gateway's /health route."""
        try:
            resp = requests.get(f"{self.base_url}/health", headers=self._headers(), timeout=min(self.timeout, 10.0))
        except requests.RequestException as exc:
            log.warning("gateway.probe failed: %r", exc)
            return {"ok": False, "error": str(exc), "using": "litellm"}
        if resp.status_code != 200:
            return {"ok": False, "error": f"HTTP {resp.status_code}", "using": "litellm"}
        return {"ok": True, "using": "litellm"}
