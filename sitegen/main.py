import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Literal, Optional, Tuple

import jsonschema
import redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from sitegen import config, ratelimit
from sitegen.cache import ResponseCache
from sitegen.cancel import CancelToken
from sitegen.errors import GenerationError, ProviderError, describe
from sitegen.orchestrator import GenerationRequest, GenerationResult, Orchestrator, ProgressEvent
from sitegen.providers import LiteLLMGateway
from sitegen.redis_ratelimit import RedisRateLimiter
from sitegen.router import CircuitBreaker, FallbackTracker
from sitegen.usage import UsageCounter
from sitegen.validators import SITE_SCHEMA, JsonSchema, RepairValidator

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

_gateway: Optional[LiteLLMGateway] = None
_usage: Optional[UsageCounter] = None
_tracker = FallbackTracker()
_breaker = CircuitBreaker()


def get_gateway() -> LiteLLMGateway:
    global _gateway
    if _gateway is None:
        _gateway = LiteLLMGateway(response_cache=ResponseCache() if config.CACHE_ENABLED else None)
    return _gateway


def get_usage_counter() -> UsageCounter:
    global _usage
    if _usage is None:
        _usage = UsageCounter()
    return _usage


def get_orchestrator() -> Orchestrator:
    return Orchestrator(get_gateway(), usage_sink=get_usage_counter(), tracker=_tracker, breaker=_breaker)


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("sitegen: gateway=%s tasks=%s", config.LITELLM_API_BASE, config.TASKS)
    yield
    if _gateway is not None:
        await _gateway.aclose()


app = FastAPI(lifespan=lifespan)

allow_origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start = time.time()
    request.state.request_id = rid
    response = None
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log.info(
            "rid=%s method=%s path=%s status=%s dur_ms=%d",
            rid,
            request.method,
            request.url.path,
            getattr(response, "status_code", "?"),
            dur_ms,
        )


class GenerateBody(BaseModel):
    prompt: str = Field(..., min_length=1, description="Natural-language description of the site")
    priority: Optional[Literal["quality", "speed", "cost"]] = None
    model: Optional[str] = Field(default=None, description="Optional model override; disables fallback")
    strict: bool = False
    industry: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0, description="Overall deadline in seconds")


class ValidateBody(BaseModel):
    site: Dict[str, Any]
    strict: bool = False
    json_schema: Optional[Dict[str, Any]] = Field(default=None, alias="schema")


class ImageBody(BaseModel):
    prompt: str = Field(..., min_length=1)
    size: str = "1024x1024"
    quality: Literal["standard", "hd"] = "standard"
    n: int = Field(1, ge=1, le=4)
    model: Optional[str] = None


_rl_instance: Optional[RedisRateLimiter] = None
if config.REDIS_URL and not os.getenv("PYTEST_CURRENT_TEST"):
    try:
        _rl_instance = RedisRateLimiter(config.REDIS_URL)
    except ValueError as exc:
        log.warning("ratelimit: invalid REDIS_URL, using in-process limiter: %s", exc)


def _client_key(request: Request) -> str:
    return request.headers.get("X-Client-Id") or (request.client.host if request.client else "anon")


def _safe_rate_check(bucket: str, key: str) -> Tuple[bool, int, int]:
    """(allowed, remaining, reset_ts); the in-process limiter covers for an unreachable redis."""
    if _rl_instance is not None and not os.getenv("PYTEST_CURRENT_TEST"):
        try:
            return _rl_instance.check_and_increment(bucket, key)
        except redis.RedisError as exc:
            log.warning("ratelimit: redis unavailable, falling back to in-process: %s", exc)
    return ratelimit.check_and_increment(bucket, key)


def _rate_limit_headers(remaining: int, reset_ts: int, *, limited: bool = False) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(ratelimit.MAX_REQUESTS),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset_ts),
    }
    if limited:
        headers["Retry-After"] = str(max(0, reset_ts - int(time.time())))
    return headers


def _rate_limited(reset_ts: int, remaining: int) -> JSONResponse:
    wait_seconds = max(0, reset_ts - int(time.time()))
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate limit exceeded",
            "reset": reset_ts,
            "retry_after_seconds": wait_seconds,
            "message": f"Rate limit exceeded. Try again in {wait_seconds} seconds.",
        },
        headers=_rate_limit_headers(remaining, reset_ts, limited=True),
    )


def _result_status(result: GenerationResult) -> int:
    if result.success:
        return 200
    if result.error and result.error.get("code") == "CANCELLED":
        return 504
    return 502


def _to_request(body: GenerateBody, stream: bool) -> GenerationRequest:
    return GenerationRequest(
        prompt=body.prompt,
        priority=body.priority,
        model=body.model,
        strict=body.strict,
        stream=stream,
        industry=body.industry,
    )


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/llm/status")
def llm_status_endpoint() -> Dict[str, Any]:
    status = get_gateway().status()
    status["fallback"] = {"health": _tracker.health(), **_tracker.stats()}
    return status


@app.get("/llm/probe")
def llm_probe_endpoint() -> Dict[str, Any]:
    return get_gateway().probe()


@app.get("/llm/models")
async def llm_models_endpoint():
    try:
        models = await get_gateway().list_models()
    except ProviderError as exc:
        return JSONResponse(status_code=502, content={"error": describe(exc)})
    return {"models": models}


@app.get("/metrics/usage")
def metrics_usage() -> Dict[str, Any]:
    return get_usage_counter().totals()


@app.post("/generate")
async def generate_endpoint(body: GenerateBody, request: Request):
    allowed, remaining, reset_ts = _safe_rate_check("gen", _client_key(request))
    log.info("rate_limit check allowed=%s remaining=%s", allowed, remaining)
    if not allowed:
        return _rate_limited(reset_ts, remaining)

    req = _to_request(body, stream=False)
    cancel = CancelToken(timeout=body.timeout) if body.timeout else None
    result = await get_orchestrator().generate(req, cancel)
    content = result.to_dict()
    content["requestId"] = getattr(request.state, "request_id", None)
    return JSONResponse(status_code=_result_status(result), content=content, headers=_rate_limit_headers(remaining, reset_ts))


@app.post("/generate/stream")
async def generate_stream(body: GenerateBody, request: Request):
    """NDJSON: one meta line, progress lines in stage order, then one result line."""
    allowed, remaining, reset_ts = _safe_rate_check("gen", _client_key(request))
    if not allowed:
        return _rate_limited(reset_ts, remaining)

    req = _to_request(body, stream=True)
    cancel = CancelToken(timeout=body.timeout) if body.timeout else None
    orchestrator = get_orchestrator()

    async def _iter() -> AsyncIterator[str]:
        meta = {"event": "meta", "request_id": getattr(request.state, "request_id", None), "generation_id": req.generation_id}
        yield json.dumps(meta) + "\n"
        async for item in orchestrator.events(req, cancel):
            if isinstance(item, ProgressEvent):
                yield json.dumps({"event": "progress", "data": item.to_dict()}) + "\n"
            else:
                yield json.dumps({"event": "result", "data": item.to_dict()}) + "\n"

    return StreamingResponse(_iter(), media_type="application/x-ndjson", headers=_rate_limit_headers(remaining, reset_ts))


@app.post("/validate")
def validate_endpoint(body: ValidateBody):
    """Repair-validate a site document.

    Returns 200 and {"detail": {"valid": true, ...report}} when the document is
    valid (possibly after repair), 422 and {"detail": {"valid": false, "errors": [...]}}
    otherwise.
    """
    if body.json_schema is not None:
        try:
            schema = JsonSchema(body.json_schema, kind="site")
        except jsonschema.SchemaError as exc:
            return JSONResponse(status_code=400, content={"error": f"invalid schema: {exc.message}"})
    else:
        schema = SITE_SCHEMA
    report = RepairValidator(strict=body.strict).validate(body.site, schema)
    if not report.valid:
        return JSONResponse(
            status_code=422,
            content={"detail": {"valid": False, "errors": [i.to_dict() for i in report.issues]}},
        )
    return {"detail": report.to_dict()}


@app.post("/images")
async def images_endpoint(body: ImageBody, request: Request):
    allowed, remaining, reset_ts = _safe_rate_check("img", _client_key(request))
    if not allowed:
        return _rate_limited(reset_ts, remaining)
    try:
        image, attempted = await get_orchestrator().generate_images(
            body.prompt, size=body.size, quality=body.quality, n=body.n, model=body.model
        )
    except GenerationError as exc:
        return JSONResponse(status_code=502, content={"error": describe(exc)}, headers=_rate_limit_headers(remaining, reset_ts))
    return JSONResponse(
        content={
            "model": image.model,
            "urls": image.urls,
            "revisedPrompt": image.revised_prompt,
            "cost": image.cost,
            "attemptedModels": attempted,
        },
        headers=_rate_limit_headers(remaining, reset_ts),
    )
