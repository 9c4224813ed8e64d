from __future__ import annotations

from typing import Any, Dict, List, Optional

_TRANSIENT_HINTS = ("network", "timeout", "timed out", "econnrefused", "enotfound", "connection reset", "temporarily unavailable")


class GenerationError(Exception):
    """Base exception for everything raised by the generation pipeline."""

    code = "GENERATION_ERROR"
    status_code = 500

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"code": self.code, "message": self.message}
        details = {k: v for k, v in self.context.items() if k != "partial_text"}
        if details:
            out["details"] = details
        return out


class ProviderError(GenerationError):
    """A call to the upstream gateway failed."""

    code = "PROVIDER_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        model: Optional[str] = None,
        http_status: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.model = model
        self.http_status = http_status
        if model:
            self.context.setdefault("model", model)
        if http_status is not None:
            self.context.setdefault("status_code", http_status)


class TransientProviderError(ProviderError):
    code = "PROVIDER_UNAVAILABLE"
    status_code = 503


class RateLimitError(TransientProviderError):
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, message: str, model: Optional[str] = None, retry_after: Optional[float] = None, **kwargs: Any):
        super().__init__(message, model=model, http_status=kwargs.pop("http_status", 429), **kwargs)
        self.retry_after = retry_after
        if retry_after is not None:
            self.context.setdefault("retry_after", retry_after)


class TerminalProviderError(ProviderError):
    code = "PROVIDER_REJECTED"
    status_code = 400


class AuthenticationError(TerminalProviderError):
    code = "AUTHENTICATION_FAILED"
    status_code = 401


class QuotaExceededError(TerminalProviderError):
    code = "QUOTA_EXCEEDED"
    status_code = 402


class ExtractionError(GenerationError):
    """No structured payload could be recovered from a model's text."""

    code = "EXTRACTION_FAILED"
    status_code = 422

    def __init__(self, model: str, text: str = "", message: Optional[str] = None):
        msg = message or f"Failed to extract valid JSON from {model or 'unknown'} response"
        super().__init__(msg, {"model": model, "preview": (text or "")[:200]})
        self.model = model


class SchemaValidationError(GenerationError):
    """Schema violations survived the repair pass."""

    code = "VALIDATION_FAILED"
    status_code = 422

    def __init__(self, message: str, issues: Optional[List[Any]] = None, model: Optional[str] = None):
        super().__init__(message, {"model": model} if model else None)
        self.issues = list(issues or [])
        self.model = model


class GenerationCancelled(GenerationError):
    code = "CANCELLED"
    status_code = 499


class FallbackExhaustedError(GenerationError):
    """Every model in a fallback chain failed."""

    code = "FALLBACK_EXHAUSTED"
    status_code = 502

    def __init__(self, task: str, attempted: List[str], last_error: Optional[BaseException]):
        last = f"{type(last_error).__name__}: {last_error}" if last_error is not None else "no model was attempted"
        chain = " -> ".join(attempted) if attempted else "(none)"
        super().__init__(
            f"All models failed for task '{task}' (attempted: {chain}); last error: {last}",
            {"task": task, "attempted": list(attempted), "last_error": last},
        )
        self.task = task
        self.attempted = list(attempted)
        self.last_error = last_error


def error_from_response(
    status: int,
    body: str,
    model: Optional[str] = None,
    retry_after: Optional[str] = None,
) -> ProviderError:
    """Map a non-2xx gateway response onto the error taxonomy."""
    snippet = (body or "")[:400]
    msg = f"HTTP {status} from gateway for {model or 'unknown model'}: {snippet}".rstrip(": ")
    lower = snippet.lower()
    if status == 429:
        delay: Optional[float] = None
        if retry_after:
            try:
                delay = float(retry_after)
            except ValueError:
                delay = None
        return RateLimitError(msg, model=model, retry_after=delay)
    if status in (401, 403):
        return AuthenticationError(msg, model=model, http_status=status)
    if status == 402 or "quota" in lower or "insufficient_quota" in lower:
        return QuotaExceededError(msg, model=model, http_status=status)
    if status in (408, 409) or status >= 500:
        return TransientProviderError(msg, model=model, http_status=status)
    return TerminalProviderError(msg, model=model, http_status=status)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, TransientProviderError):
        return True
    if isinstance(exc, GenerationError):
        return False
    text = str(exc).lower()
    return any(hint in text for hint in _TRANSIENT_HINTS)


def retry_after_seconds(exc: BaseException) -> Optional[float]:
    value = getattr(exc, "retry_after", None)
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def describe(exc: BaseException) -> Dict[str, Any]:
    """User-facing error payload; never a bare 'generation failed'."""
    if isinstance(exc, GenerationError):
        return exc.to_dict()
    return {"code": "INTERNAL_ERROR", "message": f"{type(exc).__name__}: {exc}"}
