from __future__ import annotations

import os
from typing import Any, Dict, List, Optional


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)) or default)
    except Exception:
        return default


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# Gateway (LiteLLM proxy, OpenAI-compatible)
LITELLM_API_BASE = (os.getenv("LITELLM_API_BASE", "http://localhost:4000").strip() or "http://localhost:4000").rstrip("/")
LITELLM_API_KEY = os.getenv("LITELLM_API_KEY", "").strip()

PRIMARY_MODEL = os.getenv("AI_PRIMARY_MODEL", "gpt-4-turbo-preview").strip()
FALLBACK_MODEL = os.getenv("AI_FALLBACK_MODEL", "claude-3-opus").strip()
IMAGE_MODEL = os.getenv("AI_IMAGE_MODEL", "dall-e-3").strip()

MAX_RETRIES = _env_int("AI_MAX_RETRIES", 3)
# AI_TIMEOUT is milliseconds and applies to every single attempt
ATTEMPT_TIMEOUT_SECS = _env_int("AI_TIMEOUT", 60000) / 1000.0
BACKOFF_BASE_SECS = _env_int("AI_BACKOFF_BASE_MS", 1000) / 1000.0
BACKOFF_MAX_SECS = _env_int("AI_BACKOFF_MAX_MS", 16000) / 1000.0
BACKOFF_MULTIPLIER = _env_float("AI_BACKOFF_MULTIPLIER", 2.0)
JITTER_FACTOR = _env_float("AI_JITTER_FACTOR", 0.1)

STREAM_VALIDATION_INTERVAL_SECS = _env_int("AI_STREAM_VALIDATION_INTERVAL_MS", 500) / 1000.0
STREAM_MIN_PARTIAL_CHARS = _env_int("AI_STREAM_MIN_PARTIAL_CHARS", 100)
MODEL_LIST_TTL_SECS = _env_int("AI_MODEL_LIST_TTL", 300)

CACHE_ENABLED = _env_flag("AI_CACHE_ENABLED")
CACHE_TTL_SECS = _env_int("AI_CACHE_TTL", 3600)
CACHE_DIR = os.getenv("AI_CACHE_DIR", "cache/ai")
REDIS_URL = os.getenv("REDIS_URL", "").strip()

LOG_LEVEL = (os.getenv("AI_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "INFO").upper()


TASKS: Dict[str, str] = {
    "structure": PRIMARY_MODEL,
    "content": FALLBACK_MODEL,
    "seo": "claude-3-haiku",
    "code": PRIMARY_MODEL,
    "images": IMAGE_MODEL,
    "analysis": "claude-3-opus",
    "simple": "gpt-3.5-turbo",
}

FALLBACK_CHAINS: Dict[str, List[str]] = {
    "gpt-4-turbo-preview": ["gpt-4", "claude-3-opus", "claude-3-haiku"],
    "gpt-4": ["claude-3-opus", "gpt-3.5-turbo"],
    "claude-3-opus": ["claude-3-sonnet", "claude-3-haiku", "gpt-4-turbo-preview"],
    "claude-3-sonnet": ["claude-3-haiku", "gpt-4-turbo-preview"],
    "claude-3-haiku": ["claude-3-sonnet", "gpt-3.5-turbo"],
    "gpt-3.5-turbo": ["claude-3-haiku"],
    "dall-e-3": ["dall-e-2"],
}

_DEFAULT_SETTINGS: Dict[str, Any] = {
    "max_tokens": 4096,
    "temperature": 0.7,
    "top_p": 0.95,
    "json_mode": False,
}

MODEL_SETTINGS: Dict[str, Dict[str, Any]] = {
    "gpt-4-turbo-preview": {"json_mode": True},
    "gpt-4": {"json_mode": True},
    "gpt-3.5-turbo": {"json_mode": True},
    "claude-3-opus": {},
    "claude-3-sonnet": {},
    "claude-3-haiku": {"temperature": 0.8},
}

# USD per 1K tokens
MODEL_COSTS: Dict[str, Dict[str, float]] = {
    "gpt-4-turbo-preview": {"input": 0.01, "output": 0.03},
    "gpt-4": {"input": 0.03, "output": 0.06},
    "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
    "claude-3-opus": {"input": 0.015, "output": 0.075},
    "claude-3-sonnet": {"input": 0.003, "output": 0.015},
    "claude-3-haiku": {"input": 0.00025, "output": 0.00125},
}

# USD per generated image
IMAGE_COSTS: Dict[str, float] = {
    "dall-e-3": 0.04,
    "dall-e-2": 0.02,
}

# 1 (worst) .. 5 (best) for speed and quality; cost is 1 (cheap) .. 5 (expensive)
MODEL_CAPABILITIES: Dict[str, Dict[str, int]] = {
    "gpt-4-turbo-preview": {"speed": 4, "quality": 5, "cost": 3},
    "gpt-4": {"speed": 3, "quality": 5, "cost": 4},
    "gpt-3.5-turbo": {"speed": 5, "quality": 3, "cost": 1},
    "claude-3-opus": {"speed": 2, "quality": 5, "cost": 5},
    "claude-3-sonnet": {"speed": 4, "quality": 4, "cost": 3},
    "claude-3-haiku": {"speed": 5, "quality": 3, "cost": 1},
    "dall-e-3": {"speed": 3, "quality": 5, "cost": 4},
    "dall-e-2": {"speed": 4, "quality": 3, "cost": 2},
}


def task_model(task: str) -> str:
    """Default model for a logical task; unknown tasks raise KeyError."""
    return TASKS[task]


def fallback_chain(model: str) -> List[str]:
    return list(FALLBACK_CHAINS.get(model, []))


def model_settings(model: str) -> Dict[str, Any]:
    settings = dict(_DEFAULT_SETTINGS)
    settings.update(MODEL_SETTINGS.get(model, {}))
    return settings


def capabilities(model: str) -> Optional[Dict[str, int]]:
    return MODEL_CAPABILITIES.get(model)


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    rates = MODEL_COSTS.get(model)
    if not rates:
        return 0.0
    return (prompt_tokens / 1000.0) * rates["input"] + (completion_tokens / 1000.0) * rates["output"]


def image_cost(model: str, n: int = 1) -> float:
    return IMAGE_COSTS.get(model, 0.0) * max(0, int(n))
