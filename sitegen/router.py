from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Generic, List, Optional, TypeVar

from sitegen import config
from sitegen.cancel import CancelToken
from sitegen.errors import (
    ExtractionError,
    FallbackExhaustedError,
    GenerationCancelled,
    SchemaValidationError,
    TransientProviderError,
)
from sitegen.retry import RetryPolicy, run_with_retry

log = logging.getLogger(__name__)

T = TypeVar("T")

# (input tokens, output tokens, base seconds) per task
TASK_ESTIMATES: Dict[str, Dict[str, float]] = {
    "structure": {"input": 500, "output": 2000, "time": 10},
    "content": {"input": 1000, "output": 3000, "time": 15},
    "seo": {"input": 500, "output": 1000, "time": 5},
    "code": {"input": 800, "output": 2500, "time": 12},
    "images": {"input": 100, "output": 0, "time": 20},
    "analysis": {"input": 1500, "output": 2000, "time": 10},
    "simple": {"input": 200, "output": 500, "time": 3},
}

COMPLEX_INDUSTRIES = {"finance", "healthcare", "legal", "technical"}
CREATIVE_INDUSTRIES = {"portfolio", "blog", "media", "creative"}


@dataclass
class ModelSelection:
    task: str
    primary: str
    fallbacks: List[str] = field(default_factory=list)
    reasoning: str = ""
    estimated_cost: float = 0.0
    estimated_time: float = 0.0

    @property
    def models(self) -> List[str]:
        return [self.primary] + [m for m in self.fallbacks if m != self.primary]


def estimate_resources(model: str, task: str) -> Dict[str, float]:
    est = TASK_ESTIMATES.get(task, TASK_ESTIMATES["simple"])
    if task == "images":
        cost = config.image_cost(model, 1)
    else:
        cost = config.calculate_cost(model, int(est["input"]), int(est["output"]))
    caps = config.capabilities(model) or {"speed": 3}
    return {
        "cost": cost,
        "time": est["time"] * (6 - caps["speed"]) / 2.0,
        "tokens": est["input"] + est["output"],
    }


def _best(candidates: List[str], key: str, lowest: bool = False) -> Optional[str]:
    scored = [(m, (config.capabilities(m) or {}).get(key)) for m in candidates]
    scored = [(m, s) for m, s in scored if s is not None]
    if not scored:
        return None
    # Ties keep the earlier candidate, so the configured default wins
    pick = min(scored, key=lambda ms: ms[1]) if lowest else max(scored, key=lambda ms: ms[1])
    return pick[0]


def select_models(
    task: str,
    override: Optional[str] = None,
    priority: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> ModelSelection:
    """Resolve the primary model and its fallback chain for a task."""
    if override:
        est = estimate_resources(override, task)
        return ModelSelection(task, override, [], f"Explicit model override: {override}", est["cost"], est["time"])

    default = config.task_model(task)
    primary = default
    reasons = [f"Task '{task}' defaults to {default}"]
    candidates = [default] + config.fallback_chain(default)

    if priority in ("quality", "speed"):
        picked = _best(candidates, priority)
        if picked and picked != primary:
            primary = picked
            reasons.append(f"Priority '{priority}' prefers {picked}")
    elif priority == "cost":
        picked = _best(candidates, "cost", lowest=True)
        if picked and picked != primary:
            primary = picked
            reasons.append(f"Priority 'cost' prefers {picked}")

    industry = str((context or {}).get("industry") or "").lower()
    if industry in COMPLEX_INDUSTRIES:
        caps = config.capabilities(primary) or {}
        if caps.get("quality", 5) < 4:
            upgraded = _best(candidates, "quality")
            if upgraded and upgraded != primary:
                primary = upgraded
                reasons.append(f"Complex industry '{industry}' upgraded to {upgraded}")
    elif industry in CREATIVE_INDUSTRIES and task != "images" and primary.startswith("gpt"):
        claude = [m for m in candidates + config.fallback_chain(primary) if m.startswith("claude")]
        picked = _best(claude, "quality")
        if picked:
            primary = picked
            reasons.append(f"Creative industry '{industry}' prefers {picked}")

    fallbacks = [m for m in config.fallback_chain(primary) if m != primary]
    est = estimate_resources(primary, task)
    return ModelSelection(task, primary, fallbacks, "; ".join(reasons), est["cost"], est["time"])


def select_within_budget(task: str, max_cost: float) -> Optional[ModelSelection]:
    """Cheapest candidate for the task whose estimated cost fits the budget."""
    default = config.task_model(task)
    candidates = [default] + config.fallback_chain(default)
    fitting = [(estimate_resources(m, task)["cost"], i, m) for i, m in enumerate(candidates)]
    fitting = [f for f in fitting if f[0] <= max_cost]
    if not fitting:
        return None
    cost, _, model = min(fitting)
    est = estimate_resources(model, task)
    return ModelSelection(
        task,
        model,
        [m for m in config.fallback_chain(model) if m != model],
        f"Cheapest model within budget ${max_cost:.4f}",
        cost,
        est["time"],
    )


@dataclass
class CompletionAttempt:
    model: str
    success: bool
    duration: float = 0.0
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "success": self.success,
            "duration": round(self.duration, 3),
            "error": self.error,
            "errorCode": self.error_code,
        }


@dataclass
class RouteOutcome(Generic[T]):
    value: T
    model: str
    attempted: List[str]
    attempts: List[CompletionAttempt] = field(default_factory=list)

    @property
    def fallback_used(self) -> bool:
        return len(self.attempted) > 1


class FallbackTracker:
    """Bounded in-memory record of model attempts."""

    def __init__(self, max_records: int = 1000):
        self._records: Deque[Dict[str, Any]] = deque(maxlen=max_records)

    def record(self, task: str, attempt: CompletionAttempt, fallback: bool) -> None:
        self._records.append(
            {
                "task": task,
                "model": attempt.model,
                "success": attempt.success,
                "duration": attempt.duration,
                "fallback": fallback,
                "error": attempt.error_code,
            }
        )

    def stats(self) -> Dict[str, Any]:
        records = list(self._records)
        successes = [r for r in records if r["success"]]
        per_model: Dict[str, Dict[str, Any]] = {}
        for r in records:
            m = per_model.setdefault(r["model"], {"attempts": 0, "successes": 0, "duration": 0.0})
            m["attempts"] += 1
            m["successes"] += 1 if r["success"] else 0
            m["duration"] += r["duration"]
        reliability = {
            model: {
                "attempts": m["attempts"],
                "reliability": m["successes"] / m["attempts"],
                "avgLatency": m["duration"] / m["attempts"],
            }
            for model, m in per_model.items()
        }
        fallback_rate = (sum(1 for r in successes if r["fallback"]) / len(successes)) if successes else 0.0
        return {"total": len(records), "fallbackRate": fallback_rate, "models": reliability}

    def health(self) -> str:
        rate = self.stats()["fallbackRate"]
        if rate < 0.1:
            return "healthy"
        if rate < 0.3:
            return "degraded"
        return "critical"

    def should_avoid(self, model: str, min_attempts: int = 5, threshold: float = 0.5) -> bool:
        info = self.stats()["models"].get(model)
        return bool(info and info["attempts"] >= min_attempts and info["reliability"] < threshold)


class CircuitBreaker:
    """Per-model closed/open/half-open breaker."""

    def __init__(self, failure_threshold: int = 5, recovery_time: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_time = recovery_time
        self._clock = clock
        self._failures: Dict[str, int] = {}
        self._opened_at: Dict[str, float] = {}

    def state(self, model: str) -> str:
        opened = self._opened_at.get(model)
        if opened is None:
            return "closed"
        if self._clock() - opened >= self.recovery_time:
            return "half-open"
        return "open"

    def allow(self, model: str) -> bool:
        return self.state(model) != "open"

    def record_success(self, model: str) -> None:
        self._failures.pop(model, None)
        self._opened_at.pop(model, None)

    def record_failure(self, model: str) -> None:
        if self.state(model) == "half-open":
            self._opened_at[model] = self._clock()
            return
        count = self._failures.get(model, 0) + 1
        self._failures[model] = count
        if count >= self.failure_threshold:
            self._opened_at[model] = self._clock()
            log.warning("breaker.open model=%s failures=%d", model, count)


Work = Callable[[str], Awaitable[T]]


class FallbackRouter:
    """Try each model of a selection in order until one succeeds."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        attempt_timeout: Optional[float] = None,
        tracker: Optional[FallbackTracker] = None,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.policy = policy or RetryPolicy.from_config()
        self.attempt_timeout = attempt_timeout if attempt_timeout is not None else config.ATTEMPT_TIMEOUT_SECS
        self.tracker = tracker
        self.breaker = breaker
        self._sleep = sleep

    async def _attempt(self, model: str, work: Work[T]) -> T:
        try:
            return await asyncio.wait_for(work(model), timeout=self.attempt_timeout)
        except asyncio.TimeoutError as exc:
            raise TransientProviderError(f"Attempt on {model} timed out after {self.attempt_timeout:.1f}s", model=model) from exc

    async def run(
        self,
        selection: ModelSelection,
        work: Work[T],
        attempted_log: Optional[List[str]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> RouteOutcome[T]:
        attempted: List[str] = []
        attempts: List[CompletionAttempt] = []
        last_error: Optional[BaseException] = None

        for index, model in enumerate(selection.models):
            if cancel is not None:
                cancel.raise_if_cancelled()
            if self.breaker is not None and not self.breaker.allow(model):
                log.warning("route.skip task=%s model=%s breaker=open", selection.task, model)
                continue
            if index > 0:
                log.warning("route.fallback task=%s model=%s after=%r", selection.task, model, last_error)
            attempted.append(model)
            if attempted_log is not None:
                attempted_log.append(model)

            start = time.monotonic()
            try:
                value = await run_with_retry(
                    lambda: self._attempt(model, work),
                    policy=self.policy,
                    cancel=cancel,
                    sleep=self._sleep,
                    label=f"task={selection.task} model={model}",
                )
            except (GenerationCancelled, asyncio.CancelledError):
                raise
            except Exception as exc:
                last_error = exc
                attempt = CompletionAttempt(
                    model, False, time.monotonic() - start, f"{type(exc).__name__}: {exc}", getattr(exc, "code", None)
                )
                attempts.append(attempt)
                if self.breaker is not None:
                    self.breaker.record_failure(model)
                if self.tracker is not None:
                    self.tracker.record(selection.task, attempt, fallback=index > 0)
                if isinstance(exc, (ExtractionError, SchemaValidationError)):
                    log.warning("route.unusable task=%s model=%s err=%s", selection.task, model, exc)
                else:
                    log.warning("route.failed task=%s model=%s err=%r", selection.task, model, exc)
                continue

            attempt = CompletionAttempt(model, True, time.monotonic() - start)
            attempts.append(attempt)
            if self.breaker is not None:
                self.breaker.record_success(model)
            if self.tracker is not None:
                self.tracker.record(selection.task, attempt, fallback=index > 0)
            log.info("route.ok task=%s model=%s attempted=%s", selection.task, model, attempted)
            return RouteOutcome(value, model, attempted, attempts)

        log.error("route.exhausted task=%s attempted=%s last=%r", selection.task, attempted, last_error)
        raise FallbackExhaustedError(selection.task, attempted, last_error)
