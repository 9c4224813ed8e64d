import asyncio

import pytest

from sitegen import config
from sitegen.errors import (
    ExtractionError,
    FallbackExhaustedError,
    TerminalProviderError,
    TransientProviderError,
)
from sitegen.retry import RetryPolicy
from sitegen.router import (
    CircuitBreaker,
    CompletionAttempt,
    FallbackRouter,
    FallbackTracker,
    ModelSelection,
    estimate_resources,
    select_models,
    select_within_budget,
)

from tests.fakes import no_sleep


def scripted(outcomes):
    """Work function whose result per model comes from `outcomes`; records calls."""
    calls = []

    async def work(model):
        calls.append(model)
        outcome = outcomes[model]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    return work, calls


def test_only_last_model_succeeds():
    chain = ["a", "b", "c", "d"]
    outcomes = {m: TerminalProviderError("no", model=m) for m in chain[:-1]}
    outcomes["d"] = "done"
    work, _ = scripted(outcomes)
    router = FallbackRouter(RetryPolicy(max_retries=0), sleep=no_sleep)
    outcome = asyncio.run(router.run(ModelSelection("structure", "a", chain[1:]), work))

    assert outcome.value == "done"
    assert outcome.model == "d"
    assert outcome.attempted == chain
    assert outcome.fallback_used
    assert [a.success for a in outcome.attempts] == [False, False, False, True]


def test_exhaustion_names_chain_and_last_error():
    work, _ = scripted({"a": TerminalProviderError("first"), "b": TerminalProviderError("second")})
    router = FallbackRouter(RetryPolicy(max_retries=0), sleep=no_sleep)
    with pytest.raises(FallbackExhaustedError) as info:
        asyncio.run(router.run(ModelSelection("content", "a", ["b"]), work))

    assert info.value.attempted == ["a", "b"]
    assert "a -> b" in str(info.value)
    assert "second" in str(info.value)


def test_unparseable_answer_moves_on_without_retry():
    work, calls = scripted({"a": ExtractionError("a", "garbage"), "b": {"ok": True}})
    router = FallbackRouter(RetryPolicy(max_retries=3), sleep=no_sleep)
    outcome = asyncio.run(router.run(ModelSelection("structure", "a", ["b"]), work))
    assert calls == ["a", "b"]
    assert outcome.model == "b"


def test_transient_errors_retry_within_a_model():
    work, calls = scripted({"a": TransientProviderError("503"), "b": "fine"})
    router = FallbackRouter(RetryPolicy(max_retries=2), sleep=no_sleep)
    outcome = asyncio.run(router.run(ModelSelection("structure", "a", ["b"]), work))
    assert calls == ["a", "a", "a", "b"]
    assert outcome.attempted == ["a", "b"]


def test_attempted_log_is_shared():
    work, _ = scripted({"a": TerminalProviderError("x"), "b": "ok"})
    log = ["earlier"]
    asyncio.run(FallbackRouter(RetryPolicy(max_retries=0)).run(ModelSelection("t", "a", ["b"]), work, attempted_log=log))
    assert log == ["earlier", "a", "b"]


def test_slow_attempt_times_out_and_falls_back():
    async def work(model):
        if model == "slow":
            await asyncio.sleep(5)
        return model

    router = FallbackRouter(RetryPolicy(max_retries=0), attempt_timeout=0.01, sleep=no_sleep)
    outcome = asyncio.run(router.run(ModelSelection("structure", "slow", ["fast"]), work))
    assert outcome.model == "fast"
    assert "timed out" in outcome.attempts[0].error


def test_open_breaker_skips_model():
    clock = [0.0]
    breaker = CircuitBreaker(failure_threshold=2, recovery_time=30, clock=lambda: clock[0])
    breaker.record_failure("a")
    breaker.record_failure("a")
    assert breaker.state("a") == "open"

    work, calls = scripted({"a": "never", "b": "ok"})
    outcome = asyncio.run(FallbackRouter(RetryPolicy(max_retries=0), breaker=breaker).run(ModelSelection("t", "a", ["b"]), work))
    assert calls == ["b"]
    assert outcome.attempted == ["b"]

    clock[0] = 31.0
    assert breaker.state("a") == "half-open"
    breaker.record_success("a")
    assert breaker.state("a") == "closed"


def test_tracker_stats_and_health():
    tracker = FallbackTracker()
    tracker.record("structure", CompletionAttempt("a", False, 1.0, "boom", "PROVIDER_UNAVAILABLE"), fallback=False)
    tracker.record("structure", CompletionAttempt("b", True, 3.0), fallback=True)
    tracker.record("content", CompletionAttempt("a", True, 2.0), fallback=False)

    stats = tracker.stats()
    assert stats["total"] == 3
    assert stats["fallbackRate"] == 0.5
    assert stats["models"]["a"]["reliability"] == 0.5
    assert stats["models"]["a"]["avgLatency"] == 1.5
    assert tracker.health() == "critical"
    assert not tracker.should_avoid("a")


def test_override_is_a_singleton_chain():
    selection = select_models("structure", override="claude-3-haiku")
    assert selection.models == ["claude-3-haiku"]
    assert "override" in selection.reasoning.lower()


def test_priority_prefers_capability(monkeypatch):
    monkeypatch.setitem(config.TASKS, "structure", "gpt-4")
    monkeypatch.setitem(config.FALLBACK_CHAINS, "gpt-4", ["claude-3-opus", "gpt-3.5-turbo"])
    assert select_models("structure", priority="speed").primary == "gpt-3.5-turbo"
    assert select_models("structure", priority="cost").primary == "gpt-3.5-turbo"
    # gpt-4 and claude-3-opus tie on quality; the configured default wins
    assert select_models("structure", priority="quality").primary == "gpt-4"


def test_unknown_models_leave_selection_alone(monkeypatch):
    monkeypatch.setitem(config.TASKS, "structure", "m1")
    monkeypatch.setitem(config.FALLBACK_CHAINS, "m1", ["m2", "m3"])
    selection = select_models("structure", priority="speed", context={"industry": "finance"})
    assert selection.models == ["m1", "m2", "m3"]


def test_unknown_task_raises():
    with pytest.raises(KeyError):
        select_models("nonexistent-task")


def test_estimate_resources_scales_with_speed():
    est = estimate_resources("gpt-3.5-turbo", "structure")
    assert est["tokens"] == 2500
    assert est["time"] == pytest.approx(10 * (6 - 5) / 2.0)
    assert est["cost"] == pytest.approx(0.5 * 0.0005 + 2 * 0.0015)


def test_budget_selection_picks_cheapest_fitting(monkeypatch):
    monkeypatch.setitem(config.TASKS, "content", "claude-3-opus")
    monkeypatch.setitem(config.FALLBACK_CHAINS, "claude-3-opus", ["claude-3-sonnet", "claude-3-haiku"])
    assert select_within_budget("content", 0.01).primary == "claude-3-haiku"
    assert select_within_budget("content", 0.000001) is None
