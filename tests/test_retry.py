import asyncio

import pytest

from sitegen.cancel import CancelToken
from sitegen.errors import (
    AuthenticationError,
    GenerationCancelled,
    RateLimitError,
    TransientProviderError,
)
from sitegen.retry import RetryPolicy, run_with_retry


class Flaky:
    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


def sleeps():
    captured = []

    async def sleep(seconds):
        captured.append(seconds)

    return captured, sleep


def test_non_retryable_error_is_attempted_once():
    work = Flaky([AuthenticationError("bad key", model="m")] * 5)
    captured, sleep = sleeps()
    with pytest.raises(AuthenticationError):
        asyncio.run(run_with_retry(work, RetryPolicy(max_retries=3), sleep=sleep))
    assert work.calls == 1
    assert captured == []


def test_retryable_error_is_attempted_max_retries_plus_one():
    work = Flaky([TransientProviderError("503", model="m")] * 10)
    captured, sleep = sleeps()
    with pytest.raises(TransientProviderError):
        asyncio.run(run_with_retry(work, RetryPolicy(max_retries=2, jitter=0), sleep=sleep))
    assert work.calls == 3
    assert captured == [1.0, 2.0]


def test_recovers_after_transient_failures():
    work = Flaky([TransientProviderError("503")], value={"id": "s1"})
    _, sleep = sleeps()
    assert asyncio.run(run_with_retry(work, RetryPolicy(max_retries=3), sleep=sleep)) == {"id": "s1"}
    assert work.calls == 2


def test_retry_after_hint_overrides_backoff():
    work = Flaky([RateLimitError("slow down", retry_after=7.0)])
    captured, sleep = sleeps()
    asyncio.run(run_with_retry(work, RetryPolicy(max_retries=1), sleep=sleep))
    assert captured == [7.0]

    # A hint past the cap is clamped
    work = Flaky([RateLimitError("slow down", retry_after=3600.0)])
    captured, sleep = sleeps()
    asyncio.run(run_with_retry(work, RetryPolicy(max_retries=2, max_delay=16.0), sleep=sleep))
    assert captured == [16.0]


def test_network_flavoured_plain_errors_are_retried():
    work = Flaky([ConnectionError("connection reset by peer")])
    _, sleep = sleeps()
    assert asyncio.run(run_with_retry(work, RetryPolicy(max_retries=1), sleep=sleep)) == "ok"


def test_delay_for_is_capped_and_jittered():
    policy = RetryPolicy(base_delay=1.0, multiplier=2.0, max_delay=16.0, jitter=0.1)
    assert policy.delay_for(0, rng=lambda: 0.0) == 1.0
    assert policy.delay_for(3, rng=lambda: 0.0) == 8.0
    assert policy.delay_for(10, rng=lambda: 0.0) == 16.0
    assert policy.delay_for(1, rng=lambda: 1.0) == pytest.approx(2.2)


def test_cancelled_token_stops_before_first_attempt():
    work = Flaky([])

    async def go():
        token = CancelToken()
        token.cancel()
        await run_with_retry(work, RetryPolicy(), cancel=token)

    with pytest.raises(GenerationCancelled):
        asyncio.run(go())
    assert work.calls == 0


def test_cancel_during_backoff_wakes_sleep():
    work = Flaky([TransientProviderError("503")] * 3)

    async def go():
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        await run_with_retry(work, RetryPolicy(max_retries=3, base_delay=30.0), cancel=token)

    with pytest.raises(GenerationCancelled):
        asyncio.run(go())
    assert work.calls == 1


def test_token_built_outside_a_loop_sleeps_and_cancels():
    token = CancelToken()
    asyncio.run(token.sleep(0.001))
    assert not token.cancelled

    token.cancel("stop")
    with pytest.raises(GenerationCancelled):
        asyncio.run(token.sleep(1.0))
