import pytest

from sitegen.errors import (
    AuthenticationError,
    ExtractionError,
    FallbackExhaustedError,
    GenerationCancelled,
    QuotaExceededError,
    RateLimitError,
    SchemaValidationError,
    TerminalProviderError,
    TransientProviderError,
    describe,
    error_from_response,
    is_retryable,
    retry_after_seconds,
)


@pytest.mark.parametrize(
    "status,body,cls",
    [
        (429, "", RateLimitError),
        (401, "", AuthenticationError),
        (403, "", AuthenticationError),
        (400, "insufficient_quota", QuotaExceededError),
        (408, "", TransientProviderError),
        (502, "", TransientProviderError),
        (400, "bad request", TerminalProviderError),
        (404, "no such model", TerminalProviderError),
    ],
)
def test_error_from_response(status, body, cls):
    err = error_from_response(status, body, "gpt-4")
    assert type(err) is cls
    assert err.model == "gpt-4"


def test_retry_after_header_parsing():
    assert error_from_response(429, "", "m", retry_after="2.5").retry_after == 2.5
    assert error_from_response(429, "", "m", retry_after="soon").retry_after is None
    assert retry_after_seconds(RateLimitError("x", retry_after=-1)) == 0.0
    assert retry_after_seconds(ValueError("x")) is None


def test_retryability():
    assert is_retryable(RateLimitError("x"))
    assert is_retryable(TransientProviderError("x"))
    assert not is_retryable(AuthenticationError("x"))
    assert not is_retryable(ExtractionError("m", "text"))
    assert not is_retryable(SchemaValidationError("bad"))
    assert not is_retryable(GenerationCancelled("stop"))
    assert is_retryable(OSError("Network is unreachable"))
    assert not is_retryable(KeyError("structure"))


def test_exhaustion_message_lists_attempts():
    err = FallbackExhaustedError("structure", ["a", "b"], TerminalProviderError("rejected"))
    assert str(err) == "All models failed for task 'structure' (attempted: a -> b); last error: TerminalProviderError: rejected"
    assert err.to_dict()["details"]["attempted"] == ["a", "b"]


def test_describe_is_never_generic():
    assert describe(GenerationCancelled("deadline"))["code"] == "CANCELLED"
    info = describe(RuntimeError("kaboom"))
    assert info == {"code": "INTERNAL_ERROR", "message": "RuntimeError: kaboom"}
