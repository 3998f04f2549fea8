"""Tests for caller-side retries over the pool."""

import httpx
import pytest

from lb_client import retry as retry_module
from lb_client.circuit import CircuitOpenError
from lb_client.pool import EndpointsUnavailableError
from lb_client.providers.base import InvalidRequestError, Message, RateLimitError, ServerError
from lb_client.retry import (
    RetryConfig,
    RetryExhaustedError,
    RetryState,
    is_retryable,
    retry_async,
    retry_sync,
    with_retry,
)

from .conftest import FakeProvider, bad_request, server_error

MESSAGES = [Message.user("test")]
NO_WAIT = RetryConfig(max_retries=2, base_delay=0.0, jitter=0.0)


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []
    monkeypatch.setattr(retry_module.time, "sleep", recorded.append)
    return recorded


class TestIsRetryable:
    @pytest.mark.parametrize(
        "error",
        [
            server_error(),
            RateLimitError("Rate limit exceeded", provider="fake", status_code=429),
            CircuitOpenError("Circuit 'Client-0' is open", remaining_timeout=3.0),
            EndpointsUnavailableError(attempts=2),
            httpx.ReadTimeout("timed out"),
        ],
    )
    def test_endpoint_side_errors_are_retryable(self, error):
        assert is_retryable(error)

    def test_caller_fault_is_not_retryable(self):
        assert not is_retryable(bad_request())

    def test_unrelated_errors_are_not_retryable(self):
        assert not is_retryable(ValueError("bug"))


class TestRetryState:
    def test_exponential_backoff_capped(self):
        state = RetryState(RetryConfig(base_delay=1.0, max_delay=5.0, jitter=0.0))
        delays = [state.next_delay(server_error()) for _ in range(4)]
        assert delays == [1.0, 2.0, 4.0, 5.0]
        assert state.total_delay == 12.0

    def test_jitter_stays_within_range(self):
        state = RetryState(RetryConfig(base_delay=2.0, jitter=0.5))
        assert 1.0 <= state.next_delay(server_error()) <= 3.0

    def test_circuit_cooldown_sets_delay(self):
        state = RetryState(RetryConfig(base_delay=1.0, max_delay=30.0, jitter=0.0))
        assert state.next_delay(CircuitOpenError("open", remaining_timeout=3.0)) == 3.0

    def test_hint_beyond_max_delay_is_ignored(self):
        state = RetryState(RetryConfig(base_delay=1.0, max_delay=10.0, jitter=0.0))
        error = RateLimitError("slow down", provider="fake", retry_after=60.0, status_code=429)
        assert state.next_delay(error) == 1.0


class TestRetryOverPool:
    def test_retry_lands_on_next_endpoint(self, make_client, sleeps):
        failing = FakeProvider("fail", error=server_error())
        healthy = FakeProvider("ok")
        client = make_client([failing, healthy])

        response = retry_sync(client.complete, MESSAGES, config=NO_WAIT)

        assert response.content == "Hello from ok"
        assert (failing.calls, healthy.calls) == (1, 1)
        assert sleeps == [0.0]

    def test_caller_fault_is_raised_without_retry(self, make_client, sleeps):
        provider = FakeProvider("a", error=bad_request())
        client = make_client([provider])

        with pytest.raises(InvalidRequestError):
            retry_sync(client.complete, MESSAGES, config=NO_WAIT)

        assert provider.calls == 1
        assert sleeps == []

    def test_exhaustion_reports_attempts(self, make_client, sleeps):
        provider = FakeProvider("a", error=server_error())
        client = make_client([provider])

        with pytest.raises(RetryExhaustedError) as exc_info:
            retry_sync(client.complete, MESSAGES, config=NO_WAIT)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_exception, ServerError)
        assert exc_info.value.__cause__ is exc_info.value.last_exception
        assert provider.calls == 3

    def test_rate_limit_hint_is_honored(self, make_client, sleeps):
        limited = RateLimitError("Rate limit exceeded", provider="fake", retry_after=2.0, status_code=429)
        client = make_client([FakeProvider("a", outcomes=[limited])])
        retries = []

        response = retry_sync(
            client.complete,
            MESSAGES,
            config=NO_WAIT,
            on_retry=lambda attempt, error, delay: retries.append((attempt, delay)),
        )

        assert response.content == "Hello from a"
        assert retries == [(1, 2.0)]
        assert sleeps == [2.0]

    def test_waits_out_open_circuits(self, make_client, clock, sleeps):
        client = make_client([FakeProvider("a")])
        client.endpoints[0].breaker.trip()

        response = retry_sync(
            client.complete,
            MESSAGES,
            config=RetryConfig(max_retries=1, base_delay=0.0, jitter=0.0),
            on_retry=lambda attempt, error, delay: clock.advance(30),
        )

        assert response.content == "Hello from a"

    def test_decorator(self, sleeps):
        attempts = []

        @with_retry(NO_WAIT)
        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise server_error()
            return "done"

        assert flaky() == "done"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_retry_async(self, make_client):
        failing = FakeProvider("fail", error=server_error())
        healthy = FakeProvider("ok")
        client = make_client([failing, healthy])

        response = await retry_async(client.complete_async, MESSAGES, config=NO_WAIT)

        assert response.content == "Hello from ok"


class TestNoRetries:
    def test_single_attempt_raises_original_error(self, make_client, sleeps):
        error = server_error()
        provider = FakeProvider("a", error=error)
        client = make_client([provider])

        with pytest.raises(ServerError) as exc_info:
            retry_sync(client.complete, MESSAGES, config=RetryConfig(max_retries=0))

        assert exc_info.value is error
        assert provider.calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_single_async_attempt_raises_original_error(self, make_client):
        client = make_client([FakeProvider("a", error=server_error())])

        with pytest.raises(ServerError):
            await retry_async(client.complete_async, MESSAGES, config=RetryConfig(max_retries=0))
