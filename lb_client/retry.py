"""Caller-side retry with exponential backoff and jitter.

A dispatch is a single attempt on a single endpoint. Wrapping it in a retry
loop re-enters the pool each time, so every retry lands on the next
endpoint in round-robin order.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

import httpx

from .circuit import CircuitOpenError
from .client import DEFAULT_CALLER_FAULT_STATUS_CODES, is_caller_fault
from .pool import EndpointsUnavailableError
from .providers.base import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors that a later attempt, on the same or another endpoint, may not hit
RETRYABLE_EXCEPTIONS: Tuple[type, ...] = (
    EndpointsUnavailableError,
    CircuitOpenError,
    ProviderError,
    httpx.TransportError,
)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.5  # Random jitter factor (0-1)
    caller_fault_status_codes: Tuple[int, ...] = DEFAULT_CALLER_FAULT_STATUS_CODES


class RetryExhaustedError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Optional[Exception] = None, attempts: int = 0):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def is_retryable(exception: Exception, config: Optional[RetryConfig] = None) -> bool:
    """Endpoint faults and unavailability are retryable; caller faults are not."""
    config = config or RetryConfig()
    if is_caller_fault(exception, config.caller_fault_status_codes):
        return False
    return isinstance(exception, RETRYABLE_EXCEPTIONS)


class RetryState:
    """Tracks retry state across attempts."""

    def __init__(self, config: RetryConfig):
        self.config = config
        self.attempt = 0
        self.last_exception: Optional[Exception] = None
        self.total_delay = 0.0

    def should_retry(self, exception: Exception) -> bool:
        """Determine if another attempt is allowed for this exception."""
        return self.attempt < self.config.max_retries and is_retryable(exception, self.config)

    def next_delay(self, exception: Exception) -> float:
        """Record a failed attempt and return how long to wait before the next one."""
        self.attempt += 1
        self.last_exception = exception

        delay = self.config.base_delay * (self.config.exponential_base ** (self.attempt - 1))
        delay = min(delay, self.config.max_delay)

        jitter_range = delay * self.config.jitter
        delay = max(0.0, delay + random.uniform(-jitter_range, jitter_range))

        # An upstream retry-after wins when it is within bounds
        retry_after = getattr(exception, "retry_after", None)
        if retry_after is None and isinstance(exception, CircuitOpenError):
            retry_after = exception.remaining_timeout or None
        if retry_after is not None and retry_after <= self.config.max_delay:
            delay = retry_after

        self.total_delay += delay
        return delay

    def exhausted(self, exception: Exception) -> RetryExhaustedError:
        return RetryExhaustedError(
            f"Retry exhausted after {self.attempt + 1} attempts: {exception}",
            last_exception=exception,
            attempts=self.attempt + 1,
        )


def retry_sync(
    func: Callable[..., T],
    *args: Any,
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    **kwargs: Any,
) -> T:
    """
    Execute a synchronous function with retry logic.

    Args:
        func: Function to execute, typically ``client.complete``
        *args: Positional arguments for func
        config: Retry configuration
        on_retry: Callback called before each retry (attempt, exception, delay)
        **kwargs: Keyword arguments for func

    Returns:
        Result from func

    Raises:
        RetryExhaustedError: If a retryable error persists past max_retries
        Exception: Non-retryable errors unchanged, and every error when
            max_retries is 0
    """
    state = RetryState(config or RetryConfig())

    while True:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not is_retryable(e, state.config):
                raise
            if state.config.max_retries <= 0:
                raise
            if not state.should_retry(e):
                raise state.exhausted(e) from e

            delay = state.next_delay(e)
            logger.info("Attempt %d failed (%s), retrying in %.2fs", state.attempt, e, delay)
            if on_retry:
                on_retry(state.attempt, e, delay)
            time.sleep(delay)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    **kwargs: Any,
) -> T:
    """Execute an async function with retry logic. See ``retry_sync``."""
    state = RetryState(config or RetryConfig())

    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable(e, state.config):
                raise
            if state.config.max_retries <= 0:
                raise
            if not state.should_retry(e):
                raise state.exhausted(e) from e

            delay = state.next_delay(e)
            logger.info("Attempt %d failed (%s), retrying in %.2fs", state.attempt, e, delay)
            if on_retry:
                on_retry(state.attempt, e, delay)
            await asyncio.sleep(delay)


def with_retry(
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
):
    """
    Decorator for adding retry logic to synchronous functions.

    Args:
        config: Retry configuration
        on_retry: Callback called before each retry (attempt, exception, delay)
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return retry_sync(func, *args, config=config, on_retry=on_retry, **kwargs)

        return wrapper

    return decorator


def with_async_retry(
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
):
    """Decorator for adding retry logic to async functions."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_async(func, *args, config=config, on_retry=on_retry, **kwargs)

        return wrapper

    return decorator
