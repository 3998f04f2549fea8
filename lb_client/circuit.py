"""Circuit breaker guarding a single upstream endpoint."""

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, requests pass through
    OPEN = "open"  # Circuit tripped, requests fail fast
    HALF_OPEN = "half_open"  # Trial requests probe recovery


class CallOutcome(Enum):
    """How a finished call is accounted against the endpoint."""

    SUCCESS = "success"
    FAILURE = "failure"
    IGNORED = "ignored"  # Counted neither for nor against the endpoint


@dataclass
class Counts:
    """Request counters, cleared on every state transition."""

    requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    consecutive_successes: int = 0
    consecutive_failures: int = 0

    def on_request(self) -> None:
        self.requests += 1

    def on_success(self) -> None:
        self.total_successes += 1
        self.consecutive_successes += 1
        self.consecutive_failures = 0

    def on_failure(self) -> None:
        self.total_failures += 1
        self.consecutive_failures += 1
        self.consecutive_successes = 0

    def on_ignored(self) -> None:
        if self.requests > 0:
            self.requests -= 1

    def clear(self) -> None:
        self.requests = 0
        self.total_successes = 0
        self.total_failures = 0
        self.consecutive_successes = 0
        self.consecutive_failures = 0


def default_ready_to_trip(counts: Counts) -> bool:
    """Trip after three consecutive failures."""
    return counts.consecutive_failures >= 3


def trip_on_consecutive_failures(threshold: int) -> Callable[[Counts], bool]:
    """Build a trip predicate that opens after ``threshold`` consecutive failures."""
    if threshold < 1:
        raise ValueError("threshold must be >= 1")

    def ready_to_trip(counts: Counts) -> bool:
        return counts.consecutive_failures >= threshold

    return ready_to_trip


def count_every_error(error: BaseException) -> CallOutcome:
    """Default classifier: every exception counts against the endpoint."""
    return CallOutcome.FAILURE


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    name: str = "OpenAI-LB"
    timeout: float = 30.0  # Seconds in OPEN before a trial call
    max_requests: int = 1  # Trial calls admitted while HALF_OPEN
    interval: float = 0.0  # Seconds between count resets while CLOSED, 0 disables
    ready_to_trip: Optional[Callable[[Counts], bool]] = default_ready_to_trip
    classify_error: Optional[Callable[[BaseException], CallOutcome]] = None
    on_state_change: Optional[Callable[[str, CircuitState, CircuitState], None]] = None


class CircuitOpenError(Exception):
    """Raised when circuit is open and request is rejected."""

    def __init__(self, message: str, remaining_timeout: float = 0):
        super().__init__(message)
        self.remaining_timeout = remaining_timeout


class TooManyRequestsError(CircuitOpenError):
    """Raised when a half-open circuit already has its trial calls in flight."""


class CircuitBreaker:
    """
    Circuit breaker implementation.

    States:
    - CLOSED: Normal operation. Outcomes update the counts and
      ``ready_to_trip`` decides when to open.
    - OPEN: All requests fail fast until ``timeout`` elapses.
    - HALF_OPEN: Up to ``max_requests`` trial calls. That many consecutive
      successes close the circuit; any failure reopens it.

    Every transition starts a new generation. Outcomes reported for calls
    admitted in an earlier generation are dropped.
    """

    def __init__(self, name: Optional[str] = None, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig()
        self.name = name or self.config.name

        # A missing predicate would leave the breaker closed forever.
        self._ready_to_trip = self.config.ready_to_trip or default_ready_to_trip
        self._classify_error = self.config.classify_error or count_every_error
        # Zero trial slots would keep a half-open breaker shut for good.
        self._max_requests = max(1, self.config.max_requests)

        self._state = CircuitState.CLOSED
        self._generation = 0
        self._counts = Counts()
        self._expiry = 0.0

        self._lock = threading.RLock()
        self._new_generation(self._now())

    @staticmethod
    def _now() -> float:
        return time.monotonic()

    @property
    def state(self) -> CircuitState:
        """
        Get current circuit state without changing it.

        An open circuit whose cooldown has elapsed reports HALF_OPEN; the
        transition itself happens when the next call is admitted.
        """
        with self._lock:
            if self._state == CircuitState.OPEN and self._expiry <= self._now():
                return CircuitState.HALF_OPEN
            return self._state

    @property
    def counts(self) -> Counts:
        """Snapshot of the counts for the current generation."""
        with self._lock:
            return replace(self._counts)

    @property
    def failure_count(self) -> int:
        """Get current consecutive failure count."""
        with self._lock:
            return self._counts.consecutive_failures

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self.state == CircuitState.HALF_OPEN

    def _get_remaining_timeout(self, now: float) -> float:
        if self._state != CircuitState.OPEN:
            return 0
        return max(0, self._expiry - now)

    def _current_state(self, now: float) -> CircuitState:
        """Apply time-driven transitions. Caller holds the lock."""
        if self._state == CircuitState.CLOSED:
            if self._expiry and self._expiry <= now:
                self._new_generation(now)
        elif self._state == CircuitState.OPEN:
            if self._expiry <= now:
                self._set_state(CircuitState.HALF_OPEN, now)
        return self._state

    def _set_state(self, state: CircuitState, now: float) -> None:
        if self._state == state:
            return

        previous = self._state
        self._state = state
        self._new_generation(now)

        if state == CircuitState.OPEN:
            logger.warning("Circuit '%s' opened for %.1fs", self.name, self.config.timeout)
        else:
            logger.info("Circuit '%s' %s -> %s", self.name, previous.value, state.value)

        if self.config.on_state_change:
            self.config.on_state_change(self.name, previous, state)

    def _new_generation(self, now: float) -> None:
        self._generation += 1
        self._counts.clear()

        if self._state == CircuitState.CLOSED:
            self._expiry = now + self.config.interval if self.config.interval > 0 else 0.0
        elif self._state == CircuitState.OPEN:
            self._expiry = now + self.config.timeout
        else:
            self._expiry = 0.0

    def _before_call(self) -> int:
        """Admit a call or raise. Returns the generation the call belongs to."""
        with self._lock:
            now = self._now()
            state = self._current_state(now)

            if state == CircuitState.OPEN:
                raise CircuitOpenError(
                    f"Circuit '{self.name}' is open",
                    remaining_timeout=self._get_remaining_timeout(now),
                )
            if state == CircuitState.HALF_OPEN and self._counts.requests >= self._max_requests:
                raise TooManyRequestsError(f"Circuit '{self.name}' is half-open with a trial call in flight")

            self._counts.on_request()
            return self._generation

    def _after_call(self, generation: int, outcome: CallOutcome) -> None:
        with self._lock:
            now = self._now()
            state = self._current_state(now)
            if generation != self._generation:
                return

            if outcome == CallOutcome.SUCCESS:
                self._on_success(state, now)
            elif outcome == CallOutcome.FAILURE:
                self._on_failure(state, now)
            else:
                self._counts.on_ignored()

    def _on_success(self, state: CircuitState, now: float) -> None:
        self._counts.on_success()
        if state == CircuitState.HALF_OPEN and self._counts.consecutive_successes >= self._max_requests:
            self._set_state(CircuitState.CLOSED, now)

    def _on_failure(self, state: CircuitState, now: float) -> None:
        if state == CircuitState.HALF_OPEN:
            self._set_state(CircuitState.OPEN, now)
            return

        self._counts.on_failure()
        if self._ready_to_trip(replace(self._counts)):
            self._set_state(CircuitState.OPEN, now)

    def classify(self, error: Optional[BaseException]) -> CallOutcome:
        """Map a call's terminal error (or None) to its outcome."""
        if error is None:
            return CallOutcome.SUCCESS
        if not isinstance(error, Exception):
            # Cancellation, GeneratorExit and interpreter exits say nothing about the endpoint.
            return CallOutcome.IGNORED
        return self._classify_error(error)

    def allow(self) -> Callable[..., None]:
        """
        Admit a call whose outcome is reported later.

        Returns a ``done(error=None)`` callback that must be invoked exactly
        once when the call finishes. Further invocations are ignored.

        Raises:
            CircuitOpenError: If circuit is open
        """
        generation = self._before_call()
        reported = False

        def done(error: Optional[BaseException] = None) -> None:
            nonlocal reported
            if reported:
                return
            reported = True
            self._after_call(generation, self.classify(error))

        return done

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Execute a function through the circuit breaker.

        Args:
            func: Function to execute
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Result from func

        Raises:
            CircuitOpenError: If circuit is open
        """
        done = self.allow()
        try:
            result = func(*args, **kwargs)
        except BaseException as e:
            done(e)
            raise
        done()
        return result

    async def call_async(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Execute an async function through the circuit breaker.

        Raises:
            CircuitOpenError: If circuit is open
        """
        done = self.allow()
        try:
            result = await func(*args, **kwargs)
        except BaseException as e:
            done(e)
            raise
        done()
        return result

    def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        with self._lock:
            self._set_state(CircuitState.CLOSED, self._now())
            self._new_generation(self._now())

    def trip(self) -> None:
        """Manually trip the circuit breaker to open state."""
        with self._lock:
            self._set_state(CircuitState.OPEN, self._now())

    def get_stats(self) -> Dict[str, Any]:
        """Get circuit breaker statistics."""
        with self._lock:
            now = self._now()
            return {
                "name": self.name,
                "state": self.state.value,
                "requests": self._counts.requests,
                "failure_count": self._counts.consecutive_failures,
                "total_failures": self._counts.total_failures,
                "total_successes": self._counts.total_successes,
                "remaining_timeout": self._get_remaining_timeout(now),
            }
