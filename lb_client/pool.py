"""Endpoint pool with round-robin selection that skips tripped endpoints."""

import itertools
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, List, Sequence, Tuple

from .circuit import CircuitBreaker, CircuitOpenError, CircuitState
from .providers.base import BaseProvider, ChatRequest

logger = logging.getLogger(__name__)


class PoolError(Exception):
    """Base exception for endpoint selection failures."""


class NoEndpointsError(PoolError):
    """Raised when the pool was built without any endpoint."""

    def __init__(self, message: str = "no endpoints configured"):
        super().__init__(message)


class EndpointsUnavailableError(PoolError):
    """Raised when every endpoint in the pool has an open circuit."""

    def __init__(self, message: str = "all endpoints are unavailable (circuit breakers open)", attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


@dataclass
class Endpoint:
    """One upstream endpoint: its provider, its breaker and its model mapping."""

    name: str
    provider: BaseProvider
    breaker: CircuitBreaker
    base_url: str = ""
    model_map: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Own copy, so later edits to the caller's mapping cannot leak in.
        self.model_map = dict(self.model_map)

    def rewrite_request(self, request: ChatRequest) -> ChatRequest:
        """
        Apply this endpoint's model mapping.

        Returns a copy with ``model`` replaced when the requested model is
        mapped, otherwise the request itself. The input is never mutated.
        """
        if not self.model_map:
            return request

        target = self.model_map.get(request.model)
        if target is None:
            return request

        logger.debug("Endpoint '%s' maps model %s -> %s", self.name, request.model, target)
        return replace(request, model=target)

    def get_stats(self) -> Dict[str, Any]:
        """Breaker statistics plus endpoint identity."""
        stats = self.breaker.get_stats()
        stats["base_url"] = self.base_url
        stats["model_map"] = dict(self.model_map)
        return stats


class EndpointPool:
    """
    Ordered endpoints behind one shared round-robin counter.

    Every selection consumes the next counter value, so concurrent callers
    share a single sequence. ``itertools.count`` advances atomically, which
    keeps selection free of locks.
    """

    def __init__(self, endpoints: Sequence[Endpoint]):
        self._endpoints: List[Endpoint] = list(endpoints)
        self._counter = itertools.count(1)

    @property
    def endpoints(self) -> Sequence[Endpoint]:
        return tuple(self._endpoints)

    def __len__(self) -> int:
        return len(self._endpoints)

    def __iter__(self) -> Iterator[Endpoint]:
        return iter(self._endpoints)

    def _candidates(self) -> Iterator[Endpoint]:
        """
        Endpoints in round-robin order whose circuit is not open, one pass.

        Each endpoint looked at consumes one counter value, so a pass costs
        at most ``len(self)`` values however it ends.
        """
        total = len(self._endpoints)
        if total == 0:
            raise NoEndpointsError()

        for _ in range(total):
            current = next(self._counter)
            endpoint = self._endpoints[(current - 1) % total]

            if endpoint.breaker.state == CircuitState.OPEN:
                logger.debug("Skipping endpoint '%s': circuit open", endpoint.name)
                continue

            yield endpoint

    def _unavailable(self) -> EndpointsUnavailableError:
        total = len(self._endpoints)
        logger.warning("None of %d endpoints is available", total)
        return EndpointsUnavailableError(attempts=total)

    def next_endpoint(self) -> Endpoint:
        """
        Pick the next endpoint whose circuit is not open.

        At most one pass over the pool is made, so the call always
        terminates. The state check is advisory: the breaker still has the
        final say when the call is made.

        Raises:
            NoEndpointsError: If the pool is empty
            EndpointsUnavailableError: If every endpoint is open
        """
        for endpoint in self._candidates():
            return endpoint
        raise self._unavailable()

    def admit(self) -> Tuple[Endpoint, Callable[..., None]]:
        """
        Pick the next endpoint whose breaker admits a call right now.

        Used for calls whose outcome is only known later (streams). An
        endpoint that refuses admission, for example a half-open breaker
        with its trial in flight, is passed over within the same single pass.

        Returns:
            The endpoint and the breaker's ``done(error=None)`` callback

        Raises:
            NoEndpointsError: If the pool is empty
            EndpointsUnavailableError: If no endpoint admitted the call
        """
        for endpoint in self._candidates():
            try:
                return endpoint, endpoint.breaker.allow()
            except CircuitOpenError as e:
                logger.debug("Endpoint '%s' not admitted: %s", endpoint.name, e)
        raise self._unavailable()
