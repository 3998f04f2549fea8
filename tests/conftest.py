"""Shared fixtures: a scripted provider and a controllable breaker clock."""

from typing import List, Optional
from unittest.mock import patch

import pytest

from lb_client.circuit import CircuitBreaker
from lb_client.client import ClientConfig, EndpointConfig, LoadBalancedClient
from lb_client.providers.base import (
    BaseProvider,
    ChatRequest,
    InvalidRequestError,
    ProviderResponse,
    ServerError,
)


def server_error() -> ServerError:
    return ServerError("Server error: upstream exploded", provider="fake", status_code=500)


def bad_request() -> InvalidRequestError:
    return InvalidRequestError("Invalid request: messages is empty", provider="fake", status_code=400)


class FakeProvider(BaseProvider):
    """
    Provider double. Each call consumes the next scripted outcome (an
    exception to raise, or None for success); once the script is used up,
    ``error`` applies to every call.
    """

    provider_name = "fake"

    def __init__(
        self,
        name: str = "fake",
        outcomes: Optional[List[Optional[Exception]]] = None,
        error: Optional[Exception] = None,
        chunks: Optional[List[str]] = None,
        fail_mid_stream: Optional[Exception] = None,
    ):
        super().__init__()
        self.name = name
        self.outcomes = list(outcomes or [])
        self.error = error
        self.chunks = chunks if chunks is not None else ["Hel", "lo"]
        self.fail_mid_stream = fail_mid_stream
        self.requests: List[ChatRequest] = []
        self.closed = False

    def _create_client(self) -> None:
        return None

    def _create_async_client(self) -> None:
        return None

    @property
    def calls(self) -> int:
        return len(self.requests)

    def _next_error(self) -> Optional[Exception]:
        if self.outcomes:
            return self.outcomes.pop(0)
        return self.error

    def complete(self, request: ChatRequest) -> ProviderResponse:
        self.requests.append(request)
        error = self._next_error()
        if error is not None:
            raise error
        return ProviderResponse(content=f"Hello from {self.name}", model=request.model, provider=self.provider_name)

    async def complete_async(self, request: ChatRequest) -> ProviderResponse:
        return self.complete(request)

    def stream(self, request: ChatRequest):
        self.requests.append(request)
        error = self._next_error()
        if error is not None:
            raise error
        for i, chunk in enumerate(self.chunks):
            if i == 1 and self.fail_mid_stream is not None:
                raise self.fail_mid_stream
            yield chunk

    async def stream_async(self, request: ChatRequest):
        for chunk in self.stream(request):
            yield chunk

    def close(self) -> None:
        self.closed = True

    async def close_async(self) -> None:
        self.closed = True


class FakeClock:
    """Stand-in for the breaker's monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    fake = FakeClock()
    with patch.object(CircuitBreaker, "_now", new=fake):
        yield fake


@pytest.fixture
def make_client():
    """Build a LoadBalancedClient whose endpoint i is served by providers[i]."""

    def _make(providers, model_maps=None, **options) -> LoadBalancedClient:
        model_maps = model_maps or {}
        endpoint_configs = [
            EndpointConfig(
                api_key=f"key-{i}",
                base_url=f"https://ep{i}.example/v1",
                model_map=model_maps.get(i, {}),
            )
            for i in range(len(providers))
        ]
        by_url = {c.base_url: p for c, p in zip(endpoint_configs, providers)}
        config = ClientConfig(
            endpoints=endpoint_configs,
            provider_factory=lambda endpoint_config: by_url[endpoint_config.base_url],
            **options,
        )
        return LoadBalancedClient(config)

    return _make
