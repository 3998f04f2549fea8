"""Load-balanced client: round robin over a pool with per-endpoint circuit breakers."""

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Optional, List, Dict, Any, Callable, Iterator, AsyncIterator, Mapping, Sequence, Tuple, Union

from .providers.base import (
    BaseProvider,
    ChatRequest,
    ProviderConfig,
    ProviderResponse,
    Message,
    ProviderError,
)
from .providers.openai import OpenAIProvider
from .circuit import (
    CallOutcome,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    default_ready_to_trip,
)
from .pool import Endpoint, EndpointPool

logger = logging.getLogger(__name__)

# Status codes that blame the request rather than the endpoint.
DEFAULT_CALLER_FAULT_STATUS_CODES: Tuple[int, ...] = (400,)


@dataclass(frozen=True)
class EndpointConfig:
    """Descriptor for one upstream endpoint."""

    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model_map: Mapping[str, str] = field(default_factory=dict)  # requested model -> actual model
    name: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "model_map", MappingProxyType(dict(self.model_map)))


@dataclass
class ClientConfig:
    """Configuration for the load-balanced client."""

    endpoints: List[EndpointConfig] = field(default_factory=list)
    default_model: str = OpenAIProvider.default_model

    # Breaker template shared by every endpoint; name comes from name_template
    circuit_config: Optional[CircuitBreakerConfig] = None
    name_template: str = "Client-{index}"

    caller_fault_status_codes: Tuple[int, ...] = DEFAULT_CALLER_FAULT_STATUS_CODES

    # Provider settings
    timeout: float = 60.0
    provider_factory: Optional[Callable[[EndpointConfig], BaseProvider]] = None


def is_caller_fault(error: BaseException, status_codes: Sequence[int] = DEFAULT_CALLER_FAULT_STATUS_CODES) -> bool:
    """True when the upstream rejected the request itself (e.g. HTTP 400)."""
    return isinstance(error, ProviderError) and error.status_code in status_codes


class LoadBalancedClient:
    """
    Chat-completion client spread over a pool of interchangeable endpoints.

    Each call picks the next endpoint in round-robin order, skipping
    endpoints whose circuit is open, applies that endpoint's model mapping
    and runs the call through the endpoint's circuit breaker.

    Errors caused by the request (HTTP 400 by default) reach the caller
    without counting against the endpoint. Every other error counts as an
    endpoint failure. A call is one attempt on one endpoint: nothing is
    retried behind the caller's back (see ``lb_client.retry``).
    """

    def __init__(self, config: Optional[ClientConfig] = None):
        self.config = config or ClientConfig()
        self._pool = self._build_pool()

    def _create_provider(self, endpoint_config: EndpointConfig) -> BaseProvider:
        """Create the upstream client for one endpoint."""
        if self.config.provider_factory:
            return self.config.provider_factory(endpoint_config)

        return OpenAIProvider(
            ProviderConfig(
                api_key=endpoint_config.api_key,
                base_url=endpoint_config.base_url,
                timeout=self.config.timeout,
            )
        )

    def _classify_error(self, error: BaseException) -> CallOutcome:
        if is_caller_fault(error, self.config.caller_fault_status_codes):
            return CallOutcome.IGNORED
        return CallOutcome.FAILURE

    def _build_pool(self) -> EndpointPool:
        """Create one endpoint, with its own breaker, per descriptor."""
        template = self.config.circuit_config or CircuitBreakerConfig()
        endpoints = []

        for index, endpoint_config in enumerate(self.config.endpoints):
            name = endpoint_config.name or self.config.name_template.format(index=index)
            circuit_config = replace(
                template,
                name=name,
                ready_to_trip=template.ready_to_trip or default_ready_to_trip,
                classify_error=template.classify_error or self._classify_error,
            )
            endpoints.append(
                Endpoint(
                    name=name,
                    provider=self._create_provider(endpoint_config),
                    breaker=CircuitBreaker(name, circuit_config),
                    base_url=endpoint_config.base_url or "",
                    model_map=dict(endpoint_config.model_map),
                )
            )

        return EndpointPool(endpoints)

    @property
    def pool(self) -> EndpointPool:
        return self._pool

    @property
    def endpoints(self) -> Sequence[Endpoint]:
        return self._pool.endpoints

    def _build_request(self, messages: List[Message], model: Optional[str], **kwargs: Any) -> ChatRequest:
        return ChatRequest(
            model=model or self.config.default_model,
            messages=list(messages),
            max_tokens=kwargs.pop("max_tokens", None),
            temperature=kwargs.pop("temperature", None),
            timeout=kwargs.pop("timeout", None),
            params=kwargs,
        )

    def _log_error(self, endpoint: Endpoint, error: BaseException) -> None:
        if isinstance(error, CircuitOpenError):
            logger.info("Endpoint '%s' rejected the call: %s", endpoint.name, error)
        elif is_caller_fault(error, self.config.caller_fault_status_codes):
            logger.info("Endpoint '%s' refused the request, not counted against it: %s", endpoint.name, error)
        else:
            logger.warning("Endpoint '%s' failed: %s", endpoint.name, error)

    def dispatch(self, request: ChatRequest) -> ProviderResponse:
        """
        Send a request to the next healthy endpoint.

        Args:
            request: The chat request, as the caller built it

        Returns:
            ProviderResponse from the endpoint that served the call

        Raises:
            NoEndpointsError: If no endpoints are configured
            EndpointsUnavailableError: If every endpoint's circuit is open
            CircuitOpenError: If the chosen endpoint rejected the call
            ProviderError: Upstream errors, unchanged
        """
        endpoint = self._pool.next_endpoint()
        final_request = endpoint.rewrite_request(request)
        logger.debug("Dispatching model=%s to endpoint '%s'", final_request.model, endpoint.name)

        try:
            return endpoint.breaker.call(endpoint.provider.complete, final_request)
        except Exception as e:
            self._log_error(endpoint, e)
            raise

    async def dispatch_async(self, request: ChatRequest) -> ProviderResponse:
        """Send a request to the next healthy endpoint asynchronously."""
        endpoint = self._pool.next_endpoint()
        final_request = endpoint.rewrite_request(request)
        logger.debug("Dispatching model=%s to endpoint '%s'", final_request.model, endpoint.name)

        try:
            return await endpoint.breaker.call_async(endpoint.provider.complete_async, final_request)
        except Exception as e:
            self._log_error(endpoint, e)
            raise

    def complete(
        self,
        messages: List[Message],
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> ProviderResponse:
        """
        Generate a completion on the next healthy endpoint.

        Args:
            messages: List of chat messages
            model: Model to request (endpoint model maps apply)
            **kwargs: max_tokens, temperature, timeout and extra body params

        Returns:
            ProviderResponse with the completion
        """
        return self.dispatch(self._build_request(messages, model, **kwargs))

    async def complete_async(
        self,
        messages: List[Message],
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> ProviderResponse:
        """Generate a completion asynchronously on the next healthy endpoint."""
        return await self.dispatch_async(self._build_request(messages, model, **kwargs))

    def chat(
        self,
        message: str,
        system: Optional[str] = None,
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> str:
        """
        Simple chat interface - send a message and get a response.

        Returns:
            Response text
        """
        messages = []
        if system:
            messages.append(Message.system(system))
        messages.append(Message.user(message))

        response = self.complete(messages, model=model, **kwargs)
        return response.content

    async def chat_async(
        self,
        message: str,
        system: Optional[str] = None,
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> str:
        """Async simple chat interface."""
        messages = []
        if system:
            messages.append(Message.system(system))
        messages.append(Message.user(message))

        response = await self.complete_async(messages, model=model, **kwargs)
        return response.content

    def stream(
        self,
        messages: List[Message],
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> Iterator[str]:
        """
        Stream a completion from the next healthy endpoint.

        Selection happens when iteration starts. Endpoints whose breaker
        refuses the call are skipped, at most once around the pool. How the
        stream ends is reported to the breaker: an error raised while
        consuming counts like a failed call, while exhausting the stream
        counts as success and closing it early counts as neither.

        Yields:
            Chunks of the response
        """
        request = self._build_request(messages, model, **kwargs)
        endpoint, done = self._pool.admit()
        final_request = endpoint.rewrite_request(request)
        logger.debug("Streaming model=%s from endpoint '%s'", final_request.model, endpoint.name)

        error: Optional[BaseException] = None
        try:
            yield from endpoint.provider.stream(final_request)
        except BaseException as e:
            error = e
            if isinstance(e, Exception):
                self._log_error(endpoint, e)
            raise
        finally:
            done(error)

    async def stream_async(
        self,
        messages: List[Message],
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> AsyncIterator[str]:
        """Stream a completion asynchronously; same accounting as ``stream``."""
        request = self._build_request(messages, model, **kwargs)
        endpoint, done = self._pool.admit()
        final_request = endpoint.rewrite_request(request)
        logger.debug("Streaming model=%s from endpoint '%s'", final_request.model, endpoint.name)

        error: Optional[BaseException] = None
        try:
            async for chunk in endpoint.provider.stream_async(final_request):
                yield chunk
        except BaseException as e:
            error = e
            if isinstance(e, Exception):
                self._log_error(endpoint, e)
            raise
        finally:
            done(error)

    def get_circuit_stats(self) -> Dict[str, Dict[str, Any]]:
        """Get stats for every endpoint's circuit breaker."""
        return {endpoint.name: endpoint.get_stats() for endpoint in self._pool}

    def reset_circuits(self) -> None:
        """Reset all circuit breakers."""
        for endpoint in self._pool:
            endpoint.breaker.reset()

    def close(self) -> None:
        """Close all resources."""
        for endpoint in self._pool:
            endpoint.provider.close()

    async def close_async(self) -> None:
        """Close all resources asynchronously."""
        for endpoint in self._pool:
            await endpoint.provider.close_async()

    def __enter__(self) -> "LoadBalancedClient":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    async def __aenter__(self) -> "LoadBalancedClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close_async()


# Convenience function for quick usage
def create_client(
    endpoints: Sequence[Union[EndpointConfig, Dict[str, Any]]],
    model: Optional[str] = None,
    circuit_config: Optional[CircuitBreakerConfig] = None,
    **options: Any,
) -> LoadBalancedClient:
    """
    Create a load-balanced client from endpoint descriptors.

    Args:
        endpoints: EndpointConfig objects or dicts with api_key, base_url,
            model_map and name keys
        model: Default model
        circuit_config: Breaker template applied to every endpoint
        **options: Any other ClientConfig field

    Returns:
        Configured LoadBalancedClient
    """
    endpoint_configs = [
        endpoint if isinstance(endpoint, EndpointConfig) else EndpointConfig(**endpoint)
        for endpoint in endpoints
    ]

    config = ClientConfig(endpoints=endpoint_configs, circuit_config=circuit_config, **options)
    if model:
        config.default_model = model

    return LoadBalancedClient(config)
