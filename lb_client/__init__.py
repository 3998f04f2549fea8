"""
lb-client - Chat completions load-balanced across interchangeable endpoints.

This package spreads calls over several API-key/base-URL pairs for the same
chat-completion service:
- Round-robin selection that skips endpoints whose circuit is open
- One circuit breaker per endpoint, isolating a failing endpoint for a cooldown
- Per-endpoint model mapping (requested model -> model the endpoint serves)
- Request errors (HTTP 400) never count against an endpoint

Basic usage:
    from lb_client import create_client, Message

    client = create_client([
        {"api_key": "sk-a", "base_url": "https://a.example/v1"},
        {"api_key": "sk-b", "base_url": "https://b.example/v1",
         "model_map": {"gpt-4o": "gpt-4o-2024-08-06"}},
    ])
    response = client.complete([Message.user("Hello")], model="gpt-4o")
    print(response.content)

Tuning the breakers:
    from lb_client import CircuitBreakerConfig, trip_on_consecutive_failures

    client = create_client(
        endpoints,
        circuit_config=CircuitBreakerConfig(
            timeout=10.0,
            ready_to_trip=trip_on_consecutive_failures(5),
        ),
    )

Retrying across endpoints:
    from lb_client import retry_sync, RetryConfig

    response = retry_sync(client.complete, messages, config=RetryConfig(max_retries=2))
"""

__version__ = "0.1.0"

# Main client
from .client import (
    LoadBalancedClient,
    ClientConfig,
    EndpointConfig,
    create_client,
    is_caller_fault,
)

# Endpoint pool
from .pool import (
    Endpoint,
    EndpointPool,
    PoolError,
    NoEndpointsError,
    EndpointsUnavailableError,
)

# Circuit breaker module
from .circuit import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    CallOutcome,
    Counts,
    CircuitOpenError,
    TooManyRequestsError,
    default_ready_to_trip,
    trip_on_consecutive_failures,
)

# Retry module
from .retry import (
    RetryConfig,
    RetryState,
    RetryExhaustedError,
    is_retryable,
    with_retry,
    with_async_retry,
    retry_sync,
    retry_async,
)

# Configuration loading
from .config import (
    ConfigError,
    config_from_dict,
    config_from_env,
    load_config,
)

# Provider base classes
from .providers.base import (
    BaseProvider,
    ChatRequest,
    ProviderConfig,
    ProviderResponse,
    Message,
    ProviderError,
    AuthenticationError,
    InvalidRequestError,
    RateLimitError,
    ServerError,
)

# Providers
from .providers.openai import OpenAIProvider

__all__ = [
    # Version
    "__version__",
    # Main client
    "LoadBalancedClient",
    "ClientConfig",
    "EndpointConfig",
    "create_client",
    "is_caller_fault",
    # Pool
    "Endpoint",
    "EndpointPool",
    "PoolError",
    "NoEndpointsError",
    "EndpointsUnavailableError",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "CallOutcome",
    "Counts",
    "CircuitOpenError",
    "TooManyRequestsError",
    "default_ready_to_trip",
    "trip_on_consecutive_failures",
    # Retry
    "RetryConfig",
    "RetryState",
    "RetryExhaustedError",
    "is_retryable",
    "with_retry",
    "with_async_retry",
    "retry_sync",
    "retry_async",
    # Config
    "ConfigError",
    "config_from_dict",
    "config_from_env",
    "load_config",
    # Provider base
    "BaseProvider",
    "ChatRequest",
    "ProviderConfig",
    "ProviderResponse",
    "Message",
    "ProviderError",
    "AuthenticationError",
    "InvalidRequestError",
    "RateLimitError",
    "ServerError",
    # Providers
    "OpenAIProvider",
]
