"""Provider capability: send one chat request to one upstream endpoint."""

import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, AsyncIterator, Iterator


@dataclass
class Message:
    """One turn of a chat conversation."""

    role: str  # "system", "user", "assistant"
    content: str
    name: Optional[str] = None  # Sent only when set

    def to_dict(self) -> Dict[str, str]:
        data = {"role": self.role, "content": self.content}
        if self.name:
            data["name"] = self.name
        return data

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role="assistant", content=content)


@dataclass
class ChatRequest:
    """
    A chat-completion request as handed to a provider.

    Requests are treated as values: code that needs a variant (for example a
    different ``model``) builds a copy with ``dataclasses.replace``.
    """

    model: str
    messages: List[Message]
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    params: Dict[str, Any] = field(default_factory=dict)  # top_p, stop, ...
    timeout: Optional[float] = None  # Per-call timeout forwarded to the transport


@dataclass
class ProviderConfig:
    """
    Connection settings for one upstream endpoint.

    ``max_tokens`` and ``temperature`` fill in requests that leave them
    unset. ``extra_params`` is merged into every request body last.
    """

    base_url: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None  # Consulted when api_key is empty
    timeout: float = 60.0
    max_tokens: int = 4096
    temperature: float = 0.7
    extra_headers: Dict[str, str] = field(default_factory=dict)
    extra_params: Dict[str, Any] = field(default_factory=dict)

    def get_api_key(self) -> Optional[str]:
        """Explicit key first, then the named environment variable."""
        if self.api_key:
            return self.api_key
        return os.environ.get(self.api_key_env) if self.api_key_env else None


@dataclass
class ProviderResponse:
    """A completed chat response from one endpoint."""

    content: str
    model: str  # As reported by the endpoint, after any model mapping
    provider: str
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, int]] = None
    raw_response: Optional[Any] = None

    def _usage_count(self, key: str) -> int:
        return (self.usage or {}).get(key, 0)

    @property
    def prompt_tokens(self) -> int:
        return self._usage_count("prompt_tokens")

    @property
    def completion_tokens(self) -> int:
        return self._usage_count("completion_tokens")

    @property
    def total_tokens(self) -> int:
        return self._usage_count("total_tokens") or self.prompt_tokens + self.completion_tokens


class ProviderError(Exception):
    """
    An endpoint answered with an error status.

    ``status_code`` is what the load balancer inspects to tell a rejected
    request (the caller's fault) from a failing endpoint.
    """

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: Optional[int] = None,
        response: Optional[Any] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.response = response


class AuthenticationError(ProviderError):
    """Missing or rejected API key (HTTP 401)."""


class RateLimitError(ProviderError):
    """The endpoint is throttling this key (HTTP 429)."""

    def __init__(
        self,
        message: str,
        provider: str,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
        response: Optional[Any] = None,
    ):
        super().__init__(message, provider, status_code, response)
        self.retry_after = retry_after  # Seconds, from the retry-after header


class InvalidRequestError(ProviderError):
    """The endpoint rejected the request itself (HTTP 400)."""


class ServerError(ProviderError):
    """The endpoint failed to serve the request (HTTP 5xx)."""


class BaseProvider(ABC):
    """
    One upstream endpoint speaking the chat-completion protocol.

    Implementations raise ``ProviderError`` subclasses carrying the HTTP
    status for error answers and let transport errors propagate. The load
    balancer classifies both; providers never retry.

    HTTP clients are created on first use and shared by every thread and
    task that dispatches to this endpoint.
    """

    provider_name: str = "base"

    def __init__(self, config: Optional[ProviderConfig] = None):
        self.config = config or ProviderConfig()
        self._client: Optional[Any] = None
        self._async_client: Optional[Any] = None
        self._client_lock = threading.Lock()

    @abstractmethod
    def _create_client(self) -> Any:
        """Create the synchronous HTTP client."""

    @abstractmethod
    def _create_async_client(self) -> Any:
        """Create the asynchronous HTTP client."""

    @property
    def client(self) -> Any:
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    self._client = self._create_client()
        return self._client

    @property
    def async_client(self) -> Any:
        if self._async_client is None:
            with self._client_lock:
                if self._async_client is None:
                    self._async_client = self._create_async_client()
        return self._async_client

    @abstractmethod
    def complete(self, request: ChatRequest) -> ProviderResponse:
        """
        Send one chat request and wait for the full answer.

        Args:
            request: The chat request, already mapped to this endpoint's model

        Returns:
            ProviderResponse with the completion

        Raises:
            ProviderError: When the endpoint answers with an error status
            httpx.TransportError: When the endpoint cannot be reached
        """

    @abstractmethod
    async def complete_async(self, request: ChatRequest) -> ProviderResponse:
        """Async twin of ``complete``."""

    @abstractmethod
    def stream(self, request: ChatRequest) -> Iterator[str]:
        """
        Send one chat request and yield the answer as it arrives.

        Error statuses raise on first iteration, before any chunk.

        Yields:
            Chunks of the completion text
        """

    @abstractmethod
    def stream_async(self, request: ChatRequest) -> AsyncIterator[str]:
        """Async twin of ``stream``."""

    def close(self) -> None:
        """Close the synchronous HTTP client, if one was created."""
        client, self._client = self._client, None
        if client is not None and hasattr(client, "close"):
            client.close()

    async def close_async(self) -> None:
        """Close both HTTP clients, if created."""
        client, self._async_client = self._async_client, None
        if client is not None and hasattr(client, "aclose"):
            await client.aclose()
        self.close()

    def __enter__(self) -> "BaseProvider":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    async def __aenter__(self) -> "BaseProvider":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close_async()
