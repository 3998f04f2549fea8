"""OpenAI-compatible chat-completion provider over httpx."""

import json
from typing import Optional, Dict, Any, AsyncIterator, Iterator, Type

import httpx

from .base import (
    BaseProvider,
    ChatRequest,
    ProviderConfig,
    ProviderResponse,
    ProviderError,
    AuthenticationError,
    RateLimitError,
    InvalidRequestError,
    ServerError,
)

# Error class per status; anything >= 500 not listed here is a ServerError.
ERROR_TYPES: Dict[int, Type[ProviderError]] = {
    400: InvalidRequestError,
    401: AuthenticationError,
    429: RateLimitError,
}

ERROR_PREFIXES: Dict[Type[ProviderError], str] = {
    InvalidRequestError: "Invalid request",
    AuthenticationError: "Authentication failed",
    RateLimitError: "Rate limit exceeded",
    ServerError: "Server error",
}

SSE_DATA_PREFIX = "data: "
SSE_DONE = "[DONE]"


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None  # HTTP-date form is not used by chat endpoints


class OpenAIProvider(BaseProvider):
    """
    Client for one endpoint implementing ``POST {base_url}/chat/completions``.

    Works against api.openai.com, Azure-style gateways and self-hosted
    servers alike: only the base URL and key differ.
    """

    provider_name = "openai"
    default_model = "gpt-4o"

    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    DEFAULT_API_KEY_ENV = "OPENAI_API_KEY"
    COMPLETIONS_PATH = "/chat/completions"

    def __init__(self, config: Optional[ProviderConfig] = None):
        super().__init__(config)
        if self.config.api_key_env is None:
            self.config.api_key_env = self.DEFAULT_API_KEY_ENV

    @property
    def base_url(self) -> str:
        return self.config.base_url or self.DEFAULT_BASE_URL

    def _get_headers(self) -> Dict[str, str]:
        api_key = self.config.get_api_key()
        if not api_key:
            raise AuthenticationError(
                f"No API key configured for {self.base_url}. "
                f"Set {self.config.api_key_env} or provide api_key in config.",
                provider=self.provider_name,
            )

        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            **self.config.extra_headers,
        }

    def _client_options(self) -> Dict[str, Any]:
        return {
            "base_url": self.base_url,
            "headers": self._get_headers(),
            "timeout": self.config.timeout,
        }

    def _create_client(self) -> httpx.Client:
        return httpx.Client(**self._client_options())

    def _create_async_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(**self._client_options())

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            error = response.json().get("error", {})
            return error.get("message") or response.text
        except (ValueError, AttributeError):
            return response.text

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Raise the ProviderError matching a non-200 answer. Body must be read."""
        status_code = response.status_code
        if status_code == 200:
            return

        error_type = ERROR_TYPES.get(status_code)
        if error_type is None:
            error_type = ServerError if status_code >= 500 else ProviderError

        prefix = ERROR_PREFIXES.get(error_type, f"API error ({status_code})")
        message = f"{prefix}: {self._error_message(response)}"

        if error_type is RateLimitError:
            raise RateLimitError(
                message,
                provider=self.provider_name,
                retry_after=_parse_retry_after(response.headers.get("retry-after")),
                status_code=status_code,
                response=response,
            )
        raise error_type(message, provider=self.provider_name, status_code=status_code, response=response)

    def _build_request_body(self, request: ChatRequest, stream: bool = False) -> Dict[str, Any]:
        """Request fields first, then request params, then config extra_params."""
        body = {
            "model": request.model or self.default_model,
            "messages": [m.to_dict() for m in request.messages],
            "max_tokens": request.max_tokens if request.max_tokens is not None else self.config.max_tokens,
            "temperature": request.temperature if request.temperature is not None else self.config.temperature,
            "stream": stream,
        }
        body.update(request.params)
        body.update(self.config.extra_params)
        return body

    @staticmethod
    def _request_options(request: ChatRequest) -> Dict[str, Any]:
        # httpx reads an explicit timeout=None as "no timeout", so only pass one that is set.
        if request.timeout is None:
            return {}
        return {"timeout": request.timeout}

    def _parse_response(self, data: Dict[str, Any], model: str) -> ProviderResponse:
        choice = data["choices"][0]
        usage = data.get("usage")
        if usage:
            usage = {key: usage.get(key, 0) for key in ("prompt_tokens", "completion_tokens", "total_tokens")}

        return ProviderResponse(
            content=choice.get("message", {}).get("content") or "",
            model=data.get("model", model),
            provider=self.provider_name,
            finish_reason=choice.get("finish_reason"),
            usage=usage,
            raw_response=data,
        )

    @staticmethod
    def _parse_sse_line(line: str) -> Optional[str]:
        """Delta text of one server-sent-event line; "" when it has none, None at [DONE]."""
        if not line.startswith(SSE_DATA_PREFIX):
            return ""
        payload = line[len(SSE_DATA_PREFIX):]
        if payload.strip() == SSE_DONE:
            return None

        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            return ""

        choices = data.get("choices") or [{}]
        return choices[0].get("delta", {}).get("content") or ""

    def complete(self, request: ChatRequest) -> ProviderResponse:
        body = self._build_request_body(request)
        response = self.client.post(self.COMPLETIONS_PATH, json=body, **self._request_options(request))
        self._raise_for_status(response)
        return self._parse_response(response.json(), body["model"])

    async def complete_async(self, request: ChatRequest) -> ProviderResponse:
        body = self._build_request_body(request)
        response = await self.async_client.post(self.COMPLETIONS_PATH, json=body, **self._request_options(request))
        self._raise_for_status(response)
        return self._parse_response(response.json(), body["model"])

    def stream(self, request: ChatRequest) -> Iterator[str]:
        body = self._build_request_body(request, stream=True)

        with self.client.stream(
            "POST", self.COMPLETIONS_PATH, json=body, **self._request_options(request)
        ) as response:
            if response.status_code != 200:
                response.read()
                self._raise_for_status(response)

            for line in response.iter_lines():
                content = self._parse_sse_line(line)
                if content is None:
                    return
                if content:
                    yield content

    async def stream_async(self, request: ChatRequest) -> AsyncIterator[str]:
        body = self._build_request_body(request, stream=True)

        async with self.async_client.stream(
            "POST", self.COMPLETIONS_PATH, json=body, **self._request_options(request)
        ) as response:
            if response.status_code != 200:
                await response.aread()
                self._raise_for_status(response)

            async for line in response.aiter_lines():
                content = self._parse_sse_line(line)
                if content is None:
                    return
                if content:
                    yield content
