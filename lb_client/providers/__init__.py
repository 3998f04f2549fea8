"""Upstream chat-completion providers."""

from .base import BaseProvider, ChatRequest, ProviderConfig, ProviderResponse, Message
from .openai import OpenAIProvider

__all__ = [
    "BaseProvider",
    "ChatRequest",
    "ProviderConfig",
    "ProviderResponse",
    "Message",
    "OpenAIProvider",
]
