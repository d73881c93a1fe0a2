"""Provider adapters.

Each adapter translates the unified request and response model to one
vendor's wire format. All of them share the ``BaseProvider`` contract so they
can be used interchangeably behind the registry.
"""

from .base import (
    BaseProvider,
    ProviderConfig,
    ProviderKind,
    StreamState,
)
from .registry import ProviderRegistry
from .openai_provider import OpenAIProvider
from .anthropic_provider import AnthropicProvider
from .google_provider import GoogleProvider

__all__ = [
    "BaseProvider",
    "ProviderConfig",
    "ProviderKind",
    "StreamState",
    "ProviderRegistry",
    "OpenAIProvider",
    "AnthropicProvider",
    "GoogleProvider",
]
