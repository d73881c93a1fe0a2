"""Unified access to multiple LLM providers.

One request and response model across OpenAI, Anthropic and Google, with
retry, circuit breaking, strategy-based routing, fallback and caching.
"""

from .config import Settings, get_settings
from .context import AIContext
from .errors import (
    AIError,
    AllProvidersFailedError,
    AuthenticationError,
    CircuitOpenError,
    ErrorKind,
    NetworkError,
    NoSuitableProviderError,
    ProviderError,
    RateLimitError,
    RequestTimeoutError,
    UnsupportedOperationError,
    ValidationError,
)
from .orchestrator import AIOrchestrator, RequestOptions
from .providers import ProviderConfig, ProviderKind, ProviderRegistry
from .schemas import (
    Constraints,
    CrossValidationOptions,
    OrchestratedResponse,
    Requirements,
    UnifiedMessage,
    UnifiedRequest,
    UnifiedResponse,
    UnifiedStreamChunk,
)
from .service import AIService, Conversation
from .streaming import ChunkStream

__version__ = "0.1.0"

__all__ = [
    "Settings",
    "get_settings",
    "AIContext",
    "AIError",
    "AllProvidersFailedError",
    "AuthenticationError",
    "CircuitOpenError",
    "ErrorKind",
    "NetworkError",
    "NoSuitableProviderError",
    "ProviderError",
    "RateLimitError",
    "RequestTimeoutError",
    "UnsupportedOperationError",
    "ValidationError",
    "AIOrchestrator",
    "RequestOptions",
    "ProviderConfig",
    "ProviderKind",
    "ProviderRegistry",
    "Constraints",
    "CrossValidationOptions",
    "OrchestratedResponse",
    "Requirements",
    "UnifiedMessage",
    "UnifiedRequest",
    "UnifiedResponse",
    "UnifiedStreamChunk",
    "AIService",
    "Conversation",
    "ChunkStream",
]
