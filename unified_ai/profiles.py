"""Static provider capability, pricing and routing data.

The values are routing policy rather than correctness requirements, so they
live in a table that can be replaced at runtime from a JSON file (see
``PROVIDER_PROFILES_PATH``). The JSON shape mirrors ``DEFAULT_PROFILES``::

    {"openai": {"default_model": "gpt-4o", "capabilities": [...],
                "context_limit": 128000, "models": {...},
                "cost_per_token": 0.0025, "avg_latency_ms": 2500,
                "quality_score": 90, "privacy_tier": "public"}}

Entries in the file override the built-in entry of the same provider.
"""

import json
import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterator, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    """Features a provider may support."""
    CHAT = "chat"
    VISION = "vision"
    TOOLS = "tools"
    STREAMING = "streaming"
    JSON_MODE = "json_mode"
    SYSTEM_MESSAGES = "system_messages"


class ModelPricing(BaseModel):
    """USD per 1K tokens."""
    model_config = ConfigDict(frozen=True)

    input: float
    output: float
    context_limit: Optional[int] = None


class ProviderProfile(BaseModel):
    """Immutable capability/cost description of one provider."""
    model_config = ConfigDict(frozen=True)

    provider: str
    default_model: str
    capabilities: FrozenSet[Capability]
    context_limit: int
    models: Dict[str, ModelPricing] = Field(default_factory=dict)
    cost_per_token: float = 0.0
    avg_latency_ms: float = 0.0
    quality_score: float = 50.0
    privacy_tier: str = "public"

    @property
    def price_per_k_tokens(self) -> Optional[ModelPricing]:
        """Pricing of the default model."""
        return self.models.get(self.default_model)

    def pricing_for(self, model: Optional[str]) -> Optional[ModelPricing]:
        """Look up pricing, tolerating dated model suffixes.

        ``gpt-4o-2024-08-06`` resolves to ``gpt-4o``; the longest known prefix
        wins. Returns None for an unrecognized model.
        """
        model = model or self.default_model
        if model in self.models:
            return self.models[model]
        matches = [name for name in self.models if model.startswith(name + "-")]
        if not matches:
            return None
        return self.models[max(matches, key=len)]

    def context_limit_for(self, model: Optional[str]) -> int:
        pricing = self.pricing_for(model)
        if pricing and pricing.context_limit:
            return pricing.context_limit
        return self.context_limit

    def supports(self, capability: Union[Capability, str]) -> bool:
        return Capability(capability) in self.capabilities


_ALL = [c.value for c in Capability]

DEFAULT_PROFILES: Dict[str, Dict[str, Any]] = {
    "openai": {
        "default_model": "gpt-4o",
        "capabilities": _ALL,
        "context_limit": 128000,
        "models": {
            "gpt-4o": {"input": 0.005, "output": 0.015},
            "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
            "gpt-4-turbo": {"input": 0.01, "output": 0.03},
            "gpt-4": {"input": 0.03, "output": 0.06, "context_limit": 8192},
            "gpt-3.5-turbo": {"input": 0.0015, "output": 0.002, "context_limit": 4096},
            "gpt-3.5-turbo-16k": {"input": 0.003, "output": 0.004, "context_limit": 16384},
        },
        "cost_per_token": 0.0025,
        "avg_latency_ms": 2500,
        "quality_score": 90,
        "privacy_tier": "public",
    },
    "anthropic": {
        "default_model": "claude-3-5-sonnet-20241022",
        "capabilities": ["chat", "vision", "tools", "streaming", "system_messages"],
        "context_limit": 200000,
        "models": {
            "claude-3-5-sonnet-20241022": {"input": 0.003, "output": 0.015},
            "claude-3-5-haiku-20241022": {"input": 0.00025, "output": 0.00125},
            "claude-3-opus-20240229": {"input": 0.015, "output": 0.075},
            "claude-3-sonnet-20240229": {"input": 0.003, "output": 0.015},
            "claude-3-haiku-20240307": {"input": 0.00025, "output": 0.00125},
        },
        "cost_per_token": 0.003,
        "avg_latency_ms": 3000,
        "quality_score": 95,
        "privacy_tier": "private",
    },
    "google": {
        "default_model": "gemini-1.5-pro",
        "capabilities": ["chat", "vision", "tools", "streaming", "json_mode"],
        "context_limit": 1000000,
        "models": {
            "gemini-1.5-pro": {"input": 0.00125, "output": 0.005},
            "gemini-1.5-flash": {"input": 0.000075, "output": 0.0003},
            "gemini-pro": {"input": 0.0005, "output": 0.0015, "context_limit": 30720},
            "gemini-pro-vision": {"input": 0.00025, "output": 0.0005, "context_limit": 12288},
        },
        "cost_per_token": 0.00125,
        "avg_latency_ms": 2000,
        "quality_score": 85,
        "privacy_tier": "public",
    },
}


def _build(provider: str, data: Dict[str, Any]) -> ProviderProfile:
    return ProviderProfile.model_validate({"provider": provider, **data})


class ProfileTable:
    """Reloadable mapping of provider id to ``ProviderProfile``.

    Profiles themselves are immutable; ``reload`` swaps the whole mapping
    atomically so readers never observe a half-loaded table.
    """

    def __init__(
        self,
        profiles: Optional[Dict[str, ProviderProfile]] = None,
        path: Optional[Union[str, Path]] = None,
    ):
        self._lock = threading.Lock()
        self._path = Path(path) if path else None
        if profiles is not None:
            self._profiles = dict(profiles)
        else:
            self._profiles = self._load(self._path)

    @classmethod
    def from_dict(cls, data: Dict[str, Dict[str, Any]]) -> "ProfileTable":
        return cls({name: _build(name, entry) for name, entry in data.items()})

    @staticmethod
    def _load(path: Optional[Path]) -> Dict[str, ProviderProfile]:
        merged = {name: dict(entry) for name, entry in DEFAULT_PROFILES.items()}
        if path is not None:
            with open(path, "r", encoding="utf-8") as f:
                overrides = json.load(f)
            for name, entry in overrides.items():
                merged[name] = {**merged.get(name, {}), **entry}
            logger.info(f"Loaded provider profiles from {path} ({len(overrides)} overrides)")
        return {name: _build(name, entry) for name, entry in merged.items()}

    def reload(self, path: Optional[Union[str, Path]] = None) -> None:
        """Re-read the table from ``path`` (or the path given at construction)."""
        if path is not None:
            self._path = Path(path)
        profiles = self._load(self._path)
        with self._lock:
            self._profiles = profiles
        logger.info(f"Provider profiles reloaded: {sorted(profiles)}")

    def get(self, provider: str) -> Optional[ProviderProfile]:
        with self._lock:
            return self._profiles.get(provider)

    def __getitem__(self, provider: str) -> ProviderProfile:
        profile = self.get(provider)
        if profile is None:
            raise KeyError(provider)
        return profile

    def __contains__(self, provider: object) -> bool:
        with self._lock:
            return provider in self._profiles

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._profiles))

    def providers(self) -> Dict[str, ProviderProfile]:
        with self._lock:
            return dict(self._profiles)


def default_profile(provider: str) -> ProviderProfile:
    """Built-in profile for ``provider``."""
    return _build(provider, DEFAULT_PROFILES[provider])
