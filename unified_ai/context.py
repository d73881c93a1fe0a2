"""Explicit runtime context.

``AIContext`` is built once at process start and passed by reference to the
orchestrator, the public service and any health-check routine. It owns the
settings, the provider profile table, the registry (and therefore every
adapter's circuit breaker), the selection engine, the response cache and the
credentials.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

import httpx

from .cache import create_cache
from .config import Settings, get_settings
from .errors import AuthenticationError
from .profiles import ProfileTable
from .providers.anthropic_provider import AnthropicProvider
from .providers.base import BaseProvider, ProviderConfig, ProviderKind
from .providers.google_provider import GoogleProvider
from .providers.openai_provider import OpenAIProvider
from .providers.registry import ProviderRegistry
from .resilience import RetryPolicy
from .strategy import StrategyEngine

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: Dict[ProviderKind, Type[BaseProvider]] = {
    ProviderKind.OPENAI: OpenAIProvider,
    ProviderKind.ANTHROPIC: AnthropicProvider,
    ProviderKind.GOOGLE: GoogleProvider,
}


def register_default_providers(
    registry: ProviderRegistry,
    profiles: ProfileTable,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Register a factory for every built-in adapter.

    Factories read the profile table when they build an instance, so a
    reloaded table applies to instances created afterwards.
    """
    for kind, provider_class in PROVIDER_CLASSES.items():
        def factory(config: ProviderConfig, _class=provider_class, _kind=kind) -> BaseProvider:
            return _class(config, profile=profiles.get(_kind.value), transport=transport)
        registry.register(kind, factory)


@dataclass
class AIContext:
    """Everything a request needs, wired together once."""

    settings: Settings
    profiles: ProfileTable
    registry: ProviderRegistry
    engine: StrategyEngine
    cache: Any
    credentials: Dict[str, str] = field(default_factory=dict)
    base_urls: Dict[str, Optional[str]] = field(default_factory=dict)
    extra_headers: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cache: Any = None,
        profiles: Optional[ProfileTable] = None,
    ) -> "AIContext":
        """Build a context from ``settings`` (defaults to the environment).

        Args:
            settings: Application settings.
            transport: Optional httpx transport shared by all adapters (tests).
            cache: Cache override; defaults to ``create_cache(settings)``.
            profiles: Profile table override.
        """
        settings = settings or get_settings()
        profiles = profiles or ProfileTable(path=settings.provider_profiles_path)
        registry = ProviderRegistry(
            retry_policy=RetryPolicy(
                max_retries=settings.max_retries,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
                multiplier=settings.retry_multiplier,
                jitter=settings.retry_jitter,
            ),
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_recovery_timeout,
            default_models={name: profile.default_model for name, profile in profiles.providers().items()},
        )
        register_default_providers(registry, profiles, transport)

        extra_headers: Dict[str, Dict[str, str]] = {}
        openai_headers = {}
        if settings.openai_organization:
            openai_headers["OpenAI-Organization"] = settings.openai_organization
        if settings.openai_project:
            openai_headers["OpenAI-Project"] = settings.openai_project
        if openai_headers:
            extra_headers[ProviderKind.OPENAI.value] = openai_headers

        context = cls(
            settings=settings,
            profiles=profiles,
            registry=registry,
            engine=StrategyEngine(profiles),
            cache=cache if cache is not None else create_cache(settings),
            credentials=settings.credentials(),
            base_urls=settings.base_urls(),
            extra_headers=extra_headers,
        )
        logger.info(f"AI context ready: providers={context.available_providers()}")
        return context

    def available_providers(self) -> List[str]:
        """Registered providers that have credentials, in registration order."""
        return [name for name in self.registry.registered_providers() if name in self.credentials]

    def provider_config(self, provider: str, model: Optional[str] = None) -> ProviderConfig:
        """Build the ``ProviderConfig`` for ``provider`` from the context.

        Raises:
            AuthenticationError: If no API key is configured for the provider.
        """
        api_key = self.credentials.get(provider)
        if not api_key:
            raise AuthenticationError("No API key configured", provider)
        profile = self.profiles.get(provider)
        return ProviderConfig(
            provider=ProviderKind(provider),
            model=model or (profile.default_model if profile else ""),
            api_key=api_key,
            base_url=self.base_urls.get(provider),
            timeout=self.settings.request_timeout,
            max_retries=self.settings.max_retries,
            extra_headers=dict(self.extra_headers.get(provider, {})),
        )

    async def aclose(self) -> None:
        """Release HTTP clients and the cache connection."""
        await self.registry.aclose()
        await self.cache.close()
