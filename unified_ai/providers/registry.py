"""Provider Registry for resolving configurations into live adapters.

This module implements the Registry pattern: factories are registered per
``ProviderKind`` and ``resolve`` returns one resilience-wrapped adapter per
``(provider, model)`` pair. The registry is an ordinary object owned by the
caller's context; there is no process-wide instance.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from ..errors import AIError, UnsupportedOperationError, sanitize_error_for_logging
from ..profiles import DEFAULT_PROFILES, default_profile
from ..resilience import CircuitBreaker, ResilientProvider, RetryPolicy
from .base import BaseProvider, ProviderConfig, ProviderKind

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[ProviderConfig], BaseProvider]


class ProviderRegistry:
    """Registry for managing provider factories and adapter instances.

    Instances are cached by ``(provider, model)``. Credentials are frozen into
    an instance when it is first built: resolving the same key with a
    different API key returns the cached instance, so rotating a key requires
    ``clear_cache()``.
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        default_models: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Initialize an empty provider registry.

        Args:
            retry_policy: Backoff settings applied to every resolved adapter;
                ``max_retries`` is taken from each ``ProviderConfig``.
            failure_threshold: Circuit breaker threshold per adapter.
            recovery_timeout: Circuit breaker cooldown in seconds.
            default_models: Model used by ``health_check_all`` per provider.
        """
        self._factories: Dict[ProviderKind, ProviderFactory] = {}
        self._instances: Dict[Tuple[str, str], ResilientProvider] = {}
        self._lock = threading.Lock()
        self._retry_policy = retry_policy or RetryPolicy()
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._default_models = dict(default_models or {})

    def register(
        self,
        provider: Union[ProviderKind, str],
        factory: ProviderFactory,
    ) -> None:
        """Register a factory for a provider variant.

        Args:
            provider: Provider variant the factory builds.
            factory: Callable taking a ``ProviderConfig`` and returning an adapter.
        """
        kind = ProviderKind(provider)
        with self._lock:
            self._factories[kind] = factory
        logger.info(f"Registered provider factory: {kind.value}")

    def unregister(self, provider: Union[ProviderKind, str]) -> None:
        kind = ProviderKind(provider)
        with self._lock:
            self._factories.pop(kind, None)
            for key in [k for k in self._instances if k[0] == kind.value]:
                del self._instances[key]
        logger.info(f"Unregistered provider: {kind.value}")

    def supports(self, provider: Union[ProviderKind, str]) -> bool:
        try:
            kind = ProviderKind(provider)
        except ValueError:
            return False
        with self._lock:
            return kind in self._factories

    def registered_providers(self) -> List[str]:
        """Names of all registered provider variants."""
        with self._lock:
            return [kind.value for kind in self._factories]

    def _wrap(self, adapter: BaseProvider, config: ProviderConfig) -> ResilientProvider:
        breaker = CircuitBreaker(
            f"{config.provider.value}:{config.model}",
            failure_threshold=self._failure_threshold,
            recovery_timeout=self._recovery_timeout,
            provider=config.provider.value,
        )
        return ResilientProvider(
            adapter,
            retry_policy=self._retry_policy.with_max_retries(config.max_retries),
            breaker=breaker,
            timeout=config.timeout,
        )

    def resolve(self, config: ProviderConfig) -> ResilientProvider:
        """Return the cached adapter for ``config``, building it on first use.

        Raises:
            UnsupportedOperationError: If no factory is registered for the provider.
        """
        key = config.cache_key
        with self._lock:
            instance = self._instances.get(key)
            if instance is not None:
                return instance
            factory = self._factories.get(config.provider)
            if factory is None:
                raise UnsupportedOperationError(f"resolve:{config.provider.value}", config.provider.value)
            instance = self._wrap(factory(config), config)
            self._instances[key] = instance
        logger.info(f"Created provider instance: {key[0]}/{key[1]}")
        return instance

    def cached(self) -> List[ResilientProvider]:
        with self._lock:
            return list(self._instances.values())

    def clear_cache(self) -> None:
        """Drop every cached instance (and its breaker state)."""
        with self._lock:
            self._instances.clear()
        logger.info("Cleared provider instance cache")

    async def aclose(self) -> None:
        """Close every cached instance's HTTP client."""
        for instance in self.cached():
            await instance.aclose()

    def _unhealthy(
        self,
        kind: ProviderKind,
        error: str,
        started: Optional[float] = None,
        adapter: Optional[BaseProvider] = None,
    ) -> Dict[str, Any]:
        if adapter is not None:
            capabilities = adapter.capabilities()
        elif kind.value in DEFAULT_PROFILES:
            capabilities = default_profile(kind.value).capabilities
        else:
            capabilities = frozenset()
        return {
            "provider": kind.value,
            "healthy": False,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2) if started is not None else 0.0,
            "capabilities": sorted(c.value for c in capabilities),
            "error": error,
        }

    async def _check_one(self, kind: ProviderKind, factory: ProviderFactory, api_key: Optional[str]) -> Dict[str, Any]:
        if not api_key:
            return self._unhealthy(kind, "No API key configured")
        started = time.perf_counter()
        adapter: Optional[BaseProvider] = None
        try:
            config = ProviderConfig(
                provider=kind,
                model=self._default_models.get(kind.value, "test"),
                api_key=api_key,
                timeout=10.0,
                max_retries=0,
            )
            adapter = factory(config)
            return await adapter.health_check()
        except AIError as e:
            return self._unhealthy(kind, e.message, started, adapter)
        except Exception as e:
            logger.error(f"Health check for {kind.value} crashed: {sanitize_error_for_logging(e)}")
            return self._unhealthy(kind, sanitize_error_for_logging(e)["message"], started, adapter)
        finally:
            if adapter is not None:
                await adapter.aclose()

    async def health_check_all(self, credentials: Optional[Mapping[str, str]] = None) -> Dict[str, Dict[str, Any]]:
        """Probe every registered provider with a throwaway instance.

        Never raises; failures are reported in the per-provider record.

        Args:
            credentials: API key per provider id; providers without one are
                reported unhealthy without any network call.

        Returns:
            ``{provider: {provider, healthy, latency_ms, capabilities, error?}}``.
        """
        credentials = credentials or {}
        with self._lock:
            factories = list(self._factories.items())
        results = await asyncio.gather(*[
            self._check_one(kind, factory, credentials.get(kind.value))
            for kind, factory in factories
        ])
        return {result["provider"]: result for result in results}
