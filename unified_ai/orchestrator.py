"""Request orchestration across providers.

The orchestrator answers a request by consulting the response cache, asking
the strategy engine for a ranked candidate chain, and calling candidates in
order until one succeeds. Successful answers are enriched with routing, cost,
confidence and performance metadata before being cached.
"""

import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Dict, List, Optional, Tuple

import pydantic

from .cache import generate_cache_key
from .context import AIContext
from .errors import AIError, AllProvidersFailedError, NoSuitableProviderError, blocks_fallback
from .providers.base import ProviderConfig
from .schemas import (
    ConfidenceInfo,
    Constraints,
    CostInfo,
    CrossValidationOptions,
    OrchestratedResponse,
    OrchestrationInfo,
    PerformanceInfo,
    Requirements,
    Strategy,
    UnifiedRequest,
    UnifiedResponse,
    UnifiedStreamChunk,
)
from .strategy import STRATEGIES, ExecutionPlan, latency_score
from .streaming import ChunkStream

logger = logging.getLogger(__name__)

_WORD_PATTERN = re.compile(r"\w+")

# A chain entry: provider id and the config used to resolve its adapter
ChainEntry = Tuple[str, ProviderConfig]


@dataclass
class RequestOptions:
    """Per-request routing options.

    Attributes:
        provider: Explicit provider config; it becomes the primary and the
            strategy only supplies fallbacks.
        strategy: Selection strategy name; ``None`` uses the configured
            default strategy.
        requirements: Capabilities the provider must offer.
        constraints: Selection constraints.
        cross_validation: Second-opinion settings; ``enabled=None`` defers to
            request complexity.
        enable_auto_retry: Retry retryable failures within a provider.
        enable_fallback: Move to the next candidate when a provider fails.
        use_cache: Read and write the response cache.
    """

    provider: Optional[ProviderConfig] = None
    strategy: Optional[Strategy] = None
    requirements: Requirements = field(default_factory=Requirements)
    constraints: Constraints = field(default_factory=Constraints)
    cross_validation: CrossValidationOptions = field(default_factory=CrossValidationOptions)
    enable_auto_retry: bool = True
    enable_fallback: bool = True
    use_cache: bool = True


def word_set(text: str) -> set:
    return {word.lower() for word in _WORD_PATTERN.findall(text)}


def agreement_score(first: str, second: str) -> float:
    """Jaccard similarity of the two texts' word sets, scaled to 0-100."""
    a, b = word_set(first), word_set(second)
    if not a and not b:
        return 100.0
    return round(100.0 * len(a & b) / len(a | b), 2)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class AIOrchestrator:
    """Routes requests across providers with caching and fallback."""

    def __init__(self, context: AIContext):
        self.context = context

    def resolve_options(self, options: Optional[RequestOptions] = None) -> RequestOptions:
        """Fill in the configured default strategy.

        Raises:
            ValueError: If the strategy is not a known strategy name.
        """
        options = options or RequestOptions()
        strategy = options.strategy or self.context.settings.default_strategy
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown strategy: {strategy}")
        if strategy == options.strategy:
            return options
        return replace(options, strategy=strategy)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def cache_key(self, request: UnifiedRequest, options: RequestOptions) -> str:
        """Content hash of everything that can change the answer."""
        options = self.resolve_options(options)
        parameters = request.model_dump(
            mode="json",
            exclude={"messages", "stream"},
            exclude_none=True,
        )
        if options.provider is not None:
            parameters["provider"] = list(options.provider.cache_key)
        return generate_cache_key(
            [message.model_dump(mode="json", exclude_none=True) for message in request.messages],
            options.strategy,
            options.requirements.model_dump(mode="json"),
            options.constraints.model_dump(mode="json"),
            parameters,
        )

    def plan(
        self,
        request: UnifiedRequest,
        options: RequestOptions,
    ) -> Tuple[Optional[ExecutionPlan], List[ChainEntry]]:
        """Build the ordered candidate chain for ``request``.

        Raises:
            NoSuitableProviderError: If no provider is eligible and no
                explicit provider was given.
        """
        options = self.resolve_options(options)
        providers = self.context.available_providers()

        if options.provider is not None:
            explicit = options.provider.provider.value
            chain: List[ChainEntry] = [(explicit, options.provider)]
            plan = None
            try:
                plan = self.context.engine.plan(
                    request,
                    [name for name in providers if name != explicit],
                    options.strategy,
                    options.requirements,
                    options.constraints,
                    options.cross_validation,
                )
            except NoSuitableProviderError:
                logger.debug(f"No fallbacks available for explicit provider {explicit}")
            if plan is not None and options.enable_fallback:
                chain.extend(
                    (candidate.provider, self.context.provider_config(candidate.provider, candidate.model))
                    for candidate in plan.rankings
                )
            return plan, chain

        plan = self.context.engine.plan(
            request,
            providers,
            options.strategy,
            options.requirements,
            options.constraints,
            options.cross_validation,
        )
        rankings = plan.rankings if options.enable_fallback else plan.rankings[:1]
        chain = [
            (candidate.provider, self.context.provider_config(candidate.provider, candidate.model))
            for candidate in rankings
        ]
        return plan, chain

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def execute(
        self,
        request: UnifiedRequest,
        options: Optional[RequestOptions] = None,
    ) -> OrchestratedResponse:
        """Answer ``request`` through the best available provider.

        Returns:
            The enriched response; ``orchestration.cache_hit`` is True when it
            was served from the cache without any provider call.

        Raises:
            AuthenticationError: Credentials were rejected; never falls back.
            ValidationError: The request is malformed; never falls back.
            NoSuitableProviderError: No provider satisfies the request.
            AllProvidersFailedError: Every candidate failed.
        """
        options = self.resolve_options(options)
        started = time.perf_counter()
        cache = self.context.cache

        key = None
        if options.use_cache and cache.enabled:
            key = self.cache_key(request, options)
            cached = await cache.get(key)
            if cached is not None:
                try:
                    response = OrchestratedResponse.model_validate(cached)
                except pydantic.ValidationError as e:
                    logger.warning(f"Ignoring unreadable cache entry {key}: {e.error_count()} errors")
                else:
                    logger.info(f"Cache hit for {key}")
                    orchestration = response.orchestration.model_copy(update={
                        "cache_hit": True,
                        "processing_time_ms": _elapsed_ms(started),
                    })
                    return response.model_copy(update={"orchestration": orchestration})

        plan, chain = self.plan(request, options)
        errors: Dict[str, Exception] = {}
        latencies: Dict[str, float] = {}
        providers_used: List[str] = []
        response: Optional[UnifiedResponse] = None
        winner: Optional[ChainEntry] = None

        for name, config in chain:
            adapter = self.context.registry.resolve(config)
            providers_used.append(name)
            call_started = time.perf_counter()
            try:
                response = await adapter.complete(
                    request.model_copy(update={"model": config.model}),
                    retry=options.enable_auto_retry,
                )
            except AIError as e:
                latencies[name] = _elapsed_ms(call_started)
                errors[name] = e
                if blocks_fallback(e):
                    logger.error(f"Provider {name} rejected the request: {e.message}")
                    raise
                logger.warning(f"Provider {name} failed ({e.code}): {e.message}")
                continue
            latencies[name] = _elapsed_ms(call_started)
            winner = (name, config)
            break

        if response is None or winner is None:
            primary = chain[0][0]
            raise AllProvidersFailedError(primary, [name for name, _ in chain[1:]], errors)

        breakdown: Dict[str, float] = {winner[0]: response.usage.estimated_cost}
        agreement = None
        if plan is not None and plan.cross_validation_enabled:
            agreement = await self._cross_validate(
                request, response, plan, options, providers_used, breakdown, latencies,
            )

        result = self._enrich(
            request,
            response,
            options,
            plan,
            winner,
            providers_used,
            breakdown,
            latencies,
            agreement,
            started,
        )
        if key is not None:
            await cache.set(key, result.model_dump(mode="json"))
        return result

    async def _cross_validate(
        self,
        request: UnifiedRequest,
        response: UnifiedResponse,
        plan: ExecutionPlan,
        options: RequestOptions,
        providers_used: List[str],
        breakdown: Dict[str, float],
        latencies: Dict[str, float],
    ) -> Optional[float]:
        """Ask one more provider and score word-level agreement.

        A failing validator never fails the request; it only leaves the
        agreement unset.
        """
        validator = next((c for c in plan.rankings if c.provider not in providers_used), None)
        if validator is None:
            return None

        started = time.perf_counter()
        providers_used.append(validator.provider)
        try:
            config = self.context.provider_config(validator.provider, validator.model)
            second = await self.context.registry.resolve(config).complete(
                request.model_copy(update={"model": validator.model}),
                retry=options.enable_auto_retry,
            )
        except AIError as e:
            latencies[validator.provider] = _elapsed_ms(started)
            logger.warning(f"Cross-validation with {validator.provider} failed: {e.message}")
            return None

        latencies[validator.provider] = _elapsed_ms(started)
        breakdown[validator.provider] = second.usage.estimated_cost
        agreement = agreement_score(response.content, second.content)
        if agreement < options.cross_validation.threshold * 100:
            logger.warning(
                f"Low agreement between {response.provider} and {validator.provider}: {agreement}"
            )
        return agreement

    def _candidate_estimates(self, request: UnifiedRequest, plan: Optional[ExecutionPlan]) -> Dict[str, float]:
        estimates: Dict[str, float] = {}
        if plan is None:
            return estimates
        for candidate in plan.rankings:
            profile = self.context.profiles.get(candidate.provider)
            pricing = profile.pricing_for(candidate.model) if profile else None
            if pricing is None:
                continue
            input_tokens = -(-request.text_length() // 4)
            output_tokens = request.max_tokens or 1000
            estimates[candidate.provider] = (
                input_tokens / 1000 * pricing.input + output_tokens / 1000 * pricing.output
            )
        return estimates

    def _enrich(
        self,
        request: UnifiedRequest,
        response: UnifiedResponse,
        options: RequestOptions,
        plan: Optional[ExecutionPlan],
        winner: ChainEntry,
        providers_used: List[str],
        breakdown: Dict[str, float],
        latencies: Dict[str, float],
        agreement: Optional[float],
        started: float,
    ) -> OrchestratedResponse:
        name, config = winner
        latency_ms = latencies.get(name, 0.0)

        adapter = self.context.registry.resolve(config)
        estimates = self._candidate_estimates(request, plan)
        selected = adapter.estimate_cost(request.model_copy(update={"model": config.model}))
        reference = max(list(estimates.values()) + [selected])
        savings = max(0.0, reference - selected)
        efficiency = round(100.0 * savings / reference, 2) if reference > 0 else 100.0

        profile = self.context.profiles.get(name)
        quality = profile.quality_score if profile else 0.0
        speed = latency_score(latency_ms)
        parts = [quality, speed, efficiency]
        if agreement is not None:
            parts.append(agreement)

        seconds = latency_ms / 1000
        tokens_per_second = round(response.usage.completion_tokens / seconds, 2) if seconds > 0 else 0.0

        return OrchestratedResponse(
            **response.model_dump(),
            orchestration=OrchestrationInfo(
                strategy=options.strategy,
                providers_used=providers_used,
                fallbacks_triggered=providers_used.index(name) > 0,
                cache_hit=False,
                processing_time_ms=_elapsed_ms(started),
            ),
            confidence=ConfidenceInfo(
                overall=round(sum(parts) / len(parts), 2),
                provider_agreement=agreement,
                cost_efficiency=efficiency,
                latency_score=round(speed, 2),
                quality_score=quality,
            ),
            cost=CostInfo(
                total=sum(breakdown.values()),
                breakdown=breakdown,
                savings=savings,
                efficiency=efficiency,
            ),
            performance=PerformanceInfo(
                latency_ms=latency_ms,
                tokens_per_second=tokens_per_second,
                provider_latencies=latencies,
            ),
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def stream(self, request: UnifiedRequest, options: Optional[RequestOptions] = None) -> ChunkStream:
        """Stream ``request`` through the best available provider.

        Falls back to the next candidate only while no chunk has been
        delivered; once output has started, a failure ends the stream.
        Streams bypass the response cache.

        Raises:
            NoSuitableProviderError: If no provider satisfies the request.
        """
        options = self.resolve_options(options)
        request = request.model_copy(update={"stream": True})
        _, chain = self.plan(request, options)
        return ChunkStream(self._stream_with_fallback(request, chain), provider=chain[0][0])

    async def _stream_with_fallback(
        self,
        request: UnifiedRequest,
        chain: List[ChainEntry],
    ) -> AsyncIterator[UnifiedStreamChunk]:
        errors: Dict[str, Exception] = {}
        for name, config in chain:
            adapter = self.context.registry.resolve(config)
            stream: Optional[ChunkStream] = None
            try:
                stream = adapter.stream(request.model_copy(update={"model": config.model}))
                first = await stream.__anext__()
            except StopAsyncIteration:
                return
            except AIError as e:
                if stream is not None:
                    await stream.aclose()
                errors[name] = e
                if blocks_fallback(e):
                    raise
                logger.warning(f"Stream from {name} failed before first chunk ({e.code}): {e.message}")
                continue

            try:
                yield first
                async for chunk in stream:
                    yield chunk
            finally:
                await stream.aclose()
            return

        raise AllProvidersFailedError(chain[0][0], [name for name, _ in chain[1:]], errors)

    def estimate_cost(self, request: UnifiedRequest, options: Optional[RequestOptions] = None) -> float:
        """Estimated USD cost of ``request`` on the provider that would serve it."""
        options = self.resolve_options(options)
        _, chain = self.plan(request, options)
        _, config = chain[0]
        adapter = self.context.registry.resolve(config)
        return adapter.estimate_cost(request.model_copy(update={"model": config.model}))
