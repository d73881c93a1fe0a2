"""Strategy-based provider scoring and selection.

The engine filters the available providers against a request's capability
requirements and constraints, scores the survivors for the chosen strategy
and returns them ranked: the first is the primary, the rest the fallback
chain. Profiles supply every number used here, so rankings change when the
profile table is reloaded.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set

from .errors import NoSuitableProviderError
from .profiles import Capability, ProfileTable, ProviderProfile
from .schemas import Constraints, CrossValidationOptions, Requirements, Strategy, UnifiedRequest

logger = logging.getLogger(__name__)

SIMPLE_WORD_LIMIT = 100
MODERATE_WORD_LIMIT = 500
PREFERRED_BONUS = 20.0

PRIVACY_SCORES = {"hipaa": 100.0, "private": 80.0, "public": 60.0}
PRIVACY_RANK = {"public": 0, "private": 1, "hipaa": 2}

STRATEGIES = ("cost_optimized", "performance", "privacy_first", "balanced")


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def cost_score(cost_per_token: float) -> float:
    return _clamp(100 - cost_per_token * 10000)


def latency_score(avg_latency_ms: float) -> float:
    return _clamp(100 - avg_latency_ms / 100)


@dataclass(frozen=True)
class RankedCandidate:
    """One eligible provider with its score for the current request."""

    provider: str
    model: str
    cost_per_token: float
    avg_latency: float
    quality_score: float
    privacy_tier: str
    final_score: float
    preferred: bool = False


@dataclass
class ExecutionPlan:
    """Ranked candidates plus the decisions derived from the request."""

    strategy: str
    complexity: str
    required_capabilities: Set[Capability]
    rankings: List[RankedCandidate]
    cross_validation_enabled: bool = False
    rejected: Dict[str, str] = field(default_factory=dict)

    @property
    def primary(self) -> RankedCandidate:
        return self.rankings[0]

    @property
    def fallbacks(self) -> List[RankedCandidate]:
        return self.rankings[1:]


class StrategyEngine:
    """Scores providers for a request and picks primary and fallbacks."""

    def __init__(self, profiles: ProfileTable):
        self.profiles = profiles

    @staticmethod
    def classify_complexity(request: UnifiedRequest) -> str:
        """Classify by total word count: simple (<100), moderate (<500) or complex."""
        words = sum(len(message.text().split()) for message in request.messages)
        if words < SIMPLE_WORD_LIMIT:
            return "simple"
        if words < MODERATE_WORD_LIMIT:
            return "moderate"
        return "complex"

    @staticmethod
    def required_capabilities(
        request: UnifiedRequest,
        requirements: Optional[Requirements] = None,
    ) -> Set[Capability]:
        """Capabilities implied by the request plus explicit requirements."""
        required = {Capability.CHAT}
        requirements = requirements or Requirements()
        if requirements.vision or any(message.has_images() for message in request.messages):
            required.add(Capability.VISION)
        if requirements.tools or request.tools:
            required.add(Capability.TOOLS)
        if requirements.streaming or request.stream:
            required.add(Capability.STREAMING)
        if requirements.json_mode:
            required.add(Capability.JSON_MODE)
        if requirements.system_messages:
            required.add(Capability.SYSTEM_MESSAGES)
        return required

    @staticmethod
    def score(profile: ProviderProfile, strategy: str, preferred: bool = False) -> float:
        """Score a profile in ``[0, 100]`` for ``strategy``."""
        if strategy == "cost_optimized":
            raw = cost_score(profile.cost_per_token)
        elif strategy == "performance":
            raw = latency_score(profile.avg_latency_ms)
        elif strategy == "privacy_first":
            raw = PRIVACY_SCORES.get(profile.privacy_tier, PRIVACY_SCORES["public"])
        else:
            raw = (
                0.4 * profile.quality_score
                + 0.3 * (100 - profile.cost_per_token * 10000)
                + 0.3 * (100 - profile.avg_latency_ms / 100)
            )
        if preferred:
            raw += PREFERRED_BONUS
        return _clamp(raw)

    def _rejection(
        self,
        name: str,
        profile: ProviderProfile,
        required: Set[Capability],
        constraints: Constraints,
        preferred: bool,
    ) -> Optional[str]:
        missing = required - set(profile.capabilities)
        if missing:
            return f"missing capabilities: {', '.join(sorted(c.value for c in missing))}"
        if name in constraints.exclude_providers:
            return "excluded"
        if constraints.privacy_level == "hipaa" and profile.privacy_tier != "hipaa":
            return f"privacy tier {profile.privacy_tier} is not hipaa"
        if constraints.privacy_level == "private" and PRIVACY_RANK.get(profile.privacy_tier, 0) < PRIVACY_RANK["private"]:
            return f"privacy tier {profile.privacy_tier} is below private"
        if preferred:
            return None
        if constraints.max_cost is not None and profile.cost_per_token * 1000 > constraints.max_cost:
            return "exceeds max_cost"
        if constraints.max_latency is not None and profile.avg_latency_ms > constraints.max_latency:
            return "exceeds max_latency"
        if constraints.min_quality is not None and profile.quality_score < constraints.min_quality:
            return "below min_quality"
        return None

    def _model_for(self, profile: ProviderProfile, request: UnifiedRequest, models: Mapping[str, str]) -> str:
        if request.model and profile.pricing_for(request.model) is not None:
            return request.model
        return models.get(profile.provider) or profile.default_model

    def rank(
        self,
        request: UnifiedRequest,
        providers: Iterable[str],
        strategy: Strategy = "balanced",
        requirements: Optional[Requirements] = None,
        constraints: Optional[Constraints] = None,
        models: Optional[Mapping[str, str]] = None,
        rejected: Optional[Dict[str, str]] = None,
    ) -> List[RankedCandidate]:
        """Filter and score ``providers``, best first.

        Preferred providers always sort ahead of non-preferred ones; within
        each group the order is by descending score.
        """
        constraints = constraints or Constraints()
        models = models or {}
        required = self.required_capabilities(request, requirements)
        preferred_set = set(constraints.preferred_providers)
        candidates: List[RankedCandidate] = []

        for name in providers:
            profile = self.profiles.get(name)
            if profile is None:
                if rejected is not None:
                    rejected[name] = "no profile"
                continue
            preferred = name in preferred_set
            reason = self._rejection(name, profile, required, constraints, preferred)
            if reason is not None:
                logger.debug(f"Provider {name} rejected: {reason}")
                if rejected is not None:
                    rejected[name] = reason
                continue
            candidates.append(RankedCandidate(
                provider=name,
                model=self._model_for(profile, request, models),
                cost_per_token=profile.cost_per_token,
                avg_latency=profile.avg_latency_ms,
                quality_score=profile.quality_score,
                privacy_tier=profile.privacy_tier,
                final_score=self.score(profile, strategy, preferred),
                preferred=preferred,
            ))

        candidates.sort(key=lambda c: (c.preferred, c.final_score), reverse=True)
        return candidates

    def plan(
        self,
        request: UnifiedRequest,
        providers: Iterable[str],
        strategy: Strategy = "balanced",
        requirements: Optional[Requirements] = None,
        constraints: Optional[Constraints] = None,
        cross_validation: Optional[CrossValidationOptions] = None,
        models: Optional[Mapping[str, str]] = None,
    ) -> ExecutionPlan:
        """Build the execution plan for ``request``.

        Raises:
            NoSuitableProviderError: If no provider survives filtering.
        """
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown strategy: {strategy}")
        providers = list(providers)
        rejected: Dict[str, str] = {}
        rankings = self.rank(request, providers, strategy, requirements, constraints, models, rejected)
        complexity = self.classify_complexity(request)

        if not rankings:
            raise NoSuitableProviderError(
                f"No provider satisfies the request (strategy={strategy}, considered={providers or 'none'})",
                details={"rejected": rejected, "strategy": strategy},
            )

        enabled = cross_validation.enabled if cross_validation else None
        if enabled is None:
            enabled = complexity == "complex"

        plan = ExecutionPlan(
            strategy=strategy,
            complexity=complexity,
            required_capabilities=self.required_capabilities(request, requirements),
            rankings=rankings,
            cross_validation_enabled=bool(enabled) and len(rankings) > 1,
            rejected=rejected,
        )
        logger.info(
            f"Selected {plan.primary.provider}/{plan.primary.model} "
            f"(strategy={strategy}, complexity={complexity}, "
            f"fallbacks={[c.provider for c in plan.fallbacks]})"
        )
        return plan
