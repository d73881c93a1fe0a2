"""Tests for provider scoring and selection."""

import pytest

from unified_ai.errors import NoSuitableProviderError
from unified_ai.profiles import DEFAULT_PROFILES, Capability, ProfileTable
from unified_ai.schemas import (
    Constraints,
    CrossValidationOptions,
    ImagePart,
    ImageURL,
    Requirements,
    TextPart,
    UnifiedMessage,
    UnifiedRequest,
)
from unified_ai.strategy import StrategyEngine

ALL = ["openai", "anthropic", "google"]


def request_with_words(count: int) -> UnifiedRequest:
    return UnifiedRequest(messages=[UnifiedMessage(role="user", content=" ".join(["word"] * count))])


def table_with(**overrides) -> ProfileTable:
    data = {name: dict(entry) for name, entry in DEFAULT_PROFILES.items()}
    for name, fields in overrides.items():
        data[name].update(fields)
    return ProfileTable.from_dict(data)


@pytest.fixture
def engine() -> StrategyEngine:
    return StrategyEngine(ProfileTable())


class TestComplexity:
    def test_thresholds(self):
        assert StrategyEngine.classify_complexity(request_with_words(10)) == "simple"
        assert StrategyEngine.classify_complexity(request_with_words(99)) == "simple"
        assert StrategyEngine.classify_complexity(request_with_words(100)) == "moderate"
        assert StrategyEngine.classify_complexity(request_with_words(499)) == "moderate"
        assert StrategyEngine.classify_complexity(request_with_words(500)) == "complex"


class TestRequiredCapabilities:
    def test_inferred_from_request(self, simple_request):
        request = UnifiedRequest(
            messages=[UnifiedMessage(role="user", content=[
                TextPart(text="What is this?"),
                ImagePart(image_url=ImageURL(url="https://example.com/a.png")),
            ])],
            stream=True,
        )
        required = StrategyEngine.required_capabilities(request)

        assert required == {Capability.CHAT, Capability.VISION, Capability.STREAMING}
        assert StrategyEngine.required_capabilities(simple_request) == {Capability.CHAT}

    def test_explicit_requirements(self, simple_request):
        required = StrategyEngine.required_capabilities(simple_request, Requirements(json_mode=True, tools=True))
        assert {Capability.JSON_MODE, Capability.TOOLS} <= required


class TestRanking:
    def test_cost_optimized_prefers_cheaper_provider(self, simple_request):
        engine = StrategyEngine(table_with(
            openai={"cost_per_token": 0.01},
            google={"cost_per_token": 0.001},
        ))
        plan = engine.plan(simple_request, ["openai", "google"], strategy="cost_optimized")

        assert [c.provider for c in plan.rankings] == ["google", "openai"]
        assert plan.primary.final_score == pytest.approx(90.0)
        assert plan.fallbacks[0].final_score == pytest.approx(0.0)

    def test_balanced_ordering(self, engine, simple_request):
        plan = engine.plan(simple_request, ALL, strategy="balanced")
        # google 84.25, openai 81, anthropic 80
        assert [c.provider for c in plan.rankings] == ["google", "openai", "anthropic"]

    def test_performance_uses_latency(self, engine, simple_request):
        plan = engine.plan(simple_request, ALL, strategy="performance")
        assert [c.provider for c in plan.rankings] == ["google", "openai", "anthropic"]

    def test_privacy_first(self, engine, simple_request):
        plan = engine.plan(simple_request, ALL, strategy="privacy_first")
        assert plan.primary.provider == "anthropic"
        assert plan.primary.final_score == 80.0

    def test_preferred_provider_always_first(self, simple_request):
        engine = StrategyEngine(table_with(anthropic={"cost_per_token": 0.009}))
        plan = engine.plan(
            simple_request,
            ALL,
            strategy="cost_optimized",
            constraints=Constraints(preferred_providers=["anthropic"]),
        )

        assert plan.primary.provider == "anthropic"
        assert plan.primary.preferred is True
        assert plan.primary.final_score < plan.fallbacks[0].final_score

    def test_scores_are_clamped(self):
        profile = ProfileTable().get("google")
        assert StrategyEngine.score(profile, "cost_optimized", preferred=True) == 100.0

    def test_model_follows_request_when_known(self, engine):
        request = UnifiedRequest(
            messages=[UnifiedMessage(role="user", content="hi")],
            model="gpt-4o-mini",
        )
        models = {c.provider: c.model for c in engine.rank(request, ALL)}

        assert models["openai"] == "gpt-4o-mini"
        assert models["anthropic"] == "claude-3-5-sonnet-20241022"
        assert models["google"] == "gemini-1.5-pro"


class TestFiltering:
    def test_missing_capability_excluded(self, engine, simple_request):
        plan = engine.plan(simple_request, ALL, requirements=Requirements(json_mode=True))

        assert "anthropic" not in [c.provider for c in plan.rankings]
        assert "json_mode" in plan.rejected["anthropic"]

    def test_system_messages_requirement(self, engine, simple_request):
        plan = engine.plan(simple_request, ALL, requirements=Requirements(system_messages=True))
        assert "google" not in [c.provider for c in plan.rankings]

    def test_excluded_providers(self, engine, simple_request):
        plan = engine.plan(simple_request, ALL, constraints=Constraints(exclude_providers=["google"]))
        assert [c.provider for c in plan.rankings] == ["openai", "anthropic"]

    def test_max_cost_per_thousand_tokens(self, engine, simple_request):
        plan = engine.plan(simple_request, ALL, constraints=Constraints(max_cost=2.0))
        assert [c.provider for c in plan.rankings] == ["google"]

    def test_preferred_bypasses_soft_limits(self, engine, simple_request):
        plan = engine.plan(
            simple_request,
            ALL,
            constraints=Constraints(max_cost=2.0, preferred_providers=["openai"]),
        )
        assert [c.provider for c in plan.rankings] == ["openai", "google"]

    def test_min_quality_and_max_latency(self, engine, simple_request):
        plan = engine.plan(simple_request, ALL, constraints=Constraints(min_quality=88, max_latency=2800))
        assert [c.provider for c in plan.rankings] == ["openai"]

    def test_private_requires_private_tier(self, engine, simple_request):
        plan = engine.plan(simple_request, ALL, constraints=Constraints(privacy_level="private"))
        assert [c.provider for c in plan.rankings] == ["anthropic"]

    def test_hipaa_without_hipaa_provider(self, engine, simple_request):
        with pytest.raises(NoSuitableProviderError) as exc_info:
            engine.plan(simple_request, ALL, constraints=Constraints(privacy_level="hipaa"))
        assert set(exc_info.value.details["rejected"]) == set(ALL)

    def test_no_providers(self, engine, simple_request):
        with pytest.raises(NoSuitableProviderError):
            engine.plan(simple_request, [])

    def test_unknown_strategy(self, engine, simple_request):
        with pytest.raises(ValueError):
            engine.plan(simple_request, ALL, strategy="fastest")


class TestCrossValidationDecision:
    def test_enabled_for_complex_requests(self, engine):
        assert engine.plan(request_with_words(600), ALL).cross_validation_enabled is True
        assert engine.plan(request_with_words(20), ALL).cross_validation_enabled is False

    def test_explicit_setting_wins(self, engine):
        plan = engine.plan(request_with_words(600), ALL, cross_validation=CrossValidationOptions(enabled=False))
        assert plan.cross_validation_enabled is False

        plan = engine.plan(request_with_words(5), ALL, cross_validation=CrossValidationOptions(enabled=True))
        assert plan.cross_validation_enabled is True

    def test_needs_a_second_candidate(self, engine, simple_request):
        plan = engine.plan(simple_request, ["openai"], cross_validation=CrossValidationOptions(enabled=True))
        assert plan.cross_validation_enabled is False
