"""Tests for settings, provider profiles and the runtime context."""

import json

import pytest

from conftest import ANTHROPIC_KEY, ENV_VARS, OPENAI_KEY
from unified_ai.cache import LocalCache
from unified_ai.config import Settings
from unified_ai.context import AIContext
from unified_ai.errors import AuthenticationError
from unified_ai.profiles import Capability, ProfileTable, default_profile
from unified_ai.providers import ProviderKind


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ENV_VARS:
            monkeypatch.delenv(name, raising=False)
        settings = Settings()

        assert settings.request_timeout == 60.0
        assert settings.max_retries == 3
        assert settings.retry_jitter is True
        assert settings.circuit_failure_threshold == 5
        assert settings.cache_ttl == 3600
        assert settings.credentials() == {}

    def test_blank_values_are_unset(self, monkeypatch):
        for name in ENV_VARS:
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("OPENAI_API_KEY", "   ")
        monkeypatch.setenv("ANTHROPIC_API_KEY", ANTHROPIC_KEY)

        assert Settings().credentials() == {"anthropic": ANTHROPIC_KEY}

    def test_overrides(self, settings):
        assert settings.max_retries == 2
        assert settings.retry_jitter is False
        assert settings.retry_base_delay == 0.001
        assert set(settings.credentials()) == {"openai", "anthropic", "google"}

    def test_repr_hides_credentials(self, settings):
        settings.redis_url = "redis://:password@localhost:6379/0"
        text = repr(settings)

        assert OPENAI_KEY not in text
        assert "password" not in text
        assert "anthropic, google, openai" in text


class TestProfiles:
    def test_default_table(self):
        table = ProfileTable()

        assert sorted(table) == ["anthropic", "google", "openai"]
        assert "openai" in table
        assert table["anthropic"].privacy_tier == "private"
        assert table.get("mistral") is None
        with pytest.raises(KeyError):
            table["mistral"]

    def test_capabilities(self):
        assert default_profile("openai").supports(Capability.JSON_MODE)
        assert not default_profile("anthropic").supports("json_mode")
        assert not default_profile("google").supports(Capability.SYSTEM_MESSAGES)

    def test_pricing_tolerates_dated_suffix(self):
        profile = default_profile("openai")

        assert profile.pricing_for("gpt-4o-2024-08-06") == profile.models["gpt-4o"]
        assert profile.pricing_for("gpt-4o-mini-2024-07-18") == profile.models["gpt-4o-mini"]
        assert profile.pricing_for("gpt-3.5-turbo-16k") == profile.models["gpt-3.5-turbo-16k"]
        assert profile.pricing_for("o1-preview") is None
        assert profile.pricing_for(None) == profile.price_per_k_tokens

    def test_context_limits(self):
        profile = default_profile("openai")

        assert profile.context_limit_for("gpt-4") == 8192
        assert profile.context_limit_for("gpt-4o") == 128000

    def test_profiles_are_immutable(self):
        with pytest.raises(Exception):
            default_profile("openai").quality_score = 10

    def test_json_override_and_reload(self, tmp_path):
        path = tmp_path / "profiles.json"
        path.write_text(json.dumps({"google": {"quality_score": 99, "privacy_tier": "hipaa"}}))

        table = ProfileTable(path=path)
        assert table["google"].quality_score == 99
        assert table["google"].default_model == "gemini-1.5-pro"
        assert table["openai"].quality_score == 90

        path.write_text(json.dumps({"openai": {"avg_latency_ms": 100}}))
        table.reload()
        assert table["google"].quality_score == 85
        assert table["openai"].avg_latency_ms == 100


class TestContext:
    @pytest.mark.asyncio
    async def test_available_providers(self, context):
        assert context.available_providers() == ["openai", "anthropic", "google"]

    @pytest.mark.asyncio
    async def test_provider_config(self, context):
        config = context.provider_config("anthropic")

        assert config.provider == ProviderKind.ANTHROPIC
        assert config.model == "claude-3-5-sonnet-20241022"
        assert config.api_key == ANTHROPIC_KEY
        assert config.timeout == 5.0
        assert config.max_retries == 2
        assert context.provider_config("openai", "gpt-4o-mini").model == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_missing_credentials(self, monkeypatch, fake_providers):
        for name in ENV_VARS:
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("OPENAI_API_KEY", OPENAI_KEY)
        context = AIContext.from_settings(Settings(), transport=fake_providers.transport, cache=LocalCache())

        assert context.available_providers() == ["openai"]
        with pytest.raises(AuthenticationError):
            context.provider_config("google")
        await context.aclose()

    @pytest.mark.asyncio
    async def test_openai_organization_header(self, monkeypatch, settings, fake_providers, simple_request):
        monkeypatch.setenv("OPENAI_ORGANIZATION", "org-123")
        context = AIContext.from_settings(Settings(), transport=fake_providers.transport, cache=LocalCache())

        config = context.provider_config("openai")
        await context.registry.resolve(config).complete(simple_request)
        await context.aclose()

        assert config.extra_headers == {"OpenAI-Organization": "org-123"}
        assert fake_providers.requests[-1].headers["openai-organization"] == "org-123"

    def test_default_cache_is_local(self, settings):
        context = AIContext.from_settings(settings)
        assert isinstance(context.cache, LocalCache)
