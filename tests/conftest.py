"""Pytest configuration and fixtures for unified_ai tests."""

import json
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest

from unified_ai.cache import LocalCache
from unified_ai.config import Settings
from unified_ai.context import AIContext
from unified_ai.schemas import ImagePart, ImageURL, TextPart, UnifiedMessage, UnifiedRequest


OPENAI_KEY = "sk-test-openai-0123456789"
ANTHROPIC_KEY = "sk-ant-test-0123456789"
GOOGLE_KEY = "AIzaTestGoogleKey0123456789abcdef"

HOSTS = {
    "api.openai.com": "openai",
    "api.anthropic.com": "anthropic",
    "generativelanguage.googleapis.com": "google",
}

ENV_VARS = [
    "OPENAI_API_KEY", "OPENAI_ORGANIZATION", "OPENAI_PROJECT",
    "ANTHROPIC_API_KEY", "GOOGLE_API_KEY",
    "OPENAI_BASE_URL", "ANTHROPIC_BASE_URL", "GOOGLE_BASE_URL",
    "REQUEST_TIMEOUT", "MAX_RETRIES", "RETRY_BASE_DELAY", "RETRY_MAX_DELAY",
    "RETRY_MULTIPLIER", "RETRY_JITTER", "CIRCUIT_FAILURE_THRESHOLD",
    "CIRCUIT_RECOVERY_TIMEOUT", "REDIS_URL", "CACHE_TTL", "CACHE_ENABLED",
    "PROVIDER_PROFILES_PATH", "DEFAULT_STRATEGY",
]


# ============================================================================
# Provider wire bodies
# ============================================================================

def openai_body(content: str = "Paris is the capital of France.", model: str = "gpt-4o") -> Dict[str, Any]:
    return {
        "id": "chatcmpl-123",
        "object": "chat.completion",
        "created": 1700000000,
        "model": model,
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": content},
            "finish_reason": "stop",
        }],
        "usage": {"prompt_tokens": 10, "completion_tokens": 8, "total_tokens": 18},
    }


def anthropic_body(content: str = "The capital of France is Paris.") -> Dict[str, Any]:
    return {
        "id": "msg_123",
        "type": "message",
        "role": "assistant",
        "model": "claude-3-5-sonnet-20241022",
        "content": [{"type": "text", "text": content}],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 12, "output_tokens": 9},
    }


def google_body(content: str = "Paris.") -> Dict[str, Any]:
    return {
        "candidates": [{
            "content": {"role": "model", "parts": [{"text": content}]},
            "finishReason": "STOP",
            "index": 0,
        }],
        "usageMetadata": {"promptTokenCount": 8, "candidatesTokenCount": 3, "totalTokenCount": 11},
        "modelVersion": "gemini-1.5-pro",
    }


DEFAULT_BODIES = {
    "openai": openai_body,
    "anthropic": anthropic_body,
    "google": google_body,
}


def sse(events: List[Union[Dict[str, Any], str]]) -> str:
    """Encode events as a server-sent event stream body."""
    lines = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {data}\n\n")
    return "".join(lines)


def error_response(status: int, message: str = "boom", headers: Optional[Dict[str, str]] = None) -> httpx.Response:
    return httpx.Response(status, json={"error": {"message": message}}, headers=headers)


# ============================================================================
# Fake provider backends
# ============================================================================

Reply = Callable[[httpx.Request], httpx.Response]


class FakeProviders:
    """Routes requests by host to scripted per-provider replies.

    Scripted replies are consumed first; afterwards each provider answers
    with its fallback reply (a successful completion unless overridden).
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.calls: Dict[str, int] = {name: 0 for name in DEFAULT_BODIES}
        self._scripts: Dict[str, List[Reply]] = {name: [] for name in DEFAULT_BODIES}
        self._fallback: Dict[str, Reply] = {
            name: (lambda request, body=body: httpx.Response(200, json=body()))
            for name, body in DEFAULT_BODIES.items()
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        provider = HOSTS[request.url.host]
        self.calls[provider] += 1
        self.requests.append(request)
        if self._scripts[provider]:
            return self._scripts[provider].pop(0)(request)
        return self._fallback[provider](request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    def queue(self, provider: str, reply: Reply, times: int = 1) -> None:
        self._scripts[provider].extend([reply] * times)

    def fail(self, provider: str, status: int, times: int = 1, message: str = "boom", headers=None) -> None:
        self.queue(provider, lambda request: error_response(status, message, headers), times)

    def fail_always(self, provider: str, status: int, message: str = "boom") -> None:
        self._fallback[provider] = lambda request: error_response(status, message)

    def reply_always(self, provider: str, reply: Reply) -> None:
        self._fallback[provider] = reply


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings(monkeypatch) -> Settings:
    """Settings with all three providers configured and near-instant retries."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", OPENAI_KEY)
    monkeypatch.setenv("ANTHROPIC_API_KEY", ANTHROPIC_KEY)
    monkeypatch.setenv("GOOGLE_API_KEY", GOOGLE_KEY)
    monkeypatch.setenv("MAX_RETRIES", "2")
    monkeypatch.setenv("RETRY_BASE_DELAY", "0.001")
    monkeypatch.setenv("RETRY_MAX_DELAY", "0.005")
    monkeypatch.setenv("RETRY_JITTER", "false")
    monkeypatch.setenv("REQUEST_TIMEOUT", "5")
    return Settings()


@pytest.fixture
def fake_providers() -> FakeProviders:
    return FakeProviders()


@pytest.fixture
async def context(settings, fake_providers):
    """AIContext wired to the fake backends and an in-process cache."""
    ctx = AIContext.from_settings(settings, transport=fake_providers.transport, cache=LocalCache(default_ttl=60))
    yield ctx
    await ctx.aclose()


@pytest.fixture
def simple_request() -> UnifiedRequest:
    return UnifiedRequest(messages=[UnifiedMessage(role="user", content="What is the capital of France?")])


@pytest.fixture
def conversation_request() -> UnifiedRequest:
    """System prompt, multi-turn text and an inline image."""
    return UnifiedRequest(
        messages=[
            UnifiedMessage(role="system", content="You are a concise geography tutor."),
            UnifiedMessage(role="user", content="What is the capital of France?"),
            UnifiedMessage(role="assistant", content="Paris."),
            UnifiedMessage(role="user", content=[
                TextPart(text="And which city is shown here?"),
                ImagePart(image_url=ImageURL(url="data:image/png;base64,iVBORw0KGgo=")),
            ]),
        ],
        temperature=0.5,
        max_tokens=256,
    )
