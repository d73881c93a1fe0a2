"""Tests for the Anthropic adapter."""

import json

import httpx
import pytest

from conftest import ANTHROPIC_KEY, anthropic_body, error_response
from unified_ai.errors import AuthenticationError, ProviderError, RateLimitError, UnsupportedOperationError, ValidationError
from unified_ai.providers import AnthropicProvider, ProviderConfig, ProviderKind
from unified_ai.schemas import (
    FunctionCall,
    FunctionDefinition,
    ImageGenerationRequest,
    ImagePart,
    ImageURL,
    TextPart,
    Tool,
    ToolCall,
    UnifiedMessage,
    UnifiedRequest,
)


def make_provider(handler) -> AnthropicProvider:
    config = ProviderConfig(
        provider=ProviderKind.ANTHROPIC,
        model="claude-3-5-sonnet-20241022",
        api_key=ANTHROPIC_KEY,
    )
    return AnthropicProvider(config, transport=httpx.MockTransport(handler))


def ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json=anthropic_body())


def event_stream(events) -> str:
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events)


class TestAnthropicTranslation:
    """Unified request to Messages API payload and back."""

    def test_system_prompt_is_lifted(self, conversation_request):
        payload = make_provider(ok).build_payload(conversation_request)

        assert payload["system"] == "You are a concise geography tutor."
        assert [m["role"] for m in payload["messages"]] == ["user", "assistant", "user"]

    def test_round_trip_preserves_messages(self, conversation_request):
        provider = make_provider(ok)
        payload = provider.build_payload(conversation_request)

        assert provider.messages_from_wire(payload) == list(conversation_request.messages)

    def test_inline_image_becomes_base64_source(self, conversation_request):
        payload = make_provider(ok).build_payload(conversation_request)
        image = payload["messages"][2]["content"][1]

        assert image == {
            "type": "image",
            "source": {"type": "base64", "media_type": "image/png", "data": "iVBORw0KGgo="},
        }

    def test_remote_image_becomes_url_source(self):
        request = UnifiedRequest(messages=[UnifiedMessage(role="user", content=[
            TextPart(text="Describe"),
            ImagePart(image_url=ImageURL(url="https://example.com/cat.jpg")),
        ])])
        payload = make_provider(ok).build_payload(request)

        assert payload["messages"][0]["content"][1]["source"] == {"type": "url", "url": "https://example.com/cat.jpg"}

    def test_default_max_tokens(self, simple_request):
        payload = make_provider(ok).build_payload(simple_request)
        assert payload["max_tokens"] == 1000

    def test_stop_sequences(self, simple_request):
        payload = make_provider(ok).build_payload(simple_request.model_copy(update={"stop": "END"}))
        assert payload["stop_sequences"] == ["END"]

    def test_tools_and_tool_choice(self, simple_request):
        request = simple_request.model_copy(update={
            "tools": [Tool(function=FunctionDefinition(
                name="get_weather",
                description="Current weather",
                parameters={"type": "object", "properties": {"city": {"type": "string"}}},
            ))],
            "tool_choice": "required",
        })
        payload = make_provider(ok).build_payload(request)

        assert payload["tools"] == [{
            "name": "get_weather",
            "description": "Current weather",
            "input_schema": {"type": "object", "properties": {"city": {"type": "string"}}},
        }]
        assert payload["tool_choice"] == {"type": "any"}

    def test_tool_turns(self):
        request = UnifiedRequest(messages=[
            UnifiedMessage(role="user", content="Weather in Paris?"),
            UnifiedMessage(role="assistant", tool_calls=[ToolCall(
                id="toolu_1",
                function=FunctionCall(name="get_weather", arguments='{"city": "Paris"}'),
            )]),
            UnifiedMessage(role="tool", content="18C and sunny", tool_call_id="toolu_1"),
        ])
        payload = make_provider(ok).build_payload(request)
        assistant, tool_result = payload["messages"][1], payload["messages"][2]

        assert assistant["content"] == [
            {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Paris"}},
        ]
        assert tool_result == {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "18C and sunny"}],
        }


class TestAnthropicComplete:
    """Non-streaming completions."""

    @pytest.mark.asyncio
    async def test_complete_success(self, simple_request):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return ok(request)

        provider = make_provider(handler)
        response = await provider.complete(simple_request)

        assert response.content == "The capital of France is Paris."
        assert response.provider == "anthropic"
        assert response.choices[0].finish_reason == "stop"
        assert response.usage.prompt_tokens == 12
        assert response.usage.completion_tokens == 9
        assert response.usage.total_tokens == 21
        assert seen[0].url.path == "/v1/messages"
        assert seen[0].headers["x-api-key"] == ANTHROPIC_KEY
        assert seen[0].headers["anthropic-version"] == "2023-06-01"

    @pytest.mark.asyncio
    async def test_tool_use_response(self, simple_request):
        body = anthropic_body()
        body["content"] = [
            {"type": "text", "text": "Let me check."},
            {"type": "tool_use", "id": "toolu_9", "name": "get_weather", "input": {"city": "Paris"}},
        ]
        body["stop_reason"] = "tool_use"
        provider = make_provider(lambda r: httpx.Response(200, json=body))

        response = await provider.complete(simple_request)
        message = response.choices[0].message

        assert message.text() == "Let me check."
        assert message.tool_calls[0].id == "toolu_9"
        assert json.loads(message.tool_calls[0].function.arguments) == {"city": "Paris"}
        assert response.choices[0].finish_reason == "tool_calls"

    @pytest.mark.asyncio
    async def test_max_tokens_stop_reason(self, simple_request):
        body = anthropic_body()
        body["stop_reason"] = "max_tokens"
        provider = make_provider(lambda r: httpx.Response(200, json=body))

        response = await provider.complete(simple_request)
        assert response.choices[0].finish_reason == "length"

    @pytest.mark.asyncio
    async def test_temperature_above_one_rejected(self, simple_request):
        provider = make_provider(ok)

        with pytest.raises(ValidationError) as exc_info:
            await provider.complete(simple_request.model_copy(update={"temperature": 1.5}))
        assert exc_info.value.field == "temperature"
        assert exc_info.value.provider == "anthropic"

    @pytest.mark.asyncio
    async def test_max_tokens_limit(self, simple_request):
        provider = make_provider(ok)

        with pytest.raises(ValidationError) as exc_info:
            await provider.complete(simple_request.model_copy(update={"max_tokens": 5000}))
        assert exc_info.value.field == "max_tokens"

    @pytest.mark.asyncio
    async def test_image_generation_unsupported(self):
        with pytest.raises(UnsupportedOperationError):
            await make_provider(ok).generate_images(ImageGenerationRequest(prompt="a fox"))


class TestAnthropicErrors:
    """Error mapping."""

    @pytest.mark.asyncio
    async def test_forbidden_is_authentication_error(self, simple_request):
        provider = make_provider(lambda r: error_response(403, "permission denied"))

        with pytest.raises(AuthenticationError):
            await provider.complete(simple_request)

    @pytest.mark.asyncio
    async def test_rate_limit_carries_request_id(self, simple_request):
        provider = make_provider(
            lambda r: error_response(429, "Too many requests", {"retry-after": "5", "request-id": "req_abc"})
        )

        with pytest.raises(RateLimitError) as exc_info:
            await provider.complete(simple_request)
        assert exc_info.value.retry_after == 5.0
        assert exc_info.value.request_id == "req_abc"
        assert exc_info.value.limit_type == "requests"

    @pytest.mark.asyncio
    async def test_overloaded_is_server_error(self, simple_request):
        provider = make_provider(lambda r: error_response(529, "Overloaded"))

        with pytest.raises(ProviderError) as exc_info:
            await provider.complete(simple_request)
        assert exc_info.value.retryable is True
        assert exc_info.value.provider_message == "Overloaded"


class TestAnthropicStreaming:
    """Typed SSE events."""

    @pytest.mark.asyncio
    async def test_text_stream(self, simple_request):
        body = event_stream([
            {"type": "message_start", "message": {
                "id": "msg_1", "model": "claude-3-5-sonnet-20241022", "usage": {"input_tokens": 10}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": " there"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 4}},
            {"type": "message_stop"},
        ])
        provider = make_provider(
            lambda r: httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})
        )

        chunks = await provider.stream(simple_request).collect()

        assert chunks[0].id == "msg_1"
        assert chunks[0].choices[0].delta.role == "assistant"
        assert "".join(c.choices[0].delta.content or "" for c in chunks) == "Hi there"
        assert chunks[-1].choices[0].finish_reason == "stop"
        assert chunks[-1].usage.prompt_tokens == 10
        assert chunks[-1].usage.completion_tokens == 4

    @pytest.mark.asyncio
    async def test_tool_use_stream(self, simple_request):
        body = event_stream([
            {"type": "message_start", "message": {"id": "msg_2", "usage": {"input_tokens": 3}}},
            {"type": "content_block_start", "index": 0, "content_block": {
                "type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {}}},
            {"type": "content_block_delta", "index": 0, "delta": {
                "type": "input_json_delta", "partial_json": "{\"city\": "}},
            {"type": "content_block_delta", "index": 0, "delta": {
                "type": "input_json_delta", "partial_json": "\"Paris\"}"}},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 7}},
            {"type": "message_stop"},
        ])
        provider = make_provider(
            lambda r: httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})
        )

        chunks = await provider.stream(simple_request).collect()
        deltas = [d for c in chunks for d in (c.choices[0].delta.tool_calls or [])]

        assert deltas[0].id == "toolu_1"
        assert deltas[0].name == "get_weather"
        assert "".join(d.arguments or "" for d in deltas) == '{"city": "Paris"}'
        assert chunks[-1].choices[0].finish_reason == "tool_calls"

    @pytest.mark.asyncio
    async def test_error_event_raises(self, simple_request):
        body = event_stream([
            {"type": "message_start", "message": {"id": "msg_3"}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        ])
        provider = make_provider(
            lambda r: httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})
        )
        stream = provider.stream(simple_request)

        first = await stream.next()
        assert first.choices[0].delta.role == "assistant"
        with pytest.raises(ProviderError):
            await stream.next()


class TestAnthropicCost:
    def test_estimate_cost_uses_model_pricing(self):
        request = UnifiedRequest(messages=[UnifiedMessage(role="user", content="a" * 4000)], max_tokens=1000)
        # 1000 input tokens at $0.003/1K plus 1000 output tokens at $0.015/1K
        assert make_provider(ok).estimate_cost(request) == pytest.approx(0.018)
