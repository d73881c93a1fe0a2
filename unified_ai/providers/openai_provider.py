"""OpenAI chat completions adapter.

The unified model is OpenAI-shaped, so translation here is mostly a
pass-through: system messages stay inline and tools are sent unchanged.
"""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx

from ..errors import ErrorKind, ProviderError
from ..schemas import (
    Choice,
    ChunkChoice,
    Delta,
    FunctionCall,
    GeneratedImage,
    ImageGenerationRequest,
    ImageGenerationResponse,
    ImagePart,
    TextPart,
    ToolCall,
    ToolCallDelta,
    UnifiedMessage,
    UnifiedRequest,
    UnifiedResponse,
    UnifiedStreamChunk,
)
from .base import (
    BaseProvider,
    ProviderKind,
    StreamState,
    map_finish_reason,
    synthesize_tool_call_id,
    unknown_part_text,
)

logger = logging.getLogger(__name__)

FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
    "content_filter": "content_filter",
}

DEFAULT_IMAGE_MODEL = "dall-e-3"


class OpenAIProvider(BaseProvider):
    """OpenAI API provider implementation.

    Authenticates with a bearer token. Organization and project headers
    come from ``ProviderConfig.extra_headers``.
    """

    kind = ProviderKind.OPENAI
    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    SUPPORTS_IMAGE_GENERATION = True
    TEMPERATURE_MAX = 2.0
    MAX_TOKENS_LIMIT = 128000

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    def _completion_path(self, model: str) -> str:
        return "/chat/completions"

    # ------------------------------------------------------------------
    # Request translation
    # ------------------------------------------------------------------

    def _part_to_wire(self, part: Any) -> Dict[str, Any]:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text}
        if isinstance(part, ImagePart):
            return {"type": "image_url", "image_url": part.image_url.model_dump(exclude_none=True)}
        return {"type": "text", "text": unknown_part_text(part)}

    def _message_to_wire(self, message: UnifiedMessage) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"role": message.role}
        if isinstance(message.content, str):
            wire["content"] = message.content
        else:
            wire["content"] = [self._part_to_wire(part) for part in message.content]
        if message.name:
            wire["name"] = message.name
        if message.tool_calls:
            wire["tool_calls"] = [call.model_dump() for call in message.tool_calls]
            if not message.content:
                wire["content"] = None
        if message.tool_call_id:
            wire["tool_call_id"] = message.tool_call_id
        return wire

    def build_payload(self, request: UnifiedRequest, stream: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._model_for(request),
            "messages": [self._message_to_wire(m) for m in request.messages],
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.stop is not None:
            payload["stop"] = request.stop
        if request.tools:
            payload["tools"] = [tool.model_dump(exclude_none=True) for tool in request.tools]
        if request.tool_choice is not None:
            payload["tool_choice"] = request.tool_choice
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    def messages_from_wire(self, payload: Dict[str, Any]) -> List[UnifiedMessage]:
        messages = []
        for wire in payload.get("messages", []):
            content = wire.get("content")
            if isinstance(content, list):
                parts: List[Any] = []
                for part in content:
                    if part.get("type") == "image_url":
                        parts.append(ImagePart.model_validate(part))
                    elif part.get("type") == "text":
                        parts.append(TextPart(text=part.get("text", "")))
                    else:
                        parts.append(part)
                content = parts
            messages.append(UnifiedMessage(
                role=wire["role"],
                content=content if content is not None else "",
                name=wire.get("name"),
                tool_calls=self._tool_calls(wire.get("tool_calls")),
                tool_call_id=wire.get("tool_call_id"),
            ))
        return messages

    # ------------------------------------------------------------------
    # Response translation
    # ------------------------------------------------------------------

    def _tool_calls(self, raw: Optional[List[Dict[str, Any]]]) -> Optional[List[ToolCall]]:
        if not raw:
            return None
        calls = []
        for index, call in enumerate(raw):
            function = call.get("function") or {}
            calls.append(ToolCall(
                id=call.get("id") or synthesize_tool_call_id(index),
                function=FunctionCall(
                    name=function.get("name", ""),
                    arguments=function.get("arguments") or "{}",
                ),
            ))
        return calls

    def parse_response(self, data: Dict[str, Any], model: str) -> UnifiedResponse:
        choices = []
        for position, choice in enumerate(data["choices"]):
            message = choice.get("message") or {}
            choices.append(Choice(
                index=choice.get("index", position),
                message=UnifiedMessage(
                    role="assistant",
                    content=message.get("content") or "",
                    tool_calls=self._tool_calls(message.get("tool_calls")),
                ),
                finish_reason=map_finish_reason(FINISH_REASONS, choice.get("finish_reason")),
            ))

        response_model = data.get("model") or model
        usage = data.get("usage") or {}
        return UnifiedResponse(
            id=data.get("id") or f"chatcmpl_{uuid.uuid4().hex}",
            created_at=data.get("created") or int(time.time()),
            model=response_model,
            provider=self.provider_name,
            choices=choices,
            usage=self._usage(
                response_model,
                usage.get("prompt_tokens", 0),
                usage.get("completion_tokens", 0),
                usage.get("total_tokens"),
            ),
        )

    def parse_stream_event(self, event: Dict[str, Any], state: StreamState) -> List[UnifiedStreamChunk]:
        if isinstance(event.get("error"), dict):
            raise ProviderError(
                f"Stream error: {event['error'].get('message', 'unknown')}",
                self.provider_name,
                kind=ErrorKind.SERVER,
                provider_message=event["error"].get("message"),
            )

        chunk_choices = []
        for position, choice in enumerate(event.get("choices") or []):
            delta = choice.get("delta") or {}
            tool_deltas = None
            if delta.get("tool_calls"):
                tool_deltas = []
                for call in delta["tool_calls"]:
                    function = call.get("function") or {}
                    tool_deltas.append(ToolCallDelta(
                        index=call.get("index", 0),
                        id=call.get("id"),
                        type="function" if call.get("id") else None,
                        name=function.get("name"),
                        arguments=function.get("arguments"),
                    ))
            finish = map_finish_reason(FINISH_REASONS, choice.get("finish_reason"))
            if finish:
                state.finish_reason = finish
            chunk_choices.append(ChunkChoice(
                index=choice.get("index", position),
                delta=Delta(role=delta.get("role"), content=delta.get("content"), tool_calls=tool_deltas),
                finish_reason=finish,
            ))

        usage = None
        if event.get("usage"):
            state.prompt_tokens = event["usage"].get("prompt_tokens", 0)
            state.completion_tokens = event["usage"].get("completion_tokens", 0)
            model = event.get("model") or state.model
            usage = state.usage(self.cost_from_tokens(model, state.prompt_tokens, state.completion_tokens))

        if not chunk_choices and usage is None:
            return []
        return [UnifiedStreamChunk(
            id=event.get("id") or state.id,
            created_at=event.get("created") or state.created_at,
            model=event.get("model") or state.model,
            provider=self.provider_name,
            choices=chunk_choices,
            usage=usage,
        )]

    # ------------------------------------------------------------------
    # Extras
    # ------------------------------------------------------------------

    async def _ping(self) -> None:
        try:
            await self._get_http().get("/models")
        except httpx.HTTPError as e:
            raise self.translate_error(e) from None

    async def generate_images(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        """Generate images with the images endpoint.

        Raises:
            ProviderError: If the request fails.
        """
        payload: Dict[str, Any] = {
            "model": request.model or DEFAULT_IMAGE_MODEL,
            "prompt": request.prompt,
            "n": request.n,
        }
        for key in ("size", "quality", "response_format"):
            value = getattr(request, key)
            if value is not None:
                payload[key] = value
        try:
            data = await self._get_http().post("/images/generations", json=payload)
        except httpx.HTTPError as e:
            raise self.translate_error(e) from None
        if not isinstance(data, dict):
            raise ProviderError("Provider returned a non-JSON body", self.provider_name, kind=ErrorKind.INVALID_RESPONSE)
        return ImageGenerationResponse(
            created_at=data.get("created") or int(time.time()),
            provider=self.provider_name,
            images=[
                GeneratedImage(
                    url=item.get("url"),
                    b64_json=item.get("b64_json"),
                    revised_prompt=item.get("revised_prompt"),
                )
                for item in data.get("data", [])
            ],
        )
