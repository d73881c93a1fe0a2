"""Anthropic messages API adapter."""

import json
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from ..errors import ErrorKind, ProviderError
from ..schemas import (
    Choice,
    ChunkChoice,
    Delta,
    FunctionCall,
    ImagePart,
    ImageURL,
    TextPart,
    ToolCall,
    ToolCallDelta,
    UnifiedMessage,
    UnifiedRequest,
    UnifiedResponse,
    UnifiedStreamChunk,
)
from .base import (
    DEFAULT_OUTPUT_TOKENS,
    BaseProvider,
    ProviderKind,
    StreamState,
    build_data_url,
    map_finish_reason,
    parse_data_url,
    synthesize_tool_call_id,
    unknown_part_text,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

STOP_REASONS = {
    "end_turn": "stop",
    "max_tokens": "length",
    "stop_sequence": "stop",
    "tool_use": "tool_calls",
}


def _parse_arguments(arguments: str) -> Any:
    try:
        return json.loads(arguments) if arguments else {}
    except ValueError:
        return {"_raw": arguments}


class AnthropicProvider(BaseProvider):
    """Anthropic API provider implementation.

    The system prompt travels in the top-level ``system`` field, tool
    results are user turns holding ``tool_result`` blocks, and images are
    ``image`` blocks with a base64 or URL source.
    """

    kind = ProviderKind.ANTHROPIC
    DEFAULT_BASE_URL = "https://api.anthropic.com/v1"
    TEMPERATURE_MAX = 1.0
    MAX_TOKENS_LIMIT = 4096

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _completion_path(self, model: str) -> str:
        return "/messages"

    # ------------------------------------------------------------------
    # Request translation
    # ------------------------------------------------------------------

    def _part_to_block(self, part: Any) -> Dict[str, Any]:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text}
        if isinstance(part, ImagePart):
            inline = parse_data_url(part.image_url.url)
            if inline is not None:
                media_type, data = inline
                return {
                    "type": "image",
                    "source": {"type": "base64", "media_type": media_type, "data": data},
                }
            return {"type": "image", "source": {"type": "url", "url": part.image_url.url}}
        return {"type": "text", "text": unknown_part_text(part)}

    def _content_to_wire(self, message: UnifiedMessage) -> Any:
        if isinstance(message.content, str):
            if not message.tool_calls:
                return message.content
            blocks = [{"type": "text", "text": message.content}] if message.content else []
        else:
            blocks = [self._part_to_block(part) for part in message.content]
        for call in message.tool_calls or []:
            blocks.append({
                "type": "tool_use",
                "id": call.id,
                "name": call.function.name,
                "input": _parse_arguments(call.function.arguments),
            })
        return blocks

    def _split_system(self, messages: List[UnifiedMessage]):
        system: Optional[str] = None
        turns = []
        for message in messages:
            if message.role == "system" and system is None:
                system = message.text()
                continue
            turns.append(message)
        return system, turns

    def build_payload(self, request: UnifiedRequest, stream: bool = False) -> Dict[str, Any]:
        system, turns = self._split_system(request.messages)
        wire_messages = []
        for message in turns:
            if message.role == "tool":
                wire_messages.append({
                    "role": "user",
                    "content": [{
                        "type": "tool_result",
                        "tool_use_id": message.tool_call_id,
                        "content": message.text(),
                    }],
                })
                continue
            wire_messages.append({
                "role": "assistant" if message.role == "assistant" else "user",
                "content": self._content_to_wire(message),
            })

        payload: Dict[str, Any] = {
            "model": self._model_for(request),
            "messages": wire_messages,
            "max_tokens": request.max_tokens or DEFAULT_OUTPUT_TOKENS,
        }
        if system:
            payload["system"] = system
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        stop = request.stop_sequences()
        if stop:
            payload["stop_sequences"] = stop
        if request.tools:
            payload["tools"] = [
                {
                    "name": tool.function.name,
                    "description": tool.function.description or "",
                    "input_schema": tool.function.parameters or {"type": "object", "properties": {}},
                }
                for tool in request.tools
            ]
        tool_choice = self._tool_choice(request.tool_choice)
        if tool_choice is not None:
            payload["tool_choice"] = tool_choice
        if stream:
            payload["stream"] = True
        return payload

    @staticmethod
    def _tool_choice(choice: Any) -> Optional[Dict[str, Any]]:
        if choice is None:
            return None
        if isinstance(choice, dict):
            name = (choice.get("function") or {}).get("name")
            return {"type": "tool", "name": name} if name else None
        return {"auto": {"type": "auto"}, "required": {"type": "any"}, "none": {"type": "none"}}.get(choice)

    def messages_from_wire(self, payload: Dict[str, Any]) -> List[UnifiedMessage]:
        messages: List[UnifiedMessage] = []
        if payload.get("system"):
            messages.append(UnifiedMessage(role="system", content=payload["system"]))
        for wire in payload.get("messages", []):
            content = wire.get("content")
            if isinstance(content, str):
                messages.append(UnifiedMessage(role=wire["role"], content=content))
                continue
            parts: List[Any] = []
            tool_calls: List[ToolCall] = []
            for block in content:
                kind = block.get("type")
                if kind == "text":
                    parts.append(TextPart(text=block.get("text", "")))
                elif kind == "image":
                    source = block.get("source") or {}
                    if source.get("type") == "base64":
                        url = build_data_url(source.get("media_type", ""), source.get("data", ""))
                    else:
                        url = source.get("url", "")
                    parts.append(ImagePart(image_url=ImageURL(url=url)))
                elif kind == "tool_use":
                    tool_calls.append(ToolCall(
                        id=block["id"],
                        function=FunctionCall(name=block["name"], arguments=json.dumps(block.get("input", {}))),
                    ))
                elif kind == "tool_result":
                    messages.append(UnifiedMessage(
                        role="tool",
                        content=block.get("content", ""),
                        tool_call_id=block.get("tool_use_id"),
                    ))
            if parts or tool_calls:
                messages.append(UnifiedMessage(
                    role=wire["role"],
                    content=parts,
                    tool_calls=tool_calls or None,
                ))
        return messages

    # ------------------------------------------------------------------
    # Response translation
    # ------------------------------------------------------------------

    def parse_response(self, data: Dict[str, Any], model: str) -> UnifiedResponse:
        texts = []
        tool_calls = []
        for block in data["content"]:
            if block.get("type") == "text":
                texts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.get("id") or synthesize_tool_call_id(len(tool_calls)),
                    function=FunctionCall(
                        name=block.get("name", ""),
                        arguments=json.dumps(block.get("input") or {}),
                    ),
                ))

        response_model = data.get("model") or model
        usage = data.get("usage") or {}
        return UnifiedResponse(
            id=data.get("id") or f"msg_{uuid.uuid4().hex}",
            created_at=int(time.time()),
            model=response_model,
            provider=self.provider_name,
            choices=[Choice(
                index=0,
                message=UnifiedMessage(
                    role="assistant",
                    content="".join(texts),
                    tool_calls=tool_calls or None,
                ),
                finish_reason=map_finish_reason(STOP_REASONS, data.get("stop_reason")) or "stop",
            )],
            usage=self._usage(
                response_model,
                usage.get("input_tokens", 0),
                usage.get("output_tokens", 0),
            ),
        )

    def _chunk(self, state: StreamState, delta: Delta, finish_reason: Optional[str] = None, usage=None) -> UnifiedStreamChunk:
        return UnifiedStreamChunk(
            id=state.id,
            created_at=state.created_at,
            model=state.model,
            provider=self.provider_name,
            choices=[ChunkChoice(index=0, delta=delta, finish_reason=finish_reason)],
            usage=usage,
        )

    def parse_stream_event(self, event: Dict[str, Any], state: StreamState) -> List[UnifiedStreamChunk]:
        kind = event.get("type")

        if kind == "message_start":
            message = event.get("message") or {}
            state.id = message.get("id") or state.id
            state.model = message.get("model") or state.model
            state.prompt_tokens = (message.get("usage") or {}).get("input_tokens", 0)
            return [self._chunk(state, Delta(role="assistant"))]

        if kind == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") != "tool_use":
                return []
            tool_index = len(state.tool_indexes)
            state.tool_indexes[event.get("index", tool_index)] = tool_index
            return [self._chunk(state, Delta(tool_calls=[ToolCallDelta(
                index=tool_index,
                id=block.get("id") or synthesize_tool_call_id(tool_index),
                type="function",
                name=block.get("name"),
                arguments="",
            )]))]

        if kind == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                return [self._chunk(state, Delta(content=delta.get("text", "")))]
            if delta.get("type") == "input_json_delta":
                tool_index = state.tool_indexes.get(event.get("index"), 0)
                return [self._chunk(state, Delta(tool_calls=[ToolCallDelta(
                    index=tool_index,
                    arguments=delta.get("partial_json", ""),
                )]))]
            return []

        if kind == "message_delta":
            delta = event.get("delta") or {}
            usage = event.get("usage") or {}
            state.completion_tokens = usage.get("output_tokens", state.completion_tokens)
            state.finish_reason = map_finish_reason(STOP_REASONS, delta.get("stop_reason")) or "stop"
            cost = self.cost_from_tokens(state.model, state.prompt_tokens, state.completion_tokens)
            return [self._chunk(state, Delta(), finish_reason=state.finish_reason, usage=state.usage(cost))]

        if kind == "message_stop":
            state.finished = True
            return []

        if kind == "error":
            error = event.get("error") or {}
            raise ProviderError(
                f"Stream error: {error.get('message', 'unknown')}",
                self.provider_name,
                kind=ErrorKind.SERVER,
                provider_message=error.get("message"),
            )

        return []
