"""Google Generative Language (Gemini) adapter."""

import json
import logging
import mimetypes
import re
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

FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "OTHER": "stop",
}

TOOL_CHOICE_MODES = {"auto": "AUTO", "required": "ANY", "none": "NONE"}

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)s\s*$")


def _parse_arguments(arguments: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(arguments) if arguments else {}
    except ValueError:
        return {"_raw": arguments}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class GoogleProvider(BaseProvider):
    """Google Gemini API provider implementation.

    Authenticates with a ``key`` query parameter. The system prompt goes to
    ``systemInstruction`` and assistant turns use the ``model`` role.
    """

    kind = ProviderKind.GOOGLE
    DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
    TEMPERATURE_MAX = 1.0
    MAX_TOKENS_LIMIT = 8192
    MAX_STOP_SEQUENCES = 5

    def _completion_path(self, model: str) -> str:
        return f"/models/{model}:generateContent"

    def _stream_path(self, model: str) -> str:
        return f"/models/{model}:streamGenerateContent"

    def _query_params(self, stream: bool = False) -> Optional[Dict[str, str]]:
        params = {"key": self.config.api_key}
        if stream:
            params["alt"] = "sse"
        return params

    # ------------------------------------------------------------------
    # Request translation
    # ------------------------------------------------------------------

    def _part_to_wire(self, part: Any) -> Dict[str, Any]:
        if isinstance(part, TextPart):
            return {"text": part.text}
        if isinstance(part, ImagePart):
            inline = parse_data_url(part.image_url.url)
            if inline is not None:
                mime_type, data = inline
                return {"inlineData": {"mimeType": mime_type, "data": data}}
            mime_type = mimetypes.guess_type(part.image_url.url)[0] or "image/jpeg"
            return {"fileData": {"mimeType": mime_type, "fileUri": part.image_url.url}}
        return {"text": unknown_part_text(part)}

    def _message_parts(self, message: UnifiedMessage) -> List[Dict[str, Any]]:
        if isinstance(message.content, str):
            parts = [{"text": message.content}] if message.content else []
        else:
            parts = [self._part_to_wire(part) for part in message.content]
        for call in message.tool_calls or []:
            parts.append({
                "functionCall": {
                    "id": call.id,
                    "name": call.function.name,
                    "args": _parse_arguments(call.function.arguments),
                }
            })
        return parts

    def build_payload(self, request: UnifiedRequest, stream: bool = False) -> Dict[str, Any]:
        system: Optional[str] = None
        contents = []
        for message in request.messages:
            if message.role == "system" and system is None:
                system = message.text()
                continue
            if message.role == "tool":
                contents.append({
                    "role": "user",
                    "parts": [{
                        "functionResponse": {
                            "id": message.tool_call_id,
                            "name": message.name or message.tool_call_id,
                            "response": {"content": message.text()},
                        }
                    }],
                })
                continue
            contents.append({
                "role": "model" if message.role == "assistant" else "user",
                "parts": self._message_parts(message),
            })

        payload: Dict[str, Any] = {"contents": contents}
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        generation_config: Dict[str, Any] = {}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.top_p is not None:
            generation_config["topP"] = request.top_p
        if request.max_tokens is not None:
            generation_config["maxOutputTokens"] = request.max_tokens
        stop = request.stop_sequences()
        if stop:
            generation_config["stopSequences"] = stop
        if generation_config:
            payload["generationConfig"] = generation_config

        if request.tools:
            payload["tools"] = [{
                "functionDeclarations": [
                    {
                        key: value
                        for key, value in {
                            "name": tool.function.name,
                            "description": tool.function.description,
                            "parameters": tool.function.parameters,
                        }.items()
                        if value is not None
                    }
                    for tool in request.tools
                ]
            }]
        tool_config = self._tool_config(request.tool_choice)
        if tool_config is not None:
            payload["toolConfig"] = tool_config
        return payload

    @staticmethod
    def _tool_config(choice: Any) -> Optional[Dict[str, Any]]:
        if choice is None:
            return None
        if isinstance(choice, dict):
            name = (choice.get("function") or {}).get("name")
            if not name:
                return None
            return {"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [name]}}
        mode = TOOL_CHOICE_MODES.get(choice)
        return {"functionCallingConfig": {"mode": mode}} if mode else None

    def messages_from_wire(self, payload: Dict[str, Any]) -> List[UnifiedMessage]:
        messages: List[UnifiedMessage] = []
        instruction = payload.get("systemInstruction")
        if instruction:
            text = "".join(part.get("text", "") for part in instruction.get("parts", []))
            messages.append(UnifiedMessage(role="system", content=text))
        for wire in payload.get("contents", []):
            parts: List[Any] = []
            tool_calls: List[ToolCall] = []
            for part in wire.get("parts", []):
                if "text" in part:
                    parts.append(TextPart(text=part["text"]))
                elif "inlineData" in part:
                    inline = part["inlineData"]
                    url = build_data_url(inline.get("mimeType", ""), inline.get("data", ""))
                    parts.append(ImagePart(image_url=ImageURL(url=url)))
                elif "fileData" in part:
                    parts.append(ImagePart(image_url=ImageURL(url=part["fileData"].get("fileUri", ""))))
                elif "functionCall" in part:
                    call = part["functionCall"]
                    tool_calls.append(ToolCall(
                        id=call.get("id") or synthesize_tool_call_id(len(tool_calls)),
                        function=FunctionCall(name=call["name"], arguments=json.dumps(call.get("args", {}))),
                    ))
                elif "functionResponse" in part:
                    response = part["functionResponse"]
                    messages.append(UnifiedMessage(
                        role="tool",
                        content=(response.get("response") or {}).get("content", ""),
                        name=response.get("name"),
                        tool_call_id=response.get("id") or response.get("name"),
                    ))
            if parts or tool_calls:
                # A lone text part was a plain string before translation
                content: Any = parts
                if len(parts) == 1 and isinstance(parts[0], TextPart):
                    content = parts[0].text
                messages.append(UnifiedMessage(
                    role="assistant" if wire.get("role") == "model" else "user",
                    content=content,
                    tool_calls=tool_calls or None,
                ))
        return messages

    # ------------------------------------------------------------------
    # Response translation
    # ------------------------------------------------------------------

    def _candidate_message(self, candidate: Dict[str, Any], first_index: int = 0):
        texts = []
        tool_calls = []
        for part in (candidate.get("content") or {}).get("parts", []):
            if "text" in part:
                texts.append(part["text"])
            elif "functionCall" in part:
                call = part["functionCall"]
                tool_calls.append(ToolCall(
                    id=call.get("id") or synthesize_tool_call_id(first_index + len(tool_calls)),
                    function=FunctionCall(
                        name=call.get("name", ""),
                        arguments=json.dumps(call.get("args") or {}),
                    ),
                ))
        return "".join(texts), tool_calls

    def _finish_reason(self, raw: Optional[str], has_tool_calls: bool) -> Optional[str]:
        finish = map_finish_reason(FINISH_REASONS, raw)
        if has_tool_calls and finish in (None, "stop"):
            return "tool_calls"
        return finish

    def parse_response(self, data: Dict[str, Any], model: str) -> UnifiedResponse:
        usage = data.get("usageMetadata") or {}
        candidates = data.get("candidates") or []

        if not candidates:
            feedback = data.get("promptFeedback") or {}
            if not feedback.get("blockReason"):
                raise ProviderError(
                    "Response contained no candidates",
                    self.provider_name,
                    kind=ErrorKind.INVALID_RESPONSE,
                )
            logger.warning(f"Google blocked the prompt: {feedback['blockReason']}")
            choices = [Choice(
                index=0,
                message=UnifiedMessage(role="assistant", content=""),
                finish_reason="content_filter",
            )]
        else:
            choices = []
            for position, candidate in enumerate(candidates):
                text, tool_calls = self._candidate_message(candidate)
                choices.append(Choice(
                    index=candidate.get("index", position),
                    message=UnifiedMessage(role="assistant", content=text, tool_calls=tool_calls or None),
                    finish_reason=self._finish_reason(candidate.get("finishReason") or "STOP", bool(tool_calls)),
                ))

        response_model = data.get("modelVersion") or model
        return UnifiedResponse(
            id=data.get("responseId") or f"gemini_{uuid.uuid4().hex}",
            created_at=int(time.time()),
            model=response_model,
            provider=self.provider_name,
            choices=choices,
            usage=self._usage(
                model,
                usage.get("promptTokenCount", 0),
                usage.get("candidatesTokenCount", 0),
                usage.get("totalTokenCount"),
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

        candidates = event.get("candidates") or []
        if not candidates:
            return []
        candidate = candidates[0]
        text, tool_calls = self._candidate_message(candidate, first_index=len(state.tool_indexes))
        finish = None
        if candidate.get("finishReason"):
            finish = self._finish_reason(candidate["finishReason"], bool(tool_calls) or bool(state.tool_indexes))

        tool_deltas = None
        if tool_calls:
            tool_deltas = []
            for call in tool_calls:
                index = len(state.tool_indexes)
                state.tool_indexes[index] = index
                tool_deltas.append(ToolCallDelta(
                    index=index,
                    id=call.id,
                    type="function",
                    name=call.function.name,
                    arguments=call.function.arguments,
                ))

        usage = None
        if finish is not None:
            metadata = event.get("usageMetadata") or {}
            state.prompt_tokens = metadata.get("promptTokenCount", state.prompt_tokens)
            state.completion_tokens = metadata.get("candidatesTokenCount", state.completion_tokens)
            state.finish_reason = finish
            usage = state.usage(self.cost_from_tokens(state.model, state.prompt_tokens, state.completion_tokens))

        if not text and tool_deltas is None and finish is None:
            return []

        role = None
        if not state.started:
            state.started = True
            role = "assistant"
        return [UnifiedStreamChunk(
            id=event.get("responseId") or state.id,
            created_at=state.created_at,
            model=state.model,
            provider=self.provider_name,
            choices=[ChunkChoice(
                index=0,
                delta=Delta(role=role, content=text or None, tool_calls=tool_deltas),
                finish_reason=finish,
            )],
            usage=usage,
        )]

    # ------------------------------------------------------------------
    # Errors and health
    # ------------------------------------------------------------------

    def _retry_after(self, response: httpx.Response, body: Any) -> Optional[float]:
        header_value = super()._retry_after(response, body)
        if header_value is not None:
            return header_value
        if not isinstance(body, dict):
            return None
        for detail in (body.get("error") or {}).get("details") or []:
            if not str(detail.get("@type", "")).endswith("RetryInfo"):
                continue
            match = _DURATION_PATTERN.match(str(detail.get("retryDelay", "")))
            if match:
                return float(match.group(1))
        return None

    async def _ping(self) -> None:
        try:
            await self._get_http().get(f"/models/{self.config.model}", params=self._query_params())
        except httpx.HTTPError as e:
            raise self.translate_error(e) from None
