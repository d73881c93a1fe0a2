"""Pydantic schemas for the unified request/response model."""

import json
import time
import uuid
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


Role = Literal["system", "user", "assistant", "tool"]
FinishReason = Optional[Literal["stop", "length", "tool_calls", "content_filter"]]
Strategy = Literal["cost_optimized", "performance", "privacy_first", "balanced"]
PrivacyLevel = Literal["public", "private", "hipaa"]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ============================================================================
# Messages
# ============================================================================

class TextPart(_Frozen):
    """A text content part."""
    type: Literal["text"] = "text"
    text: str


class ImageURL(_Frozen):
    url: str
    detail: Optional[Literal["auto", "low", "high"]] = None


class ImagePart(_Frozen):
    """An image content part given as an http(s) or ``data:`` URL."""
    type: Literal["image_url"] = "image_url"
    image_url: ImageURL


# Unknown part types are kept as plain mappings so adapters can serialize them
ContentPart = Annotated[
    Union[TextPart, ImagePart, Dict[str, Any]],
    Field(union_mode="left_to_right"),
]


class FunctionCall(_Frozen):
    name: str
    arguments: str = "{}"


class ToolCall(_Frozen):
    """A tool invocation requested by the model."""
    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class UnifiedMessage(_Frozen):
    """One conversational turn."""
    role: Role
    content: Union[str, List[ContentPart]] = ""
    name: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None

    def text(self) -> str:
        """Concatenate the text parts of this message."""
        if isinstance(self.content, str):
            return self.content
        chunks = []
        for part in self.content:
            if isinstance(part, TextPart):
                chunks.append(part.text)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                chunks.append(part["text"])
        return " ".join(chunks)

    def has_images(self) -> bool:
        if isinstance(self.content, str):
            return False
        return any(isinstance(part, ImagePart) for part in self.content)

    def is_empty(self) -> bool:
        if isinstance(self.content, str):
            return not self.content.strip()
        return len(self.content) == 0


# ============================================================================
# Requests
# ============================================================================

class FunctionDefinition(_Frozen):
    name: str
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None


class Tool(_Frozen):
    """An OpenAI-shaped tool definition."""
    type: Literal["function"] = "function"
    function: FunctionDefinition


class UnifiedRequest(_Frozen):
    """A provider-agnostic chat completion request."""
    messages: List[UnifiedMessage]
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stop: Optional[Union[str, List[str]]] = None
    tools: Optional[List[Tool]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None
    stream: Optional[bool] = None

    @field_validator("messages")
    @classmethod
    def validate_messages(cls, v: List[UnifiedMessage]) -> List[UnifiedMessage]:
        """Require at least one message."""
        if not v:
            raise ValueError("messages must contain at least one message")
        return v

    def stop_sequences(self) -> Optional[List[str]]:
        if self.stop is None:
            return None
        return [self.stop] if isinstance(self.stop, str) else list(self.stop)

    def text_length(self) -> int:
        """Character length of all message text, used for cost estimates."""
        total = 0
        for message in self.messages:
            if isinstance(message.content, str):
                total += len(message.content)
            else:
                total += len(json.dumps([_dump_part(p) for p in message.content]))
        return total


def _dump_part(part: Any) -> Any:
    if isinstance(part, BaseModel):
        return part.model_dump(exclude_none=True)
    return part


# ============================================================================
# Responses
# ============================================================================

class Usage(_Frozen):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0


class Choice(_Frozen):
    index: int = 0
    message: UnifiedMessage
    finish_reason: FinishReason = None


class UnifiedResponse(_Frozen):
    """A normalized, non-streaming completion."""
    id: str = Field(default_factory=lambda: f"resp_{uuid.uuid4().hex}")
    created_at: int = Field(default_factory=lambda: int(time.time()))
    model: str
    provider: str
    choices: List[Choice]
    usage: Usage = Field(default_factory=Usage)

    @property
    def content(self) -> str:
        """Text of the first choice."""
        if not self.choices:
            return ""
        return self.choices[0].message.text()


class ToolCallDelta(_Frozen):
    index: int = 0
    id: Optional[str] = None
    type: Optional[Literal["function"]] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


class Delta(_Frozen):
    role: Optional[Role] = None
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCallDelta]] = None


class ChunkChoice(_Frozen):
    index: int = 0
    delta: Delta = Field(default_factory=Delta)
    finish_reason: FinishReason = None


class UnifiedStreamChunk(_Frozen):
    """One incremental piece of a streamed completion."""
    id: str
    created_at: int = Field(default_factory=lambda: int(time.time()))
    model: str
    provider: str
    choices: List[ChunkChoice] = Field(default_factory=list)
    usage: Optional[Usage] = None


# ============================================================================
# Orchestration
# ============================================================================

class Requirements(_Frozen):
    """Capabilities the selected provider must offer."""
    vision: bool = False
    tools: bool = False
    streaming: bool = False
    json_mode: bool = False
    system_messages: bool = False


class Constraints(_Frozen):
    """Limits applied during provider selection."""
    max_cost: Optional[float] = None
    max_latency: Optional[float] = None
    min_quality: Optional[float] = None
    exclude_providers: List[str] = Field(default_factory=list)
    preferred_providers: List[str] = Field(default_factory=list)
    privacy_level: Optional[PrivacyLevel] = None


class CrossValidationOptions(_Frozen):
    """Query a second provider and compare answers."""
    enabled: Optional[bool] = None
    threshold: float = 0.5


class OrchestrationInfo(_Frozen):
    strategy: Strategy
    providers_used: List[str] = Field(default_factory=list)
    fallbacks_triggered: bool = False
    cache_hit: bool = False
    processing_time_ms: float = 0.0


class ConfidenceInfo(_Frozen):
    overall: float = 0.0
    provider_agreement: Optional[float] = None
    cost_efficiency: float = 0.0
    latency_score: float = 0.0
    quality_score: float = 0.0


class CostInfo(_Frozen):
    total: float = 0.0
    breakdown: Dict[str, float] = Field(default_factory=dict)
    savings: float = 0.0
    efficiency: float = 0.0


class PerformanceInfo(_Frozen):
    latency_ms: float = 0.0
    tokens_per_second: float = 0.0
    provider_latencies: Dict[str, float] = Field(default_factory=dict)


class OrchestratedResponse(UnifiedResponse):
    """A completion enriched with routing, cost and confidence metadata."""
    orchestration: OrchestrationInfo
    confidence: ConfidenceInfo = Field(default_factory=ConfidenceInfo)
    cost: CostInfo = Field(default_factory=CostInfo)
    performance: PerformanceInfo = Field(default_factory=PerformanceInfo)


# ============================================================================
# Images
# ============================================================================

class ImageGenerationRequest(_Frozen):
    prompt: str
    model: Optional[str] = None
    n: int = 1
    size: Optional[str] = None
    quality: Optional[str] = None
    response_format: Optional[Literal["url", "b64_json"]] = None


class GeneratedImage(_Frozen):
    url: Optional[str] = None
    b64_json: Optional[str] = None
    revised_prompt: Optional[str] = None


class ImageGenerationResponse(_Frozen):
    created_at: int = Field(default_factory=lambda: int(time.time()))
    provider: str
    images: List[GeneratedImage]
