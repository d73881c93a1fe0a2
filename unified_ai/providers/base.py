"""Provider abstraction layer.

This module defines the contract every provider adapter implements, so the
registry, the resilience wrapper and the orchestrator can treat OpenAI-,
Anthropic- and Google-style backends interchangeably. Subclasses supply the
wire translation; request validation, transport calls, stream decoding and
error translation live here.
"""

import json
import logging
import math
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, AsyncIterator, Dict, FrozenSet, List, Optional, Tuple

import httpx

from ..errors import (
    AIError,
    AuthenticationError,
    ErrorKind,
    NetworkError,
    ProviderError,
    RateLimitError,
    RequestTimeoutError,
    UnsupportedOperationError,
    ValidationError,
    redact_text,
)
from ..http import HTTPClient, iter_lines, parse_body
from ..profiles import Capability, ProviderProfile, default_profile
from ..schemas import (
    ImageGenerationRequest,
    ImageGenerationResponse,
    TextPart,
    UnifiedMessage,
    UnifiedRequest,
    UnifiedResponse,
    UnifiedStreamChunk,
    Usage,
)
from ..streaming import ChunkStream
from ..validation import array, number, obj, string, union

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_TOKENS = 1000
ROLES = ("system", "user", "assistant", "tool")


class ProviderKind(str, Enum):
    """The closed set of supported provider variants."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for one adapter instance."""

    provider: ProviderKind
    model: str
    api_key: str = field(repr=False)
    base_url: Optional[str] = None
    timeout: float = 60.0
    max_retries: int = 3
    extra_headers: Dict[str, str] = field(default_factory=dict, repr=False, compare=False, hash=False)

    def __post_init__(self):
        object.__setattr__(self, "provider", ProviderKind(self.provider))

    @property
    def cache_key(self) -> Tuple[str, str]:
        return (self.provider.value, self.model)

    def with_model(self, model: str) -> "ProviderConfig":
        return replace(self, model=model)

    def __repr__(self) -> str:
        return (
            f"ProviderConfig(provider={self.provider.value!r}, model={self.model!r}, "
            f"api_key='[REDACTED]', base_url={self.base_url!r}, timeout={self.timeout}, "
            f"max_retries={self.max_retries})"
        )


@dataclass
class StreamState:
    """Mutable bookkeeping for one stream decode."""

    id: str
    model: str
    created_at: int = field(default_factory=lambda: int(time.time()))
    prompt_tokens: int = 0
    completion_tokens: int = 0
    finish_reason: Optional[str] = None
    started: bool = False
    finished: bool = False
    tool_indexes: Dict[int, int] = field(default_factory=dict)

    def usage(self, cost: float) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            total_tokens=self.prompt_tokens + self.completion_tokens,
            estimated_cost=cost,
        )


def parse_data_url(url: str) -> Optional[Tuple[str, str]]:
    """Split ``data:<mime>;base64,<payload>`` into ``(mime, payload)``.

    Returns None for anything that is not a base64 data URL.
    """
    if not url.startswith("data:"):
        return None
    header, sep, payload = url[5:].partition(",")
    if not sep or not header.endswith(";base64"):
        return None
    mime = header[: -len(";base64")] or "application/octet-stream"
    return mime, payload


def build_data_url(mime: str, payload: str) -> str:
    return f"data:{mime};base64,{payload}"


def unknown_part_text(part: Any) -> str:
    """JSON fallback for content parts a provider has no field for."""
    if hasattr(part, "model_dump"):
        part = part.model_dump(exclude_none=True)
    return json.dumps(part, sort_keys=True, default=str)


def sse_data(line: str) -> Optional[str]:
    """Return the payload of a ``data:`` event-stream line, else None."""
    if not line.startswith("data:"):
        return None
    return line[5:].strip()


def map_finish_reason(table: Dict[str, str], value: Optional[str]) -> Optional[str]:
    """Translate a provider finish reason; unknown values become ``stop``."""
    if value is None:
        return None
    return table.get(value, "stop")


def synthesize_tool_call_id(index: int) -> str:
    return f"call_{index}"


class BaseProvider(ABC):
    """Base abstract class for all provider adapters.

    All adapters inherit from this class and implement the wire translation
    hooks. This enables the registry pattern and makes providers
    interchangeable.
    """

    kind: ProviderKind
    DEFAULT_BASE_URL: str = ""
    TEMPERATURE_MAX: float = 1.0
    MAX_TOKENS_LIMIT: int = 4096
    MAX_STOP_SEQUENCES: int = 4
    SUPPORTS_IMAGE_GENERATION: bool = False

    def __init__(
        self,
        config: ProviderConfig,
        profile: Optional[ProviderProfile] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the provider with configuration.

        Args:
            config: Provider configuration including API key and model.
            profile: Capability and pricing data; defaults to the built-in profile.
            transport: Optional httpx transport, used by tests.
        """
        if not config.api_key:
            raise AuthenticationError("API key is required", self.kind.value)
        self.config = config
        self.profile = profile or default_profile(self.kind.value)
        self._transport = transport
        self._http: Optional[HTTPClient] = None

    @property
    def provider_name(self) -> str:
        return self.kind.value

    @property
    def available_models(self) -> List[str]:
        return list(self.profile.models)

    @property
    def model(self) -> str:
        return self.config.model

    def supports_model(self, model: str) -> bool:
        return self.profile.pricing_for(model) is not None

    def capabilities(self) -> FrozenSet[Capability]:
        """Capabilities from the provider profile; no I/O."""
        return self.profile.capabilities

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _auth_headers(self) -> Dict[str, str]:
        return {}

    def _get_http(self) -> HTTPClient:
        """Get or create the HTTP client."""
        if self._http is None:
            self._http = HTTPClient(
                base_url=self.config.base_url or self.DEFAULT_BASE_URL,
                headers={**self._auth_headers(), **self.config.extra_headers},
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self._http

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Wire translation hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def build_payload(self, request: UnifiedRequest, stream: bool = False) -> Dict[str, Any]:
        """Translate a validated unified request into the provider's JSON body."""

    @abstractmethod
    def parse_response(self, data: Dict[str, Any], model: str) -> UnifiedResponse:
        """Translate a provider response body into a ``UnifiedResponse``."""

    @abstractmethod
    def parse_stream_event(self, event: Dict[str, Any], state: StreamState) -> List[UnifiedStreamChunk]:
        """Translate one decoded stream event; unrecognized events yield nothing."""

    @abstractmethod
    def messages_from_wire(self, payload: Dict[str, Any]) -> List[UnifiedMessage]:
        """Recover unified messages from a payload built by ``build_payload``."""

    @abstractmethod
    def _completion_path(self, model: str) -> str:
        pass

    def _stream_path(self, model: str) -> str:
        return self._completion_path(model)

    def _query_params(self, stream: bool = False) -> Optional[Dict[str, str]]:
        return None

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _request_schema(self):
        return obj({
            "messages": array(obj({"role": string(choices=ROLES)}), min_items=1),
            "temperature": number(minimum=0, maximum=self.TEMPERATURE_MAX).optional(),
            "max_tokens": number(minimum=1, maximum=self.MAX_TOKENS_LIMIT, integer=True).optional(),
            "top_p": number(minimum=0, maximum=1).optional(),
            "stop": union(
                string(min_length=1),
                array(string(min_length=1), max_items=self.MAX_STOP_SEQUENCES),
            ).optional(),
        })

    def validate_request(self, request: UnifiedRequest) -> None:
        """Reject requests this provider would refuse.

        Raises:
            ValidationError: Naming the offending field.
        """
        try:
            self._request_schema().parse(request.model_dump(exclude_none=True))
        except ValidationError as e:
            raise ValidationError(e.message, e.field, e.value, provider=self.provider_name) from None

        for index, message in enumerate(request.messages):
            needs_content = message.role == "user" or (
                message.role == "assistant" and not message.tool_calls
            )
            if needs_content and message.is_empty():
                raise ValidationError(
                    f"Message content must not be empty for role '{message.role}'",
                    field=f"messages.{index}.content",
                    value=message.content,
                    provider=self.provider_name,
                )
            if message.role == "tool" and not message.tool_call_id:
                raise ValidationError(
                    "Tool messages require tool_call_id",
                    field=f"messages.{index}.tool_call_id",
                    value=None,
                    provider=self.provider_name,
                )

        if request.tools and not self.profile.supports(Capability.TOOLS):
            raise ValidationError("Provider does not support tools", "tools", len(request.tools), self.provider_name)

    def to_wire(self, request: UnifiedRequest, stream: bool = False) -> Dict[str, Any]:
        """Validate ``request`` and build the provider payload."""
        self.validate_request(request)
        return self.build_payload(request, stream=stream)

    def _model_for(self, request: UnifiedRequest) -> str:
        return request.model or self.config.model

    # ------------------------------------------------------------------
    # Cost
    # ------------------------------------------------------------------

    def estimate_cost(self, request: UnifiedRequest) -> float:
        """Estimate the cost of a request before making it.

        Input tokens are approximated as ``ceil(chars / 4)``; output tokens
        as ``max_tokens`` (default 1000).

        Returns:
            Estimated cost in USD, or 0.0 for an unrecognized model.
        """
        input_tokens = math.ceil(request.text_length() / 4)
        output_tokens = request.max_tokens or DEFAULT_OUTPUT_TOKENS
        return self.cost_from_tokens(self._model_for(request), input_tokens, output_tokens)

    def cost_from_tokens(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        pricing = self.profile.pricing_for(model)
        if pricing is None:
            return 0.0
        return (prompt_tokens / 1000) * pricing.input + (completion_tokens / 1000) * pricing.output

    def _usage(self, model: str, prompt_tokens: int, completion_tokens: int, total: Optional[int] = None) -> Usage:
        return Usage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total if total is not None else prompt_tokens + completion_tokens,
            estimated_cost=self.cost_from_tokens(model, prompt_tokens, completion_tokens),
        )

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def complete(self, request: UnifiedRequest) -> UnifiedResponse:
        """Send a non-streaming completion.

        Returns:
            The normalized response.

        Raises:
            ValidationError: If the request is out of provider bounds.
            ProviderError: For every transport or HTTP failure.
        """
        model = self._model_for(request)
        payload = self.to_wire(request)
        logger.debug(f"{self.provider_name} completion request for {model}")
        try:
            data = await self._get_http().post(
                self._completion_path(model), json=payload, params=self._query_params()
            )
        except httpx.HTTPError as e:
            raise self.translate_error(e) from None
        return self._parse_or_raise(data, model)

    def _parse_or_raise(self, data: Any, model: str) -> UnifiedResponse:
        if not isinstance(data, dict):
            raise ProviderError(
                "Provider returned a non-JSON body",
                self.provider_name,
                kind=ErrorKind.INVALID_RESPONSE,
            )
        try:
            return self.parse_response(data, model)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderError(
                f"Malformed provider response: {type(e).__name__}",
                self.provider_name,
                kind=ErrorKind.INVALID_RESPONSE,
            ) from e

    def stream(self, request: UnifiedRequest, timeout: Optional[float] = None) -> ChunkStream:
        """Start a streaming completion.

        Validation happens immediately; the network request is issued on the
        first pull.
        """
        model = self._model_for(request)
        payload = self.to_wire(request, stream=True)
        return ChunkStream(self._stream_chunks(payload, model), provider=self.provider_name, timeout=timeout)

    async def _stream_chunks(self, payload: Dict[str, Any], model: str) -> AsyncIterator[UnifiedStreamChunk]:
        state = StreamState(id=f"stream_{uuid.uuid4().hex}", model=model)
        http = self._get_http()
        chunks = http.stream("POST", self._stream_path(model), json=payload, params=self._query_params(stream=True))
        lines = iter_lines(chunks)
        try:
            async for line in lines:
                data = sse_data(line)
                if data is None or not data:
                    continue
                if data == "[DONE]":
                    return
                try:
                    event = json.loads(data)
                except ValueError:
                    logger.debug(f"Skipping malformed {self.provider_name} stream event")
                    continue
                if not isinstance(event, dict):
                    continue
                for chunk in self.parse_stream_event(event, state):
                    yield chunk
                if state.finished:
                    return
        except httpx.HTTPError as e:
            raise self.translate_error(e) from None
        finally:
            # Release the connection even when the consumer stops early
            await lines.aclose()
            await chunks.aclose()

    async def generate_images(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        raise UnsupportedOperationError("generate_images", self.provider_name)

    async def _ping(self) -> None:
        """Minimal request proving credentials and connectivity."""
        probe = UnifiedRequest(
            messages=[UnifiedMessage(role="user", content="ping")],
            max_tokens=1,
        )
        await self.complete(probe)

    async def health_check(self) -> Dict[str, Any]:
        """Probe the provider; never raises.

        Returns:
            ``{provider, healthy, latency_ms, error?, capabilities}``.
        """
        started = time.perf_counter()
        error: Optional[str] = None
        try:
            await self._ping()
        except AIError as e:
            error = e.message
        except httpx.HTTPError as e:
            error = self.translate_error(e).message
        latency_ms = (time.perf_counter() - started) * 1000
        result: Dict[str, Any] = {
            "provider": self.provider_name,
            "healthy": error is None,
            "latency_ms": round(latency_ms, 2),
            "capabilities": sorted(c.value for c in self.capabilities()),
        }
        if error is not None:
            result["error"] = error
        return result

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def _redact(self, text: str) -> str:
        return redact_text(text, [self.config.api_key])

    def translate_error(self, error: Exception) -> AIError:
        """Map a transport exception onto the error taxonomy."""
        if isinstance(error, AIError):
            return error
        if isinstance(error, httpx.HTTPStatusError):
            return self._translate_status(error.response)
        if isinstance(error, httpx.TimeoutException):
            return RequestTimeoutError(
                f"Request timed out ({type(error).__name__})",
                self.provider_name,
                timeout=self.config.timeout,
            )
        if isinstance(error, httpx.RequestError):
            return NetworkError(
                f"Network error: {self._redact(str(error)) or type(error).__name__}",
                self.provider_name,
            )
        return ProviderError(
            self._redact(str(error)) or type(error).__name__,
            self.provider_name,
            kind=ErrorKind.INVALID_RESPONSE,
        )

    def _error_message(self, body: Any) -> Optional[str]:
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str):
                return error
            if body.get("message"):
                return str(body["message"])
        if isinstance(body, str) and body.strip():
            return body.strip()[:500]
        return None

    def _retry_after(self, response: httpx.Response, body: Any) -> Optional[float]:
        header = response.headers.get("retry-after")
        if header:
            try:
                return max(0.0, float(header))
            except ValueError:
                logger.debug(f"Ignoring non-numeric Retry-After header: {header}")
        return None

    def _translate_status(self, response: httpx.Response) -> AIError:
        status = response.status_code
        try:
            body = parse_body(response)
        except httpx.ResponseNotRead:
            body = None
        provider_message = self._error_message(body)
        request_id = response.headers.get("x-request-id") or response.headers.get("request-id")
        detail = f": {self._redact(provider_message)}" if provider_message else ""
        common = {
            "status_code": status,
            "provider_message": self._redact(provider_message) if provider_message else None,
            "request_id": request_id,
        }

        if status in (401, 403):
            return AuthenticationError(f"Authentication failed (HTTP {status}){detail}", self.provider_name, **common)
        if status == 429:
            retry_after = self._retry_after(response, body)
            limit_type = "tokens" if provider_message and "token" in provider_message.lower() else "requests"
            return RateLimitError(
                f"Rate limited{detail}",
                self.provider_name,
                retry_after=retry_after,
                limit_type=limit_type,
                **common,
            )
        if status == 408:
            return RequestTimeoutError(f"Provider timed out (HTTP 408){detail}", self.provider_name, **common)
        if status >= 500:
            return ProviderError(f"HTTP {status}{detail}", self.provider_name, kind=ErrorKind.SERVER, **common)
        return ProviderError(f"HTTP {status}{detail}", self.provider_name, kind=ErrorKind.CLIENT, **common)


def text_parts(message: UnifiedMessage) -> List[Any]:
    """Content of ``message`` as a list of parts."""
    if isinstance(message.content, str):
        return [TextPart(text=message.content)] if message.content else []
    return list(message.content)
