"""Error taxonomy shared by every layer.

Every failure surfaced by this package is an ``AIError`` carrying a stable
``code`` plus optional ``status_code``, ``provider``, ``request_id`` and
``details``. ``to_dict()`` is the contract consumers should depend on; it is
always redacted.
"""

import re
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class ErrorKind(str, Enum):
    """Classification used by the retry and fallback policies."""
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    CLIENT = "client"
    INVALID_RESPONSE = "invalid_response"
    CIRCUIT_OPEN = "circuit_open"
    UNSUPPORTED = "unsupported"
    NO_PROVIDER = "no_provider"
    ALL_FAILED = "all_failed"


RETRYABLE_KINDS = frozenset({
    ErrorKind.RATE_LIMIT,
    ErrorKind.NETWORK,
    ErrorKind.TIMEOUT,
    ErrorKind.SERVER,
})

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = frozenset({
    "api_key",
    "apikey",
    "api-key",
    "x-api-key",
    "x-goog-api-key",
    "authorization",
    "proxy-authorization",
    "key",
    "token",
    "access_token",
    "secret",
    "password",
})

_QUERY_KEY_PATTERN = re.compile(r"([?&](?:key|api_key|access_token)=)[^&\s'\"]+", re.IGNORECASE)
_BEARER_PATTERN = re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+", re.IGNORECASE)
_KEY_LIKE_PATTERN = re.compile(r"\b(sk-[A-Za-z0-9_\-]{8,}|sk-ant-[A-Za-z0-9_\-]{8,}|AIza[0-9A-Za-z_\-]{20,})")


def redact_text(text: str, secrets: Iterable[Optional[str]] = ()) -> str:
    """Scrub credentials from free text.

    Args:
        text: Text that may contain credentials (URLs, provider messages).
        secrets: Known secret values to mask verbatim.

    Returns:
        The text with every known secret, ``key=`` query value, bearer token
        and well-known key shape replaced by ``[REDACTED]``.
    """
    if not text:
        return text
    for secret in secrets:
        if secret and len(secret) >= 4:
            text = text.replace(secret, REDACTED)
    text = _QUERY_KEY_PATTERN.sub(rf"\1{REDACTED}", text)
    text = _BEARER_PATTERN.sub(rf"\1{REDACTED}", text)
    return _KEY_LIKE_PATTERN.sub(REDACTED, text)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with sensitive mapping entries masked.

    Nested dicts and lists are walked recursively; strings are passed
    through ``redact_text``.
    """
    if isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in SENSITIVE_KEYS:
                cleaned[key] = REDACTED
            else:
                cleaned[key] = redact(item)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    if isinstance(value, str):
        return redact_text(value)
    return value


class AIError(Exception):
    """Base exception for every error raised by this package."""

    code = "AI_ERROR"
    kind = ErrorKind.CLIENT

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """Initialize the error.

        Args:
            message: Human readable message. It is redacted before storage.
            provider: Name of the provider involved, if any.
            status_code: HTTP status returned by the provider, if any.
            request_id: Provider request id, if one was returned.
            details: Extra structured context.
        """
        message = redact_text(message)
        prefix = f"[{provider}] " if provider else ""
        super().__init__(f"{prefix}{message}")
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.request_id = request_id
        self.details = redact(details or {})

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the public error contract."""
        return {
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "provider": self.provider,
            "request_id": self.request_id,
            "details": redact(self.details),
        }


class ProviderError(AIError):
    """A provider call failed."""

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        kind: ErrorKind = ErrorKind.SERVER,
        status_code: Optional[int] = None,
        provider_message: Optional[str] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """Initialize the error.

        Args:
            message: Error message.
            provider: Name of the provider that raised the error.
            kind: Classification driving retry and fallback decisions.
            status_code: HTTP status code, if the failure was an HTTP response.
            provider_message: Message extracted from the provider's error body.
            request_id: Provider request id, if available.
            details: Extra structured context.
        """
        super().__init__(message, provider, status_code, request_id, details)
        self.kind = kind
        self.provider_message = redact_text(provider_message) if provider_message else None

    @property
    def recoverable(self) -> bool:
        return self.retryable

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["kind"] = self.kind.value
        if self.provider_message:
            data["provider_message"] = self.provider_message
        return data


class AuthenticationError(ProviderError):
    """Raised when provider authentication fails."""

    code = "AUTHENTICATION_FAILED"

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs: Any):
        super().__init__(message, provider, kind=ErrorKind.AUTHENTICATION, **kwargs)


class RateLimitError(ProviderError):
    """Raised when a provider rate limits the request."""

    code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        retry_after: Optional[float] = None,
        limit_type: str = "requests",
        **kwargs: Any,
    ):
        """Initialize the rate limit error.

        Args:
            message: Error message.
            provider: Name of the provider.
            retry_after: Seconds to wait before retrying, if provided.
            limit_type: One of ``requests``, ``tokens`` or ``cost``.
        """
        super().__init__(message, provider, kind=ErrorKind.RATE_LIMIT, **kwargs)
        self.retry_after = retry_after
        self.limit_type = limit_type
        self.details.setdefault("limit_type", limit_type)
        if retry_after is not None:
            self.details.setdefault("retry_after", retry_after)


class NetworkError(ProviderError):
    """Raised when the provider could not be reached."""

    code = "NETWORK_ERROR"

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs: Any):
        super().__init__(message, provider, kind=ErrorKind.NETWORK, **kwargs)


class RequestTimeoutError(ProviderError):
    """Raised when a call exceeds its deadline."""

    code = "TIMEOUT"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ):
        super().__init__(message, provider, kind=ErrorKind.TIMEOUT, **kwargs)
        self.timeout = timeout
        if timeout is not None:
            self.details.setdefault("timeout", timeout)


class ValidationError(AIError):
    """Raised when a request fails validation before reaching the wire."""

    code = "VALIDATION_ERROR"
    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        provider: Optional[str] = None,
    ):
        """Initialize the validation error.

        Args:
            message: Error message.
            field: Dotted path of the offending field.
            value: The rejected value.
            provider: Provider whose bounds were violated, if any.
        """
        super().__init__(
            message,
            provider,
            status_code=400,
            details={"field": field, "value": _safe_value(value)},
        )
        self.field = field
        self.value = value


class CircuitOpenError(AIError):
    """Raised when a circuit breaker rejects a call without trying it."""

    code = "CIRCUIT_BREAKER_OPEN"
    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, message: str, circuit_name: str, retry_after: float, provider: Optional[str] = None):
        super().__init__(
            message,
            provider,
            status_code=503,
            details={"circuit": circuit_name, "retry_after": retry_after},
        )
        self.circuit_name = circuit_name
        self.retry_after = retry_after


class UnsupportedOperationError(AIError):
    """Raised when a provider does not implement an operation."""

    code = "UNSUPPORTED_OPERATION"
    kind = ErrorKind.UNSUPPORTED

    def __init__(self, operation: str, provider: Optional[str] = None):
        super().__init__(
            f"Operation '{operation}' is not supported",
            provider,
            details={"operation": operation},
        )
        self.operation = operation


class NoSuitableProviderError(AIError):
    """Raised when selection finds zero eligible candidates."""

    code = "NO_SUITABLE_PROVIDER"
    kind = ErrorKind.NO_PROVIDER

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class AllProvidersFailedError(AIError):
    """Raised when the primary and every fallback failed."""

    code = "ALL_PROVIDERS_FAILED"
    kind = ErrorKind.ALL_FAILED

    def __init__(
        self,
        primary: str,
        fallbacks: List[str],
        errors: Optional[Dict[str, Exception]] = None,
    ):
        """Initialize the error.

        Args:
            primary: Provider tried first.
            fallbacks: Fallback chain in the order it was tried.
            errors: Last error per attempted provider.
        """
        errors = errors or {}
        chain = ", ".join(fallbacks) if fallbacks else "none"
        super().__init__(
            f"All providers failed. Primary: {primary}, Fallbacks: {chain}",
            provider=primary,
            details={
                "primary": primary,
                "fallbacks": list(fallbacks),
                "errors": {name: sanitize_error_for_logging(err) for name, err in errors.items()},
            },
        )
        self.primary = primary
        self.fallbacks = list(fallbacks)
        self.errors = errors

    @property
    def attempted(self) -> List[str]:
        return [self.primary] + self.fallbacks


def _safe_value(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        if isinstance(value, str) and len(value) > 200:
            return value[:200] + "..."
        return value
    return repr(value)[:200]


def is_retryable(error: BaseException) -> bool:
    """Whether the resilience layer may retry after ``error``."""
    return isinstance(error, AIError) and error.retryable


def blocks_fallback(error: BaseException) -> bool:
    """Whether ``error`` indicates a request or config defect.

    Such errors are never retried and never trigger fallback.
    """
    return isinstance(error, (AuthenticationError, ValidationError))


def sanitize_error_for_logging(error: BaseException) -> Dict[str, Any]:
    """Return a redacted, JSON-friendly description of ``error``."""
    if isinstance(error, AIError):
        return error.to_dict()
    return {
        "code": "UNKNOWN_ERROR",
        "message": redact_text(str(error)),
        "type": type(error).__name__,
    }
