"""Tests for the error taxonomy and credential redaction."""

from unified_ai.errors import (
    REDACTED,
    AllProvidersFailedError,
    AuthenticationError,
    CircuitOpenError,
    ErrorKind,
    NetworkError,
    ProviderError,
    RateLimitError,
    RequestTimeoutError,
    ValidationError,
    blocks_fallback,
    is_retryable,
    redact,
    redact_text,
    sanitize_error_for_logging,
)


class TestRedaction:
    def test_key_shapes(self):
        text = "keys sk-abcdefghijklmnop and sk-ant-api03-abcdefgh and AIzaSyA0123456789abcdefghijk"
        cleaned = redact_text(text)

        assert "sk-abcdefghijklmnop" not in cleaned
        assert "sk-ant-api03" not in cleaned
        assert "AIzaSy" not in cleaned
        assert cleaned.count(REDACTED) == 3

    def test_query_parameter_and_bearer(self):
        cleaned = redact_text(
            "GET https://example.com/v1/models?key=secretvalue&alt=sse "
            "Authorization: Bearer abc.def-123"
        )

        assert "secretvalue" not in cleaned
        assert "abc.def-123" not in cleaned
        assert "alt=sse" in cleaned

    def test_known_secret(self):
        assert redact_text("token is hunter2!", secrets=["hunter2"]) == f"token is {REDACTED}!"

    def test_nested_mapping(self):
        cleaned = redact({
            "headers": {"Authorization": "Bearer x", "x-api-key": "abc", "Accept": "application/json"},
            "items": [{"api_key": "abc"}, "plain"],
        })

        assert cleaned["headers"]["Authorization"] == REDACTED
        assert cleaned["headers"]["x-api-key"] == REDACTED
        assert cleaned["headers"]["Accept"] == "application/json"
        assert cleaned["items"] == [{"api_key": REDACTED}, "plain"]

    def test_message_redacted_on_construction(self):
        error = ProviderError("Invalid key sk-live-0123456789abcdef", "openai", status_code=401)

        assert "sk-live" not in error.message
        assert "sk-live" not in str(error)
        assert "sk-live" not in str(error.to_dict())


class TestErrorContract:
    def test_to_dict(self):
        error = RateLimitError("slow down", "anthropic", retry_after=3.0, limit_type="tokens", status_code=429)
        data = error.to_dict()

        assert data["code"] == "RATE_LIMIT_EXCEEDED"
        assert data["status_code"] == 429
        assert data["provider"] == "anthropic"
        assert data["kind"] == "rate_limit"
        assert data["details"] == {"limit_type": "tokens", "retry_after": 3.0}

    def test_str_includes_provider(self):
        assert str(NetworkError("connection refused", "google")) == "[google] connection refused"

    def test_validation_error_fields(self):
        error = ValidationError("Number too large", field="temperature", value=5, provider="anthropic")

        assert error.status_code == 400
        assert error.details == {"field": "temperature", "value": 5}

    def test_long_values_truncated(self):
        error = ValidationError("bad", field="messages.0.content", value="x" * 500)
        assert len(error.details["value"]) == 203

    def test_all_providers_failed(self):
        errors = {"google": ProviderError("HTTP 500", "google"), "openai": NetworkError("refused", "openai")}
        error = AllProvidersFailedError("google", ["openai"], errors)

        assert error.attempted == ["google", "openai"]
        assert "Primary: google" in error.message
        assert error.details["errors"]["openai"]["code"] == "NETWORK_ERROR"


class TestClassification:
    def test_retryable_kinds(self):
        assert is_retryable(RateLimitError("x", "openai"))
        assert is_retryable(NetworkError("x", "openai"))
        assert is_retryable(RequestTimeoutError("x", "openai"))
        assert is_retryable(ProviderError("x", "openai", kind=ErrorKind.SERVER))

    def test_non_retryable_kinds(self):
        assert not is_retryable(AuthenticationError("x", "openai"))
        assert not is_retryable(ValidationError("x"))
        assert not is_retryable(ProviderError("x", "openai", kind=ErrorKind.CLIENT))
        assert not is_retryable(CircuitOpenError("open", "openai:gpt-4o", 10.0))
        assert not is_retryable(ValueError("x"))

    def test_blocks_fallback(self):
        assert blocks_fallback(AuthenticationError("x", "openai"))
        assert blocks_fallback(ValidationError("x"))
        assert not blocks_fallback(ProviderError("x", "openai", kind=ErrorKind.CLIENT))
        assert not blocks_fallback(CircuitOpenError("open", "openai:gpt-4o", 10.0))

    def test_sanitize_foreign_exception(self):
        data = sanitize_error_for_logging(RuntimeError("failed with key=abc123"))

        assert data["code"] == "UNKNOWN_ERROR"
        assert data["type"] == "RuntimeError"
        assert "abc123" in data["message"]
        data = sanitize_error_for_logging(RuntimeError("url?key=abc123"))
        assert "abc123" not in data["message"]
