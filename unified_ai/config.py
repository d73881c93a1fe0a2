"""Configuration for the unified AI layer."""

import os
from functools import lru_cache
from typing import Dict, Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


@lru_cache
def get_settings() -> "Settings":
    """Get cached settings instance."""
    return Settings()


class Settings:
    """Application settings."""

    def __init__(self):
        # API keys
        self.openai_api_key: str | None = _env_optional("OPENAI_API_KEY")
        self.openai_organization: str | None = _env_optional("OPENAI_ORGANIZATION")
        self.openai_project: str | None = _env_optional("OPENAI_PROJECT")
        self.anthropic_api_key: str | None = _env_optional("ANTHROPIC_API_KEY")
        self.google_api_key: str | None = _env_optional("GOOGLE_API_KEY")

        # API endpoints (None means the adapter default)
        self.openai_base_url: str | None = _env_optional("OPENAI_BASE_URL")
        self.anthropic_base_url: str | None = _env_optional("ANTHROPIC_BASE_URL")
        self.google_base_url: str | None = _env_optional("GOOGLE_BASE_URL")

        # Per-call deadline in seconds
        self.request_timeout: float = float(os.getenv("REQUEST_TIMEOUT", "60"))

        # Retry policy
        self.max_retries: int = int(os.getenv("MAX_RETRIES", "3"))
        self.retry_base_delay: float = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
        self.retry_max_delay: float = float(os.getenv("RETRY_MAX_DELAY", "30.0"))
        self.retry_multiplier: float = float(os.getenv("RETRY_MULTIPLIER", "2"))
        self.retry_jitter: bool = _env_bool("RETRY_JITTER", "true")

        # Circuit breaker
        self.circuit_failure_threshold: int = int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5"))
        self.circuit_recovery_timeout: float = float(os.getenv("CIRCUIT_RECOVERY_TIMEOUT", "60"))

        # Response cache
        self.redis_url: str | None = _env_optional("REDIS_URL")
        self.cache_ttl: int = int(os.getenv("CACHE_TTL", "3600"))  # 1 hour default
        self.cache_enabled: bool = _env_bool("CACHE_ENABLED", "true")

        # Routing
        self.provider_profiles_path: str | None = _env_optional("PROVIDER_PROFILES_PATH")
        self.default_strategy: str = os.getenv("DEFAULT_STRATEGY", "balanced")

    def credentials(self) -> Dict[str, str]:
        """Return configured API keys keyed by provider id.

        Providers without a key are omitted.
        """
        keys = {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "google": self.google_api_key,
        }
        return {name: key for name, key in keys.items() if key}

    def base_urls(self) -> Dict[str, Optional[str]]:
        """Return base URL overrides keyed by provider id."""
        return {
            "openai": self.openai_base_url,
            "anthropic": self.anthropic_base_url,
            "google": self.google_base_url,
        }

    def __repr__(self) -> str:
        configured = ", ".join(sorted(self.credentials())) or "none"
        return (
            f"Settings(providers=[{configured}], timeout={self.request_timeout}, "
            f"max_retries={self.max_retries}, redis_url={'***' if self.redis_url else None})"
        )
