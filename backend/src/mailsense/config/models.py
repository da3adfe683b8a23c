"""
Configuration Models.

All configuration models use Pydantic for validation. Every field can be
overridden from the environment with a ``MAILSENSE_`` prefixed key, or with
the bare key.
"""

from __future__ import annotations

import os
from ipaddress import ip_address
from typing import Any, Literal

from pydantic import (
    AnyHttpUrl,
    BaseModel,
    Field,
    RedisDsn,
    SecretStr,
    field_validator,
    model_validator,
)

# -----------------------------------------------------------------------------
# Environment Variable Helper
# -----------------------------------------------------------------------------

ENV_PREFIX = "MAILSENSE_"


def _env(key: str, default: Any, value_type: type = str) -> Any:
    """
    Get environment variable with MAILSENSE_ prefix fallback.

    Args:
        key: Environment variable name (without prefix)
        default: Default value if not set
        value_type: Type to convert value to

    Returns:
        Environment variable value or default
    """
    prefixed_key = f"{ENV_PREFIX}{key}"

    value = os.getenv(prefixed_key)
    source_key = prefixed_key if value is not None else None
    if value is None:
        value = os.getenv(key)
        if value is not None:
            source_key = key

    if value is None:
        return default
    try:
        if value_type is bool:
            normalized = str(value).strip().lower()
            if normalized in ("true", "1", "yes", "on"):
                return True
            if normalized in ("false", "0", "no", "off"):
                return False
            raise ValueError("Invalid boolean value")
        if value_type is int:
            return int(value)
        if value_type is float:
            return float(value)
        return value
    except (ValueError, TypeError) as exc:
        key_name = source_key or key
        raise ValueError(
            f"Invalid value for {key_name}; expected {value_type.__name__}."
        ) from exc


def _env_list(key: str, default: str = "") -> list[str]:
    """Get a comma-separated env var as a list of trimmed strings."""
    raw = _env(key, default)
    if raw is None:
        return []
    return [part.strip() for part in str(raw).split(",") if part.strip()]


_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _is_local_host(host: str | None) -> bool:
    if not host:
        return False
    if host in _LOCAL_HOSTS:
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def _unwrap_secret(value: SecretStr | str | None) -> str | None:
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    return value


# -----------------------------------------------------------------------------
# Core Configuration
# -----------------------------------------------------------------------------


class CoreConfig(BaseModel):
    """Core application configuration."""

    env: Literal["dev", "staging", "prod"] = Field(
        default_factory=lambda: _env("ENV", "prod"),
        description="Environment name",
        validate_default=True,
    )
    service_name: str = Field(
        default_factory=lambda: _env("SERVICE_NAME", "mailsense"),
        description="Service name reported to tracing and logs",
    )
    version: str = Field(
        default_factory=lambda: _env("SERVICE_VERSION", "0.1.0"),
        description="Service version reported by /version",
    )

    @field_validator("env", mode="before")
    def normalize_env(cls, value: str) -> str:
        normalized = str(value).strip().lower()
        if normalized == "production":
            return "prod"
        return normalized

    model_config = {"extra": "forbid"}


# -----------------------------------------------------------------------------
# Database Configuration
# -----------------------------------------------------------------------------


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    url: str | None = Field(
        default_factory=lambda: _env("DB_URL", None),
        description="Async SQLAlchemy URL, e.g. postgresql+asyncpg://user:pw@host/db",
        validate_default=True,
    )
    pool_size: int = Field(
        default_factory=lambda: _env("DB_POOL_SIZE", 10, int),
        ge=1,
        le=100,
        description="Connection pool size",
    )
    max_overflow: int = Field(
        default_factory=lambda: _env("DB_MAX_OVERFLOW", 10, int),
        ge=0,
        le=50,
        description="Maximum pool overflow",
    )
    echo: bool = Field(
        default_factory=lambda: _env("DB_ECHO", False, bool),
        description="Log emitted SQL",
    )

    @field_validator("url", mode="before")
    def normalize_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        url = str(value).strip()
        if url.startswith("postgres://"):
            url = "postgresql://" + url[len("postgres://") :]
        if url.startswith("postgresql://"):
            url = "postgresql+asyncpg://" + url[len("postgresql://") :]
        return url or None

    model_config = {"extra": "forbid"}


# -----------------------------------------------------------------------------
# Redis Configuration
# -----------------------------------------------------------------------------


class RedisConfig(BaseModel):
    """Redis connection configuration."""

    url: RedisDsn = Field(
        default_factory=lambda: _env("REDIS_URL", "redis://localhost:6379"),
        description="Redis connection URL",
        validate_default=True,
    )
    password: SecretStr | None = Field(
        default_factory=lambda: _env("REDIS_PASSWORD", None),
        description="Redis password",
        validate_default=True,
    )

    @model_validator(mode="after")
    def validate_password(self) -> RedisConfig:
        """Require a password for non-local Redis endpoints."""
        if _is_local_host(self.url.host):
            return self
        if self.url.password or _unwrap_secret(self.password):
            return self
        raise ValueError("Redis password is required for non-local endpoints.")

    model_config = {"extra": "forbid"}


# -----------------------------------------------------------------------------
# Retry Configuration
# -----------------------------------------------------------------------------


class RetryConfig(BaseModel):
    """
    Retry and resilience configuration.

    Controls transport-level retry for model providers and extraction
    collaborators, plus the per-provider circuit breaker.
    """

    max_retries: int = Field(
        default_factory=lambda: _env("API_MAX_RETRIES", 3, int),
        ge=0,
        le=10,
        description="Maximum transport retry attempts",
    )
    initial_backoff_seconds: float = Field(
        default_factory=lambda: _env("API_BACKOFF_INITIAL", 1.0, float),
        ge=0.0,
        le=30.0,
        description="Initial backoff delay",
    )
    max_backoff_seconds: float = Field(
        default_factory=lambda: _env("API_BACKOFF_MAX", 10.0, float),
        ge=0.0,
        le=120.0,
        description="Maximum backoff delay",
    )
    circuit_failure_threshold: int = Field(
        default_factory=lambda: _env("CIRCUIT_FAILURE_THRESHOLD", 5, int),
        ge=1,
        le=50,
        description="Failures before circuit trips",
    )
    circuit_reset_seconds: int = Field(
        default_factory=lambda: _env("CIRCUIT_RESET_SECONDS", 60, int),
        ge=1,
        le=600,
        description="Circuit reset timeout",
    )

    model_config = {"extra": "forbid"}


# -----------------------------------------------------------------------------
# LLM Provider Configuration
# -----------------------------------------------------------------------------


class ProviderEndpointConfig(BaseModel):
    """OpenAI-compatible endpoint for one model provider family."""

    base_url: AnyHttpUrl
    api_key: SecretStr | None = None

    model_config = {"extra": "forbid"}


class LLMConfig(BaseModel):
    """Model provider endpoints and call defaults."""

    openai: ProviderEndpointConfig = Field(
        default_factory=lambda: ProviderEndpointConfig(
            base_url=_env("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            api_key=_env("OPENAI_API_KEY", None),
        )
    )
    anthropic: ProviderEndpointConfig = Field(
        default_factory=lambda: ProviderEndpointConfig(
            base_url=_env("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1/"),
            api_key=_env("ANTHROPIC_API_KEY", None),
        )
    )
    google: ProviderEndpointConfig = Field(
        default_factory=lambda: ProviderEndpointConfig(
            base_url=_env(
                "GEMINI_BASE_URL",
                "https://generativelanguage.googleapis.com/v1beta/openai/",
            ),
            api_key=_env("GEMINI_API_KEY", None),
        )
    )
    xai: ProviderEndpointConfig = Field(
        default_factory=lambda: ProviderEndpointConfig(
            base_url=_env("XAI_BASE_URL", "https://api.x.ai/v1"),
            api_key=_env("XAI_API_KEY", None),
        )
    )
    request_timeout_seconds: float = Field(
        default_factory=lambda: _env("LLM_TIMEOUT", 60.0, float),
        ge=1.0,
        le=600.0,
        description="Default request timeout when a definition sets none",
    )
    temperature: float = Field(
        default_factory=lambda: _env("LLM_TEMPERATURE", 0.7, float),
        ge=0.0,
        le=2.0,
    )
    max_tokens: int = Field(
        default_factory=lambda: _env("LLM_MAX_TOKENS", 4000, int),
        ge=1,
        le=64000,
    )
    summary_model: str = Field(
        default_factory=lambda: _env("SUMMARY_MODEL", "gpt-4o-mini"),
        description="Model used to merge thread summaries",
    )

    model_config = {"extra": "forbid"}


# -----------------------------------------------------------------------------
# Analysis Configuration
# -----------------------------------------------------------------------------


class AnalysisConfig(BaseModel):
    """Defaults for the analysis catalog and pipeline."""

    primary_model: str = Field(
        default_factory=lambda: _env("ANALYSIS_PRIMARY_MODEL", "gemini-2.0-flash"),
    )
    fallback_model: str | None = Field(
        default_factory=lambda: _env("ANALYSIS_FALLBACK_MODEL", "gemini-1.5-flash"),
    )
    validation_retries: int = Field(
        default_factory=lambda: _env("ANALYSIS_VALIDATION_RETRIES", 1, int),
        ge=0,
        le=5,
        description="Extra attempts after a schema validation failure",
    )
    use_thread_summaries: bool = Field(
        default_factory=lambda: _env("USE_THREAD_SUMMARIES", True, bool),
    )
    thread_context_max_messages: int = Field(
        default_factory=lambda: _env("THREAD_CONTEXT_MAX_MESSAGES", 5, int),
        ge=1,
        le=50,
    )
    thread_context_preview_chars: int = Field(
        default_factory=lambda: _env("THREAD_CONTEXT_PREVIEW_CHARS", 300, int),
        ge=50,
        le=5000,
    )
    tenant_domains: list[str] = Field(
        default_factory=lambda: _env_list("TENANT_DOMAINS"),
        description="Email domains owned by the tenant (system users)",
    )

    model_config = {"extra": "forbid"}


# -----------------------------------------------------------------------------
# Collaborator Configuration
# -----------------------------------------------------------------------------


class CollaboratorConfig(BaseModel):
    """Domain/contact extraction service endpoint."""

    base_url: str = Field(
        default_factory=lambda: _env(
            "EXTRACTION_BASE_URL", "http://localhost:8001/api/analysis"
        ),
    )
    api_key: SecretStr | None = Field(
        default_factory=lambda: _env("EXTRACTION_API_KEY", None),
        validate_default=True,
    )
    timeout_seconds: float = Field(
        default_factory=lambda: _env("EXTRACTION_TIMEOUT", 30.0, float),
        ge=1.0,
        le=300.0,
    )

    model_config = {"extra": "forbid"}


# -----------------------------------------------------------------------------
# Durable Execution Configuration
# -----------------------------------------------------------------------------


class DurableConfig(BaseModel):
    """Retry schedule and idempotency window for durable functions."""

    max_retries: int = Field(
        default_factory=lambda: _env("DURABLE_MAX_RETRIES", 9, int),
        ge=0,
        le=50,
    )
    initial_delay_seconds: float = Field(
        default_factory=lambda: _env("DURABLE_INITIAL_DELAY", 60.0, float),
        ge=0.0,
    )
    max_delay_seconds: float = Field(
        default_factory=lambda: _env("DURABLE_MAX_DELAY", 1800.0, float),
        ge=0.0,
    )
    idempotency_ttl_seconds: int = Field(
        default_factory=lambda: _env("DURABLE_IDEMPOTENCY_TTL", 86400, int),
        ge=1,
    )
    poll_interval_seconds: float = Field(
        default_factory=lambda: _env("WORKER_POLL_INTERVAL", 1.0, float),
        ge=0.0,
        le=60.0,
    )

    model_config = {"extra": "forbid"}


# -----------------------------------------------------------------------------
# System Configuration
# -----------------------------------------------------------------------------


class SystemConfig(BaseModel):
    """System-level configuration."""

    log_level: str = Field(
        default_factory=lambda: _env("LOG_LEVEL", "INFO"), description="Logging level"
    )
    queue_type: Literal["memory", "redis"] = Field(
        default_factory=lambda: _env("QUEUE_TYPE", "memory"),
        description="Job queue backend",
        validate_default=True,
    )
    enable_tracing: bool = Field(
        default_factory=lambda: _env("ENABLE_TRACING", True, bool),
    )
    trace_sample_rate: float = Field(
        default_factory=lambda: _env("TRACE_SAMPLE_RATE", 1.0, float),
        ge=0.0,
        le=1.0,
    )

    model_config = {"extra": "forbid"}
