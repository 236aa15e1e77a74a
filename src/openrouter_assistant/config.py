from __future__ import annotations

import os

from pydantic import BaseModel, Field, field_validator

from .completion_client import OPENROUTER_API_BASE
from .orchestrator import RetryPolicy


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class ModelSpec(BaseModel):
    id: str
    display_name: str | None = None
    description: str | None = None
    is_free: bool | None = None

    @field_validator("id")
    @classmethod
    def _validate_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("model id must be non-empty.")
        return v


def _models_from_env() -> list[ModelSpec]:
    return [ModelSpec(id=model_id) for model_id in _parse_csv(os.getenv("ASSISTANT_MODELS"))]


class AssistantConfig(BaseModel):
    # Upstream gateway
    openrouter_api_key: str | None = Field(default_factory=lambda: os.getenv("OPENROUTER_API_KEY"))
    openrouter_base_url: str = Field(
        default_factory=lambda: os.getenv("OPENROUTER_BASE_URL", OPENROUTER_API_BASE)
    )
    site_url: str = Field(default_factory=lambda: os.getenv("SITE_URL", "http://localhost:3000"))
    app_title: str = Field(default_factory=lambda: os.getenv("APP_TITLE", "AI Personal Assistant"))

    # Models (empty means the built-in default list)
    models: list[ModelSpec] = Field(default_factory=_models_from_env)

    # Generation defaults
    default_temperature: float = Field(
        default_factory=lambda: float(os.getenv("DEFAULT_TEMPERATURE", "0.5"))
    )
    default_max_tokens: int = Field(default_factory=lambda: int(os.getenv("DEFAULT_MAX_TOKENS", "1024")))

    # Retry / fallback policy
    attempt_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("ATTEMPT_TIMEOUT_SECONDS", "30"))
    )
    request_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("REQUEST_TIMEOUT_SECONDS", "120"))
    )
    max_same_model_attempts: int = Field(
        default_factory=lambda: int(os.getenv("MAX_SAME_MODEL_ATTEMPTS", "3"))
    )
    backoff_base_seconds: float = Field(
        default_factory=lambda: float(os.getenv("BACKOFF_BASE_SECONDS", "1.0"))
    )
    backoff_max_seconds: float = Field(
        default_factory=lambda: float(os.getenv("BACKOFF_MAX_SECONDS", "10.0"))
    )
    fallback_enabled: bool = Field(default_factory=lambda: _env_bool("FALLBACK_ENABLED", "true"))
    inter_model_backoff: bool = Field(default_factory=lambda: _env_bool("INTER_MODEL_BACKOFF", "true"))
    block_on_repeated_rate_limit: bool = Field(
        default_factory=lambda: _env_bool("BLOCK_ON_REPEATED_RATE_LIMIT", "false")
    )
    rate_limit_block_threshold: int = Field(
        default_factory=lambda: int(os.getenv("RATE_LIMIT_BLOCK_THRESHOLD", "3"))
    )

    # Quota guard
    quota_cooldown_seconds: float = Field(
        default_factory=lambda: float(os.getenv("QUOTA_COOLDOWN_SECONDS", "60"))
    )

    # Sessions
    session_ttl_seconds: float = Field(
        default_factory=lambda: float(os.getenv("SESSION_TTL_SECONDS", str(30 * 60)))
    )
    max_history_messages: int = Field(default_factory=lambda: int(os.getenv("MAX_HISTORY_MESSAGES", "20")))

    # WhatsApp relay (Evolution API)
    evolution_api_url: str | None = Field(default_factory=lambda: os.getenv("EVOLUTION_API_URL"))
    evolution_api_key: str | None = Field(default_factory=lambda: os.getenv("EVOLUTION_API_KEY"))
    evolution_instance: str = Field(default_factory=lambda: os.getenv("EVOLUTION_INSTANCE", "ai-assistant"))

    # Observability
    enable_metrics: bool = Field(default_factory=lambda: _env_bool("ENABLE_METRICS", "false"))
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))

    # Server hardening
    server_auth_token: str | None = Field(default_factory=lambda: os.getenv("SERVER_AUTH_TOKEN"))
    enable_api_docs: bool = Field(default_factory=lambda: _env_bool("ENABLE_API_DOCS", "false"))
    allowed_hosts: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ALLOWED_HOSTS")))
    cors_allow_origins: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("CORS_ALLOW_ORIGINS")))
    max_request_body_bytes: int = Field(
        default_factory=lambda: int(os.getenv("MAX_REQUEST_BODY_BYTES", str(256 * 1024)))
    )
    max_inflight_requests: int = Field(default_factory=lambda: int(os.getenv("MAX_INFLIGHT_REQUESTS", "32")))
    max_message_chars: int = Field(default_factory=lambda: int(os.getenv("MAX_MESSAGE_CHARS", "8000")))

    @field_validator("max_same_model_attempts", "rate_limit_block_threshold", "default_max_tokens")
    @classmethod
    def _validate_positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be > 0.")
        return v

    @field_validator("attempt_timeout_seconds", "session_ttl_seconds")
    @classmethod
    def _validate_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0.")
        return v

    @field_validator("default_temperature")
    @classmethod
    def _validate_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("temperature must be between 0 and 2.")
        return v

    @property
    def whatsapp_configured(self) -> bool:
        return bool(self.evolution_api_url)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_same_model_attempts=self.max_same_model_attempts,
            backoff_base_seconds=self.backoff_base_seconds,
            backoff_max_seconds=self.backoff_max_seconds,
            fallback_enabled=self.fallback_enabled,
            inter_model_backoff=self.inter_model_backoff,
            block_on_repeated_rate_limit=self.block_on_repeated_rate_limit,
            rate_limit_block_threshold=self.rate_limit_block_threshold,
            request_timeout_seconds=self.request_timeout_seconds or None,
        )
