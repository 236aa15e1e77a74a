from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .contracts import ChatMessage
from .prompts import PersonalityMode


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: str
    session_id: str | None = None
    mode: PersonalityMode | None = None
    model: str | None = None
    history: list[HistoryMessage] | None = None
    temperature: float | None = None
    max_tokens: int | None = None

    @field_validator("message")
    @classmethod
    def _validate_message(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must be non-empty.")
        return v

    @field_validator("temperature")
    @classmethod
    def _validate_temperature(cls, v: float | None) -> float | None:
        if v is None:
            return None
        if not (0.0 <= v <= 2.0):
            raise ValueError("temperature must be between 0 and 2.")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _validate_max_tokens(cls, v: int | None) -> int | None:
        if v is None:
            return None
        if v <= 0:
            raise ValueError("max_tokens must be > 0.")
        return v

    def history_messages(self) -> list[ChatMessage] | None:
        if self.history is None:
            return None
        return [ChatMessage(role=m.role, content=m.content) for m in self.history]


class ChatResponse(BaseModel):
    response: str
    session_id: str
    model_used: str | None = None
    fallback_used: bool = False
    attempt_count: int = 0
    processing_time_ms: int = 0
    mode: PersonalityMode | None = None
    special: str | None = None
    preamble: str | None = None


class ModelInfo(BaseModel):
    id: str
    display_name: str
    role: str
    description: str
    is_free: bool
    blocked: bool = False


class BlockedModelInfo(BaseModel):
    model_id: str
    reason: str
    remaining_ms: int


class ModelStatusResponse(BaseModel):
    blocked: list[BlockedModelInfo]
    available: list[str]
    fallback_stats: dict[str, Any]


class QRResponse(BaseModel):
    connected: bool = False
    status: Literal["connected", "waiting_scan", "error"]
    qr_code: str | None = None
    error: str | None = None


class WebhookAck(BaseModel):
    received: bool = True
    processed: int = 0
    error: str | None = None


class ErrorDetail(BaseModel):
    message: str
    type: str = "api_error"
    code: str | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


def make_error_response(*, message: str, type: str = "api_error", code: str | None = None) -> ErrorResponse:
    return ErrorResponse(error=ErrorDetail(message=message, type=type, code=code))


class EvolutionWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    def upsert_messages(self) -> list[dict[str, Any]]:
        if self.event != "messages.upsert":
            return []
        messages = self.data.get("messages")
        if isinstance(messages, list):
            return [m for m in messages if isinstance(m, dict)]
        # Evolution v2 delivers a single message object as `data`.
        if isinstance(self.data.get("key"), dict):
            return [self.data]
        return []
