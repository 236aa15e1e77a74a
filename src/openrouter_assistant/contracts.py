from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, ConfigDict

Role = Literal["system", "user", "assistant"]


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


@dataclass(frozen=True)
class CompletionRequest:
    messages: list[ChatMessage]
    preferred_model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    timeout_seconds: float | None = None


@dataclass(frozen=True)
class Completion:
    content: str
    tokens_used: int | None = None


@dataclass(frozen=True)
class CompletionResult:
    content: str
    model_used: str
    fallback_used: bool
    attempt_count: int
    processing_time_ms: int
    tokens_used: int | None = None
    fallback_reason: str | None = None
    models_tried: list[str] = field(default_factory=list)
