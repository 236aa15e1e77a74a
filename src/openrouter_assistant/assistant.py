from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from .completion_client import CompletionClient
from .config import AssistantConfig
from .contracts import ChatMessage, CompletionRequest
from .errors import AssistantError, InvalidRequestError
from .models import ModelRegistry
from .normalizer import NormalizationError, NormalizedMessage, normalize_whatsapp_message
from .orchestrator import CompletionOrchestrator, GenerationDefaults
from .prompts import (
    IntentType,
    OperatingMode,
    PersonalityMode,
    build_messages,
    detect_intent,
    detect_potential_hallucination,
    intent_preamble,
    special_reply,
)
from .quota_guard import QuotaGuard
from .sessions import SessionStore
from .whatsapp import EvolutionClient

log = structlog.get_logger()

WHATSAPP_APOLOGY = "Sorry, I encountered an error processing your message. Please try again."


@dataclass(frozen=True)
class AssistantReply:
    content: str
    session_id: str
    channel: str
    model_used: str | None = None
    fallback_used: bool = False
    attempt_count: int = 0
    processing_time_ms: int = 0
    special: str | None = None
    mode: PersonalityMode | None = None
    preamble: str | None = None


class AssistantCore:
    """Channel-agnostic turn handling: intents, prompt assembly, orchestration, history."""

    def __init__(self, orchestrator: CompletionOrchestrator, sessions: SessionStore, *, max_message_chars: int = 0):
        self.orchestrator = orchestrator
        self.sessions = sessions
        self.max_message_chars = max_message_chars

    async def close(self) -> None:
        await self.orchestrator.client.close()

    async def handle(
        self,
        message: NormalizedMessage,
        *,
        mode: PersonalityMode | None = None,
        history: Sequence[ChatMessage] | None = None,
        preferred_model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        on_preamble: Callable[[str], Awaitable[object]] | None = None,
    ) -> AssistantReply:
        started = time.monotonic()
        text = message.text.strip()
        if not text:
            raise InvalidRequestError("Message is empty.")
        if self.max_message_chars and len(text) > self.max_message_chars:
            raise InvalidRequestError("Message content too large.")

        ctx = self.sessions.get(message.session_id)
        if mode is not None and mode is not ctx.mode:
            self.sessions.set_mode(message.session_id, mode)

        intent = detect_intent(text)
        canned = special_reply(intent)
        if canned is not None:
            if intent.type is IntentType.MODE_SWITCH and intent.mode is not None:
                self.sessions.set_mode(message.session_id, intent.mode)
            elif intent.type is IntentType.CHAT_MODE:
                self.sessions.set_operating_mode(message.session_id, OperatingMode.CHAT)
            elif intent.type is IntentType.ASSISTANT_MODE:
                self.sessions.set_operating_mode(message.session_id, OperatingMode.ASSISTANT)
            elif intent.type is IntentType.RESET_MEMORY:
                self.sessions.reset(message.session_id)
            log.info(
                "special_intent", intent=intent.type.value, session_id=message.session_id, channel=message.channel
            )
            return AssistantReply(
                content=canned,
                session_id=message.session_id,
                channel=message.channel,
                processing_time_ms=int((time.monotonic() - started) * 1000),
                special=intent.type.value,
                mode=ctx.mode,
            )

        preamble = intent_preamble(intent)
        if preamble is not None and on_preamble is not None:
            await on_preamble(preamble)

        # A session in chat mode stays there until "assistant mode"; otherwise each message decides.
        operating_mode = OperatingMode.CHAT if ctx.operating_mode is OperatingMode.CHAT else None
        turn_history = list(history) if history is not None else list(ctx.history)
        messages = build_messages(text, mode=ctx.mode, history=turn_history, operating_mode=operating_mode)
        result = await self.orchestrator.invoke(
            CompletionRequest(
                messages=messages,
                preferred_model=preferred_model,
                temperature=temperature,
                max_tokens=max_tokens,
            ),
            session_id=message.session_id,
            channel=message.channel,
        )

        if detect_potential_hallucination(result.content):
            log.warning("potential_hallucination", model=result.model_used, session_id=message.session_id)

        self.sessions.append_exchange(message.session_id, text, result.content)
        log.info(
            "assistant_turn",
            channel=message.channel,
            session_id=message.session_id,
            model=result.model_used,
            fallback_used=result.fallback_used,
            processing_time_ms=result.processing_time_ms,
        )
        return AssistantReply(
            content=result.content,
            session_id=message.session_id,
            channel=message.channel,
            model_used=result.model_used,
            fallback_used=result.fallback_used,
            attempt_count=result.attempt_count,
            processing_time_ms=result.processing_time_ms,
            special=intent.type.value if preamble is not None else None,
            mode=ctx.mode,
            preamble=preamble,
        )

    async def relay_whatsapp(self, raw: dict[str, Any], evolution: EvolutionClient) -> AssistantReply | None:
        """Answer one Evolution API message; failures are reported to the sender, never raised."""
        try:
            message = normalize_whatsapp_message(raw)
        except NormalizationError as e:
            log.warning("whatsapp_message_invalid", error=str(e))
            return None

        if not message.text.strip() or message.phone_number is None:
            return None

        try:
            reply = await self.handle(
                message, on_preamble=lambda text: evolution.send_text(message.phone_number, text)
            )
        except AssistantError as e:
            log.error("whatsapp_message_failed", session_id=message.session_id, error=str(e))
            await evolution.send_text(message.phone_number, WHATSAPP_APOLOGY)
            return None

        sent = await evolution.send_text(message.phone_number, reply.content)
        if sent.success:
            log.info("whatsapp_reply_sent", session_id=message.session_id, message_id=sent.message_id)
        return reply


def build_assistant(cfg: AssistantConfig, *, http_client: httpx.AsyncClient | None = None) -> AssistantCore:
    quota_guard = QuotaGuard(cfg.quota_cooldown_seconds)
    registry = ModelRegistry.from_config(cfg, quota_guard=quota_guard)
    client = CompletionClient(
        cfg.openrouter_api_key,
        client=http_client,
        base_url=cfg.openrouter_base_url,
        site_url=cfg.site_url,
        app_title=cfg.app_title,
    )
    orchestrator = CompletionOrchestrator(
        client,
        registry,
        quota_guard,
        cfg.retry_policy(),
        defaults=GenerationDefaults(
            temperature=cfg.default_temperature,
            max_tokens=cfg.default_max_tokens,
            attempt_timeout_seconds=cfg.attempt_timeout_seconds,
        ),
    )
    sessions = SessionStore(cfg.session_ttl_seconds, cfg.max_history_messages)
    return AssistantCore(orchestrator, sessions, max_message_chars=cfg.max_message_chars)
