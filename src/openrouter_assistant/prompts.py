"""
Prompt assembly: personas, operating modes, and the message list sent upstream.

The orchestrator never looks inside these messages; it only transports them.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .contracts import ChatMessage

HISTORY_WINDOW = 10


class PersonalityMode(str, Enum):
    MENTOR = "mentor"
    BESTFRIEND = "bestfriend"
    STRICT = "strict"
    CHAOS = "chaos"


class OperatingMode(str, Enum):
    ASSISTANT = "assistant"
    CHAT = "chat"


class IntentType(str, Enum):
    MODE_SWITCH = "mode_switch"
    CHAT_MODE = "chat_mode"
    ASSISTANT_MODE = "assistant_mode"
    RESET_MEMORY = "reset_memory"
    HELP = "help"
    PROMPT_ENGINEER = "prompt_engineer"
    THOUGHT_DUMP = "thought_dump"
    GENERAL = "general"


@dataclass(frozen=True)
class Persona:
    tone: str
    system_prompt: str


PERSONAS: dict[PersonalityMode, Persona] = {
    PersonalityMode.MENTOR: Persona(
        tone="professional, wise, encouraging",
        system_prompt=(
            "You are a wise and supportive mentor. Explain concepts patiently, provide concrete examples, "
            "and encourage professional growth."
        ),
    ),
    PersonalityMode.BESTFRIEND: Persona(
        tone="casual, direct, helpful",
        system_prompt=(
            "You are a helpful and intelligent peer. Speak naturally but professionally. "
            "Be direct and helpful without unnecessary formalities."
        ),
    ),
    PersonalityMode.STRICT: Persona(
        tone="concise, efficient, technical",
        system_prompt=(
            "You are an efficient technical assistant. Be direct, concise, and focus on the solution. "
            "Avoid formatting fluff or small talk."
        ),
    ),
    PersonalityMode.CHAOS: Persona(
        tone="creative, lateral thinking, out-of-the-box",
        system_prompt=(
            "You are a creative brainstorming partner. Offer out-of-the-box ideas and lateral thinking. "
            "Focus on innovation and unique solutions."
        ),
    ),
}

DEFAULT_MODE = PersonalityMode.BESTFRIEND

ASSISTANT_CORE_PROMPT = """You are a Personal AI Assistant. Your primary purpose is to reduce cognitive load and automate tasks for the user.

IDENTITY & BEHAVIOR:
- You are an efficient task-oriented assistant, NOT a general chatbot
- Prioritize clarity over verbosity
- Ask for clarification if the user's intent is ambiguous
- Prefer actionable steps, workflows, or decisions over generic explanations
- Acknowledge uncertainty and state limitations when necessary

RESPONSE GUIDELINES:
1. Use structured responses (bullets, numbered steps) when appropriate
2. Keep answers concise unless deeper detail is requested
3. Prioritize precision and usefulness over creativity
4. Only explain reasoning if it adds value
5. No emojis unless specifically relevant

Before answering, silently check that the response is actionable and matches the user's intent.
If it does not, ask one focused clarifying question instead. Never output this check."""

_CHAT_TRIGGERS = (
    "let's chat",
    "mari ngobrol",
    "chat mode",
    "mode chat",
    "just talk",
    "casual talk",
    "let's discuss",
    "brainstorm with me",
)

_MODE_TRIGGERS: tuple[tuple[tuple[str, ...], PersonalityMode], ...] = (
    (("mode mentor", "set mentor"), PersonalityMode.MENTOR),
    (("mode friend", "mode santai"), PersonalityMode.BESTFRIEND),
    (("mode strict", "mode serius"), PersonalityMode.STRICT),
    (("mode creative", "mode chaos"), PersonalityMode.CHAOS),
)

_PROMPT_ENGINEER_TRIGGERS = ("create prompt", "improve prompt", "convert to prompt", "bikinin prompt")

_HALLUCINATION_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"as of my (last |knowledge )?cutoff",
        r"I don't have (access to )?real-time",
        r"my training data (only goes|ends)",
        r"I cannot browse the internet",
        r"I don't have the ability to access",
    )
)


@dataclass(frozen=True)
class Intent:
    type: IntentType
    mode: PersonalityMode | None = None
    data: str | None = None


def detect_operating_mode(text: str) -> OperatingMode:
    lowered = text.lower().strip()
    if any(trigger in lowered for trigger in _CHAT_TRIGGERS):
        return OperatingMode.CHAT
    return OperatingMode.ASSISTANT


def detect_intent(text: str) -> Intent:
    lowered = text.lower().strip()

    if "chat mode" in lowered or "mode chat" in lowered:
        return Intent(IntentType.CHAT_MODE)

    if "assistant mode" in lowered or "mode assistant" in lowered:
        return Intent(IntentType.ASSISTANT_MODE)

    for triggers, mode in _MODE_TRIGGERS:
        if any(t in lowered for t in triggers):
            return Intent(IntentType.MODE_SWITCH, mode=mode)

    if "reset memory" in lowered or "clear memory" in lowered:
        return Intent(IntentType.RESET_MEMORY)

    if lowered in ("help", "/help"):
        return Intent(IntentType.HELP)

    if any(t in lowered for t in _PROMPT_ENGINEER_TRIGGERS):
        return Intent(IntentType.PROMPT_ENGINEER, data=text)

    # Long unstructured input with no question is treated as a brain dump.
    if len(text) > 300 and "?" not in text and len(text.split("\n")) <= 3:
        return Intent(IntentType.THOUGHT_DUMP, data=text)

    return Intent(IntentType.GENERAL)


HELP_TEXT = """**Available Commands**

**Modes:** `mode mentor`, `mode friend`, `mode strict`, `mode creative`
**Chat:** Say "chat mode" for casual conversation, "assistant mode" to go back
**Reset:** `reset memory` to clear history
**Help:** `help` to show this message"""


CHAT_MODE_TEXT = (
    "Switched to **Chat Mode**. I'll be more conversational now. "
    'Say "assistant mode" to return to task-focused mode.'
)

ASSISTANT_MODE_TEXT = "Switched to **Assistant Mode**. Back to task-focused answers."

PROMPT_ENGINEER_TEXT = """**Prompt Engineering**

To generate an optimized prompt, please provide:
1. Target Role/Persona
2. Task Description
3. Desired Output Format"""

THOUGHT_DUMP_TEXT = """**Processing Input**

Extracting key points and action items..."""


def special_reply(intent: Intent) -> str | None:
    """Canned reply for intents that are answered without calling a model."""
    if intent.type is IntentType.MODE_SWITCH and intent.mode is not None:
        return f"Mode switched to: **{intent.mode.value}**"
    if intent.type is IntentType.CHAT_MODE:
        return CHAT_MODE_TEXT
    if intent.type is IntentType.ASSISTANT_MODE:
        return ASSISTANT_MODE_TEXT
    if intent.type is IntentType.HELP:
        return HELP_TEXT
    if intent.type is IntentType.RESET_MEMORY:
        return "**Memory cleared.** Starting fresh."
    return None


def intent_preamble(intent: Intent) -> str | None:
    """Lead-in shown before the model answer for intents that still call a model."""
    if intent.type is IntentType.PROMPT_ENGINEER:
        return PROMPT_ENGINEER_TEXT
    if intent.type is IntentType.THOUGHT_DUMP:
        return THOUGHT_DUMP_TEXT
    return None


def system_prompt(
    mode: PersonalityMode = DEFAULT_MODE,
    operating_mode: OperatingMode = OperatingMode.ASSISTANT,
    *,
    now: datetime | None = None,
) -> str:
    persona = PERSONAS[mode]
    now = now or datetime.now()
    context = f"CONTEXT:\n- Date: {now.strftime('%A, %d %B %Y')}\n- Year: {now.year}"

    if operating_mode is OperatingMode.CHAT:
        return (
            "You are in CHAT MODE - casual conversation and discussion.\n"
            f"{persona.system_prompt}\n\n{context}\n\n"
            "In chat mode, you may be more conversational, but still remain helpful and professional."
        )

    return (
        f"{ASSISTANT_CORE_PROMPT}\n\n"
        f"PERSONALITY OVERLAY: {persona.tone}\n{persona.system_prompt}\n\n"
        f"{context}\n\n"
        "PRIVACY & ETHICS:\n"
        "- Do NOT store or infer user identity/profile\n"
        "- Focus ONLY on the current conversation context"
    )


def build_messages(
    text: str,
    *,
    mode: PersonalityMode = DEFAULT_MODE,
    history: Sequence[ChatMessage] = (),
    operating_mode: OperatingMode | None = None,
    now: datetime | None = None,
) -> list[ChatMessage]:
    prompt = system_prompt(mode, operating_mode or detect_operating_mode(text), now=now)
    window = list(history)[-2 * HISTORY_WINDOW :]
    return [
        ChatMessage(role="system", content=prompt),
        *(m for m in window if m.role != "system"),
        ChatMessage(role="user", content=text),
    ]


def detect_potential_hallucination(text: str) -> bool:
    return any(p.search(text) for p in _HALLUCINATION_PATTERNS)
