"""
Channel normalization.

Web and WhatsApp messages are converted into one ``NormalizedMessage`` so the
assistant core never needs to know which channel a message came from.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

Channel = Literal["web", "whatsapp"]


class NormalizationError(Exception):
    """Incoming message could not be normalized."""


class NormalizedMessage(BaseModel):
    text: str
    channel: Channel
    session_id: str
    timestamp: float = Field(default_factory=time.time)
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def phone_number(self) -> str | None:
        return self.metadata.get("phone_number")


# Evolution API `messages.upsert` item.
class WhatsAppMessageKey(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    remote_jid: str = Field(alias="remoteJid")
    from_me: bool = Field(default=False, alias="fromMe")
    id: str | None = None


class WhatsAppExtendedText(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str = ""


class WhatsAppMessageBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    conversation: str | None = None
    extended_text_message: WhatsAppExtendedText | None = Field(default=None, alias="extendedTextMessage")


class RawWhatsAppMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    key: WhatsAppMessageKey
    push_name: str | None = Field(default=None, alias="pushName")
    message: WhatsAppMessageBody | None = None


def generate_session_id(channel: Channel, identifier: str | None = None) -> str:
    if identifier:
        return f"{channel}-{identifier}"
    return f"{channel}-{uuid.uuid4().hex}"


def phone_from_jid(remote_jid: str) -> str:
    return remote_jid.split("@", 1)[0]


def normalize_web_message(content: str, session_id: str | None = None) -> NormalizedMessage:
    return NormalizedMessage(
        text=content,
        channel="web",
        session_id=session_id or generate_session_id("web"),
        metadata={"user_id": session_id} if session_id else {},
    )


def parse_whatsapp_message(raw: dict[str, Any] | RawWhatsAppMessage) -> RawWhatsAppMessage:
    if isinstance(raw, RawWhatsAppMessage):
        return raw
    try:
        return RawWhatsAppMessage.model_validate(raw)
    except ValidationError as e:
        raise NormalizationError(f"Invalid WhatsApp message: {e.error_count()} validation error(s)") from e


def normalize_whatsapp_message(raw: dict[str, Any] | RawWhatsAppMessage) -> NormalizedMessage:
    msg = parse_whatsapp_message(raw)
    body = msg.message or WhatsAppMessageBody()
    text = body.conversation or (body.extended_text_message.text if body.extended_text_message else "") or ""

    phone_number = phone_from_jid(msg.key.remote_jid)
    if not phone_number:
        raise NormalizationError("WhatsApp message has no sender.")

    metadata = {"phone_number": phone_number}
    if msg.push_name:
        metadata["push_name"] = msg.push_name
    if msg.key.id:
        metadata["message_id"] = msg.key.id

    return NormalizedMessage(
        text=text,
        channel="whatsapp",
        session_id=f"wa-{phone_number}",
        metadata=metadata,
    )
