"""
WhatsApp relay over the Evolution API (WhatsApp Web automation).

Not affiliated with Meta or WhatsApp. Every call returns a result object
instead of raising, so a webhook handler can always acknowledge delivery.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

log = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 15.0

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class ConnectionState:
    connected: bool
    phone_number: str | None = None


@dataclass(frozen=True)
class QRResult:
    success: bool
    connected: bool = False
    qr_code: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


def _qr_from(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    if isinstance(data.get("base64"), str) and data["base64"]:
        return data["base64"]
    qrcode = data.get("qrcode")
    if isinstance(qrcode, dict) and isinstance(qrcode.get("base64"), str) and qrcode["base64"]:
        return qrcode["base64"]
    return None


class EvolutionClient:
    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        instance: str = "ai-assistant",
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key or ""
        self.instance = instance
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {"apikey": self._api_key, "Content-Type": "application/json"}

    async def connection_state(self) -> ConnectionState:
        try:
            resp = await self._client.get(
                f"{self._base_url}/instance/connectionState/{self.instance}", headers=self._headers()
            )
        except httpx.HTTPError as e:
            log.warning("whatsapp_connection_state_failed", error=str(e))
            return ConnectionState(connected=False)
        if not resp.is_success:
            return ConnectionState(connected=False)
        try:
            data = resp.json()
        except ValueError:
            return ConnectionState(connected=False)
        instance = data.get("instance") if isinstance(data, dict) else None
        if not isinstance(instance, dict):
            return ConnectionState(connected=False)
        wuid = instance.get("wuid")
        return ConnectionState(
            connected=instance.get("state") == "open",
            phone_number=wuid.replace("@s.whatsapp.net", "") if isinstance(wuid, str) else None,
        )

    async def get_qr(self) -> QRResult:
        state = await self.connection_state()
        if state.connected:
            return QRResult(success=True, connected=True)

        try:
            resp = await self._client.get(f"{self._base_url}/instance/connect/{self.instance}", headers=self._headers())
        except httpx.HTTPError as e:
            log.warning("whatsapp_qr_failed", error=str(e))
            return QRResult(success=False, error="Failed to connect to Evolution API. Make sure it is running.")

        if resp.status_code == 404:
            return await self.create_instance()
        if not resp.is_success:
            log.warning("whatsapp_qr_failed", status_code=resp.status_code, body=resp.text[:500])
            return QRResult(success=False, error="Failed to get QR code")

        try:
            qr_code = _qr_from(resp.json())
        except ValueError:
            qr_code = None
        if qr_code:
            return QRResult(success=True, qr_code=qr_code)
        return QRResult(success=False, error="No QR code returned")

    async def create_instance(self) -> QRResult:
        try:
            resp = await self._client.post(
                f"{self._base_url}/instance/create",
                headers=self._headers(),
                json={"instanceName": self.instance, "qrcode": True},
            )
        except httpx.HTTPError as e:
            log.warning("whatsapp_create_instance_failed", error=str(e))
            return QRResult(success=False, error="Failed to create instance")

        if not resp.is_success:
            log.warning("whatsapp_create_instance_failed", status_code=resp.status_code)
            return QRResult(success=False, error="Failed to create instance")
        try:
            qr_code = _qr_from(resp.json())
        except ValueError:
            qr_code = None
        if qr_code:
            log.info("whatsapp_instance_created", instance=self.instance)
            return QRResult(success=True, qr_code=qr_code)
        return QRResult(success=False, error="No QR code from instance creation")

    async def send_text(self, phone_number: str, text: str) -> SendResult:
        number = _NON_DIGITS.sub("", phone_number)
        if not number:
            return SendResult(success=False, error="Invalid phone number")
        try:
            resp = await self._client.post(
                f"{self._base_url}/message/sendText/{self.instance}",
                headers=self._headers(),
                json={"number": f"{number}@s.whatsapp.net", "text": text},
            )
        except httpx.HTTPError as e:
            log.warning("whatsapp_send_failed", error=str(e))
            return SendResult(success=False, error=str(e) or e.__class__.__name__)

        if not resp.is_success:
            log.warning("whatsapp_send_failed", status_code=resp.status_code, body=resp.text[:500])
            return SendResult(success=False, error="Failed to send message")
        try:
            data = resp.json()
        except ValueError:
            data = {}
        key = data.get("key") if isinstance(data, dict) else None
        message_id = key.get("id") if isinstance(key, dict) else None
        return SendResult(success=True, message_id=message_id)
