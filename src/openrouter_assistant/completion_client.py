from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from typing import Any

import httpx
import structlog

from .contracts import ChatMessage, Completion
from .errors import (
    BadRequestError,
    ConfigurationError,
    EmptyResponseError,
    FailureKind,
    NetworkError,
    RateLimitError,
    error_for_kind,
)
from .metrics import completion_latency_seconds

log = structlog.get_logger()

OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"

_QUOTA_MARKERS = ("quota", "billing", "credit")


def classify_failure(status_code: int | None, message: str = "") -> FailureKind:
    """
    Classify a failed upstream response.

    401/403 are auth errors; 402 or a quota/billing/credit message is quota
    exhaustion; 429 is a rate limit; everything else is a retryable server error.
    """
    lowered = (message or "").lower()
    if status_code in (401, 403):
        return FailureKind.AUTH_ERROR
    if status_code == 402 or any(marker in lowered for marker in _QUOTA_MARKERS):
        return FailureKind.QUOTA_EXCEEDED
    if status_code == 429:
        return FailureKind.RATE_LIMIT
    return FailureKind.SERVER_ERROR


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:500]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if data.get("message"):
            return str(data["message"])
    return resp.text[:500]


def _retry_after(resp: httpx.Response) -> int | None:
    value = resp.headers.get("retry-after")
    return int(value) if value and value.isdigit() else None


class CompletionClient:
    """
    One attempt, one model, one POST to an OpenAI-compatible chat-completions endpoint.

    Stateless between calls; retries and model rotation belong to the orchestrator.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str = OPENROUTER_API_BASE,
        site_url: str | None = None,
        app_title: str | None = None,
    ):
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=None)
        self._base_url = base_url.rstrip("/")
        self._site_url = site_url
        self._app_title = app_title

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self._site_url:
            headers["HTTP-Referer"] = self._site_url
        if self._app_title:
            headers["X-Title"] = self._app_title
        return headers

    async def _post(self, payload: dict[str, Any]) -> tuple[httpx.Response, Any]:
        resp = await self._client.post(f"{self._base_url}/chat/completions", headers=self._headers(), json=payload)
        if not resp.is_success:
            return resp, None
        try:
            return resp, resp.json()
        except ValueError:
            return resp, None

    async def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
        timeout_seconds: float,
    ) -> Completion:
        if not self.api_key:
            raise ConfigurationError("AI service not configured: OPENROUTER_API_KEY is missing.")

        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.model_dump() for m in messages],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if not payload["messages"]:
            raise BadRequestError("No messages to send.", model=model)

        timeout_ms = int(timeout_seconds * 1000)
        started = time.monotonic()
        try:
            resp, data = await asyncio.wait_for(self._post(payload), timeout=timeout_seconds)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise NetworkError(f"timeout after {timeout_ms}ms", model=model) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"request failed: {e.__class__.__name__}: {e}", model=model) from e
        finally:
            completion_latency_seconds.labels(model=model).observe(max(0.0, time.monotonic() - started))

        if not resp.is_success:
            message = _error_message(resp)
            kind = classify_failure(resp.status_code, message)
            if kind is FailureKind.RATE_LIMIT:
                raise RateLimitError(
                    message or "Rate limit exceeded",
                    status_code=resp.status_code,
                    model=model,
                    retry_after_seconds=_retry_after(resp),
                )
            raise error_for_kind(
                kind, f"API error {resp.status_code}: {message}", status_code=resp.status_code, model=model
            )

        return self._parse_success(model, resp.status_code, data)

    def _parse_success(self, model: str, status_code: int, data: Any) -> Completion:
        if not isinstance(data, dict):
            raise error_for_kind(
                FailureKind.SERVER_ERROR, "Upstream returned a non-JSON body.", status_code=status_code, model=model
            )

        err = data.get("error")
        if err:
            message = err.get("message", "") if isinstance(err, dict) else str(err)
            code = err.get("code") if isinstance(err, dict) else None
            status = int(code) if isinstance(code, int) or (isinstance(code, str) and code.isdigit()) else None
            kind = classify_failure(status, message)
            raise error_for_kind(kind, message or "Unknown API error", status_code=status or status_code, model=model)

        content: Any = None
        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message_obj = choices[0].get("message")
            if isinstance(message_obj, dict):
                content = message_obj.get("content")

        if not isinstance(content, str) or not content.strip():
            raise EmptyResponseError("Upstream returned an empty completion.", status_code=status_code, model=model)

        usage = data.get("usage")
        tokens_used = usage.get("total_tokens") if isinstance(usage, dict) else None
        log.debug("completion_ok", model=model, tokens_used=tokens_used, content_chars=len(content))
        return Completion(content=content, tokens_used=tokens_used if isinstance(tokens_used, int) else None)
