import asyncio
import json

import httpx
import pytest

from openrouter_assistant.completion_client import CompletionClient, classify_failure
from openrouter_assistant.contracts import ChatMessage
from openrouter_assistant.errors import (
    AuthenticationError,
    BadRequestError,
    ConfigurationError,
    EmptyResponseError,
    FailureKind,
    NetworkError,
    QuotaExceededError,
    RateLimitError,
    UpstreamServerError,
)

HELLO = [ChatMessage(role="user", content="hello")]


def _client(handler, api_key: str | None = "sk-or-v1-test") -> CompletionClient:
    return CompletionClient(
        api_key,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        base_url="https://gateway.test/api/v1",
        site_url="http://localhost:3000",
        app_title="AI Personal Assistant",
    )


async def _complete(c: CompletionClient, model: str = "m1", timeout_seconds: float = 5.0):
    return await c.complete(model, HELLO, temperature=0.5, max_tokens=1024, timeout_seconds=timeout_seconds)


@pytest.mark.parametrize(
    ("status", "message", "kind"),
    [
        (401, "invalid key", FailureKind.AUTH_ERROR),
        (403, "forbidden", FailureKind.AUTH_ERROR),
        (402, "payment required", FailureKind.QUOTA_EXCEEDED),
        (400, "Insufficient credits on account", FailureKind.QUOTA_EXCEEDED),
        (500, "monthly quota reached", FailureKind.QUOTA_EXCEEDED),
        (429, "slow down", FailureKind.RATE_LIMIT),
        (502, "bad gateway", FailureKind.SERVER_ERROR),
        (503, "unavailable", FailureKind.SERVER_ERROR),
        (404, "no endpoints found", FailureKind.SERVER_ERROR),
    ],
)
def test_classify_failure(status, message, kind):
    assert classify_failure(status, message) is kind


def test_rate_limit_is_retryable_and_quota_is_not():
    assert FailureKind.RATE_LIMIT.retryable
    assert FailureKind.EMPTY_RESPONSE.retryable
    assert not FailureKind.QUOTA_EXCEEDED.retryable
    assert not FailureKind.AUTH_ERROR.retryable
    assert not FailureKind.BAD_REQUEST.retryable


@pytest.mark.asyncio
async def test_complete_success_sends_openai_payload_and_headers():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert str(request.url) == "https://gateway.test/api/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-or-v1-test"
        assert request.headers["http-referer"] == "http://localhost:3000"
        assert request.headers["x-title"] == "AI Personal Assistant"

        body = json.loads(request.content.decode("utf-8"))
        assert body == {
            "model": "m1",
            "messages": [{"role": "user", "content": "hello"}],
            "max_tokens": 1024,
            "temperature": 0.5,
        }
        return httpx.Response(
            200,
            json={"choices": [{"message": {"content": "hi there"}}], "usage": {"total_tokens": 7}},
        )

    c = _client(handler)
    try:
        out = await _complete(c)
        assert out.content == "hi there"
        assert out.tokens_used == 7
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_without_api_key_fails_fast_without_http_call():
    calls = 0

    def handler(_: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, json={})

    c = _client(handler, api_key=None)
    try:
        assert not c.configured
        with pytest.raises(ConfigurationError):
            await _complete(c)
        assert calls == 0
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_rejects_empty_message_list():
    c = _client(lambda _: httpx.Response(200, json={}))
    try:
        with pytest.raises(BadRequestError):
            await c.complete("m1", [], temperature=0.5, max_tokens=10, timeout_seconds=1)
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_401_raises_authentication_error():
    c = _client(lambda _: httpx.Response(401, json={"error": {"message": "invalid key"}}))
    try:
        with pytest.raises(AuthenticationError) as exc:
            await _complete(c)
        assert exc.value.status_code == 401
        assert "invalid key" in exc.value.message
        assert not exc.value.retryable
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_402_raises_quota_exceeded():
    c = _client(lambda _: httpx.Response(402, json={"error": {"message": "payment required"}}))
    try:
        with pytest.raises(QuotaExceededError):
            await _complete(c)
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_429_raises_rate_limit_with_retry_after():
    c = _client(lambda _: httpx.Response(429, headers={"retry-after": "4"}, json={"error": {"message": "rl"}}))
    try:
        with pytest.raises(RateLimitError) as exc:
            await _complete(c)
        assert exc.value.retry_after_seconds == 4
        assert exc.value.retryable
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_503_raises_retryable_server_error():
    c = _client(lambda _: httpx.Response(503, text="upstream down"))
    try:
        with pytest.raises(UpstreamServerError) as exc:
            await _complete(c)
        assert exc.value.retryable
        assert "503" in exc.value.message
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_empty_content_is_empty_response_not_success():
    c = _client(lambda _: httpx.Response(200, json={"choices": [{"message": {"content": ""}}]}))
    try:
        with pytest.raises(EmptyResponseError):
            await _complete(c)
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_missing_choices_is_empty_response():
    c = _client(lambda _: httpx.Response(200, json={"choices": []}))
    try:
        with pytest.raises(EmptyResponseError):
            await _complete(c)
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_2xx_with_error_object_is_classified_from_body():
    c = _client(lambda _: httpx.Response(200, json={"error": {"message": "Rate limited", "code": 429}}))
    try:
        with pytest.raises(RateLimitError):
            await _complete(c)
    finally:
        await c.close()

    c = _client(lambda _: httpx.Response(200, json={"error": {"message": "Not enough credit"}}))
    try:
        with pytest.raises(QuotaExceededError):
            await _complete(c)
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_non_json_success_body_is_server_error():
    c = _client(lambda _: httpx.Response(200, text="<html>oops</html>"))
    try:
        with pytest.raises(UpstreamServerError):
            await _complete(c)
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_transport_error_is_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    c = _client(handler)
    try:
        with pytest.raises(NetworkError) as exc:
            await _complete(c)
        assert exc.value.retryable
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_complete_enforces_attempt_timeout():
    async def handler(_: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, json={"choices": [{"message": {"content": "late"}}]})

    c = _client(handler)
    try:
        with pytest.raises(NetworkError) as exc:
            await _complete(c, timeout_seconds=0.01)
        assert "timeout" in exc.value.message
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_default_http_client_has_no_timeout_of_its_own():
    c = CompletionClient("sk-or-v1-test")
    try:
        # The per-attempt asyncio deadline is the only timeout.
        assert c._client.timeout.read is None
        assert c._client.timeout.connect is None
    finally:
        await c.close()
