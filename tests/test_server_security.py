import pytest
import httpx

from openrouter_assistant.config import AssistantConfig


def _fake_assistant(content: str = "ok"):
    class FakeReply:
        def __init__(self, session_id: str):
            self.content = content
            self.session_id = session_id
            self.model_used = "m1"
            self.fallback_used = False
            self.attempt_count = 1
            self.processing_time_ms = 3
            self.mode = None
            self.special = None
            self.preamble = None

    class FakeAssistant:
        async def handle(self, message, **kwargs):
            return FakeReply(message.session_id)

        async def relay_whatsapp(self, raw, evolution):
            return None

        async def close(self) -> None:
            return None

    return FakeAssistant()


def _cfg(**kwargs) -> AssistantConfig:
    return AssistantConfig(enable_metrics=False, openrouter_api_key="sk-or-v1-test", **kwargs)


@pytest.mark.asyncio
async def test_server_requires_bearer_token_when_configured():
    pytest.importorskip("fastapi")
    from openrouter_assistant.server import create_app

    app = create_app(cfg=_cfg(server_auth_token="sekret"), assistant=_fake_assistant())
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post("/api/chat", json={"message": "hi"})
        assert resp.status_code == 401
        assert resp.headers.get("WWW-Authenticate", "").lower().startswith("bearer")
        assert resp.json()["error"]["type"] == "authentication_error"

        resp_ok = await client.post(
            "/api/chat",
            headers={"Authorization": "Bearer sekret"},
            json={"message": "hi"},
        )
        assert resp_ok.status_code == 200

        resp_key = await client.post("/api/chat", headers={"X-API-Key": "sekret"}, json={"message": "hi"})
        assert resp_key.status_code == 200


@pytest.mark.asyncio
async def test_server_webhook_and_healthz_are_not_behind_bearer_token():
    pytest.importorskip("fastapi")
    from openrouter_assistant.server import create_app

    app = create_app(cfg=_cfg(server_auth_token="sekret"), assistant=_fake_assistant())
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        health = await client.get("/healthz")
        webhook = await client.post("/api/whatsapp/webhook", json={"event": "messages.upsert", "data": {}})
    assert health.status_code == 200
    assert health.json() == {"status": "ok", "configured": True}
    assert webhook.status_code == 200


@pytest.mark.asyncio
async def test_server_enforces_max_body_size_413():
    pytest.importorskip("fastapi")
    from openrouter_assistant.server import create_app

    app = create_app(cfg=_cfg(max_request_body_bytes=60), assistant=_fake_assistant())
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        payload = b'{"message":"' + (b"x" * 200) + b'"}'
        resp = await client.post(
            "/api/chat",
            content=payload,
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 413
        assert resp.json()["error"]["type"] == "invalid_request_error"


@pytest.mark.asyncio
async def test_server_sets_security_headers_and_request_id():
    pytest.importorskip("fastapi")
    from openrouter_assistant.server import create_app

    app = create_app(cfg=_cfg(), assistant=_fake_assistant())
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/healthz", headers={"X-Request-Id": "req_12345678"})
        assert resp.status_code == 200
        assert resp.headers.get("X-Request-Id") == "req_12345678"
        assert resp.headers.get("X-Content-Type-Options") == "nosniff"
        assert resp.headers.get("X-Frame-Options") == "DENY"
        assert resp.headers.get("Referrer-Policy") == "no-referrer"

        resp2 = await client.post("/api/chat", json={"message": "hi"})
        assert resp2.headers.get("Cache-Control") == "no-store"
        # Malformed ids are replaced rather than echoed.
        resp3 = await client.get("/healthz", headers={"X-Request-Id": "bad id!"})
        assert resp3.headers.get("X-Request-Id") != "bad id!"


@pytest.mark.asyncio
async def test_server_cors_allowlist_applies():
    pytest.importorskip("fastapi")
    from openrouter_assistant.server import create_app

    app = create_app(cfg=_cfg(cors_allow_origins=["https://example.com"]), assistant=_fake_assistant())
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.options(
            "/api/chat",
            headers={
                "Origin": "https://example.com",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert resp.status_code in (200, 204)
        assert resp.headers.get("access-control-allow-origin") == "https://example.com"


def test_bearer_token_parsing():
    from openrouter_assistant.http_security import coerce_request_id, parse_bearer_token

    assert parse_bearer_token("Bearer abc") == "abc"
    assert parse_bearer_token("bearer   abc ") == "abc"
    assert parse_bearer_token("Basic abc") is None
    assert parse_bearer_token("Bearer") is None
    assert parse_bearer_token(None) is None
    assert coerce_request_id("req_12345678") == "req_12345678"
    assert len(coerce_request_id("x")) == 32
