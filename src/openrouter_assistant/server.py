import asyncio
import contextlib
import os
import time
from contextlib import asynccontextmanager

import structlog

from .assistant import AssistantCore, build_assistant
from .config import AssistantConfig
from .errors import (
    AssistantError,
    ConfigurationError,
    InvalidRequestError,
    ModelsExhaustedError,
    NoModelsAvailableError,
    RequestTimeoutError,
)
from .http_security import install_middlewares
from .logging import configure_logging
from .metrics import maybe_start_metrics, server_errors_total, server_request_latency_seconds, server_requests_total
from .normalizer import normalize_web_message
from .schemas import (
    BlockedModelInfo,
    ChatRequest,
    ChatResponse,
    EvolutionWebhookEvent,
    ModelInfo,
    ModelStatusResponse,
    QRResponse,
    WebhookAck,
    make_error_response,
)
from .whatsapp import EvolutionClient

log = structlog.get_logger()

SESSION_SWEEP_INTERVAL_SECONDS = 300


def create_app(
    cfg: AssistantConfig | None = None,
    assistant: AssistantCore | None = None,
    evolution: EvolutionClient | None = None,
):
    try:
        from fastapi import FastAPI, Request
        from fastapi.responses import JSONResponse
    except ImportError as e:  # pragma: no cover
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    cfg = cfg or AssistantConfig()
    configure_logging(
        level=cfg.log_level,
        fmt=cfg.log_format,
        secrets=[s for s in (cfg.openrouter_api_key, cfg.evolution_api_key, cfg.server_auth_token) if s],
    )
    assistant = assistant or build_assistant(cfg)
    if evolution is None and cfg.whatsapp_configured:
        evolution = EvolutionClient(cfg.evolution_api_url or "", cfg.evolution_api_key, cfg.evolution_instance)

    def _request_id(request) -> str | None:
        return getattr(getattr(request, "state", None), "request_id", None)

    def _observe(path: str, status_code: int, started_at: float) -> None:
        server_requests_total.labels(path=path, status=str(status_code)).inc()
        server_request_latency_seconds.labels(path=path).observe(max(0.0, time.monotonic() - started_at))

    def _error(request, status_code: int, message: str, type_: str):
        server_errors_total.labels(type=type_).inc()
        server_requests_total.labels(path=request.url.path, status=str(status_code)).inc()
        return JSONResponse(
            status_code=status_code,
            content=make_error_response(message=message, type=type_, code=_request_id(request)).model_dump(),
        )

    async def _sweep_sessions() -> None:
        while True:
            await asyncio.sleep(SESSION_SWEEP_INTERVAL_SECONDS)
            evicted = assistant.sessions.sweep()
            if evicted:
                log.info("sessions_swept", evicted=evicted)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
        if not cfg.openrouter_api_key:
            log.warning("service_not_configured", missing="OPENROUTER_API_KEY")
        sweeper = asyncio.create_task(_sweep_sessions())
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            await assistant.close()
            if evolution is not None:
                await evolution.close()

    app = FastAPI(
        title="openrouter-assistant",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if cfg.enable_api_docs else None,
        redoc_url="/redoc" if cfg.enable_api_docs else None,
        openapi_url="/openapi.json" if cfg.enable_api_docs else None,
    )
    install_middlewares(app, cfg=cfg)

    @app.exception_handler(ConfigurationError)
    async def _config_error_handler(request, exc: ConfigurationError):
        return _error(request, 503, str(exc), "service_not_configured")

    @app.exception_handler(InvalidRequestError)
    async def _invalid_request_handler(request, exc: InvalidRequestError):
        return _error(request, 400, str(exc), "invalid_request_error")

    @app.exception_handler(NoModelsAvailableError)
    async def _no_models_handler(request, exc: NoModelsAvailableError):
        return _error(request, 503, str(exc), "models_unavailable")

    @app.exception_handler(ModelsExhaustedError)
    async def _exhausted_handler(request, exc: ModelsExhaustedError):
        return _error(request, 502, f"AI service temporarily unavailable. {exc}", "upstream_error")

    @app.exception_handler(RequestTimeoutError)
    async def _timeout_handler(request, exc: RequestTimeoutError):
        return _error(request, 504, str(exc) or "Request timed out.", "timeout")

    @app.exception_handler(AssistantError)
    async def _assistant_error_handler(request, exc: AssistantError):
        return _error(request, 500, str(exc), "api_error")

    @app.get("/healthz")
    async def healthz() -> dict[str, object]:
        return {"status": "ok", "configured": bool(cfg.openrouter_api_key)}

    @app.post("/api/chat", response_model=ChatResponse)
    async def chat(req: ChatRequest) -> ChatResponse:
        started_at = time.monotonic()
        message = normalize_web_message(req.message, req.session_id)
        reply = await assistant.handle(
            message,
            mode=req.mode,
            history=req.history_messages(),
            preferred_model=req.model,
            temperature=req.temperature,
            max_tokens=req.max_tokens,
        )
        _observe("/api/chat", 200, started_at)
        return ChatResponse(
            response=reply.content,
            session_id=reply.session_id,
            model_used=reply.model_used,
            fallback_used=reply.fallback_used,
            attempt_count=reply.attempt_count,
            processing_time_ms=reply.processing_time_ms,
            mode=reply.mode,
            special=reply.special,
            preamble=reply.preamble,
        )

    @app.post("/api/whatsapp/webhook", response_model=WebhookAck)
    async def whatsapp_webhook(request: Request) -> WebhookAck:
        # Always acknowledge; Evolution retries anything that is not a 200.
        started_at = time.monotonic()
        try:
            event = EvolutionWebhookEvent.model_validate(await request.json())
        except ValueError as e:
            log.warning("whatsapp_webhook_invalid", error=str(e))
            return WebhookAck(error="Invalid payload")
        if evolution is None:
            log.warning("whatsapp_not_configured")
            return WebhookAck(error="WhatsApp relay not configured")

        processed = 0
        for raw in event.upsert_messages():
            key = raw.get("key")
            if isinstance(key, dict) and key.get("fromMe"):
                continue
            try:
                reply = await assistant.relay_whatsapp(raw, evolution)
            except Exception:
                log.exception("whatsapp_relay_crashed")
                return WebhookAck(processed=processed, error="Processing failed")
            if reply is not None:
                processed += 1
        _observe("/api/whatsapp/webhook", 200, started_at)
        return WebhookAck(processed=processed)

    @app.get("/api/whatsapp/qr", response_model=QRResponse)
    async def whatsapp_qr(request: Request):
        started_at = time.monotonic()
        if evolution is None:
            return _error(
                request,
                503,
                "Evolution API not configured. Set EVOLUTION_API_URL.",
                "service_not_configured",
            )
        result = await evolution.get_qr()
        if result.success and result.connected:
            _observe("/api/whatsapp/qr", 200, started_at)
            return QRResponse(connected=True, status="connected")
        if result.success and result.qr_code:
            _observe("/api/whatsapp/qr", 200, started_at)
            return QRResponse(status="waiting_scan", qr_code=result.qr_code)
        server_errors_total.labels(type="whatsapp_error").inc()
        _observe("/api/whatsapp/qr", 502, started_at)
        return JSONResponse(
            status_code=502,
            content=QRResponse(status="error", error=result.error or "Failed to get QR code").model_dump(),
        )

    @app.get("/api/models", response_model=list[ModelInfo])
    async def list_models() -> list[ModelInfo]:
        orchestrator = assistant.orchestrator
        return [
            ModelInfo(
                id=m.id,
                display_name=m.display_name,
                role=m.role.value,
                description=m.description,
                is_free=m.is_free,
                blocked=orchestrator.quota_guard.is_blocked(m.id),
            )
            for m in orchestrator.registry.all_models()
        ]

    @app.get("/api/models/status", response_model=ModelStatusResponse)
    async def models_status() -> ModelStatusResponse:
        orchestrator = assistant.orchestrator
        return ModelStatusResponse(
            blocked=[
                BlockedModelInfo(model_id=b.model_id, reason=b.reason, remaining_ms=b.remaining_ms)
                for b in orchestrator.quota_guard.list_blocked()
            ],
            available=[m.id for m in orchestrator.registry.get_model_pool()],
            fallback_stats=orchestrator.fallback_log.stats(),
        )

    return app


app = create_app()


def main() -> None:  # pragma: no cover
    try:
        import uvicorn
    except ImportError as e:
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("openrouter_assistant.server:app", host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    main()
