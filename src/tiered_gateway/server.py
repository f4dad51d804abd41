from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog

from .config import GatewayConfig
from .dispatcher import Dispatcher, build_dispatcher
from .errors import CapabilityError, InvalidRequestError
from .handlers import CapabilityHandlers
from .http_security import install_middlewares
from .logging import configure_logging
from .metrics import maybe_start_metrics, server_errors_total, server_request_latency_seconds, server_requests_total
from .pricing import ROUTE_PRICES
from .schemas import (
    AnalyzePayload,
    AnalyzeRequest,
    ChatRequest,
    CodePayload,
    CodeRequest,
    CompletionPayload,
    GeneratePayload,
    GenerateRequest,
    VisionPayload,
    VisionRequest,
    make_error_payload,
)
from .streaming import sse_from_chunks

log = structlog.get_logger()


def _validation_message(errors: list[dict]) -> tuple[str, str | None]:
    if not errors:
        return "Invalid request.", None
    err = errors[0]
    loc = [str(p) for p in err.get("loc", ()) if p != "body"]
    param = loc[0] if loc else None
    if err.get("type") == "missing" and param:
        return f"{param} is required", param
    if err.get("type") == "json_invalid":
        return "Request body is not valid JSON.", None
    ctx_error = (err.get("ctx") or {}).get("error")
    if ctx_error is not None:
        return str(ctx_error), param
    msg = str(err.get("msg") or "Invalid value.")
    return (f"{'.'.join(loc)}: {msg}" if loc else msg), param


def create_app(cfg: GatewayConfig | None = None, dispatcher: Dispatcher | None = None):
    try:
        from fastapi import FastAPI
        from fastapi.exceptions import RequestValidationError
        from fastapi.responses import JSONResponse, StreamingResponse
    except ImportError as e:  # pragma: no cover
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    cfg = cfg or GatewayConfig()
    configure_logging(
        level=cfg.log_level,
        fmt=cfg.log_format,
        secrets=[s for s in (cfg.openrouter_api_key,) if s],
    )
    dispatcher = dispatcher or build_dispatcher(cfg)
    handlers = CapabilityHandlers(dispatcher)

    def _observe(path: str, status_code: int, started_at: float) -> None:
        server_requests_total.labels(path=path, status=str(status_code)).inc()
        server_request_latency_seconds.labels(path=path).observe(max(0.0, time.monotonic() - started_at))

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
        log.info("server_start", gateway_configured=cfg.gateway_configured, port=cfg.port)
        try:
            yield
        finally:
            await dispatcher.aclose()

    app = FastAPI(
        title="tiered-ai-gateway",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if cfg.enable_api_docs else None,
        redoc_url="/redoc" if cfg.enable_api_docs else None,
        openapi_url="/openapi.json" if cfg.enable_api_docs else None,
    )
    install_middlewares(app, cfg=cfg)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request, exc: RequestValidationError):
        server_errors_total.labels(type="invalid_request_error").inc()
        message, param = _validation_message(list(exc.errors()))
        return JSONResponse(
            status_code=400,
            content=make_error_payload(error="invalid_request_error", message=message, param=param),
        )

    @app.exception_handler(InvalidRequestError)
    async def _invalid_request_handler(request, exc: InvalidRequestError):
        server_errors_total.labels(type="invalid_request_error").inc()
        return JSONResponse(
            status_code=400,
            content=make_error_payload(error="invalid_request_error", message=str(exc), param=exc.param),
        )

    @app.exception_handler(CapabilityError)
    async def _capability_error_handler(request, exc: CapabilityError):
        server_errors_total.labels(type=exc.category).inc()
        return JSONResponse(
            status_code=exc.status_code,
            content=make_error_payload(
                error=exc.category,
                message=str(exc),
                response_time=exc.response_time_ms,
            ),
        )

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request, exc: Exception):
        server_errors_total.labels(type="api_error").inc()
        log.error("unhandled_error", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(
            status_code=500,
            content=make_error_payload(error="api_error", message=str(exc) or "Internal server error."),
        )

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "gatewayConfigured": cfg.gateway_configured,
        }

    @app.get("/api/pricing")
    async def pricing() -> dict:
        return {"routes": [route.as_dict() for route in ROUTE_PRICES]}

    @app.post("/api/ai/chat", response_model=CompletionPayload)
    async def chat(req: ChatRequest):
        started_at = time.monotonic()
        if len(req.messages) > cfg.max_messages:
            raise InvalidRequestError("Too many messages.", param="messages")
        if req.total_chars() > cfg.max_total_message_chars:
            raise InvalidRequestError("Message content too large.", param="messages")

        if req.stream:
            chunks = await handlers.open_chat_stream(req)
            resp = StreamingResponse(
                sse_from_chunks(chunks),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
            )
            _observe("/api/ai/chat", 200, started_at)
            return resp

        payload = await handlers.chat(req)
        _observe("/api/ai/chat", 200, started_at)
        return payload

    @app.post("/api/ai/code", response_model=CodePayload)
    async def code(req: CodeRequest):
        started_at = time.monotonic()
        payload = await handlers.code(req)
        _observe("/api/ai/code", 200, started_at)
        return payload

    @app.post("/api/ai/analyze", response_model=AnalyzePayload)
    async def analyze(req: AnalyzeRequest):
        started_at = time.monotonic()
        payload = await handlers.analyze(req)
        _observe("/api/ai/analyze", 200, started_at)
        return payload

    @app.post("/api/ai/generate", response_model=GeneratePayload)
    async def generate(req: GenerateRequest):
        started_at = time.monotonic()
        payload = await handlers.generate(req)
        _observe("/api/ai/generate", 200, started_at)
        return payload

    @app.post("/api/ai/vision", response_model=VisionPayload)
    async def vision(req: VisionRequest):
        started_at = time.monotonic()
        payload = await handlers.vision(req)
        _observe("/api/ai/vision", 200, started_at)
        return payload

    return app


app = create_app()


def main() -> None:  # pragma: no cover
    try:
        import uvicorn
    except ImportError as e:
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    cfg = GatewayConfig()
    uvicorn.run("tiered_gateway.server:app", host=cfg.host, port=cfg.port)


if __name__ == "__main__":  # pragma: no cover
    main()
