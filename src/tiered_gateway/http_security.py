from __future__ import annotations

import asyncio
import re
import uuid

import structlog

log = structlog.get_logger()

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")

PAYMENT_HEADER = "X-Payment"
PAYMENT_REQUIRED_HEADER = "X-Payment-Required"


def coerce_request_id(value: str | None) -> str:
    if value and _REQUEST_ID_RE.fullmatch(value):
        return value
    return uuid.uuid4().hex


def _is_protected_path(path: str) -> bool:
    return path.startswith("/api/")


def _should_set_no_store(path: str) -> bool:
    return path.startswith("/api/")


def install_middlewares(app, *, cfg) -> None:
    """
    Install request-id, header hardening, body/concurrency limits, and the
    optional host allow-list and CORS policy based on cfg.

    Payment verification is not installed here; the deployer mounts the
    payment gate outside these layers.
    """
    from fastapi.responses import JSONResponse
    from starlette.middleware.base import BaseHTTPMiddleware
    from starlette.requests import Request

    from .schemas import make_error_payload

    class RequestIdMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            request_id = coerce_request_id(request.headers.get("x-request-id"))
            request.state.request_id = request_id
            structlog.contextvars.bind_contextvars(request_id=request_id)
            try:
                response = await call_next(request)
            finally:
                structlog.contextvars.clear_contextvars()
            response.headers.setdefault("X-Request-Id", request_id)
            return response

    class SecurityHeadersMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            response = await call_next(request)
            response.headers.setdefault("X-Content-Type-Options", "nosniff")
            response.headers.setdefault("X-Frame-Options", "DENY")
            response.headers.setdefault("Referrer-Policy", "no-referrer")
            response.headers.setdefault("Cross-Origin-Resource-Policy", "same-site")
            if getattr(cfg, "enable_api_docs", True) is False:
                response.headers.setdefault("X-Robots-Tag", "noindex, nofollow")
            if _should_set_no_store(request.url.path):
                response.headers.setdefault("Cache-Control", "no-store")
                response.headers.setdefault("Pragma", "no-cache")
            return response

    class MaxBodySizeMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            limit = int(getattr(cfg, "max_request_body_bytes", 0) or 0)
            if limit > 0 and request.method in ("POST", "PUT", "PATCH") and _is_protected_path(
                request.url.path
            ):
                content_length = request.headers.get("content-length")
                too_large = bool(content_length and content_length.isdigit() and int(content_length) > limit)
                if not too_large:
                    too_large = len(await request.body()) > limit
                if too_large:
                    return JSONResponse(
                        status_code=413,
                        content=make_error_payload(
                            error="invalid_request_error",
                            message="Request body too large.",
                        ),
                    )
            return await call_next(request)

    class ConcurrencyLimitMiddleware(BaseHTTPMiddleware):
        def __init__(self, app_):
            super().__init__(app_)
            self._sem = asyncio.Semaphore(max(1, int(getattr(cfg, "max_inflight_requests", 1) or 1)))

        async def dispatch(self, request: Request, call_next):
            if not _is_protected_path(request.url.path):
                return await call_next(request)
            if self._sem.locked():
                return JSONResponse(
                    status_code=429,
                    content=make_error_payload(
                        error="rate_limit_error",
                        message="Server is busy. Try again later.",
                    ),
                )
            await self._sem.acquire()
            try:
                response = await call_next(request)
            except BaseException:
                self._sem.release()
                raise

            # The slot stays taken until the body is fully sent, so SSE streams count.
            body = response.body_iterator

            async def _release_after_body():
                try:
                    async for chunk in body:
                        yield chunk
                finally:
                    self._sem.release()

            response.body_iterator = _release_after_body()
            return response

    app.add_middleware(MaxBodySizeMiddleware)
    app.add_middleware(ConcurrencyLimitMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    # Must be outermost to ensure `X-Request-Id` is set even when inner middleware short-circuits.
    app.add_middleware(RequestIdMiddleware)

    allowed_hosts: list[str] = list(getattr(cfg, "allowed_hosts", []) or [])
    if allowed_hosts:
        from starlette.middleware.trustedhost import TrustedHostMiddleware

        app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)

    cors_allow_origins: list[str] = list(getattr(cfg, "cors_allow_origins", []) or [])
    if cors_allow_origins:
        from fastapi.middleware.cors import CORSMiddleware

        allow_credentials = bool(getattr(cfg, "cors_allow_credentials", False))
        if allow_credentials and "*" in cors_allow_origins:
            # Browsers reject credentialed responses for a wildcard origin.
            log.warning("cors_credentials_disabled", reason="wildcard origin")
            allow_credentials = False
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_allow_origins,
            allow_credentials=allow_credentials,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-Request-Id", PAYMENT_HEADER],
            expose_headers=[PAYMENT_REQUIRED_HEADER, "X-Request-Id"],
            max_age=600,
        )
