from __future__ import annotations

import os

from pydantic import BaseModel, Field

OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


class GatewayConfig(BaseModel):
    # Remote gateway
    openrouter_api_key: str | None = Field(default_factory=lambda: os.getenv("OPENROUTER_API_KEY"))
    openrouter_base_url: str = Field(
        default_factory=lambda: os.getenv("OPENROUTER_BASE_URL", OPENROUTER_API_BASE)
    )
    frontend_url: str = Field(default_factory=lambda: os.getenv("FRONTEND_URL", "http://localhost:5173"))
    app_title: str = Field(default_factory=lambda: os.getenv("GATEWAY_APP_TITLE", "SPL-402 AI Platform"))
    upstream_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "60"))
    )

    # Observability
    enable_metrics: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_METRICS", "false").lower() == "true"
    )
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))

    # Server hardening
    enable_api_docs: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_API_DOCS", "false").lower() == "true"
    )
    allowed_hosts: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ALLOWED_HOSTS")))
    cors_allow_origins: list[str] = Field(
        default_factory=lambda: _parse_csv(os.getenv("CORS_ALLOW_ORIGINS") or os.getenv("FRONTEND_URL") or "*")
    )
    cors_allow_credentials: bool = Field(
        default_factory=lambda: os.getenv("CORS_ALLOW_CREDENTIALS", "true").lower() == "true"
    )
    max_request_body_bytes: int = Field(
        default_factory=lambda: int(os.getenv("MAX_REQUEST_BODY_BYTES", str(10 * 1024 * 1024)))
    )
    max_inflight_requests: int = Field(default_factory=lambda: int(os.getenv("MAX_INFLIGHT_REQUESTS", "32")))
    max_messages: int = Field(default_factory=lambda: int(os.getenv("MAX_MESSAGES", "64")))
    max_total_message_chars: int = Field(
        default_factory=lambda: int(os.getenv("MAX_TOTAL_MESSAGE_CHARS", "100000"))
    )

    # Process
    host: str = Field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = Field(default_factory=lambda: int(os.getenv("PORT", "3001")))

    @property
    def gateway_configured(self) -> bool:
        return bool(self.openrouter_api_key)

    def gateway_headers(self) -> dict[str, str]:
        return {"HTTP-Referer": self.frontend_url, "X-Title": self.app_title}
