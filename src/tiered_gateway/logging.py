from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping, MutableMapping
from typing import Any, TypeAlias, cast

import structlog

_SENSITIVE_KEYS = {
    "authorization",
    "x-payment",
    "x-api-key",
    "api_key",
    "openrouter_api_key",
    "token",
    "secret",
    "password",
}
# Suffix match only, so usage counters such as tokens_used or max_tokens stay readable.
_SENSITIVE_SUFFIXES = ("_key", "apikey", "_token", "_secret", "password")

_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9._-]{6,})")
_DATA_URL_RE = re.compile(r"data:image/[A-Za-z0-9.+-]+;base64,[A-Za-z0-9+/=]{32,}")

# Longer strings are clipped so prompts and upstream bodies don't flood the logs.
MAX_LOGGED_STRING = 2000

ProcessorReturn: TypeAlias = Mapping[str, Any] | str | bytes | bytearray | tuple[Any, ...]
Processor: TypeAlias = Callable[[Any, str, MutableMapping[str, Any]], ProcessorReturn]


def _redact_str(value: str, *, secrets: list[str]) -> str:
    out = value
    for secret in secrets:
        if secret and secret in out:
            out = out.replace(secret, "[REDACTED]")
    out = _BEARER_RE.sub("Bearer [REDACTED]", out)
    out = _DATA_URL_RE.sub("data:image/...;base64,[OMITTED]", out)
    if len(out) > MAX_LOGGED_STRING:
        out = out[:MAX_LOGGED_STRING] + "...[truncated]"
    return out


def _is_sensitive_key(key: Any) -> bool:
    key_str = str(key).lower()
    return key_str in _SENSITIVE_KEYS or key_str.endswith(_SENSITIVE_SUFFIXES)


def _redact_obj(obj: Any, *, secrets: list[str]) -> Any:
    if isinstance(obj, str):
        return _redact_str(obj, secrets=secrets)
    if isinstance(obj, list):
        return [_redact_obj(v, secrets=secrets) for v in obj]
    if isinstance(obj, tuple):
        return tuple(_redact_obj(v, secrets=secrets) for v in obj)
    if isinstance(obj, dict):
        redacted: dict[Any, Any] = {}
        for k, v in obj.items():
            if _is_sensitive_key(k):
                redacted[k] = "[REDACTED]"
            else:
                redacted[k] = _redact_obj(v, secrets=secrets)
        return redacted
    return obj


def _make_redaction_processor(*, secrets: list[str]) -> Processor:
    secrets_norm = [s for s in secrets if isinstance(s, str) and s]

    def _processor(_logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> ProcessorReturn:
        return cast(dict[str, Any], _redact_obj(event_dict, secrets=secrets_norm))

    return _processor


def configure_logging(level: str = "INFO", fmt: str = "json", *, secrets: list[str] | None = None) -> None:
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=log_level)

    processors: list[Processor] = [
        cast(Processor, structlog.contextvars.merge_contextvars),
        cast(Processor, structlog.processors.add_log_level),
        cast(Processor, structlog.processors.TimeStamper(fmt="iso")),
        _make_redaction_processor(secrets=secrets or []),
    ]

    if fmt == "json":
        processors.append(cast(Processor, structlog.processors.JSONRenderer()))
    else:
        processors.append(cast(Processor, structlog.dev.ConsoleRenderer()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )
