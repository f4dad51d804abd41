from __future__ import annotations

import json
from collections.abc import AsyncIterator, Mapping
from typing import Any, Protocol

import httpx
import openai
import structlog

from .config import OPENROUTER_API_BASE
from .contracts import Message
from .errors import (
    AuthenticationError,
    ConfigurationError,
    GatewayError,
    RateLimitError,
    UpstreamProtocolError,
    UpstreamStatusError,
    UpstreamTimeoutError,
)

log = structlog.get_logger()

MISSING_KEY_MESSAGE = "OPENROUTER_API_KEY is required. Please set it in your environment."


class Transport(Protocol):
    """One way of reaching the remote gateway.

    ``complete`` returns the decoded chat-completions body as a plain dict;
    ``stream`` yields non-empty content deltas. Both raise ``GatewayError``
    subclasses for upstream failures.
    """

    name: str

    async def complete(self, *, model: str, messages: list[Message], max_tokens: int | None = None) -> dict[str, Any]:
        ...

    def stream(self, *, model: str, messages: list[Message], max_tokens: int | None = None) -> AsyncIterator[str]:
        ...

    async def aclose(self) -> None:
        ...


def _build_payload(model: str, messages: list[Message], max_tokens: int | None, *, stream: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {"model": model, "messages": messages}
    if max_tokens is not None:
        payload["max_tokens"] = max_tokens
    if stream:
        payload["stream"] = True
    return payload


def _retry_after(headers: Mapping[str, str] | None) -> int | None:
    if not headers:
        return None
    value = headers.get("retry-after")
    return int(value) if value and value.isdigit() else None


def _upstream_message(body: str) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        return body[:500] or "no response body"
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
    return body[:500]


def _status_error(status_code: int, headers: Mapping[str, str] | None, body: str) -> GatewayError:
    message = _upstream_message(body)
    if status_code in (401, 403):
        return AuthenticationError(f"Gateway rejected credentials (check OPENROUTER_API_KEY): {message}")
    if status_code == 429:
        return RateLimitError(retry_after_seconds=_retry_after(headers), message=message)
    return UpstreamStatusError(status_code, message)


def _map_sdk_error(exc: Exception) -> GatewayError:
    if isinstance(exc, openai.APITimeoutError):
        return UpstreamTimeoutError("Gateway request timed out.")
    if isinstance(exc, openai.APIConnectionError):
        return UpstreamProtocolError("Gateway request failed.")
    if isinstance(exc, openai.APIStatusError):
        response = exc.response
        return _status_error(exc.status_code, response.headers, response.text)
    return UpstreamProtocolError(f"Gateway client error: {exc}")


class SdkTransport:
    """Primary path: the OpenAI SDK client pointed at the gateway."""

    name = "sdk"

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = OPENROUTER_API_BASE,
        timeout_seconds: float = 60,
        headers: Mapping[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._headers = dict(headers or {})
        self._http_client = http_client
        self._client: openai.AsyncOpenAI | None = None

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise ConfigurationError(MISSING_KEY_MESSAGE)
            # Retries belong to the dispatcher, never to the SDK.
            self._client = openai.AsyncOpenAI(
                api_key=self.api_key,
                base_url=self._base_url,
                timeout=self._timeout_seconds,
                max_retries=0,
                default_headers=self._headers,
                http_client=self._http_client,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
        elif self._http_client is not None:
            await self._http_client.aclose()

    async def complete(self, *, model: str, messages: list[Message], max_tokens: int | None = None) -> dict[str, Any]:
        client = self._get_client()
        try:
            completion = await client.chat.completions.create(**_build_payload(model, messages, max_tokens))
        except openai.APIError as e:
            raise _map_sdk_error(e) from e
        return completion.to_dict()

    async def stream(self, *, model: str, messages: list[Message], max_tokens: int | None = None) -> AsyncIterator[str]:
        client = self._get_client()
        try:
            chunks = await client.chat.completions.create(**_build_payload(model, messages, max_tokens, stream=True))
        except openai.APIError as e:
            raise _map_sdk_error(e) from e

        try:
            async for chunk in chunks:
                if not chunk.choices:
                    continue
                text = getattr(chunk.choices[0].delta, "content", None)
                if isinstance(text, str) and text:
                    yield text
        except openai.APIError as e:
            raise _map_sdk_error(e) from e
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError("Gateway stream timed out.") from e
        except httpx.HTTPError as e:
            raise UpstreamProtocolError("Gateway stream failed.") from e
        finally:
            await chunks.close()


class DirectHttpTransport:
    """Secondary path: a plain chat-completions POST over httpx."""

    name = "http"

    def __init__(
        self,
        api_key: str | None,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str = OPENROUTER_API_BASE,
        timeout_seconds: float = 60,
        headers: Mapping[str, str] | None = None,
    ):
        self.api_key = api_key
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._extra_headers = dict(headers or {})

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._client

    def _request_headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ConfigurationError(MISSING_KEY_MESSAGE)
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            **self._extra_headers,
        }

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def complete(self, *, model: str, messages: list[Message], max_tokens: int | None = None) -> dict[str, Any]:
        headers = self._request_headers()
        url = f"{self._base_url}/chat/completions"
        try:
            resp = await self._get_client().post(url, headers=headers, json=_build_payload(model, messages, max_tokens))
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError("Gateway request timed out.") from e
        except httpx.HTTPError as e:
            raise UpstreamProtocolError("Gateway request failed.") from e

        if resp.status_code >= 400:
            log.debug("gateway_http_error", model=model, status_code=resp.status_code, body=resp.text[:500])
            raise _status_error(resp.status_code, resp.headers, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamProtocolError("Gateway returned a non-JSON body.") from e
        if not isinstance(data, dict):
            raise UpstreamProtocolError("Gateway returned an unexpected body.")
        return data

    async def stream(self, *, model: str, messages: list[Message], max_tokens: int | None = None) -> AsyncIterator[str]:
        headers = self._request_headers()
        url = f"{self._base_url}/chat/completions"
        payload = _build_payload(model, messages, max_tokens, stream=True)
        try:
            async with self._get_client().stream("POST", url, headers=headers, json=payload) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise _status_error(resp.status_code, resp.headers, resp.text)

                async for line in resp.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    raw = line[len("data:") :].strip()
                    if not raw:
                        continue
                    if raw == "[DONE]":
                        break
                    try:
                        event = json.loads(raw)
                    except json.JSONDecodeError as e:
                        raise UpstreamProtocolError("Failed to decode gateway SSE JSON.") from e

                    err = event.get("error")
                    if isinstance(err, dict):
                        raise UpstreamProtocolError(str(err.get("message") or "Gateway stream error."))
                    choices = event.get("choices")
                    if not isinstance(choices, list) or not choices:
                        continue
                    delta = choices[0].get("delta")
                    if not isinstance(delta, dict):
                        continue
                    text = delta.get("content")
                    if isinstance(text, str) and text:
                        yield text
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError("Gateway stream timed out.") from e
        except httpx.HTTPError as e:
            raise UpstreamProtocolError("Gateway stream failed.") from e
