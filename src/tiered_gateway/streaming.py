from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import structlog

from .contracts import StreamChunk

log = structlog.get_logger()

DONE_FRAME = b"data: [DONE]\n\n"


def sse_encode(data: str) -> bytes:
    return f"data: {data}\n\n".encode("utf-8")


def json_frame(payload: dict[str, Any]) -> bytes:
    return sse_encode(json.dumps(payload))


async def sse_from_chunks(chunks: AsyncIterator[StreamChunk], *, label: str = "Chat completion failed") -> AsyncIterator[bytes]:
    """Encode content deltas as SSE frames, always ending with exactly one [DONE].

    Bytes already sent cannot be taken back, so a fault mid-stream becomes an
    error frame followed by the terminator.
    """
    delivered = 0
    try:
        async for chunk in chunks:
            if not chunk.content:
                continue
            delivered += 1
            yield json_frame({"content": chunk.content})
    except Exception as e:
        log.error("stream_aborted", delivered_chunks=delivered, error=str(e))
        yield json_frame({"error": "stream_error", "message": f"{label}: {e}"})
    finally:
        aclose = getattr(chunks, "aclose", None)
        if callable(aclose):
            await aclose()
    yield DONE_FRAME
