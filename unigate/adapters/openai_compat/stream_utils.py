"""
SSE framing helpers for the exposed chat-completion stream.
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, AsyncIterable, Iterable, Mapping

from fastapi.responses import StreamingResponse

from unigate.core.errors import GatewayError
from unigate.core.responses import error_payload


STREAM_MEDIA_TYPE = "text/event-stream"


def _sse_frame(payload: Any) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def _chunk_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def _stream_delta_sse_chunk(model: str, text: str) -> bytes:
    return _sse_frame(
        {
            "id": _chunk_id(),
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": model,
            "choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}],
        }
    )


def _stream_finish_sse_chunk(model: str, finish_reason: str = "stop") -> bytes:
    return _sse_frame(
        {
            "id": _chunk_id(),
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": model,
            "choices": [{"index": 0, "delta": {}, "finish_reason": finish_reason}],
        }
    )


def _stream_error_sse_chunk(exc: GatewayError) -> bytes:
    """In-band error once a stream has started; same envelope as JSON errors."""
    return _sse_frame(error_payload(exc))


def _stream_done_sse_chunk() -> bytes:
    return b"data: [DONE]\n\n"


def _extract_sse_data_payload(line: bytes) -> str | None:
    if not line:
        return None
    stripped = line.strip()
    if not stripped.startswith(b"data:"):
        return None
    return stripped[5:].strip().decode("utf-8", errors="replace")


def _build_streaming_response(
    generator: Iterable[bytes] | AsyncIterable[bytes],
    *,
    status_code: int = 200,
    headers: Mapping[str, str] | None = None,
    media_type: str = STREAM_MEDIA_TYPE,
) -> StreamingResponse:
    merged = {key: value for key, value in (headers or {}).items() if key.lower() != "content-type"}
    merged.update({"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})
    return StreamingResponse(
        generator,
        status_code=status_code,
        media_type=media_type or STREAM_MEDIA_TYPE,
        headers=merged,
    )
