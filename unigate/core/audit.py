"""Completed-request records handed to the log sink."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from unigate.core.context import RequestContext
from unigate.observability.logging import log_event
from unigate.util.logger import logger


RequestLogSink = Callable[[dict[str, Any]], None]

_MAX_ERROR_CHARS = 600


def build_request_record(
    ctx: RequestContext,
    *,
    status: int,
    response_size: int,
    error: str | None = None,
) -> dict[str, Any]:
    record: dict[str, Any] = {
        "request_id": ctx.request_id,
        "timestamp": datetime.now(tz=timezone.utc).isoformat(),
        "method": ctx.method,
        "path": ctx.path,
        "query": dict(ctx.query),
        "headers": dict(ctx.headers),
        "payload_size": ctx.payload_size,
        "status": status,
        "response_size": response_size,
        "latency_ms": round(ctx.elapsed_ms(), 3),
        "model": ctx.model,
        "provider": ctx.provider,
        "served_from": "cache" if ctx.cache_status == "hit" else "provider",
    }
    if ctx.cache_time_saved_ms is not None:
        record["cache_time_saved_ms"] = round(ctx.cache_time_saved_ms, 3)
    if ctx.guardrail_detections:
        record["guardrails"] = [detection.model_dump() for detection in ctx.guardrail_detections]
    if status >= 400 and error:
        record["error"] = error[:_MAX_ERROR_CHARS]
    return record


def log_request_record(record: dict[str, Any]) -> None:
    logger.info(
        "[%s] %s %s -> %s (%.0fms)",
        record.get("request_id"),
        record.get("method"),
        record.get("path"),
        record.get("status"),
        float(record.get("latency_ms") or 0.0),
    )
    log_event("request_completed", **record)


def emit_request_record(sink: RequestLogSink, record: dict[str, Any]) -> None:
    try:
        sink(record)
    except Exception as exc:  # pragma: no cover - operational safeguard
        logger.warning("request log sink failed request_id=%s error=%s", record.get("request_id"), exc)
