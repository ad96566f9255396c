"""OpenAI-compatible routes."""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Request
from fastapi.responses import Response

from unigate.core.pipeline import GatewayPipeline
from unigate.util.logger import logger
from unigate.util.masking import redact_headers


router = APIRouter()


def _log_request_if_debug(request: Request, body_size: int) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    logger.debug(
        "incoming request method=%s path=%s headers=%s body_size=%d",
        request.method,
        request.url.path,
        redact_headers(request.headers),
        body_size,
    )


@router.post("/chat/completions")
async def chat_completions(request: Request) -> Response:
    pipeline: GatewayPipeline = request.app.state.pipeline
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    raw_body = await request.body()
    _log_request_if_debug(request, len(raw_body))
    return await pipeline.handle(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        query=dict(request.query_params),
        headers=request.headers,
        raw_body=raw_body,
    )
