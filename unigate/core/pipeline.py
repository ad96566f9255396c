"""Request pipeline: rate limit, cache, guardrails, routing and dispatch."""

from __future__ import annotations

from collections.abc import Mapping
from typing import AsyncIterator

from fastapi.responses import Response, StreamingResponse

from unigate.adapters.base import ProviderAdapter
from unigate.adapters.openai_compat.mapper import parse_chat_request
from unigate.adapters.openai_compat.stream_utils import (
    _build_streaming_response,
    _stream_done_sse_chunk,
    _stream_error_sse_chunk,
)
from unigate.adapters.openai_compat.upstream import _safe_error_detail
from unigate.core.audit import RequestLogSink, build_request_record, emit_request_record, log_request_record
from unigate.core.cache import ResponseCache
from unigate.core.context import RequestContext
from unigate.core.errors import (
    GatewayError,
    InternalGatewayError,
    RateLimitExceededError,
    UpstreamHTTPError,
)
from unigate.core.models import ProviderName, UpstreamResponse
from unigate.core.rate_limit import RateLimiter, client_key
from unigate.core.responses import error_response
from unigate.core.routing import RequestRouter
from unigate.filters.pii_guard import GuardrailInspector
from unigate.util.logger import logger
from unigate.util.masking import redact_headers


class GatewayPipeline:
    def __init__(
        self,
        *,
        router: RequestRouter,
        rate_limiter: RateLimiter,
        cache: ResponseCache,
        guardrails: GuardrailInspector,
        adapters: Mapping[ProviderName, ProviderAdapter],
        log_sink: RequestLogSink = log_request_record,
    ) -> None:
        self.router = router
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.guardrails = guardrails
        self.adapters = dict(adapters)
        self.log_sink = log_sink

    async def handle(
        self,
        *,
        request_id: str,
        path: str,
        headers: Mapping[str, str],
        raw_body: bytes,
        method: str = "POST",
        query: Mapping[str, str] | None = None,
    ) -> Response:
        ctx = RequestContext(
            request_id=request_id,
            method=method,
            path=path,
            payload_size=len(raw_body),
            query=dict(query or {}),
            headers=redact_headers(headers),
        )
        error_text: str | None = None
        try:
            response = await self._run(ctx, headers, raw_body)
        except GatewayError as exc:
            error_text = exc.message
            if isinstance(exc, UpstreamHTTPError) and exc.detail:
                error_text = f"{exc.message}: {exc.detail}"
            response = error_response(exc)
        except Exception as exc:
            logger.exception("gateway error request_id=%s", request_id)
            error_text = str(exc) or exc.__class__.__name__
            response = error_response(InternalGatewayError(error_text))

        if not isinstance(response, StreamingResponse):
            record = build_request_record(
                ctx,
                status=response.status_code,
                response_size=len(response.body),
                error=error_text,
            )
            emit_request_record(self.log_sink, record)
        return response

    async def _run(self, ctx: RequestContext, headers: Mapping[str, str], raw_body: bytes) -> Response:
        if not self.rate_limiter.is_allowed(client_key(headers)):
            raise RateLimitExceededError()

        chat_request = parse_chat_request(raw_body)
        ctx.model = chat_request.model

        hit = self.cache.lookup(ctx.path, raw_body)
        if hit is not None:
            ctx.cache_status = "hit"
            ctx.cache_time_saved_ms = hit.time_saved_ms
            ctx.model = hit.model or ctx.model
            ctx.provider = hit.provider
            logger.debug("cache hit request_id=%s saved_ms=%.1f", ctx.request_id, hit.time_saved_ms)
            return Response(content=hit.body, status_code=hit.status_code, headers=dict(hit.headers))
        ctx.cache_status = "miss"
        ctx.cache_time_saved_ms = 0.0

        await self.guardrails.inspect_request(ctx, raw_body.decode("utf-8", errors="replace"))

        provider = self.router.resolve_provider(chat_request.model)
        ctx.provider = provider.value
        logger.debug("routing model=%s provider=%s request_id=%s", chat_request.model, provider.value, ctx.request_id)
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise InternalGatewayError(f"No adapter configured for provider {provider.value}")

        upstream = await adapter.chat_completions(chat_request)
        if not upstream.ok:
            detail = _safe_error_detail(upstream.body)
            logger.error("provider error status=%s provider=%s detail=%s", upstream.status_code, provider.value, detail)
            raise UpstreamHTTPError(upstream.status_code, detail)

        if upstream.is_stream:
            return _build_streaming_response(
                self._relay_stream(ctx, upstream),
                status_code=upstream.status_code,
                headers=upstream.headers,
                media_type=upstream.content_type,
            )

        await self.guardrails.inspect_response(ctx, upstream.body.decode("utf-8", errors="replace"))

        self.cache.store(
            ctx.path,
            raw_body,
            status_code=upstream.status_code,
            headers=upstream.headers,
            body=upstream.body,
            latency_ms=ctx.elapsed_ms(),
            model=ctx.model,
            provider=ctx.provider,
        )
        return Response(content=upstream.body, status_code=upstream.status_code, headers=upstream.headers)

    async def _relay_stream(self, ctx: RequestContext, upstream: UpstreamResponse) -> AsyncIterator[bytes]:
        sent = 0
        error_text: str | None = None
        status = upstream.status_code
        stream = upstream.stream
        if stream is None:
            return
        try:
            async for chunk in stream:
                sent += len(chunk)
                yield chunk
        except GatewayError as exc:
            error_text = exc.message
            status = exc.status_code
            logger.error("stream upstream failure request_id=%s error=%s", ctx.request_id, exc.message)
            yield _stream_error_sse_chunk(exc)
            yield _stream_done_sse_chunk()
        finally:
            close = getattr(stream, "aclose", None)
            if close is not None:
                await close()
            record = build_request_record(ctx, status=status, response_size=sent, error=error_text)
            emit_request_record(self.log_sink, record)

    async def aclose(self) -> None:
        for adapter in self.adapters.values():
            await adapter.aclose()
        await self.guardrails.aclose()
