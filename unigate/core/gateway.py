"""FastAPI app factory."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from unigate.adapters.anthropic_compat.upstream import AnthropicTranscodingAdapter
from unigate.adapters.base import ProviderAdapter
from unigate.adapters.openai_compat.router import router as openai_router
from unigate.adapters.openai_compat.upstream import OpenAIPassthroughAdapter, UpstreamClient
from unigate.config.gateway_config import GatewayConfig, load_gateway_config
from unigate.core.audit import RequestLogSink, log_request_record
from unigate.core.cache import ResponseCache
from unigate.core.errors import InternalGatewayError
from unigate.core.models import ProviderName
from unigate.core.pipeline import GatewayPipeline
from unigate.core.rate_limit import RateLimiter
from unigate.core.responses import error_response
from unigate.core.routing import RequestRouter
from unigate.filters.pii_detector import PiiDetector, build_detector
from unigate.filters.pii_guard import GuardrailInspector
from unigate.util.logger import logger, set_log_level


REQUEST_ID_HEADER = "x-request-id"


def _upstream_client(config: GatewayConfig) -> UpstreamClient:
    return UpstreamClient(
        timeout_seconds=config.timeout_seconds,
        max_connections=config.max_connections,
        max_keepalive_connections=config.max_keepalive_connections,
    )


def build_adapters(config: GatewayConfig) -> dict[ProviderName, ProviderAdapter]:
    openai = config.providers[ProviderName.OPENAI]
    anthropic = config.providers[ProviderName.ANTHROPIC]
    return {
        ProviderName.OPENAI: OpenAIPassthroughAdapter(
            endpoint=openai.endpoint,
            api_key=openai.api_key,
            upstream=_upstream_client(config),
        ),
        ProviderName.ANTHROPIC: AnthropicTranscodingAdapter(
            endpoint=anthropic.endpoint,
            api_key=anthropic.api_key,
            api_version=config.anthropic_version,
            upstream=_upstream_client(config),
        ),
    }


def build_pipeline(
    config: GatewayConfig,
    *,
    adapters: Mapping[ProviderName, ProviderAdapter] | None = None,
    detector: PiiDetector | None = None,
    rate_limiter: RateLimiter | None = None,
    cache: ResponseCache | None = None,
    log_sink: RequestLogSink = log_request_record,
) -> GatewayPipeline:
    guardrails_config = config.guardrails
    if detector is None and guardrails_config.enabled:
        detector = build_detector(guardrails_config.service_url, guardrails_config.timeout_ms)
    return GatewayPipeline(
        router=RequestRouter(config.model_mappings, config.default_provider),
        rate_limiter=rate_limiter if rate_limiter is not None else RateLimiter(config.rate_limit_per_minute),
        cache=cache if cache is not None else ResponseCache(config.cache_ttl_seconds),
        guardrails=GuardrailInspector(detector, enabled=guardrails_config.enabled, mode=guardrails_config.mode),
        adapters=adapters if adapters is not None else build_adapters(config),
        log_sink=log_sink,
    )


def create_app(config: GatewayConfig | None = None, *, pipeline: GatewayPipeline | None = None) -> FastAPI:
    config = config or load_gateway_config()
    set_log_level(config.log_level)
    gateway_pipeline = pipeline or build_pipeline(config)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info(
            "gateway ready default_provider=%s rate_limit=%d/min cache_ttl=%.0fs guardrails=%s",
            config.default_provider.value,
            config.rate_limit_per_minute,
            config.cache_ttl_seconds,
            config.guardrails.mode if config.guardrails.enabled else "off",
        )
        yield
        await gateway_pipeline.aclose()

    app = FastAPI(title="UniGate", lifespan=lifespan)
    app.state.config = config
    app.state.pipeline = gateway_pipeline
    app.include_router(openai_router, prefix="/v1")

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        try:
            response = await call_next(request)
        except Exception as exc:  # pragma: no cover - fail-safe
            logger.exception("gateway unhandled exception path=%s", request.url.path)
            response = error_response(InternalGatewayError(f"gateway internal error: {exc}"))
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    cors = config.cors
    if cors.enabled:
        # outermost layer: answers preflights before routing
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cors.allow_origins),
            allow_methods=list(cors.allow_methods),
            allow_headers=list(cors.allow_headers),
            expose_headers=list(cors.expose_headers),
            allow_credentials=cors.allow_credentials,
            max_age=cors.max_age,
        )

    return app
