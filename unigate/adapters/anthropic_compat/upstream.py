"""Transcoding adapter for Anthropic Messages upstreams."""

from __future__ import annotations

import json
from typing import AsyncIterator

import httpx

from unigate.adapters.anthropic_compat.mapper import to_anthropic_request, to_chat_completion
from unigate.adapters.anthropic_compat.stream import StreamTranscoder
from unigate.adapters.base import ProviderAdapter
from unigate.adapters.openai_compat.stream_utils import STREAM_MEDIA_TYPE
from unigate.adapters.openai_compat.upstream import UpstreamClient, _response_headers, iter_upstream_bytes
from unigate.core.errors import InternalGatewayError
from unigate.core.models import ChatRequest, ProviderName, UpstreamResponse
from unigate.core.responses import json_bytes
from unigate.util.logger import logger


class AnthropicTranscodingAdapter(ProviderAdapter):
    provider = ProviderName.ANTHROPIC

    def __init__(self, *, endpoint: str, api_key: str, upstream: UpstreamClient, api_version: str = "2023-06-01") -> None:
        self.endpoint = endpoint
        self.api_key = api_key
        self.api_version = api_version
        self.upstream = upstream

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
        }

    async def chat_completions(self, request: ChatRequest) -> UpstreamResponse:
        payload = to_anthropic_request(request)
        logger.debug(
            "anthropic transcode model=%s->%s messages=%d system=%s",
            request.model,
            payload["model"],
            len(payload["messages"]),
            "system" in payload,
        )
        response = await self.upstream.send(self.endpoint, payload, self._headers(), stream=request.stream)

        if request.stream and response.is_success:
            return UpstreamResponse(
                status_code=response.status_code,
                headers={"Content-Type": STREAM_MEDIA_TYPE},
                stream=self._transcode_stream(response, request.model),
            )

        if request.stream:
            body = await self.upstream.read_error_body(response)
            return UpstreamResponse(status_code=response.status_code, headers=_response_headers(response.headers), body=body)

        if not response.is_success:
            return UpstreamResponse(
                status_code=response.status_code,
                headers=_response_headers(response.headers),
                body=response.content,
            )

        try:
            upstream_body = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InternalGatewayError("Upstream returned an invalid JSON body") from exc
        if not isinstance(upstream_body, dict):
            raise InternalGatewayError("Upstream returned an invalid JSON body")

        return UpstreamResponse(
            status_code=200,
            headers={"Content-Type": "application/json"},
            body=json_bytes(to_chat_completion(upstream_body)),
        )

    async def _transcode_stream(self, response: httpx.Response, model: str) -> AsyncIterator[bytes]:
        chunks = iter_upstream_bytes(response)
        transcoder = StreamTranscoder(model)
        try:
            async for frame in transcoder.transcode(chunks):
                yield frame
        finally:
            await chunks.aclose()
            if not transcoder.finished:
                logger.info("anthropic stream ended without message_stop model=%s", model)

    async def aclose(self) -> None:
        await self.upstream.aclose()
