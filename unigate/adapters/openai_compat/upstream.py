"""
Upstream HTTP plumbing shared by provider adapters, and the passthrough
adapter for OpenAI-compatible upstreams.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Mapping

import httpx

from unigate.adapters.base import ProviderAdapter
from unigate.core.errors import UpstreamTimeout, UpstreamTransportError
from unigate.core.models import ChatRequest, ProviderName, UpstreamResponse
from unigate.util.logger import logger


_HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}
# httpx has already decoded the body, so the length/encoding no longer apply
_DROPPED_RESPONSE_HEADERS = {*_HOP_BY_HOP_HEADERS, "content-length", "content-encoding"}


def _response_headers(headers: httpx.Headers) -> dict[str, str]:
    return {key: value for key, value in headers.items() if key.lower() not in _DROPPED_RESPONSE_HEADERS}


def _safe_error_detail(body: bytes) -> str:
    text = body.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return text[:600]
    if isinstance(parsed, dict) and isinstance(parsed.get("error"), dict):
        message = parsed["error"].get("message")
        if isinstance(message, str):
            return message[:600]
    return json.dumps(parsed, ensure_ascii=False)[:600]


class UpstreamClient:
    """Owns one ``httpx.AsyncClient`` and bounds every call by one deadline.

    The deadline covers the whole exchange for non-streaming calls and the
    response head for streaming calls; httpx's own timeout carries the same
    value so an idle stream cannot hang forever.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float,
        max_connections: int = 100,
        max_keepalive_connections: int = 20,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout_seconds = float(timeout_seconds)
        self.max_connections = max_connections
        self.max_keepalive_connections = max_keepalive_connections
        self._client = client
        self._client_lock: asyncio.Lock | None = None

    def _http_limits(self) -> httpx.Limits:
        return httpx.Limits(
            max_connections=max(10, int(self.max_connections)),
            max_keepalive_connections=max(5, int(self.max_keepalive_connections)),
        )

    def _http_timeout(self) -> httpx.Timeout:
        timeout = self.timeout_seconds
        return httpx.Timeout(connect=timeout, read=timeout, write=timeout, pool=timeout)

    async def get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        if self._client_lock is None:
            self._client_lock = asyncio.Lock()
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    http2=False,
                    timeout=self._http_timeout(),
                    limits=self._http_limits(),
                )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, url: str, payload: dict[str, Any], headers: Mapping[str, str], *, stream: bool) -> httpx.Response:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        logger.debug("upstream send url=%s payload_bytes=%d stream=%s", url, len(body), stream)
        client = await self.get_client()
        request = client.build_request("POST", url, content=body, headers=dict(headers))
        try:
            response = await asyncio.wait_for(client.send(request, stream=stream), timeout=self.timeout_seconds)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("upstream timeout url=%s timeout=%.1fs", url, self.timeout_seconds)
            raise UpstreamTimeout() from exc
        except httpx.HTTPError as exc:
            detail = (str(exc) or "").strip() or exc.__class__.__name__
            logger.warning("upstream http_error url=%s error=%s", url, detail)
            raise UpstreamTransportError(f"Upstream unreachable: {detail}") from exc
        logger.debug("upstream done url=%s status=%s", url, response.status_code)
        return response

    async def read_error_body(self, response: httpx.Response) -> bytes:
        """Fully read a failed streaming response and release its connection."""
        try:
            return await asyncio.wait_for(response.aread(), timeout=self.timeout_seconds)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UpstreamTimeout() from exc
        except httpx.HTTPError as exc:
            raise UpstreamTransportError(f"Upstream unreachable: {exc}") from exc
        finally:
            await response.aclose()


async def iter_upstream_bytes(response: httpx.Response) -> AsyncIterator[bytes]:
    """Yield network chunks as they arrive; the response is closed on exit."""
    try:
        async for chunk in response.aiter_bytes():
            if chunk:
                yield chunk
    except httpx.TimeoutException as exc:
        raise UpstreamTimeout() from exc
    except httpx.HTTPError as exc:
        raise UpstreamTransportError(f"Upstream unreachable: {exc}") from exc
    finally:
        await response.aclose()


class OpenAIPassthroughAdapter(ProviderAdapter):
    """Forwards the envelope unchanged and returns the upstream response unchanged."""

    provider = ProviderName.OPENAI

    def __init__(self, *, endpoint: str, api_key: str, upstream: UpstreamClient) -> None:
        self.endpoint = endpoint
        self.api_key = api_key
        self.upstream = upstream

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def chat_completions(self, request: ChatRequest) -> UpstreamResponse:
        payload = request.to_payload()
        response = await self.upstream.send(self.endpoint, payload, self._headers(), stream=request.stream)
        headers = _response_headers(response.headers)

        if not request.stream:
            return UpstreamResponse(status_code=response.status_code, headers=headers, body=response.content)

        if not response.is_success:
            body = await self.upstream.read_error_body(response)
            logger.warning(
                "passthrough stream upstream error status=%s detail=%s",
                response.status_code,
                _safe_error_detail(body),
            )
            return UpstreamResponse(status_code=response.status_code, headers=headers, body=body)

        return UpstreamResponse(
            status_code=response.status_code,
            headers=headers,
            stream=iter_upstream_bytes(response),
        )

    async def aclose(self) -> None:
        await self.upstream.aclose()
