"""Memory-resident TTL response cache keyed by request path and raw body."""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from threading import Lock

from unigate.util.logger import logger


DEFAULT_TTL_SECONDS = 60.0
STREAM_CONTENT_TYPE = "text/event-stream"

# never replayed from cache
_UNSTORED_HEADERS = frozenset(
    {
        "x-request-id",
        "content-length",
        "connection",
        "keep-alive",
        "transfer-encoding",
        "upgrade",
    }
)


def cache_key(path: str, raw_body: bytes) -> bytes:
    return path.encode("utf-8") + b":" + raw_body


@dataclass(slots=True)
class CacheEntry:
    expires_at: float
    status_code: int
    headers: list[tuple[str, str]]
    body: bytes
    latency_ms: float
    model: str | None = None
    provider: str | None = None


@dataclass(slots=True)
class CacheHit:
    status_code: int
    headers: list[tuple[str, str]]
    body: bytes
    time_saved_ms: float
    model: str | None = None
    provider: str | None = None


class ResponseCache:
    """Stores successful non-streaming responses for a fixed TTL.

    Entries have no capacity bound and are never swept; a stale entry stays
    until a newer response with the identical key overwrites it.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: dict[bytes, CacheEntry] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def lookup(self, path: str, raw_body: bytes) -> CacheHit | None:
        started = self._clock()
        key = cache_key(path, raw_body)
        with self._lock:
            entry = self._entries.get(key)
        if entry is None or entry.expires_at <= started:
            return None
        serve_ms = (self._clock() - started) * 1000.0
        return CacheHit(
            status_code=entry.status_code,
            headers=list(entry.headers),
            body=entry.body,
            time_saved_ms=max(0.0, entry.latency_ms - serve_ms),
            model=entry.model,
            provider=entry.provider,
        )

    def store(
        self,
        path: str,
        raw_body: bytes,
        *,
        status_code: int,
        headers: Mapping[str, str],
        body: bytes,
        latency_ms: float,
        model: str | None = None,
        provider: str | None = None,
    ) -> bool:
        if not 200 <= status_code < 300:
            return False
        content_type = next((value for name, value in headers.items() if name.lower() == "content-type"), "")
        if STREAM_CONTENT_TYPE in content_type.lower():
            return False

        entry = CacheEntry(
            expires_at=self._clock() + self.ttl_seconds,
            status_code=status_code,
            headers=[(name, value) for name, value in headers.items() if name.lower() not in _UNSTORED_HEADERS],
            body=bytes(body),
            latency_ms=float(latency_ms),
            model=model,
            provider=provider,
        )
        with self._lock:
            self._entries[cache_key(path, raw_body)] = entry
        logger.debug("cache stored path=%s status=%s ttl=%.1fs", path, status_code, self.ttl_seconds)
        return True
