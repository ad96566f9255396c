"""Per-client token bucket admission control."""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from threading import Lock

from unigate.util.logger import logger
from unigate.util.masking import mask_client_key


UNKNOWN_CLIENT_KEY = "unknown"
_WINDOW_MS = 60_000.0


def _header_value(headers: Mapping[str, str], target: str) -> str:
    for key, value in headers.items():
        if key.lower() == target:
            return value
    return ""


def client_key(headers: Mapping[str, str]) -> str:
    """Bearer token, else forwarded client IP, else real IP, else ``unknown``."""
    authorization = _header_value(headers, "authorization")
    if authorization.startswith("Bearer "):
        return authorization[len("Bearer "):]
    forwarded = _header_value(headers, "x-forwarded-for")
    if forwarded:
        return forwarded
    real_ip = _header_value(headers, "x-real-ip")
    if real_ip:
        return real_ip
    return UNKNOWN_CLIENT_KEY


@dataclass(slots=True)
class RateLimitBucket:
    key: str
    tokens: int
    last_refill_at: float


class RateLimiter:
    """Token bucket whose capacity refills completely in one minute.

    A key seen for the first time is admitted and starts with
    ``capacity - 1`` tokens.
    """

    def __init__(self, requests_per_minute: int, *, clock: Callable[[], float] = time.monotonic) -> None:
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.capacity = int(requests_per_minute)
        self.refill_per_minute = int(requests_per_minute)
        self._clock = clock
        self._buckets: dict[str, RateLimitBucket] = {}
        self._lock = Lock()

    def is_allowed(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                self._buckets[key] = RateLimitBucket(key=key, tokens=self.capacity - 1, last_refill_at=now)
                return True

            elapsed_ms = (now - bucket.last_refill_at) * 1000.0
            refill = math.floor(elapsed_ms / _WINDOW_MS * self.refill_per_minute)
            if refill > 0:
                bucket.tokens = min(self.capacity, bucket.tokens + refill)
                bucket.last_refill_at = now

            if bucket.tokens > 0:
                bucket.tokens -= 1
                return True

        logger.warning("rate limit rejected key=%s capacity=%d", mask_client_key(key), self.capacity)
        return False

    def bucket(self, key: str) -> RateLimitBucket | None:
        with self._lock:
            return self._buckets.get(key)
