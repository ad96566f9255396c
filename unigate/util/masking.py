"""Masking of client keys and request headers before they reach log output."""

from __future__ import annotations

import ipaddress
from collections.abc import Mapping


def _looks_like_address(value: str) -> bool:
    candidate = value.split(",")[0].strip().strip("[]")
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        return False
    return True


def mask_client_key(value: str) -> str:
    """Mask a rate-limit key for logs.

    Bearer tokens keep their first 4 and last 2 chars; IP addresses and the
    ``unknown`` sentinel are not secrets and are returned as is.
    """
    normalized = (value or "").strip()
    if not normalized or normalized == "unknown" or _looks_like_address(normalized):
        return normalized
    length = len(normalized)
    if length <= 6:
        return "*" * length
    return f"{normalized[:4]}{'*' * (length - 6)}{normalized[-2:]}"


_REDACTED_HEADERS = frozenset({"authorization", "x-api-key", "cookie", "proxy-authorization"})


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Lower-cased header copy with credentials replaced by ``***``."""
    redacted: dict[str, str] = {}
    for key, value in headers.items():
        name = key.lower()
        if name in _REDACTED_HEADERS or "key" in name or "token" in name:
            redacted[name] = "***"
        else:
            redacted[name] = value
    return redacted
