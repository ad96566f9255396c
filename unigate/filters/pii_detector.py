"""PII detection capability consumed by the guardrail stage.

``detect`` returns entity-type labels. Callers go through ``safe_detect``,
which never raises: a failing detector is logged and reported as having
found nothing.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any

import httpx

from unigate.util.logger import logger


_DEFAULT_PATTERNS: tuple[tuple[str, str], ...] = (
    ("EMAIL", r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    ("SSN", r"\b\d{3}-\d{2}-\d{4}\b"),
    ("CREDIT_DEBIT_NUMBER", r"\b(?:\d[ -]?){13,16}\b"),
    ("PHONE", r"(?<![\w-])(?:\+?1[-.\s]?)?(?:\(\d{3}\)|\d{3})[-.\s]\d{3}[-.\s]\d{4}\b"),
    ("IP_ADDRESS", r"\b(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)\b"),
    ("AWS_ACCESS_KEY", r"\bAKIA[0-9A-Z]{16}\b"),
    ("API_TOKEN", r"\b(?:sk|rk|pk)-[A-Za-z0-9\-_]{10,}\b"),
)


class PiiDetector(ABC):
    name = "base"

    @abstractmethod
    async def detect(self, text: str) -> list[str]:
        """Return entity labels found in *text*."""

    async def aclose(self) -> None:
        return None


class RegexPiiDetector(PiiDetector):
    """Pattern-table detector; labels come back in order of first match position."""

    name = "regex"

    def __init__(self, patterns: list[tuple[str, str]] | None = None) -> None:
        compiled: list[tuple[str, re.Pattern[str]]] = []
        for label, regex in patterns or list(_DEFAULT_PATTERNS):
            try:
                compiled.append((str(label).upper(), re.compile(regex)))
            except re.error as exc:
                logger.warning("pii pattern skipped (invalid regex) label=%s error=%s", label, exc)
        self._patterns = compiled

    async def detect(self, text: str) -> list[str]:
        hits: list[tuple[int, str]] = []
        for label, pattern in self._patterns:
            match = pattern.search(text)
            if match:
                hits.append((match.start(), label))
        hits.sort(key=lambda item: item[0])
        labels: list[str] = []
        for _, label in hits:
            if label not in labels:
                labels.append(label)
        return labels


class PiiServiceDetector(PiiDetector):
    """Remote detection service client.

    Request: ``POST {"text": ...}``. Response: ``{"entities": [{"type": ...}]}``
    or ``{"labels": [...]}``.
    """

    name = "service"

    def __init__(self, *, service_url: str, timeout_ms: int = 2000, client: httpx.AsyncClient | None = None) -> None:
        self.service_url = service_url.strip()
        self.timeout_s = max(0.001, int(timeout_ms) / 1000.0)
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(http2=False)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _labels_from_payload(payload: Any) -> list[str]:
        if not isinstance(payload, dict):
            raise ValueError("pii_service_invalid_payload")
        labels: list[str] = []
        entities = payload.get("entities")
        if isinstance(entities, list):
            for entity in entities:
                if isinstance(entity, dict) and entity.get("type"):
                    labels.append(str(entity["type"]))
        raw_labels = payload.get("labels")
        if isinstance(raw_labels, list):
            labels.extend(str(item) for item in raw_labels if str(item).strip())
        return labels

    async def detect(self, text: str) -> list[str]:
        client = self._get_client()
        response = await client.post(self.service_url, json={"text": text}, timeout=self.timeout_s)
        response.raise_for_status()
        return self._labels_from_payload(response.json())


async def safe_detect(detector: PiiDetector, text: str) -> list[str]:
    if not text.strip():
        return []
    try:
        return list(await detector.detect(text))
    except Exception as exc:
        logger.error("guardrails detection error detector=%s error=%s", detector.name, exc)
        return []


def build_detector(service_url: str = "", timeout_ms: int = 2000) -> PiiDetector:
    if service_url.strip():
        return PiiServiceDetector(service_url=service_url, timeout_ms=timeout_ms)
    return RegexPiiDetector()
