"""Request/response PII guardrail stage."""

from __future__ import annotations

from unigate.core.context import RequestContext
from unigate.core.errors import GuardrailBlocked
from unigate.filters.pii_detector import PiiDetector, safe_detect
from unigate.util.logger import logger


GUARDRAIL_MODES = frozenset({"log", "block"})


class GuardrailInspector:
    """Scans request and non-streaming response bodies for PII.

    Every non-empty detection is recorded on the request context. In
    ``block`` mode it also rejects the call: 400 for the request stage and
    502 for the response stage. A disabled inspector does nothing.
    """

    def __init__(self, detector: PiiDetector | None, *, enabled: bool = False, mode: str = "log") -> None:
        if mode not in GUARDRAIL_MODES:
            raise ValueError(f"unsupported guardrail mode: {mode}")
        self.detector = detector
        self.enabled = bool(enabled) and detector is not None
        self.mode = mode

    async def _inspect(self, ctx: RequestContext, stage: str, text: str) -> list[str]:
        if not self.enabled or self.detector is None:
            return []
        labels = await safe_detect(self.detector, text)
        if not labels:
            return []
        ctx.add_detection(stage, labels)
        logger.warning(
            "guardrails %s entities request_id=%s labels=%s mode=%s",
            stage,
            ctx.request_id,
            ", ".join(labels),
            self.mode,
        )
        if self.mode == "block":
            raise GuardrailBlocked(stage, labels)
        return labels

    async def inspect_request(self, ctx: RequestContext, text: str) -> list[str]:
        return await self._inspect(ctx, "request", text)

    async def inspect_response(self, ctx: RequestContext, text: str) -> list[str]:
        return await self._inspect(ctx, "response", text)

    async def aclose(self) -> None:
        if self.detector is not None:
            await self.detector.aclose()
