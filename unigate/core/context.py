"""Pipeline runtime context."""

from __future__ import annotations

from dataclasses import dataclass, field
from time import perf_counter

from unigate.core.models import GuardrailDetection


@dataclass(slots=True)
class RequestContext:
    request_id: str
    method: str = "POST"
    path: str = "/v1/chat/completions"
    payload_size: int = 0
    query: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    started_at: float = field(default_factory=perf_counter)
    model: str | None = None
    provider: str | None = None
    cache_status: str | None = None
    cache_time_saved_ms: float | None = None
    guardrail_detections: list[GuardrailDetection] = field(default_factory=list)

    def add_detection(self, stage: str, labels: list[str]) -> None:
        self.guardrail_detections.append(GuardrailDetection(stage=stage, labels=list(labels)))

    def elapsed_ms(self) -> float:
        return (perf_counter() - self.started_at) * 1000.0
