"""Transport models shared by the pipeline and provider adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ProviderName(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


_MESSAGE_FIELDS = ("role", "content")


class Message(BaseModel):
    """One conversation turn, validated from its wire shape.

    Keys other than ``role`` and ``content`` (``name``, ``tool_calls``,
    ``tool_call_id``, ...) land in ``extra``. ``content`` may be text, a list
    of content parts or null.
    """

    model_config = ConfigDict(extra="forbid")

    role: str = Field(min_length=1)
    content: str | list[Any] | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _split_extra(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known: dict[str, Any] = {key: data[key] for key in _MESSAGE_FIELDS if key in data}
        known["extra"] = {key: value for key, value in data.items() if key not in _MESSAGE_FIELDS}
        return known

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role}
        if "content" in self.model_fields_set:
            payload["content"] = self.content
        payload.update(self.extra)
        return payload


_KNOWN_FIELDS = ("model", "messages", "temperature", "top_p", "max_tokens", "stream")


class ChatRequest(BaseModel):
    """Chat-completion request envelope.

    Unrecognized top-level fields are kept in ``extra`` and re-attached by
    ``to_payload`` so the passthrough provider sees the caller's body shape.
    """

    model: str = Field(min_length=1)
    messages: list[Message] = Field(min_length=1)
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stream: bool = False
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChatRequest":
        known = {key: payload[key] for key in _KNOWN_FIELDS if key in payload and payload[key] is not None}
        extra = {key: value for key, value in payload.items() if key not in _KNOWN_FIELDS}
        return cls(**known, extra=extra)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [message.to_payload() for message in self.messages],
        }
        for key in ("temperature", "top_p", "max_tokens"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        if "stream" in self.model_fields_set:
            payload["stream"] = self.stream
        payload.update(self.extra)
        return payload


class GuardrailDetection(BaseModel):
    stage: Literal["request", "response"]
    labels: list[str] = Field(default_factory=list)


@dataclass(slots=True)
class UpstreamResponse:
    """Upstream result handed back by a provider adapter.

    ``stream`` is set for successful streaming calls; otherwise ``body``
    holds the full response bytes.
    """

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    stream: AsyncIterator[bytes] | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_stream(self) -> bool:
        return self.stream is not None

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return ""
