"""Exposed chat-completion body <-> ChatRequest."""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from unigate.core.errors import InvalidRequestError, MissingMessagesError, MissingModelError
from unigate.core.models import ChatRequest


def decode_body(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidRequestError("Request body must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidRequestError()
    return payload


def to_chat_request(payload: dict[str, Any]) -> ChatRequest:
    """Validate a decoded body; model is checked before messages."""
    model = payload.get("model")
    if not isinstance(model, str) or not model:
        raise MissingModelError()

    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise MissingMessagesError()

    try:
        return ChatRequest.from_payload(payload)
    except ValidationError as exc:
        if any(error["loc"] and error["loc"][0] == "messages" for error in exc.errors()):
            raise MissingMessagesError("Each message must be an object with a role") from exc
        fields = sorted({str(error["loc"][0]) for error in exc.errors() if error["loc"]})
        raise InvalidRequestError(f"Invalid request fields: {', '.join(fields)}") from exc


def parse_chat_request(raw_body: bytes) -> ChatRequest:
    return to_chat_request(decode_body(raw_body))
