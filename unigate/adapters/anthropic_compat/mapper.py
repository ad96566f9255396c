"""Chat-completion <-> Anthropic Messages mapping."""

from __future__ import annotations

import time
from typing import Any

from unigate.core.errors import MissingMessagesError
from unigate.core.models import ChatRequest


DEFAULT_MAX_TOKENS = 1024
SYSTEM_SEPARATOR = "\n\n"
TRANSCODABLE_ROLES = frozenset({"system", "user", "assistant"})

MODEL_ALIASES: dict[str, str] = {
    "claude-3-sonnet": "claude-3-sonnet-20240229",
    "claude-3-opus": "claude-3-opus-20240229",
    "claude-3-haiku": "claude-3-haiku-20240307",
    "claude-3-5-sonnet": "claude-3-5-sonnet-20241022",
}

_FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
}


def map_model(model: str) -> str:
    return MODEL_ALIASES.get(model, model)


def map_finish_reason(stop_reason: Any) -> str:
    return _FINISH_REASONS.get(str(stop_reason or ""), "stop")


def to_anthropic_request(request: ChatRequest) -> dict[str, Any]:
    """Build a Messages API body; only text turns can be transcoded."""
    system_parts: list[str] = []
    messages: list[dict[str, str]] = []
    for message in request.messages:
        if message.role not in TRANSCODABLE_ROLES or not isinstance(message.content, str):
            raise MissingMessagesError(
                "Messages for Anthropic models must be system/user/assistant turns with text content"
            )
        if message.role == "system":
            system_parts.append(message.content)
        else:
            messages.append({"role": message.role, "content": message.content})

    payload: dict[str, Any] = {
        "model": map_model(request.model),
        "max_tokens": request.max_tokens if request.max_tokens is not None else DEFAULT_MAX_TOKENS,
        "messages": messages,
    }
    if system_parts:
        payload["system"] = SYSTEM_SEPARATOR.join(system_parts)
    if request.temperature is not None:
        payload["temperature"] = request.temperature
    if request.top_p is not None:
        payload["top_p"] = request.top_p
    if "stream" in request.model_fields_set:
        payload["stream"] = request.stream
    return payload


def _usage_count(usage: dict[str, Any], key: str) -> int:
    value = usage.get(key)
    return int(value) if isinstance(value, (int, float)) else 0


def to_chat_completion(body: dict[str, Any]) -> dict[str, Any]:
    blocks = body.get("content") or []
    content = "".join(
        str(block.get("text", ""))
        for block in blocks
        if isinstance(block, dict) and block.get("type") == "text"
    )
    usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
    prompt_tokens = _usage_count(usage, "input_tokens")
    completion_tokens = _usage_count(usage, "output_tokens")
    return {
        "id": f"chatcmpl-{body.get('id', '')}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": body.get("model", ""),
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": map_finish_reason(body.get("stop_reason")),
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }
