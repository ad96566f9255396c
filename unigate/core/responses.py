"""Uniform success/error envelope construction."""

from __future__ import annotations

import json
from typing import Any

from fastapi.responses import JSONResponse

from unigate.core.errors import GatewayError


def error_payload(exc: GatewayError) -> dict[str, Any]:
    return {
        "error": {
            "message": exc.message,
            "type": exc.error_type,
            "code": exc.code,
        }
    }


def error_response(exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=error_payload(exc))


def json_bytes(payload: Any) -> bytes:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
