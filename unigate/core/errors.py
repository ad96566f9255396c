"""Project error hierarchy.

Every externally visible failure is a ``GatewayError`` carrying its HTTP
status, machine code and error type; ``unigate.core.responses`` renders them
into the ``{"error": {...}}`` envelope.
"""

from __future__ import annotations


class ConfigurationError(Exception):
    """Raised when gateway configuration is invalid."""


class GatewayError(Exception):
    """Base error rendered to clients."""

    status_code = 500
    code = "INTERNAL_ERROR"
    error_type = "gateway_error"
    default_message = "Internal gateway error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRequestError(GatewayError):
    status_code = 400
    code = "INVALID_REQUEST"
    error_type = "invalid_request_error"
    default_message = "Request body must be a JSON object"


class MissingModelError(GatewayError):
    status_code = 400
    code = "MISSING_MODEL"
    error_type = "invalid_request_error"
    default_message = "Model is required"


class MissingMessagesError(GatewayError):
    status_code = 400
    code = "MISSING_MESSAGES"
    error_type = "invalid_request_error"
    default_message = "Messages array is required"


class RateLimitExceededError(GatewayError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"
    error_type = "rate_limit_error"
    default_message = "Rate limit exceeded"


class GuardrailBlocked(GatewayError):
    code = "PII_DETECTED"
    error_type = "guardrails_violation"

    def __init__(self, stage: str, labels: list[str]) -> None:
        self.stage = stage
        self.labels = list(labels)
        self.status_code = 400 if stage == "request" else 502
        super().__init__(f"PII detected in {stage}")


class UpstreamError(GatewayError):
    """Base for failures talking to an upstream provider."""


class UpstreamTimeout(UpstreamError):
    status_code = 504
    code = "TIMEOUT"
    default_message = "Request timeout"


class UpstreamTransportError(UpstreamError):
    error_type = "upstream_unreachable"
    default_message = "Upstream unreachable"


class UpstreamHTTPError(UpstreamError):
    code = "PROVIDER_ERROR"
    error_type = "provider_error"

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Provider returned error: {status_code}")


class InternalGatewayError(GatewayError):
    """Any other fault; keeps the 500 INTERNAL_ERROR defaults."""
