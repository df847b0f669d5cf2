from __future__ import annotations

from typing import Any

from creditmeter.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(
    description: str, *, code: str, message: str, details: dict[str, Any] | None = None
) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _error_response("Bad request", code="BAD_REQUEST", message="Bad request"),
    401: _error_response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    402: _error_response(
        "Insufficient credits",
        code="INSUFFICIENT_CREDITS",
        message="Insufficient credits. Please top up to continue.",
        details={"balance": 4, "required": 10},
    ),
    403: _error_response("Forbidden", code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    404: _error_response("Not found", code="NOT_FOUND", message="Resource not found"),
    422: _error_response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    429: _error_response(
        "Rate limited",
        code="RATE_LIMITED",
        message="Rate limit exceeded. Please wait a moment before trying again.",
        details={"scope": "account", "retry_after_s": 42},
    ),
    500: _error_response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    502: _error_response("Upstream error", code="UPSTREAM_ERROR", message="The AI provider returned an error"),
    503: _error_response(
        "Service unavailable",
        code="SERVICE_UNAVAILABLE",
        message="The AI service is temporarily unavailable. Please try again later.",
    ),
}
