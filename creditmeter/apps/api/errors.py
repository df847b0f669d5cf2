from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from creditmeter.apps.api.response import error_response
from creditmeter.core.errors import (
    AccountNotFoundError,
    ConfigurationValidationError,
    CredentialNotFoundError,
    CreditMeterError,
    InsufficientCreditsError,
    IntegrationUnavailableError,
    NoAvailableCredentialError,
    PaymentSignatureError,
    ProviderConfigError,
    RateLimitedError,
    TrialExpiredError,
    UpstreamProviderError,
)


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "INSUFFICIENT_CREDITS",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

_UNAVAILABLE_MESSAGE = "The AI service is temporarily unavailable. Please try again later."
# Upstream failures a caller can fix by waiting, as opposed to a broken request.
_TRANSIENT_UPSTREAM_KINDS = {"quota", "timeout", "unavailable"}


@dataclass(frozen=True)
class ApiError:
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None
    headers: Mapping[str, str] | None = None


def _render(request: Request, error: ApiError) -> JSONResponse:
    payload = error_response(request=request, code=error.code, message=error.message, details=error.details)
    return JSONResponse(content=payload, status_code=error.status_code, headers=error.headers)


def _from_upstream(exc: UpstreamProviderError) -> ApiError:
    if exc.kind == "safety":
        return ApiError(400, "CONTENT_BLOCKED", "The request was blocked by the AI provider's content policy.")
    if exc.kind in _TRANSIENT_UPSTREAM_KINDS:
        return ApiError(503, "UPSTREAM_UNAVAILABLE", _UNAVAILABLE_MESSAGE, {"kind": exc.kind})
    return ApiError(502, "UPSTREAM_ERROR", "The AI provider returned an error.", {"kind": exc.kind})


def _from_rate_limit(exc: RateLimitedError) -> ApiError:
    if exc.retry_after_s is None:
        return ApiError(429, "RATE_LIMITED", exc.reason, {"scope": exc.scope})
    return ApiError(
        429,
        "RATE_LIMITED",
        exc.reason,
        {"scope": exc.scope, "retry_after_s": exc.retry_after_s},
        {"Retry-After": str(exc.retry_after_s)},
    )


def to_api_error(exc: CreditMeterError) -> ApiError:
    # Dispatch on the error type and its structured fields, never on message text.
    if isinstance(exc, InsufficientCreditsError):
        return ApiError(
            402,
            "INSUFFICIENT_CREDITS",
            "Insufficient credits. Please top up to continue.",
            {"balance": exc.balance, "required": exc.required},
        )
    if isinstance(exc, TrialExpiredError):
        return ApiError(402, "TRIAL_EXPIRED", "Your free trial has ended. Please subscribe to continue.")
    if isinstance(exc, RateLimitedError):
        return _from_rate_limit(exc)
    if isinstance(exc, (NoAvailableCredentialError, ProviderConfigError, IntegrationUnavailableError)):
        # Pool and provider internals stay server-side.
        return ApiError(503, "SERVICE_UNAVAILABLE", _UNAVAILABLE_MESSAGE)
    if isinstance(exc, UpstreamProviderError):
        return _from_upstream(exc)
    if isinstance(exc, AccountNotFoundError):
        return ApiError(404, "ACCOUNT_NOT_FOUND", "Credit account not found")
    if isinstance(exc, CredentialNotFoundError):
        return ApiError(404, "CREDENTIAL_NOT_FOUND", str(exc))
    if isinstance(exc, ConfigurationValidationError):
        return ApiError(422, "VALIDATION_ERROR", str(exc))
    if isinstance(exc, PaymentSignatureError):
        return ApiError(400, "INVALID_SIGNATURE", str(exc))
    return ApiError(500, "INTERNAL_ERROR", "Internal server error")


def _from_http_detail(status_code: int, detail: Any, headers: Mapping[str, str] | None) -> ApiError:
    # Route code raises HTTPException with {"code", "message", **extra}; framework errors carry a string.
    fallback = _STATUS_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key not in {"code", "message"}}
        return ApiError(
            status_code,
            str(detail.get("code") or fallback),
            str(detail.get("message") or "Request failed"),
            extra or None,
            headers,
        )
    message = detail if isinstance(detail, str) else "Request failed"
    return ApiError(status_code, fallback, message, None, headers)


async def domain_exception_handler(request: Request, exc: CreditMeterError) -> JSONResponse:
    error = to_api_error(exc)
    if error.status_code >= 500:
        logger.warning(
            "domain_error path=%s status=%s code=%s error=%s",
            request.url.path,
            error.status_code,
            error.code,
            type(exc).__name__,
        )
    return _render(request, error)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _render(request, _from_http_detail(exc.status_code, exc.detail, exc.headers))


# Router-level 404/405 arrive as Starlette exceptions and share the same envelope.
starlette_http_exception_handler = http_exception_handler


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = {"errors": jsonable_encoder(exc.errors())}
    return _render(request, ApiError(422, "REQUEST_VALIDATION_ERROR", "Validation error", details))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _render(request, ApiError(500, "INTERNAL_ERROR", "Internal server error"))
