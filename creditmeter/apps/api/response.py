from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
VERSION_PREFIX = f"/{API_VERSION}"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Middleware normally assigns this; handlers that run outside it mint their own.
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id") or uuid4().hex
    request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(VERSION_PREFIX)


def response_meta(request_id: str) -> dict[str, str]:
    return ResponseMeta(request_id=request_id).model_dump()


def is_enveloped(payload: Any) -> bool:
    if not isinstance(payload, dict) or "data" not in payload:
        return False
    meta = payload.get("meta")
    return isinstance(meta, dict) and meta.get("api_version") == API_VERSION


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": response_meta(get_request_id(request))}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    detail = ErrorDetail(code=code, message=message, details=details)
    return {"error": detail.model_dump(exclude_none=True), "meta": response_meta(get_request_id(request))}
