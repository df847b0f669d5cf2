from __future__ import annotations

import json
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from creditmeter.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from creditmeter.apps.api.response import VERSION_PREFIX, is_enveloped, is_versioned_request, response_meta
from creditmeter.apps.api.routes.accounts import router as accounts_router
from creditmeter.apps.api.routes.billing import router as billing_router
from creditmeter.apps.api.routes.credits import router as credits_router
from creditmeter.apps.api.routes.health import router as health_router
from creditmeter.apps.api.routes.metered import router as metered_router
from creditmeter.apps.api.routes.platform_admin import router as platform_admin_router
from creditmeter.core.config import Settings, get_settings
from creditmeter.core.errors import CreditMeterError
from creditmeter.core.logging import configure_logging
from creditmeter.services.telemetry import record_request


_ROUTERS = (
    health_router,
    accounts_router,
    credits_router,
    metered_router,
    billing_router,
    platform_admin_router,
)
_DOC_PATHS = (f"{VERSION_PREFIX}/openapi.json", f"{VERSION_PREFIX}/docs")
# Reachable without a bearer key; the webhook authenticates by signature instead.
_PUBLIC_PATHS = {f"{VERSION_PREFIX}/health", f"{VERSION_PREFIX}/billing/payments/webhook"}


def _route_class(request: Request) -> str:
    path = request.url.path
    if path.startswith(f"{VERSION_PREFIX}/ai/"):
        return "metered"
    if path.startswith(f"{VERSION_PREFIX}/admin/"):
        return "admin"
    return "read" if request.method in {"GET", "HEAD"} else "write"


def _should_envelope(request: Request, response: Response) -> bool:
    # call_next hands back a streamed wrapper, so the route's response class is gone; go by content type.
    return (
        response.status_code < 400
        and response.headers.get("content-type", "").startswith("application/json")
        and is_versioned_request(request)
        and not request.url.path.startswith(_DOC_PATHS)
    )


async def _read_body(response: Response) -> bytes:
    body_iterator = getattr(response, "body_iterator", None)
    if body_iterator is None:
        return bytes(response.body)
    chunks: list[bytes] = []
    async for chunk in body_iterator:
        chunks.append(chunk.encode("utf-8") if isinstance(chunk, str) else bytes(chunk))
    return b"".join(chunks)


async def _envelope(response: Response, request_id: str) -> Response:
    body = await _read_body(response)
    background = getattr(response, "background", None)
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        payload = None
    if payload is None or is_enveloped(payload):
        # The body iterator is spent; replay the bytes with the original headers.
        replayed = Response(content=body, status_code=response.status_code, background=background)
        replayed.raw_headers = list(response.raw_headers)
        return replayed
    wrapped = JSONResponse(
        content={"data": payload, "meta": response_meta(request_id)},
        status_code=response.status_code,
        background=background,
    )
    for key, value in response.headers.items():
        if key.lower() not in {"content-length", "content-type"}:
            wrapped.headers.append(key, value)
    return wrapped


def _openapi_schema(app: FastAPI, settings: Settings) -> dict[str, Any]:
    if app.openapi_schema:
        return app.openapi_schema
    schema = get_openapi(title=f"{settings.app_name} API", version=VERSION_PREFIX.strip("/"), routes=app.routes)
    schema.setdefault("components", {}).setdefault("securitySchemes", {})["BearerAuth"] = {
        "type": "http",
        "scheme": "bearer",
    }
    for path, operations in schema.get("paths", {}).items():
        if path not in _PUBLIC_PATHS:
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
    app.openapi_schema = schema
    return schema


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=f"{settings.app_name} API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        started = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            route_class=_route_class(request),
            status_code=response.status_code,
            latency_ms=(time.monotonic() - started) * 1000.0,
        )
        if _should_envelope(request, response):
            response = await _envelope(response, request_id)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(CreditMeterError, domain_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in _ROUTERS:
        app.include_router(router, prefix=VERSION_PREFIX)

    @app.get(_DOC_PATHS[0], include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get(_DOC_PATHS[1], include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url=_DOC_PATHS[0], title=f"{settings.app_name} API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=_DOC_PATHS[1])

    app.openapi = lambda: _openapi_schema(app, settings)  # type: ignore[method-assign]
    return app


app = create_app()
