from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from creditmeter.domain.models import AuditEvent
from creditmeter.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
# Credentials and signatures are secrets; prompts and model output are customer content.
_SECRET_FRAGMENTS = ("api_key", "authorization", "token", "secret", "password", "signature")
_CONTENT_FRAGMENTS = ("prompt", "text", "content")


def redacts(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SECRET_FRAGMENTS + _CONTENT_FRAGMENTS)


def sanitize_metadata(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): REDACTED if redacts(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Correlation id plus client hints; headers carrying credentials are never read here.
    context: dict[str, str | None] = {"request_id": None, "ip_address": None, "user_agent": None}
    if request is None:
        return context
    context["request_id"] = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    context["ip_address"] = request.client.host if request.client else None
    context["user_agent"] = request.headers.get("user-agent")
    return context


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    account_id: str | None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        account_id=account_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    try:
        if session is None:
            # Standalone events get their own short-lived session and always commit.
            async with SessionLocal() as own_session:
                await _persist(own_session, event, commit=True)
        else:
            await _persist(session, event, commit=bool(commit))
    except SQLAlchemyError as exc:
        # A failed audit write is logged; only strict callers see it raised.
        if not best_effort:
            logger.error("audit_event_write_failed event_type=%s request_id=%s", event_type, request_id, exc_info=exc)
            raise
        logger.warning("audit_event_write_failed event_type=%s request_id=%s", event_type, request_id, exc_info=exc)


async def _persist(session: AsyncSession, event: AuditEvent, *, commit: bool) -> None:
    session.add(event)
    if not commit:
        return
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        raise


async def record_system_event(
    *,
    event_type: str,
    outcome: str = "success",
    account_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
) -> None:
    # Provider and scheduled-job events have no principal behind them.
    await record_event(
        account_id=account_id,
        actor_type="system",
        actor_id=None,
        actor_role=None,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata=metadata,
        error_code=error_code,
    )
