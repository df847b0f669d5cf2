from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.core.config import get_settings
from creditmeter.domain.models import ApiKey, User
from creditmeter.persistence.db import get_session
from creditmeter.services.audit import get_request_context, record_event
from creditmeter.services.auth.api_keys import hash_api_key, normalize_role, role_allows
from creditmeter.services.platform_settings import AdminActor


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # The account always comes from the credential, never from the request body.
    subject_id: str
    account_id: str
    role: str
    api_key_id: str
    auth_method: str = "api_key"


class _PrincipalCache:
    """Short-lived hash -> principal map so hot keys skip the database.

    Entries expire a fixed TTL after insertion, which bounds how long a revoked
    key keeps working.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[float, Principal]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key_hash: str) -> Principal | None:
        async with self._lock:
            entry = self._entries.get(key_hash)
            if entry is None:
                return None
            if entry[0] <= time.time():
                del self._entries[key_hash]
                return None
            return entry[1]

    async def put(self, key_hash: str, principal: Principal, ttl_s: int) -> None:
        if ttl_s <= 0:
            return
        async with self._lock:
            self._entries[key_hash] = (time.time() + ttl_s, principal)

    def clear(self) -> None:
        self._entries.clear()


_principal_cache = _PrincipalCache()


def clear_auth_cache() -> None:
    _principal_cache.clear()


def unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def forbidden(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


@dataclass
class _AuthAudit:
    # Writes auth outcomes for one request; the outcome of the request never depends on the write.
    db: AsyncSession
    request: Request
    actor: dict[str, Any] = field(default_factory=lambda: {"actor_type": "anonymous"})

    def bind(self, *, account_id: str, actor_type: str, actor_id: str, actor_role: str | None) -> None:
        self.actor = {
            "account_id": account_id,
            "actor_type": actor_type,
            "actor_id": actor_id,
            "actor_role": actor_role,
        }

    async def write(
        self,
        event_type: str,
        *,
        error: HTTPException | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        ctx = get_request_context(self.request)
        error_code = error.detail.get("code") if error is not None and isinstance(error.detail, dict) else None
        await record_event(
            session=self.db,
            account_id=self.actor.get("account_id"),
            actor_type=self.actor["actor_type"],
            actor_id=self.actor.get("actor_id"),
            actor_role=self.actor.get("actor_role"),
            event_type=event_type,
            outcome="failure" if error is not None else "success",
            resource_type="auth",
            request_id=ctx["request_id"],
            ip_address=ctx["ip_address"],
            user_agent=ctx["user_agent"],
            metadata={"path": self.request.url.path, "method": self.request.method, **(metadata or {})},
            error_code=error_code,
            commit=True,
        )

    async def reject(self, error: HTTPException, *, event_type: str = "auth.access.failure") -> HTTPException:
        await self.write(event_type, error=error)
        return error


def _bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise unauthorized("Missing or invalid bearer token")
    return token


def _key_problem(api_key: ApiKey, user: User) -> tuple[str, HTTPException] | None:
    # First reason a stored key may not be used, as (audit event, error).
    if api_key.revoked_at is not None or not user.is_active:
        return "auth.access.failure", unauthorized("API key is revoked or inactive")
    if api_key.expires_at is not None and api_key.expires_at <= datetime.now(timezone.utc):
        return "auth.api_key.expired", unauthorized("API key expired")
    if api_key.account_id != user.account_id:
        return "auth.access.failure", forbidden("Account mismatch for API key")
    return None


async def _dev_principal(audit: _AuthAudit) -> Principal:
    # Local development only: trust X-Account-Id and X-Role.
    headers = audit.request.headers
    account_id = headers.get("X-Account-Id")
    if not account_id:
        raise await audit.reject(unauthorized("X-Account-Id header is required in dev bypass mode"))
    try:
        role = normalize_role(headers.get("X-Role", "member"))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    principal = Principal(
        subject_id=f"dev-{account_id}",
        account_id=account_id,
        role=role,
        api_key_id="dev-bypass",
        auth_method="dev_bypass",
    )
    audit.bind(account_id=account_id, actor_type="system", actor_id=principal.subject_id, actor_role=role)
    await audit.write("auth.access.success", metadata={"auth_mode": "dev_bypass"})
    return principal


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    audit = _AuthAudit(db=db, request=request)
    try:
        token = _bearer_token(request.headers.get(settings.auth_api_key_header))
    except HTTPException as exc:
        raise await audit.reject(exc)

    if not settings.auth_enabled or token is None:
        if settings.auth_dev_bypass:
            return await _dev_principal(audit)
        if not settings.auth_enabled:
            raise await audit.reject(unauthorized("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access"))
        raise await audit.reject(unauthorized("Missing API key"))

    key_hash = hash_api_key(token)
    cached = await _principal_cache.get(key_hash)
    if cached is not None:
        return cached

    try:
        row = (
            await db.execute(
                select(ApiKey, User).join(User, ApiKey.user_id == User.id).where(ApiKey.key_hash == key_hash)
            )
        ).first()
    except SQLAlchemyError as exc:
        audit.actor = {"actor_type": "system"}
        raise await audit.reject(
            HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
            )
        ) from exc
    if row is None:
        raise await audit.reject(unauthorized("Invalid API key"))

    api_key, user = row
    audit.bind(account_id=api_key.account_id, actor_type="api_key", actor_id=api_key.id, actor_role=user.role)
    problem = _key_problem(api_key, user)
    if problem is not None:
        event_type, error = problem
        raise await audit.reject(error, event_type=event_type)
    try:
        role = normalize_role(user.role)
    except ValueError as exc:
        raise await audit.reject(forbidden(str(exc))) from exc

    principal = Principal(subject_id=user.id, account_id=user.account_id, role=role, api_key_id=api_key.id)
    await _principal_cache.put(key_hash, principal, settings.auth_cache_ttl_s)
    # last_used_at is committed with the success audit row.
    api_key.last_used_at = datetime.now(timezone.utc)
    await audit.write("auth.access.success", metadata={"user_id": user.id})
    return principal


def require_role(minimum_role: str):
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if role_allows(role=principal.role, minimum_role=minimum_role):
            return principal
        audit = _AuthAudit(db=db, request=request)
        audit.bind(
            account_id=principal.account_id,
            actor_type="api_key",
            actor_id=principal.api_key_id,
            actor_role=principal.role,
        )
        error = forbidden("Insufficient role for this operation")
        await audit.write("rbac.forbidden", error=error, metadata={"required_role": minimum_role})
        raise error

    return _dependency


def admin_actor(request: Request, principal: Principal) -> AdminActor:
    return AdminActor(
        actor_id=principal.api_key_id,
        actor_role=principal.role,
        request_id=get_request_context(request)["request_id"],
    )
