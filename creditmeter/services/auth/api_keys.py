from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.domain.models import ApiKey, User
from creditmeter.services.audit import record_event


# member uses metered features, operator reads platform state, admin changes it.
ROLE_ORDER: dict[str, int] = {
    "member": 1,
    "operator": 2,
    "admin": 3,
}

API_KEY_PREFIX = "cmk"


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def hash_api_key(raw_key: str) -> str:
    # SHA-256 digest; plaintext keys are never stored.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    # Returns (key_id, raw_key, key_prefix, key_hash); the id is embedded for traceability.
    resolved_id = key_id or uuid4().hex
    raw_key = f"{API_KEY_PREFIX}_{resolved_id}_{secrets.token_urlsafe(32)}"
    return resolved_id, raw_key, raw_key[:12], hash_api_key(raw_key)


@dataclass(frozen=True)
class IssuedKey:
    key_id: str
    user_id: str
    account_id: str
    key_prefix: str
    # Shown once at issue time; only the hash is persisted.
    raw_key: str


async def issue_api_key(
    session: AsyncSession,
    *,
    account_id: str,
    role: str,
    name: str,
    user_id: str | None = None,
    email: str | None = None,
    expires_at: datetime | None = None,
    actor_id: str = "system",
) -> IssuedKey:
    normalized = normalize_role(role)
    user = await session.get(User, user_id) if user_id else None
    if user is None:
        user = User(id=user_id or uuid4().hex, account_id=account_id, email=email, role=normalized, is_active=True)
        session.add(user)
    elif user.account_id != account_id:
        raise ValueError(f"User {user.id} belongs to another account")
    else:
        user.role = normalized
        user.email = email or user.email
    # The key row references the user, so the user insert has to land first.
    await session.flush()

    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    session.add(
        ApiKey(
            id=key_id,
            user_id=user.id,
            account_id=account_id,
            key_prefix=key_prefix,
            key_hash=key_hash,
            name=name,
            expires_at=expires_at,
        )
    )
    await session.commit()
    await record_event(
        session=session,
        account_id=account_id,
        actor_type="system",
        actor_id=actor_id,
        actor_role=normalized,
        event_type="auth.api_key.created",
        outcome="success",
        resource_type="api_key",
        resource_id=key_id,
        metadata={"user_id": user.id, "key_prefix": key_prefix, "key_name": name},
        commit=True,
        best_effort=False,
    )
    return IssuedKey(key_id=key_id, user_id=user.id, account_id=account_id, key_prefix=key_prefix, raw_key=raw_key)


async def revoke_api_key(session: AsyncSession, key_id: str, *, actor_id: str = "system") -> bool:
    # Revoked keys keep their row so audit history still resolves them; False means already revoked.
    api_key = await session.get(ApiKey, key_id)
    if api_key is None:
        raise LookupError(f"API key {key_id} not found")
    if api_key.revoked_at is not None:
        return False
    api_key.revoked_at = datetime.now(timezone.utc)
    await session.commit()
    await record_event(
        session=session,
        account_id=api_key.account_id,
        actor_type="system",
        actor_id=actor_id,
        actor_role=None,
        event_type="auth.api_key.revoked",
        outcome="success",
        resource_type="api_key",
        resource_id=key_id,
        metadata={"user_id": api_key.user_id, "key_prefix": api_key.key_prefix},
        commit=True,
        best_effort=False,
    )
    return True
