from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import select

from creditmeter.domain.models import ApiKey, AuditEvent
from creditmeter.persistence.db import SessionLocal
from creditmeter.services.auth.api_keys import (
    API_KEY_PREFIX,
    generate_api_key,
    hash_api_key,
    issue_api_key,
    normalize_role,
    revoke_api_key,
    role_allows,
)


def test_generate_api_key_embeds_id_and_hashes_secret() -> None:
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    assert raw_key.startswith(f"{API_KEY_PREFIX}_{key_id}_")
    assert key_prefix == raw_key[:12]
    assert key_hash == hash_api_key(raw_key)
    assert raw_key not in key_hash


def test_role_hierarchy() -> None:
    assert normalize_role(" Admin ") == "admin"
    assert role_allows(role="admin", minimum_role="operator") is True
    assert role_allows(role="operator", minimum_role="member") is True
    assert role_allows(role="member", minimum_role="operator") is False
    with pytest.raises(ValueError):
        normalize_role("superuser")


@pytest.mark.asyncio
async def test_issue_then_revoke_keeps_row_and_audits_both() -> None:
    account_id = f"acct-keys-{uuid4().hex}"
    async with SessionLocal() as session:
        issued = await issue_api_key(session, account_id=account_id, role="Operator", name="ci")
        assert await revoke_api_key(session, issued.key_id) is True
        assert await revoke_api_key(session, issued.key_id) is False

    async with SessionLocal() as session:
        stored = await session.get(ApiKey, issued.key_id)
        events = (
            await session.execute(
                select(AuditEvent.event_type).where(AuditEvent.resource_id == issued.key_id)
            )
        ).scalars().all()

    assert stored is not None
    assert stored.key_hash == hash_api_key(issued.raw_key)
    assert stored.revoked_at is not None
    assert sorted(events) == ["auth.api_key.created", "auth.api_key.revoked"]


@pytest.mark.asyncio
async def test_issue_rejects_user_from_another_account() -> None:
    async with SessionLocal() as session:
        first = await issue_api_key(session, account_id=f"acct-a-{uuid4().hex}", role="member", name="a")
        with pytest.raises(ValueError):
            await issue_api_key(
                session,
                account_id=f"acct-b-{uuid4().hex}",
                role="member",
                name="b",
                user_id=first.user_id,
            )


@pytest.mark.asyncio
async def test_revoke_unknown_key_raises() -> None:
    async with SessionLocal() as session:
        with pytest.raises(LookupError):
            await revoke_api_key(session, "missing-key")
