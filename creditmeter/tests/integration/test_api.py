from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from creditmeter.apps.api.main import create_app
from creditmeter.core.config import get_settings
from creditmeter.persistence.db import SessionLocal
from creditmeter.services.credits.ledger import get_credit_ledger
from creditmeter.tests.utils.auth import create_test_api_key


def _account_id() -> str:
    return f"acct-api-{uuid4().hex}"


async def _seed_account(account_id: str, credits: int = 2000) -> None:
    async with SessionLocal() as session:
        await get_credit_ledger().initialize(session=session, account_id=account_id, initial_credits=credits)


@pytest.mark.asyncio
async def test_health_is_public_and_enveloped() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-health"})

    assert response.status_code == 200
    assert response.headers["X-Request-Id"] == "req-health"
    body = response.json()
    assert body["data"] == {"status": "ok"}
    assert body["meta"] == {"request_id": "req-health", "api_version": "v1"}


@pytest.mark.asyncio
async def test_openapi_declares_bearer_auth() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/openapi.json")

    assert response.status_code == 200
    schema = response.json()
    assert schema["components"]["securitySchemes"]["BearerAuth"]["scheme"] == "bearer"
    assert "security" not in schema["paths"]["/v1/health"]["get"]
    assert schema["paths"]["/v1/credits"]["get"]["security"] == [{"BearerAuth": []}]


@pytest.mark.asyncio
async def test_credits_returns_balance_and_history() -> None:
    account_id = _account_id()
    await _seed_account(account_id)
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(account_id=account_id, role="member")

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/credits", headers=headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["account_id"] == account_id
    assert data["balance"] == 2000
    assert data["is_trial_account"] is True
    assert data["trial_expired"] is False
    assert [txn["type"] for txn in data["transactions"]] == ["INITIAL_GRANT"]


@pytest.mark.asyncio
async def test_credits_for_unprovisioned_account_is_not_found() -> None:
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(account_id=_account_id(), role="member")

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/credits", headers=headers)

    assert response.status_code == 404
    body = response.json()
    assert body["error"]["code"] == "ACCOUNT_NOT_FOUND"
    assert body["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_packs_are_priced_at_the_live_margin() -> None:
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(account_id=_account_id(), role="member")

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/credits/packs", headers=headers)

    assert response.status_code == 200
    packs = {pack["id"]: pack for pack in response.json()["data"]}
    assert set(packs) == {"starter", "pro", "enterprise"}
    assert packs["starter"]["credits"] == 5000
    assert packs["starter"]["display_price"] == "$0.05"


@pytest.mark.asyncio
async def test_estimate_matches_settlement_pricing() -> None:
    account_id = _account_id()
    await _seed_account(account_id, credits=500)
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(account_id=account_id, role="member")

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/v1/credits/estimate",
            json={"input_units": 1000, "output_units": 500},
            headers=headers,
        )
        unknown = await client.post(
            "/v1/credits/estimate",
            json={"input_units": 1000, "model_key": "not-a-model"},
            headers=headers,
        )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["credits"] == 789
    assert data["balance"] == 500
    assert data["sufficient"] is False
    assert unknown.status_code == 422
    assert unknown.json()["error"]["code"] == "MODEL_NOT_ALLOWED"


@pytest.mark.asyncio
async def test_rate_limit_stats_for_fresh_account() -> None:
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(account_id=_account_id(), role="member")

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/credits/rate-limit", headers=headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["enabled"] is False
    assert data["requests_last_minute"] == 0
    assert data["remaining_per_minute"] == data["limit_per_minute"]


@pytest.mark.asyncio
async def test_provision_grants_signup_credits_once() -> None:
    account_id = _account_id()
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(account_id=_account_id(), role="admin")

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post("/v1/accounts/provision", json={"account_id": account_id}, headers=headers)
        second = await client.post("/v1/accounts/provision", json={"account_id": account_id}, headers=headers)

    assert first.status_code == 200
    assert first.json()["data"] == {"account_id": account_id, "credits_granted": 2000}
    assert second.status_code == 200
    assert second.json()["data"]["credits_granted"] == 0


@pytest.mark.asyncio
async def test_unknown_route_uses_error_envelope() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/does-not-exist")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_envelope_keeps_status_and_never_double_wraps() -> None:
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(account_id=_account_id(), role="admin")

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        created = await client.post(
            "/v1/admin/platform/credentials",
            json={"secret": "AIzaSyEnvelopeCheck000000001234", "name": "envelope"},
            headers={**headers, "X-Request-Id": "req-envelope"},
        )
        metrics = await client.get("/v1/admin/platform/metrics", headers=headers)

    assert created.status_code == 201
    assert created.json()["meta"] == {"request_id": "req-envelope", "api_version": "v1"}
    assert created.json()["data"]["masked_value"].endswith("1234")
    # The metrics handler builds its own envelope; the middleware leaves it alone.
    assert metrics.status_code == 200
    assert "data" not in metrics.json()["data"]
    assert "counters" in metrics.json()["data"]


@pytest.mark.asyncio
async def test_credits_history_limit_is_clamped_not_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAX_TRANSACTIONS_RETURNED", "2")
    get_settings.cache_clear()
    account_id = _account_id()
    await _seed_account(account_id)
    async with SessionLocal() as session:
        for _ in range(3):
            await get_credit_ledger().debit(session=session, account_id=account_id, amount=1, description="tick")
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(account_id=account_id, role="member")

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/credits", params={"limit": 500}, headers=headers)

    assert response.status_code == 200
    transactions = response.json()["data"]["transactions"]
    assert [txn["balance_after"] for txn in transactions] == [1997, 1998]
