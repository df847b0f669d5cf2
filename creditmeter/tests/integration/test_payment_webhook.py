from __future__ import annotations

import json
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from creditmeter.apps.api.main import create_app
from creditmeter.core.config import get_settings
from creditmeter.persistence.db import SessionLocal
from creditmeter.services.credits.ledger import get_credit_ledger
from creditmeter.services.payments import build_payment_signature


_WEBHOOK_SECRET = "whsec_test_secret"
_WEBHOOK_PATH = "/v1/billing/payments/webhook"


def _signed(payload: dict) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Payment-Signature": build_payment_signature(_WEBHOOK_SECRET, body),
    }
    return body, headers


@pytest.fixture
def webhook_secret(monkeypatch) -> str:
    monkeypatch.setenv("PAYMENT_WEBHOOK_SECRET", _WEBHOOK_SECRET)
    get_settings.cache_clear()
    return _WEBHOOK_SECRET


@pytest.mark.asyncio
async def test_signed_purchase_grants_credits_once(webhook_secret) -> None:
    account_id = f"acct-pay-{uuid4().hex}"
    async with SessionLocal() as session:
        await get_credit_ledger().initialize(session=session, account_id=account_id, initial_credits=2000)
    body, headers = _signed(
        {
            "id": f"evt_{uuid4().hex}",
            "type": "payment.succeeded",
            "data": {"account_id": account_id, "pack_id": "starter", "payment_intent_id": "pi_123"},
        }
    )

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post(_WEBHOOK_PATH, content=body, headers=headers)
        replay = await client.post(_WEBHOOK_PATH, content=body, headers=headers)

    assert first.status_code == 200
    assert first.json()["data"]["outcome"] == "granted"
    assert replay.status_code == 200
    assert replay.json()["data"]["outcome"] == "duplicate"
    async with SessionLocal() as session:
        assert await get_credit_ledger().balance(session=session, account_id=account_id) == 7000


@pytest.mark.asyncio
async def test_unsigned_or_tampered_events_are_rejected(webhook_secret) -> None:
    body, headers = _signed({"id": "evt_tamper", "type": "payment.succeeded", "data": {"credits": 10}})

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        unsigned = await client.post(_WEBHOOK_PATH, content=body, headers={"Content-Type": "application/json"})
        tampered = await client.post(_WEBHOOK_PATH, content=body.replace(b"10", b"99"), headers=headers)

    for response in (unsigned, tampered):
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"


@pytest.mark.asyncio
async def test_webhook_without_configured_secret_is_rejected(monkeypatch) -> None:
    monkeypatch.delenv("PAYMENT_WEBHOOK_SECRET", raising=False)
    get_settings.cache_clear()
    body, headers = _signed({"id": "evt_nosecret", "type": "payment.succeeded"})

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(_WEBHOOK_PATH, content=body, headers=headers)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_SIGNATURE"


@pytest.mark.asyncio
async def test_signed_but_malformed_event_is_unprocessable(webhook_secret) -> None:
    body, headers = _signed({"type": "payment.succeeded"})

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(_WEBHOOK_PATH, content=body, headers=headers)

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "INVALID_PAYMENT_EVENT"


@pytest.mark.asyncio
async def test_unhandled_event_types_are_acknowledged(webhook_secret) -> None:
    body, headers = _signed({"id": f"evt_{uuid4().hex}", "type": "payment.refunded"})

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(_WEBHOOK_PATH, content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["data"]["outcome"] == "ignored"
