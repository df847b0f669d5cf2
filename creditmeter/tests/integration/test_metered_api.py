from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from creditmeter.apps.api.main import create_app
from creditmeter.core.config import get_settings
from creditmeter.persistence.db import SessionLocal
from creditmeter.providers.llm import factory
from creditmeter.providers.llm.fake import FakeLLMProvider
from creditmeter.services.credits.ledger import get_credit_ledger
from creditmeter.services.platform_settings import add_credential, update_rate_limits
from creditmeter.tests.utils.auth import create_test_api_key


_SECRET = "test-upstream-credential-api-0001"


async def _seed(*, credits: int = 2000, with_credential: bool = True) -> tuple[str, dict[str, str]]:
    account_id = f"acct-gen-{uuid4().hex}"
    async with SessionLocal() as session:
        await get_credit_ledger().initialize(session=session, account_id=account_id, initial_credits=credits)
        if with_credential:
            await add_credential(session, secret=_SECRET, name="primary")
    _raw, headers, _user, _key = await create_test_api_key(account_id=account_id, role="member")
    return account_id, headers


def _use_provider(monkeypatch, provider: FakeLLMProvider) -> FakeLLMProvider:
    monkeypatch.setattr(factory, "_provider", provider)
    return provider


@pytest.mark.asyncio
async def test_generate_bills_reported_usage(monkeypatch) -> None:
    provider = _use_provider(monkeypatch, FakeLLMProvider("Hello there", input_units=1000, output_units=500))
    account_id, headers = await _seed()

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/v1/ai/generate",
            json={"prompt": "Say hello"},
            headers={**headers, "X-Request-Id": "req-gen-1"},
        )
        credits = await client.get("/v1/credits", headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["meta"]["request_id"] == "req-gen-1"
    data = body["data"]
    assert data["text"] == "Hello there"
    assert data["credits_debited"] == 789
    assert data["balance"] == 1211
    assert data["request_id"] == "req-gen-1"
    assert [call.api_key for call in provider.calls] == [_SECRET]
    history = credits.json()["data"]["transactions"]
    assert history[0]["type"] == "USAGE_DEBIT"
    assert history[0]["amount"] == -789
    assert history[0]["description"] == "chat: 1000 in / 500 out"
    assert credits.json()["data"]["account_id"] == account_id


@pytest.mark.asyncio
async def test_generate_rejects_low_balance_before_calling_upstream(monkeypatch) -> None:
    provider = _use_provider(monkeypatch, FakeLLMProvider())
    _account_id, headers = await _seed(credits=5)

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/ai/generate", json={"prompt": "hi"}, headers=headers)

    assert response.status_code == 402
    error = response.json()["error"]
    assert error["code"] == "INSUFFICIENT_CREDITS"
    assert error["details"] == {"balance": 5, "required": 10}
    assert provider.calls == []


@pytest.mark.asyncio
async def test_generate_without_credentials_is_unavailable(monkeypatch) -> None:
    _use_provider(monkeypatch, FakeLLMProvider())
    _account_id, headers = await _seed(with_credential=False)

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/ai/generate", json={"prompt": "hi"}, headers=headers)

    assert response.status_code == 503
    error = response.json()["error"]
    assert error["code"] == "SERVICE_UNAVAILABLE"
    assert "credential" not in error["message"].lower()


@pytest.mark.asyncio
async def test_upstream_failures_map_to_client_statuses(monkeypatch) -> None:
    _account_id, headers = await _seed()
    app = create_app()

    _use_provider(monkeypatch, FakeLLMProvider(failing_keys={_SECRET}, failure_kind="safety"))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        blocked = await client.post("/v1/ai/generate", json={"prompt": "hi"}, headers=headers)

    _use_provider(monkeypatch, FakeLLMProvider(failing_keys={_SECRET}, failure_kind="quota"))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        exhausted = await client.post("/v1/ai/generate", json={"prompt": "hi"}, headers=headers)
        balance = await client.get("/v1/credits", headers=headers)

    assert blocked.status_code == 400
    assert blocked.json()["error"]["code"] == "CONTENT_BLOCKED"
    assert exhausted.status_code == 503
    assert exhausted.json()["error"]["code"] == "UPSTREAM_UNAVAILABLE"
    assert balance.json()["data"]["balance"] == 2000


@pytest.mark.asyncio
async def test_generate_validates_prompt_and_model(monkeypatch) -> None:
    provider = _use_provider(monkeypatch, FakeLLMProvider())
    monkeypatch.setenv("PROMPT_MAX_CHARS", "10")
    get_settings.cache_clear()
    _account_id, headers = await _seed()

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        too_large = await client.post("/v1/ai/generate", json={"prompt": "x" * 11}, headers=headers)
        bad_model = await client.post(
            "/v1/ai/generate",
            json={"prompt": "hi", "model_key": "gpt-unknown"},
            headers=headers,
        )
        bad_feature = await client.post(
            "/v1/ai/generate",
            json={"prompt": "hi", "feature": "Not A Feature"},
            headers=headers,
        )

    assert too_large.status_code == 422
    assert too_large.json()["error"]["code"] == "PROMPT_TOO_LARGE"
    assert too_large.json()["error"]["details"] == {"max_chars": 10}
    assert bad_model.status_code == 422
    assert bad_model.json()["error"]["code"] == "MODEL_NOT_ALLOWED"
    assert "gemini-2.5-flash" in bad_model.json()["error"]["details"]["allowed"]
    assert bad_feature.status_code == 422
    assert bad_feature.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_generate_is_rate_limited_per_account(monkeypatch) -> None:
    provider = _use_provider(monkeypatch, FakeLLMProvider())
    _account_id, headers = await _seed()
    async with SessionLocal() as session:
        await update_rate_limits(session, enabled=True, per_account_requests_per_minute=1)

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post("/v1/ai/generate", json={"prompt": "hi"}, headers=headers)
        second = await client.post("/v1/ai/generate", json={"prompt": "hi"}, headers=headers)

    assert first.status_code == 200
    assert second.status_code == 429
    assert second.json()["error"]["code"] == "RATE_LIMITED"
    assert int(second.headers["Retry-After"]) > 0
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_generate_json_format_returns_parsed_data(monkeypatch) -> None:
    provider = _use_provider(
        monkeypatch,
        FakeLLMProvider('```json\n{"score": 7}\n```', input_units=10, output_units=5),
    )
    _account_id, headers = await _seed()

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/v1/ai/generate",
            json={"prompt": "Rate this", "response_format": "json", "feature": "brand_analysis"},
            headers=headers,
        )

    assert response.status_code == 200
    assert response.json()["data"]["data"] == {"score": 7}
    assert provider.calls[0].json_output is True
