from __future__ import annotations

import hashlib
import hmac
from uuid import uuid4

import pytest
from sqlalchemy import select

from creditmeter.core.errors import PaymentSignatureError
from creditmeter.domain.models import LedgerTransaction, ProcessedPaymentEvent
from creditmeter.persistence.db import SessionLocal
from creditmeter.services.credits.ledger import PURCHASE_TOP_UP, get_credit_ledger
from creditmeter.services.payments import (
    OUTCOME_DUPLICATE,
    OUTCOME_FAILED,
    OUTCOME_GRANTED,
    OUTCOME_IGNORED,
    PAYMENT_SUCCEEDED,
    PaymentEvent,
    build_payment_signature,
    credits_for_event,
    process_payment_event,
    verify_payment_signature,
)


def _account_id() -> str:
    return f"acct-pay-{uuid4().hex}"


def _event_id() -> str:
    return f"evt_{uuid4().hex}"


async def _marker(event_id: str) -> ProcessedPaymentEvent | None:
    async with SessionLocal() as session:
        return await session.get(ProcessedPaymentEvent, event_id)


def test_build_payment_signature_matches_hmac() -> None:
    secret = "supersecret"
    payload = b'{"id":"evt_1"}'
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    assert build_payment_signature(secret, payload) == expected


def test_verify_payment_signature_rejects_bad_input() -> None:
    payload = b'{"id":"evt_1"}'
    signature = build_payment_signature("supersecret", payload)
    verify_payment_signature("supersecret", payload, signature)
    verify_payment_signature("supersecret", payload, f" {signature.upper()} ")

    with pytest.raises(PaymentSignatureError):
        verify_payment_signature("supersecret", payload, "deadbeef")
    with pytest.raises(PaymentSignatureError):
        verify_payment_signature("supersecret", payload, None)
    with pytest.raises(PaymentSignatureError):
        verify_payment_signature(None, payload, signature)
    with pytest.raises(PaymentSignatureError):
        verify_payment_signature("supersecret", payload + b" ", signature)


def test_credits_for_event_prefers_explicit_amount() -> None:
    assert credits_for_event(PaymentEvent(event_id="e", event_type=PAYMENT_SUCCEEDED, credits=42)) == 42
    assert credits_for_event(PaymentEvent(event_id="e", event_type=PAYMENT_SUCCEEDED, pack_id="pro")) == 25_000
    assert credits_for_event(PaymentEvent(event_id="e", event_type=PAYMENT_SUCCEEDED, pack_id="nope")) == 0


@pytest.mark.asyncio
async def test_successful_payment_grants_pack_credits_once() -> None:
    account_id = _account_id()
    event = PaymentEvent(
        event_id=_event_id(),
        event_type=PAYMENT_SUCCEEDED,
        account_id=account_id,
        pack_id="starter",
        payment_intent_id="pi_123",
    )
    async with SessionLocal() as session:
        await get_credit_ledger().initialize(session=session, account_id=account_id, initial_credits=2000)
        first = await process_payment_event(session, event)
        second = await process_payment_event(session, event)
        balance = await get_credit_ledger().balance(session=session, account_id=account_id)
        grants = (
            await session.execute(
                select(LedgerTransaction).where(
                    LedgerTransaction.account_id == account_id,
                    LedgerTransaction.type == PURCHASE_TOP_UP,
                )
            )
        ).scalars().all()

    assert first.outcome == OUTCOME_GRANTED
    assert first.credits_granted == 5000
    assert first.balance == 7000
    assert second.outcome == OUTCOME_DUPLICATE
    assert balance == 7000
    assert len(grants) == 1
    assert grants[0].description == "Purchased starter pack (5,000 credits)"
    assert grants[0].external_event_id == event.event_id
    marker = await _marker(event.event_id)
    assert marker is not None
    assert marker.outcome == OUTCOME_GRANTED


@pytest.mark.asyncio
async def test_other_event_types_are_ignored() -> None:
    event = PaymentEvent(event_id=_event_id(), event_type="payment.refunded", account_id=_account_id())
    async with SessionLocal() as session:
        outcome = await process_payment_event(session, event)

    assert outcome.outcome == OUTCOME_IGNORED
    marker = await _marker(event.event_id)
    assert marker is not None
    assert marker.outcome == OUTCOME_IGNORED


@pytest.mark.asyncio
async def test_incomplete_payment_is_ignored() -> None:
    event = PaymentEvent(event_id=_event_id(), event_type=PAYMENT_SUCCEEDED, account_id=None, credits=100)
    async with SessionLocal() as session:
        outcome = await process_payment_event(session, event)

    assert outcome.outcome == OUTCOME_IGNORED


@pytest.mark.asyncio
async def test_failed_grant_is_recorded_and_retried_on_redelivery() -> None:
    account_id = _account_id()
    event = PaymentEvent(event_id=_event_id(), event_type=PAYMENT_SUCCEEDED, account_id=account_id, credits=300)
    async with SessionLocal() as session:
        failed = await process_payment_event(session, event)
        marker = await _marker(event.event_id)
        assert marker is not None
        assert marker.outcome == OUTCOME_FAILED

        await get_credit_ledger().initialize(session=session, account_id=account_id, initial_credits=0)
        retried = await process_payment_event(session, event)
        balance = await get_credit_ledger().balance(session=session, account_id=account_id)

    assert failed.outcome == OUTCOME_FAILED
    assert retried.outcome == OUTCOME_GRANTED
    assert balance == 300
    marker = await _marker(event.event_id)
    assert marker is not None
    assert marker.outcome == OUTCOME_GRANTED
