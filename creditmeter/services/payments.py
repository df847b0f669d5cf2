from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.core.errors import CreditMeterError, PaymentSignatureError
from creditmeter.domain.models import ProcessedPaymentEvent
from creditmeter.persistence.db import run_with_conflict_retry
from creditmeter.services.audit import record_system_event
from creditmeter.services.credits.ledger import PURCHASE_TOP_UP, Correlation, get_credit_ledger
from creditmeter.services.credits.pricing import CREDIT_PACKS
from creditmeter.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment.succeeded"

OUTCOME_GRANTED = "granted"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True)
class PaymentEvent:
    event_id: str
    event_type: str
    account_id: str | None = None
    # Explicit credit count; falls back to the pack size when omitted.
    credits: int | None = None
    pack_id: str | None = None
    payment_intent_id: str | None = None


@dataclass(frozen=True)
class PaymentOutcome:
    event_id: str
    outcome: str
    credits_granted: int = 0
    balance: int | None = None


def build_payment_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signatures for payment webhook payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_payment_signature(secret: str | None, body: bytes, signature: str | None) -> None:
    # Constant-time comparison; any mismatch or missing input is rejected the same way.
    if not secret:
        raise PaymentSignatureError("Payment webhook secret is not configured")
    if not signature:
        raise PaymentSignatureError("Missing payment signature")
    expected = build_payment_signature(secret, body)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise PaymentSignatureError("Invalid payment signature")


def credits_for_event(event: PaymentEvent) -> int:
    if event.credits is not None:
        return int(event.credits)
    pack = CREDIT_PACKS.get(event.pack_id or "")
    return pack.credits if pack is not None else 0


async def process_payment_event(session: AsyncSession, event: PaymentEvent) -> PaymentOutcome:
    """Apply a verified payment event at most once.

    Events already marked processed report ``duplicate``. A failed attempt is
    recorded but not treated as processed, so a redelivery can try again.
    Failures never propagate: the provider only needs an acknowledgement.
    """
    logger.info("payment_event_received event_id=%s type=%s", event.event_id, event.event_type)
    previous = await _load_marker(session, event.event_id)
    if previous is not None and previous.outcome != OUTCOME_FAILED:
        logger.info("payment_event_duplicate event_id=%s", event.event_id)
        increment_counter("payment_events_total.duplicate")
        return PaymentOutcome(event_id=event.event_id, outcome=OUTCOME_DUPLICATE)

    try:
        outcome = await _apply_event(session, event)
        await _mark_processed(session, event, outcome.outcome)
    except (CreditMeterError, SQLAlchemyError) as exc:
        if session.in_transaction():
            await session.rollback()
        logger.error("payment_event_failed event_id=%s type=%s", event.event_id, event.event_type, exc_info=exc)
        increment_counter("payment_events_total.failed")
        await _mark_failed(session, event)
        await record_system_event(
            event_type="billing.payment.failed",
            outcome="failure",
            account_id=event.account_id,
            resource_type="payment_event",
            resource_id=event.event_id,
            metadata={"event_type": event.event_type, "pack_id": event.pack_id},
            error_code=type(exc).__name__,
        )
        return PaymentOutcome(event_id=event.event_id, outcome=OUTCOME_FAILED)

    increment_counter(f"payment_events_total.{outcome.outcome}")
    return outcome


async def _apply_event(session: AsyncSession, event: PaymentEvent) -> PaymentOutcome:
    if event.event_type != PAYMENT_SUCCEEDED:
        logger.info("payment_event_ignored event_id=%s type=%s", event.event_id, event.event_type)
        return PaymentOutcome(event_id=event.event_id, outcome=OUTCOME_IGNORED)
    credits = credits_for_event(event)
    if not event.account_id or credits <= 0:
        logger.error(
            "payment_event_incomplete event_id=%s account_id=%s credits=%s",
            event.event_id,
            event.account_id,
            credits,
        )
        return PaymentOutcome(event_id=event.event_id, outcome=OUTCOME_IGNORED)

    result = await get_credit_ledger().grant(
        session=session,
        account_id=event.account_id,
        amount=credits,
        type=PURCHASE_TOP_UP,
        description=f"Purchased {event.pack_id or 'credit'} pack ({credits:,} credits)",
        correlation=Correlation(
            external_event_id=event.event_id,
            payment_intent_id=event.payment_intent_id,
            pack_id=event.pack_id,
        ),
    )
    if not result.applied:
        # The grant landed on an earlier delivery that never reached the marker.
        return PaymentOutcome(event_id=event.event_id, outcome=OUTCOME_DUPLICATE, balance=result.balance)

    await record_system_event(
        event_type="billing.payment.granted",
        account_id=event.account_id,
        resource_type="payment_event",
        resource_id=event.event_id,
        metadata={"credits": credits, "pack_id": event.pack_id, "payment_intent_id": event.payment_intent_id},
    )
    logger.info(
        "payment_credits_granted event_id=%s account_id=%s credits=%s balance=%s",
        event.event_id,
        event.account_id,
        credits,
        result.balance,
    )
    return PaymentOutcome(
        event_id=event.event_id,
        outcome=OUTCOME_GRANTED,
        credits_granted=credits,
        balance=result.balance,
    )


async def _mark_processed(session: AsyncSession, event: PaymentEvent, outcome: str) -> None:
    async def _apply() -> None:
        marker = await _load_marker(session, event.event_id)
        if marker is None:
            marker = ProcessedPaymentEvent(event_id=event.event_id)
            session.add(marker)
        marker.event_type = event.event_type
        marker.account_id = event.account_id
        marker.payment_intent_id = event.payment_intent_id
        marker.outcome = outcome
        marker.processed_at = datetime.now(timezone.utc)
        await session.flush()

    await run_with_conflict_retry(session, _apply, name="payments.mark_processed", retry_integrity=True)


async def _mark_failed(session: AsyncSession, event: PaymentEvent) -> None:
    # Keep the failure visible to operators; a marker write failure is only logged.
    try:
        await _mark_processed(session, event, OUTCOME_FAILED)
    except SQLAlchemyError as exc:
        logger.warning("payment_event_marker_failed event_id=%s", event.event_id, exc_info=exc)


async def _load_marker(session: AsyncSession, event_id: str) -> ProcessedPaymentEvent | None:
    result = await session.execute(
        select(ProcessedPaymentEvent)
        .where(ProcessedPaymentEvent.event_id == event_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
