from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.apps.api.deps import get_db
from creditmeter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from creditmeter.apps.api.response import SuccessEnvelope
from creditmeter.core.config import get_settings
from creditmeter.services.payments import PaymentEvent, process_payment_event, verify_payment_signature


router = APIRouter(prefix="/billing", tags=["billing"], responses=DEFAULT_ERROR_RESPONSES)


class PaymentEventData(BaseModel):
    account_id: str | None = Field(default=None, max_length=128)
    credits: int | None = Field(default=None, ge=0)
    pack_id: str | None = Field(default=None, max_length=64)
    payment_intent_id: str | None = Field(default=None, max_length=255)


class PaymentWebhookPayload(BaseModel):
    id: str = Field(min_length=1, max_length=255)
    type: str = Field(min_length=1, max_length=128)
    data: PaymentEventData = Field(default_factory=PaymentEventData)


class PaymentWebhookResponse(BaseModel):
    event_id: str
    outcome: str


@router.post(
    "/payments/webhook",
    response_model=SuccessEnvelope[PaymentWebhookResponse] | PaymentWebhookResponse,
)
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> PaymentWebhookResponse:
    # Authenticated by HMAC over the raw body; processing failures still acknowledge with 200.
    settings = get_settings()
    body = await request.body()
    verify_payment_signature(
        settings.payment_webhook_secret,
        body,
        request.headers.get(settings.payment_webhook_signature_header),
    )
    try:
        payload = PaymentWebhookPayload.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "code": "INVALID_PAYMENT_EVENT",
                "message": "Malformed payment event",
                "errors": exc.errors(include_url=False, include_context=False, include_input=False),
            },
        ) from exc
    outcome = await process_payment_event(
        db,
        PaymentEvent(
            event_id=payload.id,
            event_type=payload.type,
            account_id=payload.data.account_id,
            credits=payload.data.credits,
            pack_id=payload.data.pack_id,
            payment_intent_id=payload.data.payment_intent_id,
        ),
    )
    return PaymentWebhookResponse(event_id=outcome.event_id, outcome=outcome.outcome)
