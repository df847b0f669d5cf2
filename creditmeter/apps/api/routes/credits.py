from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.apps.api.deps import Principal, get_db, require_role
from creditmeter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from creditmeter.apps.api.response import SuccessEnvelope
from creditmeter.core.config import get_settings
from creditmeter.core.errors import AccountNotFoundError
from creditmeter.services.credits.ledger import get_credit_ledger
from creditmeter.services.credits.metering import estimate_call_cost
from creditmeter.services.credits.pricing import (
    CREDIT_PACKS,
    FEATURE_CREDIT_ESTIMATES,
    DEFAULT_ESTIMATED_OUTPUT_UNITS,
    format_pack_price,
    is_known_model,
    pack_price_usd,
    suggested_retail_price,
)
from creditmeter.services.platform_settings import get_configuration, token_limit_settings
from creditmeter.services.rate_limit import get_rate_limiter


router = APIRouter(prefix="/credits", tags=["credits"], responses=DEFAULT_ERROR_RESPONSES)


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    amount: int
    balance_after: int
    description: str
    feature: str | None
    pack_id: str | None
    created_at: datetime


class CreditsResponse(BaseModel):
    account_id: str
    balance: int
    is_trial_account: bool
    trial_ends_at: datetime | None
    trial_expired: bool
    transactions: list[TransactionResponse]


class CreditPackResponse(BaseModel):
    id: str
    name: str
    credits: int
    model_key: str
    price_usd: float
    display_price: str
    suggested_retail_usd: float


class RateLimitStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    enabled: bool
    requests_last_minute: int
    requests_today: int
    limit_per_minute: int
    limit_per_day: int
    remaining_per_minute: int
    remaining_per_day: int


class EstimateRequest(BaseModel):
    model_key: str | None = Field(default=None, max_length=64)
    input_units: int = Field(ge=0, le=10_000_000)
    output_units: int = Field(default=DEFAULT_ESTIMATED_OUTPUT_UNITS, ge=0, le=10_000_000)
    feature: str | None = Field(default=None, max_length=64)


class EstimateResponse(BaseModel):
    model_key: str
    credits: int
    balance: int
    sufficient: bool
    # Display-only reference cost for the named feature.
    feature_reference_credits: int | None


@router.get("", response_model=SuccessEnvelope[CreditsResponse] | CreditsResponse)
async def get_credits(
    limit: int | None = Query(default=None, ge=1),
    before_id: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> CreditsResponse:
    ledger = get_credit_ledger()
    account = await ledger.get_account(session=db, account_id=principal.account_id)
    if account is None:
        raise AccountNotFoundError(principal.account_id)
    transactions = await ledger.list_transactions(
        session=db,
        account_id=principal.account_id,
        limit=limit,
        before_id=before_id,
    )
    return CreditsResponse(
        account_id=account.account_id,
        balance=account.balance,
        is_trial_account=account.is_trial_account,
        trial_ends_at=account.trial_ends_at,
        trial_expired=account.trial_expired,
        transactions=[TransactionResponse.model_validate(txn) for txn in transactions],
    )


@router.get("/packs", response_model=SuccessEnvelope[list[CreditPackResponse]] | list[CreditPackResponse])
async def list_credit_packs(
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> list[CreditPackResponse]:
    # Prices follow the live margin so a config change is reflected immediately.
    _ = principal
    margin = token_limit_settings(await get_configuration(db)).profit_margin
    packs = []
    for pack in CREDIT_PACKS.values():
        price = pack_price_usd(pack.model_key, pack.credits, margin)
        packs.append(
            CreditPackResponse(
                id=pack.id,
                name=pack.name,
                credits=pack.credits,
                model_key=pack.model_key,
                price_usd=float(round(price, 2)),
                display_price=format_pack_price(pack.model_key, pack.credits, margin),
                suggested_retail_usd=float(suggested_retail_price(price)),
            )
        )
    return packs


@router.get("/rate-limit", response_model=SuccessEnvelope[RateLimitStatsResponse] | RateLimitStatsResponse)
async def rate_limit_stats(
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> RateLimitStatsResponse:
    stats = await get_rate_limiter().account_stats(session=db, account_id=principal.account_id)
    return RateLimitStatsResponse.model_validate(stats)


@router.post("/estimate", response_model=SuccessEnvelope[EstimateResponse] | EstimateResponse)
async def estimate_credits(
    payload: EstimateRequest,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> EstimateResponse:
    model_key = payload.model_key or get_settings().default_model_key
    if not is_known_model(model_key):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "MODEL_NOT_ALLOWED", "message": f"Unsupported model: {model_key}"},
        )
    margin = token_limit_settings(await get_configuration(db)).profit_margin
    credits = estimate_call_cost(model_key, payload.input_units, payload.output_units, margin)
    balance = await get_credit_ledger().balance(session=db, account_id=principal.account_id)
    return EstimateResponse(
        model_key=model_key,
        credits=credits,
        balance=balance,
        sufficient=balance >= credits,
        feature_reference_credits=FEATURE_CREDIT_ESTIMATES.get(payload.feature or ""),
    )
