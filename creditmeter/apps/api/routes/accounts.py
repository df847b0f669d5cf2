from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.apps.api.deps import Principal, get_db, require_role
from creditmeter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from creditmeter.apps.api.response import SuccessEnvelope
from creditmeter.services.accounts import on_account_created


router = APIRouter(prefix="/accounts", tags=["accounts"], responses=DEFAULT_ERROR_RESPONSES)


class ProvisionRequest(BaseModel):
    account_id: str = Field(min_length=1, max_length=128)


class ProvisionResponse(BaseModel):
    account_id: str
    credits_granted: int


@router.post("/provision", response_model=SuccessEnvelope[ProvisionResponse] | ProvisionResponse)
async def provision_account(
    payload: ProvisionRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> ProvisionResponse:
    # Signup hook; a failed or repeated bootstrap reports zero credits granted.
    _ = principal
    balance = await on_account_created(db, payload.account_id)
    return ProvisionResponse(account_id=payload.account_id, credits_granted=balance)
