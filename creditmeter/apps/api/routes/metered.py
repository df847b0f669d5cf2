from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.apps.api.deps import Principal, get_db, require_role
from creditmeter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from creditmeter.apps.api.response import SuccessEnvelope, get_request_id
from creditmeter.core.config import get_settings
from creditmeter.services.credits.metering import MeteredRequest, get_metering_orchestrator
from creditmeter.services.credits.pricing import allowed_model_keys, is_known_model


router = APIRouter(prefix="/ai", tags=["ai"], responses=DEFAULT_ERROR_RESPONSES)


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)
    model_key: str | None = Field(default=None, max_length=64)
    feature: str = Field(default="chat", min_length=1, max_length=64, pattern=r"^[a-z0-9_]+$")
    system_instruction: str | None = Field(default=None, max_length=20_000)
    max_output_units: int | None = Field(default=None, ge=1, le=65_536)
    response_format: Literal["text", "json"] = "text"


class GenerateResponse(BaseModel):
    text: str
    data: Any = None
    input_units: int
    output_units: int
    credits_debited: int
    balance: int
    cost_usd: float
    model_key: str
    request_id: str


def _validation_error(code: str, message: str, **details: Any) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"code": code, "message": message, **details},
    )


@router.post("/generate", response_model=SuccessEnvelope[GenerateResponse] | GenerateResponse)
async def generate(
    request: Request,
    payload: GenerateRequest,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> GenerateResponse:
    # Boundary checks run before admission so rejected input never consumes a rate-limit slot.
    settings = get_settings()
    if len(payload.prompt) > settings.prompt_max_chars:
        raise _validation_error(
            "PROMPT_TOO_LARGE",
            f"Prompt exceeds {settings.prompt_max_chars} characters",
            max_chars=settings.prompt_max_chars,
        )
    model_key = payload.model_key or settings.default_model_key
    if not is_known_model(model_key):
        raise _validation_error(
            "MODEL_NOT_ALLOWED",
            f"Unsupported model: {model_key}",
            allowed=allowed_model_keys(),
        )

    result = await get_metering_orchestrator().run_with_failover(
        session=db,
        account_id=principal.account_id,
        request=MeteredRequest(
            prompt=payload.prompt,
            model_key=model_key,
            feature=payload.feature,
            system_instruction=payload.system_instruction,
            max_output_units=payload.max_output_units,
            response_format=payload.response_format,
            request_id=get_request_id(request),
        ),
    )
    return GenerateResponse(
        text=result.text,
        data=result.data,
        input_units=result.input_units,
        output_units=result.output_units,
        credits_debited=result.credits_debited,
        balance=result.balance,
        cost_usd=float(result.cost_usd),
        model_key=result.model_key,
        request_id=result.request_id,
    )
