from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from creditmeter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from creditmeter.apps.api.response import SuccessEnvelope


router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health() -> HealthResponse:
    # Liveness only; no database round-trip.
    return HealthResponse(status="ok")
