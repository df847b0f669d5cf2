from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.apps.api.deps import Principal, admin_actor, get_db, require_role
from creditmeter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from creditmeter.apps.api.response import SuccessEnvelope, success_response
from creditmeter.persistence.db import pool_stats
from creditmeter.services.audit import get_request_context, record_event
from creditmeter.services.key_rotation import get_key_rotation_manager
from creditmeter.services.platform_settings import (
    add_credential,
    get_configuration,
    masked_view,
    remove_credential,
    update_credential,
    update_rate_limits,
    update_rotation_strategy,
    update_token_limits,
)
from creditmeter.services.rate_limit import get_rate_limiter
from creditmeter.services.telemetry import (
    availability,
    counters_snapshot,
    external_call_stats,
    gauges_snapshot,
    p95_latency,
)


router = APIRouter(prefix="/admin/platform", tags=["platform-admin"], responses=DEFAULT_ERROR_RESPONSES)

RotationStrategy = Literal["round-robin", "failover", "usage-based"]


class CredentialResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    display_name: str
    # Only the last four characters are ever returned.
    masked_value: str
    is_active: bool
    usage_count_today: int
    usage_count_total: int
    last_used_at: str | None
    daily_limit: int | None
    added_at: str | None
    added_by: str | None


class RateLimitsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    enabled: bool
    global_requests_per_minute: int
    per_account_requests_per_minute: int
    per_account_requests_per_day: int


class TokenLimitsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    initial_signup_credits: int
    max_credits_per_account: int
    min_balance_for_call: int
    profit_margin: float


class PlatformSettingsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    credentials: list[CredentialResponse]
    rotation_strategy: str
    current_index: int
    rate_limits: RateLimitsResponse
    token_limits: TokenLimitsResponse
    version: int
    updated_at: datetime | None
    updated_by: str


class KeyUsageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    display_name: str
    is_active: bool
    usage_today: int
    total_usage: int
    daily_limit: int | None
    percent_used: int | None


class KeyStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_keys: int
    active_keys: int
    total_usage_today: int
    total_usage_all_time: int
    keys: list[KeyUsageResponse]


class CredentialCreateRequest(BaseModel):
    secret: str = Field(min_length=1, max_length=200)
    name: str = Field(min_length=1, max_length=50)


class CredentialUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=50)
    is_active: bool | None = None
    # Send null to clear the cap; omit the field to leave it unchanged.
    daily_limit: int | None = Field(default=None, ge=0)


class RotationStrategyRequest(BaseModel):
    strategy: RotationStrategy


class RateLimitsUpdateRequest(BaseModel):
    enabled: bool | None = None
    global_requests_per_minute: int | None = Field(default=None, ge=1)
    per_account_requests_per_minute: int | None = Field(default=None, ge=1)
    per_account_requests_per_day: int | None = Field(default=None, ge=1)


class TokenLimitsUpdateRequest(BaseModel):
    initial_signup_credits: int | None = Field(default=None, ge=0)
    max_credits_per_account: int | None = Field(default=None, ge=0)
    min_balance_for_call: int | None = Field(default=None, ge=0)
    profit_margin: float | None = Field(default=None, ge=0, le=1)


class CredentialRemovedResponse(BaseModel):
    id: str
    removed: bool


class CountResponse(BaseModel):
    count: int


@router.get("/settings", response_model=SuccessEnvelope[PlatformSettingsResponse] | PlatformSettingsResponse)
async def get_platform_settings(
    principal: Principal = Depends(require_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> PlatformSettingsResponse:
    _ = principal
    return PlatformSettingsResponse.model_validate(masked_view(await get_configuration(db)))


@router.get("/credentials/stats", response_model=SuccessEnvelope[KeyStatsResponse] | KeyStatsResponse)
async def credential_stats(
    principal: Principal = Depends(require_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> KeyStatsResponse:
    _ = principal
    return KeyStatsResponse.model_validate(await get_key_rotation_manager().key_stats(session=db))


@router.post(
    "/credentials",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[CredentialResponse] | CredentialResponse,
)
async def create_credential(
    request: Request,
    payload: CredentialCreateRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> CredentialResponse:
    view = await add_credential(
        db,
        secret=payload.secret,
        name=payload.name,
        actor=admin_actor(request, principal),
    )
    return CredentialResponse.model_validate(view)


@router.patch(
    "/credentials/{credential_id}",
    response_model=SuccessEnvelope[CredentialResponse] | CredentialResponse,
)
async def patch_credential(
    request: Request,
    credential_id: str,
    payload: CredentialUpdateRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> CredentialResponse:
    changes = {}
    if "daily_limit" in payload.model_fields_set:
        changes["daily_limit"] = payload.daily_limit
    view = await update_credential(
        db,
        credential_id=credential_id,
        name=payload.name,
        is_active=payload.is_active,
        actor=admin_actor(request, principal),
        **changes,
    )
    return CredentialResponse.model_validate(view)


@router.delete(
    "/credentials/{credential_id}",
    response_model=SuccessEnvelope[CredentialRemovedResponse] | CredentialRemovedResponse,
)
async def delete_credential(
    request: Request,
    credential_id: str,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> CredentialRemovedResponse:
    await remove_credential(db, credential_id=credential_id, actor=admin_actor(request, principal))
    return CredentialRemovedResponse(id=credential_id, removed=True)


@router.put(
    "/rotation-strategy",
    response_model=SuccessEnvelope[RotationStrategyRequest] | RotationStrategyRequest,
)
async def put_rotation_strategy(
    request: Request,
    payload: RotationStrategyRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> RotationStrategyRequest:
    strategy = await update_rotation_strategy(
        db, strategy=payload.strategy, actor=admin_actor(request, principal)
    )
    return RotationStrategyRequest(strategy=strategy)


@router.patch("/rate-limits", response_model=SuccessEnvelope[RateLimitsResponse] | RateLimitsResponse)
async def patch_rate_limits(
    request: Request,
    payload: RateLimitsUpdateRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> RateLimitsResponse:
    limits = await update_rate_limits(
        db,
        enabled=payload.enabled,
        global_requests_per_minute=payload.global_requests_per_minute,
        per_account_requests_per_minute=payload.per_account_requests_per_minute,
        per_account_requests_per_day=payload.per_account_requests_per_day,
        actor=admin_actor(request, principal),
    )
    return RateLimitsResponse.model_validate(limits)


@router.patch("/token-limits", response_model=SuccessEnvelope[TokenLimitsResponse] | TokenLimitsResponse)
async def patch_token_limits(
    request: Request,
    payload: TokenLimitsUpdateRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> TokenLimitsResponse:
    limits = await update_token_limits(
        db,
        initial_signup_credits=payload.initial_signup_credits,
        max_credits_per_account=payload.max_credits_per_account,
        min_balance_for_call=payload.min_balance_for_call,
        profit_margin=payload.profit_margin,
        actor=admin_actor(request, principal),
    )
    return TokenLimitsResponse.model_validate(limits)


@router.post("/credentials/reset-usage", response_model=SuccessEnvelope[CountResponse] | CountResponse)
async def reset_credential_usage(
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> CountResponse:
    _ = principal
    return CountResponse(count=await get_key_rotation_manager().reset_daily_usage(session=db))


@router.post("/rate-limits/prune", response_model=SuccessEnvelope[CountResponse] | CountResponse)
async def prune_rate_limit_windows(
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> CountResponse:
    _ = principal
    return CountResponse(count=await get_rate_limiter().prune_stale_windows(session=db))


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def platform_metrics(
    request: Request,
    principal: Principal = Depends(require_role("operator")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # JSON metrics for dashboards; the debit-race and no-credential counters are the ones to alert on.
    payload = {
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "availability": {"5m": availability(300), "1h": availability(3600)},
        "p95_latency_ms": {
            "metered": p95_latency(300, path_prefix="/v1/ai/"),
            "api": p95_latency(300),
        },
        "external_calls": external_call_stats(3600),
        "db_pool": pool_stats(),
    }
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        account_id=principal.account_id,
        actor_type="api_key",
        actor_id=principal.api_key_id,
        actor_role=principal.role,
        event_type="platform.metrics.viewed",
        outcome="success",
        resource_type="platform",
        resource_id="metrics",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={"path": request.url.path},
        commit=True,
        best_effort=True,
    )
    return success_response(request=request, data=payload)
