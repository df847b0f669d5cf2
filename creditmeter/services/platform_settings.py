from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging
import re
from typing import Any, Callable, TypeVar
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.core.config import get_settings
from creditmeter.core.errors import ConfigurationValidationError, CredentialNotFoundError
from creditmeter.domain.models import PlatformConfiguration
from creditmeter.persistence.db import run_with_conflict_retry
from creditmeter.services.audit import record_event


logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_ID = "default"
ROTATION_STRATEGIES = ("round-robin", "failover", "usage-based")

_SECRET_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_SECRET_MIN_LENGTH = 20
_SECRET_MAX_LENGTH = 100
_NAME_MAX_LENGTH = 50


@dataclass(frozen=True)
class RateLimitSettings:
    enabled: bool
    global_requests_per_minute: int
    per_account_requests_per_minute: int
    per_account_requests_per_day: int


@dataclass(frozen=True)
class TokenLimitSettings:
    initial_signup_credits: int
    # 0 means unlimited; stored for operators, not enforced by the ledger.
    max_credits_per_account: int
    min_balance_for_call: int
    profit_margin: Decimal


@dataclass(frozen=True)
class CredentialView:
    id: str
    display_name: str
    masked_value: str
    is_active: bool
    usage_count_today: int
    usage_count_total: int
    last_used_at: str | None
    daily_limit: int | None
    added_at: str | None
    added_by: str | None


@dataclass(frozen=True)
class ConfigurationView:
    credentials: list[CredentialView]
    rotation_strategy: str
    current_index: int
    rate_limits: RateLimitSettings
    token_limits: TokenLimitSettings
    version: int
    updated_at: datetime | None
    updated_by: str


@dataclass(frozen=True)
class AdminActor:
    # Who changed the configuration, for the audit trail.
    actor_id: str
    actor_role: str | None = None
    request_id: str | None = None


SYSTEM_ACTOR = AdminActor(actor_id="system")


def mask_secret(value: str | None) -> str:
    # Show only the last four characters of a credential.
    if not value or len(value) < 8:
        return "****"
    return "*" * (len(value) - 4) + value[-4:]


def is_valid_secret_format(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    if len(value) < _SECRET_MIN_LENGTH or len(value) > _SECRET_MAX_LENGTH:
        return False
    return bool(_SECRET_PATTERN.match(value))


def rate_limit_settings(config: PlatformConfiguration) -> RateLimitSettings:
    return RateLimitSettings(
        enabled=bool(config.rate_limits_enabled),
        global_requests_per_minute=int(config.global_requests_per_minute),
        per_account_requests_per_minute=int(config.per_account_requests_per_minute),
        per_account_requests_per_day=int(config.per_account_requests_per_day),
    )


def token_limit_settings(config: PlatformConfiguration) -> TokenLimitSettings:
    return TokenLimitSettings(
        initial_signup_credits=int(config.initial_signup_credits),
        max_credits_per_account=int(config.max_credits_per_account or 0),
        min_balance_for_call=int(config.min_balance_for_call),
        profit_margin=Decimal(str(config.profit_margin)),
    )


def credential_pool(config: PlatformConfiguration) -> list[dict[str, Any]]:
    # Hand out copies; the JSON column only registers a change on reassignment.
    return [dict(entry) for entry in (config.credential_pool or [])]


def masked_view(config: PlatformConfiguration) -> ConfigurationView:
    return ConfigurationView(
        credentials=[_credential_view(entry) for entry in config.credential_pool or []],
        rotation_strategy=config.rotation_strategy,
        current_index=int(config.current_index or 0),
        rate_limits=rate_limit_settings(config),
        token_limits=token_limit_settings(config),
        version=int(config.version),
        updated_at=config.updated_at,
        updated_by=config.updated_by,
    )


async def get_configuration(session: AsyncSession) -> PlatformConfiguration:
    # Read the singleton, creating it from settings defaults on first use.
    config = await _select_configuration(session, lock=False)
    if config is not None:
        return config

    async def _create() -> PlatformConfiguration:
        return await _select_or_create(session, lock=True)

    return await run_with_conflict_retry(
        session, _create, name="platform_config.create", retry_integrity=True
    )


async def update_configuration(
    session: AsyncSession,
    mutate: Callable[[PlatformConfiguration], T],
    *,
    name: str,
    updated_by: str = "system",
) -> T:
    # Versioned read-modify-write of the configuration aggregate, retried on conflicts.

    async def _apply() -> T:
        config = await _select_or_create(session, lock=True)
        result = mutate(config)
        if session.is_modified(config):
            config.updated_at = _utc_now()
            config.updated_by = updated_by
        await session.flush()
        return result

    return await run_with_conflict_retry(session, _apply, name=name, retry_integrity=True)


async def add_credential(
    session: AsyncSession,
    *,
    secret: str,
    name: str,
    actor: AdminActor = SYSTEM_ACTOR,
) -> CredentialView:
    # Append a new upstream credential to the pool.
    if not is_valid_secret_format(secret):
        raise ConfigurationValidationError(
            "Credential must be 20-100 characters of letters, digits, '_' or '-'"
        )
    _validate_name(name)

    def _mutate(config: PlatformConfiguration) -> tuple[dict[str, Any], dict[str, Any]]:
        before = _audit_snapshot(config)
        entry = {
            "id": f"cred_{uuid4().hex[:12]}",
            "secret_value": secret,
            "display_name": name,
            "is_active": True,
            "usage_count_today": 0,
            "usage_count_total": 0,
            "last_used_at": None,
            "daily_limit": None,
            "added_at": _utc_now().isoformat(),
            "added_by": actor.actor_id,
        }
        config.credential_pool = credential_pool(config) + [entry]
        return entry, before

    entry, before = await update_configuration(
        session, _mutate, name="platform_config.add_credential", updated_by=actor.actor_id
    )
    logger.info("platform_credential_added credential_id=%s actor=%s", entry["id"], actor.actor_id)
    await _audit_change(
        session,
        actor=actor,
        event_type="platform.credential.added",
        resource_id=entry["id"],
        before=before,
    )
    return _credential_view(entry)


async def remove_credential(
    session: AsyncSession,
    *,
    credential_id: str,
    actor: AdminActor = SYSTEM_ACTOR,
) -> None:
    # Drop a credential and keep the rotation index inside the shrunken pool.

    def _mutate(config: PlatformConfiguration) -> dict[str, Any]:
        before = _audit_snapshot(config)
        pool = credential_pool(config)
        remaining = [entry for entry in pool if entry.get("id") != credential_id]
        if len(remaining) == len(pool):
            raise CredentialNotFoundError(f"Credential not found: {credential_id}")
        config.credential_pool = remaining
        if int(config.current_index or 0) >= len(remaining):
            config.current_index = max(0, len(remaining) - 1)
        return before

    before = await update_configuration(
        session, _mutate, name="platform_config.remove_credential", updated_by=actor.actor_id
    )
    logger.info("platform_credential_removed credential_id=%s actor=%s", credential_id, actor.actor_id)
    await _audit_change(
        session,
        actor=actor,
        event_type="platform.credential.removed",
        resource_id=credential_id,
        before=before,
    )


_UNSET: Any = object()


async def update_credential(
    session: AsyncSession,
    *,
    credential_id: str,
    name: str | None = None,
    is_active: bool | None = None,
    daily_limit: int | None = _UNSET,
    actor: AdminActor = SYSTEM_ACTOR,
) -> CredentialView:
    # Rename, toggle, or cap a credential; a daily_limit of None clears the cap.
    if name is not None:
        _validate_name(name)
    if daily_limit is not _UNSET and daily_limit is not None and int(daily_limit) < 0:
        raise ConfigurationValidationError("Daily limit must be >= 0")

    def _mutate(config: PlatformConfiguration) -> tuple[dict[str, Any], dict[str, Any]]:
        before = _audit_snapshot(config)
        pool = credential_pool(config)
        for entry in pool:
            if entry.get("id") != credential_id:
                continue
            if name is not None:
                entry["display_name"] = name
            if is_active is not None:
                entry["is_active"] = bool(is_active)
            if daily_limit is not _UNSET:
                entry["daily_limit"] = None if daily_limit is None else int(daily_limit)
            config.credential_pool = pool
            return entry, before
        raise CredentialNotFoundError(f"Credential not found: {credential_id}")

    entry, before = await update_configuration(
        session, _mutate, name="platform_config.update_credential", updated_by=actor.actor_id
    )
    await _audit_change(
        session,
        actor=actor,
        event_type="platform.credential.updated",
        resource_id=credential_id,
        before=before,
    )
    return _credential_view(entry)


async def update_rotation_strategy(
    session: AsyncSession,
    *,
    strategy: str,
    actor: AdminActor = SYSTEM_ACTOR,
) -> str:
    if strategy not in ROTATION_STRATEGIES:
        raise ConfigurationValidationError(
            f"Rotation strategy must be one of: {', '.join(ROTATION_STRATEGIES)}"
        )

    def _mutate(config: PlatformConfiguration) -> dict[str, Any]:
        before = _audit_snapshot(config)
        config.rotation_strategy = strategy
        return before

    before = await update_configuration(
        session, _mutate, name="platform_config.rotation_strategy", updated_by=actor.actor_id
    )
    await _audit_change(
        session,
        actor=actor,
        event_type="platform.rotation_strategy.updated",
        resource_id=CONFIG_ID,
        before=before,
    )
    return strategy


async def update_rate_limits(
    session: AsyncSession,
    *,
    enabled: bool | None = None,
    global_requests_per_minute: int | None = None,
    per_account_requests_per_minute: int | None = None,
    per_account_requests_per_day: int | None = None,
    actor: AdminActor = SYSTEM_ACTOR,
) -> RateLimitSettings:
    # Partial update; omitted fields keep their current values.
    if enabled is not None and not isinstance(enabled, bool):
        raise ConfigurationValidationError("enabled must be a boolean")
    for field_name, value in (
        ("global_requests_per_minute", global_requests_per_minute),
        ("per_account_requests_per_minute", per_account_requests_per_minute),
        ("per_account_requests_per_day", per_account_requests_per_day),
    ):
        if value is not None and int(value) < 1:
            raise ConfigurationValidationError(f"{field_name} must be >= 1")

    def _mutate(config: PlatformConfiguration) -> dict[str, Any]:
        before = _audit_snapshot(config)
        if enabled is not None:
            config.rate_limits_enabled = enabled
        if global_requests_per_minute is not None:
            config.global_requests_per_minute = int(global_requests_per_minute)
        if per_account_requests_per_minute is not None:
            config.per_account_requests_per_minute = int(per_account_requests_per_minute)
        if per_account_requests_per_day is not None:
            config.per_account_requests_per_day = int(per_account_requests_per_day)
        return before

    before = await update_configuration(
        session, _mutate, name="platform_config.rate_limits", updated_by=actor.actor_id
    )
    await _audit_change(
        session,
        actor=actor,
        event_type="platform.rate_limits.updated",
        resource_id=CONFIG_ID,
        before=before,
    )
    return rate_limit_settings(await get_configuration(session))


async def update_token_limits(
    session: AsyncSession,
    *,
    initial_signup_credits: int | None = None,
    max_credits_per_account: int | None = None,
    min_balance_for_call: int | None = None,
    profit_margin: float | Decimal | None = None,
    actor: AdminActor = SYSTEM_ACTOR,
) -> TokenLimitSettings:
    for field_name, value in (
        ("initial_signup_credits", initial_signup_credits),
        ("max_credits_per_account", max_credits_per_account),
        ("min_balance_for_call", min_balance_for_call),
    ):
        if value is not None and int(value) < 0:
            raise ConfigurationValidationError(f"{field_name} must be >= 0")
    if profit_margin is not None and not (0 <= Decimal(str(profit_margin)) <= 1):
        raise ConfigurationValidationError("profit_margin must be between 0 and 1")

    def _mutate(config: PlatformConfiguration) -> dict[str, Any]:
        before = _audit_snapshot(config)
        if initial_signup_credits is not None:
            config.initial_signup_credits = int(initial_signup_credits)
        if max_credits_per_account is not None:
            config.max_credits_per_account = int(max_credits_per_account)
        if min_balance_for_call is not None:
            config.min_balance_for_call = int(min_balance_for_call)
        if profit_margin is not None:
            config.profit_margin = Decimal(str(profit_margin))
        return before

    before = await update_configuration(
        session, _mutate, name="platform_config.token_limits", updated_by=actor.actor_id
    )
    await _audit_change(
        session,
        actor=actor,
        event_type="platform.token_limits.updated",
        resource_id=CONFIG_ID,
        before=before,
    )
    return token_limit_settings(await get_configuration(session))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _validate_name(name: str) -> None:
    if not isinstance(name, str) or len(name) < 1 or len(name) > _NAME_MAX_LENGTH:
        raise ConfigurationValidationError("Name must be 1-50 characters")


def _credential_view(entry: dict[str, Any]) -> CredentialView:
    daily_limit = entry.get("daily_limit")
    return CredentialView(
        id=str(entry.get("id")),
        display_name=str(entry.get("display_name") or ""),
        masked_value=mask_secret(entry.get("secret_value")),
        is_active=bool(entry.get("is_active")),
        usage_count_today=int(entry.get("usage_count_today") or 0),
        usage_count_total=int(entry.get("usage_count_total") or 0),
        last_used_at=entry.get("last_used_at"),
        daily_limit=int(daily_limit) if daily_limit is not None else None,
        added_at=entry.get("added_at"),
        added_by=entry.get("added_by"),
    )


def _audit_snapshot(config: PlatformConfiguration) -> dict[str, Any]:
    # Masked copy of the aggregate; raw credentials never reach the audit trail.
    return {
        "credentials": [
            {
                "id": entry.get("id"),
                "display_name": entry.get("display_name"),
                "masked_value": mask_secret(entry.get("secret_value")),
                "is_active": bool(entry.get("is_active")),
                "daily_limit": entry.get("daily_limit"),
            }
            for entry in config.credential_pool or []
        ],
        "rotation_strategy": config.rotation_strategy,
        "current_index": int(config.current_index or 0),
        "rate_limits": {
            "enabled": bool(config.rate_limits_enabled),
            "global_requests_per_minute": int(config.global_requests_per_minute),
            "per_account_requests_per_minute": int(config.per_account_requests_per_minute),
            "per_account_requests_per_day": int(config.per_account_requests_per_day),
        },
        "credit_limits": {
            "initial_signup_credits": int(config.initial_signup_credits),
            "max_credits_per_account": int(config.max_credits_per_account or 0),
            "min_balance_for_call": int(config.min_balance_for_call),
            "profit_margin": str(config.profit_margin),
        },
    }


async def _audit_change(
    session: AsyncSession,
    *,
    actor: AdminActor,
    event_type: str,
    resource_id: str,
    before: dict[str, Any],
) -> None:
    config = await get_configuration(session)
    await record_event(
        session=session,
        account_id=None,
        actor_type="api_key" if actor.actor_role else "system",
        actor_id=actor.actor_id,
        actor_role=actor.actor_role,
        event_type=event_type,
        outcome="success",
        resource_type="platform_configuration",
        resource_id=resource_id,
        request_id=actor.request_id,
        metadata={"before": before, "after": _audit_snapshot(config)},
        commit=True,
        best_effort=True,
    )


async def _select_configuration(session: AsyncSession, *, lock: bool) -> PlatformConfiguration | None:
    query = select(PlatformConfiguration).where(PlatformConfiguration.id == CONFIG_ID)
    if lock:
        query = query.with_for_update()
    result = await session.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def _select_or_create(session: AsyncSession, *, lock: bool) -> PlatformConfiguration:
    config = await _select_configuration(session, lock=lock)
    if config is not None:
        return config
    settings = get_settings()
    strategy = settings.default_rotation_strategy
    if strategy not in ROTATION_STRATEGIES:
        strategy = "round-robin"
    config = PlatformConfiguration(
        id=CONFIG_ID,
        credential_pool=[],
        rotation_strategy=strategy,
        current_index=0,
        rate_limits_enabled=settings.default_rate_limits_enabled,
        global_requests_per_minute=settings.default_global_requests_per_minute,
        per_account_requests_per_minute=settings.default_per_account_requests_per_minute,
        per_account_requests_per_day=settings.default_per_account_requests_per_day,
        initial_signup_credits=settings.default_initial_signup_credits,
        max_credits_per_account=settings.default_max_credits_per_account,
        min_balance_for_call=settings.default_min_balance_for_call,
        profit_margin=Decimal(str(settings.default_profit_margin)),
        updated_at=_utc_now(),
        updated_by="system",
    )
    session.add(config)
    await session.flush()
    logger.info("platform_config_initialized id=%s", CONFIG_ID)
    return config
