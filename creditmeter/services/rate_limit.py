from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import math
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.core.errors import RateLimitedError
from creditmeter.domain.models import RateLimitWindow
from creditmeter.persistence.db import run_with_conflict_retry
from creditmeter.services.platform_settings import RateLimitSettings, get_configuration, rate_limit_settings
from creditmeter.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"

MINUTE_WINDOW = timedelta(seconds=60)
STALE_WINDOW_AGE = timedelta(hours=24)
GLOBAL_RETRY_AFTER_S = 5
PRUNE_BATCH_LIMIT = 500

MINUTE_LIMIT_REASON = "Rate limit exceeded. Please wait a moment before trying again."
DAILY_LIMIT_REASON = "Daily request limit reached. Your limit will reset at midnight UTC."
GLOBAL_LIMIT_REASON = "Platform is experiencing high traffic. Please try again shortly."


@dataclass(frozen=True)
class Remaining:
    per_minute: int
    per_day: int


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    retry_after_s: int | None = None
    reason: str | None = None
    # account or global; None when allowed.
    scope: str | None = None
    remaining: Remaining | None = None


@dataclass(frozen=True)
class WindowUsage:
    requests_in_window: int
    requests_today: int
    window_start: datetime | None


@dataclass(frozen=True)
class AccountRateStats:
    requests_last_minute: int
    requests_today: int
    limit_per_minute: int
    limit_per_day: int
    remaining_per_minute: int
    remaining_per_day: int
    enabled: bool


def account_scope(account_id: str) -> str:
    return f"account:{account_id}"


def _day_start(now: datetime) -> datetime:
    # Daily windows roll over at UTC midnight.
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)


def _minute_window_live(window_start: datetime | None, now: datetime) -> bool:
    return window_start is not None and window_start > now - MINUTE_WINDOW


def _day_window_live(day_window_start: datetime | None, now: datetime) -> bool:
    return day_window_start is not None and day_window_start >= _day_start(now)


def current_usage(row: RateLimitWindow | None, now: datetime) -> WindowUsage:
    # Stale windows read as zero; the row itself is only reset on the next write.
    if row is None:
        return WindowUsage(requests_in_window=0, requests_today=0, window_start=None)
    minute_live = _minute_window_live(row.window_start, now)
    return WindowUsage(
        requests_in_window=int(row.requests_in_window or 0) if minute_live else 0,
        requests_today=int(row.requests_today or 0) if _day_window_live(row.day_window_start, now) else 0,
        window_start=row.window_start if minute_live else None,
    )


def evaluate_admission(
    limits: RateLimitSettings,
    account: WindowUsage,
    global_usage: WindowUsage,
    now: datetime,
) -> AdmissionDecision:
    # Per-minute, then per-day, then the platform-wide minute budget.
    if not limits.enabled:
        return AdmissionDecision(allowed=True)
    if account.requests_in_window >= limits.per_account_requests_per_minute:
        window_start = account.window_start or now
        seconds_left = (window_start + MINUTE_WINDOW - now).total_seconds()
        return AdmissionDecision(
            allowed=False,
            retry_after_s=max(1, math.ceil(seconds_left)),
            reason=MINUTE_LIMIT_REASON,
            scope="account",
        )
    if account.requests_today >= limits.per_account_requests_per_day:
        return AdmissionDecision(allowed=False, reason=DAILY_LIMIT_REASON, scope="account")
    if global_usage.requests_in_window >= limits.global_requests_per_minute:
        return AdmissionDecision(
            allowed=False,
            retry_after_s=GLOBAL_RETRY_AFTER_S,
            reason=GLOBAL_LIMIT_REASON,
            scope="global",
        )
    return AdmissionDecision(
        allowed=True,
        remaining=Remaining(
            per_minute=limits.per_account_requests_per_minute - account.requests_in_window,
            per_day=limits.per_account_requests_per_day - account.requests_today,
        ),
    )


class RateLimiter:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic window rollover tests.
        self._time_provider = time_provider or _utc_now

    async def check_admission(self, *, session: AsyncSession, account_id: str) -> AdmissionDecision:
        # Read-only decision; counters are untouched.
        limits = rate_limit_settings(await get_configuration(session))
        if not limits.enabled:
            return AdmissionDecision(allowed=True)
        now = self._time_provider()
        account_row = await _load_window(session, account_scope(account_id), lock=False)
        global_row = await _load_window(session, GLOBAL_SCOPE, lock=False)
        decision = evaluate_admission(
            limits,
            current_usage(account_row, now),
            current_usage(global_row, now),
            now,
        )
        if not decision.allowed:
            log = logger.warning if decision.scope == "global" else logger.info
            log(
                "rate_limit_denied account_id=%s scope=%s retry_after_s=%s",
                account_id,
                decision.scope,
                decision.retry_after_s,
            )
            increment_counter(f"rate_limited_total.{decision.scope}")
        return decision

    async def record_admitted_request(self, *, session: AsyncSession, account_id: str) -> None:
        # Account and global counters each commit in their own unit.
        await self._increment(session, account_scope(account_id), account_id=account_id, track_day=True)
        await self._increment(session, GLOBAL_SCOPE, account_id=None, track_day=False)

    async def admit(self, *, session: AsyncSession, account_id: str) -> AdmissionDecision:
        # Check then record; denial raises so callers cannot forget to honor it.
        decision = await self.check_admission(session=session, account_id=account_id)
        if not decision.allowed:
            raise RateLimitedError(
                decision.reason or MINUTE_LIMIT_REASON,
                retry_after_s=decision.retry_after_s,
                scope=decision.scope or "account",
            )
        limits = rate_limit_settings(await get_configuration(session))
        if limits.enabled:
            await self.record_admitted_request(session=session, account_id=account_id)
        return decision

    async def account_stats(self, *, session: AsyncSession, account_id: str) -> AccountRateStats:
        limits = rate_limit_settings(await get_configuration(session))
        now = self._time_provider()
        usage = current_usage(await _load_window(session, account_scope(account_id), lock=False), now)
        return AccountRateStats(
            requests_last_minute=usage.requests_in_window,
            requests_today=usage.requests_today,
            limit_per_minute=limits.per_account_requests_per_minute,
            limit_per_day=limits.per_account_requests_per_day,
            remaining_per_minute=max(0, limits.per_account_requests_per_minute - usage.requests_in_window),
            remaining_per_day=max(0, limits.per_account_requests_per_day - usage.requests_today),
            enabled=limits.enabled,
        )

    async def prune_stale_windows(self, *, session: AsyncSession, limit: int = PRUNE_BATCH_LIMIT) -> int:
        # Storage hygiene only; stale windows already read as zero.
        cutoff = self._time_provider() - STALE_WINDOW_AGE
        if session.in_transaction():
            await session.commit()
        async with session.begin():
            result = await session.execute(
                select(RateLimitWindow.scope_key)
                .where(
                    RateLimitWindow.last_request_at < cutoff,
                    RateLimitWindow.scope_key != GLOBAL_SCOPE,
                )
                .order_by(RateLimitWindow.last_request_at)
                .limit(max(1, int(limit)))
            )
            scope_keys = [row[0] for row in result.all()]
            if scope_keys:
                await session.execute(
                    delete(RateLimitWindow)
                    .where(RateLimitWindow.scope_key.in_(scope_keys))
                    .execution_options(synchronize_session=False)
                )
        if scope_keys:
            logger.info("rate_limit_windows_pruned count=%s", len(scope_keys))
        return len(scope_keys)

    async def _increment(
        self,
        session: AsyncSession,
        scope_key: str,
        *,
        account_id: str | None,
        track_day: bool,
    ) -> None:
        async def _apply() -> None:
            now = self._time_provider()
            row = await _load_window(session, scope_key, lock=True)
            if row is None:
                # A concurrent first insert raises IntegrityError; the retry then updates that row.
                session.add(
                    RateLimitWindow(
                        scope_key=scope_key,
                        account_id=account_id,
                        window_start=now,
                        requests_in_window=1,
                        day_window_start=_day_start(now) if track_day else None,
                        requests_today=1 if track_day else 0,
                        last_request_at=now,
                    )
                )
                await session.flush()
                return
            if _minute_window_live(row.window_start, now):
                row.requests_in_window = int(row.requests_in_window or 0) + 1
            else:
                row.window_start = now
                row.requests_in_window = 1
            if track_day:
                if _day_window_live(row.day_window_start, now):
                    row.requests_today = int(row.requests_today or 0) + 1
                else:
                    row.day_window_start = _day_start(now)
                    row.requests_today = 1
            row.last_request_at = now
            await session.flush()

        await run_with_conflict_retry(
            session, _apply, name=f"rate_limit.increment.{scope_key.split(':', 1)[0]}", retry_integrity=True
        )


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter() -> None:
    # Reset cached services for deterministic tests.
    global _rate_limiter
    _rate_limiter = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _load_window(session: AsyncSession, scope_key: str, *, lock: bool) -> RateLimitWindow | None:
    query = select(RateLimitWindow).where(RateLimitWindow.scope_key == scope_key)
    if lock:
        query = query.with_for_update()
    result = await session.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()
