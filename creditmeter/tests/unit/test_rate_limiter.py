from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from creditmeter.core.config import get_settings
from creditmeter.core.errors import RateLimitedError
from creditmeter.domain.models import RateLimitWindow
from creditmeter.persistence.db import SessionLocal
from creditmeter.services.platform_settings import RateLimitSettings, update_rate_limits
from creditmeter.services.rate_limit import (
    DAILY_LIMIT_REASON,
    GLOBAL_LIMIT_REASON,
    GLOBAL_SCOPE,
    MINUTE_LIMIT_REASON,
    RateLimiter,
    WindowUsage,
    account_scope,
    evaluate_admission,
)


_LIMITS = RateLimitSettings(
    enabled=True,
    global_requests_per_minute=100,
    per_account_requests_per_minute=10,
    per_account_requests_per_day=50,
)


def _account_id() -> str:
    return f"acct-rl-{uuid4().hex}"


def _usage(minute: int = 0, today: int = 0, window_start: datetime | None = None) -> WindowUsage:
    return WindowUsage(requests_in_window=minute, requests_today=today, window_start=window_start)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_admission_checks_minute_then_day_then_global() -> None:
    now = datetime(2026, 5, 1, 10, 0, 30, tzinfo=timezone.utc)
    window_start = now - timedelta(seconds=20)

    minute = evaluate_admission(_LIMITS, _usage(10, 10, window_start), _usage(), now)
    assert minute.allowed is False
    assert minute.scope == "account"
    assert minute.reason == MINUTE_LIMIT_REASON
    assert minute.retry_after_s == 40

    daily = evaluate_admission(_LIMITS, _usage(1, 50, window_start), _usage(), now)
    assert daily.allowed is False
    assert daily.reason == DAILY_LIMIT_REASON
    assert daily.retry_after_s is None

    platform = evaluate_admission(_LIMITS, _usage(1, 1, window_start), _usage(100), now)
    assert platform.allowed is False
    assert platform.scope == "global"
    assert platform.reason == GLOBAL_LIMIT_REASON

    allowed = evaluate_admission(_LIMITS, _usage(3, 7, window_start), _usage(5), now)
    assert allowed.allowed is True
    assert allowed.remaining is not None
    assert allowed.remaining.per_minute == 7
    assert allowed.remaining.per_day == 43


def test_disabled_limits_always_admit() -> None:
    limits = RateLimitSettings(
        enabled=False,
        global_requests_per_minute=1,
        per_account_requests_per_minute=1,
        per_account_requests_per_day=1,
    )
    now = datetime.now(timezone.utc)
    assert evaluate_admission(limits, _usage(99, 99, now), _usage(99), now).allowed is True


@pytest.mark.asyncio
async def test_minute_window_throttles_then_resets() -> None:
    clock = _Clock(datetime(2026, 5, 1, 10, 0, 0, tzinfo=timezone.utc))
    limiter = RateLimiter(time_provider=clock)
    account_id = _account_id()
    async with SessionLocal() as session:
        await update_rate_limits(session, enabled=True, per_account_requests_per_minute=2)
        await limiter.admit(session=session, account_id=account_id)
        clock.now += timedelta(seconds=10)
        await limiter.admit(session=session, account_id=account_id)
        clock.now += timedelta(seconds=5)
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.admit(session=session, account_id=account_id)
        assert exc_info.value.scope == "account"
        assert exc_info.value.retry_after_s == 45

        # A full minute after the window opened, the counter starts over.
        clock.now += timedelta(seconds=46)
        await limiter.admit(session=session, account_id=account_id)
        stats = await limiter.account_stats(session=session, account_id=account_id)

    assert stats.enabled is True
    assert stats.requests_last_minute == 1
    assert stats.requests_today == 3
    assert stats.remaining_per_minute == 1


@pytest.mark.asyncio
async def test_daily_limit_resets_at_utc_midnight() -> None:
    clock = _Clock(datetime(2026, 5, 1, 23, 58, 0, tzinfo=timezone.utc))
    limiter = RateLimiter(time_provider=clock)
    account_id = _account_id()
    async with SessionLocal() as session:
        await update_rate_limits(
            session,
            enabled=True,
            per_account_requests_per_minute=100,
            per_account_requests_per_day=2,
        )
        await limiter.admit(session=session, account_id=account_id)
        await limiter.admit(session=session, account_id=account_id)
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.admit(session=session, account_id=account_id)
        assert exc_info.value.reason == DAILY_LIMIT_REASON

        clock.now = datetime(2026, 5, 2, 0, 0, 1, tzinfo=timezone.utc)
        decision = await limiter.admit(session=session, account_id=account_id)

    assert decision.allowed is True


@pytest.mark.asyncio
async def test_global_budget_applies_across_accounts() -> None:
    limiter = RateLimiter()
    async with SessionLocal() as session:
        await update_rate_limits(
            session,
            enabled=True,
            global_requests_per_minute=2,
            per_account_requests_per_minute=10,
        )
        await limiter.admit(session=session, account_id=_account_id())
        await limiter.admit(session=session, account_id=_account_id())
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.admit(session=session, account_id=_account_id())

    assert exc_info.value.scope == "global"
    assert exc_info.value.retry_after_s == 5


@pytest.mark.asyncio
async def test_disabled_limits_do_not_record_usage() -> None:
    limiter = RateLimiter()
    account_id = _account_id()
    async with SessionLocal() as session:
        for _ in range(3):
            await limiter.admit(session=session, account_id=account_id)
        stats = await limiter.account_stats(session=session, account_id=account_id)
        row = (
            await session.execute(
                select(RateLimitWindow).where(RateLimitWindow.scope_key == account_scope(account_id))
            )
        ).scalar_one_or_none()

    assert stats.enabled is False
    assert stats.requests_last_minute == 0
    assert row is None


@pytest.mark.asyncio
async def test_prune_removes_stale_account_windows_only() -> None:
    clock = _Clock(datetime(2026, 5, 1, 9, 0, 0, tzinfo=timezone.utc))
    limiter = RateLimiter(time_provider=clock)
    stale_account = _account_id()
    fresh_account = _account_id()
    async with SessionLocal() as session:
        await update_rate_limits(session, enabled=True)
        await limiter.admit(session=session, account_id=stale_account)
        clock.now += timedelta(hours=25)
        await limiter.admit(session=session, account_id=fresh_account)
        pruned = await limiter.prune_stale_windows(session=session)
        remaining = set(
            (await session.execute(select(RateLimitWindow.scope_key))).scalars().all()
        )

    assert pruned == 1
    assert account_scope(stale_account) not in remaining
    assert account_scope(fresh_account) in remaining
    assert GLOBAL_SCOPE in remaining


@pytest.mark.asyncio
async def test_concurrent_admissions_never_lose_counter_updates(monkeypatch: pytest.MonkeyPatch) -> None:
    # Eight writers on one row: the last one may lose seven version checks before it lands.
    monkeypatch.setenv("DB_CONFLICT_RETRIES", "8")
    get_settings.cache_clear()
    clock = _Clock(datetime(2026, 5, 1, 12, 0, 5, tzinfo=timezone.utc))
    limiter = RateLimiter(time_provider=clock)
    accounts = [_account_id(), _account_id()]

    async def _record(account_id: str) -> None:
        async with SessionLocal() as session:
            await limiter.record_admitted_request(session=session, account_id=account_id)

    await asyncio.gather(*(_record(accounts[idx % 2]) for idx in range(8)))

    async with SessionLocal() as session:
        rows = {
            row.scope_key: row
            for row in (await session.execute(select(RateLimitWindow))).scalars().all()
        }
    assert rows[GLOBAL_SCOPE].requests_in_window == 8
    for account_id in accounts:
        assert rows[account_scope(account_id)].requests_in_window == 4
        assert rows[account_scope(account_id)].requests_today == 4
