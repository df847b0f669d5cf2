from __future__ import annotations

import asyncio

import pytest

from creditmeter.core.config import get_settings
from creditmeter.persistence.db import SessionLocal
from creditmeter.services.key_rotation import KeyRotationManager, choose_credential, choose_replacement
from creditmeter.services.platform_settings import (
    add_credential,
    get_configuration,
    update_credential,
    update_rotation_strategy,
)


def _secret(suffix: str) -> str:
    return f"test-upstream-credential-{suffix}"


def _entry(key_id: str, *, active: bool = True, today: int = 0, limit: int | None = None) -> dict:
    return {
        "id": key_id,
        "secret_value": _secret(key_id),
        "display_name": key_id,
        "is_active": active,
        "usage_count_today": today,
        "usage_count_total": today,
        "daily_limit": limit,
    }


async def _seed_pool(session, count: int) -> list[str]:
    ids = []
    for idx in range(count):
        view = await add_credential(session, secret=_secret(f"key{idx}"), name=f"key {idx}")
        ids.append(view.id)
    return ids


def test_round_robin_skips_inactive_and_advances_over_full_pool() -> None:
    pool = [_entry("a"), _entry("b", active=False), _entry("c")]
    current = 0
    picked = []
    for _ in range(4):
        selected, current = choose_credential(pool, "round-robin", current)
        picked.append(selected)
    # The pointer wraps over the full pool, so the active subset is not visited evenly.
    assert picked == [0, 2, 0, 0]


def test_failover_prefers_first_active_key() -> None:
    pool = [_entry("a", active=False), _entry("b"), _entry("c")]
    assert choose_credential(pool, "failover", 2) == (1, None)


def test_usage_based_picks_least_used_with_pool_order_ties() -> None:
    pool = [_entry("a", today=5), _entry("b", today=2), _entry("c", today=2)]
    assert choose_credential(pool, "usage-based", 0) == (1, None)


def test_capped_key_is_replaced_and_exhausted_pool_yields_none() -> None:
    pool = [_entry("a", today=3, limit=3), _entry("b", today=0, limit=3)]
    assert choose_credential(pool, "failover", 0) == (1, None)
    exhausted = [_entry("a", today=3, limit=3), _entry("b", today=1, limit=1)]
    assert choose_credential(exhausted, "failover", 0) == (None, None)
    # Zero and missing caps mean uncapped.
    uncapped = [_entry("a", today=999, limit=0), _entry("b", today=999)]
    assert choose_credential(uncapped, "failover", 0) == (0, None)


def test_replacement_skips_failed_key() -> None:
    pool = [_entry("a"), _entry("b", active=False), _entry("c")]
    assert choose_replacement(pool, "round-robin", 0) == 2
    assert choose_replacement([_entry("a")], "round-robin", 0) is None


@pytest.mark.asyncio
async def test_select_key_round_robin_sequence() -> None:
    manager = KeyRotationManager()
    async with SessionLocal() as session:
        await _seed_pool(session, 3)
        picked = []
        for _ in range(4):
            selected = await manager.select_key(session=session)
            assert selected is not None
            picked.append(selected.index)

    assert picked == [0, 1, 2, 0]


@pytest.mark.asyncio
async def test_select_key_with_empty_pool_returns_none() -> None:
    manager = KeyRotationManager()
    async with SessionLocal() as session:
        assert await manager.select_key(session=session) is None


@pytest.mark.asyncio
async def test_daily_limit_excludes_key_until_reset() -> None:
    manager = KeyRotationManager()
    async with SessionLocal() as session:
        ids = await _seed_pool(session, 2)
        await update_rotation_strategy(session, strategy="failover")
        await update_credential(session, credential_id=ids[0], daily_limit=1)

        first = await manager.select_key(session=session)
        assert first is not None and first.index == 0
        await manager.record_success(session=session, index=0)

        second = await manager.select_key(session=session)
        assert second is not None and second.index == 1

        await manager.reset_daily_usage(session=session)
        third = await manager.select_key(session=session)
        assert third is not None and third.index == 0

        config = await get_configuration(session)
        assert config.credential_pool[0]["usage_count_today"] == 0
        assert config.credential_pool[0]["usage_count_total"] == 1
        assert config.credential_pool[0]["last_used_at"] is not None


@pytest.mark.asyncio
async def test_on_failure_moves_pointer_to_replacement() -> None:
    manager = KeyRotationManager()
    async with SessionLocal() as session:
        await _seed_pool(session, 2)
        replacement = await manager.on_failure(session=session, failed_index=0)
        assert replacement is not None
        assert replacement.index == 1
        assert replacement.secret == _secret("key1")
        config = await get_configuration(session)
        assert config.current_index == 1


@pytest.mark.asyncio
async def test_key_stats_reports_usage_and_percent() -> None:
    manager = KeyRotationManager()
    async with SessionLocal() as session:
        ids = await _seed_pool(session, 2)
        await update_credential(session, credential_id=ids[0], daily_limit=3)
        await update_credential(session, credential_id=ids[1], is_active=False)
        await manager.record_success(session=session, index=0)
        await manager.record_success(session=session, index=0)
        # Out-of-range indexes are ignored.
        await manager.record_success(session=session, index=7)
        stats = await manager.key_stats(session=session)

    assert stats.total_keys == 2
    assert stats.active_keys == 1
    assert stats.total_usage_today == 2
    assert stats.total_usage_all_time == 2
    assert stats.keys[0].percent_used == 67
    assert stats.keys[1].percent_used is None


@pytest.mark.asyncio
async def test_concurrent_successes_never_lose_usage_counts(monkeypatch: pytest.MonkeyPatch) -> None:
    # Eight writers on one row: the last one may lose seven version checks before it lands.
    monkeypatch.setenv("DB_CONFLICT_RETRIES", "8")
    get_settings.cache_clear()
    manager = KeyRotationManager()
    async with SessionLocal() as session:
        await _seed_pool(session, 1)

    async def _record() -> None:
        async with SessionLocal() as session:
            await manager.record_success(session=session, index=0)

    await asyncio.gather(*(_record() for _ in range(8)))

    async with SessionLocal() as session:
        stats = await manager.key_stats(session=session)
    assert stats.keys[0].usage_today == 8
    assert stats.keys[0].total_usage == 8
