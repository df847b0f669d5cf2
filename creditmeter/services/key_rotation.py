from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import math
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.domain.models import PlatformConfiguration
from creditmeter.services.platform_settings import (
    credential_pool,
    get_configuration,
    update_configuration,
)
from creditmeter.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectedCredential:
    # Index into the full pool, not the active subset.
    index: int
    credential_id: str
    display_name: str
    secret: str


@dataclass(frozen=True)
class KeyUsage:
    id: str
    display_name: str
    is_active: bool
    usage_today: int
    total_usage: int
    daily_limit: int | None
    percent_used: int | None


@dataclass(frozen=True)
class KeyStats:
    total_keys: int
    active_keys: int
    total_usage_today: int
    total_usage_all_time: int
    keys: list[KeyUsage]


def _usage_today(entry: dict[str, Any]) -> int:
    return int(entry.get("usage_count_today") or 0)


def _at_daily_limit(entry: dict[str, Any]) -> bool:
    # A missing or zero cap means the key is uncapped.
    limit = entry.get("daily_limit")
    return bool(limit) and _usage_today(entry) >= int(limit)


def choose_credential(
    pool: list[dict[str, Any]],
    strategy: str,
    current_index: int,
) -> tuple[int | None, int | None]:
    """Pick a pool index for the strategy.

    Returns ``(selected_index, next_current_index)``. ``selected_index`` is None
    when no active key is under its daily cap; ``next_current_index`` is None
    when the strategy does not advance the rotation pointer.
    """
    active = [(idx, entry) for idx, entry in enumerate(pool) if entry.get("is_active")]
    if not active:
        return None, None
    next_index: int | None = None
    if strategy == "round-robin":
        chosen = active[current_index % len(active)]
        next_index = (current_index + 1) % len(pool)
    elif strategy == "usage-based":
        # min() keeps the first of equal usages, so ties go to pool order.
        chosen = min(active, key=lambda item: _usage_today(item[1]))
    else:
        chosen = active[0]
    if _at_daily_limit(chosen[1]):
        available = [item for item in active if not _at_daily_limit(item[1])]
        if not available:
            return None, next_index
        chosen = available[0]
    return chosen[0], next_index


def choose_replacement(pool: list[dict[str, Any]], strategy: str, failed_index: int) -> int | None:
    # One-shot reselection that skips the key that just failed.
    candidates = [
        (idx, entry)
        for idx, entry in enumerate(pool)
        if entry.get("is_active") and idx != failed_index
    ]
    if not candidates:
        return None
    if strategy == "usage-based":
        return min(candidates, key=lambda item: _usage_today(item[1]))[0]
    return candidates[0][0]


def _to_selected(index: int, entry: dict[str, Any]) -> SelectedCredential:
    return SelectedCredential(
        index=index,
        credential_id=str(entry.get("id")),
        display_name=str(entry.get("display_name") or ""),
        secret=str(entry.get("secret_value") or ""),
    )


class KeyRotationManager:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        self._time_provider = time_provider or _utc_now

    async def select_key(self, *, session: AsyncSession) -> SelectedCredential | None:
        # Selection and pointer advance share one versioned write so concurrent calls rotate fairly.
        state: dict[str, Any] = {}

        def _mutate(config: PlatformConfiguration) -> SelectedCredential | None:
            pool = credential_pool(config)
            state["pool_size"] = len(pool)
            state["active"] = sum(1 for entry in pool if entry.get("is_active"))
            selected, next_index = choose_credential(
                pool, config.rotation_strategy, int(config.current_index or 0)
            )
            if next_index is not None:
                config.current_index = next_index
            if selected is None:
                return None
            return _to_selected(selected, pool[selected])

        selected = await update_configuration(session, _mutate, name="key_rotation.select")
        if selected is None:
            if state.get("active"):
                logger.error("credential_pool_exhausted active=%s", state["active"])
                increment_counter("credential_pool_exhausted_total")
            else:
                logger.warning("credential_pool_no_active_keys pool_size=%s", state.get("pool_size", 0))
                increment_counter("credential_pool_empty_total")
        return selected

    async def record_success(self, *, session: AsyncSession, index: int) -> None:
        # Bump the per-key counters; an index outside the pool is ignored.
        used_at = self._time_provider().isoformat()

        def _mutate(config: PlatformConfiguration) -> bool:
            pool = credential_pool(config)
            if index < 0 or index >= len(pool):
                return False
            entry = pool[index]
            entry["usage_count_today"] = _usage_today(entry) + 1
            entry["usage_count_total"] = int(entry.get("usage_count_total") or 0) + 1
            entry["last_used_at"] = used_at
            config.credential_pool = pool
            return True

        recorded = await update_configuration(session, _mutate, name="key_rotation.record_success")
        if not recorded:
            logger.warning("credential_usage_index_out_of_range index=%s", index)

    async def on_failure(self, *, session: AsyncSession, failed_index: int) -> SelectedCredential | None:
        # Move the rotation pointer to a replacement key; None when the pool has no alternative.
        logger.warning("credential_failure index=%s", failed_index)
        increment_counter("credential_failures_total")

        def _mutate(config: PlatformConfiguration) -> SelectedCredential | None:
            pool = credential_pool(config)
            replacement = choose_replacement(pool, config.rotation_strategy, failed_index)
            if replacement is None:
                return None
            config.current_index = replacement
            return _to_selected(replacement, pool[replacement])

        selected = await update_configuration(session, _mutate, name="key_rotation.on_failure")
        if selected is None:
            logger.error("credential_failover_unavailable failed_index=%s", failed_index)
        else:
            logger.info(
                "credential_failover failed_index=%s new_index=%s credential_id=%s",
                failed_index,
                selected.index,
                selected.credential_id,
            )
        return selected

    async def reset_daily_usage(self, *, session: AsyncSession) -> int:
        # Explicit reset; daily counters are never inferred from timestamps.

        def _mutate(config: PlatformConfiguration) -> int:
            pool = credential_pool(config)
            for entry in pool:
                entry["usage_count_today"] = 0
            config.credential_pool = pool
            return len(pool)

        count = await update_configuration(session, _mutate, name="key_rotation.reset_daily_usage")
        logger.info("credential_daily_usage_reset keys=%s", count)
        return count

    async def key_stats(self, *, session: AsyncSession) -> KeyStats:
        config = await get_configuration(session)
        pool = config.credential_pool or []
        keys = []
        for entry in pool:
            limit = entry.get("daily_limit")
            usage_today = _usage_today(entry)
            keys.append(
                KeyUsage(
                    id=str(entry.get("id")),
                    display_name=str(entry.get("display_name") or ""),
                    is_active=bool(entry.get("is_active")),
                    usage_today=usage_today,
                    total_usage=int(entry.get("usage_count_total") or 0),
                    daily_limit=int(limit) if limit is not None else None,
                    percent_used=math.floor(usage_today / int(limit) * 100 + 0.5) if limit else None,
                )
            )
        return KeyStats(
            total_keys=len(pool),
            active_keys=sum(1 for entry in pool if entry.get("is_active")),
            total_usage_today=sum(key.usage_today for key in keys),
            total_usage_all_time=sum(key.total_usage for key in keys),
            keys=keys,
        )


_key_rotation_manager: KeyRotationManager | None = None


def get_key_rotation_manager() -> KeyRotationManager:
    global _key_rotation_manager
    if _key_rotation_manager is None:
        _key_rotation_manager = KeyRotationManager()
    return _key_rotation_manager


def reset_key_rotation_manager() -> None:
    # Reset cached services for deterministic tests.
    global _key_rotation_manager
    _key_rotation_manager = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
