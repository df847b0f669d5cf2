from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Literal

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.core.config import get_settings
from creditmeter.domain.models import AuditEvent
from creditmeter.services.key_rotation import get_key_rotation_manager
from creditmeter.services.rate_limit import get_rate_limiter


logger = logging.getLogger(__name__)

MaintenanceTask = Literal[
    "prune_audit",
    "prune_rate_limit_windows",
    "reset_credential_usage",
]


async def prune_audit_events(session: AsyncSession) -> int:
    # Remove audit events beyond the retention window.
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(days=settings.audit_retention_days)
    result = await session.execute(delete(AuditEvent).where(AuditEvent.occurred_at < cutoff))
    await session.commit()
    return result.rowcount or 0


async def prune_rate_limit_windows(session: AsyncSession) -> int:
    return await get_rate_limiter().prune_stale_windows(session=session)


async def reset_credential_usage(session: AsyncSession) -> int:
    # Daily key counters only reset here; nothing infers a reset from timestamps.
    return await get_key_rotation_manager().reset_daily_usage(session=session)


_TASKS = {
    "prune_audit": prune_audit_events,
    "prune_rate_limit_windows": prune_rate_limit_windows,
    "reset_credential_usage": reset_credential_usage,
}


async def run_maintenance_task(session: AsyncSession, task: MaintenanceTask) -> int:
    handler = _TASKS.get(task)
    if handler is None:
        raise ValueError(f"unknown maintenance task: {task}")
    count = await handler(session)
    logger.info("maintenance_task_completed task=%s count=%s", task, count)
    return count
