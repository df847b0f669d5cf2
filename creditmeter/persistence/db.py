from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm.exc import StaleDataError

from creditmeter.core.config import Settings, get_settings


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _engine_options(settings: Settings) -> dict[str, Any]:
    # SQLite (tests) keeps SQLAlchemy's default pool; Postgres gets a bounded one.
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        return options
    options.update(
        pool_size=max(1, settings.api_db_pool_size),
        max_overflow=max(0, settings.api_db_max_overflow),
        pool_timeout=30,
        pool_recycle=1800,
    )
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(settings.api_db_statement_timeout_ms)}
        }
    return options


_settings = get_settings()
engine = create_async_engine(_settings.database_url, **_engine_options(_settings))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def run_with_conflict_retry(
    session: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    retry_integrity: bool = False,
) -> T:
    """Run ``operation`` in its own transaction, re-running it on write conflicts.

    A version-column mismatch (another writer bumped the balance or the
    settings row first) is always retried. Duplicate-key errors are retried
    only when ``retry_integrity`` is set, for racing first inserts that should
    become updates on the next pass.
    """
    attempts = max(1, get_settings().db_conflict_retries)
    if session.in_transaction():
        await session.commit()
    attempt = 0
    while True:
        attempt += 1
        try:
            async with session.begin():
                return await operation()
        except (StaleDataError, IntegrityError) as exc:
            duplicate = isinstance(exc, IntegrityError)
            if attempt >= attempts or (duplicate and not retry_integrity):
                raise
            logger.info(
                "db_conflict_retry op=%s attempt=%s reason=%s",
                name,
                attempt,
                "duplicate" if duplicate else "stale",
            )


def pool_stats() -> dict[str, int | None]:
    # Only queue pools report sizes; other pool classes come back as None.
    pool = engine.sync_engine.pool

    def _read(method: str) -> int | None:
        reader = getattr(pool, method, None)
        return int(reader()) if callable(reader) else None

    return {
        "size": _read("size"),
        "checked_out": _read("checkedout"),
        "checked_in": _read("checkedin"),
        "overflow": _read("overflow"),
    }
