from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite file before any creditmeter module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="creditmeter-tests-")
_DB_PATH = os.path.join(_DB_DIR, "creditmeter.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["LLM_PROVIDER"] = "fake"
os.environ.setdefault("CB_REDIS_ENABLED", "false")
os.environ.setdefault("AUTH_CACHE_TTL_S", "0")
os.environ.setdefault("UPSTREAM_BACKOFF_MS", "1")

import pytest
from sqlalchemy import create_engine, delete

from creditmeter.apps.api.deps import clear_auth_cache
from creditmeter.core.config import get_settings
from creditmeter.domain.models import Base, PlatformConfiguration, RateLimitWindow
from creditmeter.persistence.db import SessionLocal, engine
from creditmeter.providers.llm.factory import reset_llm_provider
from creditmeter.services.credits.ledger import reset_credit_ledger
from creditmeter.services.credits.metering import reset_metering_orchestrator
from creditmeter.services.key_rotation import reset_key_rotation_manager
from creditmeter.services.rate_limit import reset_rate_limiter
from creditmeter.services.telemetry import reset_telemetry


def _sync_url(async_url: str) -> str:
    return async_url.replace("+aiosqlite", "")


@pytest.fixture(scope="session", autouse=True)
def create_schema() -> None:
    # SQLite runs build the schema from model metadata instead of alembic.
    sync_engine = create_engine(_sync_url(get_settings().database_url))
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()
    yield


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
async def reset_platform_state_between_tests() -> None:
    # The configuration singleton and shared windows would otherwise leak across tests.
    async with SessionLocal() as session:
        await session.execute(delete(PlatformConfiguration))
        await session.execute(delete(RateLimitWindow))
        await session.commit()
    get_settings.cache_clear()
    reset_credit_ledger()
    reset_rate_limiter()
    reset_key_rotation_manager()
    reset_metering_orchestrator()
    reset_llm_provider()
    reset_telemetry()
    clear_auth_cache()
    yield
    get_settings.cache_clear()
