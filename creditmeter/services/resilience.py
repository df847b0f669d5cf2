from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

import httpx
from redis.asyncio import Redis

from creditmeter.core.config import get_settings
from creditmeter.core.errors import IntegrationUnavailableError
from creditmeter.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"
_STATE_GAUGE = {CLOSED: 0.0, HALF_OPEN: 0.5, OPEN: 1.0}

_redis_client: Redis | None = None
_redis_client_loop: asyncio.AbstractEventLoop | None = None


async def get_resilience_redis() -> Redis | None:
    # One client per event loop; None keeps breakers process-local.
    settings = get_settings()
    if not settings.cb_redis_enabled:
        return None
    global _redis_client, _redis_client_loop
    loop = asyncio.get_running_loop()
    if _redis_client is None or _redis_client_loop is not loop:
        _redis_client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        _redis_client_loop = loop
    return _redis_client


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int = 1
    backoff_ms: int = 0

    def delay_s(self, attempt: int) -> float:
        # Exponential backoff with +/-50% jitter.
        base = (self.backoff_ms / 1000.0) * (2 ** (attempt - 1))
        return base * random.uniform(0.5, 1.5)


def upstream_call_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.upstream_timeout_ms,
        max_attempts=settings.upstream_max_attempts,
        backoff_ms=settings.upstream_backoff_ms,
    )


_RETRYABLE_STATUS = {500, 502, 503, 504}


def is_transient(exc: Exception) -> bool:
    # Dropped connections and provider-side 5xx. A timeout has already spent the whole budget.
    if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
        return False
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _RETRYABLE_STATUS
    return isinstance(exc, (httpx.TransportError, ConnectionError))


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    policy = policy or upstream_call_policy()
    should_retry = retryable or is_transient
    attempts = max(policy.max_attempts, 1)
    attempt = 0
    while True:
        attempt += 1
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless the policy allows another attempt
            if attempt >= attempts or not should_retry(exc):
                raise
            increment_counter("external_retries_total")
            await asyncio.sleep(policy.delay_s(attempt))


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> CircuitBreakerConfig:
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass(frozen=True)
class BreakerSnapshot:
    state: str = CLOSED
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0

    def to_mapping(self) -> dict[str, str]:
        return {
            "state": self.state,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
            "trials": str(self.trials),
        }

    @classmethod
    def from_mapping(cls, raw: dict[str, str]) -> BreakerSnapshot:
        opened_at = raw.get("opened_at")
        return cls(
            state=raw.get("state") or CLOSED,
            failures=int(raw.get("failures") or 0),
            opened_at=float(opened_at) if opened_at else None,
            trials=int(raw.get("trials") or 0),
        )


class CircuitBreaker:
    """Opens after consecutive failures and lets trial calls through after a cool-down.

    With a Redis client every API instance shares one breaker per integration;
    without one the state is process-local.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig.from_settings()
        self._now = time_source or time.monotonic
        self._on_transition = on_transition
        self._local = BreakerSnapshot()

    @property
    def name(self) -> str:
        return self._name

    def _redis_key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._name}"

    async def _read(self) -> BreakerSnapshot:
        if self._redis is None:
            return self._local
        raw = await self._redis.hgetall(self._redis_key())
        return BreakerSnapshot.from_mapping(raw) if raw else self._local

    async def _write(self, snapshot: BreakerSnapshot) -> None:
        self._local = snapshot
        if self._redis is None:
            return
        key = self._redis_key()
        await self._redis.hset(key, mapping=snapshot.to_mapping())
        await self._redis.expire(key, max(self._config.open_seconds * 4, 60))

    async def _move(self, snapshot: BreakerSnapshot, target: str) -> BreakerSnapshot:
        # Counters restart on every transition; only an open breaker remembers when it opened.
        if snapshot.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, snapshot.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            set_gauge(f"circuit_breaker_state.{self._name}", _STATE_GAUGE[target])
            if self._on_transition is not None:
                await self._on_transition(self._name, target)
        moved = BreakerSnapshot(state=target, opened_at=self._now() if target == OPEN else None)
        await self._write(moved)
        return moved

    async def state(self) -> str:
        return (await self._read()).state

    async def before_call(self) -> None:
        snapshot = await self._read()
        if snapshot.state == OPEN:
            elapsed = self._now() - (snapshot.opened_at or 0.0)
            if elapsed < self._config.open_seconds:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            snapshot = await self._move(snapshot, HALF_OPEN)
        if snapshot.state == HALF_OPEN:
            if snapshot.trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            await self._write(replace(snapshot, trials=snapshot.trials + 1))

    async def record_success(self) -> None:
        snapshot = await self._read()
        if snapshot.state != CLOSED:
            await self._move(snapshot, CLOSED)
        elif snapshot.failures:
            await self._write(BreakerSnapshot())

    async def record_failure(self) -> None:
        snapshot = await self._read()
        failures = snapshot.failures + 1
        if snapshot.state == HALF_OPEN or failures >= self._config.failure_threshold:
            await self._move(snapshot, OPEN)
            return
        await self._write(replace(snapshot, failures=failures))
