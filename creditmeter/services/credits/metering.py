from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import json
import logging
import re
import time
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.core.config import get_settings
from creditmeter.core.errors import (
    InsufficientCreditsError,
    NoAvailableCredentialError,
    TrialExpiredError,
    UpstreamProviderError,
)
from creditmeter.domain.models import UsageRecord
from creditmeter.providers.llm.base import GenerationResult, LLMProvider
from creditmeter.providers.llm.factory import get_llm_provider
from creditmeter.services.credits.ledger import CreditLedger, get_credit_ledger
from creditmeter.services.credits.pricing import (
    credits_for_cost,
    estimate_required_credits,
    raw_cost_usd,
)
from creditmeter.services.key_rotation import KeyRotationManager, SelectedCredential, get_key_rotation_manager
from creditmeter.services.platform_settings import get_configuration, token_limit_settings
from creditmeter.services.rate_limit import RateLimiter, get_rate_limiter
from creditmeter.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

RESPONSE_FORMATS = ("text", "json")

JSON_ONLY_INSTRUCTION = (
    "IMPORTANT: Respond ONLY with valid JSON. Do not include any explanation, "
    "markdown formatting, or code blocks. Just the raw JSON object/array."
)

# Prompt-level rejections fail the same way on every credential.
_NO_FAILOVER_KINDS = {"safety", "unavailable"}

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")
_ARRAY_PATTERN = re.compile(r"\[[\s\S]*\]")


@dataclass(frozen=True)
class MeteredRequest:
    prompt: str
    model_key: str | None = None
    feature: str = "chat"
    system_instruction: str | None = None
    max_output_units: int | None = None
    response_format: str = "text"
    request_id: str | None = None


@dataclass(frozen=True)
class MeteredResult:
    text: str
    data: Any
    input_units: int
    output_units: int
    credits_debited: int
    balance: int
    cost_usd: Decimal
    model_key: str
    request_id: str
    latency_ms: int


def safe_parse_json(text: str | None) -> Any:
    """Parse JSON from model output, tolerating fences and surrounding prose.

    Tries a direct parse, then a fenced code block, then the widest ``{...}``
    span, then the widest ``[...]`` span. Returns None when nothing parses.
    """
    if text is None:
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass
    for pattern, group in ((_FENCE_PATTERN, 1), (_OBJECT_PATTERN, 0), (_ARRAY_PATTERN, 0)):
        match = pattern.search(text)
        if match is None:
            continue
        try:
            return json.loads(match.group(group))
        except ValueError:
            continue
    logger.warning("metering_json_parse_failed length=%s", len(text))
    return None


def with_json_instruction(prompt: str) -> str:
    return f"{prompt}\n\n{JSON_ONLY_INSTRUCTION}"


def estimate_call_cost(
    model_key: str,
    input_units: int,
    output_units: int,
    margin: float | Decimal,
) -> int:
    # Same tier-selection input as settlement so the estimate never disagrees at a boundary.
    return estimate_required_credits(model_key, input_units, output_units, margin=margin)


class UsageMeteringOrchestrator:
    def __init__(
        self,
        *,
        ledger: CreditLedger | None = None,
        rate_limiter: RateLimiter | None = None,
        key_manager: KeyRotationManager | None = None,
        provider: LLMProvider | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._ledger = ledger
        self._rate_limiter = rate_limiter
        self._key_manager = key_manager
        self._provider = provider
        self._time_provider = time_provider or _utc_now

    @property
    def ledger(self) -> CreditLedger:
        return self._ledger or get_credit_ledger()

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter or get_rate_limiter()

    @property
    def key_manager(self) -> KeyRotationManager:
        return self._key_manager or get_key_rotation_manager()

    @property
    def provider(self) -> LLMProvider:
        return self._provider or get_llm_provider()

    async def run(self, *, session: AsyncSession, account_id: str, request: MeteredRequest) -> MeteredResult:
        # One metered call: admission, pre-flight, credential, upstream, price, debit, record.
        await self.rate_limiter.admit(session=session, account_id=account_id)
        return await self._run_admitted(session=session, account_id=account_id, request=request)

    async def run_with_failover(
        self, *, session: AsyncSession, account_id: str, request: MeteredRequest
    ) -> MeteredResult:
        # Retry once on a replacement credential; the original error surfaces when none exists.
        await self.rate_limiter.admit(session=session, account_id=account_id)
        try:
            return await self._run_admitted(session=session, account_id=account_id, request=request)
        except UpstreamProviderError as exc:
            if exc.credential_index is None or exc.kind in _NO_FAILOVER_KINDS:
                raise
            replacement = await self.key_manager.on_failure(session=session, failed_index=exc.credential_index)
            if replacement is None:
                raise
            increment_counter("metering_failover_retries_total")
            return await self._run_admitted(
                session=session,
                account_id=account_id,
                request=request,
                credential=replacement,
            )

    async def _run_admitted(
        self,
        *,
        session: AsyncSession,
        account_id: str,
        request: MeteredRequest,
        credential: SelectedCredential | None = None,
    ) -> MeteredResult:
        settings = get_settings()
        model_key = request.model_key or settings.default_model_key
        request_id = request.request_id or uuid4().hex
        max_output_units = request.max_output_units or settings.default_max_output_units
        json_output = request.response_format == "json"

        limits = token_limit_settings(await get_configuration(session))
        balance = await self.ledger.balance(session=session, account_id=account_id)
        if balance < limits.min_balance_for_call:
            logger.info(
                "metering_preflight_insufficient account_id=%s balance=%s required=%s",
                account_id,
                balance,
                limits.min_balance_for_call,
            )
            raise InsufficientCreditsError(balance=balance, required=limits.min_balance_for_call)

        selected = credential or await self.key_manager.select_key(session=session)
        if selected is None:
            logger.error("metering_no_credential account_id=%s request_id=%s", account_id, request_id)
            increment_counter("metering_no_credential_total")
            raise NoAvailableCredentialError("No upstream credential is available")

        prompt = with_json_instruction(request.prompt) if json_output else request.prompt
        logger.info(
            "metering_call_start account_id=%s model=%s feature=%s credential_index=%s request_id=%s",
            account_id,
            model_key,
            request.feature,
            selected.index,
            request_id,
        )
        start = time.monotonic()
        generation = await self._invoke(
            selected,
            model_key=model_key,
            prompt=prompt,
            system_instruction=request.system_instruction,
            max_output_units=max_output_units,
            json_output=json_output,
            timeout_s=settings.upstream_timeout_ms / 1000.0,
        )
        latency_ms = int((time.monotonic() - start) * 1000)

        # Price from reported usage; total volume selects the tier for both cost and price.
        input_units = max(0, int(generation.input_units))
        output_units = max(0, int(generation.output_units))
        context_units = input_units + output_units
        cost_usd = raw_cost_usd(model_key, input_units, output_units)
        credits = credits_for_cost(model_key, cost_usd, limits.profit_margin, context_units)

        if credits > 0:
            try:
                debit = await self.ledger.debit(
                    session=session,
                    account_id=account_id,
                    amount=credits,
                    description=f"{request.feature}: {input_units} in / {output_units} out",
                    feature=request.feature,
                )
            except (InsufficientCreditsError, TrialExpiredError) as exc:
                # Upstream already billed us; this is lost revenue and must be visible.
                logger.error(
                    "metering_debit_race account_id=%s credits=%s request_id=%s error=%s",
                    account_id,
                    credits,
                    request_id,
                    type(exc).__name__,
                )
                increment_counter("metering_debit_race_total")
                raise
            new_balance = debit.balance
        else:
            new_balance = await self.ledger.balance(session=session, account_id=account_id)

        await self._record_usage(
            session,
            account_id=account_id,
            request_id=request_id,
            model_key=model_key,
            feature=request.feature,
            input_units=input_units,
            output_units=output_units,
            cost_usd=cost_usd,
            credits=credits,
            credential_id=selected.credential_id,
            latency_ms=latency_ms,
        )
        await self.key_manager.record_success(session=session, index=selected.index)
        increment_counter("metering_calls_total")
        logger.info(
            "metering_call_settled account_id=%s credits=%s balance=%s in=%s out=%s latency_ms=%s",
            account_id,
            credits,
            new_balance,
            input_units,
            output_units,
            latency_ms,
        )
        return MeteredResult(
            text=generation.text,
            data=safe_parse_json(generation.text) if json_output else None,
            input_units=input_units,
            output_units=output_units,
            credits_debited=credits,
            balance=new_balance,
            cost_usd=cost_usd,
            model_key=model_key,
            request_id=request_id,
            latency_ms=latency_ms,
        )

    async def _invoke(
        self,
        selected: SelectedCredential,
        *,
        model_key: str,
        prompt: str,
        system_instruction: str | None,
        max_output_units: int,
        json_output: bool,
        timeout_s: float,
    ) -> GenerationResult:
        # Bound the call so a hung provider cannot hold the credential; no debit on failure.
        try:
            return await asyncio.wait_for(
                self.provider.generate(
                    api_key=selected.secret,
                    model_key=model_key,
                    prompt=prompt,
                    system_instruction=system_instruction,
                    max_output_units=max_output_units,
                    json_output=json_output,
                ),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError as exc:
            increment_counter("metering_upstream_failures_total.timeout")
            logger.warning("metering_upstream_timeout credential_index=%s", selected.index)
            raise UpstreamProviderError(
                "Upstream provider timed out", kind="timeout", credential_index=selected.index
            ) from exc
        except UpstreamProviderError as exc:
            exc.credential_index = selected.index
            increment_counter(f"metering_upstream_failures_total.{exc.kind}")
            logger.warning(
                "metering_upstream_error kind=%s credential_index=%s status=%s",
                exc.kind,
                selected.index,
                exc.status_code,
            )
            raise

    async def _record_usage(
        self,
        session: AsyncSession,
        *,
        account_id: str,
        request_id: str,
        model_key: str,
        feature: str,
        input_units: int,
        output_units: int,
        cost_usd: Decimal,
        credits: int,
        credential_id: str,
        latency_ms: int,
    ) -> None:
        # Analytics only; a failed write never undoes a settled debit.
        record = UsageRecord(
            id=uuid4().hex,
            account_id=account_id,
            request_id=request_id,
            model_key=model_key,
            feature=feature,
            input_units=input_units,
            output_units=output_units,
            context_units=input_units + output_units,
            cost_basis_usd=cost_usd,
            credits_debited=credits,
            credential_id=credential_id,
            latency_ms=latency_ms,
            created_at=self._time_provider(),
        )
        try:
            session.add(record)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning(
                "metering_usage_record_failed account_id=%s request_id=%s",
                account_id,
                request_id,
                exc_info=exc,
            )


_orchestrator: UsageMeteringOrchestrator | None = None


def get_metering_orchestrator() -> UsageMeteringOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = UsageMeteringOrchestrator()
    return _orchestrator


def reset_metering_orchestrator() -> None:
    # Reset cached services for deterministic tests.
    global _orchestrator
    _orchestrator = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
