from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.core.config import get_settings
from creditmeter.core.errors import (
    AccountNotFoundError,
    InsufficientCreditsError,
    TrialExpiredError,
)
from creditmeter.domain.models import AccountBalance, LedgerTransaction
from creditmeter.persistence.db import run_with_conflict_retry
from creditmeter.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

INITIAL_GRANT = "INITIAL_GRANT"
PURCHASE_TOP_UP = "PURCHASE_TOP_UP"
USAGE_DEBIT = "USAGE_DEBIT"
MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"

TRANSACTION_TYPES = (INITIAL_GRANT, PURCHASE_TOP_UP, USAGE_DEBIT, MANUAL_ADJUSTMENT)
GRANT_TYPES = (INITIAL_GRANT, PURCHASE_TOP_UP, MANUAL_ADJUSTMENT)


@dataclass(frozen=True)
class Correlation:
    # External payment identifiers carried onto the ledger row.
    external_event_id: str | None = None
    payment_intent_id: str | None = None
    pack_id: str | None = None


@dataclass(frozen=True)
class LedgerResult:
    balance: int
    transaction_id: int | None
    # False when a grant was skipped because its external event was already applied.
    applied: bool = True


@dataclass(frozen=True)
class TransactionView:
    id: int
    type: str
    amount: int
    balance_after: int
    description: str
    feature: str | None
    external_event_id: str | None
    payment_intent_id: str | None
    pack_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class AccountSnapshot:
    account_id: str
    balance: int
    is_trial_account: bool
    trial_ends_at: datetime | None
    trial_expired: bool
    updated_at: datetime | None


@dataclass(frozen=True)
class _DebitOutcome:
    result: LedgerResult | None
    trial_expired: bool = False


class CreditLedger:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic trial-expiry tests.
        self._time_provider = time_provider or _utc_now

    async def initialize(
        self,
        *,
        session: AsyncSession,
        account_id: str,
        initial_credits: int,
        trial_days: int | None = None,
    ) -> LedgerResult:
        # Bootstrap balance, trial window, and the first grant in one unit; duplicates surface as IntegrityError.
        if initial_credits < 0:
            raise ValueError("initial_credits must be >= 0")
        days = get_settings().trial_duration_days if trial_days is None else trial_days

        async def _create() -> LedgerResult:
            now = self._time_provider()
            account = AccountBalance(
                account_id=account_id,
                credit_balance=initial_credits,
                is_trial_account=True,
                trial_ends_at=now + timedelta(days=days),
                created_at=now,
                updated_at=now,
            )
            session.add(account)
            # Flush the parent first so the grant row can reference it.
            await session.flush()
            txn = LedgerTransaction(
                account_id=account_id,
                type=INITIAL_GRANT,
                amount=initial_credits,
                balance_after=initial_credits,
                description=f"Free trial! {initial_credits} credits for {days} days.",
                created_at=now,
            )
            session.add(txn)
            await session.flush()
            return LedgerResult(balance=initial_credits, transaction_id=txn.id)

        result = await run_with_conflict_retry(session, _create, name="ledger.initialize")
        logger.info("ledger_initialized account_id=%s credits=%s", account_id, initial_credits)
        increment_counter("ledger_accounts_initialized_total")
        return result

    async def grant(
        self,
        *,
        session: AsyncSession,
        account_id: str,
        amount: int,
        type: str = PURCHASE_TOP_UP,
        description: str,
        correlation: Correlation | None = None,
    ) -> LedgerResult:
        # Increase the balance and append the grant atomically; external event ids apply at most once.
        if amount <= 0:
            raise ValueError("grant amount must be > 0")
        if type not in GRANT_TYPES:
            raise ValueError(f"unsupported grant type: {type}")
        corr = correlation or Correlation()

        async def _apply() -> LedgerResult:
            account = await _load_account(session, account_id, lock=True)
            if account is None:
                raise AccountNotFoundError(account_id)
            if corr.external_event_id:
                existing = await _find_by_external_event(session, account_id, corr.external_event_id)
                if existing is not None:
                    return LedgerResult(
                        balance=int(account.credit_balance),
                        transaction_id=existing.id,
                        applied=False,
                    )
            now = self._time_provider()
            new_balance = int(account.credit_balance) + amount
            account.credit_balance = new_balance
            account.updated_at = now
            txn = LedgerTransaction(
                account_id=account_id,
                type=type,
                amount=amount,
                balance_after=new_balance,
                description=description,
                external_event_id=corr.external_event_id,
                payment_intent_id=corr.payment_intent_id,
                pack_id=corr.pack_id,
                created_at=now,
            )
            session.add(txn)
            await session.flush()
            return LedgerResult(balance=new_balance, transaction_id=txn.id)

        # A concurrent duplicate grant trips the unique constraint; the retry then sees the existing row.
        result = await run_with_conflict_retry(
            session, _apply, name="ledger.grant", retry_integrity=True
        )
        if result.applied:
            logger.info(
                "ledger_grant account_id=%s amount=%s type=%s balance=%s",
                account_id,
                amount,
                type,
                result.balance,
            )
            increment_counter("ledger_grants_total")
        else:
            logger.info(
                "ledger_grant_duplicate account_id=%s external_event_id=%s",
                account_id,
                corr.external_event_id,
            )
            increment_counter("ledger_grants_duplicate_total")
        return result

    async def debit(
        self,
        *,
        session: AsyncSession,
        account_id: str,
        amount: int,
        description: str,
        feature: str | None = None,
    ) -> LedgerResult:
        # Decrement the balance under a row lock and version check; never drive it below zero.
        if amount <= 0:
            raise ValueError("debit amount must be > 0")

        async def _apply() -> _DebitOutcome:
            account = await _load_account(session, account_id, lock=True)
            if account is None:
                raise AccountNotFoundError(account_id)
            now = self._time_provider()
            balance = int(account.credit_balance)
            if _trial_expired(account, now):
                # Zero the trial balance and keep the ledger replayable with a matching adjustment.
                account.credit_balance = 0
                account.is_trial_account = False
                account.updated_at = now
                if balance > 0:
                    session.add(
                        LedgerTransaction(
                            account_id=account_id,
                            type=MANUAL_ADJUSTMENT,
                            amount=-balance,
                            balance_after=0,
                            description="Trial expired",
                            created_at=now,
                        )
                    )
                await session.flush()
                return _DebitOutcome(result=None, trial_expired=True)
            if balance < amount:
                raise InsufficientCreditsError(balance=balance, required=amount)
            new_balance = balance - amount
            account.credit_balance = new_balance
            account.updated_at = now
            txn = LedgerTransaction(
                account_id=account_id,
                type=USAGE_DEBIT,
                amount=-amount,
                balance_after=new_balance,
                description=description,
                feature=feature,
                created_at=now,
            )
            session.add(txn)
            await session.flush()
            return _DebitOutcome(result=LedgerResult(balance=new_balance, transaction_id=txn.id))

        outcome = await run_with_conflict_retry(session, _apply, name="ledger.debit")
        if outcome.trial_expired or outcome.result is None:
            logger.info("ledger_trial_expired account_id=%s", account_id)
            increment_counter("ledger_trial_expired_total")
            raise TrialExpiredError(account_id)
        increment_counter("ledger_debits_total")
        return outcome.result

    async def balance(self, *, session: AsyncSession, account_id: str) -> int:
        # Read path is forgiving: unknown accounts report zero.
        account = await _load_account(session, account_id, lock=False)
        if account is None:
            return 0
        return int(account.credit_balance)

    async def get_account(self, *, session: AsyncSession, account_id: str) -> AccountSnapshot | None:
        account = await _load_account(session, account_id, lock=False)
        if account is None:
            return None
        return AccountSnapshot(
            account_id=account.account_id,
            balance=int(account.credit_balance),
            is_trial_account=bool(account.is_trial_account),
            trial_ends_at=account.trial_ends_at,
            trial_expired=_trial_expired(account, self._time_provider()),
            updated_at=account.updated_at,
        )

    async def list_transactions(
        self,
        *,
        session: AsyncSession,
        account_id: str,
        limit: int | None = None,
        before_id: int | None = None,
    ) -> list[TransactionView]:
        # Newest first; the page size is clamped to the configured maximum.
        max_limit = max(1, int(get_settings().max_transactions_returned))
        page_size = max_limit if limit is None else min(max(1, int(limit)), max_limit)
        query = select(LedgerTransaction).where(LedgerTransaction.account_id == account_id)
        if before_id is not None:
            query = query.where(LedgerTransaction.id < before_id)
        query = query.order_by(LedgerTransaction.id.desc()).limit(page_size)
        result = await session.execute(query)
        return [_to_view(row) for row in result.scalars().all()]


_credit_ledger: CreditLedger | None = None


def get_credit_ledger() -> CreditLedger:
    # Cache the ledger service for reuse across requests.
    global _credit_ledger
    if _credit_ledger is None:
        _credit_ledger = CreditLedger()
    return _credit_ledger


def reset_credit_ledger() -> None:
    # Reset cached services for deterministic tests.
    global _credit_ledger
    _credit_ledger = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _trial_expired(account: AccountBalance, now: datetime) -> bool:
    return bool(account.is_trial_account) and account.trial_ends_at is not None and now > account.trial_ends_at


async def _load_account(session: AsyncSession, account_id: str, *, lock: bool) -> AccountBalance | None:
    # Always refresh from the database so a long-lived session never reads a stale balance.
    query = select(AccountBalance).where(AccountBalance.account_id == account_id)
    if lock:
        query = query.with_for_update()
    result = await session.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def _find_by_external_event(
    session: AsyncSession, account_id: str, external_event_id: str
) -> LedgerTransaction | None:
    result = await session.execute(
        select(LedgerTransaction).where(
            LedgerTransaction.account_id == account_id,
            LedgerTransaction.external_event_id == external_event_id,
        )
    )
    return result.scalars().first()


def _to_view(row: LedgerTransaction) -> TransactionView:
    return TransactionView(
        id=row.id,
        type=row.type,
        amount=int(row.amount),
        balance_after=int(row.balance_after),
        description=row.description,
        feature=row.feature,
        external_event_id=row.external_event_id,
        payment_intent_id=row.payment_intent_id,
        pack_id=row.pack_id,
        created_at=row.created_at,
    )
