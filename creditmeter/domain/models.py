from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite test runs).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        # SQLite hands back naive values; they were stored as UTC.
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Bind every user to the credit account their API keys act on.
    account_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Persist RBAC role as a simple string for fast lookup and migration safety.
    role: Mapped[str] = mapped_column(String)
    # Gate access for disabled users without deleting historical keys.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    account_id: Mapped[str] = mapped_column(String, index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    # Allow null account_id for platform-wide and pre-auth events.
    account_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    # Metadata is sanitized before write; secrets never land here.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())


class AccountBalance(Base):
    __tablename__ = "account_balances"
    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_account_balances_non_negative"),
    )

    account_id: Mapped[str] = mapped_column(String, primary_key=True)
    credit_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_trial_account: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Compare-and-swap guard; every balance write bumps it.
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())

    __mapper_args__ = {"version_id_col": version}


class LedgerTransaction(Base):
    __tablename__ = "ledger_transactions"
    __table_args__ = (
        # One grant per external payment event and account.
        UniqueConstraint(
            "account_id",
            "external_event_id",
            name="uq_ledger_transactions_external_event",
        ),
        Index("ix_ledger_transactions_account_id_id", "account_id", "id"),
    )

    # Autoincrement id gives the total creation order used for ledger replay.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(
        String, ForeignKey("account_balances.account_id"), nullable=False
    )
    type: Mapped[str] = mapped_column(String, nullable=False)
    # Positive for grants, negative for debits.
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    feature: Mapped[str | None] = mapped_column(String, nullable=True)
    external_event_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String, nullable=True)
    pack_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class UsageRecord(Base):
    __tablename__ = "usage_records"

    # Analytics-only record of one metered upstream call.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, index=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    model_key: Mapped[str] = mapped_column(String)
    feature: Mapped[str] = mapped_column(String)
    input_units: Mapped[int] = mapped_column(Integer)
    output_units: Mapped[int] = mapped_column(Integer)
    context_units: Mapped[int] = mapped_column(Integer)
    cost_basis_usd: Mapped[float] = mapped_column(Numeric(18, 10))
    credits_debited: Mapped[int] = mapped_column(Integer)
    credential_id: Mapped[str | None] = mapped_column(String, nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)


class RateLimitWindow(Base):
    __tablename__ = "rate_limit_windows"

    # account:<id> rows plus a single "global" row.
    scope_key: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    window_start: Mapped[datetime] = mapped_column(UTCDateTime)
    requests_in_window: Mapped[int] = mapped_column(Integer, default=0)
    day_window_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    requests_today: Mapped[int] = mapped_column(Integer, default=0)
    last_request_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class PlatformConfiguration(Base):
    __tablename__ = "platform_configuration"

    # Singleton aggregate; every change goes through a versioned read-modify-write.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    credential_pool: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    rotation_strategy: Mapped[str] = mapped_column(String)
    current_index: Mapped[int] = mapped_column(Integer, default=0)
    rate_limits_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    global_requests_per_minute: Mapped[int] = mapped_column(Integer)
    per_account_requests_per_minute: Mapped[int] = mapped_column(Integer)
    per_account_requests_per_day: Mapped[int] = mapped_column(Integer)
    initial_signup_credits: Mapped[int] = mapped_column(Integer)
    # 0 means unlimited.
    max_credits_per_account: Mapped[int] = mapped_column(Integer, default=0)
    min_balance_for_call: Mapped[int] = mapped_column(Integer)
    profit_margin: Mapped[float] = mapped_column(Numeric(6, 4))
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_by: Mapped[str] = mapped_column(String, default="system")

    __mapper_args__ = {"version_id_col": version}


class ProcessedPaymentEvent(Base):
    __tablename__ = "processed_payment_events"

    # Event-level dedupe for payment webhooks.
    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String)
    account_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String, nullable=True)
    outcome: Mapped[str] = mapped_column(String)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime)
