from __future__ import annotations

# Re-export credit services for centralized imports.

from creditmeter.services.credits.ledger import (
    AccountSnapshot,
    CreditLedger,
    LedgerResult,
    TransactionView,
    get_credit_ledger,
)
from creditmeter.services.credits.metering import (
    MeteredRequest,
    MeteredResult,
    UsageMeteringOrchestrator,
    estimate_call_cost,
    get_metering_orchestrator,
    safe_parse_json,
)
from creditmeter.services.credits.pricing import (
    CREDIT_PACKS,
    credits_for_cost,
    estimate_required_credits,
    price_per_1k_credits,
    raw_cost_usd,
)

__all__ = [
    "AccountSnapshot",
    "CreditLedger",
    "LedgerResult",
    "TransactionView",
    "get_credit_ledger",
    "MeteredRequest",
    "MeteredResult",
    "UsageMeteringOrchestrator",
    "estimate_call_cost",
    "get_metering_orchestrator",
    "safe_parse_json",
    "CREDIT_PACKS",
    "credits_for_cost",
    "estimate_required_credits",
    "price_per_1k_credits",
    "raw_cost_usd",
]
