from __future__ import annotations


class CreditMeterError(Exception):
    """Base error for creditmeter."""


class AccountNotFoundError(CreditMeterError):
    """Ledger operation referenced an account with no balance record."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class InsufficientCreditsError(CreditMeterError):
    """Balance is too low for the requested debit or call."""

    def __init__(self, *, balance: int, required: int) -> None:
        super().__init__(f"Insufficient credits: balance={balance} required={required}")
        self.balance = balance
        self.required = required


class TrialExpiredError(CreditMeterError):
    """Trial window passed at debit time; the trial balance has been zeroed."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Trial expired for account: {account_id}")
        self.account_id = account_id


class RateLimitedError(CreditMeterError):
    """Admission denied by the rate limiter."""

    def __init__(self, reason: str, *, retry_after_s: int | None = None, scope: str = "account") -> None:
        super().__init__(reason)
        self.reason = reason
        self.retry_after_s = retry_after_s
        self.scope = scope


class NoAvailableCredentialError(CreditMeterError):
    """Upstream credential pool is empty, inactive, or over its daily quota."""


class ProviderConfigError(CreditMeterError):
    """Missing or invalid provider configuration."""


class UpstreamProviderError(CreditMeterError):
    """Opaque failure from the external AI provider."""

    def __init__(
        self,
        message: str,
        *,
        kind: str = "unknown",
        credential_index: int | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.credential_index = credential_index
        self.status_code = status_code


class IntegrationUnavailableError(CreditMeterError):
    """External integration is temporarily unavailable (circuit open)."""


class CredentialNotFoundError(CreditMeterError):
    """Credential id is not present in the pool."""


class ConfigurationValidationError(CreditMeterError):
    """Platform configuration update failed validation."""


class PaymentSignatureError(CreditMeterError):
    """Payment webhook signature is missing or does not match."""
