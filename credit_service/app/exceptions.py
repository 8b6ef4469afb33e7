from __future__ import annotations


class CreditServiceError(Exception):
    """Base exception for all credit-service errors."""


# -------- Validation (즉시 거절, 재시도 안 함) --------


class CreditValidationError(CreditServiceError):
    """Request rejected before touching storage."""


class InvalidAmountError(CreditValidationError):
    """Amount is not a positive integer."""


class InvalidTransactionTypeError(CreditValidationError):
    """Ledger entry type is not allowed for the requested operation."""


class UserNotFoundError(CreditServiceError):
    """No balance record exists for the user."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"user not found: {user_id}")
        self.user_id = user_id


class JobNotFoundError(CreditServiceError):
    """No generation job exists for the process id."""

    def __init__(self, process_id: str) -> None:
        super().__init__(f"job not found: {process_id}")
        self.process_id = process_id


# -------- Business --------


class InsufficientBalanceError(CreditServiceError):
    """Balance would go below zero."""

    def __init__(self, user_id: str, balance: int, required: int) -> None:
        super().__init__(
            f"insufficient balance for {user_id}: balance={balance} required={required}"
        )
        self.user_id = user_id
        self.balance = balance
        self.required = required


class JobConflictError(CreditServiceError):
    """process_id is already registered for another user or credit amount."""

    def __init__(self, process_id: str, reason: str) -> None:
        super().__init__(f"process_id {process_id} conflicts with an existing job: {reason}")
        self.process_id = process_id


# -------- Idempotent replay (저장소가 발생시키고 서비스가 흡수한다) --------


class DuplicateIdempotencyKeyError(CreditServiceError):
    """Ledger already holds an entry with this idempotency key."""

    def __init__(self, idempotency_key: str | None) -> None:
        super().__init__(f"duplicate idempotency key: {idempotency_key}")
        self.idempotency_key = idempotency_key


class DuplicateRefundError(CreditServiceError):
    """A refund already references this transaction."""

    def __init__(self, related_transaction_ref: str | None) -> None:
        super().__init__(f"refund already exists for {related_transaction_ref}")
        self.related_transaction_ref = related_transaction_ref


class DuplicateTransactionRefError(CreditServiceError):
    """Generated transaction_ref collided with an existing entry."""


class DuplicateJobError(CreditServiceError):
    """A job with this process id already exists."""


# -------- Transient / storage --------


class BalanceConflictError(CreditServiceError):
    """Balance changed between read and conditional write; safe to retry."""


class StorageUnavailableError(CreditServiceError):
    """Storage kept failing after all retry attempts."""


# -------- Billing provider --------


class BillingProviderError(CreditServiceError):
    """Billing provider API call failed."""


class WebhookSignatureError(CreditServiceError):
    """Webhook signature header missing, malformed, stale or wrong."""


class WebhookConfigurationError(CreditServiceError):
    """Webhook secret is not configured."""


class WebhookUserNotFoundError(CreditServiceError):
    """Webhook could not be matched to a user; the provider should redeliver."""
