from typing import Any, Optional

from .models import RejectionReason


class LedgerServiceError(Exception):
    """Base error with a stable code and message for callers to render."""

    code = "LEDGER_ERROR"
    default_message = "Ledger error"

    def __init__(self, message: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


class AccountNotFoundError(LedgerServiceError):
    code = "ACCOUNT_NOT_FOUND"
    default_message = "Account could not be loaded"


class StorageUnavailableError(LedgerServiceError):
    code = "STORAGE_UNAVAILABLE"
    default_message = "Storage is temporarily unavailable"


class InvariantViolationError(LedgerServiceError):
    code = "INVARIANT_VIOLATION"
    default_message = "Account invariants would be violated"


class TransactionRejectedError(LedgerServiceError):
    """A proposal was refused; no account or ledger state changed."""

    reason: RejectionReason

    @property
    def code(self) -> str:
        return self.reason.value


class InvalidAmountError(TransactionRejectedError):
    reason = RejectionReason.INVALID_AMOUNT
    default_message = "Please enter a valid amount"


class InvalidTransactionTypeError(TransactionRejectedError):
    reason = RejectionReason.INVALID_TRANSACTION_TYPE
    default_message = "Unknown transaction type"


class InsufficientBalanceError(TransactionRejectedError):
    reason = RejectionReason.INSUFFICIENT_BALANCE
    default_message = "Insufficient balance"


class BelowMinimumStakeError(TransactionRejectedError):
    reason = RejectionReason.BELOW_MINIMUM_STAKE
    default_message = "Stake amount is below the minimum"


class ExceedsStakedAmountError(TransactionRejectedError):
    reason = RejectionReason.EXCEEDS_STAKED_AMOUNT
    default_message = "Unstake amount exceeds staked tokens"


class AlreadyClaimedTodayError(TransactionRejectedError):
    reason = RejectionReason.ALREADY_CLAIMED_TODAY
    default_message = "Daily reward already claimed today"


class IdempotencyConflictError(LedgerServiceError):
    code = "IDEMPOTENCY_CONFLICT"
    default_message = "Idempotency key was already used for a different transaction"
