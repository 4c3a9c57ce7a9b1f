"""
Token Ledger for platform loyalty/utility tokens

This module provides:
- Lazily created per-user accounts with a starting grant
- Immutable, append-only transaction entries (earn, spend, stake, unstake)
- A single-writer processor serialised per account
- Typed rejections that leave state untouched
- Daily reward and staking helpers
"""

from .errors import (
    LedgerServiceError,
    TransactionRejectedError,
    StorageUnavailableError,
)
from .models import (
    Account,
    RejectionReason,
    Transaction,
    TransactionResult,
    TransactionType,
)
from .service import LedgerService

__all__ = [
    "Account",
    "RejectionReason",
    "Transaction",
    "TransactionResult",
    "TransactionType",
    "LedgerService",
    "LedgerServiceError",
    "TransactionRejectedError",
    "StorageUnavailableError",
]
