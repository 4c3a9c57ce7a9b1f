from datetime import datetime
from typing import Any, Callable, Optional

from .config import Settings, get_settings
from .errors import StorageUnavailableError
from .models import (
    DAILY_REWARD_SOURCE,
    STAKING_SOURCE,
    Account,
    TransactionResult,
    TransactionType,
)
from .processor import TransactionProcessor, to_scale, utc_now
from .storage import AccountStore, InMemoryStorage, RecentTransactions, TransactionLedger


class LedgerService:
    """Entry point for callers: account reads, transaction proposals and ledger pages."""

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        self.clock = clock or utc_now
        starting_grant = to_scale(self.settings.starting_grant, self.settings.amount_scale)
        self.accounts = AccountStore(self.storage, starting_grant, self.clock)
        self.ledger = TransactionLedger(self.storage)
        self.processor = TransactionProcessor(
            self.storage,
            self.accounts,
            self.ledger,
            minimum_stake=self.settings.minimum_stake,
            token_symbol=self.settings.token_symbol,
            amount_scale=self.settings.amount_scale,
            clock=self.clock,
        )

    def get_account(self, user_id: str) -> Account:
        try:
            return self.accounts.get(user_id)
        except OSError as e:
            raise StorageUnavailableError(details={"error": str(e)}) from e

    def propose_transaction(
        self,
        user_id: str,
        transaction_type: Any,
        amount: Any,
        source: str,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransactionResult:
        return self.processor.propose(
            user_id,
            transaction_type,
            amount,
            source,
            description=description,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        )

    def list_recent_transactions(self, user_id: str, limit: Optional[int] = None) -> RecentTransactions:
        if limit is None:
            limit = self.settings.default_page_size
        limit = max(1, min(limit, self.settings.max_page_size))
        return self.ledger.recent(user_id, limit)

    def claim_daily_reward(self, user_id: str, idempotency_key: Optional[str] = None) -> TransactionResult:
        return self.propose_transaction(
            user_id,
            TransactionType.EARN,
            self.settings.daily_reward_amount,
            DAILY_REWARD_SOURCE,
            description="Daily login reward",
            idempotency_key=idempotency_key,
        )

    def stake(self, user_id: str, amount: Any, idempotency_key: Optional[str] = None) -> TransactionResult:
        return self.propose_transaction(
            user_id,
            TransactionType.STAKE,
            amount,
            STAKING_SOURCE,
            description=f"Staked {amount} {self.settings.token_symbol} tokens",
            idempotency_key=idempotency_key,
        )

    def unstake(self, user_id: str, amount: Any, idempotency_key: Optional[str] = None) -> TransactionResult:
        return self.propose_transaction(
            user_id,
            TransactionType.UNSTAKE,
            amount,
            STAKING_SOURCE,
            description=f"Unstaked {amount} {self.settings.token_symbol} tokens",
            idempotency_key=idempotency_key,
        )
