from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional
from uuid import uuid4

from .errors import (
    AlreadyClaimedTodayError,
    BelowMinimumStakeError,
    ExceedsStakedAmountError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidTransactionTypeError,
    InvariantViolationError,
    StorageUnavailableError,
    TransactionRejectedError,
)
from .logging import get_logger
from .models import (
    DAILY_REWARD_SOURCE,
    Account,
    AccountDelta,
    Transaction,
    TransactionResult,
    TransactionType,
)
from .storage import AccountStore, InMemoryStorage, TransactionLedger

log = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_transaction_type(value: Any) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError:
        raise InvalidTransactionTypeError(details={"transaction_type": str(value)}) from None


def to_scale(amount: Decimal, scale: int) -> Decimal:
    """Quantize to `scale` places; raises InvalidOperation past the context precision."""
    return amount.quantize(Decimal(1).scaleb(-scale))


def parse_amount(value: Any, scale: int = 2) -> Decimal:
    """Coerce to a finite, positive fixed-point Decimal or reject with InvalidAmountError.

    Amounts finer than `scale` decimal places, or with more digits than the
    decimal context holds exactly, are rejected rather than rounded.
    """
    if isinstance(value, bool):
        raise InvalidAmountError(details={"amount": str(value)})
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite() or amount <= 0:
            raise InvalidAmountError(details={"amount": str(value)})
        scaled = to_scale(amount, scale)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmountError(details={"amount": str(value)}) from None
    if scaled != amount:
        raise InvalidAmountError(
            f"Amounts support at most {scale} decimal places",
            details={"amount": str(value)},
        )
    return scaled


def delta_for(transaction_type: TransactionType, amount: Decimal) -> AccountDelta:
    if transaction_type == TransactionType.EARN:
        return AccountDelta(balance=amount, total_earned=amount)
    if transaction_type == TransactionType.SPEND:
        return AccountDelta(balance=-amount, total_spent=amount)
    if transaction_type == TransactionType.STAKE:
        return AccountDelta(balance=-amount, total_spent=amount, staked_amount=amount)
    if transaction_type == TransactionType.UNSTAKE:
        return AccountDelta(balance=amount, total_spent=-amount, staked_amount=-amount)
    raise InvalidTransactionTypeError(details={"transaction_type": str(transaction_type)})


class TransactionProcessor:
    """Single writer for accounts and the ledger.

    A proposal is validated and applied while holding the account's lock, and the
    balance update and ledger append are rolled back together on any failure.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        accounts: AccountStore,
        ledger: TransactionLedger,
        minimum_stake: Decimal = Decimal("100"),
        token_symbol: str = "VDO",
        amount_scale: int = 2,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.accounts = accounts
        self.ledger = ledger
        self.minimum_stake = minimum_stake
        self.token_symbol = token_symbol
        self.amount_scale = amount_scale
        self.clock = clock

    def propose(
        self,
        user_id: str,
        transaction_type: Any,
        amount: Any,
        source: str,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransactionResult:
        try:
            txn_type = parse_transaction_type(transaction_type)
            value = parse_amount(amount, self.amount_scale)
            # lazy creation stands on its own; rolling back a proposal never removes the account
            self.accounts.get(user_id)
            with self.storage.unit_of_work(user_id):
                if idempotency_key:
                    existing = self.ledger.find_by_idempotency_key(user_id, idempotency_key)
                    if existing is not None:
                        if (existing.transaction_type, existing.amount, existing.source) != (txn_type, value, source):
                            raise IdempotencyConflictError(details={
                                "idempotency_key": idempotency_key,
                                "transaction_id": str(existing.id),
                            })
                        log.info("transaction_replayed", user_id=user_id, transaction_id=str(existing.id))
                        return TransactionResult(
                            account=self.accounts.get(user_id),
                            transaction=existing,
                            replayed=True,
                            message="Transaction already applied (idempotent return)",
                        )

                account = self.accounts.get(user_id)
                now = self.clock()
                self._validate(account, txn_type, value, source, now)

                updated = self.accounts.apply(user_id, delta_for(txn_type, value), at=now)
                entry = Transaction(
                    id=uuid4(),
                    user_id=user_id,
                    transaction_type=txn_type,
                    amount=value,
                    source=source,
                    description=description,
                    reference_id=reference_id,
                    idempotency_key=idempotency_key,
                    balance_after=updated.balance,
                    created_at=now,
                )
                self.ledger.append(user_id, entry)
        except TransactionRejectedError as e:
            log.info(
                "transaction_rejected",
                user_id=user_id,
                transaction_type=str(transaction_type),
                amount=str(amount),
                reason=e.reason.value,
            )
            raise
        except IdempotencyConflictError:
            log.warning("idempotency_conflict", user_id=user_id, idempotency_key=idempotency_key)
            raise
        except InvariantViolationError as e:
            log.error(
                "invariant_violation",
                user_id=user_id,
                transaction_type=str(transaction_type),
                amount=str(amount),
                error=e.message,
            )
            raise
        except OSError as e:
            log.error("storage_unavailable", user_id=user_id, error=str(e))
            raise StorageUnavailableError(details={"error": str(e)}) from e

        log.info(
            "transaction_accepted",
            user_id=user_id,
            transaction_id=str(entry.id),
            transaction_type=txn_type.value,
            amount=str(value),
            source=source,
            balance_after=str(updated.balance),
        )
        return TransactionResult(account=updated, transaction=entry, message="Transaction applied successfully")

    def _validate(
        self,
        account: Account,
        transaction_type: TransactionType,
        amount: Decimal,
        source: str,
        now: datetime,
    ) -> None:
        if transaction_type in (TransactionType.SPEND, TransactionType.STAKE) and amount > account.balance:
            raise InsufficientBalanceError(details={"balance": str(account.balance), "amount": str(amount)})

        if transaction_type == TransactionType.STAKE and amount < self.minimum_stake:
            raise BelowMinimumStakeError(
                f"Minimum stake amount is {self.minimum_stake} {self.token_symbol} tokens",
                details={"minimum_stake": str(self.minimum_stake), "amount": str(amount)},
            )

        if transaction_type == TransactionType.UNSTAKE and amount > account.staked_amount:
            raise ExceedsStakedAmountError(
                details={"staked_amount": str(account.staked_amount), "amount": str(amount)}
            )

        if transaction_type == TransactionType.EARN and source == DAILY_REWARD_SOURCE:
            last_claim = self.ledger.latest(account.user_id, DAILY_REWARD_SOURCE, TransactionType.EARN)
            if last_claim is not None and same_reward_window(last_claim.created_at, now):
                raise AlreadyClaimedTodayError(details={"last_claimed_at": last_claim.created_at.isoformat()})


def same_reward_window(claimed_at: datetime, now: datetime) -> bool:
    """Reward windows are UTC calendar days."""
    return claimed_at.astimezone(timezone.utc).date() == now.astimezone(timezone.utc).date()
