import heapq
import threading
from contextlib import contextmanager
from datetime import datetime
from operator import attrgetter
from typing import Callable, Iterator, Optional
from uuid import uuid4

from .errors import AccountNotFoundError
from .invariants import check_invariants
from .logging import get_logger
from .models import Account, AccountDelta, Transaction, TransactionType

log = get_logger(__name__)


class InMemoryStorage:
    """Accounts and ledger entries held in process memory.

    Every user gets its own re-entrant lock; the registry lock is only held while
    a per-user lock is looked up or created, so different users never contend.
    """

    def __init__(self):
        self.accounts: dict[str, Account] = {}
        self.transactions: dict[str, list[Transaction]] = {}
        self.idempotency_index: dict[tuple[str, str], Transaction] = {}
        self._registry_lock = threading.Lock()
        self._account_locks: dict[str, threading.RLock] = {}

    def lock_for(self, user_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._account_locks.get(user_id)
            if lock is None:
                lock = self._account_locks[user_id] = threading.RLock()
            return lock

    @contextmanager
    def unit_of_work(self, user_id: str) -> Iterator[None]:
        """Serialise work on one account and undo every write if the block raises."""
        with self.lock_for(user_id):
            account = self.accounts.get(user_id)
            entry_count = len(self.transactions.get(user_id, ()))
            try:
                yield
            except BaseException:
                self._rollback(user_id, account, entry_count)
                raise

    def _rollback(self, user_id: str, account: Optional[Account], entry_count: int) -> None:
        if account is None:
            self.accounts.pop(user_id, None)
        else:
            self.accounts[user_id] = account
        entries = self.transactions.get(user_id)
        if entries is not None:
            for entry in entries[entry_count:]:
                if entry.idempotency_key:
                    self.idempotency_index.pop((user_id, entry.idempotency_key), None)
            del entries[entry_count:]

    def load_account(self, user_id: str) -> Optional[Account]:
        return self.accounts.get(user_id)

    def insert_account_if_absent(self, account: Account) -> Account:
        return self.accounts.setdefault(account.user_id, account)

    def save_account(self, account: Account) -> None:
        self.accounts[account.user_id] = account

    def append_transaction(self, transaction: Transaction) -> None:
        self.transactions.setdefault(transaction.user_id, []).append(transaction)
        if transaction.idempotency_key:
            self.idempotency_index[(transaction.user_id, transaction.idempotency_key)] = transaction

    def list_transactions(self, user_id: str) -> list[Transaction]:
        return list(self.transactions.get(user_id, ()))

    def find_by_idempotency_key(self, user_id: str, idempotency_key: str) -> Optional[Transaction]:
        return self.idempotency_index.get((user_id, idempotency_key))


class AccountStore:
    def __init__(self, storage: InMemoryStorage, starting_grant, clock: Callable[[], datetime]):
        self.storage = storage
        self.starting_grant = starting_grant
        self.clock = clock

    def get(self, user_id: str) -> Account:
        """Return the user's account, creating it with the starting grant on first access."""
        with self.storage.lock_for(user_id):
            existing = self.storage.load_account(user_id)
            if existing is not None:
                return existing
            now = self.clock()
            account = Account(
                id=uuid4(),
                user_id=user_id,
                balance=self.starting_grant,
                total_earned=self.starting_grant,
                total_spent=0,
                staked_amount=0,
                created_at=now,
                updated_at=now,
            )
            try:
                stored = self.storage.insert_account_if_absent(account)
            except OSError as e:
                log.error("account_creation_failed", user_id=user_id, error=str(e))
                raise AccountNotFoundError(f"Could not create account for {user_id}") from e
            if stored is account:
                log.info("account_created", user_id=user_id, starting_grant=str(self.starting_grant))
            return stored

    def apply(self, user_id: str, delta: AccountDelta, at: Optional[datetime] = None) -> Account:
        with self.storage.lock_for(user_id):
            current = self.get(user_id)
            updated = current.model_copy(update={
                "balance": current.balance + delta.balance,
                "total_earned": current.total_earned + delta.total_earned,
                "total_spent": current.total_spent + delta.total_spent,
                "staked_amount": current.staked_amount + delta.staked_amount,
                "updated_at": at or self.clock(),
            })
            check_invariants(current, updated)
            self.storage.save_account(updated)
            return updated


class RecentTransactions:
    """Newest-first view over a snapshot of one user's ledger.

    Ordering is by created_at descending; entries sharing a timestamp keep
    insertion order. Iterating again replays the same snapshot.
    """

    def __init__(self, entries: list[Transaction], limit: int):
        self._entries = entries
        self.limit = limit

    def __iter__(self) -> Iterator[Transaction]:
        yield from heapq.nlargest(self.limit, self._entries, key=attrgetter("created_at"))

    def __len__(self) -> int:
        return min(self.limit, len(self._entries))


class TransactionLedger:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def append(self, user_id: str, transaction: Transaction) -> None:
        if transaction.user_id != user_id:
            raise ValueError(f"Transaction {transaction.id} does not belong to {user_id}")
        with self.storage.lock_for(user_id):
            self.storage.append_transaction(transaction)

    def recent(self, user_id: str, limit: int = 20) -> RecentTransactions:
        with self.storage.lock_for(user_id):
            return RecentTransactions(self.storage.list_transactions(user_id), limit)

    def latest(
        self,
        user_id: str,
        source: str,
        transaction_type: Optional[TransactionType] = None,
    ) -> Optional[Transaction]:
        with self.storage.lock_for(user_id):
            entries = self.storage.list_transactions(user_id)
        matching = [
            e for e in entries
            if e.source == source and (transaction_type is None or e.transaction_type == transaction_type)
        ]
        return max(matching, key=attrgetter("created_at")) if matching else None

    def find_by_idempotency_key(self, user_id: str, idempotency_key: str) -> Optional[Transaction]:
        with self.storage.lock_for(user_id):
            return self.storage.find_by_idempotency_key(user_id, idempotency_key)
