"""
Unit Tests for the Token Ledger Service

Tests cover:
1. Lazy account creation and the starting grant
2. Earn, spend, stake and unstake effects
3. Typed rejections and rejection purity
4. Daily reward window
5. Ledger ordering and paging
6. Idempotent proposals
"""

import math
import random
from decimal import Decimal

import pytest

from token_ledger.errors import (
    AlreadyClaimedTodayError,
    BelowMinimumStakeError,
    ExceedsStakedAmountError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidTransactionTypeError,
    TransactionRejectedError,
)
from token_ledger.models import RejectionReason, TransactionType


USER_ID = "550e8400-e29b-41d4-a716-446655440000"
OTHER_USER_ID = "660e8400-e29b-41d4-a716-446655440001"


def snapshot(service, user_id=USER_ID):
    return service.get_account(user_id), service.storage.list_transactions(user_id)


class TestAccountCreation:
    """Tests for lazy account creation."""

    def test_new_account_has_starting_grant(self, service):
        """A first read creates the account with the starting grant."""
        account = service.get_account(USER_ID)

        assert account.user_id == USER_ID
        assert account.balance == Decimal("1000")
        assert account.total_earned == Decimal("1000")
        assert account.total_spent == Decimal("0")
        assert account.staked_amount == Decimal("0")

    def test_repeated_reads_return_same_account(self, service):
        """Reading twice never creates a second account."""
        first = service.get_account(USER_ID)
        second = service.get_account(USER_ID)

        assert first.id == second.id
        assert len(service.storage.accounts) == 1

    def test_starting_grant_is_not_a_ledger_entry(self, service):
        """The grant is reflected in totals only."""
        service.get_account(USER_ID)

        assert list(service.list_recent_transactions(USER_ID)) == []

    def test_starting_grant_is_configurable(self, settings, clock):
        """The grant comes from settings."""
        from token_ledger.service import LedgerService

        settings.starting_grant = Decimal("250")
        service = LedgerService(settings=settings, clock=clock)

        assert service.get_account(USER_ID).balance == Decimal("250")

    def test_starting_grant_is_fixed_point(self, settings, clock):
        """The grant is held at the configured scale like every other amount."""
        from token_ledger.service import LedgerService

        settings.starting_grant = Decimal("250.5")
        account = LedgerService(settings=settings, clock=clock).get_account(USER_ID)

        assert account.balance == Decimal("250.50")
        assert account.balance.as_tuple().exponent == -2
        assert account.total_earned.as_tuple().exponent == -2


class TestEarnAndSpend:
    """Tests for earn and spend effects."""

    def test_earn_daily_reward(self, service):
        """Earning credits balance and lifetime earnings."""
        service.get_account(USER_ID)

        result = service.propose_transaction(USER_ID, "earn", 100, "daily_reward")

        assert result.account.balance == Decimal("1100")
        assert result.account.total_earned == Decimal("1100")
        assert result.account.total_spent == Decimal("0")
        entries = list(service.list_recent_transactions(USER_ID))
        assert len(entries) == 1
        assert entries[0].transaction_type == TransactionType.EARN
        assert entries[0].amount == Decimal("100")
        assert entries[0].balance_after == Decimal("1100")

    def test_spend_debits_balance(self, service):
        """Spending debits balance and adds to total spent."""
        result = service.propose_transaction(USER_ID, TransactionType.SPEND, 200, "purchase", "Priority support")

        assert result.account.balance == Decimal("800")
        assert result.account.total_spent == Decimal("200")
        assert result.account.total_earned == Decimal("1000")
        assert result.transaction.description == "Priority support"

    def test_spend_entire_balance(self, service):
        """Balance may reach exactly zero."""
        result = service.propose_transaction(USER_ID, "spend", 1000, "purchase")

        assert result.account.balance == Decimal("0")

    def test_spend_more_than_balance_rejected(self, service):
        """Overspending is rejected and the balance is untouched."""
        service.propose_transaction(USER_ID, "earn", 100, "daily_reward")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            service.propose_transaction(USER_ID, "spend", 2000, "purchase")

        assert exc_info.value.reason == RejectionReason.INSUFFICIENT_BALANCE
        assert service.get_account(USER_ID).balance == Decimal("1100")

    def test_fractional_amounts(self, service):
        """Amounts are fixed-point decimals."""
        result = service.propose_transaction(USER_ID, "spend", "0.25", "purchase")

        assert result.account.balance == Decimal("999.75")


class TestStaking:
    """Tests for the stake/unstake lifecycle."""

    def test_stake_below_minimum_rejected(self, service):
        """Stakes under the policy minimum are rejected."""
        service.propose_transaction(USER_ID, "earn", 100, "daily_reward")
        before = snapshot(service)

        with pytest.raises(BelowMinimumStakeError) as exc_info:
            service.propose_transaction(USER_ID, "stake", 50, "staking")

        assert exc_info.value.message == "Minimum stake amount is 100 VDO tokens"
        assert snapshot(service) == before

    def test_stake_then_unstake(self, service):
        """Staking locks funds; unstaking releases exactly that lock."""
        service.propose_transaction(USER_ID, "earn", 100, "daily_reward")

        staked = service.stake(USER_ID, 200)
        assert staked.account.balance == Decimal("900")
        assert staked.account.staked_amount == Decimal("200")
        assert staked.account.total_spent == Decimal("200")
        assert staked.transaction.source == "staking"
        assert staked.transaction.description == "Staked 200 VDO tokens"

        released = service.unstake(USER_ID, 200)
        assert released.account.balance == Decimal("1100")
        assert released.account.staked_amount == Decimal("0")
        assert released.account.total_spent == Decimal("0")
        assert released.account.total_earned == Decimal("1100")

    def test_partial_unstake(self, service):
        """Part of a stake may be released."""
        service.stake(USER_ID, 300)

        result = service.unstake(USER_ID, 120)

        assert result.account.staked_amount == Decimal("180")
        assert result.account.balance == Decimal("820")

    def test_unstake_more_than_staked_rejected(self, service):
        """Unstaking beyond the staked amount is rejected."""
        service.stake(USER_ID, 100)

        with pytest.raises(ExceedsStakedAmountError):
            service.unstake(USER_ID, 150)

        assert service.get_account(USER_ID).staked_amount == Decimal("100")

    def test_unstake_without_stake_rejected(self, service):
        """Nothing staked means nothing to release."""
        with pytest.raises(ExceedsStakedAmountError):
            service.unstake(USER_ID, 1)

    def test_stake_more_than_balance_checked_before_minimum(self, service):
        """Balance sufficiency is checked before the minimum stake."""
        service.propose_transaction(USER_ID, "spend", 990, "purchase")

        with pytest.raises(InsufficientBalanceError):
            service.stake(USER_ID, 50)

    def test_minimum_stake_is_configurable(self, settings, clock):
        """The minimum comes from settings."""
        from token_ledger.service import LedgerService

        settings.minimum_stake = Decimal("10")
        service = LedgerService(settings=settings, clock=clock)

        result = service.stake(USER_ID, 50)

        assert result.account.staked_amount == Decimal("50")


class TestValidation:
    """Tests for boundary validation."""

    @pytest.mark.parametrize(
        "amount",
        [
            0, -5, "-0.01", "abc", None, math.nan, math.inf, True, Decimal("NaN"), Decimal("-Infinity"),
            "0.001", "1e-26", "1" * 30, Decimal("12.345"),
        ],
    )
    def test_invalid_amounts_rejected(self, service, amount):
        """Zero, negative, non-finite, non-numeric and sub-cent or oversized amounts are invalid."""
        before = snapshot(service)

        with pytest.raises(InvalidAmountError) as exc_info:
            service.propose_transaction(USER_ID, "earn", amount, "daily_reward")

        assert exc_info.value.reason == RejectionReason.INVALID_AMOUNT
        assert snapshot(service) == before

    def test_invalid_amount_on_new_user_creates_nothing(self, service):
        """Amount validation happens before the account is fetched."""
        with pytest.raises(InvalidAmountError):
            service.propose_transaction(OTHER_USER_ID, "spend", 0, "purchase")

        assert OTHER_USER_ID not in service.storage.accounts

    @pytest.mark.parametrize("amount, expected", [("2.5", "2.50"), ("1.50", "1.50"), (7, "7.00"), (0.1, "0.10")])
    def test_amounts_are_held_to_two_places(self, service, amount, expected):
        """Amounts within the scale are accepted and stored with exactly two places."""
        result = service.propose_transaction(USER_ID, "earn", amount, "content")

        assert str(result.transaction.amount) == expected
        assert result.account.balance == Decimal("1000") + Decimal(expected)

    def test_oversized_amount_leaves_state_unchanged(self, service):
        """An amount the fixed-point context cannot hold exactly is refused before any write."""
        before = snapshot(service)

        with pytest.raises(InvalidAmountError):
            service.propose_transaction(USER_ID, "earn", Decimal("9" * 29), "content")

        assert snapshot(service) == before

    @pytest.mark.parametrize("transaction_type", ["transfer", "EARN", "", None])
    def test_unknown_transaction_type_rejected(self, service, transaction_type):
        """Only earn, spend, stake and unstake are accepted."""
        with pytest.raises(InvalidTransactionTypeError):
            service.propose_transaction(USER_ID, transaction_type, 10, "misc")

    def test_rejections_share_a_base_class(self, service):
        """Callers can catch every rejection at once."""
        with pytest.raises(TransactionRejectedError):
            service.propose_transaction(USER_ID, "spend", 5000, "purchase")


class TestDailyReward:
    """Tests for the once-per-day reward window."""

    def test_claim_daily_reward(self, service):
        """The first claim of the day credits the reward."""
        result = service.claim_daily_reward(USER_ID)

        assert result.account.balance == Decimal("1100")
        assert result.transaction.source == "daily_reward"
        assert result.transaction.description == "Daily login reward"

    def test_second_claim_same_day_rejected(self, service, clock):
        """A second claim in the same UTC day is rejected."""
        service.claim_daily_reward(USER_ID)
        clock.advance(hours=10)

        with pytest.raises(AlreadyClaimedTodayError):
            service.claim_daily_reward(USER_ID)

        assert service.get_account(USER_ID).balance == Decimal("1100")

    def test_claim_again_next_day(self, service, clock):
        """The window resets at UTC midnight."""
        service.claim_daily_reward(USER_ID)
        clock.advance(hours=15)

        result = service.claim_daily_reward(USER_ID)

        assert result.account.balance == Decimal("1200")

    def test_direct_daily_reward_proposal_is_checked(self, service):
        """The window also applies to raw earn proposals with the daily_reward source."""
        service.propose_transaction(USER_ID, "earn", 100, "daily_reward")

        with pytest.raises(AlreadyClaimedTodayError):
            service.propose_transaction(USER_ID, "earn", 100, "daily_reward")

    def test_other_earn_sources_unaffected(self, service):
        """Only daily_reward entries count towards the window."""
        service.claim_daily_reward(USER_ID)

        result = service.propose_transaction(USER_ID, "earn", 500, "referral")

        assert result.account.balance == Decimal("1600")

    def test_non_earn_entries_with_reward_source_do_not_count(self, service):
        """Spends and stakes tagged daily_reward leave the day's claim available."""
        service.propose_transaction(USER_ID, "spend", 10, "daily_reward")
        service.propose_transaction(USER_ID, "stake", 100, "daily_reward")

        result = service.claim_daily_reward(USER_ID)

        assert result.account.balance == Decimal("990")
        assert result.account.total_earned == Decimal("1100")

    def test_windows_are_per_user(self, service):
        """One user's claim does not block another."""
        service.claim_daily_reward(USER_ID)

        result = service.claim_daily_reward(OTHER_USER_ID)

        assert result.account.balance == Decimal("1100")


class TestLedgerOrdering:
    """Tests for recent transaction listing."""

    def test_newest_first(self, service, clock):
        """Entries come back in reverse chronological order."""
        for amount in (10, 20, 30):
            service.propose_transaction(USER_ID, "earn", amount, "content")
            clock.advance(minutes=1)

        amounts = [t.amount for t in service.list_recent_transactions(USER_ID)]

        assert amounts == [Decimal("30"), Decimal("20"), Decimal("10")]

    def test_equal_timestamps_keep_insertion_order(self, service):
        """Entries sharing a timestamp keep insertion order."""
        for amount in (1, 2, 3):
            service.propose_transaction(USER_ID, "earn", amount, "content")

        amounts = [t.amount for t in service.list_recent_transactions(USER_ID)]

        assert amounts == [Decimal("1"), Decimal("2"), Decimal("3")]

    def test_timestamps_non_increasing(self, service, clock):
        """created_at never increases along the page."""
        for i in range(12):
            service.propose_transaction(USER_ID, "earn", 5, "content")
            if i % 3 == 0:
                clock.advance(seconds=30)

        stamps = [t.created_at for t in service.list_recent_transactions(USER_ID)]

        assert all(a >= b for a, b in zip(stamps, stamps[1:]))

    def test_default_page_size(self, service, clock):
        """The default page holds 20 entries."""
        for _ in range(25):
            service.propose_transaction(USER_ID, "earn", 1, "content")
            clock.advance(seconds=1)

        page = service.list_recent_transactions(USER_ID)

        assert len(page) == 20
        assert len(list(page)) == 20

    def test_limit_is_clamped(self, service):
        """Limits are clamped to the configured bounds."""
        for _ in range(3):
            service.propose_transaction(USER_ID, "earn", 1, "content")

        assert len(list(service.list_recent_transactions(USER_ID, limit=0))) == 1
        assert service.list_recent_transactions(USER_ID, limit=10_000).limit == 100

    def test_page_is_restartable_snapshot(self, service, clock):
        """Iterating twice yields the same entries, unaffected by later appends."""
        service.propose_transaction(USER_ID, "earn", 1, "content")
        page = service.list_recent_transactions(USER_ID)
        clock.advance(seconds=1)
        service.propose_transaction(USER_ID, "earn", 2, "content")

        assert list(page) == list(page)
        assert [t.amount for t in page] == [Decimal("1")]

    def test_ledgers_are_per_user(self, service):
        """A user's page never shows another user's entries."""
        service.propose_transaction(USER_ID, "earn", 1, "content")
        service.propose_transaction(OTHER_USER_ID, "earn", 2, "content")

        entries = list(service.list_recent_transactions(USER_ID))

        assert [t.user_id for t in entries] == [USER_ID]


class TestIdempotency:
    """Tests for idempotent proposals."""

    def test_same_key_applies_once(self, service):
        """Replaying a key returns the original entry without reapplying it."""
        first = service.propose_transaction(USER_ID, "earn", 500, "referral", idempotency_key="ref-1")
        second = service.propose_transaction(USER_ID, "earn", 500, "referral", idempotency_key="ref-1")

        assert second.replayed is True
        assert second.transaction.id == first.transaction.id
        assert "already applied" in second.message.lower()
        assert service.get_account(USER_ID).balance == Decimal("1500")

    @pytest.mark.parametrize(
        "transaction_type, amount, source",
        [("spend", 500, "referral"), ("earn", 10, "referral"), ("earn", 500, "content")],
    )
    def test_same_key_with_different_payload_conflicts(self, service, transaction_type, amount, source):
        """Reusing a key for another type, amount or source is refused, not replayed."""
        first = service.propose_transaction(USER_ID, "earn", 500, "referral", idempotency_key="ref-1")

        with pytest.raises(IdempotencyConflictError) as exc_info:
            service.propose_transaction(USER_ID, transaction_type, amount, source, idempotency_key="ref-1")

        assert exc_info.value.details["transaction_id"] == str(first.transaction.id)
        assert service.get_account(USER_ID).balance == Decimal("1500")
        assert len(service.list_recent_transactions(USER_ID)) == 1

    def test_equivalent_amount_replays(self, service):
        """Amounts equal at the fixed scale count as the same payload."""
        first = service.propose_transaction(USER_ID, "earn", 500, "referral", idempotency_key="ref-1")
        second = service.propose_transaction(USER_ID, "earn", "500.00", "referral", idempotency_key="ref-1")

        assert second.replayed is True
        assert second.transaction.id == first.transaction.id

    def test_keys_are_per_user(self, service):
        """The same key for two users applies twice."""
        service.propose_transaction(USER_ID, "earn", 10, "content", idempotency_key="k")
        result = service.propose_transaction(OTHER_USER_ID, "earn", 10, "content", idempotency_key="k")

        assert result.replayed is False

    def test_rejected_proposal_does_not_reserve_key(self, service):
        """A rejected proposal leaves its key free."""
        with pytest.raises(InsufficientBalanceError):
            service.propose_transaction(USER_ID, "spend", 5000, "purchase", idempotency_key="buy-1")
        service.propose_transaction(USER_ID, "earn", 5000, "referral")

        result = service.propose_transaction(USER_ID, "spend", 5000, "purchase", idempotency_key="buy-1")

        assert result.replayed is False
        assert result.account.balance == Decimal("1000")


class TestAccountingInvariant:
    """Randomised sequences keep the totals consistent with the ledger."""

    @pytest.mark.parametrize("seed", [1, 7, 42])
    def test_totals_match_ledger(self, service, clock, seed):
        """Balance, totals and staked amount always agree with the history."""
        rng = random.Random(seed)
        types = ["earn", "spend", "stake", "unstake"]

        for _ in range(200):
            try:
                service.propose_transaction(USER_ID, rng.choice(types), rng.randint(1, 400), "test")
            except TransactionRejectedError:
                pass
            clock.advance(seconds=1)

            account = service.get_account(USER_ID)
            entries = service.storage.list_transactions(USER_ID)
            sums = {t: sum((e.amount for e in entries if e.transaction_type == t), Decimal("0")) for t in TransactionType}

            assert account.balance >= 0
            assert account.balance == account.total_earned - account.total_spent
            assert account.total_earned == Decimal("1000") + sums[TransactionType.EARN]
            assert account.staked_amount == sums[TransactionType.STAKE] - sums[TransactionType.UNSTAKE]
            assert account.total_spent == sums[TransactionType.SPEND] + account.staked_amount
