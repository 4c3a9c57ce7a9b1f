from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class TransactionType(str, Enum):
    EARN = "earn"
    SPEND = "spend"
    STAKE = "stake"
    UNSTAKE = "unstake"


class RejectionReason(str, Enum):
    INVALID_AMOUNT = "invalid_amount"
    INVALID_TRANSACTION_TYPE = "invalid_transaction_type"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    BELOW_MINIMUM_STAKE = "below_minimum_stake"
    EXCEEDS_STAKED_AMOUNT = "exceeds_staked_amount"
    ALREADY_CLAIMED_TODAY = "already_claimed_today"


DAILY_REWARD_SOURCE = "daily_reward"
STAKING_SOURCE = "staking"


class Account(BaseModel):
    """Per-user ledger summary. Replaced wholesale on every accepted transaction."""

    id: UUID
    user_id: str
    balance: Decimal
    total_earned: Decimal
    total_spent: Decimal
    staked_amount: Decimal = Decimal("0")
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(frozen=True, from_attributes=True)


class AccountDelta(BaseModel):
    balance: Decimal = Decimal("0")
    total_earned: Decimal = Decimal("0")
    total_spent: Decimal = Decimal("0")
    staked_amount: Decimal = Decimal("0")

    model_config = ConfigDict(frozen=True)


class Transaction(BaseModel):
    id: UUID
    user_id: str
    transaction_type: TransactionType
    amount: Decimal
    source: str
    description: Optional[str] = None
    reference_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    balance_after: Decimal
    created_at: datetime

    model_config = ConfigDict(frozen=True, from_attributes=True)


class ProposeTransactionRequest(BaseModel):
    transaction_type: str = Field(..., description="One of earn, spend, stake, unstake")
    amount: Decimal
    source: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = None
    reference_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "transaction_type": "stake",
            "amount": 200,
            "source": "staking",
            "description": "Staked 200 VDO tokens",
        }
    })


class StakeRequest(BaseModel):
    amount: Decimal


class ActivityRequest(BaseModel):
    context: dict = Field(default_factory=dict)


class TransactionResult(BaseModel):
    account: Account
    transaction: Transaction
    replayed: bool = False
    message: str


class RecentTransactionsResponse(BaseModel):
    user_id: str
    transactions: list[Transaction]
    limit: int
    balance: Decimal
