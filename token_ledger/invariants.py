"""
Account invariants.

Checked on every computed post-state before it is committed. A violation means
the processor produced an impossible account; nothing is written.

- balance equals total_earned minus total_spent (staked funds count as spent
  until released)
- balance, totals and staked_amount are never negative
- staked_amount never exceeds total_spent
- total_earned and the outright spend (total_spent - staked_amount) never
  decrease
"""

from .errors import InvariantViolationError
from .models import Account


def outright_spent(account: Account):
    return account.total_spent - account.staked_amount


def check_invariants(before: Account, after: Account) -> None:
    if after.balance != after.total_earned - after.total_spent:
        raise InvariantViolationError(
            "balance does not match lifetime totals",
            details={"balance": str(after.balance), "total_earned": str(after.total_earned),
                     "total_spent": str(after.total_spent)},
        )
    for field in ("balance", "total_earned", "total_spent", "staked_amount"):
        if getattr(after, field) < 0:
            raise InvariantViolationError(f"{field} would become negative", details={field: str(getattr(after, field))})
    if after.staked_amount > after.total_spent:
        raise InvariantViolationError("staked amount exceeds total spent")
    if after.total_earned < before.total_earned:
        raise InvariantViolationError("total earned would decrease")
    if outright_spent(after) < outright_spent(before):
        raise InvariantViolationError("outright spend would decrease")
