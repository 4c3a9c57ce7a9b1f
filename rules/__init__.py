"""
Earning Rules Package

Maps platform activity (logins, learning content, loans, referrals,
redemptions) to token ledger proposals.
"""

from .rule_engine import (
    RuleEngine,
    Rule,
    Condition,
    ConditionGroup,
    Action,
    ConditionOperator,
    LogicalOperator,
    ActionType,
    TriggerEvent,
    create_default_engine,
    create_default_rules,
)

__all__ = [
    "RuleEngine",
    "Rule",
    "Condition",
    "ConditionGroup",
    "Action",
    "ConditionOperator",
    "LogicalOperator",
    "ActionType",
    "TriggerEvent",
    "create_default_engine",
    "create_default_rules",
]
