from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Union, Optional
import json

from token_ledger.errors import TransactionRejectedError
from token_ledger.logging import get_logger
from token_ledger.models import TransactionResult, TransactionType
from token_ledger.service import LedgerService

log = get_logger(__name__)


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    IN = "in"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    EARN_TOKENS = "earn_tokens"
    SPEND_TOKENS = "spend_tokens"
    CLAIM_DAILY_REWARD = "claim_daily_reward"


class TriggerEvent(str, Enum):
    DAILY_LOGIN = "daily_login"
    CONTENT_COMPLETED = "content_completed"
    LOAN_REPAID = "loan_repaid"
    LOAN_FUNDED = "loan_funded"
    REFERRAL_COMPLETED = "referral_completed"
    REDEMPTION_REQUESTED = "redemption_requested"


_ORDERED = {
    ConditionOperator.GREATER_THAN,
    ConditionOperator.GREATER_THAN_OR_EQUAL,
}


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        field_value = self._get_field_value(context, self.field)
        return self._apply_operator(field_value, self.value)

    def _get_field_value(self, context: dict, field_path: str) -> Any:
        value = context
        for part in field_path.split("."):
            if not isinstance(value, dict):
                return None
            value = value.get(part)
        return value

    def _apply_operator(self, field_value: Any, compare_value: Any) -> bool:
        op = self.operator
        # a missing field never satisfies an ordering comparison
        if op in _ORDERED and field_value is None:
            return False
        if op == ConditionOperator.EQUALS: return field_value == compare_value
        if op == ConditionOperator.GREATER_THAN: return field_value > compare_value
        if op == ConditionOperator.GREATER_THAN_OR_EQUAL: return field_value >= compare_value
        if op == ConditionOperator.IN: return field_value in compare_value if compare_value else False
        if op == ConditionOperator.IS_TRUE: return bool(field_value) is True
        if op == ConditionOperator.IS_FALSE: return bool(field_value) is False
        return False

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict) -> "Condition":
        return cls(field=data["field"], operator=ConditionOperator(data["operator"]), value=data.get("value"))


@dataclass
class ConditionGroup:
    operator: LogicalOperator
    conditions: list[Union[Condition, "ConditionGroup"]]

    def evaluate(self, context: dict) -> bool:
        if not self.conditions:
            return True
        results = [cond.evaluate(context) for cond in self.conditions]
        return all(results) if self.operator == LogicalOperator.AND else any(results)

    def to_dict(self) -> dict:
        return {"operator": self.operator.value, "conditions": [c.to_dict() for c in self.conditions]}

    @classmethod
    def from_dict(cls, data: dict) -> "ConditionGroup":
        return cls(
            operator=LogicalOperator(data["operator"]),
            conditions=[_conditions_from_dict(c) for c in data["conditions"]],
        )


def _conditions_from_dict(data: dict) -> Union[Condition, ConditionGroup]:
    if "operator" in data and "conditions" in data:
        return ConditionGroup.from_dict(data)
    return Condition.from_dict(data)


@dataclass
class Action:
    type: ActionType
    params: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type.value, "params": self.params}

    @classmethod
    def from_dict(cls, data: dict) -> "Action":
        return cls(type=ActionType(data["type"]), params=data.get("params", {}))


@dataclass
class Rule:
    id: str
    name: str
    trigger: TriggerEvent
    conditions: Union[Condition, ConditionGroup]
    actions: list[Action]
    description: str = ""
    is_active: bool = True
    priority: int = 0

    def evaluate(self, context: dict) -> bool:
        if not self.is_active:
            return False
        return self.conditions.evaluate(context)

    def to_dict(self) -> dict:
        return {
            "id": self.id, "name": self.name, "description": self.description,
            "is_active": self.is_active, "priority": self.priority,
            "trigger": self.trigger.value, "conditions": self.conditions.to_dict(),
            "actions": [a.to_dict() for a in self.actions],
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: dict) -> "Rule":
        return cls(
            id=data["id"], name=data["name"], description=data.get("description", ""),
            is_active=data.get("is_active", True),
            priority=data.get("priority", 0), trigger=TriggerEvent(data["trigger"]),
            conditions=_conditions_from_dict(data["conditions"]),
            actions=[Action.from_dict(a) for a in data["actions"]],
        )

    @classmethod
    def from_json(cls, text: str) -> "Rule":
        return cls.from_dict(json.loads(text))


class RuleEngine:
    """Turns platform activity into ledger proposals.

    Each matching rule runs its actions in order against the ledger service.
    A rejected proposal is reported in the results and does not stop the
    remaining actions; storage failures propagate.
    """

    def __init__(self, ledger_service: LedgerService):
        self.ledger_service = ledger_service
        self.rules: dict[str, Rule] = {}
        self.action_handlers: dict[ActionType, Callable[[dict, str, dict, Optional[str]], TransactionResult]] = {
            ActionType.EARN_TOKENS: self._handle_earn_tokens,
            ActionType.SPEND_TOKENS: self._handle_spend_tokens,
            ActionType.CLAIM_DAILY_REWARD: self._handle_claim_daily_reward,
        }

    def add_rule(self, rule: Rule) -> None:
        self.rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> None:
        self.rules.pop(rule_id, None)

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self.rules.get(rule_id)

    def list_rules(self, trigger: Optional[TriggerEvent] = None) -> list[Rule]:
        rules = list(self.rules.values())
        if trigger:
            rules = [r for r in rules if r.trigger == trigger]
        rules.sort(key=lambda r: r.priority, reverse=True)
        return rules

    def evaluate(self, trigger: TriggerEvent, context: dict) -> list[Rule]:
        return [rule for rule in self.list_rules(trigger) if rule.evaluate(context)]

    def execute(self, trigger: TriggerEvent, user_id: str, context: dict) -> list[dict]:
        results = []
        base_key = context.get("idempotency_key")
        for rule in self.evaluate(trigger, context):
            rule_result = {"rule_id": rule.id, "rule_name": rule.name, "actions_executed": []}
            for index, action in enumerate(rule.actions):
                handler = self.action_handlers.get(action.type)
                if handler is None:
                    continue
                idempotency_key = f"{base_key}:{rule.id}:{index}" if base_key else None
                try:
                    outcome = handler(action.params, user_id, context, idempotency_key)
                except TransactionRejectedError as e:
                    rule_result["actions_executed"].append({
                        "type": action.type.value, "success": False,
                        "reason": e.reason.value, "error": e.message,
                    })
                    continue
                rule_result["actions_executed"].append({
                    "type": action.type.value, "success": True,
                    "result": {
                        "transaction_id": str(outcome.transaction.id),
                        "amount": str(outcome.transaction.amount),
                        "source": outcome.transaction.source,
                        "balance_after": str(outcome.account.balance),
                        "replayed": outcome.replayed,
                    },
                })
            log.info("rule_executed", rule_id=rule.id, trigger=trigger.value, user_id=user_id)
            results.append(rule_result)
        return results

    def _handle_earn_tokens(self, params: dict, user_id: str, context: dict, idempotency_key: Optional[str]) -> TransactionResult:
        return self.ledger_service.propose_transaction(
            user_id, TransactionType.EARN, params.get("amount"), params.get("source", "activity"),
            description=params.get("description"), reference_id=context.get("reference_id"),
            idempotency_key=idempotency_key,
        )

    def _handle_spend_tokens(self, params: dict, user_id: str, context: dict, idempotency_key: Optional[str]) -> TransactionResult:
        return self.ledger_service.propose_transaction(
            user_id, TransactionType.SPEND, params.get("amount"), params.get("source", "redemption"),
            description=params.get("description"), reference_id=context.get("reference_id"),
            idempotency_key=idempotency_key,
        )

    def _handle_claim_daily_reward(self, params: dict, user_id: str, context: dict, idempotency_key: Optional[str]) -> TransactionResult:
        return self.ledger_service.claim_daily_reward(user_id, idempotency_key=idempotency_key)


def _earn(amount: int, source: str, description: str) -> Action:
    return Action(type=ActionType.EARN_TOKENS, params={"amount": amount, "source": source, "description": description})


def _redeem(item: str, name: str, amount: int, priority: int = 0) -> Rule:
    return Rule(
        id=f"rule-redeem-{item.replace('_', '-')}", name=f"Redeem {name}",
        trigger=TriggerEvent.REDEMPTION_REQUESTED,
        conditions=Condition(field="item", operator=ConditionOperator.EQUALS, value=item),
        actions=[Action(type=ActionType.SPEND_TOKENS, params={"amount": amount, "source": "redemption", "description": name})],
        priority=priority,
    )


def create_default_rules() -> list[Rule]:
    return [
        Rule(
            id="rule-daily-login", name="Daily Login Reward",
            trigger=TriggerEvent.DAILY_LOGIN,
            conditions=ConditionGroup(operator=LogicalOperator.AND, conditions=[]),
            actions=[Action(type=ActionType.CLAIM_DAILY_REWARD)],
            priority=10,
        ),
        Rule(
            id="rule-content-article", name="Learning Article Completed",
            trigger=TriggerEvent.CONTENT_COMPLETED,
            conditions=Condition(field="content.kind", operator=ConditionOperator.EQUALS, value="article"),
            actions=[_earn(25, "content", "Completed learning article")],
        ),
        Rule(
            id="rule-content-media", name="Video or Quiz Completed",
            trigger=TriggerEvent.CONTENT_COMPLETED,
            conditions=Condition(field="content.kind", operator=ConditionOperator.IN, value=["video", "quiz"]),
            actions=[_earn(50, "content", "Completed learning video or quiz")],
        ),
        Rule(
            id="rule-loan-repaid-on-time", name="On-time Loan Repayment",
            trigger=TriggerEvent.LOAN_REPAID,
            conditions=ConditionGroup(operator=LogicalOperator.AND, conditions=[
                Condition(field="loan.role", operator=ConditionOperator.EQUALS, value="borrower"),
                Condition(field="loan.on_time", operator=ConditionOperator.IS_TRUE),
            ]),
            actions=[_earn(150, "loan_repayment", "Loan repaid on time")],
            priority=5,
        ),
        Rule(
            id="rule-loan-repaid", name="Loan Repayment",
            trigger=TriggerEvent.LOAN_REPAID,
            conditions=ConditionGroup(operator=LogicalOperator.AND, conditions=[
                Condition(field="loan.role", operator=ConditionOperator.EQUALS, value="borrower"),
                Condition(field="loan.on_time", operator=ConditionOperator.IS_FALSE),
            ]),
            actions=[_earn(100, "loan_repayment", "Loan repaid")],
        ),
        Rule(
            id="rule-loan-funded", name="Lend to Borrowers",
            trigger=TriggerEvent.LOAN_FUNDED,
            conditions=Condition(field="loan.amount", operator=ConditionOperator.GREATER_THAN, value=0),
            actions=[_earn(50, "lending", "Funded a borrower's loan")],
        ),
        Rule(
            id="rule-referral", name="Successful Referral",
            trigger=TriggerEvent.REFERRAL_COMPLETED,
            conditions=Condition(field="referred.signup_completed", operator=ConditionOperator.IS_TRUE),
            actions=[_earn(500, "referral", "Referred a friend")],
        ),
        _redeem("premium_ai_insights", "Premium AI Insights", 1000),
        _redeem("fee_discount", "Reduced Platform Fees", 500),
        _redeem("priority_support", "Priority Support", 200),
    ]


def create_default_engine(ledger_service: LedgerService) -> RuleEngine:
    engine = RuleEngine(ledger_service)
    for rule in create_default_rules():
        engine.add_rule(rule)
    return engine
