"""Rule evaluation: fold ordered conditions into one verdict.

Conditions are combined strictly left to right with no precedence. The
operator stored on condition ``i - 1`` joins the running result with
condition ``i``; a missing operator means AND. ``a OR b AND c`` therefore
evaluates as ``(a OR b) AND c``.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from recon_matching.logger import get_logger
from recon_matching.models import MatchingRule, RuleStatus
from recon_matching.schemas.rules import (
    Condition,
    LogicalOperator,
    MatchConfiguration,
    match_configuration_adapter,
)
from recon_matching.services.conditions import evaluate_condition
from recon_matching.services.errors import ValidationError

logger = get_logger(__name__)


@dataclass
class ConditionStep:
    """One step of a rule evaluation trace."""

    index: int
    condition: Condition
    passed: bool
    running_result: bool


@dataclass
class RuleExplanation:
    matched: bool
    steps: list[ConditionStep] = field(default_factory=list)

    @property
    def details(self) -> str:
        if not self.steps:
            return "Rule has no conditions"
        passed = sum(1 for step in self.steps if step.passed)
        verdict = "matched" if self.matched else "did not match"
        return f"Rule {verdict} ({passed}/{len(self.steps)} conditions passed)"


def parse_conditions(raw: Iterable[Condition | dict[str, Any]]) -> list[Condition]:
    """Parse stored condition documents into Condition objects."""
    try:
        return [item if isinstance(item, Condition) else Condition.model_validate(item) for item in raw]
    except PydanticValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False)
        raise ValidationError("Invalid rule condition", details={"errors": errors}) from exc


def parse_match_configuration(raw: MatchConfiguration | dict[str, Any]) -> MatchConfiguration:
    """Parse a stored match configuration document."""
    if not isinstance(raw, dict):
        return raw
    try:
        return match_configuration_adapter.validate_python(raw)
    except PydanticValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False)
        raise ValidationError("Invalid match configuration", details={"errors": errors}) from exc


def _combine(running: bool, operator: LogicalOperator | None, passed: bool) -> bool:
    if operator == LogicalOperator.OR:
        return running or passed
    return running and passed


def explain_conditions(conditions: Sequence[Condition], record: Any) -> RuleExplanation:
    """Evaluate conditions and keep the per-condition trace."""
    if not conditions:
        return RuleExplanation(matched=False)

    steps: list[ConditionStep] = []
    running = False
    for index, condition in enumerate(conditions):
        passed = evaluate_condition(condition, record)
        if index == 0:
            running = passed
        else:
            running = _combine(running, conditions[index - 1].logical_operator, passed)
        steps.append(ConditionStep(index=index, condition=condition, passed=passed, running_result=running))
    return RuleExplanation(matched=running, steps=steps)


def evaluate_conditions(conditions: Sequence[Condition], record: Any) -> bool:
    return explain_conditions(conditions, record).matched


def evaluate_rule(rule: MatchingRule, record: Any) -> bool:
    """Return True when the record satisfies the rule's conditions."""
    return evaluate_conditions(parse_conditions(rule.conditions), record)


def explain_rule(rule: MatchingRule, record: Any) -> RuleExplanation:
    return explain_conditions(parse_conditions(rule.conditions), record)


def evaluate_rule_for_group(rule: MatchingRule, records: Sequence[Any]) -> bool:
    """A rule applies to a candidate group when every member satisfies it."""
    if not records:
        return False
    conditions = parse_conditions(rule.conditions)
    return all(evaluate_conditions(conditions, record) for record in records)


def is_rule_live(rule: MatchingRule) -> bool:
    return rule.is_enabled and rule.status == RuleStatus.ACTIVE


def order_rules(rules: Iterable[MatchingRule]) -> list[MatchingRule]:
    """Order rules for application: priority first (lower wins), then rule number."""
    return sorted(rules, key=lambda rule: (rule.priority, rule.rule_number))


def select_applicable_rule(rules: Iterable[MatchingRule], record: Any) -> MatchingRule | None:
    """Pick the first live rule, in application order, that the record satisfies."""
    for rule in order_rules(rule for rule in rules if is_rule_live(rule)):
        try:
            if evaluate_rule(rule, record):
                return rule
        except ValidationError as exc:
            logger.warning(
                "Skipping rule with invalid conditions",
                rule_id=rule.id,
                rule_number=rule.rule_number,
                error=exc.message,
            )
    return None
