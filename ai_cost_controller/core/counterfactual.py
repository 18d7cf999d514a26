"""
Counterfactual replay of recorded traffic.

This module answers "what would this window have cost under rule X?" by
replaying history through a rule. It is designed to be read-only and
deterministic:

1. Conditions are pure, total predicates (never raise)
2. Actions never mutate an event; they return a new one (or None to drop)
3. The same events and rule always produce the same replayed batch

Determinism matters because the compiler diffs baseline and counterfactual
statistics to measure impact.
"""

import logging
import math
import operator
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .fields import MISSING, EventField
from .pricing import DEFAULT_PRICING, PricingTable
from .rules import (
    ACTION_CAP,
    ACTION_DROP,
    ACTION_SET,
    CounterfactualRule,
    RiskLevel,
    RuleAction,
    RuleCondition,
)
from ai_cost_controller.storage.models import InferenceEvent

logger = logging.getLogger(__name__)


def _as_number(value: Any) -> float:
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, str):
        return float(value)
    raise TypeError(f"not numeric: {value!r}")


def _loose_equals(actual: Any, expected: Any) -> bool:
    """Equality that treats 2, 2.0 and "2" as the same value."""
    if actual == expected:
        return True
    if actual is None or expected is None:
        return False
    try:
        return _as_number(actual) == _as_number(expected)
    except (TypeError, ValueError):
        return str(actual) == str(expected)


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(actual: Any, expected: Any) -> bool:
        if actual is None or expected is None:
            return False
        try:
            return bool(compare(actual, expected))
        except TypeError:
            pass
        try:
            return bool(compare(_as_number(actual), _as_number(expected)))
        except (TypeError, ValueError):
            return False
    return check


def _contained_in(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return False
    if isinstance(expected, (list, tuple, set, frozenset)):
        return any(_loose_equals(actual, item) for item in expected)
    return str(actual) in str(expected)


_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    ">": _ordered(operator.gt),
    "<": _ordered(operator.lt),
    ">=": _ordered(operator.ge),
    "<=": _ordered(operator.le),
    "==": _loose_equals,
    "!=": lambda actual, expected: not _loose_equals(actual, expected),
    "in": _contained_in,
}


def evaluate_condition(record: Any, condition: RuleCondition) -> bool:
    """Evaluate a condition against an event or a partial request mapping.

    Unknown operators, unknown or missing fields and incomparable values
    all evaluate to False.
    """
    comparator = _COMPARATORS.get(condition.op)
    if comparator is None or not isinstance(condition.field, EventField):
        return False

    actual = condition.field.read(record)
    if actual is MISSING:
        return False
    return comparator(actual, condition.value)


def _rescale_executions(event: InferenceEvent, retries: int) -> InferenceEvent:
    # Each retry re-executes the whole request
    ratio = (1 + retries) / (1 + event.retries)
    return replace(
        event,
        retries=retries,
        cost_usd=event.cost_usd * ratio,
        tokens_in=math.floor(event.tokens_in * ratio),
        tokens_out=math.floor(event.tokens_out * ratio),
    )


def _rescale_tokens(event: InferenceEvent, field: EventField, tokens: int) -> InferenceEvent:
    before = event.total_tokens
    updated = replace(event, **{field.value: tokens})
    ratio = updated.total_tokens / before if before > 0 else 1.0
    return replace(updated, cost_usd=event.cost_usd * ratio)


def _reprice_model(event: InferenceEvent, model: str, pricing: PricingTable) -> InferenceEvent:
    if model == event.model:
        return event
    current_rate = pricing.rate_for(event.model)
    ratio = pricing.rate_for(model) / current_rate if current_rate > 0 else 1.0
    return replace(event, model=model, cost_usd=event.cost_usd * ratio)


def _set_field(event: InferenceEvent, action: RuleAction, pricing: PricingTable) -> InferenceEvent:
    field = action.field
    if field == EventField.MODEL:
        return _reprice_model(event, str(action.value), pricing)
    if field == EventField.RETRIES:
        return _rescale_executions(event, int(action.value))
    if field in (EventField.TOKENS_IN, EventField.TOKENS_OUT):
        return _rescale_tokens(event, field, int(action.value))
    return replace(event, **{field.value: action.value})


def _cap_field(event: InferenceEvent, action: RuleAction) -> InferenceEvent:
    field = action.field
    if not field.is_numeric:
        logger.debug("Ignoring cap on non-numeric field %s", field.value)
        return event

    try:
        cap = _as_number(action.value)
    except (TypeError, ValueError):
        logger.debug("Ignoring cap with non-numeric value %r", action.value)
        return event

    if field.read(event) <= cap:
        return event

    if field == EventField.RETRIES:
        return _rescale_executions(event, int(cap))
    if field in (EventField.TOKENS_IN, EventField.TOKENS_OUT):
        return _rescale_tokens(event, field, int(cap))
    return replace(event, **{field.value: cap})


def apply_action(
    event: InferenceEvent,
    action: RuleAction,
    pricing: PricingTable = DEFAULT_PRICING,
) -> Optional[InferenceEvent]:
    """Apply an action to an event.

    Args:
        event: Event matching the rule's condition
        action: Action to apply
        pricing: Rates used when a model switch reprices the event

    Returns:
        A new event with the action applied, the original event if the
        action does not change it, or None if the event is dropped
    """
    if action.op == ACTION_DROP:
        return None
    if action.op == ACTION_CAP:
        return _cap_field(event, action)
    if action.op == ACTION_SET:
        return _set_field(event, action, pricing)

    logger.debug("Unknown action op %r; event passed through", action.op)
    return event


def replay_history(
    events: Sequence[InferenceEvent],
    rule: CounterfactualRule,
    pricing: PricingTable = DEFAULT_PRICING,
) -> List[InferenceEvent]:
    """Replay a window of events under a rule.

    Matching events are replaced by the action's result (or omitted when
    dropped); everything else passes through unchanged, in order.
    """
    result = []
    for event in events:
        if evaluate_condition(event, rule.condition):
            mutated = apply_action(event, rule.action, pricing)
            if mutated is not None:
                result.append(mutated)
        else:
            result.append(event)
    return result


@dataclass(frozen=True)
class ScoredAlternative:
    """Fixed, hand-picked risk tier and score for a catalog rule.

    This is a coarse ranking heuristic, not the result of replaying and
    ranking every candidate.
    """
    rule_id: str
    risk: RiskLevel
    score: float


@dataclass(frozen=True)
class DriverPolicy:
    """How the compiler responds when a dimension drives cost variance."""
    driver: str
    primary: ScoredAlternative
    alternatives: Tuple[ScoredAlternative, ...]
    problem_condition: RuleCondition  # Events counted in the blast radius
    guardrails: Tuple[str, ...]
    latency_impact_ms: float = 0.0


class RuleCatalog:
    """Registry of the counterfactual rules an engine may recommend.

    The compiler only selects from a catalog; it never synthesizes rules.
    Each engine owns its catalog, so independent engines can run side by
    side in one process.
    """

    def __init__(self, rules: Sequence[CounterfactualRule], policies: Sequence[DriverPolicy]):
        self._rules: Dict[str, CounterfactualRule] = {}
        for rule in rules:
            if rule.id in self._rules:
                raise ValueError(f"Duplicate rule id: {rule.id}")
            self._rules[rule.id] = rule

        self._policies: Dict[str, DriverPolicy] = {}
        for policy in policies:
            for scored in (policy.primary,) + tuple(policy.alternatives):
                if scored.rule_id not in self._rules:
                    raise ValueError(
                        f"Policy for '{policy.driver}' references unknown rule: {scored.rule_id}"
                    )
            self._policies[policy.driver] = policy

    @property
    def rules(self) -> Tuple[CounterfactualRule, ...]:
        return tuple(self._rules.values())

    def get_rule(self, rule_id: str) -> CounterfactualRule:
        """Get a rule by id.

        Raises:
            ValueError: If the catalog has no such rule
        """
        if rule_id not in self._rules:
            raise ValueError(f"Unknown rule: {rule_id}")
        return self._rules[rule_id]

    def policy_for(self, driver: str) -> Optional[DriverPolicy]:
        return self._policies.get(driver)


def default_catalog() -> RuleCatalog:
    """Build the stock catalog of retry and routing rules."""
    rules = [
        CounterfactualRule(
            id="cap_retries_1",
            description="Cap Retries at 1",
            condition=RuleCondition(EventField.RETRIES, ">", 1),
            action=RuleAction(EventField.RETRIES, ACTION_CAP, 1),
        ),
        # Approximates "retry only on timeout": anything else gets no retries
        CounterfactualRule(
            id="retry_only_timeout",
            description="Retry only on Timeout",
            condition=RuleCondition(EventField.RETRY_REASON, "!=", "timeout"),
            action=RuleAction(EventField.RETRIES, ACTION_CAP, 0),
        ),
        CounterfactualRule(
            id="downgrade_reporting",
            description='Route "Reporting" to Haiku',
            condition=RuleCondition(EventField.PROMPT_CLASS, "==", "reporting"),
            action=RuleAction(EventField.MODEL, ACTION_SET, "claude-3-haiku"),
        ),
        CounterfactualRule(
            id="downgrade_reporting_gpt35",
            description='Route "Reporting" to GPT-3.5',
            condition=RuleCondition(EventField.PROMPT_CLASS, "==", "reporting"),
            action=RuleAction(EventField.MODEL, ACTION_SET, "gpt-3.5-turbo"),
        ),
    ]
    policies = [
        DriverPolicy(
            driver=EventField.RETRIES.value,
            primary=ScoredAlternative("cap_retries_1", RiskLevel.LOW, 0.92),
            alternatives=(ScoredAlternative("retry_only_timeout", RiskLevel.MEDIUM, 0.74),),
            problem_condition=RuleCondition(EventField.RETRIES, ">", 1),
            guardrails=("error_type != provider_5xx", "success_rate >= 99.2%"),
        ),
        DriverPolicy(
            driver=EventField.PROMPT_CLASS.value,
            primary=ScoredAlternative("downgrade_reporting", RiskLevel.LOW, 0.88),
            alternatives=(ScoredAlternative("downgrade_reporting_gpt35", RiskLevel.MEDIUM, 0.81),),
            problem_condition=RuleCondition(EventField.PROMPT_CLASS, "==", "reporting"),
            guardrails=("latency_p99 < 2000ms", "user_segment != 'enterprise'"),
            latency_impact_ms=-150.0,
        ),
    ]
    return RuleCatalog(rules, policies)
