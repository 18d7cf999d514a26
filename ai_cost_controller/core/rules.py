"""
Counterfactual rule schema.

A rule is one condition over an event field plus one action that rewrites
(or drops) the matching event. Rules are immutable value objects shared by
the cold path (replay) and the hot path (live evaluation).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .fields import EventField

# Comparison operators understood by conditions
COMPARISON_OPERATORS = (">", "<", "==", ">=", "<=", "!=", "in")

# Action kinds
ACTION_SET = "set"
ACTION_CAP = "cap"
ACTION_DROP = "drop"
ACTION_OPERATORS = (ACTION_SET, ACTION_CAP, ACTION_DROP)


class RiskLevel(Enum):
    """Coarse risk tier used for rule alternatives and overfit risk."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class RuleCondition:
    """Predicate `<field> <op> <value>` over a single event field.

    The operator is kept as a plain string so that rules loaded from storage
    with an operator this version does not know still evaluate (to False).
    """
    field: EventField
    op: str
    value: Any


@dataclass(frozen=True)
class RuleAction:
    """Rewrite applied to an event matching a rule's condition."""
    field: EventField
    op: str
    value: Any = None


@dataclass(frozen=True)
class CounterfactualRule:
    """Catalog entry pairing a condition with an action."""
    id: str
    description: str
    condition: RuleCondition
    action: RuleAction

    def __post_init__(self):
        if not self.id or not self.id.strip():
            raise ValueError("rule id is required and cannot be empty")
