"""
Data models for storage layer.

Defines telemetry records, deployed rules and decision feedback.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from ai_cost_controller.core.rules import RuleAction, RuleCondition


@dataclass(frozen=True)
class InferenceEvent:
    """Immutable record of a single inference call.

    Events are created by the ingestion side and never modified afterwards.
    Counterfactual transforms produce new events instead.
    """
    timestamp: datetime
    tenant_id: str
    environment: str
    model: str
    prompt_class: str
    tokens_in: int
    tokens_out: int
    latency_ms: float
    retries: int
    success: bool
    cost_usd: float
    retry_reason: Optional[str] = None
    request_id: Optional[str] = None
    decision_id: Optional[str] = None
    decision_applied: Optional[str] = None
    rule_applied: Optional[str] = None

    def __post_init__(self):
        """Validate cost and retry invariants."""
        if self.cost_usd < 0:
            raise ValueError("cost_usd cannot be negative")
        if self.retries < 0:
            raise ValueError("retries cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.tokens_in + self.tokens_out


class DeployState(Enum):
    """Deployment state of an approved rule."""
    ACTIVE = "active"
    SHADOW = "shadow"
    DISABLED = "disabled"


class FeedbackType(Enum):
    """Human action taken on a compiled decision."""
    SUCCESS = "SUCCESS"
    OVERRIDE = "OVERRIDE"


@dataclass(frozen=True)
class ActiveRule:
    """A counterfactual rule that a human approved and persisted."""
    id: str
    rule_id: str
    description: str
    condition: RuleCondition
    action: RuleAction
    deploy_state: DeployState
    risk_score: float
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not 0.0 <= self.risk_score <= 1.0:
            raise ValueError("risk_score must be between 0 and 1")


@dataclass(frozen=True)
class DecisionFeedback:
    """Audit record of a human approving or overriding a decision."""
    decision_id: str
    feedback_type: FeedbackType
    timestamp: datetime
    override_reason: Optional[str] = None
