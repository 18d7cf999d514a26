"""
Human approval workflow for compiled decisions.

Approval persists the decision's rule together with its SUCCESS feedback in
one transaction and only then publishes it to the hot path. A failed write
is rolled back, reported to the caller and leaves the live rule set untouched.
"""

import logging
from typing import Optional

from .compiler import DecisionObject
from .runtime import ActiveRuleSet
from ai_cost_controller.storage.models import ActiveRule, DecisionFeedback, DeployState, FeedbackType
from ai_cost_controller.storage.repository import DEFAULT_RISK_SCORE, RuleRepository

logger = logging.getLogger(__name__)


def approve_decision(
    decision: DecisionObject,
    user_id: str,
    repository: RuleRepository,
    rule_set: Optional[ActiveRuleSet] = None,
    deploy_state: DeployState = DeployState.ACTIVE,
    risk_score: float = DEFAULT_RISK_SCORE,
) -> ActiveRule:
    """Deploy the rule embedded in a decision and record the approval.

    Args:
        decision: Decision a human approved
        user_id: Approving user
        repository: Rule store
        rule_set: Live rule set to publish into, if any
        deploy_state: State to deploy the rule in
        risk_score: Risk score attached to the deployed rule

    Returns:
        The persisted ActiveRule

    Raises:
        sqlite3.Error: If persisting the rule or feedback fails
    """
    active = repository.approve_rule(
        user_id,
        decision.rule_generated,
        decision.id,
        deploy_state=deploy_state,
        risk_score=risk_score,
    )
    if rule_set is not None:
        rule_set.add(active)
    logger.info("Decision %s approved by %s as rule %s", decision.id, user_id, active.id)
    return active


def override_decision(
    decision: DecisionObject,
    user_id: str,
    repository: RuleRepository,
    reason: Optional[str] = None,
) -> DecisionFeedback:
    """Record that a human rejected a decision."""
    feedback = repository.log_decision_feedback(user_id, decision.id, FeedbackType.OVERRIDE, reason)
    logger.info("Decision %s overridden by %s", decision.id, user_id)
    return feedback


def revoke_rule(
    user_id: str,
    rule_id: str,
    repository: RuleRepository,
    rule_set: Optional[ActiveRuleSet] = None,
) -> bool:
    """Delete a deployed rule and withdraw it from the hot path.

    Returns:
        True if the rule existed
    """
    deleted = repository.delete_rule(user_id, rule_id)
    if rule_set is not None:
        rule_set.remove(rule_id)
    return deleted
