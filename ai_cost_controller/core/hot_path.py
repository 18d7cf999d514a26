"""
Per-request evaluation of deployed rules.

This is the latency-critical path. It is stateless, never performs I/O and
is fail-open: any internal fault results in ALLOW with no overrides, since
blocking traffic on an evaluator bug would itself be an outage.

Rules are evaluated in list order and the first matching active rule wins.
There is no priority field beyond list order. A match returns CONDITIONAL
with the rule's override; BLOCK is returned only for rules whose action is
drop.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from .counterfactual import apply_action, evaluate_condition
from .fields import EventField
from .pricing import DEFAULT_PRICING, PricingTable
from .rules import ACTION_CAP, ACTION_DROP, ACTION_SET, RuleAction
from ai_cost_controller.storage.models import ActiveRule, DeployState, InferenceEvent

logger = logging.getLogger(__name__)


class HotPathDecision(Enum):
    """Verdict returned to the request path."""
    ALLOW = "ALLOW"
    CONDITIONAL = "CONDITIONAL"
    BLOCK = "BLOCK"


@dataclass(frozen=True)
class EngineResponse:
    """Hot-path verdict for one request."""
    decision: HotPathDecision
    latency_overhead_ms: float
    overrides: Dict[str, Any] = field(default_factory=dict)
    rule_id: Optional[str] = None


def _matches(request: Any, rule: ActiveRule) -> bool:
    return evaluate_condition(request, rule.condition)


def evaluate_request(request: Any, active_rules: Sequence[ActiveRule]) -> EngineResponse:
    """Match a request against the active rules.

    Args:
        request: Partial request mapping (field name -> value) or event
        active_rules: Snapshot of deployed rules, in priority order

    Returns:
        EngineResponse. CONDITIONAL carries the matched rule's action as an
        override map; the evaluator does not rescale cost or tokens itself.
        A matched drop action yields BLOCK. Never raises.
    """
    start = time.perf_counter()

    try:
        for rule in active_rules:
            if rule.deploy_state != DeployState.ACTIVE:
                continue
            if not _matches(request, rule):
                continue

            if rule.action.op == ACTION_DROP:
                return EngineResponse(
                    decision=HotPathDecision.BLOCK,
                    rule_id=rule.id,
                    latency_overhead_ms=(time.perf_counter() - start) * 1000,
                )
            return EngineResponse(
                decision=HotPathDecision.CONDITIONAL,
                overrides={rule.action.field.value: rule.action.value},
                rule_id=rule.id,
                latency_overhead_ms=(time.perf_counter() - start) * 1000,
            )

        return EngineResponse(
            decision=HotPathDecision.ALLOW,
            latency_overhead_ms=(time.perf_counter() - start) * 1000,
        )

    except Exception:
        # Fail open: never block traffic because of an evaluator fault
        logger.exception("Hot path evaluation failed; allowing request")
        return EngineResponse(
            decision=HotPathDecision.ALLOW,
            latency_overhead_ms=(time.perf_counter() - start) * 1000,
        )


def enforce_overrides(
    event: InferenceEvent,
    response: EngineResponse,
    pricing: PricingTable = DEFAULT_PRICING,
) -> InferenceEvent:
    """Apply a CONDITIONAL verdict to the request it was computed for.

    Retries overrides only ever lower the retry count; other fields are
    replaced. Cost and tokens are rescaled exactly as in counterfactual
    replay. Events that actually change are tagged with the rule applied.
    """
    if response.decision != HotPathDecision.CONDITIONAL:
        return event

    enforced = event
    for name, value in response.overrides.items():
        target = EventField.parse(name)
        op = ACTION_CAP if target == EventField.RETRIES else ACTION_SET
        enforced = apply_action(enforced, RuleAction(target, op, value), pricing)

    if enforced == event:
        return event
    return replace(
        enforced,
        decision_applied=response.decision.value,
        rule_applied=response.rule_id,
    )
