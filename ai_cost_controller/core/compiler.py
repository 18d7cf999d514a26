"""
Decision compilation.

Fuses streaming statistics, variance attribution and counterfactual replay
over a window into an auditable, confidence-scored decision object.

Compilation order:
1. Baseline distribution of the window
2. Variance decomposition and driver selection
3. Primary and alternative catalog rules for the driver
4. Counterfactual replay of the primary rule and impact measurement
5. Alternative ranking (fixed scores)
6. Confidence and overfit risk
7. Retry root causes
8. Blast radius
9. Decision state
10. Cost of inaction

Every comparison runs on unrounded values; rounding is applied only to the
fields of the emitted decision.
"""

import logging
import re
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .counterfactual import (
    DriverPolicy,
    RuleCatalog,
    default_catalog,
    evaluate_condition,
    replay_history,
)
from .diagnostics import (
    BlastRadius,
    RootCauseAnalysis,
    analyze_blast_radius,
    analyze_retry_causes,
)
from .pricing import DEFAULT_PRICING, PricingTable
from .rules import CounterfactualRule, RiskLevel
from .stats import DEFAULT_RESERVOIR_SIZE, DistributionStats, summarize
from .variance import NOISE_KEY, decompose_variance
from ai_cost_controller.storage.models import InferenceEvent

logger = logging.getLogger(__name__)

# Rationale strings
REASON_LOW_CONFIDENCE = "Confidence below threshold; gathering more evidence"
REASON_BLAST_RADIUS = "Blast radius exceeds revenue threshold; human review required"
REASON_TAIL_MASS = "Elevated tail mass in cost distribution"
REASON_UPSTREAM_5XX = "Retry causes include upstream 5xx errors"
REASON_OVERFIT = "Overfit risk is not low"

NOTE_UNIFORM = "Impact uniform across distribution."
NOTE_TAIL_CONCENTRATED = "Savings concentrated in extreme tail (>p99); p95 unaffected."
NOTE_OUTLIER_WEIGHTED = "Major volatility reduction; impact weighted on outliers."

NOISE_CONTEXT_DETERMINISTIC = "Deterministic constraint detected (noise < 2%)."

# p95 movement below this is treated as "did not move"
P95_EPSILON = 0.0001
OUTLIER_VARIANCE_REDUCTION = 0.4
DETERMINISTIC_NOISE = 0.02
SUSPICIOUS_MODEL_FIT = 0.98

_UPSTREAM_5XX = re.compile(r"^(upstream|provider)_5(\d\d|xx)$")


class DecisionState(Enum):
    """Outcome of a compilation cycle."""
    INSUFFICIENT_EVIDENCE = "INSUFFICIENT_EVIDENCE"
    HOLD = "HOLD"
    CONDITIONAL = "CONDITIONAL"


@dataclass(frozen=True)
class CompilerConfig:
    """Thresholds and business assumptions used by the compiler."""
    min_window_size: int = 50
    target_window_size: int = 200
    reservoir_size: int = DEFAULT_RESERVOIR_SIZE
    confidence_threshold: float = 0.6
    hold_revenue_share: float = 0.5
    tail_mass_alert: float = 0.05
    monthly_volume: int = 1_000_000
    monthly_burn_usd: float = 15_000.0
    seed: Optional[int] = 0

    def __post_init__(self):
        """Validate sizes are positive and shares are fractions."""
        if self.min_window_size <= 0:
            raise ValueError("min_window_size must be > 0")
        if self.target_window_size <= 0:
            raise ValueError("target_window_size must be > 0")
        if self.reservoir_size <= 0:
            raise ValueError("reservoir_size must be > 0")
        if self.monthly_volume <= 0:
            raise ValueError("monthly_volume must be > 0")
        if self.monthly_burn_usd <= 0:
            raise ValueError("monthly_burn_usd must be > 0")
        for name in ("confidence_threshold", "hold_revenue_share", "tail_mass_alert"):
            if not 0.0 <= getattr(self, name) <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")


@dataclass(frozen=True)
class ConfidenceMetrics:
    data_coverage_pct: float
    effect_stability: float
    sample_size: int
    model_fit_r2: float
    final_score: float
    overfit_risk: RiskLevel


@dataclass(frozen=True)
class RecommendedAction:
    action: str
    only_if: Tuple[str, ...]


@dataclass(frozen=True)
class AlternativeAction:
    rule_id: str
    action: str
    risk: RiskLevel
    score: float


@dataclass(frozen=True)
class ExpectedImpact:
    unit: str
    mean_savings_usd: float
    p95_savings_usd: float
    monthly_projection_usd: float
    variance_reduction_pct: float
    distribution_notes: str


@dataclass(frozen=True)
class InactionCost:
    expected_monthly_loss_usd: float
    tail_event_probability: float
    runway_impact_days: float


@dataclass(frozen=True)
class RiskDelta:
    tail_risk_delta: float
    latency_impact_ms: float


@dataclass(frozen=True)
class CounterfactualComparison:
    baseline_cost: float
    simulated_cost: float


@dataclass(frozen=True)
class Proof:
    variance_decomposition: Dict[str, float]
    counterfactual_comparison: CounterfactualComparison
    noise_context: Optional[str] = None


@dataclass(frozen=True)
class ReversibilityPlan:
    rollback_time_minutes: int = 2
    monitor_metric: str = "p99_latency"
    abort_threshold: float = 2000.0


@dataclass(frozen=True)
class DecisionObject:
    """Compiled, auditable recommendation. Immutable once created."""
    id: str
    created_at: datetime
    issue: str
    root_cause: str
    driver: str
    decision_state: DecisionState
    rationale: Tuple[str, ...]
    confidence: ConfidenceMetrics
    recommended_action: RecommendedAction
    alternative_actions: Tuple[AlternativeAction, ...]
    rule_generated: CounterfactualRule
    expected_impact: ExpectedImpact
    inaction_cost: InactionCost
    risk: RiskDelta
    proof: Proof
    analysis_deep_dive: RootCauseAnalysis
    blast_radius: BlastRadius
    reversibility: ReversibilityPlan

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe representation (enums as values, datetimes as ISO)."""
        return asdict(self, dict_factory=_json_safe_dict)


def _json_safe(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, tuple):
        return [_json_safe(v) for v in value]
    return value


def _json_safe_dict(items: List[Tuple[str, Any]]) -> Dict[str, Any]:
    return {key: _json_safe(value) for key, value in items}


def select_driver(variance_map: Dict[str, float]) -> Optional[str]:
    """Pick the non-noise dimension explaining the most variance.

    Ties keep the earliest dimension in iteration order.
    """
    driver = None
    max_contribution = 0.0
    for key, value in variance_map.items():
        if key != NOISE_KEY and value > max_contribution:
            max_contribution = value
            driver = key
    return driver


def assess_overfit_risk(sample_size: int, model_fit: float) -> RiskLevel:
    """Overfit risk from sample size, escalated by a suspiciously perfect fit."""
    if sample_size < 100:
        risk = RiskLevel.HIGH
    elif sample_size < 300:
        risk = RiskLevel.MEDIUM
    else:
        risk = RiskLevel.LOW
    if model_fit > SUSPICIOUS_MODEL_FIT and risk == RiskLevel.LOW:
        risk = RiskLevel.MEDIUM
    return risk


def _distribution_notes(mean_savings: float, p95_reduction: float, variance_reduction: float) -> str:
    if mean_savings > 0 and p95_reduction <= P95_EPSILON:
        return NOTE_TAIL_CONCENTRATED
    if variance_reduction > OUTLIER_VARIANCE_REDUCTION:
        return NOTE_OUTLIER_WEIGHTED
    return NOTE_UNIFORM


def _rank_alternatives(policy: DriverPolicy, catalog: RuleCatalog) -> Tuple[AlternativeAction, ...]:
    ranked = sorted(
        (policy.primary,) + tuple(policy.alternatives),
        key=lambda scored: scored.score,
        reverse=True,
    )
    return tuple(
        AlternativeAction(
            rule_id=scored.rule_id,
            action=catalog.get_rule(scored.rule_id).description,
            risk=scored.risk,
            score=scored.score,
        )
        for scored in ranked
    )


class DecisionCompiler:
    """Compiles a window of telemetry into a decision object.

    The compiler is stateless between calls: every compilation rebuilds all
    statistics from the window it is given.
    """

    def __init__(
        self,
        catalog: Optional[RuleCatalog] = None,
        config: Optional[CompilerConfig] = None,
        pricing: PricingTable = DEFAULT_PRICING,
    ):
        self.catalog = catalog if catalog is not None else default_catalog()
        self.config = config if config is not None else CompilerConfig()
        self.pricing = pricing

    def compile(self, window: Sequence[InferenceEvent]) -> Optional[DecisionObject]:
        """Compile a decision for the window.

        Args:
            window: Most recent events, oldest first

        Returns:
            DecisionObject, or None when the window is below the significance
            floor or no catalog rule targets the dominant driver
        """
        config = self.config
        if len(window) < config.min_window_size:
            logger.debug(
                "Window of %d events below floor of %d; skipping compile",
                len(window), config.min_window_size,
            )
            return None

        # 1. Baseline
        baseline = summarize(window, reservoir_size=config.reservoir_size, seed=config.seed)

        # 2. Driver
        variance_map = decompose_variance(window)
        driver = select_driver(variance_map)
        if driver is None:
            logger.debug("No variance driver found in window of %d events", len(window))
            return None

        # 3. Rule selection
        policy = self.catalog.policy_for(driver)
        if policy is None:
            logger.info("No catalog rule targets driver '%s'; skipping compile", driver)
            return None
        rule = self.catalog.get_rule(policy.primary.rule_id)

        # 4. Counterfactual impact
        replayed = replay_history(window, rule, self.pricing)
        counterfactual = summarize(replayed, reservoir_size=config.reservoir_size, seed=config.seed)

        mean_savings = baseline.mean - counterfactual.mean
        p95_reduction = baseline.p95 - counterfactual.p95
        if baseline.variance > 0:
            variance_reduction = (baseline.variance - counterfactual.variance) / baseline.variance
        else:
            variance_reduction = 0.0
        notes = _distribution_notes(mean_savings, p95_reduction, variance_reduction)

        # 5. Alternatives
        alternatives = _rank_alternatives(policy, self.catalog)

        # 6. Confidence
        noise = variance_map.get(NOISE_KEY, 0.0)
        data_coverage = min(len(window) / config.target_window_size, 1.0)
        effect_stability = 1.0 - min(baseline.coefficient_of_variation, 0.5)
        model_fit = 1.0 - noise
        confidence = 0.3 * data_coverage + 0.2 * effect_stability + 0.5 * model_fit
        overfit_risk = assess_overfit_risk(len(window), model_fit)

        # 7. Root causes
        retry_analysis = analyze_retry_causes(window)

        # 8. Blast radius
        problematic = [e for e in window if evaluate_condition(e, policy.problem_condition)]
        blast_radius = analyze_blast_radius(window, problematic)

        # 9. State
        state, rationale = self._assign_state(
            confidence, blast_radius, baseline, retry_analysis, overfit_risk
        )

        # 10. Inaction
        monthly_loss = mean_savings * config.monthly_volume
        inaction_cost = InactionCost(
            expected_monthly_loss_usd=round(monthly_loss, 2),
            tail_event_probability=round(baseline.tail_mass, 4),
            runway_impact_days=round(monthly_loss / config.monthly_burn_usd * 30, 2),
        )

        decision = DecisionObject(
            id=uuid.uuid4().hex,
            created_at=datetime.now(),
            issue=f"High cost volatility driven by {driver}",
            root_cause=f"{driver} explains {variance_map[driver] * 100:.1f}% of variance",
            driver=driver,
            decision_state=state,
            rationale=rationale,
            confidence=ConfidenceMetrics(
                data_coverage_pct=round(data_coverage, 2),
                effect_stability=round(effect_stability, 2),
                sample_size=len(window),
                model_fit_r2=round(model_fit, 2),
                final_score=round(confidence, 3),
                overfit_risk=overfit_risk,
            ),
            recommended_action=RecommendedAction(action=rule.description, only_if=policy.guardrails),
            alternative_actions=alternatives,
            rule_generated=rule,
            expected_impact=ExpectedImpact(
                unit="per_1k_requests",
                mean_savings_usd=round(mean_savings * 1000, 2),
                p95_savings_usd=round(p95_reduction * 1000, 2),
                monthly_projection_usd=round(monthly_loss, 0),
                variance_reduction_pct=round(variance_reduction * 100, 1),
                distribution_notes=notes,
            ),
            inaction_cost=inaction_cost,
            risk=RiskDelta(
                tail_risk_delta=round(baseline.tail_mass - counterfactual.tail_mass, 4),
                latency_impact_ms=policy.latency_impact_ms,
            ),
            proof=Proof(
                variance_decomposition={k: round(v, 4) for k, v in variance_map.items()},
                counterfactual_comparison=CounterfactualComparison(
                    baseline_cost=round(baseline.mean * len(window), 2),
                    simulated_cost=round(counterfactual.mean * len(replayed), 2),
                ),
                noise_context=NOISE_CONTEXT_DETERMINISTIC if noise < DETERMINISTIC_NOISE else None,
            ),
            analysis_deep_dive=retry_analysis,
            blast_radius=blast_radius,
            reversibility=ReversibilityPlan(),
        )
        logger.info(
            "Compiled decision %s: state=%s driver=%s confidence=%.3f",
            decision.id, state.value, driver, confidence,
        )
        return decision

    def _assign_state(
        self,
        confidence: float,
        blast_radius: BlastRadius,
        baseline: DistributionStats,
        retry_analysis: RootCauseAnalysis,
        overfit_risk: RiskLevel,
    ) -> Tuple[DecisionState, Tuple[str, ...]]:
        config = self.config
        rationale: List[str] = []

        if confidence < config.confidence_threshold:
            state = DecisionState.INSUFFICIENT_EVIDENCE
            rationale.append(REASON_LOW_CONFIDENCE)
        elif blast_radius.affected_revenue_pct > config.hold_revenue_share:
            state = DecisionState.HOLD
            rationale.append(REASON_BLAST_RADIUS)
        else:
            state = DecisionState.CONDITIONAL

        if baseline.tail_mass > config.tail_mass_alert:
            rationale.append(REASON_TAIL_MASS)
        if any(_UPSTREAM_5XX.match(c.cause) for c in retry_analysis.top_causes):
            rationale.append(REASON_UPSTREAM_5XX)
        if overfit_risk != RiskLevel.LOW:
            rationale.append(REASON_OVERFIT)

        return state, tuple(rationale)
