"""
Deep-dive diagnostics attached to a compiled decision.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

from ai_cost_controller.storage.models import InferenceEvent

TOP_TENANTS = 3


@dataclass(frozen=True)
class CauseShare:
    cause: str
    share: float


@dataclass(frozen=True)
class RootCauseAnalysis:
    """Retry reasons ranked by share of retried events."""
    top_causes: Tuple[CauseShare, ...]


@dataclass(frozen=True)
class TenantShare:
    tenant_id: str
    share: float


@dataclass(frozen=True)
class BlastRadius:
    """Share of tenants and revenue touched by problematic events."""
    affected_tenants_pct: float
    affected_revenue_pct: float
    top_tenants: Tuple[TenantShare, ...]


def analyze_retry_causes(events: Sequence[InferenceEvent]) -> RootCauseAnalysis:
    """Tally retry reasons among retried events that report one."""
    retried = [e for e in events if e.retries > 0 and e.retry_reason]
    if not retried:
        return RootCauseAnalysis(top_causes=())

    counts = Counter(e.retry_reason for e in retried)
    # Stable sort keeps first-seen order among equal shares
    causes = sorted(
        (CauseShare(cause=cause, share=count / len(retried)) for cause, count in counts.items()),
        key=lambda c: c.share,
        reverse=True,
    )
    return RootCauseAnalysis(top_causes=tuple(causes))


def analyze_blast_radius(
    events: Sequence[InferenceEvent],
    problematic_events: Sequence[InferenceEvent],
) -> BlastRadius:
    """Measure how much of the window a candidate rule would touch.

    Args:
        events: Full window
        problematic_events: Subset of the window matching the driver

    Returns:
        BlastRadius with tenant and revenue shares; zero when the window is
        empty or carries no revenue
    """
    total_revenue = sum(e.cost_usd for e in events)
    affected_revenue = sum(e.cost_usd for e in problematic_events)

    unique_tenants = {e.tenant_id for e in events}
    affected_tenants = {e.tenant_id for e in problematic_events}

    tenant_impact: Dict[str, float] = defaultdict(float)
    for event in problematic_events:
        tenant_impact[event.tenant_id] += event.cost_usd

    denominator = affected_revenue or 1.0
    top_tenants = sorted(
        (TenantShare(tenant_id=tenant, share=cost / denominator) for tenant, cost in tenant_impact.items()),
        key=lambda t: t.share,
        reverse=True,
    )[:TOP_TENANTS]

    return BlastRadius(
        affected_tenants_pct=len(affected_tenants) / len(unique_tenants) if unique_tenants else 0.0,
        affected_revenue_pct=affected_revenue / total_revenue if total_revenue > 0 else 0.0,
        top_tenants=tuple(top_tenants),
    )
