"""
ANOVA-style attribution of cost variance to categorical dimensions.

Each dimension is scored independently as the share of total variance
explained by its between-group variance. Dimensions are not jointly
orthogonalized, so collinear dimensions (e.g. a prompt class that is also
routed to an expensive model) both receive credit and the fractions can
overlap. The top dimension is a hypothesis to verify by replay, not proof.
"""

from collections import defaultdict
from typing import Dict, List, Sequence

from .fields import EventField
from .stats import StreamingStats
from ai_cost_controller.storage.models import InferenceEvent

NOISE_KEY = "noise"

MIN_EVENTS = 5

DEFAULT_DIMENSIONS = (
    EventField.MODEL,
    EventField.PROMPT_CLASS,
    EventField.RETRIES,
)


def decompose_variance(
    events: Sequence[InferenceEvent],
    dimensions: Sequence[EventField] = DEFAULT_DIMENSIONS,
) -> Dict[str, float]:
    """Attribute the cost variance of a window to each dimension.

    Args:
        events: Window of events
        dimensions: Ordered dimensions to score

    Returns:
        Mapping of dimension name to fraction of variance explained (in
        [0, 1]) plus a "noise" residual, in dimension order. Empty when the
        window has fewer than 5 events or zero variance.
    """
    if len(events) < MIN_EVENTS:
        return {}

    global_stats = StreamingStats.from_values(e.cost_usd for e in events)
    total_variance = global_stats.variance
    if total_variance == 0:
        return {}

    result: Dict[str, float] = {}
    explained = 0.0
    for dimension in dimensions:
        groups: Dict[str, List[float]] = defaultdict(list)
        for event in events:
            groups[str(dimension.read(event))].append(event.cost_usd)

        between = 0.0
        for costs in groups.values():
            group_mean = StreamingStats.from_values(costs).mean
            between += len(costs) * (group_mean - global_stats.mean) ** 2

        fraction = (between / (len(events) - 1)) / total_variance
        fraction = min(max(fraction, 0.0), 1.0)
        result[dimension.value] = fraction
        explained += fraction

    result[NOISE_KEY] = max(0.0, 1.0 - explained)
    return result
