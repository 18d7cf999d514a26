"""
Streaming statistics over a cost stream.

Mean and variance use Welford's one-pass update, which stays numerically
stable for long streams and large-magnitude costs where a naive
sum-of-squares would cancel catastrophically. Quantiles come from a
fixed-size reservoir sample, so memory is bounded by the reservoir
capacity regardless of stream length.
"""

import math
import random
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from ai_cost_controller.storage.models import InferenceEvent

DEFAULT_RESERVOIR_SIZE = 1000


@dataclass(frozen=True)
class DistributionStats:
    """Summary of a cost distribution over one window."""
    count: int
    mean: float
    variance: float
    std_dev: float
    coefficient_of_variation: float
    min: float
    max: float
    p50: float
    p90: float
    p95: float
    p99: float
    tail_mass: float
    instability_index: float


class StreamingStats:
    """Online accumulator of a scalar stream.

    Quantiles are approximate once more values than the reservoir capacity
    have been seen: each item then survives in the reservoir with
    probability capacity/n.
    """

    def __init__(self, reservoir_size: int = DEFAULT_RESERVOIR_SIZE, seed: Optional[int] = None):
        if reservoir_size <= 0:
            raise ValueError("reservoir_size must be > 0")
        self.reservoir_size = reservoir_size
        self.count = 0
        self.mean = 0.0
        self._m2 = 0.0  # Sum of squared deviations from the running mean
        self._min = math.inf
        self._max = -math.inf
        self._reservoir: List[float] = []
        self._rng = random.Random(seed)

    @classmethod
    def from_values(
        cls,
        values: Iterable[float],
        reservoir_size: int = DEFAULT_RESERVOIR_SIZE,
        seed: Optional[int] = None,
    ) -> "StreamingStats":
        """Build an accumulator that has ingested every value in order."""
        stats = cls(reservoir_size=reservoir_size, seed=seed)
        for value in values:
            stats.update(value)
        return stats

    def update(self, value: float) -> None:
        """Ingest one value in O(1) amortized time."""
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self._m2 += delta * (value - self.mean)

        if value < self._min:
            self._min = value
        if value > self._max:
            self._max = value

        if len(self._reservoir) < self.reservoir_size:
            self._reservoir.append(value)
        else:
            j = self._rng.randrange(self.count)
            if j < self.reservoir_size:
                self._reservoir[j] = value

    @property
    def variance(self) -> float:
        """Sample variance; 0 until two values have been seen."""
        if self.count < 2:
            return 0.0
        return self._m2 / (self.count - 1)

    @property
    def std_dev(self) -> float:
        return math.sqrt(self.variance)

    @property
    def min(self) -> float:
        return 0.0 if self.count == 0 else self._min

    @property
    def max(self) -> float:
        return 0.0 if self.count == 0 else self._max

    def quantile(self, q: float) -> float:
        """Estimate the q-quantile (0 <= q <= 1) from the reservoir.

        Uses linear interpolation between adjacent order statistics,
        matching numpy.percentile's default method.
        """
        if q < 0 or q > 1:
            raise ValueError("q must be between 0 and 1")
        if not self._reservoir:
            return 0.0

        sorted_values = sorted(self._reservoir)
        position = q * (len(sorted_values) - 1)
        lower_index = int(position)
        upper_index = min(lower_index + 1, len(sorted_values) - 1)
        fraction = position - lower_index

        lower_value = sorted_values[lower_index]
        upper_value = sorted_values[upper_index]
        return lower_value + fraction * (upper_value - lower_value)

    def snapshot(self, window_events: Sequence[InferenceEvent]) -> DistributionStats:
        """Summarize the accumulated stream against a window of events.

        Tail mass and retry rate are measured over `window_events`; the
        moments and quantiles come from the accumulator itself.
        """
        mean = self.mean
        std_dev = self.std_dev
        cv = std_dev / mean if mean > 0 else 0.0

        threshold = mean + 2 * std_dev
        if window_events:
            tail_count = sum(1 for e in window_events if e.cost_usd > threshold)
            tail_mass = tail_count / len(window_events)
            retry_rate = sum(1 for e in window_events if e.retries > 0) / len(window_events)
        else:
            tail_mass = 0.0
            retry_rate = 0.0

        return DistributionStats(
            count=self.count,
            mean=mean,
            variance=self.variance,
            std_dev=std_dev,
            coefficient_of_variation=cv,
            min=self.min,
            max=self.max,
            p50=self.quantile(0.50),
            p90=self.quantile(0.90),
            p95=self.quantile(0.95),
            p99=self.quantile(0.99),
            tail_mass=tail_mass,
            instability_index=cv * tail_mass * (1 + retry_rate),
        )


def summarize(
    events: Sequence[InferenceEvent],
    reservoir_size: int = DEFAULT_RESERVOIR_SIZE,
    seed: Optional[int] = None,
) -> DistributionStats:
    """Cost distribution of a window, rebuilt from scratch."""
    stats = StreamingStats.from_values(
        (e.cost_usd for e in events), reservoir_size=reservoir_size, seed=seed
    )
    return stats.snapshot(events)
