"""
Pricing calculations and rate management.

Handles per-model token rates used to cost events and to reprice
counterfactual model switches.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict

# Rate applied to models missing from the table when repricing a replay
FALLBACK_COST_PER_1K = Decimal("0.01")

TIERS = ("low", "medium", "high")


@dataclass(frozen=True)
class ModelPricing:
    """Blended per-token pricing and cost tier for a specific model."""
    cost_per_1k: Decimal  # Cost per 1K tokens (input and output)
    tier: str

    def __post_init__(self):
        if self.cost_per_1k < 0:
            raise ValueError("cost_per_1k cannot be negative")
        if self.tier not in TIERS:
            raise ValueError(f"tier must be one of: {list(TIERS)}")


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        if model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model]

    def rate_for(self, model: str) -> float:
        """Cost per 1K tokens, falling back to a flat rate for unknown models."""
        pricing = self.prices.get(model)
        if pricing is None:
            return float(FALLBACK_COST_PER_1K)
        return float(pricing.cost_per_1k)


# Default table - no dynamic fetching
DEFAULT_PRICING = PricingTable({
    "gpt-4": ModelPricing(cost_per_1k=Decimal("0.03"), tier="high"),
    "gpt-4-turbo": ModelPricing(cost_per_1k=Decimal("0.03"), tier="high"),
    "gpt-4o": ModelPricing(cost_per_1k=Decimal("0.015"), tier="high"),
    "claude-3-opus": ModelPricing(cost_per_1k=Decimal("0.075"), tier="high"),
    "gemini-1.5-pro": ModelPricing(cost_per_1k=Decimal("0.007"), tier="medium"),
    "gpt-3.5-turbo": ModelPricing(cost_per_1k=Decimal("0.0015"), tier="low"),
    "claude-3-haiku": ModelPricing(cost_per_1k=Decimal("0.00125"), tier="low"),
    "gemini-1.5-flash": ModelPricing(cost_per_1k=Decimal("0.0007"), tier="low"),
})


def calculate_cost(
    model: str,
    tokens_in: int,
    tokens_out: int,
    retries: int = 0,
    table: PricingTable = DEFAULT_PRICING,
) -> float:
    """Calculate total cost of a call with conservative rounding.

    Every retry re-executes the full request, so cost scales with
    `1 + retries`.

    Args:
        model: Model identifier
        tokens_in: Prompt tokens of one execution
        tokens_out: Completion tokens of one execution
        retries: Number of retries performed
        table: Pricing table to use

    Returns:
        Total cost rounded UP to 6 decimal places

    Raises:
        ValueError: If model is not supported or counts are negative
    """
    if tokens_in < 0 or tokens_out < 0:
        raise ValueError("token counts cannot be negative")
    if retries < 0:
        raise ValueError("retries cannot be negative")

    pricing = table.get_pricing(model)

    tokens = Decimal(tokens_in + tokens_out) * Decimal(1 + retries)
    total_cost = (tokens / Decimal("1000")) * pricing.cost_per_1k
    rounded_cost = total_cost.quantize(Decimal("0.000001"), rounding=ROUND_UP)

    return float(rounded_cost)
