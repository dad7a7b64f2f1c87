"""
Pricing calculations and rate management.

Per-model rates used by the usage tracker to cost each call.
"""

from dataclasses import dataclass, field
from decimal import ROUND_UP, Decimal
from typing import Dict, Optional

from .token_counter import TokenUsage

OFFLINE_MODEL = "offline-fallback"

# Costs are kept to a millionth of a dollar, rounded UP (conservative bias)
COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_cost_per_1k: Decimal  # Cost per 1K input tokens
    completion_cost_per_1k: Decimal  # Cost per 1K completion tokens

    def __post_init__(self):
        if self.input_cost_per_1k < 0 or self.completion_cost_per_1k < 0:
            raise ValueError("pricing rates cannot be negative")

    def cost(self, usage: TokenUsage) -> Decimal:
        input_cost = (Decimal(usage.input_tokens) / Decimal("1000")) * self.input_cost_per_1k
        completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * self.completion_cost_per_1k
        return (input_cost + completion_cost).quantize(COST_QUANTUM, rounding=ROUND_UP)


@dataclass
class PricingTable:
    """Registered pricing, keyed by model name."""
    prices: Dict[str, ModelPricing] = field(default_factory=dict)

    def register(self, model: str, pricing: ModelPricing) -> None:
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        self.prices[model] = pricing

    def get(self, model: str) -> Optional[ModelPricing]:
        return self.prices.get(model)

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Raises:
            ValueError: If model is not registered
        """
        if model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model]

    def __contains__(self, model: str) -> bool:
        return model in self.prices


def default_pricing_table() -> PricingTable:
    """Pricing for the models the simulation ships with."""
    return PricingTable({
        "gpt-4": ModelPricing(
            input_cost_per_1k=Decimal("0.03"),
            completion_cost_per_1k=Decimal("0.06"),
        ),
        "gpt-4o-mini": ModelPricing(
            input_cost_per_1k=Decimal("0.00015"),
            completion_cost_per_1k=Decimal("0.0006"),
        ),
        "gpt-3.5-turbo": ModelPricing(
            input_cost_per_1k=Decimal("0.0005"),
            completion_cost_per_1k=Decimal("0.0015"),
        ),
        # Local and offline models are free
        "llama": ModelPricing(Decimal("0"), Decimal("0")),
        OFFLINE_MODEL: ModelPricing(Decimal("0"), Decimal("0")),
    })


def calculate_cost(pricing: ModelPricing, usage: TokenUsage) -> float:
    """Cost of one call in USD.

    cost = input_tokens / 1000 * input_rate + completion_tokens / 1000 * completion_rate
    """
    return float(pricing.cost(usage))
