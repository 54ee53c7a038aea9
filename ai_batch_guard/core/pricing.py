"""
Pricing calculations for image generation.

Handles per-image cost lookups and batch cost estimation.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict, Iterable, Optional

from .items import BatchItem

COST_QUANTUM = Decimal("0.0001")


@dataclass(frozen=True)
class ImagePricing:
    """Per-image pricing for a specific model."""
    cost_per_image: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported image models."""
    prices: Dict[str, ImagePricing]

    def get_pricing(self, model: str) -> ImagePricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ImagePricing for the model

        Raises:
            ValueError: If model is not supported
        """
        if model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model]


# Fixed pricing table - no dynamic fetching
PRICING_TABLE = PricingTable({
    "gpt-image-1": ImagePricing(cost_per_image=Decimal("0.0400")),
    "dall-e-3": ImagePricing(cost_per_image=Decimal("0.0400")),
    "dall-e-2": ImagePricing(cost_per_image=Decimal("0.0200")),
    "gemini-2.5-flash-image": ImagePricing(cost_per_image=Decimal("0.0020")),
})


def unit_price(model: str, override: Optional[float] = None) -> Decimal:
    """Resolve the per-image price, preferring an explicit override."""
    if override is not None:
        return Decimal(str(override))
    return PRICING_TABLE.get_pricing(model).cost_per_image


def image_cost(image_count: int, price: Decimal) -> float:
    """Cost of ``image_count`` images, rounded UP to 4 decimal places."""
    total = Decimal(image_count) * price
    return float(total.quantize(COST_QUANTUM, rounding=ROUND_UP))


def estimate_batch_cost(items: Iterable[BatchItem], price: Decimal) -> float:
    """Pre-flight estimate: every variant of every item is billed.

    Args:
        items: Accepted batch items
        price: Per-image price

    Returns:
        Estimated cost rounded UP to 4 decimal places
    """
    return image_cost(sum(item.variants for item in items), price)
