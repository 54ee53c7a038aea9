"""
Unit tests for pricing calculations.

Tests cost accuracy, rounding behavior, and error handling.
"""

import pytest
from decimal import Decimal

from ai_batch_guard.core.items import BatchItem
from ai_batch_guard.core.pricing import PRICING_TABLE, estimate_batch_cost, image_cost, unit_price


class TestPricingTable:
    """Test pricing table functionality."""

    def test_get_supported_model(self):
        """Verify pricing retrieval for supported models."""
        assert PRICING_TABLE.get_pricing("gpt-image-1").cost_per_image == Decimal("0.0400")
        assert PRICING_TABLE.get_pricing("dall-e-2").cost_per_image == Decimal("0.0200")

    def test_unsupported_model_raises_error(self):
        """Verify error for unknown models."""
        with pytest.raises(ValueError, match="Unsupported model: unknown-model"):
            PRICING_TABLE.get_pricing("unknown-model")


class TestUnitPrice:

    def test_table_price(self):
        assert unit_price("gemini-2.5-flash-image") == Decimal("0.0020")

    def test_override_wins(self):
        assert unit_price("gpt-image-1", override=0.5) == Decimal("0.5")

    def test_override_allows_unknown_model(self):
        assert unit_price("my-finetune", override=0.01) == Decimal("0.01")


class TestCostCalculation:
    """Test cost calculation accuracy and rounding."""

    def test_exact_cost(self):
        """Three images at $0.04 are exactly $0.12."""
        assert image_cost(3, Decimal("0.04")) == 0.12

    def test_zero_images(self):
        assert image_cost(0, Decimal("0.04")) == 0.0

    def test_rounding_up(self):
        """Sub-cent totals are rounded UP to 4 decimal places."""
        assert image_cost(3, Decimal("0.00001")) == 0.0001
        assert image_cost(1, Decimal("0.00012")) == 0.0002

    def test_estimate_counts_every_variant(self):
        items = [
            BatchItem(scene_id="a", prompt="p", variants=2),
            BatchItem(scene_id="b", prompt="q", variants=3),
        ]
        assert estimate_batch_cost(items, Decimal("0.5")) == 2.5

    def test_estimate_has_no_float_drift(self):
        items = [BatchItem(scene_id=str(i), prompt="p", variants=1) for i in range(10)]
        assert estimate_batch_cost(items, Decimal("0.1")) == 1.0
