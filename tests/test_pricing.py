"""
Unit tests for pricing calculations.

Tests rounding behavior, pack unit prices, vendor costs, and error handling.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from fulfillment_engine.core.pricing import PricingTable, to_cents, unit_overage_price
from fulfillment_engine.storage.models import PackPeriod


def _period(price: str, included: dict) -> PackPeriod:
    return PackPeriod(
        id="period-1",
        client_id="client-1",
        pack_id="starter",
        period_key="2024-01",
        starts_at=datetime(2024, 1, 1),
        ends_at=datetime(2024, 2, 1),
        price=Decimal(price),
        included=included,
    )


class TestRounding:
    """Test cent rounding."""

    def test_half_up(self):
        assert to_cents(Decimal("0.125")) == Decimal("0.13")
        assert to_cents(Decimal("0.124")) == Decimal("0.12")

    def test_keeps_two_places(self):
        assert str(to_cents(Decimal("7"))) == "7.00"


class TestUnitOveragePrice:
    """Test the derived per-unit pack price."""

    def test_price_divided_by_total_included(self):
        period = _period("100.00", {"design": 6, "post": 4})
        assert unit_overage_price(period) == Decimal("10.00")

    def test_rounded_to_cents(self):
        period = _period("100.00", {"design": 3})
        assert unit_overage_price(period) == Decimal("33.33")

    def test_empty_pack_raises_error(self):
        period = _period("100.00", {"design": 0})
        with pytest.raises(ValueError, match="includes no services"):
            unit_overage_price(period)


class TestPricingTable:
    """Test pricing table functionality."""

    def test_standalone_price(self, config):
        pricing = PricingTable.from_config(config)
        assert pricing.standalone_price("design") == Decimal("20")
        assert pricing.standalone_price("kit") == Decimal("100")

    def test_unsupported_service_raises_error(self, config):
        pricing = PricingTable.from_config(config)
        with pytest.raises(ValueError, match="Unsupported service: video"):
            pricing.standalone_price("video")

    def test_internal_vendor_can_take_anything(self, config):
        pricing = PricingTable.from_config(config)
        assert not pricing.is_paid_vendor("inhouse")
        assert pricing.can_price_vendor("inhouse", "copy")

    def test_paid_vendor_needs_agreed_cost(self, config):
        pricing = PricingTable.from_config(config)
        assert pricing.can_price_vendor("acme_vendor", "design")
        assert not pricing.can_price_vendor("acme_vendor", "copy")

    def test_vendor_cost_scales_with_quantity(self, config):
        pricing = PricingTable.from_config(config)
        assert pricing.vendor_cost("acme_vendor", "design", 3) == Decimal("27.00")

    def test_no_vendor_cost_for_internal_or_unpriced_work(self, config):
        pricing = PricingTable.from_config(config)
        assert pricing.vendor_cost("inhouse", "design", 1) is None
        assert pricing.vendor_cost("acme_vendor", "copy", 1) is None
        assert pricing.vendor_cost(None, "design", 1) is None
