"""
Pricing calculations and rate management.

Handles standalone service prices, derived pack unit prices, and vendor
costs. All money is Decimal, rounded half-up to cents.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

from fulfillment_engine.config.loader import EngineConfig
from fulfillment_engine.storage.models import PackPeriod

CENTS = Decimal("0.01")


def to_cents(amount: Decimal) -> Decimal:
    """Round an amount to cents."""
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def unit_overage_price(period: PackPeriod) -> Decimal:
    """Per-unit price of a pack: pack price / total included quantity.

    This is the price shown to operators next to each pack, so overage is
    billed at the same rounded figure.

    Raises:
        ValueError: If the pack includes nothing
    """
    total = period.total_included
    if total <= 0:
        raise ValueError(f"Pack period {period.id} includes no services")
    return to_cents(period.price / Decimal(total))


@dataclass(frozen=True)
class PricingTable:
    """Standalone prices and vendor costs for the configured catalog."""
    prices: Dict[str, Decimal]
    vendor_costs: Dict[str, Dict[str, Decimal]]
    internal_vendors: frozenset

    @classmethod
    def from_config(cls, config: EngineConfig) -> "PricingTable":
        return cls(
            prices={sid: svc.price for sid, svc in config.services.items()},
            vendor_costs={vid: dict(v.service_costs) for vid, v in config.vendors.items()},
            internal_vendors=frozenset(vid for vid, v in config.vendors.items() if v.internal),
        )

    def standalone_price(self, service_id: str) -> Decimal:
        """Get the standalone unit price of a service or bundle.

        Raises:
            ValueError: If the service is not supported
        """
        if service_id not in self.prices:
            raise ValueError(f"Unsupported service: {service_id}")
        return self.prices[service_id]

    def is_paid_vendor(self, vendor_id: str) -> bool:
        return vendor_id not in self.internal_vendors

    def can_price_vendor(self, vendor_id: str, service_id: str) -> bool:
        """Whether a vendor may be given this work: internal, or has an agreed cost."""
        if not self.is_paid_vendor(vendor_id):
            return True
        return self.vendor_costs.get(vendor_id, {}).get(service_id, Decimal(0)) > 0

    def vendor_cost(self, vendor_id: Optional[str], service_id: str, quantity: int) -> Optional[Decimal]:
        """What the platform owes a paid vendor for delivered work.

        Returns None for internal work or when no cost is agreed.
        """
        if vendor_id is None or not self.is_paid_vendor(vendor_id):
            return None
        unit_cost = self.vendor_costs.get(vendor_id, {}).get(service_id)
        if unit_cost is None:
            return None
        return to_cents(unit_cost * quantity)
