"""
Data models for storage layer.

Defines the request, pack period, ledger, and vendor payable records owned
by the engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional


class RequestKind(Enum):
    """Kind of fulfillment work."""
    AD_HOC = "ad_hoc"
    BUNDLE = "bundle"


class RequestStatus(Enum):
    """Authoritative status of a request."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    CHANGE_REQUEST = "change_request"
    DELIVERED = "delivered"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.DELIVERED, RequestStatus.CANCELED)


class Role(Enum):
    """Caller roles, highest privilege first."""
    ADMIN = "admin"
    INTERNAL_DESIGNER = "internal_designer"
    VENDOR = "vendor"
    VENDOR_DESIGNER = "vendor_designer"
    CLIENT = "client"


class SourceKind(Enum):
    """What a ledger entry was generated from."""
    SERVICE_REQUEST = "service_request"
    PACK_PERIOD = "pack_period"
    REVERSAL = "reversal"


class PaymentStatus(Enum):
    """Payment state of a ledger entry. Only PENDING -> PAID is allowed."""
    PENDING = "pending"
    PAID = "paid"


@dataclass(frozen=True)
class Actor:
    """Identity and role of whoever invokes an engine operation."""
    user_id: str
    role: Role


@dataclass(frozen=True)
class Request:
    """A unit of fulfillment work.

    Instances are immutable; transitions produce a new instance with a bumped
    version through ``dataclasses.replace``. ``service_id`` names the service
    type for ad-hoc requests and the bundle type for bundle requests.
    """
    id: str
    kind: RequestKind
    client_id: str
    service_id: str
    created_at: datetime
    status: RequestStatus = RequestStatus.PENDING
    quantity: int = 1
    due_at: Optional[datetime] = None
    assignee_id: Optional[str] = None
    vendor_assignee_id: Optional[str] = None
    assigned_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    delivered_by: Optional[str] = None
    vendor_cost: Optional[Decimal] = None
    change_request_count: int = 0
    change_request_note: Optional[str] = None
    version: int = 0

    def __post_init__(self):
        """Validate structural invariants."""
        if self.quantity < 1:
            raise ValueError("quantity must be >= 1")
        if self.change_request_count < 0:
            raise ValueError("change_request_count cannot be negative")
        if (self.delivered_at is not None) != (self.status == RequestStatus.DELIVERED):
            raise ValueError("delivered_at must be set exactly when status is delivered")
        if self.assignee_id is not None and self.vendor_assignee_id is None:
            raise ValueError("an assignee requires a vendor assignee")


@dataclass(frozen=True)
class PackPeriod:
    """One billing month of a client's subscription pack."""
    id: str
    client_id: str
    pack_id: str
    period_key: str
    starts_at: datetime
    ends_at: datetime
    price: Decimal
    included: Dict[str, int] = field(default_factory=dict)
    consumed: Dict[str, int] = field(default_factory=dict)
    closed: bool = False

    @property
    def total_included(self) -> int:
        return sum(self.included.values())

    def remaining(self, service_id: str) -> int:
        """Included quantity still available for a service."""
        return max(0, self.included.get(service_id, 0) - self.consumed.get(service_id, 0))


@dataclass(frozen=True)
class QuotaConsumption:
    """Append-only record of one quota consumption decision."""
    client_id: str
    service_id: str
    period_key: str
    requested_quantity: int
    covered_quantity: int
    overage_quantity: int
    unit_overage_price: Decimal
    overage_amount: Decimal
    recorded_at: datetime
    period_id: Optional[str] = None
    request_id: Optional[str] = None


@dataclass(frozen=True)
class SlaRecord:
    """SLA classification stored for a delivered request."""
    request_id: str
    service_id: str
    actual_hours: Optional[float]
    target_hours: Optional[float]
    on_time: Optional[bool]
    vendor_id: Optional[str] = None


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable payable fact.

    The amount never changes after insertion; corrections are new REVERSAL
    entries. Only ``status`` and ``paid_at`` move, once, from pending to paid.
    """
    id: int
    source_kind: SourceKind
    source_id: str
    client_id: str
    amount: Decimal
    created_at: datetime
    status: PaymentStatus = PaymentStatus.PENDING
    paid_at: Optional[datetime] = None
    period_key: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class VendorPayable:
    """What the platform owes a paid vendor for one delivered request.

    Kept apart from the client ledger: client totals never include vendor
    costs. Like ledger entries, the amount is fixed at insertion and only
    the payment status moves, once, from pending to paid.
    """
    id: int
    request_id: str
    vendor_id: str
    service_id: str
    quantity: int
    amount: Decimal
    created_at: datetime
    status: PaymentStatus = PaymentStatus.PENDING
    paid_at: Optional[datetime] = None
    period_key: Optional[str] = None
