"""
Assignment balancing across the vendor pool.

Selection is greedy and stateless per call: it recomputes fairness ratios
from the aggregate counts it is handed, so the same pool state always yields
the same choice.

Vendor eligibility, in order:
1. Active, and handles the request kind
2. Can price the service (internal vendors always can)
3. Under its daily assignment capacity
4. Has a designer with open capacity (skipped for vendor-level assignment)
5. Still within its max share of total assigned work after taking the request

Automatic selection also skips vendors that opted out of auto-assignment;
explicit choices (self-assignment, named assignment) do not.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from fulfillment_engine.config.loader import BalancerPolicy, EngineConfig
from fulfillment_engine.storage.models import Request, RequestKind, RequestStatus
from .errors import NoEligibleAssignee
from .pricing import PricingTable


@dataclass(frozen=True)
class DesignerLoad:
    """Open work currently held by one designer."""
    designer_id: str
    open_count: int = 0


@dataclass(frozen=True)
class VendorCandidate:
    """A vendor's standing in the pool at the time of a call."""
    vendor_id: str
    weight: float = 1.0
    assigned_count: int = 0
    active: bool = True
    max_share_percent: Optional[float] = None
    kinds: Tuple[RequestKind, ...] = (RequestKind.AD_HOC, RequestKind.BUNDLE)
    designers: Tuple[DesignerLoad, ...] = ()
    services: Optional[frozenset] = None  # None means any service
    daily_capacity: Optional[int] = None
    assigned_today: int = 0
    max_open_per_designer: Optional[int] = None
    auto_assign: bool = True

    @property
    def ratio(self) -> float:
        return self.assigned_count / self.weight

    def available_designers(self) -> Tuple[DesignerLoad, ...]:
        """Designers still below the per-designer open work limit."""
        if self.max_open_per_designer is None:
            return self.designers
        return tuple(d for d in self.designers if d.open_count < self.max_open_per_designer)


@dataclass(frozen=True)
class BacklogSnapshot:
    """Open work (pending or assigned) and the assigned part of it."""
    open_total: int
    assigned_total: int

    @classmethod
    def from_status_counts(cls, counts: Dict[RequestStatus, int]) -> "BacklogSnapshot":
        assigned = counts.get(RequestStatus.IN_PROGRESS, 0) + counts.get(RequestStatus.CHANGE_REQUEST, 0)
        return cls(open_total=assigned + counts.get(RequestStatus.PENDING, 0), assigned_total=assigned)


@dataclass(frozen=True)
class Assignment:
    """Outcome of a balancer decision. ``assignee_id`` is None for vendor-level work."""
    assignee_id: Optional[str]
    vendor_id: str


def build_pool(
    config: EngineConfig,
    assigned_counts: Dict[str, int],
    open_counts: Dict[str, int],
    pricing: Optional[PricingTable] = None,
    assigned_today: Optional[Dict[str, int]] = None,
) -> List[VendorCandidate]:
    """Combine the configured roster with current aggregate counts.

    Pool order follows configuration order, which is the tie-break order.
    """
    pricing = pricing or PricingTable.from_config(config)
    assigned_today = assigned_today or {}
    pool = []
    for vendor_id, vendor in config.vendors.items():
        if vendor.internal:
            services = None
        else:
            services = frozenset(
                service_id for service_id in config.services
                if pricing.can_price_vendor(vendor_id, service_id)
            )
        pool.append(VendorCandidate(
            vendor_id=vendor_id,
            weight=vendor.weight,
            assigned_count=assigned_counts.get(vendor_id, 0),
            active=vendor.active,
            max_share_percent=vendor.max_share_percent,
            kinds=vendor.kinds,
            designers=tuple(
                DesignerLoad(designer_id, open_counts.get(designer_id, 0))
                for designer_id in vendor.designers
            ),
            services=services,
            daily_capacity=vendor.daily_capacity,
            assigned_today=assigned_today.get(vendor_id, 0),
            max_open_per_designer=vendor.max_open_per_designer,
            auto_assign=vendor.auto_assign,
        ))
    return pool


def _under_cap(candidate: VendorCandidate, total_assigned: int) -> bool:
    """Whether the vendor's share stays within its cap once it takes one more request.

    A vendor with no assigned work is always under its cap; otherwise a pool
    where every vendor is capped below 100% could never hand out its first
    request.
    """
    if candidate.max_share_percent is None or candidate.assigned_count == 0:
        return True
    share = (candidate.assigned_count + 1) / (total_assigned + 1) * 100
    return share <= candidate.max_share_percent


def _ineligibility(
    candidate: VendorCandidate,
    request: Request,
    total_assigned: int,
    need_designer: bool = True,
) -> Optional[str]:
    """Reason a vendor cannot take the request, or None if it can."""
    if not candidate.active:
        return "inactive"
    if request.kind not in candidate.kinds:
        return f"does not handle {request.kind.value} requests"
    if candidate.services is not None and request.service_id not in candidate.services:
        return f"has no agreed cost for {request.service_id}"
    if candidate.daily_capacity is not None and candidate.assigned_today >= candidate.daily_capacity:
        return f"reached its daily capacity of {candidate.daily_capacity}"
    if need_designer:
        if not candidate.designers:
            return "has no designers"
        if not candidate.available_designers():
            return "has no designer with open capacity"
    if not _under_cap(candidate, total_assigned):
        return f"over its {candidate.max_share_percent:g}% share cap"
    return None


def _check_backlog(policy: BalancerPolicy, backlog: Optional[BacklogSnapshot]) -> None:
    # The projection counts the request being assigned, so with a cap below
    # 100% a lone pending request (1 of 1 open) always exceeds it. The cap
    # keeps part of the backlog unassigned; it is not a minimum-backlog rule.
    cap = policy.max_backlog_assigned_percent
    if cap is None or backlog is None or backlog.open_total == 0:
        return
    projected = (backlog.assigned_total + 1) / backlog.open_total * 100
    if projected > cap:
        raise NoEligibleAssignee(
            f"Backlog assignment cap reached: {backlog.assigned_total}/{backlog.open_total} "
            f"assigned, cap {cap:g}%"
        )


def _pick_designer(candidate: VendorCandidate) -> str:
    designers = candidate.available_designers()
    best = designers[0]
    for designer in designers[1:]:
        if designer.open_count < best.open_count:
            best = designer
    return best.designer_id


def _find(vendor_id: str, pool: Sequence[VendorCandidate]) -> VendorCandidate:
    for candidate in pool:
        if candidate.vendor_id == vendor_id:
            return candidate
    raise NoEligibleAssignee(f"Vendor {vendor_id} is not in the assignment pool")


def select_assignee(
    request: Request,
    pool: Sequence[VendorCandidate],
    policy: BalancerPolicy,
    backlog: Optional[BacklogSnapshot] = None,
) -> Assignment:
    """Choose the vendor with the lowest assigned/weight ratio, then its least-loaded designer.

    Ties on either level go to the earlier entry.

    Args:
        request: Request being assigned
        pool: Vendor candidates in tie-break order
        policy: Pool-wide policy
        backlog: Current backlog counts, needed for the backlog cap

    Returns:
        The selected designer and vendor

    Raises:
        NoEligibleAssignee: If no vendor qualifies
    """
    if not pool:
        raise NoEligibleAssignee("Assignment pool is empty")
    if not any(candidate.active for candidate in pool):
        raise NoEligibleAssignee("All vendors in the pool are inactive")
    _check_backlog(policy, backlog)

    total_assigned = sum(candidate.assigned_count for candidate in pool)
    best: Optional[VendorCandidate] = None
    reasons = []
    for candidate in pool:
        if not candidate.auto_assign:
            reason = "is excluded from automatic assignment"
        else:
            reason = _ineligibility(candidate, request, total_assigned)
        if reason is not None:
            reasons.append(f"{candidate.vendor_id} {reason}")
            continue
        if best is None or candidate.ratio < best.ratio:
            best = candidate

    if best is None:
        raise NoEligibleAssignee(f"No eligible vendor for request {request.id}: " + "; ".join(reasons))
    return Assignment(assignee_id=_pick_designer(best), vendor_id=best.vendor_id)


def confirm_capacity(
    vendor_id: str,
    request: Request,
    pool: Sequence[VendorCandidate],
    policy: BalancerPolicy,
    backlog: Optional[BacklogSnapshot] = None,
    designer_id: Optional[str] = None,
    need_designer: bool = True,
) -> VendorCandidate:
    """Check that a pre-chosen vendor, and optionally one of its designers, may take the request.

    ``need_designer=False`` confirms a vendor-level assignment, which leaves
    the choice of designer to later.

    Raises:
        NoEligibleAssignee: If the vendor is unknown or not eligible, or the
            designer is at its open work limit
    """
    _check_backlog(policy, backlog)
    total_assigned = sum(candidate.assigned_count for candidate in pool)
    candidate = _find(vendor_id, pool)
    reason = _ineligibility(candidate, request, total_assigned, need_designer=need_designer)
    if reason is not None:
        raise NoEligibleAssignee(f"Vendor {vendor_id} {reason}")
    if designer_id is not None:
        _confirm_designer(candidate, designer_id)
    return candidate


def select_designer(
    vendor_id: str,
    pool: Sequence[VendorCandidate],
    designer_id: Optional[str] = None,
) -> Assignment:
    """Pick (or confirm) a designer for work the vendor already holds.

    The vendor's share and daily capacity were settled when the work was
    given to it, so only designer capacity is checked here.

    Raises:
        NoEligibleAssignee: If the vendor has no designer with open capacity,
            or the named designer doesn't work for it or is at its limit
    """
    candidate = _find(vendor_id, pool)
    if designer_id is not None:
        _confirm_designer(candidate, designer_id)
        return Assignment(assignee_id=designer_id, vendor_id=vendor_id)
    if not candidate.available_designers():
        raise NoEligibleAssignee(f"Vendor {vendor_id} has no designer with open capacity")
    return Assignment(assignee_id=_pick_designer(candidate), vendor_id=vendor_id)


def _confirm_designer(candidate: VendorCandidate, designer_id: str) -> None:
    for designer in candidate.designers:
        if designer.designer_id != designer_id:
            continue
        limit = candidate.max_open_per_designer
        if limit is not None and designer.open_count >= limit:
            raise NoEligibleAssignee(
                f"Designer {designer_id} already holds {designer.open_count} open requests, limit {limit}"
            )
        return
    raise NoEligibleAssignee(f"Designer {designer_id} does not work for vendor {candidate.vendor_id}")
