"""
Unit tests for assignment balancing.

Selection is pure over the pool it is handed, so these tests build pools
directly instead of going through the database.
"""

from datetime import datetime

import pytest

from fulfillment_engine.config.loader import BalancerPolicy
from fulfillment_engine.core.balancer import (
    Assignment,
    BacklogSnapshot,
    DesignerLoad,
    VendorCandidate,
    build_pool,
    confirm_capacity,
    select_assignee,
    select_designer,
)
from fulfillment_engine.core.errors import NoEligibleAssignee
from fulfillment_engine.storage.models import Request, RequestKind, RequestStatus


def _request(kind: RequestKind = RequestKind.AD_HOC, service_id: str = "design") -> Request:
    return Request(
        id="req-1",
        kind=kind,
        client_id="client-1",
        service_id=service_id,
        created_at=datetime(2024, 1, 1),
    )


def _vendor(vendor_id: str, assigned: int = 0, weight: float = 1.0, **kwargs) -> VendorCandidate:
    designers = kwargs.pop("designers", (DesignerLoad(f"{vendor_id}-d1"),))
    return VendorCandidate(
        vendor_id=vendor_id, weight=weight, assigned_count=assigned, designers=designers, **kwargs
    )


NO_POLICY = BalancerPolicy()


class TestSelection:
    """Test fairness-ratio selection."""

    def test_lowest_ratio_wins(self):
        """Weights 1, 1, 2 with counts 3, 1, 4 give ratios 3, 1, 2."""
        pool = [_vendor("a", 3), _vendor("b", 1), _vendor("c", 4, weight=2)]
        assert select_assignee(_request(), pool, NO_POLICY).vendor_id == "b"

    def test_share_cap_excludes_vendor(self):
        """Taking one more would give vendor b 2/9 = 22% of assigned work, over its 10% cap."""
        pool = [
            _vendor("a", 3),
            _vendor("b", 1, max_share_percent=10),
            _vendor("c", 4, weight=2),
        ]
        assert select_assignee(_request(), pool, NO_POLICY).vendor_id == "c"

    def test_ties_go_to_earlier_vendor(self):
        pool = [_vendor("a", 2), _vendor("b", 2)]
        assert select_assignee(_request(), pool, NO_POLICY).vendor_id == "a"

    def test_deterministic(self):
        pool = [_vendor("a", 5), _vendor("b", 3, weight=3), _vendor("c", 1)]
        first = select_assignee(_request(), pool, NO_POLICY)
        assert all(select_assignee(_request(), pool, NO_POLICY) == first for _ in range(10))

    def test_least_loaded_designer(self):
        pool = [_vendor("a", designers=(
            DesignerLoad("busy", 4), DesignerLoad("idle", 1), DesignerLoad("also-idle", 1),
        ))]
        assert select_assignee(_request(), pool, NO_POLICY).assignee_id == "idle"

    def test_kind_filter(self):
        pool = [_vendor("a", 0, kinds=(RequestKind.AD_HOC,)), _vendor("b", 5)]
        assert select_assignee(_request(RequestKind.BUNDLE), pool, NO_POLICY).vendor_id == "b"

    def test_service_filter(self):
        pool = [_vendor("a", 0, services=frozenset({"post"})), _vendor("b", 5)]
        assert select_assignee(_request(), pool, NO_POLICY).vendor_id == "b"

    def test_inactive_vendor_skipped(self):
        pool = [_vendor("a", 0, active=False), _vendor("b", 5)]
        assert select_assignee(_request(), pool, NO_POLICY).vendor_id == "b"


class TestNoEligibleAssignee:
    """Test the failure cases."""

    def test_empty_pool(self):
        with pytest.raises(NoEligibleAssignee, match="pool is empty"):
            select_assignee(_request(), [], NO_POLICY)

    def test_all_inactive(self):
        pool = [_vendor("a", active=False), _vendor("b", active=False)]
        with pytest.raises(NoEligibleAssignee, match="inactive"):
            select_assignee(_request(), pool, NO_POLICY)

    def test_every_vendor_ineligible(self):
        pool = [_vendor("a", designers=()), _vendor("b", kinds=(RequestKind.BUNDLE,))]
        with pytest.raises(NoEligibleAssignee, match="a has no designers"):
            select_assignee(_request(), pool, NO_POLICY)

    def test_backlog_cap(self):
        policy = BalancerPolicy(max_backlog_assigned_percent=50)
        backlog = BacklogSnapshot(open_total=4, assigned_total=2)
        with pytest.raises(NoEligibleAssignee, match="Backlog assignment cap"):
            select_assignee(_request(), [_vendor("a")], policy, backlog)

    def test_backlog_under_cap(self):
        policy = BalancerPolicy(max_backlog_assigned_percent=75)
        backlog = BacklogSnapshot(open_total=4, assigned_total=2)
        assert select_assignee(_request(), [_vendor("a")], policy, backlog).vendor_id == "a"

    def test_lone_pending_request_under_partial_backlog_cap(self):
        """Assigning the only open request would make the backlog 100% assigned."""
        policy = BalancerPolicy(max_backlog_assigned_percent=90)
        backlog = BacklogSnapshot(open_total=1, assigned_total=0)
        with pytest.raises(NoEligibleAssignee, match="0/1 assigned, cap 90%"):
            select_assignee(_request(), [_vendor("a")], policy, backlog)
        with pytest.raises(NoEligibleAssignee, match="Backlog assignment cap"):
            confirm_capacity("a", _request(), [_vendor("a")], policy, backlog)

    def test_lone_pending_request_with_full_backlog_cap(self):
        backlog = BacklogSnapshot(open_total=1, assigned_total=0)
        policy = BalancerPolicy(max_backlog_assigned_percent=100)
        assert select_assignee(_request(), [_vendor("a")], policy, backlog).vendor_id == "a"


class TestConfirmCapacity:
    """Test capacity checks for self-assignment and named assignment."""

    def test_eligible_vendor(self):
        candidate = confirm_capacity("b", _request(), [_vendor("a"), _vendor("b")], NO_POLICY)
        assert candidate.vendor_id == "b"

    def test_vendor_over_cap(self):
        pool = [_vendor("a", 1), _vendor("b", 3, max_share_percent=50)]
        with pytest.raises(NoEligibleAssignee, match="share cap"):
            confirm_capacity("b", _request(), pool, NO_POLICY)

    def test_unknown_vendor(self):
        with pytest.raises(NoEligibleAssignee, match="not in the assignment pool"):
            confirm_capacity("zzz", _request(), [_vendor("a")], NO_POLICY)


class TestShareCap:
    """Test that the share cap applies to the share after taking the request."""

    def test_cap_counts_the_request_being_assigned(self):
        """b holds 2/4 = 50% now, but would hold 3/5 = 60% after taking one more."""
        pool = [_vendor("a", 2), _vendor("b", 2, weight=3, max_share_percent=50)]
        assert select_assignee(_request(), pool, NO_POLICY).vendor_id == "a"
        with pytest.raises(NoEligibleAssignee, match="over its 50% share cap"):
            confirm_capacity("b", _request(), pool, NO_POLICY)

    def test_landing_exactly_on_cap_is_allowed(self):
        """b would hold 2/4 = 50% after taking one more."""
        pool = [_vendor("a", 2), _vendor("b", 1, max_share_percent=50)]
        assert select_assignee(_request(), pool, NO_POLICY).vendor_id == "b"

    def test_vendor_without_work_is_under_any_cap(self):
        pool = [_vendor("a", max_share_percent=10), _vendor("b", max_share_percent=10)]
        assert select_assignee(_request(), pool, NO_POLICY).vendor_id == "a"


class TestCapacityLimits:
    """Test daily vendor capacity, designer open work limits, and the auto-assign opt-out."""

    def test_vendor_at_daily_capacity_skipped(self):
        pool = [_vendor("a", daily_capacity=2, assigned_today=2), _vendor("b", 5)]
        assert select_assignee(_request(), pool, NO_POLICY).vendor_id == "b"
        with pytest.raises(NoEligibleAssignee, match="reached its daily capacity of 2"):
            confirm_capacity("a", _request(), pool, NO_POLICY)

    def test_vendor_below_daily_capacity(self):
        pool = [_vendor("a", daily_capacity=2, assigned_today=1), _vendor("b", 5)]
        assert select_assignee(_request(), pool, NO_POLICY).vendor_id == "a"

    def test_designers_at_limit_skipped(self):
        full = (DesignerLoad("a-d1", 2), DesignerLoad("a-d2", 2))
        pool = [_vendor("a", designers=full, max_open_per_designer=2), _vendor("b", 5)]
        assert select_assignee(_request(), pool, NO_POLICY).vendor_id == "b"

    def test_only_designers_with_room_are_picked(self):
        pool = [_vendor("a", designers=(DesignerLoad("full", 3), DesignerLoad("room", 2)),
                        max_open_per_designer=3)]
        assert select_assignee(_request(), pool, NO_POLICY).assignee_id == "room"

    def test_vendor_level_confirmation_ignores_designer_load(self):
        pool = [_vendor("a", designers=(DesignerLoad("d", 3),), max_open_per_designer=3)]
        assert confirm_capacity("a", _request(), pool, NO_POLICY, need_designer=False).vendor_id == "a"
        with pytest.raises(NoEligibleAssignee, match="no designer with open capacity"):
            confirm_capacity("a", _request(), pool, NO_POLICY)

    def test_named_designer_at_limit(self):
        pool = [_vendor("a", designers=(DesignerLoad("d1", 1), DesignerLoad("d2", 0)),
                        max_open_per_designer=1)]
        with pytest.raises(NoEligibleAssignee, match="Designer d1 already holds 1 open requests"):
            confirm_capacity("a", _request(), pool, NO_POLICY, designer_id="d1")
        confirm_capacity("a", _request(), pool, NO_POLICY, designer_id="d2")

    def test_auto_assign_opt_out(self):
        pool = [_vendor("a", auto_assign=False), _vendor("b", 5)]
        assert select_assignee(_request(), pool, NO_POLICY).vendor_id == "b"
        assert confirm_capacity("a", _request(), pool, NO_POLICY).vendor_id == "a"

    def test_only_opted_out_vendors(self):
        with pytest.raises(NoEligibleAssignee, match="excluded from automatic assignment"):
            select_assignee(_request(), [_vendor("a", auto_assign=False)], NO_POLICY)


class TestSelectDesigner:
    """Test staffing work a vendor already holds."""

    def test_least_loaded_designer_with_room(self):
        pool = [_vendor("a", designers=(DesignerLoad("full", 2), DesignerLoad("room", 1)),
                        max_open_per_designer=2)]
        assert select_designer("a", pool) == Assignment("room", "a")

    def test_named_designer(self):
        pool = [_vendor("a", designers=(DesignerLoad("d1", 4), DesignerLoad("d2", 0)))]
        assert select_designer("a", pool, "d1") == Assignment("d1", "a")

    def test_named_designer_from_another_vendor(self):
        with pytest.raises(NoEligibleAssignee, match="does not work for vendor a"):
            select_designer("a", [_vendor("a"), _vendor("b")], "b-d1")

    def test_every_designer_full(self):
        pool = [_vendor("a", designers=(DesignerLoad("d1", 1),), max_open_per_designer=1)]
        with pytest.raises(NoEligibleAssignee, match="no designer with open capacity"):
            select_designer("a", pool)

    def test_share_and_daily_capacity_already_settled(self):
        pool = [_vendor("a", 9, max_share_percent=10, daily_capacity=1, assigned_today=1), _vendor("b", 1)]
        assert select_designer("a", pool).vendor_id == "a"


class TestBuildPool:
    """Test combining configuration with live counts."""

    def test_pool_follows_config(self, config):
        pool = build_pool(config, {"acme_vendor": 2}, {"alice": 3})
        assert [c.vendor_id for c in pool] == ["inhouse", "acme_vendor"]
        inhouse, acme = pool
        assert inhouse.services is None
        assert inhouse.designers == (DesignerLoad("alice", 3), DesignerLoad("bob", 0))
        assert acme.assigned_count == 2
        assert acme.services == frozenset({"design", "post", "kit"})

    def test_backlog_from_status_counts(self):
        backlog = BacklogSnapshot.from_status_counts({
            RequestStatus.PENDING: 3,
            RequestStatus.IN_PROGRESS: 2,
            RequestStatus.CHANGE_REQUEST: 1,
            RequestStatus.DELIVERED: 10,
        })
        assert backlog == BacklogSnapshot(open_total=6, assigned_total=3)
