"""
Request lifecycle state machine.

The authoritative status model for fulfillment requests and the engine's
entry point. Every operation takes the caller's identity explicitly.

States:
    pending -> in_progress            take / assign
    in_progress -> in_progress        take / assign, vendor-level work only
    in_progress -> delivered          deliver
    in_progress -> change_request     request_change
    change_request -> in_progress     resume
    pending|in_progress|change_request -> canceled   cancel

Work can be given to a vendor organization without naming a designer. It
is in progress from then on, and one of that vendor's designers later takes
it (or is assigned to it) without a second pass through the balancer.

Delivered and canceled are terminal. Re-entrant transitions are rejected,
never ignored, so the ledger stays append-only.

Locking order for a transition:
1. Per-request lock
2. Quota lock for (client, month, service), delivery only
3. Database write lock (one transaction for all side effects)

Timestamps are stored as naive billing-timezone wall-clock time; aware
inputs are converted on the way in.
"""

import uuid
from contextlib import ExitStack
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from fulfillment_engine.config.loader import EngineConfig
from fulfillment_engine.logging_config import actor_context
from fulfillment_engine.storage.db import DEFAULT_DB_PATH, get_connection, transaction
from fulfillment_engine.storage.models import (
    Actor,
    Request,
    RequestKind,
    RequestStatus,
    Role,
    SlaRecord,
)
from fulfillment_engine.storage.repository import RequestRepository, SlaRepository
from .balancer import (
    Assignment,
    BacklogSnapshot,
    build_pool,
    confirm_capacity,
    select_assignee,
    select_designer,
)
from .billing import BillingLedger, entry_created
from .errors import InvalidTransition, NoEligibleAssignee, NotPermitted, VersionConflict
from .events import Assigned, Canceled, ChangeRequested, Delivered, EventBus, Resumed
from .identity import ASSIGNABLE_ROLES, ConfigRoleProvider, RoleProvider
from .locks import KeyedLockManager
from .payables import VendorPayables, payable_recorded
from .pricing import PricingTable
from .quota import QuotaLedger, period_key_for, to_billing_time
from .sla import SlaEvaluation, SlaEvaluator, SlaSummary, summarize

logger = structlog.get_logger(__name__)

ALLOWED_FROM: Dict[str, Tuple[RequestStatus, ...]] = {
    "take": (RequestStatus.PENDING, RequestStatus.IN_PROGRESS),
    "assign": (RequestStatus.PENDING, RequestStatus.IN_PROGRESS),
    "deliver": (RequestStatus.IN_PROGRESS,),
    "request_change": (RequestStatus.IN_PROGRESS,),
    "resume": (RequestStatus.CHANGE_REQUEST,),
    "cancel": (RequestStatus.PENDING, RequestStatus.IN_PROGRESS, RequestStatus.CHANGE_REQUEST),
}

Apply = Callable[[Request, object], Tuple[Request, List[object]]]


@dataclass(frozen=True)
class TransitionResult:
    """New authoritative state of the request plus the events it produced."""
    request: Request
    events: Tuple[object, ...] = ()


class RequestLifecycle:
    """Applies lifecycle transitions and their side effects atomically."""

    def __init__(
        self,
        config: EngineConfig,
        db_path: str = DEFAULT_DB_PATH,
        role_provider: Optional[RoleProvider] = None,
        event_bus: Optional[EventBus] = None,
        locks: Optional[KeyedLockManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.db_path = db_path
        self.role_provider = role_provider or ConfigRoleProvider(config)
        self.event_bus = event_bus or EventBus()
        self.locks = locks if locks is not None else KeyedLockManager(config.lock_timeout_seconds)
        self.clock = clock or (lambda: datetime.now(config.timezone))
        self.pricing = PricingTable.from_config(config)
        self.ledger = BillingLedger(db_path, self.event_bus, config.lock_timeout_seconds)
        self.payables = VendorPayables(db_path, self.event_bus, config.lock_timeout_seconds)
        self.quota = QuotaLedger(
            config,
            db_path,
            locks=self.locks,
            ledger=self.ledger,
            event_bus=self.event_bus,
            pricing=self.pricing,
        )
        self.sla = SlaEvaluator(config)

    # Read-only projections

    def get_request(self, request_id: str) -> Request:
        """Current state of a request.

        Raises:
            KeyError: If the request doesn't exist
        """
        conn = get_connection(self.db_path)
        try:
            request = RequestRepository(conn).get_request(request_id)
        finally:
            conn.close()
        if request is None:
            raise KeyError(f"Request not found: {request_id}")
        return request

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        client_id: Optional[str] = None,
    ) -> List[Request]:
        conn = get_connection(self.db_path)
        try:
            return RequestRepository(conn).list_requests(status=status, client_id=client_id)
        finally:
            conn.close()

    def sla_records(self, vendor_id: Optional[str] = None) -> List[SlaRecord]:
        conn = get_connection(self.db_path)
        try:
            return SlaRepository(conn).list_records(vendor_id=vendor_id)
        finally:
            conn.close()

    def sla_report(self, vendor_id: Optional[str] = None) -> SlaSummary:
        """SLA performance over delivered requests, optionally for one vendor."""
        return summarize(
            SlaEvaluation(record.actual_hours, record.target_hours, record.on_time)
            for record in self.sla_records(vendor_id)
        )


    # Creation

    def create_request(
        self,
        actor: Actor,
        client_id: str,
        service_id: str,
        quantity: int = 1,
        kind: Optional[RequestKind] = None,
        due_at: Optional[datetime] = None,
        request_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Submit a new pending request on behalf of a client.

        Raises:
            NotPermitted: If the actor is neither an admin nor the client
            ValueError: If the service is unknown or the kind doesn't match it
        """
        if actor.role != Role.ADMIN and not (
            actor.role == Role.CLIENT and actor.user_id == client_id
        ):
            raise NotPermitted(f"{actor.user_id} may not submit requests for {client_id}")
        service = self.config.get_service(service_id)
        if kind is not None and kind != service.kind:
            raise ValueError(f"{service_id} is a {service.kind.value} type, not {kind.value}")

        request = Request(
            id=request_id or str(uuid.uuid4()),
            kind=service.kind,
            client_id=client_id,
            service_id=service_id,
            quantity=quantity,
            created_at=self._now(now),
            due_at=to_billing_time(due_at, self.config.timezone) if due_at is not None else None,
        )
        with actor_context(actor.user_id):
            with transaction(self.db_path, timeout=self.config.lock_timeout_seconds) as tx:
                RequestRepository(tx).insert_request(request)
            logger.info(
                "Request created",
                request_id=request.id,
                client_id=client_id,
                service_id=service_id,
                kind=request.kind.value,
                quantity=quantity,
            )
        return TransitionResult(request=request)

    # Transitions

    def take(self, request_id: str, actor: Actor, now: Optional[datetime] = None) -> TransitionResult:
        """Self-assignment by an eligible designer.

        A pending request goes through the vendor's capacity checks. Work
        already given to the designer's vendor only needs a designer with
        open capacity.

        Raises:
            InvalidTransition: If the request is closed or already has an assignee
            NotPermitted: If the actor isn't an eligible designer, or the work
                belongs to another vendor
            NoEligibleAssignee: If the designer's vendor, or the designer, has no capacity
        """
        now = self._now(now)

        def apply(request: Request, tx) -> Tuple[Request, List[object]]:
            if actor.role not in ASSIGNABLE_ROLES:
                raise NotPermitted(f"Role {actor.role.value} cannot take requests", request)
            self._require_unassigned(request)
            if not self.role_provider.is_eligible_assignee(actor.user_id, actor.role, request.kind):
                raise NotPermitted(
                    f"{actor.user_id} is not eligible for {request.kind.value} requests", request
                )
            vendor_id = self._vendor_of(actor.user_id)
            if vendor_id is None:
                raise NotPermitted(f"{actor.user_id} does not belong to a vendor", request)
            pool, backlog = self._pool_state(tx, now)
            if request.vendor_assignee_id is not None:
                if vendor_id != request.vendor_assignee_id:
                    raise NotPermitted(
                        f"Request is held by vendor {request.vendor_assignee_id}", request
                    )
                assignment = select_designer(vendor_id, pool, actor.user_id)
            else:
                confirm_capacity(
                    vendor_id, request, pool, self.config.balancer, backlog,
                    designer_id=actor.user_id,
                )
                assignment = Assignment(actor.user_id, vendor_id)
            return self._assigned(request, assignment, actor, now)

        return self._transition(request_id, "take", actor, apply)

    def assign(
        self,
        request_id: str,
        actor: Actor,
        assignee_id: Optional[str] = None,
        vendor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Assign a request to a named designer, a vendor, or the balancer's choice.

        With ``vendor_id`` the work goes to that vendor without a designer;
        it stays in progress until one of the vendor's designers takes it or
        is assigned to it. Work a vendor already holds can be assigned to one
        of its designers by an administrator or by the vendor itself.

        Raises:
            ValueError: If both a designer and a vendor are named
            InvalidTransition: If the request is closed or already has an assignee
            NotPermitted: If the actor may not assign this request
            NoEligibleAssignee: If the named designer or vendor is ineligible or
                nobody has capacity
        """
        if assignee_id is not None and vendor_id is not None:
            raise ValueError("Name either a designer or a vendor, not both")
        now = self._now(now)

        def apply(request: Request, tx) -> Tuple[Request, List[object]]:
            self._require_assigner(actor, request)
            self._require_unassigned(request)
            pool, backlog = self._pool_state(tx, now)
            if request.vendor_assignee_id is not None:
                if vendor_id is not None:
                    raise InvalidTransition(
                        f"Request already assigned to vendor {request.vendor_assignee_id}", request
                    )
                if assignee_id is not None:
                    self._require_eligible_designer(assignee_id, request)
                assignment = select_designer(request.vendor_assignee_id, pool, assignee_id)
            elif vendor_id is not None:
                confirm_capacity(
                    vendor_id, request, pool, self.config.balancer, backlog, need_designer=False
                )
                assignment = Assignment(None, vendor_id)
            elif assignee_id is None:
                assignment = select_assignee(request, pool, self.config.balancer, backlog)
            else:
                designer_vendor = self._require_eligible_designer(assignee_id, request)
                confirm_capacity(
                    designer_vendor, request, pool, self.config.balancer, backlog,
                    designer_id=assignee_id,
                )
                assignment = Assignment(assignee_id, designer_vendor)
            return self._assigned(request, assignment, actor, now)

        return self._transition(request_id, "assign", actor, apply)

    def deliver(self, request_id: str, actor: Actor, now: Optional[datetime] = None) -> TransitionResult:
        """Deliver work and settle it against quota, SLA, and the ledger.

        Side effects run in order inside one transaction: quota consumption,
        SLA classification, ledger entry, and for outside vendors the payable
        owed to them. Any failure rolls back all of them and leaves the
        request in progress.

        Raises:
            InvalidTransition: If the request isn't in progress
            NotPermitted: If the actor is neither the assignee nor an admin
        """
        now = self._now(now)
        period_key = period_key_for(now, self.config.timezone)

        def quota_lock(request: Request) -> Sequence[tuple]:
            return [QuotaLedger.lock_key(request.client_id, period_key, request.service_id)]

        def apply(request: Request, tx) -> Tuple[Request, List[object]]:
            self._require_assignee_or_admin(actor, request, "deliver")

            consumption = self.quota.consume(
                request.client_id, request.service_id, request.quantity, period_key,
                request_id=request.id, conn=tx, now=now,
            )

            evaluation = self.sla.evaluate(request.service_id, request.assigned_at, now)
            SlaRepository(tx).insert_record(SlaRecord(
                request_id=request.id,
                service_id=request.service_id,
                actual_hours=evaluation.actual_hours,
                target_hours=evaluation.target_hours,
                on_time=evaluation.on_time,
                vendor_id=request.vendor_assignee_id,
            ))

            recorded = self.ledger.record_delivery(
                request.id, request.client_id, consumption.overage_amount,
                period_key=period_key, conn=tx, now=now,
            )

            vendor_cost = self.pricing.vendor_cost(
                request.vendor_assignee_id, request.service_id, request.quantity
            )
            delivered = replace(
                request,
                status=RequestStatus.DELIVERED,
                delivered_at=now,
                delivered_by=actor.user_id,
                vendor_cost=vendor_cost,
            )
            events: List[object] = [Delivered(
                request_id=request.id,
                client_id=request.client_id,
                delivered_by=actor.user_id,
                occurred_at=now,
                on_time=evaluation.on_time,
                amount=recorded.entry.amount,
            )]
            if recorded.created:
                events.append(entry_created(recorded.entry))
            if vendor_cost is not None:
                owed = self.payables.record(
                    request.id, request.vendor_assignee_id, request.service_id,
                    request.quantity, vendor_cost,
                    period_key=period_key, conn=tx, now=now,
                )
                if owed.created:
                    events.append(payable_recorded(owed.payable))
            return delivered, events

        return self._transition(request_id, "deliver", actor, apply, extra_locks=quota_lock)

    def request_change(
        self,
        request_id: str,
        actor: Actor,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Send in-progress work back to its assignee for changes.

        Raises:
            InvalidTransition: If the request isn't in progress
            NotPermitted: If the actor is neither an admin nor the owning client
        """
        now = self._now(now)

        def apply(request: Request, tx) -> Tuple[Request, List[object]]:
            if actor.role != Role.ADMIN and not (
                actor.role == Role.CLIENT and actor.user_id == request.client_id
            ):
                raise NotPermitted(f"{actor.user_id} may not request changes", request)
            changed = replace(
                request,
                status=RequestStatus.CHANGE_REQUEST,
                change_request_count=request.change_request_count + 1,
                change_request_note=note,
            )
            return changed, [ChangeRequested(
                request_id=request.id,
                requested_by=actor.user_id,
                change_request_count=changed.change_request_count,
                occurred_at=now,
                note=note,
            )]

        return self._transition(request_id, "request_change", actor, apply)

    def resume(self, request_id: str, actor: Actor, now: Optional[datetime] = None) -> TransitionResult:
        """Return a change request to in-progress once the assignee picks it up.

        Raises:
            InvalidTransition: If the request isn't in change_request
            NotPermitted: If the actor is neither the assignee nor an admin
        """
        now = self._now(now)

        def apply(request: Request, tx) -> Tuple[Request, List[object]]:
            self._require_assignee_or_admin(actor, request, "resume")
            resumed = replace(request, status=RequestStatus.IN_PROGRESS)
            return resumed, [Resumed(request_id=request.id, resumed_by=actor.user_id, occurred_at=now)]

        return self._transition(request_id, "resume", actor, apply)

    def cancel(self, request_id: str, actor: Actor, now: Optional[datetime] = None) -> TransitionResult:
        """Cancel an open request. Administrators only.

        Raises:
            InvalidTransition: If the request is already delivered or canceled
            NotPermitted: If the actor isn't an administrator
        """
        now = self._now(now)

        def apply(request: Request, tx) -> Tuple[Request, List[object]]:
            self._require_admin(actor, request, "cancel")
            canceled = replace(request, status=RequestStatus.CANCELED)
            return canceled, [Canceled(
                request_id=request.id,
                canceled_by=actor.user_id,
                previous_status=request.status.value,
                occurred_at=now,
            )]

        return self._transition(request_id, "cancel", actor, apply)

    # Internals

    def _now(self, now: Optional[datetime]) -> datetime:
        return to_billing_time(now if now is not None else self.clock(), self.config.timezone)

    def _transition(
        self,
        request_id: str,
        operation: str,
        actor: Actor,
        apply: Apply,
        extra_locks: Optional[Callable[[Request], Sequence[tuple]]] = None,
    ) -> TransitionResult:
        with actor_context(actor.user_id):
            with self.locks.hold(("request", request_id)):
                current = self.get_request(request_id)
                try:
                    self._check_state(operation, current)
                    with ExitStack() as stack:
                        for key in (extra_locks(current) if extra_locks else ()):
                            stack.enter_context(self.locks.hold(key))
                        with transaction(self.db_path, timeout=self.config.lock_timeout_seconds) as tx:
                            repository = RequestRepository(tx)
                            fresh = repository.get_request(request_id)
                            if fresh.version != current.version:
                                raise VersionConflict(request_id, current.version)
                            updated, events = apply(fresh, tx)
                            saved = repository.save_request(updated, fresh.version)
                except InvalidTransition as e:
                    logger.warning(
                        "Transition rejected",
                        request_id=request_id,
                        operation=operation,
                        status=current.status.value,
                        reason=e.reason,
                    )
                    if e.request is None:
                        e.request = current
                    raise

            logger.info(
                "Request transitioned",
                request_id=request_id,
                operation=operation,
                from_status=current.status.value,
                to_status=saved.status.value,
            )
            self.event_bus.publish_all(events)
        return TransitionResult(request=saved, events=tuple(events))

    @staticmethod
    def _check_state(operation: str, request: Request) -> None:
        if request.status not in ALLOWED_FROM[operation]:
            raise InvalidTransition(
                f"Cannot {operation} a request that is {request.status.value}", request
            )

    @staticmethod
    def _require_admin(actor: Actor, request: Request, operation: str) -> None:
        if actor.role != Role.ADMIN:
            raise NotPermitted(f"Only administrators can {operation} requests", request)

    @staticmethod
    def _require_assigner(actor: Actor, request: Request) -> None:
        # A vendor account may staff work it already holds.
        if actor.role == Role.ADMIN:
            return
        if actor.role == Role.VENDOR and actor.user_id == request.vendor_assignee_id:
            return
        raise NotPermitted("Only administrators, or the vendor holding it, can assign this request", request)

    @staticmethod
    def _require_assignee_or_admin(actor: Actor, request: Request, operation: str) -> None:
        if actor.role != Role.ADMIN and actor.user_id != request.assignee_id:
            raise NotPermitted(
                f"Only the assignee or an administrator can {operation} this request", request
            )

    @staticmethod
    def _require_unassigned(request: Request) -> None:
        if request.assignee_id is not None:
            raise InvalidTransition(f"Request already assigned to {request.assignee_id}", request)

    def _require_eligible_designer(self, designer_id: str, request: Request) -> str:
        """Vendor of a designer who may work on the request."""
        vendor_id = self._vendor_of(designer_id)
        role = self._assignee_role(designer_id)
        if vendor_id is None or role is None or not self.role_provider.is_eligible_assignee(
                designer_id, role, request.kind):
            raise NoEligibleAssignee(
                f"{designer_id} is not an eligible assignee for {request.kind.value} requests"
            )
        return vendor_id

    def _vendor_of(self, designer_id: str) -> Optional[str]:
        vendor = self.config.vendor_of_designer(designer_id)
        return vendor.vendor_id if vendor is not None else None

    def _assignee_role(self, designer_id: str) -> Optional[Role]:
        vendor = self.config.vendor_of_designer(designer_id)
        if vendor is None:
            return None
        return Role.INTERNAL_DESIGNER if vendor.internal else Role.VENDOR_DESIGNER

    def _pool_state(self, tx, now: datetime):
        repository = RequestRepository(tx)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        pool = build_pool(
            self.config,
            repository.count_assigned_by_vendor(),
            repository.count_open_by_assignee(),
            self.pricing,
            assigned_today=repository.count_assigned_by_vendor_between(
                day_start, day_start + timedelta(days=1)
            ),
        )
        backlog = BacklogSnapshot.from_status_counts(repository.count_by_status())
        return pool, backlog

    @staticmethod
    def _assigned(
        request: Request, assignment: Assignment, actor: Actor, now: datetime
    ) -> Tuple[Request, List[object]]:
        assigned = replace(
            request,
            status=RequestStatus.IN_PROGRESS,
            assignee_id=assignment.assignee_id,
            vendor_assignee_id=assignment.vendor_id,
            assigned_at=request.assigned_at or now,
        )
        return assigned, [Assigned(
            request_id=request.id,
            assignee_id=assignment.assignee_id,
            vendor_id=assignment.vendor_id,
            assigned_by=actor.user_id,
            occurred_at=now,
        )]
