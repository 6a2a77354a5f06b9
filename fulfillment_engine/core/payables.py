"""
Vendor payables.

What the platform owes paid vendors for delivered work, and its payment
status. Recorded inside the delivery unit of work next to the client ledger
entry; marked paid in bulk by operators.
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

import structlog

from fulfillment_engine.storage.db import DEFAULT_DB_PATH, get_connection, transaction
from fulfillment_engine.storage.models import PaymentStatus, VendorPayable
from fulfillment_engine.storage.repository import VendorPayableRepository
from .billing import LedgerSummary, MarkPaidResult, summarize_entries
from .errors import AlreadyPaid, DuplicateLedgerEntry
from .events import EventBus, VendorPaid, VendorPayableRecorded

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PayableResult:
    """Payable for a request, and whether this call created it."""
    payable: VendorPayable
    created: bool


def payable_recorded(payable: VendorPayable) -> VendorPayableRecorded:
    return VendorPayableRecorded(
        payable_id=payable.id,
        request_id=payable.request_id,
        vendor_id=payable.vendor_id,
        amount=payable.amount,
        occurred_at=payable.created_at,
    )


class VendorPayables:
    """Append-only record of vendor costs owed for delivered requests."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        event_bus: Optional[EventBus] = None,
        lock_timeout: float = 5.0,
    ):
        self.db_path = db_path
        self.event_bus = event_bus or EventBus()
        self.lock_timeout = lock_timeout

    def record(
        self,
        request_id: str,
        vendor_id: str,
        service_id: str,
        quantity: int,
        amount: Decimal,
        period_key: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
        now: Optional[datetime] = None,
    ) -> PayableResult:
        """Record the cost of a delivered request. Idempotent by request.

        Raises:
            ValueError: If the amount is negative
        """
        if amount < 0:
            raise ValueError("amount must be >= 0")
        with transaction(self.db_path, conn=conn, timeout=self.lock_timeout) as tx:
            repository = VendorPayableRepository(tx)
            existing = repository.find_by_request(request_id)
            if existing is not None:
                return PayableResult(existing, created=False)
            try:
                payable = repository.insert_payable(
                    request_id, vendor_id, service_id, quantity, amount,
                    now or datetime.now(), period_key=period_key,
                )
            except DuplicateLedgerEntry:
                return PayableResult(repository.find_by_request(request_id), created=False)

        logger.info(
            "Vendor payable recorded",
            payable_id=payable.id,
            request_id=request_id,
            vendor_id=vendor_id,
            amount=str(amount),
        )
        if conn is None:
            self.event_bus.publish(payable_recorded(payable))
        return PayableResult(payable, created=True)

    def mark_paid(
        self,
        payable_ids: Iterable[int],
        paid_at: Optional[datetime] = None,
    ) -> MarkPaidResult:
        """Move pending payables to paid in one unit of work.

        Same reporting as the client ledger: already-paid ids go to
        ``already_paid``, unknown ids to ``errors``, repeats count once.
        """
        paid_at = paid_at or datetime.now()
        result = MarkPaidResult()
        paid: List[VendorPayable] = []
        seen = set()
        with transaction(self.db_path, timeout=self.lock_timeout) as tx:
            repository = VendorPayableRepository(tx)
            for payable_id in payable_ids:
                if payable_id in seen:
                    continue
                seen.add(payable_id)
                payable = repository.get_payable(payable_id)
                if payable is None:
                    result.errors[payable_id] = "payable not found"
                    continue
                try:
                    repository.mark_paid(payable_id, paid_at)
                except AlreadyPaid:
                    result.already_paid.append(payable_id)
                    continue
                result.updated_count += 1
                paid.append(payable)

        logger.info(
            "Marked vendor payables paid",
            updated=result.updated_count,
            already_paid=len(result.already_paid),
            errors=len(result.errors),
        )
        for payable in paid:
            self.event_bus.publish(VendorPaid(
                payable_id=payable.id,
                vendor_id=payable.vendor_id,
                amount=payable.amount,
                occurred_at=paid_at,
            ))
        return result

    def list_payables(
        self,
        vendor_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        period_key: Optional[str] = None,
    ) -> List[VendorPayable]:
        conn = get_connection(self.db_path)
        try:
            return VendorPayableRepository(conn).list_payables(
                vendor_id=vendor_id, status=status, period_key=period_key
            )
        finally:
            conn.close()

    def summarize(
        self,
        vendor_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        period_key: Optional[str] = None,
    ) -> LedgerSummary:
        return summarize_entries(self.list_payables(vendor_id, status, period_key))
