"""
Billing reconciliation ledger.

Materializes payable facts and manages their payment status in bulk.
Entries are append-only: amounts never change, corrections are reversing
entries, and status only moves from pending to paid.
"""

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import structlog

from fulfillment_engine.storage.db import DEFAULT_DB_PATH, get_connection, transaction
from fulfillment_engine.storage.models import LedgerEntry, PaymentStatus, SourceKind
from fulfillment_engine.storage.repository import LedgerRepository
from .errors import AlreadyPaid, DuplicateLedgerEntry
from .events import EntryCreated, EntryPaid, EventBus
from .pricing import to_cents

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LedgerFilter:
    """Row selection shared by listing and summarizing."""
    client_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    source_kind: Optional[SourceKind] = None
    period_key: Optional[str] = None


@dataclass(frozen=True)
class RecordResult:
    """Entry for a source, and whether this call created it."""
    entry: LedgerEntry
    created: bool

    @property
    def entry_id(self) -> int:
        return self.entry.id


@dataclass
class MarkPaidResult:
    """Outcome of a bulk mark-paid call.

    ``errors`` maps ids that could not be processed (e.g. unknown ids) to a
    reason.
    """
    updated_count: int = 0
    already_paid: List[int] = field(default_factory=list)
    errors: Dict[int, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerSummary:
    """Exact aggregation over a filtered row set."""
    total_items: int
    total_amount: Decimal
    pending_count: int
    paid_count: int


def entry_created(entry: LedgerEntry) -> EntryCreated:
    return EntryCreated(
        entry_id=entry.id,
        source_kind=entry.source_kind.value,
        source_id=entry.source_id,
        client_id=entry.client_id,
        amount=entry.amount,
        occurred_at=entry.created_at,
    )


def summarize_entries(entries: Iterable) -> LedgerSummary:
    """Pure aggregation over ledger entries or vendor payables.

    The reconciliation audit compares this to the rows.
    """
    total_items = 0
    total_amount = Decimal("0.00")
    pending = 0
    paid = 0
    for entry in entries:
        total_items += 1
        total_amount += entry.amount
        if entry.status == PaymentStatus.PAID:
            paid += 1
        else:
            pending += 1
    return LedgerSummary(
        total_items=total_items,
        total_amount=total_amount,
        pending_count=pending,
        paid_count=paid,
    )


class BillingLedger:
    """Append-only ledger of what clients owe.

    Write methods accept an optional connection; when given, the write joins
    that transaction and the caller publishes events after commit. Otherwise
    the ledger runs its own unit of work and publishes on success.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        event_bus: Optional[EventBus] = None,
        lock_timeout: float = 5.0,
    ):
        self.db_path = db_path
        self.event_bus = event_bus or EventBus()
        self.lock_timeout = lock_timeout

    def record_delivery(
        self,
        request_id: str,
        client_id: str,
        amount: Decimal,
        period_key: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
        now: Optional[datetime] = None,
    ) -> RecordResult:
        """Record what a delivered request costs the client.

        Idempotent by request: a second call returns the existing entry.
        """
        return self._record(
            SourceKind.SERVICE_REQUEST, request_id, client_id, amount,
            period_key, f"Delivery of request {request_id}", conn, now,
        )

    def record_period_close(
        self,
        period_id: str,
        client_id: str,
        amount: Decimal,
        period_key: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
        now: Optional[datetime] = None,
    ) -> RecordResult:
        """Record the pack fee of a closed period. Idempotent by period."""
        return self._record(
            SourceKind.PACK_PERIOD, period_id, client_id, amount,
            period_key, f"Pack period {period_id}", conn, now,
        )

    def record_reversal(
        self,
        entry_id: int,
        reason: str,
        now: Optional[datetime] = None,
    ) -> RecordResult:
        """Append an entry negating an existing one.

        The original entry is left untouched. Each entry can be reversed once;
        repeating the call returns the existing reversal.

        Raises:
            KeyError: If the entry doesn't exist
            ValueError: If the entry is itself a reversal
        """
        with transaction(self.db_path, timeout=self.lock_timeout) as tx:
            original = LedgerRepository(tx).get_entry(entry_id)
            if original is None:
                raise KeyError(f"Ledger entry not found: {entry_id}")
            if original.source_kind == SourceKind.REVERSAL:
                raise ValueError(f"Ledger entry {entry_id} is a reversal and can't be reversed")
            result = self._insert_once(
                tx,
                SourceKind.REVERSAL,
                str(entry_id),
                original.client_id,
                -original.amount,
                original.period_key,
                f"Reversal of entry {entry_id}: {reason}",
                now or datetime.now(),
            )
        if result.created:
            self.event_bus.publish(entry_created(result.entry))
        return result

    def _record(
        self,
        source_kind: SourceKind,
        source_id: str,
        client_id: str,
        amount: Decimal,
        period_key: Optional[str],
        description: str,
        conn: Optional[sqlite3.Connection],
        now: Optional[datetime],
    ) -> RecordResult:
        amount = Decimal(amount)
        if amount < 0:
            raise ValueError("amount must be >= 0; use a reversal to correct an entry")
        with transaction(self.db_path, conn=conn, timeout=self.lock_timeout) as tx:
            result = self._insert_once(
                tx, source_kind, source_id, client_id, to_cents(amount),
                period_key, description, now or datetime.now(),
            )
        if conn is None and result.created:
            self.event_bus.publish(entry_created(result.entry))
        return result

    @staticmethod
    def _insert_once(
        tx: sqlite3.Connection,
        source_kind: SourceKind,
        source_id: str,
        client_id: str,
        amount: Decimal,
        period_key: Optional[str],
        description: str,
        created_at: datetime,
    ) -> RecordResult:
        repository = LedgerRepository(tx)
        existing = repository.find_by_source(source_kind, source_id)
        if existing is not None:
            return RecordResult(entry=existing, created=False)
        try:
            entry = repository.insert_entry(
                source_kind, source_id, client_id, amount, created_at,
                period_key=period_key, description=description,
            )
        except DuplicateLedgerEntry:
            return RecordResult(entry=repository.find_by_source(source_kind, source_id), created=False)
        logger.info(
            "Ledger entry created",
            entry_id=entry.id,
            source_kind=source_kind.value,
            source_id=source_id,
            client_id=client_id,
            amount=str(amount),
        )
        return RecordResult(entry=entry, created=True)

    def mark_paid(
        self,
        entry_ids: Iterable[int],
        paid_at: Optional[datetime] = None,
    ) -> MarkPaidResult:
        """Move pending entries to paid in one unit of work.

        Already-paid ids are reported in ``already_paid`` and unknown ids in
        ``errors``; neither aborts the batch. Repeated ids count once.
        """
        paid_at = paid_at or datetime.now()
        result = MarkPaidResult()
        paid_entries: List[LedgerEntry] = []
        seen = set()
        with transaction(self.db_path, timeout=self.lock_timeout) as tx:
            repository = LedgerRepository(tx)
            for entry_id in entry_ids:
                if entry_id in seen:
                    continue
                seen.add(entry_id)
                entry = repository.get_entry(entry_id)
                if entry is None:
                    result.errors[entry_id] = "entry not found"
                    continue
                try:
                    repository.mark_paid(entry_id, paid_at)
                except AlreadyPaid:
                    result.already_paid.append(entry_id)
                    continue
                result.updated_count += 1
                paid_entries.append(entry)

        logger.info(
            "Marked ledger entries paid",
            updated=result.updated_count,
            already_paid=len(result.already_paid),
            errors=len(result.errors),
        )
        for entry in paid_entries:
            self.event_bus.publish(EntryPaid(
                entry_id=entry.id,
                client_id=entry.client_id,
                amount=entry.amount,
                occurred_at=paid_at,
            ))
        return result

    def get_entry(self, entry_id: int) -> Optional[LedgerEntry]:
        conn = get_connection(self.db_path)
        try:
            return LedgerRepository(conn).get_entry(entry_id)
        finally:
            conn.close()

    def list_entries(self, ledger_filter: Optional[LedgerFilter] = None) -> List[LedgerEntry]:
        ledger_filter = ledger_filter or LedgerFilter()
        conn = get_connection(self.db_path)
        try:
            return LedgerRepository(conn).list_entries(
                client_id=ledger_filter.client_id,
                status=ledger_filter.status,
                source_kind=ledger_filter.source_kind,
                period_key=ledger_filter.period_key,
            )
        finally:
            conn.close()

    def summarize(self, ledger_filter: Optional[LedgerFilter] = None) -> LedgerSummary:
        """Totals over exactly the rows ``list_entries`` returns for the filter."""
        return summarize_entries(self.list_entries(ledger_filter))
