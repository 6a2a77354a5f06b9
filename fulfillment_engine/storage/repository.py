"""
Repository pattern for data access.

Handles database operations for requests, pack periods, quota consumption,
SLA facts, ledger entries and vendor payables. Repositories work on a
connection handed in by the caller so several of them can share one
transaction.
"""

import sqlite3
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from fulfillment_engine.core.errors import (
    AlreadyPaid,
    DuplicateLedgerEntry,
    QuotaPeriodNotFound,
    VersionConflict,
)
from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    LedgerEntry,
    PackPeriod,
    PaymentStatus,
    QuotaConsumption,
    Request,
    RequestKind,
    RequestStatus,
    SlaRecord,
    SourceKind,
    VendorPayable,
)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS request (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        client_id TEXT NOT NULL,
        service_id TEXT NOT NULL,
        quantity INTEGER NOT NULL DEFAULT 1,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        due_at TEXT,
        assignee_id TEXT,
        vendor_assignee_id TEXT,
        assigned_at TEXT,
        delivered_at TEXT,
        delivered_by TEXT,
        vendor_cost TEXT,
        change_request_count INTEGER NOT NULL DEFAULT 0,
        change_request_note TEXT,
        version INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pack_period (
        id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL,
        pack_id TEXT NOT NULL,
        period_key TEXT NOT NULL,
        starts_at TEXT NOT NULL,
        ends_at TEXT NOT NULL,
        price TEXT NOT NULL,
        closed INTEGER NOT NULL DEFAULT 0,
        UNIQUE (client_id, period_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pack_period_item (
        period_id TEXT NOT NULL REFERENCES pack_period(id),
        service_id TEXT NOT NULL,
        included INTEGER NOT NULL,
        consumed INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (period_id, service_id),
        CHECK (consumed >= 0 AND consumed <= included)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quota_consumption (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        request_id TEXT,
        client_id TEXT NOT NULL,
        period_id TEXT,
        period_key TEXT NOT NULL,
        service_id TEXT NOT NULL,
        requested_quantity INTEGER NOT NULL,
        covered_quantity INTEGER NOT NULL,
        overage_quantity INTEGER NOT NULL,
        unit_overage_price TEXT NOT NULL,
        overage_amount TEXT NOT NULL,
        recorded_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sla_record (
        request_id TEXT PRIMARY KEY REFERENCES request(id),
        service_id TEXT NOT NULL,
        vendor_id TEXT,
        actual_hours REAL,
        target_hours REAL,
        on_time INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_entry (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        source_kind TEXT NOT NULL,
        source_id TEXT NOT NULL,
        client_id TEXT NOT NULL,
        amount TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TEXT NOT NULL,
        paid_at TEXT,
        period_key TEXT,
        description TEXT,
        UNIQUE (source_kind, source_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vendor_payable (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        request_id TEXT NOT NULL UNIQUE REFERENCES request(id),
        vendor_id TEXT NOT NULL,
        service_id TEXT NOT NULL,
        quantity INTEGER NOT NULL,
        amount TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TEXT NOT NULL,
        paid_at TEXT,
        period_key TEXT
    )
    """,
]


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all engine tables if they don't exist.

    The quota_consumption, ledger_entry and vendor_payable tables are
    append-only; ledger and payable rows only ever see the pending -> paid
    status update.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in SCHEMA:
            conn.execute(statement)
    finally:
        conn.close()


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


_REQUEST_COLUMNS = """
    id, kind, client_id, service_id, quantity, status, created_at, due_at,
    assignee_id, vendor_assignee_id, assigned_at, delivered_at, delivered_by,
    vendor_cost, change_request_count, change_request_note, version
"""


def _row_to_request(row) -> Request:
    return Request(
        id=row[0],
        kind=RequestKind(row[1]),
        client_id=row[2],
        service_id=row[3],
        quantity=row[4],
        status=RequestStatus(row[5]),
        created_at=datetime.fromisoformat(row[6]),
        due_at=_parse_dt(row[7]),
        assignee_id=row[8],
        vendor_assignee_id=row[9],
        assigned_at=_parse_dt(row[10]),
        delivered_at=_parse_dt(row[11]),
        delivered_by=row[12],
        vendor_cost=_dec(row[13]),
        change_request_count=row[14],
        change_request_note=row[15],
        version=row[16],
    )


class RequestRepository:
    """Request Store: durable request records with optimistic concurrency."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def insert_request(self, request: Request) -> Request:
        """Insert a brand-new request.

        Raises:
            ValueError: If a request with the same id already exists
        """
        try:
            self.conn.execute(
                f"INSERT INTO request ({_REQUEST_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._values(request),
            )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Request already exists: {request.id}") from e
        return request

    def get_request(self, request_id: str) -> Optional[Request]:
        cursor = self.conn.execute(
            f"SELECT {_REQUEST_COLUMNS} FROM request WHERE id = ?", (request_id,)
        )
        row = cursor.fetchone()
        return _row_to_request(row) if row else None

    def save_request(self, request: Request, expected_version: int) -> Request:
        """Persist a modified request if nobody else changed it since it was read.

        Args:
            request: The new state of the request
            expected_version: Version the caller read before modifying

        Returns:
            The stored request, carrying the incremented version

        Raises:
            VersionConflict: If the stored version differs from expected_version
        """
        saved = replace(request, version=expected_version + 1)
        values = self._values(saved)
        cursor = self.conn.execute(
            """
            UPDATE request SET
                kind = ?, client_id = ?, service_id = ?, quantity = ?, status = ?,
                created_at = ?, due_at = ?, assignee_id = ?, vendor_assignee_id = ?,
                assigned_at = ?, delivered_at = ?, delivered_by = ?, vendor_cost = ?,
                change_request_count = ?, change_request_note = ?, version = ?
            WHERE id = ? AND version = ?
            """,
            values[1:] + (saved.id, expected_version),
        )
        if cursor.rowcount != 1:
            raise VersionConflict(request.id, expected_version)
        return saved

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        client_id: Optional[str] = None,
    ) -> List[Request]:
        """List requests oldest first, optionally filtered by status and client."""
        query = f"SELECT {_REQUEST_COLUMNS} FROM request"
        params = []
        conditions = []
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if client_id is not None:
            conditions.append("client_id = ?")
            params.append(client_id)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at, id"
        return [_row_to_request(row) for row in self.conn.execute(query, params).fetchall()]

    def list_by_status(self, status: RequestStatus) -> List[Request]:
        return self.list_requests(status=status)

    def list_by_client(self, client_id: str) -> List[Request]:
        return self.list_requests(client_id=client_id)

    def count_assigned_by_vendor(self) -> Dict[str, int]:
        """Total non-canceled work ever assigned to each vendor."""
        cursor = self.conn.execute(
            """
            SELECT vendor_assignee_id, COUNT(*) FROM request
            WHERE vendor_assignee_id IS NOT NULL AND status != ?
            GROUP BY vendor_assignee_id
            """,
            (RequestStatus.CANCELED.value,),
        )
        return {row[0]: row[1] for row in cursor.fetchall()}

    def count_assigned_by_vendor_between(self, start: datetime, end: datetime) -> Dict[str, int]:
        """Non-canceled work first assigned to each vendor in [start, end)."""
        cursor = self.conn.execute(
            """
            SELECT vendor_assignee_id, COUNT(*) FROM request
            WHERE vendor_assignee_id IS NOT NULL AND status != ?
              AND assigned_at >= ? AND assigned_at < ?
            GROUP BY vendor_assignee_id
            """,
            (RequestStatus.CANCELED.value, start.isoformat(), end.isoformat()),
        )
        return {row[0]: row[1] for row in cursor.fetchall()}

    def count_open_by_assignee(self) -> Dict[str, int]:
        """Work currently held by each designer (in progress or in change request)."""
        cursor = self.conn.execute(
            """
            SELECT assignee_id, COUNT(*) FROM request
            WHERE assignee_id IS NOT NULL AND status IN (?, ?)
            GROUP BY assignee_id
            """,
            (RequestStatus.IN_PROGRESS.value, RequestStatus.CHANGE_REQUEST.value),
        )
        return {row[0]: row[1] for row in cursor.fetchall()}

    def count_by_status(self) -> Dict[RequestStatus, int]:
        cursor = self.conn.execute("SELECT status, COUNT(*) FROM request GROUP BY status")
        counts = {status: 0 for status in RequestStatus}
        for row in cursor.fetchall():
            counts[RequestStatus(row[0])] = row[1]
        return counts

    @staticmethod
    def _values(request: Request) -> tuple:
        return (
            request.id,
            request.kind.value,
            request.client_id,
            request.service_id,
            request.quantity,
            request.status.value,
            request.created_at.isoformat(),
            _dt(request.due_at),
            request.assignee_id,
            request.vendor_assignee_id,
            _dt(request.assigned_at),
            _dt(request.delivered_at),
            request.delivered_by,
            str(request.vendor_cost) if request.vendor_cost is not None else None,
            request.change_request_count,
            request.change_request_note,
            request.version,
        )


class PackPeriodRepository:
    """Storage for subscription pack periods and their quota consumption facts."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def insert_period(self, period: PackPeriod) -> PackPeriod:
        """Insert a period with one item row per included service.

        Raises:
            ValueError: If the client already has a period for that month
        """
        try:
            self.conn.execute(
                """
                INSERT INTO pack_period
                (id, client_id, pack_id, period_key, starts_at, ends_at, price, closed)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    period.id,
                    period.client_id,
                    period.pack_id,
                    period.period_key,
                    period.starts_at.isoformat(),
                    period.ends_at.isoformat(),
                    str(period.price),
                    int(period.closed),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ValueError(
                f"Pack period already exists for client {period.client_id} in {period.period_key}"
            ) from e
        for service_id, included in period.included.items():
            self.conn.execute(
                "INSERT INTO pack_period_item (period_id, service_id, included, consumed) "
                "VALUES (?, ?, ?, ?)",
                (period.id, service_id, included, period.consumed.get(service_id, 0)),
            )
        return period

    def get_period(self, period_id: str) -> Optional[PackPeriod]:
        row = self.conn.execute(
            """
            SELECT id, client_id, pack_id, period_key, starts_at, ends_at, price, closed
            FROM pack_period WHERE id = ?
            """,
            (period_id,),
        ).fetchone()
        if not row:
            return None
        included = {}
        consumed = {}
        items = self.conn.execute(
            "SELECT service_id, included, consumed FROM pack_period_item "
            "WHERE period_id = ? ORDER BY service_id",
            (period_id,),
        )
        for service_id, item_included, item_consumed in items.fetchall():
            included[service_id] = item_included
            consumed[service_id] = item_consumed
        return PackPeriod(
            id=row[0],
            client_id=row[1],
            pack_id=row[2],
            period_key=row[3],
            starts_at=datetime.fromisoformat(row[4]),
            ends_at=datetime.fromisoformat(row[5]),
            price=Decimal(row[6]),
            included=included,
            consumed=consumed,
            closed=bool(row[7]),
        )

    def find_open_period(self, client_id: str, period_key: str) -> PackPeriod:
        """Get the client's open period for a month.

        Raises:
            QuotaPeriodNotFound: If there is none, or it is already closed
        """
        row = self.conn.execute(
            "SELECT id FROM pack_period WHERE client_id = ? AND period_key = ? AND closed = 0",
            (client_id, period_key),
        ).fetchone()
        if not row:
            raise QuotaPeriodNotFound(client_id, period_key)
        return self.get_period(row[0])

    def list_periods(
        self, client_id: Optional[str] = None, period_key: Optional[str] = None
    ) -> List[PackPeriod]:
        query = "SELECT id FROM pack_period"
        params = []
        conditions = []
        if client_id is not None:
            conditions.append("client_id = ?")
            params.append(client_id)
        if period_key is not None:
            conditions.append("period_key = ?")
            params.append(period_key)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY period_key, client_id"
        return [self.get_period(row[0]) for row in self.conn.execute(query, params).fetchall()]

    def add_consumed(self, period_id: str, service_id: str, quantity: int) -> None:
        """Increase consumed quantity without ever exceeding the included quantity.

        Raises:
            ValueError: If the increment would overdraw the quota
        """
        cursor = self.conn.execute(
            """
            UPDATE pack_period_item SET consumed = consumed + ?
            WHERE period_id = ? AND service_id = ? AND consumed + ? <= included
            """,
            (quantity, period_id, service_id, quantity),
        )
        if cursor.rowcount != 1:
            raise ValueError(
                f"Cannot consume {quantity} of {service_id} from period {period_id}"
            )

    def mark_closed(self, period_id: str) -> bool:
        """Close an open period. Returns False if it was already closed."""
        cursor = self.conn.execute(
            "UPDATE pack_period SET closed = 1 WHERE id = ? AND closed = 0", (period_id,)
        )
        return cursor.rowcount == 1

    def insert_consumption(self, consumption: QuotaConsumption) -> None:
        self.conn.execute(
            """
            INSERT INTO quota_consumption
            (request_id, client_id, period_id, period_key, service_id, requested_quantity,
             covered_quantity, overage_quantity, unit_overage_price, overage_amount, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                consumption.request_id,
                consumption.client_id,
                consumption.period_id,
                consumption.period_key,
                consumption.service_id,
                consumption.requested_quantity,
                consumption.covered_quantity,
                consumption.overage_quantity,
                str(consumption.unit_overage_price),
                str(consumption.overage_amount),
                consumption.recorded_at.isoformat(),
            ),
        )

    def list_consumptions(
        self, client_id: Optional[str] = None, period_key: Optional[str] = None
    ) -> List[QuotaConsumption]:
        query = """
            SELECT client_id, service_id, period_key, requested_quantity, covered_quantity,
                   overage_quantity, unit_overage_price, overage_amount, recorded_at,
                   period_id, request_id
            FROM quota_consumption
        """
        params = []
        conditions = []
        if client_id is not None:
            conditions.append("client_id = ?")
            params.append(client_id)
        if period_key is not None:
            conditions.append("period_key = ?")
            params.append(period_key)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id"
        return [
            QuotaConsumption(
                client_id=row[0],
                service_id=row[1],
                period_key=row[2],
                requested_quantity=row[3],
                covered_quantity=row[4],
                overage_quantity=row[5],
                unit_overage_price=Decimal(row[6]),
                overage_amount=Decimal(row[7]),
                recorded_at=datetime.fromisoformat(row[8]),
                period_id=row[9],
                request_id=row[10],
            )
            for row in self.conn.execute(query, params).fetchall()
        ]


class SlaRepository:
    """SLA classifications of delivered requests."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def insert_record(self, record: SlaRecord) -> None:
        self.conn.execute(
            """
            INSERT INTO sla_record
            (request_id, service_id, vendor_id, actual_hours, target_hours, on_time)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.request_id,
                record.service_id,
                record.vendor_id,
                record.actual_hours,
                record.target_hours,
                None if record.on_time is None else int(record.on_time),
            ),
        )

    def list_records(self, vendor_id: Optional[str] = None) -> List[SlaRecord]:
        query = (
            "SELECT request_id, service_id, actual_hours, target_hours, on_time, vendor_id "
            "FROM sla_record"
        )
        params = []
        if vendor_id is not None:
            query += " WHERE vendor_id = ?"
            params.append(vendor_id)
        query += " ORDER BY request_id"
        return [
            SlaRecord(
                request_id=row[0],
                service_id=row[1],
                actual_hours=row[2],
                target_hours=row[3],
                on_time=None if row[4] is None else bool(row[4]),
                vendor_id=row[5],
            )
            for row in self.conn.execute(query, params).fetchall()
        ]


_LEDGER_COLUMNS = """
    id, source_kind, source_id, client_id, amount, status, created_at, paid_at,
    period_key, description
"""


def _row_to_entry(row) -> LedgerEntry:
    return LedgerEntry(
        id=row[0],
        source_kind=SourceKind(row[1]),
        source_id=row[2],
        client_id=row[3],
        amount=Decimal(row[4]),
        status=PaymentStatus(row[5]),
        created_at=datetime.fromisoformat(row[6]),
        paid_at=_parse_dt(row[7]),
        period_key=row[8],
        description=row[9],
    )


class LedgerRepository:
    """Append-only storage for payable ledger entries."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def insert_entry(
        self,
        source_kind: SourceKind,
        source_id: str,
        client_id: str,
        amount: Decimal,
        created_at: datetime,
        period_key: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerEntry:
        """Insert a new pending entry.

        Raises:
            DuplicateLedgerEntry: If an entry already exists for the source
        """
        try:
            cursor = self.conn.execute(
                """
                INSERT INTO ledger_entry
                (source_kind, source_id, client_id, amount, status, created_at,
                 period_key, description)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    source_kind.value,
                    source_id,
                    client_id,
                    str(amount),
                    PaymentStatus.PENDING.value,
                    created_at.isoformat(),
                    period_key,
                    description,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateLedgerEntry(source_kind.value, source_id) from e
        return self.get_entry(cursor.lastrowid)

    def get_entry(self, entry_id: int) -> Optional[LedgerEntry]:
        row = self.conn.execute(
            f"SELECT {_LEDGER_COLUMNS} FROM ledger_entry WHERE id = ?", (entry_id,)
        ).fetchone()
        return _row_to_entry(row) if row else None

    def find_by_source(self, source_kind: SourceKind, source_id: str) -> Optional[LedgerEntry]:
        row = self.conn.execute(
            f"SELECT {_LEDGER_COLUMNS} FROM ledger_entry WHERE source_kind = ? AND source_id = ?",
            (source_kind.value, source_id),
        ).fetchone()
        return _row_to_entry(row) if row else None

    def mark_paid(self, entry_id: int, paid_at: datetime) -> None:
        """Move one existing entry from pending to paid.

        Raises:
            AlreadyPaid: If the entry is not pending
        """
        cursor = self.conn.execute(
            "UPDATE ledger_entry SET status = ?, paid_at = ? WHERE id = ? AND status = ?",
            (
                PaymentStatus.PAID.value,
                paid_at.isoformat(),
                entry_id,
                PaymentStatus.PENDING.value,
            ),
        )
        if cursor.rowcount != 1:
            raise AlreadyPaid(entry_id)

    def list_entries(
        self,
        client_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        source_kind: Optional[SourceKind] = None,
        period_key: Optional[str] = None,
    ) -> List[LedgerEntry]:
        """List entries in insertion order with optional filtering."""
        query = f"SELECT {_LEDGER_COLUMNS} FROM ledger_entry"
        params = []
        conditions = []
        if client_id is not None:
            conditions.append("client_id = ?")
            params.append(client_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if source_kind is not None:
            conditions.append("source_kind = ?")
            params.append(source_kind.value)
        if period_key is not None:
            conditions.append("period_key = ?")
            params.append(period_key)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id"
        return [_row_to_entry(row) for row in self.conn.execute(query, params).fetchall()]


_PAYABLE_COLUMNS = """
    id, request_id, vendor_id, service_id, quantity, amount, status, created_at,
    paid_at, period_key
"""


def _row_to_payable(row) -> VendorPayable:
    return VendorPayable(
        id=row[0],
        request_id=row[1],
        vendor_id=row[2],
        service_id=row[3],
        quantity=row[4],
        amount=Decimal(row[5]),
        status=PaymentStatus(row[6]),
        created_at=datetime.fromisoformat(row[7]),
        paid_at=_parse_dt(row[8]),
        period_key=row[9],
    )


class VendorPayableRepository:
    """Append-only storage for amounts owed to vendors."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def insert_payable(
        self,
        request_id: str,
        vendor_id: str,
        service_id: str,
        quantity: int,
        amount: Decimal,
        created_at: datetime,
        period_key: Optional[str] = None,
    ) -> VendorPayable:
        """Insert a new pending payable.

        Raises:
            DuplicateLedgerEntry: If the request already has a payable
        """
        try:
            cursor = self.conn.execute(
                """
                INSERT INTO vendor_payable
                (request_id, vendor_id, service_id, quantity, amount, status, created_at, period_key)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request_id,
                    vendor_id,
                    service_id,
                    quantity,
                    str(amount),
                    PaymentStatus.PENDING.value,
                    created_at.isoformat(),
                    period_key,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateLedgerEntry("vendor_payable", request_id) from e
        return self.get_payable(cursor.lastrowid)

    def get_payable(self, payable_id: int) -> Optional[VendorPayable]:
        row = self.conn.execute(
            f"SELECT {_PAYABLE_COLUMNS} FROM vendor_payable WHERE id = ?", (payable_id,)
        ).fetchone()
        return _row_to_payable(row) if row else None

    def find_by_request(self, request_id: str) -> Optional[VendorPayable]:
        row = self.conn.execute(
            f"SELECT {_PAYABLE_COLUMNS} FROM vendor_payable WHERE request_id = ?", (request_id,)
        ).fetchone()
        return _row_to_payable(row) if row else None

    def mark_paid(self, payable_id: int, paid_at: datetime) -> None:
        """Move one existing payable from pending to paid.

        Raises:
            AlreadyPaid: If the payable is not pending
        """
        cursor = self.conn.execute(
            "UPDATE vendor_payable SET status = ?, paid_at = ? WHERE id = ? AND status = ?",
            (
                PaymentStatus.PAID.value,
                paid_at.isoformat(),
                payable_id,
                PaymentStatus.PENDING.value,
            ),
        )
        if cursor.rowcount != 1:
            raise AlreadyPaid(payable_id, "Vendor payable")

    def list_payables(
        self,
        vendor_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        period_key: Optional[str] = None,
    ) -> List[VendorPayable]:
        """List payables in insertion order with optional filtering."""
        query = f"SELECT {_PAYABLE_COLUMNS} FROM vendor_payable"
        params = []
        conditions = []
        if vendor_id is not None:
            conditions.append("vendor_id = ?")
            params.append(vendor_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if period_key is not None:
            conditions.append("period_key = ?")
            params.append(period_key)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id"
        return [_row_to_payable(row) for row in self.conn.execute(query, params).fetchall()]
