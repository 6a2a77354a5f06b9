"""
Monthly subscription-pack quota ledger.

Decides whether delivered units are covered by a client's pack or billed
as overage. Unused quota never rolls over: closing a period discards what
is left.
"""

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Tuple
from zoneinfo import ZoneInfo

import structlog

from fulfillment_engine.config.loader import EngineConfig
from fulfillment_engine.storage.db import DEFAULT_DB_PATH, get_connection, transaction
from fulfillment_engine.storage.models import PackPeriod, QuotaConsumption
from fulfillment_engine.storage.repository import PackPeriodRepository
from .billing import BillingLedger, RecordResult, entry_created
from .errors import QuotaPeriodNotFound
from .events import EventBus, PeriodClosed
from .locks import KeyedLockManager
from .pricing import PricingTable, to_cents, unit_overage_price

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ConsumptionResult:
    """How a delivered quantity was split between pack and overage.

    ``covered_quantity + overage_quantity`` always equals the requested
    quantity. ``period_id`` is None when no open pack period applied.
    """
    covered_quantity: int
    overage_quantity: int
    unit_overage_price: Decimal
    overage_amount: Decimal
    period_id: Optional[str] = None


def to_billing_time(timestamp: datetime, tz: ZoneInfo) -> datetime:
    """Naive wall-clock time in the billing timezone.

    Aware timestamps are converted; naive ones are taken to already be in
    billing time and pass through unchanged. Every timestamp the engine
    stores goes through here, so stored values can always be compared.
    """
    if timestamp.tzinfo is None:
        return timestamp
    return timestamp.astimezone(tz).replace(tzinfo=None)


def period_key_for(timestamp: datetime, tz: ZoneInfo) -> str:
    """Calendar month of a timestamp in the billing timezone, as YYYY-MM.

    Naive timestamps are taken to already be in billing time.
    """
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(tz)
    return f"{timestamp.year:04d}-{timestamp.month:02d}"


def period_bounds(period_key: str, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    """Start (inclusive) and end (exclusive) of a YYYY-MM month in the billing timezone.

    Raises:
        ValueError: If the key is malformed
    """
    try:
        year_str, month_str = period_key.split("-")
        year, month = int(year_str), int(month_str)
        start = datetime(year, month, 1, tzinfo=tz)
    except ValueError:
        raise ValueError(f"Invalid period key: {period_key!r} (expected YYYY-MM)")
    if f"{year:04d}-{month:02d}" != period_key:
        raise ValueError(f"Invalid period key: {period_key!r} (expected YYYY-MM)")
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=tz)
    else:
        end = datetime(year, month + 1, 1, tzinfo=tz)
    return start, end


class QuotaLedger:
    """Owner of subscription pack periods and their consumption."""

    def __init__(
        self,
        config: EngineConfig,
        db_path: str = DEFAULT_DB_PATH,
        locks: Optional[KeyedLockManager] = None,
        ledger: Optional[BillingLedger] = None,
        event_bus: Optional[EventBus] = None,
        pricing: Optional[PricingTable] = None,
    ):
        self.config = config
        self.db_path = db_path
        self.locks = locks if locks is not None else KeyedLockManager(config.lock_timeout_seconds)
        self.event_bus = event_bus or EventBus()
        self.ledger = ledger or BillingLedger(db_path, self.event_bus, config.lock_timeout_seconds)
        self.pricing = pricing or PricingTable.from_config(config)

    @staticmethod
    def lock_key(client_id: str, period_key: str, service_id: str) -> tuple:
        return ("quota", client_id, period_key, service_id)

    def open_period(
        self,
        client_id: str,
        pack_id: str,
        period_key: str,
        included: Dict[str, int],
        price: Decimal,
        period_id: Optional[str] = None,
    ) -> PackPeriod:
        """Start a client's pack period for a month.

        Raises:
            ValueError: If the pack is empty, quantities or price are invalid,
                a service is unknown, or the client already has that month
        """
        if not included:
            raise ValueError("A pack period must include at least one service")
        for service_id, quantity in included.items():
            self.pricing.standalone_price(service_id)
            if not isinstance(quantity, int) or quantity < 0:
                raise ValueError(f"Included quantity for {service_id} must be a non-negative integer")
        if sum(included.values()) <= 0:
            raise ValueError("A pack period must include a positive total quantity")
        price = Decimal(price)
        if price < 0:
            raise ValueError("price must be >= 0")

        starts_at, ends_at = period_bounds(period_key, self.config.timezone)
        period = PackPeriod(
            id=period_id or str(uuid.uuid4()),
            client_id=client_id,
            pack_id=pack_id,
            period_key=period_key,
            starts_at=starts_at,
            ends_at=ends_at,
            price=to_cents(price),
            included=dict(included),
            consumed={service_id: 0 for service_id in included},
        )
        with transaction(self.db_path, timeout=self.config.lock_timeout_seconds) as tx:
            PackPeriodRepository(tx).insert_period(period)
        logger.info(
            "Pack period opened",
            period_id=period.id,
            client_id=client_id,
            period_key=period_key,
            included=period.included,
        )
        return period

    def consume(
        self,
        client_id: str,
        service_id: str,
        quantity: int,
        period_key: str,
        request_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
        now: Optional[datetime] = None,
    ) -> ConsumptionResult:
        """Consume pack quota for delivered units, billing any excess as overage.

        Without an open period for the month (or when the pack doesn't
        include the service) the whole quantity is overage at the service's
        standalone price. With one, included quantity is drawn down to zero
        and the rest is overage at the pack's unit price.

        When ``conn`` is given the caller must already hold
        ``lock_key(client_id, period_key, service_id)``; the lock is always
        taken before the database write lock.

        Raises:
            ValueError: If quantity < 1 or the service is unknown
            Contended: If the quota row or the database is locked too long
        """
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        standalone_price = self.pricing.standalone_price(service_id)
        now = to_billing_time(now or datetime.now(self.config.timezone), self.config.timezone)

        if conn is not None:
            return self._consume(conn, client_id, service_id, quantity, period_key,
                                 standalone_price, request_id, now)
        with self.locks.hold(self.lock_key(client_id, period_key, service_id)):
            with transaction(self.db_path, timeout=self.config.lock_timeout_seconds) as tx:
                return self._consume(tx, client_id, service_id, quantity, period_key,
                                     standalone_price, request_id, now)

    def _consume(
        self,
        tx: sqlite3.Connection,
        client_id: str,
        service_id: str,
        quantity: int,
        period_key: str,
        standalone_price: Decimal,
        request_id: Optional[str],
        now: datetime,
    ) -> ConsumptionResult:
        repository = PackPeriodRepository(tx)
        try:
            period = repository.find_open_period(client_id, period_key)
        except QuotaPeriodNotFound as e:
            logger.debug("No pack period, using standalone price", reason=str(e))
            period = None

        covered = 0
        unit_price = standalone_price
        if period is not None and service_id in period.included:
            covered = min(period.remaining(service_id), quantity)
            unit_price = unit_overage_price(period)
            if covered:
                repository.add_consumed(period.id, service_id, covered)

        overage = quantity - covered
        result = ConsumptionResult(
            covered_quantity=covered,
            overage_quantity=overage,
            unit_overage_price=unit_price,
            overage_amount=to_cents(unit_price * overage),
            period_id=period.id if period is not None else None,
        )
        repository.insert_consumption(QuotaConsumption(
            client_id=client_id,
            service_id=service_id,
            period_key=period_key,
            requested_quantity=quantity,
            covered_quantity=result.covered_quantity,
            overage_quantity=result.overage_quantity,
            unit_overage_price=result.unit_overage_price,
            overage_amount=result.overage_amount,
            recorded_at=now,
            period_id=result.period_id,
            request_id=request_id,
        ))
        if overage:
            logger.info(
                "Quota overage",
                client_id=client_id,
                service_id=service_id,
                period_key=period_key,
                overage_quantity=overage,
                amount=str(result.overage_amount),
            )
        return result

    def close_period(self, period_id: str, now: Optional[datetime] = None) -> RecordResult:
        """Close a period and record its pack fee.

        Remaining quota is discarded. Closing twice returns the fee entry
        recorded the first time.

        Raises:
            KeyError: If the period doesn't exist
        """
        now = to_billing_time(now or datetime.now(self.config.timezone), self.config.timezone)
        with transaction(self.db_path, timeout=self.config.lock_timeout_seconds) as tx:
            repository = PackPeriodRepository(tx)
            period = repository.get_period(period_id)
            if period is None:
                raise KeyError(f"Pack period not found: {period_id}")
            newly_closed = repository.mark_closed(period_id)
            result = self.ledger.record_period_close(
                period.id, period.client_id, period.price,
                period_key=period.period_key, conn=tx, now=now,
            )

        unused = {service_id: period.remaining(service_id) for service_id in period.included}
        if newly_closed:
            logger.info(
                "Pack period closed",
                period_id=period_id,
                client_id=period.client_id,
                period_key=period.period_key,
                unused=unused,
            )
            self.event_bus.publish(PeriodClosed(
                period_id=period_id,
                client_id=period.client_id,
                period_key=period.period_key,
                unused=unused,
                occurred_at=now,
            ))
        if result.created:
            self.event_bus.publish(entry_created(result.entry))
        return result

    def get_period(self, period_id: str) -> Optional[PackPeriod]:
        conn = get_connection(self.db_path)
        try:
            return PackPeriodRepository(conn).get_period(period_id)
        finally:
            conn.close()

    def remaining(self, period_id: str) -> Dict[str, int]:
        """Included quantity still available per service.

        Raises:
            KeyError: If the period doesn't exist
        """
        period = self.get_period(period_id)
        if period is None:
            raise KeyError(f"Pack period not found: {period_id}")
        if period.closed:
            return {service_id: 0 for service_id in period.included}
        return {service_id: period.remaining(service_id) for service_id in period.included}
