"""
Lifecycle events.

The engine never sends notifications itself; it publishes these events after
a unit of work commits so an external dispatcher can subscribe.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Type

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Assigned:
    request_id: str
    assignee_id: Optional[str]
    vendor_id: str
    assigned_by: str
    occurred_at: datetime


@dataclass(frozen=True)
class ChangeRequested:
    request_id: str
    requested_by: str
    change_request_count: int
    occurred_at: datetime
    note: Optional[str] = None


@dataclass(frozen=True)
class Resumed:
    request_id: str
    resumed_by: str
    occurred_at: datetime


@dataclass(frozen=True)
class Delivered:
    request_id: str
    client_id: str
    delivered_by: str
    occurred_at: datetime
    on_time: Optional[bool]
    amount: Decimal


@dataclass(frozen=True)
class Canceled:
    request_id: str
    canceled_by: str
    previous_status: str
    occurred_at: datetime


@dataclass(frozen=True)
class EntryCreated:
    entry_id: int
    source_kind: str
    source_id: str
    client_id: str
    amount: Decimal
    occurred_at: datetime


@dataclass(frozen=True)
class EntryPaid:
    entry_id: int
    client_id: str
    amount: Decimal
    occurred_at: datetime


@dataclass(frozen=True)
class PeriodClosed:
    period_id: str
    client_id: str
    period_key: str
    unused: Dict[str, int]
    occurred_at: datetime


@dataclass(frozen=True)
class VendorPayableRecorded:
    payable_id: int
    request_id: str
    vendor_id: str
    amount: Decimal
    occurred_at: datetime


@dataclass(frozen=True)
class VendorPaid:
    payable_id: int
    vendor_id: str
    amount: Decimal
    occurred_at: datetime


Handler = Callable[[object], None]


class EventBus:
    """In-process publish/subscribe keyed by event class."""

    def __init__(self):
        self._handlers: Dict[Type, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def publish(self, event: object) -> None:
        """Deliver an event to every subscriber of its type.

        Events are only published for committed work, so a failing subscriber
        cannot undo the transition; its error is logged with the traceback
        and the remaining subscribers still run.
        """
        for handler in list(self._handlers.get(type(event), ())):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event subscriber failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__name__", repr(handler)),
                )

    def publish_all(self, events: List[object]) -> None:
        for event in events:
            self.publish(event)
