"""
Error taxonomy for the fulfillment engine.

Callers retry VersionConflict and Contended; everything else surfaces as-is.
"""

from typing import Optional

from fulfillment_engine.storage.models import Request


class EngineError(Exception):
    """Base class for all engine errors."""


class InvalidTransition(EngineError):
    """Raised when a status change is not allowed from the current state.

    Carries the current authoritative request so callers can re-render
    without assuming success.
    """
    def __init__(self, reason: str, request: Optional[Request] = None):
        super().__init__(reason)
        self.reason = reason
        self.request = request


class NotPermitted(InvalidTransition):
    """Raised when the actor's role or identity may not perform a transition."""


class VersionConflict(EngineError):
    """Raised when a save finds a different version than the one read."""
    def __init__(self, entity_id: str, expected_version: int):
        super().__init__(
            f"Version conflict on {entity_id}: expected version {expected_version}"
        )
        self.entity_id = entity_id
        self.expected_version = expected_version


class NoEligibleAssignee(EngineError):
    """Raised when the balancer finds no vendor or designer to take the work."""


class QuotaPeriodNotFound(EngineError):
    """Raised when a client has no open pack period for a month.

    Not fatal: the quota ledger falls back to standalone pricing.
    """
    def __init__(self, client_id: str, period_key: str):
        super().__init__(f"No open pack period for client {client_id} in {period_key}")
        self.client_id = client_id
        self.period_key = period_key


class DuplicateLedgerEntry(EngineError):
    """Raised by the ledger store on an idempotency-key collision."""
    def __init__(self, source_kind: str, source_id: str):
        super().__init__(f"Ledger entry already exists for {source_kind}:{source_id}")
        self.source_kind = source_kind
        self.source_id = source_id


class AlreadyPaid(EngineError):
    """A mark-paid target that is no longer pending. Reported, never raised."""
    def __init__(self, entry_id: int, kind: str = "Ledger entry"):
        super().__init__(f"{kind} {entry_id} is already paid")
        self.entry_id = entry_id


class Contended(EngineError):
    """Raised when a lock or the database write lock is not acquired in time.

    Safe to retry with backoff.
    """
