"""
SLA evaluation and reporting.

Compares actual turnaround against the configured target for a service or
bundle type.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from fulfillment_engine.config.loader import EngineConfig

SECONDS_PER_HOUR = 3600.0


@dataclass(frozen=True)
class SlaEvaluation:
    """Outcome of one SLA check.

    ``on_time`` is None when the request can't be classified: no target is
    configured, or it was never formally assigned.
    """
    actual_hours: Optional[float]
    target_hours: Optional[float]
    on_time: Optional[bool]


@dataclass(frozen=True)
class SlaSummary:
    """Aggregate SLA performance over a set of deliveries."""
    total_delivered: int
    delivered_with_sla: int
    on_time: int
    over_sla: int
    over_sla_percentage: int


class SlaEvaluator:
    """Classifies deliveries against configured SLA targets."""

    def __init__(self, config: EngineConfig):
        self.config = config

    def target_hours(self, service_type: str) -> Optional[float]:
        service = self.config.services.get(service_type)
        if service is None or service.sla is None:
            return None
        return service.sla.target_hours

    def evaluate(
        self,
        service_type: str,
        assigned_at: Optional[datetime],
        delivered_at: datetime,
    ) -> SlaEvaluation:
        """Compute actual turnaround and on-time classification.

        Args:
            service_type: Service or bundle type id
            assigned_at: When work was assigned; None if never assigned
            delivered_at: When work was delivered

        Returns:
            SlaEvaluation with fractional hours
        """
        target = self.target_hours(service_type)
        if assigned_at is None:
            return SlaEvaluation(actual_hours=None, target_hours=target, on_time=None)

        actual = (delivered_at - assigned_at).total_seconds() / SECONDS_PER_HOUR
        on_time = None if target is None else actual <= target
        return SlaEvaluation(actual_hours=actual, target_hours=target, on_time=on_time)


def summarize(evaluations: Iterable[SlaEvaluation]) -> SlaSummary:
    """Aggregate evaluations the way the vendor SLA report does.

    Unclassifiable deliveries count toward total_delivered only.
    """
    total = 0
    with_sla = 0
    on_time = 0
    for evaluation in evaluations:
        total += 1
        if evaluation.on_time is None:
            continue
        with_sla += 1
        if evaluation.on_time:
            on_time += 1
    over = with_sla - on_time
    percentage = round(over / with_sla * 100) if with_sla else 0
    return SlaSummary(
        total_delivered=total,
        delivered_with_sla=with_sla,
        on_time=on_time,
        over_sla=over,
        over_sla_percentage=percentage,
    )
