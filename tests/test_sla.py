"""
Unit tests for SLA evaluation and reporting.
"""

from datetime import datetime, timedelta

import pytest

from fulfillment_engine.core.sla import SlaEvaluation, SlaEvaluator, summarize

ASSIGNED = datetime(2024, 1, 10, 9, 0, 0)


class TestSlaEvaluator:
    """Test on-time classification."""

    def test_over_target_is_late(self, config):
        """30 hours against a one-day target is late."""
        result = SlaEvaluator(config).evaluate("design", ASSIGNED, ASSIGNED + timedelta(hours=30))
        assert result.actual_hours == 30.0
        assert result.target_hours == 24.0
        assert result.on_time is False

    def test_exactly_on_target_is_on_time(self, config):
        result = SlaEvaluator(config).evaluate("design", ASSIGNED, ASSIGNED + timedelta(hours=24))
        assert result.on_time is True

    def test_fractional_hours(self, config):
        result = SlaEvaluator(config).evaluate("post", ASSIGNED, ASSIGNED + timedelta(minutes=90))
        assert result.actual_hours == pytest.approx(1.5)
        assert result.on_time is True

    def test_bundle_target(self, config):
        result = SlaEvaluator(config).evaluate("kit", ASSIGNED, ASSIGNED + timedelta(days=3, hours=1))
        assert result.target_hours == 72.0
        assert result.on_time is False

    def test_no_target_configured(self, config):
        result = SlaEvaluator(config).evaluate("copy", ASSIGNED, ASSIGNED + timedelta(hours=2))
        assert result.actual_hours == 2.0
        assert result.target_hours is None
        assert result.on_time is None

    def test_never_assigned(self, config):
        result = SlaEvaluator(config).evaluate("design", None, ASSIGNED)
        assert result.actual_hours is None
        assert result.on_time is None

    def test_unknown_service_has_no_target(self, config):
        assert SlaEvaluator(config).target_hours("video") is None


class TestSlaSummary:
    """Test report aggregation."""

    def test_counts_and_percentage(self):
        summary = summarize([
            SlaEvaluation(10.0, 24.0, True),
            SlaEvaluation(30.0, 24.0, False),
            SlaEvaluation(50.0, 24.0, False),
            SlaEvaluation(2.0, None, None),
        ])
        assert summary.total_delivered == 4
        assert summary.delivered_with_sla == 3
        assert summary.on_time == 1
        assert summary.over_sla == 2
        assert summary.over_sla_percentage == 67

    def test_empty(self):
        summary = summarize([])
        assert summary.total_delivered == 0
        assert summary.over_sla_percentage == 0
