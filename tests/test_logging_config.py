"""
Tests for logging configuration.
"""

import logging

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, get_contextvars

from fulfillment_engine.logging_config import actor_context, configure_logging, get_log_level


class TestLogLevel:
    """Test log level resolution from the environment."""

    def test_explicit_level_wins(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("ENVIRONMENT", "production")
        assert get_log_level() == "DEBUG"

    def test_environment_default(self, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        monkeypatch.delenv("ENV", raising=False)
        monkeypatch.setenv("ENVIRONMENT", "test")
        assert get_log_level() == "WARNING"


class TestConfigureLogging:
    """Test process-wide setup."""

    def test_configures_root_and_structlog(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            configure_logging(level="WARNING", json_output=True)
            assert root.level == logging.WARNING
            assert len(root.handlers) == 1
            assert structlog.is_configured()
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
            structlog.reset_defaults()


class TestActorContext:
    """Test binding the acting user to log lines."""

    def test_binds_and_unbinds_actor(self):
        with actor_context("alice"):
            assert get_contextvars()["actor"] == "alice"
        assert "actor" not in get_contextvars()

    def test_restores_outer_binding(self):
        bind_contextvars(actor="batch-job", run="nightly")
        try:
            with actor_context("alice"):
                assert get_contextvars() == {"actor": "alice", "run": "nightly"}
            assert get_contextvars() == {"actor": "batch-job", "run": "nightly"}
        finally:
            clear_contextvars()

    def test_unbinds_when_block_raises(self):
        try:
            with actor_context("alice"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert "actor" not in get_contextvars()
