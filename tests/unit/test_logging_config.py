"""Tests for utils/logging_config.py."""

import pytest
import structlog

from spindle.utils.logging_config import configure_logging, reconcile_context


@pytest.fixture(autouse=True)
def restore_structlog():
    yield
    structlog.reset_defaults()


class TestConfigureLogging:
    def test_json_renderer(self):
        configure_logging("info")

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert structlog.processors.format_exc_info in processors

    def test_console_renderer(self):
        configure_logging("DEBUG", "console")

        assert isinstance(structlog.get_config()["processors"][-1], structlog.dev.ConsoleRenderer)

    @pytest.mark.parametrize("level,log_format", [("LOUD", "json"), ("INFO", "xml")])
    def test_rejects_unknown_values(self, level, log_format):
        with pytest.raises(ValueError):
            configure_logging(level, log_format)


class TestReconcileContext:
    def test_binds_and_unbinds(self):
        with reconcile_context("Task", "default", "fix-42"):
            assert structlog.contextvars.get_contextvars() == {
                "kind": "Task",
                "namespace": "default",
                "name": "fix-42",
            }

        assert structlog.contextvars.get_contextvars() == {}
