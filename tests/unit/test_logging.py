# ABOUTME: Unit tests for logging utilities
# ABOUTME: Tests correlation IDs, configure_logging, and the AuditLogger class

import asyncio
import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import structlog

from clustersync.utils.logging import (
    AuditLogger,
    add_correlation_id,
    configure_logging,
    correlation_id,
    get_correlation_id,
    set_correlation_id,
)


def _entries(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text().splitlines()]


@pytest.mark.unit
class TestCorrelationId:
    """Tests for correlation ID generation and context management."""

    def test_get_correlation_id_generates_new_when_empty(self):
        """Test that get_correlation_id generates a hex ID when none exists."""
        correlation_id.set("")

        cid = get_correlation_id()

        assert len(cid) == 8
        int(cid, 16)

    def test_get_correlation_id_preserves_value(self):
        """Test that subsequent calls return the same ID."""
        correlation_id.set("")

        assert get_correlation_id() == get_correlation_id()

    def test_set_correlation_id(self):
        """Test that set_correlation_id sets the correlation ID."""
        set_correlation_id("abcd5678")

        assert correlation_id.get() == "abcd5678"
        assert get_correlation_id() == "abcd5678"

    async def test_tasks_inherit_id(self):
        """Test that tasks spawned by a tool call log under its ID."""
        set_correlation_id("parent01")

        async def child() -> str:
            return get_correlation_id()

        results = await asyncio.gather(child(), child())

        assert results == ["parent01", "parent01"]


@pytest.mark.unit
class TestAddCorrelationId:
    """Tests for the add_correlation_id processor function."""

    def test_adds_correlation_id_to_event_dict(self):
        """Test that correlation ID is added to event dictionary."""
        set_correlation_id("proc1234")

        result = add_correlation_id(MagicMock(), "info", {"event": "test_event"})

        assert result["correlation_id"] == "proc1234"
        assert result["event"] == "test_event"


@pytest.mark.unit
class TestConfigureLogging:
    """Tests for configure_logging."""

    def teardown_method(self):
        structlog.reset_defaults()

    def test_console_output(self):
        """Test that the console renderer ends the pipeline by default."""
        configure_logging()

        processors = structlog.get_config()["processors"]
        assert add_correlation_id in processors
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_output(self):
        """Test that json_output selects the JSON renderer."""
        configure_logging(level="DEBUG", json_output=True)

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_unknown_level_falls_back_to_info(self):
        """Test that an unknown level name does not raise."""
        with patch("clustersync.utils.logging.structlog.make_filtering_bound_logger") as make:
            configure_logging(level="chatty")

        make.assert_called_once_with(20)


@pytest.mark.unit
class TestAuditLogger:
    """Tests for AuditLogger."""

    def test_log_to_file(self, tmp_path: Path):
        """Test that entries are appended as JSON lines with the correlation ID."""
        path = tmp_path / "audit.log"
        set_correlation_id("audit001")
        audit = AuditLogger(path)

        audit.log_read("compare_services", "api-staging -> api-prod")
        audit.log_write("sync_services", "api-prod", "partial", {"failed": 1})

        first, second = _entries(path)
        assert first["action"] == "compare_services"
        assert first["result"] == "success"
        assert first["correlation_id"] == "audit001"
        assert "details" not in first
        assert second["result"] == "partial"
        assert second["details"] == {"failed": 1}

    def test_blocked_and_error(self, tmp_path: Path):
        """Test the blocked and error convenience methods."""
        path = tmp_path / "audit.log"
        audit = AuditLogger(path)

        audit.log_blocked("sync_services", "api-prod", "read-only mode")
        audit.log_error("list_workloads", "api-prod", "Error (503): Connection refused")

        blocked, error = _entries(path)
        assert blocked["result"] == "blocked"
        assert blocked["details"] == {"reason": "read-only mode"}
        assert error["result"] == "error"
        assert "503" in error["details"]["error"]

    def test_timestamp_is_utc(self, tmp_path: Path):
        """Test that timestamps are ISO 8601 in UTC."""
        path = tmp_path / "audit.log"
        AuditLogger(path).log_read("list_namespaces", "rancher")

        assert _entries(path)[0]["timestamp"].endswith("+00:00")

    def test_log_without_file(self):
        """Test that entries go to the audit structlog logger without a path."""
        audit = AuditLogger()

        with structlog.testing.capture_logs() as logs:
            audit.log_read("list_workloads", "api-prod")

        assert logs[0]["event"] == "audit"
        assert logs[0]["action"] == "list_workloads"
        assert logs[0]["result"] == "success"
