# ABOUTME: Structured logging with correlation IDs for clustersync
# ABOUTME: Configures structlog and records tool calls in an audit trail

"""
Logging for clustersync.

Three pieces live here:

- configure_logging() sets up structlog. Output goes to stderr because stdout
  carries the MCP stdio transport. Console rendering by default, JSON lines
  when CLUSTERSYNC_LOG_JSON is set.

- A correlation id kept in a ContextVar. Each tool call sets it from the MCP
  request id; the add_correlation_id processor stamps it on every event. A
  sync fans out into one asyncio task per target instance and every task
  inherits the id of the call that created it, so the adapter requests of one
  sync can be grepped together.

- AuditLogger, which writes one JSON object per tool call: what was read,
  changed, refused or failed. Secret values never appear in these entries;
  callers pass key names and counts only.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """Return the id for the current context, creating one on first use."""
    current = correlation_id.get()
    if current:
        return current
    fresh = uuid.uuid4().hex[:8]
    correlation_id.set(fresh)
    return fresh


def set_correlation_id(cid: str) -> None:
    """Bind `cid` to the current context. An empty string means "generate on next read"."""
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Install the structlog pipeline. Unknown level names fall back to INFO."""
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )
    threshold = getattr(logging, level.upper(), None)
    if not isinstance(threshold, int):
        threshold = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_correlation_id,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


class AuditLogger:
    """
    Append-only record of tool calls.

    With a path (MCP_AUDIT_LOG) each entry is one JSON line in that file.
    Without one, entries are emitted as "audit" events on the structlog logger
    of the same name.

        {"timestamp": "2026-03-02T08:15:00+00:00", "correlation_id": "9f1c2e7a",
         "action": "sync_services", "target": "api-prod",
         "result": "partial", "details": {"operation_id": "...", "failed": 1}}

    `result` is "success" for reads, the final sync status for writes
    ("completed", "partial", "failed"), "blocked" or "error".
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self._path = log_path
        self._events = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            record["details"] = details

        if self._path is None:
            fields = {k: v for k, v in record.items() if k != "timestamp"}
            self._events.info("audit", **fields)
            return

        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(record, default=str))
            fh.write("\n")

    def log_read(self, action: str, target: str) -> None:
        self.log(action, target, "success")

    def log_write(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record a sync or image update with its final status."""
        self.log(action, target, result, details)

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        self.log(action, target, "error", {"error": error})
