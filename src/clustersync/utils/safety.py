# ABOUTME: Safety utilities for clustersync
# ABOUTME: Read-only gate for sync tools and per-operation rate limiting

"""Safety utilities: read-only mode and rate limits for MCP tools."""

from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from clustersync.config import SecuritySettings

logger = structlog.get_logger(__name__)

READ_ONLY_SETTING = "MCP_READ_ONLY"
RATE_LIMIT_SETTING = "MCP_RATE_LIMIT_CALLS"


@dataclass
class OperationBlocked:
    """A tool call the guard refused, with the setting that controls it."""

    operation: str
    reason: str
    setting: str

    def format_message(self) -> str:
        """Text handed back to the agent instead of the tool result."""
        if self.setting == READ_ONLY_SETTING:
            hint = f"Set {READ_ONLY_SETTING}=false to allow syncing workloads, config maps and secrets"
        else:
            hint = f"Wait for the window to pass or raise {self.setting}"
        return "\n".join(
            [
                f"OPERATION BLOCKED: {self.operation}",
                f"Reason: {self.reason}",
                f"Setting: {self.setting}",
                hint,
            ]
        )


class RateLimiter:
    """Sliding-window call counter keyed by operation."""

    def __init__(self, max_calls: int = 100, window_seconds: int = 60) -> None:
        self._max_calls = max_calls
        self._window = window_seconds
        self._stamps: dict[str, deque[float]] = defaultdict(deque)

    def check(self, key: str) -> bool:
        """Record a call under `key` ("read:list_workloads", "write:sync_services").

        Returns False without recording when the window is already full.
        """
        now = time.monotonic()
        stamps = self._stamps[key]
        while stamps and now - stamps[0] >= self._window:
            stamps.popleft()

        if len(stamps) >= self._max_calls:
            logger.warning("Tool call rate limited", key=key, window=self._window)
            return False

        stamps.append(now)
        return True

    def reset(self, key: str | None = None) -> None:
        """Forget recorded calls for one key, or for every key when None."""
        if key is None:
            self._stamps.clear()
            return
        self._stamps.pop(key, None)


class SafetyGuard:
    """Gatekeeper every MCP tool consults before touching a backend."""

    def __init__(self, settings: SecuritySettings) -> None:
        self._settings = settings
        self._limiter = RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
        )

    @property
    def read_only(self) -> bool:
        return self._settings.read_only

    def _throttled(self, scope: str, operation: str) -> OperationBlocked | None:
        if self._limiter.check(f"{scope}:{operation}"):
            return None
        return OperationBlocked(operation, "Rate limit exceeded", RATE_LIMIT_SETTING)

    def check_read_operation(self, operation: str) -> OperationBlocked | None:
        """Listings, comparisons and connection tests are only rate limited."""
        return self._throttled("read", operation)

    def check_write_operation(self, operation: str) -> OperationBlocked | None:
        """Sync and image updates are refused outright in read-only mode."""
        if self.read_only:
            logger.info("Write refused in read-only mode", operation=operation)
            return OperationBlocked(
                operation, "Server is running in read-only mode", READ_ONLY_SETTING
            )
        return self._throttled("write", operation)
