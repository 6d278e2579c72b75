# ABOUTME: Exception taxonomy shared by cluster adapters, registry adapters and the core
# ABOUTME: Maps backend failures to typed errors carrying a human-actionable message

"""
Error types for clustersync.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Every backend failure is converted into one of a small set of exceptions so
callers can react to the KIND of failure instead of parsing HTTP codes:

    AdapterError                 <- base: any backend failure with context
    ├── NotFound                 <- site, instance or resource absent
    ├── OperationNotSupported    <- registry capability gap
    ├── ConnectionFailed         <- network problem (refused, DNS, timeout)
    ├── AuthFailed               <- 401/403 from the backend
    └── UnsupportedWorkloadKind  <- not a Deployment/DaemonSet/StatefulSet

All of them keep the same three pieces of information:

1. code: HTTP-style status code (404, 401...) or None when not HTTP related
2. message: short human-readable summary, including a hint where possible
3. details: extra context (raw response body excerpt, original exception)

Usage:
    try:
        workloads = await adapter.list_workloads("c-abc", "default")
    except AuthFailed as e:
        print(e.message)  # "Authentication failed - check token"
"""

from __future__ import annotations


class AdapterError(Exception):
    """
    Base error for backend and core failures.

    Mirrors the shape of an API error: status code, message, details.
    Subclasses only change the default code so that `except AdapterError`
    still catches everything raised by an adapter.
    """

    default_code: int | None = None

    def __init__(
        self,
        message: str,
        code: int | None = None,
        details: str | None = None,
    ) -> None:
        self.code = code if code is not None else self.default_code
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        """Format as "Error (code): message - details"."""
        prefix = f"Error ({self.code})" if self.code is not None else "Error"
        msg = f"{prefix}: {self.message}"
        if self.details:
            msg += f" - {self.details}"
        return msg


class NotFound(AdapterError):
    """Referenced site, instance or resource does not exist."""

    default_code = 404


class OperationNotSupported(AdapterError):
    """The registry variant has no such operation (distinct from an empty result)."""

    default_code = 501


class ConnectionFailed(AdapterError):
    """Backend unreachable: refused, unresolvable host or timeout."""

    default_code = 503


class AuthFailed(AdapterError):
    """Backend rejected the credentials (401) or the permissions (403)."""

    default_code = 401


class UnsupportedWorkloadKind(AdapterError):
    """Workload kind is not one of deployment, daemonset, statefulset."""

    default_code = 400
