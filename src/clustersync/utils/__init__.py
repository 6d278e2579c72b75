# ABOUTME: Utilities package initialization for clustersync
# ABOUTME: Contains shared utilities for logging and safety

"""
clustersync utilities package

Shared utilities:
    - logging.py: Structured logging with correlation IDs and audit trail
    - safety.py: Read-only guard and rate limiting for MCP tools
"""
