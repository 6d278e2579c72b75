# ABOUTME: Configuration management for clustersync
# ABOUTME: Environment settings, security modes, and the YAML inventory of sites and app instances

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Two kinds of configuration live here:

1. SETTINGS (environment variables): timeouts, TLS, concurrency, logging,
   read-only mode. Read by pydantic-settings, validated at startup.

2. INVENTORY (YAML file): the cluster sites, registry sites and app instances
   the server knows about. Validated with pydantic models, then turned into
   the core's dataclasses by store.py.

=============================================================================
ARCHITECTURE: CONFIGURATION CLASSES
=============================================================================

1. ProxiedSiteConfig / DirectSiteConfig / RegistrySiteConfig / AppInstanceConfig
   - One entry of the inventory file each
   - BaseModel, not BaseSettings: they come from YAML, not the environment

2. SecuritySettings (MCP_* prefix)
   - Read-only mode, audit log, rate limiting
   - Controls whether sync tools may mutate clusters

3. ServerSettings (CLUSTERSYNC_* prefix)
   - Inventory path, HTTP timeout, TLS, sync fan-out, logging
   - Contains SecuritySettings as nested object

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Server settings (CLUSTERSYNC_ prefix):
    CLUSTERSYNC_INVENTORY_FILE        -> YAML inventory path
    CLUSTERSYNC_HTTP_TIMEOUT          -> Per-request timeout in seconds (default: 30)
    CLUSTERSYNC_INSECURE              -> Skip TLS verification for Rancher/Harbor
    CLUSTERSYNC_SYNC_CONCURRENCY      -> Target instances synced in parallel (default: 4)
    CLUSTERSYNC_SYNC_RETRY_ATTEMPTS   -> Attempts per workload update (default: 1)
    CLUSTERSYNC_DOCKERHUB_URL         -> DockerHub API base
    CLUSTERSYNC_LOG_LEVEL             -> DEBUG/INFO/WARNING/ERROR/CRITICAL
    CLUSTERSYNC_LOG_JSON              -> JSON log output

Security settings (MCP_ prefix):
    MCP_READ_ONLY           -> Block all sync operations (default: true)
    MCP_AUDIT_LOG           -> Path to audit log file
    MCP_RATE_LIMIT_CALLS    -> Max tool calls per window (default: 100)
    MCP_RATE_LIMIT_WINDOW   -> Rate limit window in seconds (default: 60)
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated, Literal

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# INVENTORY ENTRIES
# =============================================================================


def _normalize_url(v: str) -> str:
    """Add https:// when no scheme is given and drop trailing slashes."""
    if not v.startswith(("http://", "https://")):
        v = f"https://{v}"
    return v.rstrip("/")


class ProxiedSiteConfig(BaseModel):
    """
    A Rancher server.

    USAGE EXAMPLE:
    --------------
        site = ProxiedSiteConfig(
            id="rancher-prod",
            name="Rancher production",
            url="rancher.example.com",
            token=SecretStr("token-abc:xyz"),
        )
        site.url  # "https://rancher.example.com"
    """

    model_config = {"extra": "ignore"}

    id: str = Field(description="Stable site identifier")
    name: str = Field(default="", description="Display name")
    url: str = Field(description="Rancher server URL")
    token: SecretStr = Field(description="Rancher API bearer token")
    active: bool = Field(default=False, description="Default site for new instances")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Ensure scheme, no trailing slash, and no /v3 suffix (added per call)."""
        v = _normalize_url(v)
        return v[: -len("/v3")] if v.endswith("/v3") else v


class DirectSiteConfig(BaseModel):
    """
    A cluster reached with a kubeconfig.

    The kubeconfig is given inline (`kubeconfig`) or by path
    (`kubeconfig_file`); exactly one is required.
    """

    model_config = {"extra": "ignore"}

    id: str
    name: str = ""
    kubeconfig: SecretStr | None = None
    kubeconfig_file: Path | None = None
    cluster_name: str = Field(default="", description="Context or cluster name to use")
    server_url: str = Field(default="", description="Override the kubeconfig server URL")
    active: bool = False

    @model_validator(mode="after")
    def check_kubeconfig_source(self) -> DirectSiteConfig:
        if (self.kubeconfig is None) == (self.kubeconfig_file is None):
            raise ValueError("exactly one of kubeconfig or kubeconfig_file is required")
        return self

    def kubeconfig_text(self) -> str:
        if self.kubeconfig is not None:
            return self.kubeconfig.get_secret_value()
        assert self.kubeconfig_file is not None
        return self.kubeconfig_file.read_text()


class RegistrySiteConfig(BaseModel):
    """A Harbor instance."""

    model_config = {"extra": "ignore"}

    id: str
    name: str = ""
    url: str
    username: str = ""
    password: SecretStr = SecretStr("")
    active: bool = False

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _normalize_url(v)


class AppInstanceConfig(BaseModel):
    """An app instance: cluster + namespace on one site."""

    model_config = {"extra": "ignore"}

    id: str
    name: str = ""
    cluster: str = Field(default="", description="Rancher cluster id; ignored for direct sites")
    namespace: str
    backend_kind: Literal["proxied", "direct"]
    proxied_site_id: str | None = None
    direct_site_id: str | None = None
    environment_id: str | None = None
    environment_name: str | None = None


class InventoryConfig(BaseModel):
    """Top-level shape of the inventory YAML file."""

    model_config = {"extra": "ignore"}

    proxied_sites: list[ProxiedSiteConfig] = Field(default_factory=list)
    direct_sites: list[DirectSiteConfig] = Field(default_factory=list)
    registry_sites: list[RegistrySiteConfig] = Field(default_factory=list)
    app_instances: list[AppInstanceConfig] = Field(default_factory=list)


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    Security-related configuration.

    Layer 1: MCP_READ_ONLY=true (default)
        - Compare and list tools work
        - Every sync/update tool is refused

    Layer 2: Rate limiting (MCP_RATE_LIMIT_*)
        - Stops runaway loops from hammering cluster APIs
    """

    model_config = SettingsConfigDict(env_prefix="MCP_")

    read_only: bool = Field(
        default=True,
        description="Block all sync operations when true",
    )

    audit_log: Path | None = Field(
        default=None,
        description="Path to audit log file",
    )
    # One JSON object per line: timestamp, correlation_id, action, target, result

    rate_limit_calls: int = Field(
        default=100,
        description="Maximum tool calls per window",
    )

    rate_limit_window: int = Field(
        default=60,
        description="Rate limit window in seconds",
    )


# =============================================================================
# MAIN SERVER SETTINGS
# =============================================================================


class ServerSettings(BaseSettings):
    """
    Main server configuration.

    USAGE:
    ------
        settings = load_settings()
        settings.http_timeout        # 30.0
        settings.security.read_only  # True
    """

    model_config = SettingsConfigDict(
        env_prefix="CLUSTERSYNC_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    inventory_file: Path | None = Field(
        default=None,
        description="YAML file listing sites and app instances",
    )

    http_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Backend request timeout in seconds",
    )

    insecure: bool = Field(
        default=False,
        description="Skip TLS verification for Rancher and Harbor sites",
    )
    # Direct sites follow their kubeconfig's insecure-skip-tls-verify instead.

    sync_concurrency: int = Field(
        default=4,
        ge=1,
        description="Target app instances synced in parallel",
    )

    sync_retry_attempts: int = Field(
        default=1,
        ge=1,
        description="Attempts per workload image update on connection failures",
    )
    # 1 means no retry. Adapters themselves never retry.

    dockerhub_url: str = Field(
        default="https://hub.docker.com/v2",
        description="DockerHub API base URL",
    )

    server_name: str = Field(
        default="clustersync",
        description="MCP server name",
    )

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    log_json: bool = Field(
        default=False,
        description="Emit JSON log lines instead of console output",
    )

    security: SecuritySettings = Field(default_factory=SecuritySettings)


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> ServerSettings:
    """
    Load settings from environment with validation.

    If CLUSTERSYNC_ENV_FILE is set, additional variables are read from that
    file. Useful for local development.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ServerSettings(
        _env_file=os.environ.get("CLUSTERSYNC_ENV_FILE"),
    )
