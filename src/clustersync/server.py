# ABOUTME: FastMCP server initialization and main entry point
# ABOUTME: Exposes comparison, sync and registry operations as MCP tools behind the safety guard

"""clustersync MCP server - compare and sync app instances across clusters."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Literal

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from clustersync.adapters.factory import ClusterAdapterFactory, RegistryAdapterFactory
from clustersync.compare import ComparisonEngine, ServiceInventory, load_instance
from clustersync.config import ServerSettings, load_settings
from clustersync.errors import AdapterError
from clustersync.store import InMemoryStore, load_inventory
from clustersync.sync import SyncOrchestrator
from clustersync.utils.logging import AuditLogger, configure_logging, set_correlation_id
from clustersync.utils.safety import SafetyGuard

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from clustersync.compare import ComparisonReport
    from clustersync.sync import SyncReport

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: ServerSettings | None = None
_store: InMemoryStore | None = None
_cluster_factory: ClusterAdapterFactory | None = None
_registry_factory: RegistryAdapterFactory | None = None
_engine: ComparisonEngine | None = None
_orchestrator: SyncOrchestrator | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None


def init_state(settings: ServerSettings, store: InMemoryStore) -> None:
    """Wire settings and store into the factories, engine and orchestrator."""
    global _settings, _store, _cluster_factory, _registry_factory
    global _engine, _orchestrator, _safety_guard, _audit_logger

    _settings = settings
    _store = store
    _cluster_factory = ClusterAdapterFactory(store, settings)
    _registry_factory = RegistryAdapterFactory(store, settings)
    _engine = ComparisonEngine(store, _cluster_factory, ServiceInventory(store, _cluster_factory))
    _orchestrator = SyncOrchestrator(store, _cluster_factory, _registry_factory, settings)
    _safety_guard = SafetyGuard(settings.security)
    _audit_logger = AuditLogger(settings.security.audit_log)


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Manage server lifecycle: load config and inventory, build the core."""
    settings = load_settings()
    configure_logging(level=settings.log_level, json_output=settings.log_json)
    logger.info("Starting clustersync MCP server", read_only=settings.security.read_only)

    if settings.inventory_file:
        store = load_inventory(settings.inventory_file)
    else:
        logger.warning("No inventory file configured, starting with an empty inventory")
        store = InMemoryStore()
    init_state(settings, store)

    yield {"settings": settings, "store": store}

    logger.info("clustersync MCP server stopped")


mcp = FastMCP("clustersync", lifespan=lifespan)


def get_settings() -> ServerSettings:
    """Get server settings."""
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_store() -> InMemoryStore:
    if _store is None:
        raise RuntimeError("Server not initialized")
    return _store


def get_cluster_factory() -> ClusterAdapterFactory:
    if not _cluster_factory:
        raise RuntimeError("Server not initialized")
    return _cluster_factory


def get_registry_factory() -> RegistryAdapterFactory:
    if not _registry_factory:
        raise RuntimeError("Server not initialized")
    return _registry_factory


def get_engine() -> ComparisonEngine:
    if not _engine:
        raise RuntimeError("Server not initialized")
    return _engine


def get_orchestrator() -> SyncOrchestrator:
    if not _orchestrator:
        raise RuntimeError("Server not initialized")
    return _orchestrator


def get_safety_guard() -> SafetyGuard:
    """Get safety guard for permission checking."""
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    """Get audit logger for recording operations."""
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


def _start(ctx: MCPContext, operation: str, target: str, write: bool = False) -> str | None:
    """Set the correlation id and consult the safety guard. Returns a message when blocked."""
    set_correlation_id(str(ctx.request_id) if hasattr(ctx, "request_id") else "")
    guard = get_safety_guard()
    blocked = guard.check_write_operation(operation) if write else guard.check_read_operation(operation)
    if blocked:
        get_audit_logger().log_blocked(operation, target, blocked.reason)
        return blocked.format_message()
    return None


MARKERS = {
    "identical": "[=]",
    "different": "[~]",
    "missing_in_source": "[-]",
    "missing_in_target": "[+]",
}


def _format_summary(report: ComparisonReport[Any]) -> list[str]:
    s = report.summary
    return [
        f"Compared {report.resource_type}s: {report.source_instance_id} -> {report.target_instance_id}",
        f"Total: {s.total}  identical: {s.identical}  different: {s.different}  "
        f"missing in source: {s.missing_in_source}  missing in target: {s.missing_in_target}",
        "",
    ]


def _format_sync(report: SyncReport) -> str:
    op = report.operation
    lines = [
        f"Sync operation {op.id}: {op.status.value}",
        f"Succeeded: {report.succeeded}  Failed: {report.failed}",
        "",
    ]
    for r in report.results:
        marker = "[OK]" if r.status.value == "success" else "[FAILED]"
        line = f"- {r.resource_name} -> {r.target_instance_id} {marker}"
        if r.previous_value or r.new_value:
            line += f" {r.previous_value or '(none)'} => {r.new_value}"
        if r.error:
            line += f"\n    {r.error}"
        lines.append(line)
    return "\n".join(lines)


# =============================================================================
# TIER 1: Read Operations (Always Available)
# =============================================================================


class SiteConnectionParams(BaseModel):
    """Parameters for test_site_connection tool."""

    kind: Literal["proxied", "direct", "registry", "dockerhub"] = Field(
        description="Site kind: proxied (Rancher), direct (kubeconfig), registry (Harbor) or dockerhub"
    )
    site_id: str = Field(default="", description="Site id from the inventory (ignored for dockerhub)")


@mcp.tool()
async def test_site_connection(params: SiteConnectionParams, ctx: MCPContext) -> str:
    """
    Check that a cluster or registry site is reachable with its credentials.

    Never fails: problems are reported in the result text.
    """
    target = f"{params.kind}:{params.site_id}"
    blocked = _start(ctx, "test_site_connection", target)
    if blocked:
        return blocked

    try:
        adapter: Any
        if params.kind == "dockerhub":
            adapter = get_registry_factory().dockerhub()
        elif params.kind == "registry":
            adapter = await get_registry_factory().create_registry_adapter_from_site(params.site_id)
        else:
            adapter = await get_cluster_factory().create_cluster_adapter_from_site(
                params.kind, params.site_id
            )
        result = await adapter.test_connection()
    except AdapterError as e:
        get_audit_logger().log_error("test_site_connection", target, str(e))
        return str(e)

    get_audit_logger().log_read("test_site_connection", target)
    lines = [f"{'[OK]' if result.success else '[FAILED]'} {target}: {result.message}"]
    for key, value in (result.data or {}).items():
        lines.append(f"  {key}: {value}")
    return "\n".join(lines)


class ListNamespacesParams(BaseModel):
    """Parameters for list_namespaces tool."""

    kind: Literal["proxied", "direct"] = Field(description="Cluster site kind")
    site_id: str = Field(description="Site id from the inventory")
    cluster_scope: str | None = Field(
        default=None, description="Rancher cluster id; omit to list every cluster's namespaces"
    )


@mcp.tool()
async def list_namespaces(params: ListNamespacesParams, ctx: MCPContext) -> str:
    """List namespaces visible through a cluster site."""
    target = f"{params.kind}:{params.site_id}"
    blocked = _start(ctx, "list_namespaces", target)
    if blocked:
        return blocked

    try:
        adapter = await get_cluster_factory().create_cluster_adapter_from_site(
            params.kind, params.site_id
        )
        async with adapter:
            namespaces = await adapter.list_namespaces(params.cluster_scope)
    except AdapterError as e:
        get_audit_logger().log_error("list_namespaces", target, str(e))
        return str(e)

    get_audit_logger().log_read("list_namespaces", target)
    if not namespaces:
        return "No namespaces found"
    lines = [f"Found {len(namespaces)} namespace(s):", ""]
    for ns in namespaces:
        extra = f" [project={ns.project_id}]" if ns.project_id else ""
        lines.append(f"- {ns.name} (cluster={ns.cluster_id}){extra}")
    return "\n".join(lines)


class InstanceParams(BaseModel):
    """Parameters for tools acting on one app instance."""

    instance_id: str = Field(description="App instance id")


@mcp.tool()
async def list_workloads(params: InstanceParams, ctx: MCPContext) -> str:
    """
    List Deployments, DaemonSets and StatefulSets of an app instance.

    Also refreshes the cached service records, whose ids sync tools take.
    """
    blocked = _start(ctx, "list_workloads", params.instance_id)
    if blocked:
        return blocked

    try:
        instance = await load_instance(get_store(), params.instance_id)
        records = await ServiceInventory(get_store(), get_cluster_factory()).refresh(instance.id)
    except AdapterError as e:
        get_audit_logger().log_error("list_workloads", params.instance_id, str(e))
        return str(e)

    get_audit_logger().log_read("list_workloads", params.instance_id)
    if not records:
        return f"No workloads found in {instance.cluster}/{instance.namespace}"
    lines = [f"Found {len(records)} workload(s) in {instance.name}:", ""]
    for r in records:
        marker = "[OK]" if r.status == "active" else "[!]"
        lines.append(
            f"- {r.name} ({r.workload_type}) {marker} image={r.image_tag} "
            f"replicas={r.available_replicas}/{r.replicas} id={r.id}"
        )
    return "\n".join(lines)


class CompareParams(BaseModel):
    """Parameters for compare tools."""

    source_instance_id: str = Field(description="Source app instance id")
    target_instance_id: str = Field(description="Target app instance id")


class CompareServicesParams(CompareParams):
    fallback_to_cache: bool = Field(
        default=False, description="Use cached service records when a cluster is unreachable"
    )


@mcp.tool()
async def compare_services(params: CompareServicesParams, ctx: MCPContext) -> str:
    """
    Compare workloads (image, status, replicas) between two app instances.

    Missing and different services are listed first.
    """
    target = f"{params.source_instance_id} -> {params.target_instance_id}"
    blocked = _start(ctx, "compare_services", target)
    if blocked:
        return blocked

    try:
        report = await get_engine().compare_services(
            params.source_instance_id, params.target_instance_id, params.fallback_to_cache
        )
    except AdapterError as e:
        get_audit_logger().log_error("compare_services", target, str(e))
        return str(e)

    get_audit_logger().log_read("compare_services", target)
    lines = _format_summary(report)
    for c in report.comparisons:
        src = c.source.image_tag if c.source else "(missing)"
        tgt = c.target.image_tag if c.target else "(missing)"
        line = f"{MARKERS[c.difference_type]} {c.name}: {src} | {tgt}"
        if c.source:
            line += f"  source_id={c.source.id}"
        lines.append(line)
    return "\n".join(lines)


@mcp.tool()
async def compare_config_maps(params: CompareParams, ctx: MCPContext) -> str:
    """Compare ConfigMaps between two app instances: key sets, changed values, labels, annotations."""
    target = f"{params.source_instance_id} -> {params.target_instance_id}"
    blocked = _start(ctx, "compare_config_maps", target)
    if blocked:
        return blocked

    try:
        report = await get_engine().compare_config_maps(
            params.source_instance_id, params.target_instance_id
        )
    except AdapterError as e:
        get_audit_logger().log_error("compare_config_maps", target, str(e))
        return str(e)

    get_audit_logger().log_read("compare_config_maps", target)
    lines = _format_summary(report)
    for c in report.comparisons:
        lines.append(f"{MARKERS[c.difference_type]} {c.name}")
        d = c.differences
        for label in ("only_in_source", "only_in_target", "changed"):
            if d.get(label):
                lines.append(f"    {label}: {', '.join(d[label])}")
        for dim in ("labels", "annotations"):
            if d.get(dim):
                lines.append(f"    {dim} differ")
    return "\n".join(lines)


@mcp.tool()
async def compare_secrets(params: CompareParams, ctx: MCPContext) -> str:
    """Compare Secrets between two app instances by key. Values are never shown."""
    target = f"{params.source_instance_id} -> {params.target_instance_id}"
    blocked = _start(ctx, "compare_secrets", target)
    if blocked:
        return blocked

    try:
        report = await get_engine().compare_secrets(
            params.source_instance_id, params.target_instance_id
        )
    except AdapterError as e:
        get_audit_logger().log_error("compare_secrets", target, str(e))
        return str(e)

    get_audit_logger().log_read("compare_secrets", target)
    lines = _format_summary(report)
    for c in report.comparisons:
        lines.append(f"{MARKERS[c.difference_type]} {c.name}")
        for label in ("only_in_source", "only_in_target", "changed"):
            if c.differences.get(label):
                lines.append(f"    {label}: {', '.join(c.differences[label])}")
    return "\n".join(lines)


class CompareSecretKeysParams(CompareParams):
    secret_name: str = Field(description="Secret to inspect key by key")


@mcp.tool()
async def compare_secret_keys(params: CompareSecretKeysParams, ctx: MCPContext) -> str:
    """Compare one Secret key by key between two app instances. Values are never shown."""
    target = f"{params.secret_name}: {params.source_instance_id} -> {params.target_instance_id}"
    blocked = _start(ctx, "compare_secret_keys", target)
    if blocked:
        return blocked

    try:
        report = await get_engine().compare_secret_keys(
            params.secret_name, params.source_instance_id, params.target_instance_id
        )
    except AdapterError as e:
        get_audit_logger().log_error("compare_secret_keys", target, str(e))
        return str(e)

    get_audit_logger().log_read("compare_secret_keys", target)
    s = report.summary
    lines = [
        f"Secret {report.secret_name}: {s.total} key(s), {s.identical} identical, "
        f"{s.different} different, {s.missing_in_source} missing in source, "
        f"{s.missing_in_target} missing in target",
        "",
    ]
    for k in report.keys:
        if k.identical:
            state = "identical"
        elif k.different:
            state = "different"
        elif k.missing_in_source:
            state = "missing_in_source"
        else:
            state = "missing_in_target"
        lines.append(f"{MARKERS[state]} {k.key}")
    return "\n".join(lines)


class ListImageTagsParams(BaseModel):
    """Parameters for list_image_tags tool."""

    service_id: str = Field(description="Service record id (see list_workloads)")
    limit: int = Field(default=20, ge=1, le=500, description="Maximum tags to show")


@mcp.tool()
async def list_image_tags(params: ListImageTagsParams, ctx: MCPContext) -> str:
    """List registry tags for a service's image repository, newest first."""
    blocked = _start(ctx, "list_image_tags", params.service_id)
    if blocked:
        return blocked

    try:
        tags = await get_orchestrator().list_image_tags(params.service_id)
    except (AdapterError, ValueError) as e:
        get_audit_logger().log_error("list_image_tags", params.service_id, str(e))
        return str(e)

    get_audit_logger().log_read("list_image_tags", params.service_id)
    if not tags:
        return "No tags found"
    lines = [f"Found {len(tags)} tag(s), showing {min(len(tags), params.limit)}:", ""]
    for tag in tags[: params.limit]:
        pushed = tag.pushed_at.isoformat() if tag.pushed_at else "unknown"
        lines.append(f"- {tag.name} pushed={pushed}")
    return "\n".join(lines)


class GetSyncHistoryParams(BaseModel):
    """Parameters for get_sync_history tool."""

    operation_id: str | None = Field(default=None, description="Limit to one sync operation")
    limit: int = Field(default=50, ge=1, le=1000, description="Maximum rows to show")


@mcp.tool()
async def get_sync_history(params: GetSyncHistoryParams, ctx: MCPContext) -> str:
    """Show sync history rows, newest first."""
    target = params.operation_id or "all"
    blocked = _start(ctx, "get_sync_history", target)
    if blocked:
        return blocked

    rows = await get_store().list_sync_history(params.operation_id)
    get_audit_logger().log_read("get_sync_history", target)
    if not rows:
        return "No sync history"
    lines = [f"{len(rows)} history row(s):", ""]
    for row in rows[: params.limit]:
        marker = "[OK]" if row.status.value == "success" else "[FAILED]"
        line = (
            f"- {row.timestamp.isoformat()} {row.resource_type} {row.resource_name} {marker} "
            f"{row.target_cluster or ''}/{row.target_namespace or ''} "
            f"{row.previous_value or '(none)'} => {row.new_value} ({row.duration_ms}ms)"
        )
        if row.error:
            line += f"\n    {row.error}"
        lines.append(line)
    return "\n".join(lines)


# =============================================================================
# TIER 2: Write Operations (Require MCP_READ_ONLY=false)
# =============================================================================


class SyncServicesParams(BaseModel):
    """Parameters for sync_services tool."""

    service_ids: list[str] = Field(min_length=1, description="Source service record ids")
    target_instance_ids: list[str] = Field(min_length=1, description="Target app instance ids")
    initiated_by: str = Field(default="mcp", description="Recorded in sync history")


@mcp.tool()
async def sync_services(params: SyncServicesParams, ctx: MCPContext) -> str:
    """
    Copy source services' images onto the same-named workloads of target instances.

    Items are attempted independently: one failure does not stop the others.
    The result is completed, partial or failed.
    """
    target = ",".join(params.target_instance_ids)
    blocked = _start(ctx, "sync_services", target, write=True)
    if blocked:
        return blocked

    try:
        report = await get_orchestrator().sync_services(
            params.service_ids, params.target_instance_ids, params.initiated_by
        )
    except (AdapterError, ValueError) as e:
        get_audit_logger().log_error("sync_services", target, str(e))
        return str(e)

    get_audit_logger().log_write(
        "sync_services",
        target,
        report.operation.status.value,
        {"operation_id": report.operation.id, "failed": report.failed},
    )
    return _format_sync(report)


class SyncKeysParams(CompareParams):
    """Parameters for key sync tools."""

    name: str = Field(description="ConfigMap or Secret name")
    keys: list[str] = Field(min_length=1, description="Keys to copy from source to target")
    initiated_by: str = Field(default="mcp", description="Recorded in sync history")


@mcp.tool()
async def sync_config_map_keys(params: SyncKeysParams, ctx: MCPContext) -> str:
    """Copy selected ConfigMap keys from the source instance to the target (merge)."""
    target = f"{params.target_instance_id}/{params.name}"
    blocked = _start(ctx, "sync_config_map_keys", target, write=True)
    if blocked:
        return blocked

    try:
        report = await get_orchestrator().sync_config_map_keys(
            params.source_instance_id,
            params.target_instance_id,
            params.name,
            params.keys,
            params.initiated_by,
        )
    except (AdapterError, ValueError) as e:
        get_audit_logger().log_error("sync_config_map_keys", target, str(e))
        return str(e)

    get_audit_logger().log_write(
        "sync_config_map_keys", target, report.operation.status.value, {"keys": params.keys}
    )
    return _format_sync(report)


@mcp.tool()
async def sync_secret_keys(params: SyncKeysParams, ctx: MCPContext) -> str:
    """Copy selected Secret keys from the source instance to the target (merge). Values are never shown."""
    target = f"{params.target_instance_id}/{params.name}"
    blocked = _start(ctx, "sync_secret_keys", target, write=True)
    if blocked:
        return blocked

    try:
        report = await get_orchestrator().sync_secret_keys(
            params.source_instance_id,
            params.target_instance_id,
            params.name,
            params.keys,
            params.initiated_by,
        )
    except (AdapterError, ValueError) as e:
        get_audit_logger().log_error("sync_secret_keys", target, str(e))
        return str(e)

    get_audit_logger().log_write(
        "sync_secret_keys", target, report.operation.status.value, {"keys": params.keys}
    )
    return _format_sync(report)


class UpdateServiceImageParams(BaseModel):
    """Parameters for update_service_image tool."""

    service_id: str = Field(description="Service record id (see list_workloads)")
    new_tag: str = Field(min_length=1, description="Tag to deploy, e.g. v2.3.1")
    initiated_by: str = Field(default="mcp", description="Recorded in sync history")


@mcp.tool()
async def update_service_image(params: UpdateServiceImageParams, ctx: MCPContext) -> str:
    """Retag a service's image in place, keeping registry and repository."""
    blocked = _start(ctx, "update_service_image", params.service_id, write=True)
    if blocked:
        return blocked

    try:
        report = await get_orchestrator().update_service_image(
            params.service_id, params.new_tag, params.initiated_by
        )
    except (AdapterError, ValueError) as e:
        get_audit_logger().log_error("update_service_image", params.service_id, str(e))
        return str(e)

    get_audit_logger().log_write(
        "update_service_image",
        params.service_id,
        report.operation.status.value,
        {"new_tag": params.new_tag},
    )
    return _format_sync(report)


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("clustersync://instances")
async def get_instances_resource() -> str:
    """Get the app instances known to the server."""
    instances = await get_store().list_app_instances()
    if not instances:
        return "No app instances configured"

    lines = ["Configured app instances:", ""]
    for inst in instances:
        env = f" env={inst.environment_name or inst.environment_id}" if inst.environment_id else ""
        lines.append(
            f"- {inst.id}: {inst.cluster}/{inst.namespace} "
            f"via {inst.backend_kind.value}:{inst.site_id}{env}"
        )
    return "\n".join(lines)


@mcp.resource("clustersync://security")
async def get_security_resource() -> str:
    """Get current security settings."""
    settings = get_settings()
    sec = settings.security

    return (
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Rate limit: {sec.rate_limit_calls} calls per {sec.rate_limit_window}s\n"
        f"  Sync concurrency: {settings.sync_concurrency}\n"
        f"  Sync retry attempts: {settings.sync_retry_attempts}"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the clustersync MCP server."""
    configure_logging(level="INFO")
    logger.info("clustersync MCP server starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
