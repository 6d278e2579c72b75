# ABOUTME: Dataclasses for sites, app instances, live resources, registry objects and sync records
# ABOUTME: Converts raw Kubernetes/registry JSON into flat typed objects and back into plain dicts

"""
Data model shared by adapters, the comparison engine and the sync orchestrator.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Backends return deeply nested JSON. A Deployment's image lives at
spec.template.spec.containers[0].image; a Harbor tag's push time lives on an
artifact's tag list. The dataclasses here flatten that into the handful of
fields the core actually reasons about, using FACTORY CLASSMETHODS
(`from_manifest`, `from_api_response`) to do the conversion in one place.

Four groups of types:

1. SITES & INSTANCES: ProxiedSite, DirectSite, ProjectRegistrySite, AppInstance
2. LIVE CLUSTER STATE: Namespace, Workload, ConfigMapSnapshot, SecretSnapshot
3. REGISTRY OBJECTS: RegistryProject, RegistryRepository, RegistryTag...
4. SYNC RECORDS: ServiceRecord, SyncOperation, SyncHistory

Every type that leaves the core has `to_dict()` producing plain JSON-able data
(enums become strings, datetimes become ISO 8601 strings).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

# =============================================================================
# ENUMERATIONS
# =============================================================================


class BackendKind(StrEnum):
    """How a cluster is reached."""

    PROXIED = "proxied"
    DIRECT = "direct"


class WorkloadState(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class SyncStatus(StrEnum):
    """Lifecycle of a SyncOperation. Only PENDING is non-terminal."""

    PENDING = "pending"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class HistoryStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


WORKLOAD_KINDS = ("deployment", "daemonset", "statefulset")

# Secret types managed by Kubernetes itself; never listed or compared
EXCLUDED_SECRET_TYPES = frozenset(
    [
        "kubernetes.io/service-account-token",
        "kubernetes.io/dockercfg",
        "kubernetes.io/dockerconfigjson",
    ]
)
RESERVED_SECRET_PREFIX = "default-token-"


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def to_plain(value: Any) -> Any:
    """
    Recursively convert dataclasses, enums and datetimes into JSON-able data.

    Fields declared with metadata {"plain": False} are skipped, which is how
    secret values stay out of every externally visible payload.
    """
    if is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_plain(getattr(value, f.name))
            for f in fields(value)
            if f.metadata.get("plain", True)
        }
    if isinstance(value, StrEnum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        return [to_plain(v) for v in value]
    return value


class PlainMixin:
    """Adds to_dict() to dataclasses."""

    def to_dict(self) -> dict[str, Any]:
        return to_plain(self)  # type: ignore[no-any-return]


# =============================================================================
# SITES AND APP INSTANCES
# =============================================================================


@dataclass
class ProxiedSite(PlainMixin):
    """A Rancher management plane: one url + bearer token, many clusters."""

    id: str
    name: str
    url: str
    token: str = field(repr=False, metadata={"plain": False})
    active: bool = False


@dataclass
class DirectSite(PlainMixin):
    """A single cluster reached with its own kubeconfig bundle."""

    id: str
    name: str
    kubeconfig: str = field(repr=False, metadata={"plain": False})
    cluster_name: str = ""
    server_url: str = ""
    active: bool = False


@dataclass
class ProjectRegistrySite(PlainMixin):
    """A Harbor instance with username/password credentials."""

    id: str
    name: str
    url: str
    username: str = ""
    password: str = field(default="", repr=False, metadata={"plain": False})
    active: bool = False


ClusterSite = ProxiedSite | DirectSite


def set_active(sites: list[Any], site_id: str) -> None:
    """Mark one site active and deactivate its siblings of the same variant."""
    for site in sites:
        site.active = site.id == site_id


@dataclass
class AppInstance(PlainMixin):
    """
    A (cluster, namespace) deployment target.

    Exactly one of proxied_site_id / direct_site_id is set, matching
    backend_kind. The matching site object may be preloaded in `site`.
    """

    id: str
    name: str
    cluster: str
    namespace: str
    backend_kind: BackendKind
    proxied_site_id: str | None = None
    direct_site_id: str | None = None
    environment_id: str | None = None
    environment_name: str | None = None
    site: ClusterSite | None = field(default=None, repr=False, metadata={"plain": False})

    def __post_init__(self) -> None:
        self.backend_kind = BackendKind(self.backend_kind)
        self._check_site_reference()

    def _check_site_reference(self) -> None:
        if self.backend_kind is BackendKind.PROXIED:
            ok = self.proxied_site_id is not None and self.direct_site_id is None
        else:
            ok = self.direct_site_id is not None and self.proxied_site_id is None
        if not ok:
            raise ValueError(
                f"App instance '{self.name}' of kind {self.backend_kind.value} "
                "must reference exactly one matching site"
            )

    @property
    def site_id(self) -> str:
        if self.backend_kind is BackendKind.PROXIED:
            return self.proxied_site_id or ""
        return self.direct_site_id or ""

    def migrate_backend(self, kind: BackendKind | str, site_id: str) -> None:
        """Switch backend kind, nulling the previous site reference in the same step."""
        kind = BackendKind(kind)
        if kind is BackendKind.PROXIED:
            self.proxied_site_id, self.direct_site_id = site_id, None
        else:
            self.proxied_site_id, self.direct_site_id = None, site_id
        self.backend_kind = kind
        self.site = None


# =============================================================================
# LIVE CLUSTER STATE
# =============================================================================


@dataclass
class ConnectionResult(PlainMixin):
    """Outcome of test_connection(); success=False instead of raising."""

    success: bool
    message: str
    data: dict[str, Any] | None = None


@dataclass
class Namespace(PlainMixin):
    id: str
    name: str
    cluster_id: str = ""
    project_id: str = ""


@dataclass
class Cluster(PlainMixin):
    id: str
    name: str
    state: str = ""
    provider: str = ""


def _condition_true(conditions: list[dict[str, Any]], *types: str) -> bool:
    return any(
        c.get("type") in types and str(c.get("status", "")).lower() == "true" for c in conditions
    )


@dataclass
class Workload(PlainMixin):
    """
    A Deployment, DaemonSet or StatefulSet reduced to what sync needs.

    kind is the normalized lowercase singular ("deployment"); image is the
    first container's image reference.
    """

    id: str
    name: str
    kind: str
    namespace: str
    state: WorkloadState
    image: str
    scale: int
    available_replicas: int

    @staticmethod
    def health_state(kind: str, spec: dict[str, Any], status: dict[str, Any]) -> WorkloadState:
        """
        Compute active/inactive for one workload.

        - deployment/statefulset: Available or Ready condition true, else
          availableReplicas >= desired replicas
        - daemonset: numberReady == desiredNumberScheduled
        - anything else: reported state active and replicas > 0
        """
        if kind in ("deployment", "statefulset"):
            if _condition_true(status.get("conditions") or [], "Available", "Ready"):
                return WorkloadState.ACTIVE
            desired = spec.get("replicas") or 0
            available = status.get("availableReplicas") or 0
            return WorkloadState.ACTIVE if available >= desired else WorkloadState.INACTIVE
        if kind == "daemonset":
            ready = status.get("numberReady") or 0
            desired = status.get("desiredNumberScheduled") or 0
            return WorkloadState.ACTIVE if ready == desired else WorkloadState.INACTIVE
        replicas = status.get("replicas") or spec.get("replicas") or 0
        reported = str(status.get("state") or "").lower()
        if reported == WorkloadState.ACTIVE and replicas > 0:
            return WorkloadState.ACTIVE
        return WorkloadState.INACTIVE

    @classmethod
    def from_manifest(cls, data: dict[str, Any], kind: str, namespace: str = "") -> Workload:
        """Build from a Kubernetes apps/v1 object as returned by the API."""
        metadata = data.get("metadata") or {}
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        containers = ((spec.get("template") or {}).get("spec") or {}).get("containers") or []

        if kind == "daemonset":
            scale = status.get("desiredNumberScheduled") or 0
        else:
            scale = spec.get("replicas") or 0

        available = (
            status.get("availableReplicas")
            or status.get("readyReplicas")
            or status.get("numberReady")
            or 0
        )

        return cls(
            id=metadata.get("uid") or metadata.get("name", ""),
            name=metadata.get("name", ""),
            kind=kind,
            namespace=metadata.get("namespace") or namespace,
            state=cls.health_state(kind, spec, status),
            image=containers[0].get("image", "") if containers else "",
            scale=scale,
            available_replicas=available,
        )


@dataclass
class ConfigMapSnapshot(PlainMixin):
    name: str
    namespace: str
    data: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    resource_version: str = ""

    @property
    def data_keys(self) -> list[str]:
        return sorted(self.data)

    @classmethod
    def from_manifest(cls, data: dict[str, Any], namespace: str = "") -> ConfigMapSnapshot:
        metadata = data.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace") or namespace,
            data=dict(data.get("data") or {}),
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {}),
            resource_version=metadata.get("resourceVersion", ""),
        )


@dataclass
class SecretSnapshot(PlainMixin):
    """
    A Secret's key names plus its encoded values.

    `data` holds the base64 values exactly as the API returned them and is
    used only for equality checks; to_dict() and repr() never include it.
    """

    name: str
    namespace: str
    type: str = "Opaque"
    data: dict[str, str] = field(default_factory=dict, repr=False, metadata={"plain": False})
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    resource_version: str = ""
    data_keys: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.data_keys:
            self.data_keys = sorted(self.data)

    @property
    def excluded(self) -> bool:
        """True for operator-managed secrets that must never be listed."""
        return self.type in EXCLUDED_SECRET_TYPES or self.name.startswith(RESERVED_SECRET_PREFIX)

    @classmethod
    def from_manifest(cls, data: dict[str, Any], namespace: str = "") -> SecretSnapshot:
        metadata = data.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace") or namespace,
            type=data.get("type") or "Opaque",
            data=dict(data.get("data") or {}),
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {}),
            resource_version=metadata.get("resourceVersion", ""),
        )


# =============================================================================
# REGISTRY OBJECTS
# =============================================================================


@dataclass(frozen=True)
class RegistryCapabilities(PlainMixin):
    supports_projects: bool
    supports_list_all_repositories: bool
    supports_tag_detail: bool


@dataclass(frozen=True)
class RegistryRepoRef(PlainMixin):
    """project (Harbor) or namespace (DockerHub) plus repository name."""

    project_or_namespace: str
    repository: str

    @property
    def full_name(self) -> str:
        return f"{self.project_or_namespace}/{self.repository}"


@dataclass
class RegistryProject(PlainMixin):
    id: int | str
    name: str
    is_public: bool = False
    repo_count: int = 0


@dataclass
class RegistryRepository(PlainMixin):
    name: str
    full_name: str
    description: str = ""
    pull_count: int = 0
    star_count: int = 0
    tags_count: int = 0


@dataclass
class RegistryTag(PlainMixin):
    name: str
    pushed_at: datetime | None = None
    pulled_at: datetime | None = None
    size: int | None = None
    digest: str | None = None
    media_type: str | None = None


@dataclass
class RegistryTagDetail(RegistryTag):
    manifest_media_type: str | None = None
    annotations: dict[str, str] = field(default_factory=dict)
    labels: list[str] = field(default_factory=list)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse registry ISO 8601 timestamps ("...Z" included); None when absent."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # Harbor reports 0001-01-01 for "never pulled"
    if parsed.year <= 1:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def push_sort_key(tag: RegistryTag) -> float:
    """Sort key for tags: missing push time counts as epoch zero."""
    return tag.pushed_at.timestamp() if tag.pushed_at else 0.0


def sort_tags(tags: list[RegistryTag]) -> list[RegistryTag]:
    """Newest push first; tags without a push time go last."""
    return sorted(tags, key=push_sort_key, reverse=True)


def dedupe_tags(tags: list[RegistryTag]) -> list[RegistryTag]:
    """
    Keep one entry per tag name: the one with the newest push time.

    On equal push times the entry seen later wins. The result is sorted
    newest first.
    """
    by_name: dict[str, RegistryTag] = {}
    for tag in tags:
        existing = by_name.get(tag.name)
        if existing is None or push_sort_key(tag) >= push_sort_key(existing):
            by_name[tag.name] = tag
    return sort_tags(list(by_name.values()))


# =============================================================================
# SYNC RECORDS
# =============================================================================


@dataclass
class ServiceRecord(PlainMixin):
    """
    Cached state of one workload in one app instance.

    image_tag holds the full image reference ("host/proj/api:v2").
    """

    name: str
    app_instance_id: str
    image_tag: str = ""
    workload_type: str = "deployment"
    status: str = ""
    replicas: int = 0
    available_replicas: int = 0
    last_synced: datetime | None = None
    id: str = field(default_factory=new_id)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SyncOperation(PlainMixin):
    """One batch sync request. end_time is set once, on the terminal transition."""

    source_id: str
    target_ids: list[str]
    resource_ids: list[str]
    initiated_by: str = "system"
    source_environment_id: str | None = None
    target_environment_id: str | None = None
    status: SyncStatus = SyncStatus.PENDING
    start_time: datetime = field(default_factory=utcnow)
    end_time: datetime | None = None
    id: str = field(default_factory=new_id)

    @property
    def is_terminal(self) -> bool:
        return self.status is not SyncStatus.PENDING

    def finish(self, status: SyncStatus) -> None:
        """Move to a terminal status. A second call is a programming error."""
        if self.is_terminal:
            raise RuntimeError(f"Sync operation {self.id} already finished as {self.status}")
        if status is SyncStatus.PENDING:
            raise ValueError("Cannot finish a sync operation as pending")
        self.status = status
        self.end_time = utcnow()


@dataclass(frozen=True)
class SyncHistory(PlainMixin):
    """One append-only row per attempted item."""

    operation_id: str
    resource_name: str
    resource_type: str
    status: HistoryStatus
    source_app_instance_id: str | None = None
    target_app_instance_id: str | None = None
    source_cluster: str | None = None
    source_namespace: str | None = None
    source_environment_name: str | None = None
    target_cluster: str | None = None
    target_namespace: str | None = None
    target_environment_name: str | None = None
    service_id: str | None = None
    previous_value: str = ""
    new_value: str = ""
    config_changes: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    duration_ms: int = 0
    initiated_by: str = "system"
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)
