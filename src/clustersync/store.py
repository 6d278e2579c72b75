# ABOUTME: Persistence protocol consumed by the core, plus an in-memory implementation
# ABOUTME: The in-memory store is loaded from a YAML inventory of sites and app instances

"""
Persistence collaborator.

The core never talks to a database directly. Factories, the comparison engine
and the sync orchestrator depend on the `Store` protocol below; any backend
(SQL, a CMDB, a REST service) can implement it.

`InMemoryStore` ships with the package. The MCP server fills it from the YAML
inventory named by CLUSTERSYNC_INVENTORY_FILE:

    proxied_sites:
      - {id: rancher, name: Rancher, url: rancher.example.com, token: "token-x:y"}
    direct_sites:
      - {id: edge, name: Edge, kubeconfig_file: /etc/clustersync/edge.yaml}
    registry_sites:
      - {id: harbor, name: Harbor, url: registry.example.com, username: bot, password: s3cret}
    app_instances:
      - {id: api-staging, cluster: c-abc, namespace: api, backend_kind: proxied,
         proxied_site_id: rancher, environment_id: staging}

Service records, sync operations and history live only in memory.
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog
import yaml

from clustersync.config import InventoryConfig
from clustersync.models import (
    AppInstance,
    DirectSite,
    ProjectRegistrySite,
    ProxiedSite,
    utcnow,
)

if TYPE_CHECKING:
    from pathlib import Path

    from clustersync.models import ServiceRecord, SyncHistory, SyncOperation

logger = structlog.get_logger(__name__)

# find_site() kinds
SITE_KINDS = ("proxied", "direct", "registry")

Site = ProxiedSite | DirectSite | ProjectRegistrySite


@runtime_checkable
class Store(Protocol):
    """What the core needs from persistence."""

    async def find_site(self, kind: str, site_id: str) -> Site | None: ...

    async def find_app_instance(self, instance_id: str) -> AppInstance | None: ...

    async def list_registry_sites(self) -> list[ProjectRegistrySite]: ...

    async def find_service(self, service_id: str) -> ServiceRecord | None: ...

    async def find_service_by_name(
        self, instance_id: str, name: str
    ) -> ServiceRecord | None: ...

    async def list_services(self, instance_id: str) -> list[ServiceRecord]: ...

    async def upsert_service(self, record: ServiceRecord) -> ServiceRecord: ...

    async def append_sync_history(self, row: SyncHistory) -> None: ...

    async def save_sync_operation(self, op: SyncOperation) -> None: ...

    async def list_sync_history(self, operation_id: str | None = None) -> list[SyncHistory]: ...


class InMemoryStore:
    """Dict-backed Store. Not shared between processes."""

    def __init__(
        self,
        proxied_sites: list[ProxiedSite] | None = None,
        direct_sites: list[DirectSite] | None = None,
        registry_sites: list[ProjectRegistrySite] | None = None,
        app_instances: list[AppInstance] | None = None,
    ) -> None:
        self._sites: dict[str, dict[str, Site]] = {kind: {} for kind in SITE_KINDS}
        for site in proxied_sites or []:
            self._sites["proxied"][site.id] = site
        for site in direct_sites or []:
            self._sites["direct"][site.id] = site
        for site in registry_sites or []:
            self._sites["registry"][site.id] = site
        self._instances: dict[str, AppInstance] = {i.id: i for i in app_instances or []}
        self._services: dict[str, ServiceRecord] = {}
        self._operations: dict[str, SyncOperation] = {}
        self._history: list[SyncHistory] = []

    @classmethod
    def from_inventory(cls, inventory: InventoryConfig) -> InMemoryStore:
        """Build a store from a validated inventory document."""
        return cls(
            proxied_sites=[
                ProxiedSite(
                    id=s.id,
                    name=s.name or s.id,
                    url=s.url,
                    token=s.token.get_secret_value(),
                    active=s.active,
                )
                for s in inventory.proxied_sites
            ],
            direct_sites=[
                DirectSite(
                    id=s.id,
                    name=s.name or s.id,
                    kubeconfig=s.kubeconfig_text(),
                    cluster_name=s.cluster_name,
                    server_url=s.server_url,
                    active=s.active,
                )
                for s in inventory.direct_sites
            ],
            registry_sites=[
                ProjectRegistrySite(
                    id=s.id,
                    name=s.name or s.id,
                    url=s.url,
                    username=s.username,
                    password=s.password.get_secret_value(),
                    active=s.active,
                )
                for s in inventory.registry_sites
            ],
            app_instances=[
                AppInstance(name=i.name or i.id, **i.model_dump(exclude={"name"}))
                for i in inventory.app_instances
            ],
        )

    # =========================================================================
    # SITES AND INSTANCES
    # =========================================================================

    async def find_site(self, kind: str, site_id: str) -> Site | None:
        if kind not in self._sites:
            raise ValueError(f"Unknown site kind: {kind}")
        return self._sites[kind].get(site_id)

    async def find_app_instance(self, instance_id: str) -> AppInstance | None:
        return self._instances.get(instance_id)

    async def list_app_instances(self, environment_id: str | None = None) -> list[AppInstance]:
        return [
            i
            for i in self._instances.values()
            if environment_id is None or i.environment_id == environment_id
        ]

    async def list_registry_sites(self) -> list[ProjectRegistrySite]:
        return list(self._sites["registry"].values())  # type: ignore[arg-type]

    # =========================================================================
    # SERVICE RECORDS
    # =========================================================================

    async def find_service(self, service_id: str) -> ServiceRecord | None:
        return self._services.get(service_id)

    async def find_service_by_name(self, instance_id: str, name: str) -> ServiceRecord | None:
        for record in self._services.values():
            if record.app_instance_id == instance_id and record.name == name:
                return record
        return None

    async def list_services(self, instance_id: str) -> list[ServiceRecord]:
        return sorted(
            (r for r in self._services.values() if r.app_instance_id == instance_id),
            key=lambda r: r.name,
        )

    async def upsert_service(self, record: ServiceRecord) -> ServiceRecord:
        """Insert, or replace the record with the same (instance, name) keeping its id."""
        existing = await self.find_service_by_name(record.app_instance_id, record.name)
        if existing is not None and existing.id != record.id:
            record = dataclasses.replace(record, id=existing.id)
        record = dataclasses.replace(record, updated_at=utcnow())
        self._services[record.id] = record
        return record

    # =========================================================================
    # SYNC RECORDS
    # =========================================================================

    async def save_sync_operation(self, op: SyncOperation) -> None:
        self._operations[op.id] = op

    async def find_sync_operation(self, operation_id: str) -> SyncOperation | None:
        return self._operations.get(operation_id)

    async def append_sync_history(self, row: SyncHistory) -> None:
        self._history.append(row)

    async def list_sync_history(self, operation_id: str | None = None) -> list[SyncHistory]:
        """History rows, newest first."""
        rows = [r for r in self._history if operation_id is None or r.operation_id == operation_id]
        return sorted(rows, key=lambda r: r.timestamp, reverse=True)


def load_inventory(path: Path) -> InMemoryStore:
    """
    Read and validate an inventory YAML file.

    Raises:
        OSError: the file cannot be read
        yaml.YAMLError: the file is not valid YAML
        pydantic.ValidationError: an entry is malformed
    """
    raw: Any = yaml.safe_load(path.read_text()) or {}
    inventory = InventoryConfig.model_validate(raw)
    logger.info(
        "Loaded inventory",
        path=str(path),
        proxied_sites=len(inventory.proxied_sites),
        direct_sites=len(inventory.direct_sites),
        registry_sites=len(inventory.registry_sites),
        app_instances=len(inventory.app_instances),
    )
    return InMemoryStore.from_inventory(inventory)
