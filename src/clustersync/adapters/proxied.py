# ABOUTME: Cluster adapter for clusters reached through a Rancher management plane
# ABOUTME: Routes Kubernetes calls via /k8s/clusters/{id} using the site's bearer token

"""
Proxied (Rancher) cluster adapter.

One Rancher server fronts many clusters. Every Kubernetes call goes through
its proxy, prefixed by the cluster id:

    {site.url}/k8s/clusters/{cluster}/v1/apps.deployments?namespace=ns
    {site.url}/k8s/clusters/{cluster}/v1/configmaps/{ns}/{name}
    {site.url}/k8s/clusters/{cluster}/apis/apps/v1/namespaces/{ns}/deployments/{name}

Rancher's own API (/v3) answers connection tests and cluster listings.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from clustersync.adapters.base import extract_items
from clustersync.adapters.kubernetes import WORKLOAD_RESOURCES, KubernetesAdapter
from clustersync.models import Cluster, ConnectionResult, Namespace

if TYPE_CHECKING:
    from clustersync.models import ProxiedSite

logger = structlog.get_logger(__name__)

# Steve (/v1) type names for list calls
STEVE_TYPES = {
    "deployments": "apps.deployments",
    "daemonsets": "apps.daemonsets",
    "statefulsets": "apps.statefulsets",
    "configmaps": "configmaps",
    "secrets": "secrets",
}

PROJECT_LABEL = "field.cattle.io/projectId"


class ProxiedClusterAdapter(KubernetesAdapter):
    """Cluster adapter for a Rancher site. `cluster` arguments are Rancher cluster ids."""

    def __init__(self, site: ProxiedSite, timeout: float = 30.0, insecure: bool = False) -> None:
        super().__init__(timeout=timeout)
        self._site = site
        self._insecure = insecure

    @property
    def label(self) -> str:
        return f"proxied:{self._site.name}"

    def _client_kwargs(self) -> dict[str, Any]:
        return {
            "base_url": self._site.url.rstrip("/"),
            "headers": {
                "Authorization": f"Bearer {self._site.token}",
                "Content-Type": "application/json",
            },
            "verify": not self._insecure,
        }

    @staticmethod
    def _prefix(cluster: str) -> str:
        return f"/k8s/clusters/{cluster}"

    def _list_path(
        self, cluster: str, resource: str, namespace: str
    ) -> tuple[str, dict[str, Any] | None]:
        return (
            f"{self._prefix(cluster)}/v1/{STEVE_TYPES[resource]}",
            {"exclude": "metadata.managedFields", "namespace": namespace},
        )

    def _object_path(self, cluster: str, resource: str, namespace: str, name: str) -> str:
        if resource in WORKLOAD_RESOURCES.values():
            return f"{self._prefix(cluster)}/apis/apps/v1/namespaces/{namespace}/{resource}/{name}"
        return f"{self._prefix(cluster)}/v1/{resource}/{namespace}/{name}"

    # =========================================================================
    # MANAGEMENT PLANE
    # =========================================================================

    async def _probe(self) -> ConnectionResult:
        """GET /v3/ and report the Rancher version."""
        data = await self._request("GET", "/v3/")
        return ConnectionResult(
            success=True,
            message="Connection successful",
            data={
                "rancherVersion": data.get("rancherVersion") or "Unknown",
                "serverVersion": data.get("serverVersion") or "Unknown",
            },
        )

    async def list_clusters(self) -> list[Cluster]:
        items = extract_items(await self._request("GET", "/v3/clusters"))
        return [
            Cluster(
                id=item.get("id", ""),
                name=item.get("name", ""),
                state=item.get("state", ""),
                provider=item.get("provider") or item.get("driver") or "",
            )
            for item in items
        ]

    async def list_namespaces(self, cluster_scope: str | None = None) -> list[Namespace]:
        """
        List namespaces of one cluster, or of every cluster when no scope is given.

        Args:
            cluster_scope: Rancher cluster id; None uses the management /v3 API
        """
        if not cluster_scope:
            items = extract_items(await self._request("GET", "/v3/namespaces"))
            return [
                Namespace(
                    id=item.get("id", ""),
                    name=item.get("name", ""),
                    cluster_id=item.get("clusterId", ""),
                    project_id=item.get("projectId") or "",
                )
                for item in items
            ]

        payload = await self._request("GET", f"{self._prefix(cluster_scope)}/v1/namespaces")
        namespaces = []
        for item in extract_items(payload):
            metadata = item.get("metadata") or {}
            name = metadata.get("name") or item.get("id", "")
            namespaces.append(
                Namespace(
                    id=name,
                    name=name,
                    cluster_id=cluster_scope,
                    project_id=(metadata.get("labels") or {}).get(PROJECT_LABEL, ""),
                )
            )
        return namespaces
