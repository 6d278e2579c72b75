# ABOUTME: Kubernetes resource operations shared by the proxied and direct cluster adapters
# ABOUTME: Workload aggregation, image swap, and read-modify-write of ConfigMap/Secret keys

"""
Shared Kubernetes resource logic.

Both cluster variants talk to a Kubernetes API; they only differ in WHERE the
API lives (behind Rancher's /k8s/clusters/{id} proxy, or at the kubeconfig
server) and which list endpoints they use. Subclasses supply the paths via
`_list_path()` and `_object_path()`; everything else lives here.

Read-modify-write is last-writer-wins: the object is fetched, one field is
changed, and the whole object is PUT back with no resourceVersion check.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from clustersync.adapters.base import HttpAdapter, encode_secret_value, extract_items
from clustersync.errors import AdapterError, UnsupportedWorkloadKind
from clustersync.images import normalize_workload_kind
from clustersync.models import ConfigMapSnapshot, SecretSnapshot, Workload

logger = structlog.get_logger(__name__)

# normalized kind -> REST resource name
WORKLOAD_RESOURCES = {
    "deployment": "deployments",
    "daemonset": "daemonsets",
    "statefulset": "statefulsets",
}


class KubernetesAdapter(HttpAdapter):
    """Base for cluster adapters. Not used directly."""

    def _list_path(
        self, cluster: str, resource: str, namespace: str
    ) -> tuple[str, dict[str, Any] | None]:
        """Return (path, query params) listing `resource` in `namespace`."""
        raise NotImplementedError

    def _object_path(self, cluster: str, resource: str, namespace: str, name: str) -> str:
        """Return the GET/PUT path of one object."""
        raise NotImplementedError

    async def _list(self, cluster: str, resource: str, namespace: str) -> list[dict[str, Any]]:
        path, params = self._list_path(cluster, resource, namespace)
        items = extract_items(await self._request("GET", path, params=params))
        # Rancher may ignore the namespace filter, so filter again here
        return [
            item
            for item in items
            if (item.get("metadata") or {}).get("namespace", namespace) == namespace
        ]

    # =========================================================================
    # WORKLOADS
    # =========================================================================

    async def list_workloads(self, cluster: str, namespace: str) -> list[Workload]:
        """List Deployments, DaemonSets and StatefulSets as one collection."""
        kinds = list(WORKLOAD_RESOURCES)
        results = await asyncio.gather(
            *(self._list(cluster, WORKLOAD_RESOURCES[kind], namespace) for kind in kinds)
        )
        workloads = [
            Workload.from_manifest(item, kind, namespace)
            for kind, items in zip(kinds, results, strict=True)
            for item in items
        ]
        logger.debug(
            "Listed workloads",
            adapter=self.label,
            cluster=cluster,
            namespace=namespace,
            count=len(workloads),
        )
        return workloads

    async def update_workload_image(
        self, cluster: str, namespace: str, name: str, kind: str, image: str
    ) -> dict[str, Any]:
        """
        Replace the first container's image of one workload.

        Raises:
            UnsupportedWorkloadKind: kind is not deployment/daemonset/statefulset
            AdapterError: the workload has no containers
        """
        normalized = normalize_workload_kind(kind)
        if normalized not in WORKLOAD_RESOURCES:
            raise UnsupportedWorkloadKind(f"Unsupported workload type: {kind}")

        path = self._object_path(cluster, WORKLOAD_RESOURCES[normalized], namespace, name)
        manifest = await self._request("GET", path)
        pod_spec = (manifest.get("spec") or {}).get("template", {}).get("spec") or {}
        containers = pod_spec.get("containers") or []
        if not containers:
            raise AdapterError(f"{normalized} {namespace}/{name} has no containers")

        log = logger.bind(adapter=self.label, cluster=cluster, namespace=namespace, name=name)
        log.info("Updating workload image", previous=containers[0].get("image"), image=image)
        containers[0]["image"] = image
        return await self._request("PUT", path, json_data=manifest)

    # =========================================================================
    # CONFIGMAPS
    # =========================================================================

    async def list_config_maps(self, cluster: str, namespace: str) -> list[ConfigMapSnapshot]:
        items = await self._list(cluster, "configmaps", namespace)
        return [ConfigMapSnapshot.from_manifest(item, namespace) for item in items]

    async def get_config_map_keys(self, cluster: str, namespace: str, name: str) -> list[str]:
        manifest = await self._request(
            "GET", self._object_path(cluster, "configmaps", namespace, name)
        )
        return sorted(manifest.get("data") or {})

    async def sync_config_map_keys(
        self, cluster: str, namespace: str, name: str, keys: dict[str, str]
    ) -> dict[str, Any]:
        """Merge `keys` into the ConfigMap's data; other keys are left untouched."""
        path = self._object_path(cluster, "configmaps", namespace, name)
        return await self._merge_data(path, dict(keys))

    async def update_config_map_key(
        self, cluster: str, namespace: str, name: str, key: str, value: str
    ) -> dict[str, Any]:
        return await self.sync_config_map_keys(cluster, namespace, name, {key: value})

    # =========================================================================
    # SECRETS
    # =========================================================================

    async def list_secrets(self, cluster: str, namespace: str) -> list[SecretSnapshot]:
        """List user secrets. Service-account tokens and image-pull secrets are dropped."""
        items = await self._list(cluster, "secrets", namespace)
        secrets = [SecretSnapshot.from_manifest(item, namespace) for item in items]
        kept = [s for s in secrets if not s.excluded]
        if len(kept) != len(secrets):
            logger.debug(
                "Excluded managed secrets",
                adapter=self.label,
                namespace=namespace,
                excluded=len(secrets) - len(kept),
            )
        return kept

    async def get_secret_keys(self, cluster: str, namespace: str, name: str) -> list[str]:
        manifest = await self._request("GET", self._object_path(cluster, "secrets", namespace, name))
        return sorted(manifest.get("data") or {})

    async def sync_secret_keys(
        self, cluster: str, namespace: str, name: str, keys: dict[str, str | bytes]
    ) -> dict[str, Any]:
        """Merge `keys` into the Secret, base64-encoding each value (text as UTF-8, bytes raw)."""
        path = self._object_path(cluster, "secrets", namespace, name)
        encoded = {key: encode_secret_value(value) for key, value in keys.items()}
        return await self._merge_data(path, encoded)

    async def update_secret_key(
        self, cluster: str, namespace: str, name: str, key: str, value: str | bytes
    ) -> dict[str, Any]:
        return await self.sync_secret_keys(cluster, namespace, name, {key: value})

    async def _merge_data(self, path: str, updates: dict[str, str]) -> dict[str, Any]:
        manifest = await self._request("GET", path)
        data = manifest.get("data") or {}
        data.update(updates)
        manifest["data"] = data
        logger.info("Writing keys", adapter=self.label, path=path, keys=sorted(updates))
        result = await self._request("PUT", path, json_data=manifest)
        return result if isinstance(result, dict) else {}
