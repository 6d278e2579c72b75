# ABOUTME: Cluster adapter for clusters reached directly with an embedded kubeconfig
# ABOUTME: Loads the kubeconfig with the kubernetes client and builds the httpx client's auth and TLS from it

"""
Direct (kubeconfig) cluster adapter.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

A direct site stores a whole kubeconfig. This adapter:

1. PICKS one context of the kubeconfig
2. LOADS it with the kubernetes client's kubeconfig loader into a
   `kubernetes.client.Configuration`: server, credentials (token, basic auth,
   client certificate, exec and auth-provider plugins) and TLS files
3. BUILDS the httpx client from that Configuration
4. CALLS the standard Kubernetes REST API on the context's server

The loader writes inline certificate data to temporary files and runs exec
plugins, so `aws eks get-token` or `gke-gcloud-auth-plugin` style kubeconfigs
work the same way they do for kubectl.

One site means one cluster, so the `cluster` argument of every operation is
accepted for interface compatibility and otherwise ignored.

=============================================================================
CONTEXT SELECTION
=============================================================================

    1. a context named `cluster_name`, or the first context using a cluster
       of that name
    2. current-context
    3. the first context
"""

from __future__ import annotations

import ssl
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
import yaml
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.config.config_exception import ConfigException

from clustersync.adapters.kubernetes import WORKLOAD_RESOURCES, KubernetesAdapter
from clustersync.errors import AdapterError
from clustersync.models import ConnectionResult, Namespace

if TYPE_CHECKING:
    from clustersync.models import DirectSite

logger = structlog.get_logger(__name__)


# =============================================================================
# KUBECONFIG LOADING
# =============================================================================


def select_context(doc: dict[str, Any], preferred: str | None = None) -> dict[str, Any] | None:
    """Context entry to use: `preferred` by context or cluster name, then current-context, then the first."""
    contexts = [c for c in doc.get("contexts") or [] if isinstance(c, dict)]
    if preferred:
        for entry in contexts:
            if entry.get("name") == preferred:
                return entry
        for entry in contexts:
            if (entry.get("context") or {}).get("cluster") == preferred:
                return entry
    current = doc.get("current-context")
    for entry in contexts:
        if entry.get("name") == current:
            return entry
    return contexts[0] if contexts else None


@dataclass
class KubeConfig:
    """Connection settings of one kubeconfig context, as resolved by the kubernetes client."""

    server: str
    context_name: str = ""
    cluster_name: str = ""
    authorization: str | None = field(default=None, repr=False)
    ca_file: str | None = None
    cert_file: str | None = None
    key_file: str | None = None
    verify: bool = True

    @classmethod
    def from_yaml(cls, text: str, preferred: str | None = None) -> KubeConfig:
        """
        Load kubeconfig text.

        Raises:
            AdapterError: invalid YAML, no usable context, or a context the
                kubernetes client cannot load
        """
        try:
            doc = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise AdapterError("Invalid kubeconfig", details=str(e)) from e
        if not isinstance(doc, dict):
            raise AdapterError("Invalid kubeconfig", details="expected a mapping")

        context = select_context(doc, preferred)
        if context is None or not context.get("name"):
            raise AdapterError("Invalid kubeconfig", details="no context found")

        configuration = k8s_client.Configuration()
        configuration.host = ""
        try:
            k8s_config.load_kube_config_from_dict(
                doc,
                context=context["name"],
                client_configuration=configuration,
                persist_config=False,
            )
        except ConfigException as e:
            raise AdapterError("Invalid kubeconfig", details=str(e)) from e
        if not configuration.host:
            raise AdapterError("Invalid kubeconfig", details="cluster has no server")

        logger.debug("Kubeconfig loaded", context=context["name"], server=configuration.host)
        return cls(
            server=configuration.host.rstrip("/"),
            context_name=context["name"],
            cluster_name=(context.get("context") or {}).get("cluster", ""),
            authorization=configuration.api_key.get("authorization"),
            ca_file=configuration.ssl_ca_cert,
            cert_file=configuration.cert_file,
            key_file=configuration.key_file,
            verify=configuration.verify_ssl,
        )

    @property
    def has_client_cert(self) -> bool:
        return bool(self.cert_file and self.key_file)

    def ssl_context(self) -> ssl.SSLContext:
        """TLS context from the loaded CA file, verification flag and client certificate."""
        if self.verify:
            ctx = ssl.create_default_context(cafile=self.ca_file)
        else:
            ctx = ssl.create_default_context()
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        if self.has_client_cert:
            ctx.load_cert_chain(self.cert_file, self.key_file)
        return ctx

    def client_kwargs(self) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.authorization:
            # "Bearer <token>" or "Basic <credentials>" as produced by the loader
            headers["Authorization"] = self.authorization
        kwargs: dict[str, Any] = {"base_url": self.server, "headers": headers}

        if not self.verify and not self.has_client_cert:
            kwargs["verify"] = False
            return kwargs
        try:
            kwargs["verify"] = self.ssl_context()
        except (ssl.SSLError, OSError, ValueError) as e:
            raise AdapterError("Invalid kubeconfig TLS material", details=str(e)) from e
        return kwargs


# =============================================================================
# ADAPTER
# =============================================================================


class DirectClusterAdapter(KubernetesAdapter):
    """Cluster adapter for a single kubeconfig-described cluster."""

    def __init__(self, site: DirectSite, timeout: float = 30.0) -> None:
        super().__init__(timeout=timeout)
        self._site = site
        self._kubeconfig: KubeConfig | None = None

    @property
    def label(self) -> str:
        return f"direct:{self._site.name}"

    @property
    def kubeconfig(self) -> KubeConfig:
        if self._kubeconfig is None:
            self._kubeconfig = KubeConfig.from_yaml(
                self._site.kubeconfig, preferred=self._site.cluster_name or None
            )
        return self._kubeconfig

    def _client_kwargs(self) -> dict[str, Any]:
        kwargs = self.kubeconfig.client_kwargs()
        if self._site.server_url:
            kwargs["base_url"] = self._site.server_url.rstrip("/")
        return kwargs

    def _list_path(
        self, cluster: str, resource: str, namespace: str
    ) -> tuple[str, dict[str, Any] | None]:
        return self._collection_path(resource, namespace), None

    def _object_path(self, cluster: str, resource: str, namespace: str, name: str) -> str:
        return f"{self._collection_path(resource, namespace)}/{name}"

    @staticmethod
    def _collection_path(resource: str, namespace: str) -> str:
        group = "/apis/apps/v1" if resource in WORKLOAD_RESOURCES.values() else "/api/v1"
        return f"{group}/namespaces/{namespace}/{resource}"

    async def _probe(self) -> ConnectionResult:
        namespaces = await self.list_namespaces()
        version = await self._request("GET", "/version")
        return ConnectionResult(
            success=True,
            message="Connection successful",
            data={
                "clusterName": self._site.cluster_name or self.kubeconfig.cluster_name,
                "namespacesCount": len(namespaces),
                "kubernetesVersion": version.get("gitVersion") or "Unknown",
            },
        )

    async def list_namespaces(self, cluster_scope: str | None = None) -> list[Namespace]:
        """List every namespace; cluster_scope is ignored (one cluster per site)."""
        payload = await self._request("GET", "/api/v1/namespaces")
        cluster_name = self._site.cluster_name or self.kubeconfig.cluster_name
        names = [(item.get("metadata") or {}).get("name", "") for item in payload.get("items") or []]
        return [Namespace(id=name, name=name, cluster_id=cluster_name) for name in names]
