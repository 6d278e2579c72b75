# ABOUTME: Pytest fixtures and configuration for clustersync tests
# ABOUTME: Provides settings, sites, app instances, an in-memory store and manifest builders

from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from clustersync.adapters.factory import ClusterAdapterFactory, RegistryAdapterFactory
from clustersync.config import SecuritySettings, ServerSettings
from clustersync.models import AppInstance, DirectSite, ProjectRegistrySite, ProxiedSite
from clustersync.store import InMemoryStore
from clustersync.utils.safety import SafetyGuard

RANCHER_URL = "https://rancher.example.com"
HARBOR_URL = "https://registry.example.com"
DIRECT_SERVER = "https://10.0.0.1:6443"

KUBECONFIG = f"""
apiVersion: v1
kind: Config
current-context: edge
contexts:
  - name: edge
    context: {{cluster: edge-cluster, user: edge-admin}}
clusters:
  - name: edge-cluster
    cluster:
      server: {DIRECT_SERVER}
      insecure-skip-tls-verify: true
users:
  - name: edge-admin
    user:
      token: edge-token
"""


@pytest.fixture
def security_settings() -> SecuritySettings:
    """Create security settings that allow writes."""
    return SecuritySettings(
        read_only=False,
        audit_log=None,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Create read-only security settings for testing."""
    return SecuritySettings(
        read_only=True,
        audit_log=None,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def server_settings(security_settings: SecuritySettings) -> ServerSettings:
    """Create server settings with short timeouts and no retries."""
    return ServerSettings(
        http_timeout=5.0,
        sync_concurrency=2,
        sync_retry_attempts=1,
        security=security_settings,
    )


@pytest.fixture
def safety_guard(security_settings: SecuritySettings) -> SafetyGuard:
    """Create a safety guard for testing."""
    return SafetyGuard(security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a read-only safety guard for testing."""
    return SafetyGuard(read_only_security_settings)


# Sites and instances


@pytest.fixture
def proxied_site() -> ProxiedSite:
    return ProxiedSite(id="rancher", name="rancher", url=RANCHER_URL, token="token-abc:xyz")


@pytest.fixture
def direct_site() -> DirectSite:
    return DirectSite(id="edge", name="edge", kubeconfig=KUBECONFIG, cluster_name="edge-cluster")


@pytest.fixture
def registry_site() -> ProjectRegistrySite:
    return ProjectRegistrySite(
        id="harbor", name="harbor", url=HARBOR_URL, username="robot", password="s3cret"
    )


@pytest.fixture
def source_instance() -> AppInstance:
    return AppInstance(
        id="api-staging",
        name="api-staging",
        cluster="c-src",
        namespace="staging",
        backend_kind="proxied",
        proxied_site_id="rancher",
        environment_id="staging",
        environment_name="Staging",
    )


@pytest.fixture
def target_instance() -> AppInstance:
    return AppInstance(
        id="api-prod",
        name="api-prod",
        cluster="c-prod",
        namespace="prod",
        backend_kind="proxied",
        proxied_site_id="rancher",
        environment_id="prod",
        environment_name="Production",
    )


@pytest.fixture
def edge_instance() -> AppInstance:
    return AppInstance(
        id="api-edge",
        name="api-edge",
        cluster="",
        namespace="edge",
        backend_kind="direct",
        direct_site_id="edge",
        environment_id="prod",
        environment_name="Production",
    )


@pytest.fixture
def store(
    proxied_site: ProxiedSite,
    direct_site: DirectSite,
    registry_site: ProjectRegistrySite,
    source_instance: AppInstance,
    target_instance: AppInstance,
    edge_instance: AppInstance,
) -> InMemoryStore:
    """In-memory store holding one site of each kind and three app instances."""
    return InMemoryStore(
        proxied_sites=[proxied_site],
        direct_sites=[direct_site],
        registry_sites=[registry_site],
        app_instances=[source_instance, target_instance, edge_instance],
    )


@pytest.fixture
def cluster_factory(store: InMemoryStore, server_settings: ServerSettings) -> ClusterAdapterFactory:
    return ClusterAdapterFactory(store, server_settings)


@pytest.fixture
def registry_factory(store: InMemoryStore, server_settings: ServerSettings) -> RegistryAdapterFactory:
    return RegistryAdapterFactory(store, server_settings)


# Kubernetes manifests


@pytest.fixture
def make_deployment() -> Callable[..., dict[str, Any]]:
    """Build a Deployment object as the Kubernetes API returns it."""

    def build(
        name: str,
        image: str,
        namespace: str = "default",
        replicas: int = 2,
        available: int = 2,
    ) -> dict[str, Any]:
        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}"},
            "spec": {
                "replicas": replicas,
                "template": {"spec": {"containers": [{"name": name, "image": image}]}},
            },
            "status": {
                "availableReplicas": available,
                "conditions": [
                    {"type": "Available", "status": "True" if available >= replicas else "False"}
                ],
            },
        }

    return build


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx

