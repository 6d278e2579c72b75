# ABOUTME: Unit tests for the kubeconfig-based direct cluster adapter
# ABOUTME: Covers kubeconfig loading, context selection, auth headers and Kubernetes REST paths

import base64
import ssl
from pathlib import Path

import httpx
import pytest
import respx

from clustersync.adapters.direct import DirectClusterAdapter, KubeConfig, select_context
from clustersync.errors import AdapterError
from clustersync.models import DirectSite

SERVER = "https://10.0.0.1:6443"

TWO_CONTEXTS = """
current-context: dev
contexts:
  - name: dev
    context: {cluster: dev-cluster, user: dev-user}
  - name: prod
    context: {cluster: prod-cluster, user: prod-user}
clusters:
  - name: dev-cluster
    cluster: {server: "https://dev.example.com:6443/"}
  - name: prod-cluster
    cluster: {server: "https://prod.example.com:6443", insecure-skip-tls-verify: true}
users:
  - name: dev-user
    user: {username: admin, password: secret}
  - name: prod-user
    user: {token: prod-token}
"""


@pytest.mark.unit
class TestKubeConfig:
    """Tests for KubeConfig.from_yaml."""

    def test_current_context(self) -> None:
        """Test that current-context is used without a preference."""
        config = KubeConfig.from_yaml(TWO_CONTEXTS)

        assert config.context_name == "dev"
        assert config.cluster_name == "dev-cluster"
        assert config.server == "https://dev.example.com:6443"
        assert config.verify is True

    def test_preferred_cluster_name(self) -> None:
        """Test that a preferred cluster name selects its context."""
        config = KubeConfig.from_yaml(TWO_CONTEXTS, preferred="prod-cluster")

        assert config.context_name == "prod"
        assert config.authorization == "Bearer prod-token"
        assert config.verify is False

    def test_select_context_falls_back_to_first(self) -> None:
        """Test that a kubeconfig without current-context uses its first context."""
        doc = {"contexts": [{"name": "a", "context": {}}, {"name": "b", "context": {}}]}

        assert select_context(doc)["name"] == "a"
        assert select_context(doc, preferred="b")["name"] == "b"

    def test_bearer_header(self) -> None:
        """Test that a token becomes a bearer header and insecure disables verification."""
        kwargs = KubeConfig.from_yaml(TWO_CONTEXTS, preferred="prod").client_kwargs()

        assert kwargs["headers"]["Authorization"] == "Bearer prod-token"
        assert kwargs["verify"] is False

    def test_basic_auth(self) -> None:
        """Test that username/password becomes a basic authorization header."""
        kwargs = KubeConfig.from_yaml(TWO_CONTEXTS).client_kwargs()

        expected = base64.b64encode(b"admin:secret").decode()
        assert kwargs["headers"]["Authorization"] == f"Basic {expected}"
        assert isinstance(kwargs["verify"], ssl.SSLContext)

    def test_exec_plugin(self) -> None:
        """Test that an exec credential plugin supplies the bearer token."""
        credential = (
            '{"apiVersion": "client.authentication.k8s.io/v1beta1", '
            '"kind": "ExecCredential", "status": {"token": "exec-token"}}'
        )
        text = f"""
current-context: c
contexts: [{{name: c, context: {{cluster: k, user: u}}}}]
clusters: [{{name: k, cluster: {{server: "https://k.example.com"}}}}]
users:
  - name: u
    user:
      exec:
        apiVersion: client.authentication.k8s.io/v1beta1
        command: echo
        args: ['{credential}']
"""
        config = KubeConfig.from_yaml(text)

        assert config.authorization == "Bearer exec-token"

    def test_inline_ca_written_to_file(self) -> None:
        """Test that certificate-authority-data is handed over as a file path."""
        pem = b"-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n"
        text = f"""
current-context: c
contexts: [{{name: c, context: {{cluster: k, user: u}}}}]
clusters:
  - name: k
    cluster:
      server: https://k.example.com
      certificate-authority-data: {base64.b64encode(pem).decode()}
users: [{{name: u, user: {{token: t}}}}]
"""
        config = KubeConfig.from_yaml(text)

        assert config.ca_file is not None
        assert Path(config.ca_file).read_bytes() == pem

    @pytest.mark.parametrize(
        "text",
        [
            "[not, a, mapping]",
            "contexts: []",
            "{{{",
            "contexts: [{name: c, context: {cluster: missing, user: u}}]\nclusters: []\nusers: []",
        ],
    )
    def test_invalid(self, text: str) -> None:
        """Test that malformed kubeconfigs raise AdapterError."""
        with pytest.raises(AdapterError, match="Invalid kubeconfig"):
            KubeConfig.from_yaml(text)


@pytest.mark.unit
class TestDirectClusterAdapter:
    """Tests for DirectClusterAdapter against a mocked API server."""

    @respx.mock
    async def test_connection(self, direct_site: DirectSite) -> None:
        """Test that the connection check reports namespaces and the server version."""
        route = respx.get(f"{SERVER}/api/v1/namespaces").mock(
            return_value=httpx.Response(
                200,
                json={"items": [{"metadata": {"name": "default"}}, {"metadata": {"name": "edge"}}]},
            )
        )
        respx.get(f"{SERVER}/version").mock(
            return_value=httpx.Response(200, json={"gitVersion": "v1.29.3"})
        )

        result = await DirectClusterAdapter(direct_site).test_connection()

        assert result.success is True
        assert result.data == {
            "clusterName": "edge-cluster",
            "namespacesCount": 2,
            "kubernetesVersion": "v1.29.3",
        }
        assert route.calls[0].request.headers["Authorization"] == "Bearer edge-token"

    @respx.mock
    async def test_list_workloads_paths(self, direct_site: DirectSite, make_deployment) -> None:
        """Test that workloads come from the apps/v1 namespaced endpoints."""
        base = f"{SERVER}/apis/apps/v1/namespaces/edge"
        respx.get(f"{base}/deployments").mock(
            return_value=httpx.Response(
                200, json={"items": [make_deployment("api", "p/api:v1", "edge")]}
            )
        )
        respx.get(f"{base}/daemonsets").mock(return_value=httpx.Response(200, json={"items": []}))
        respx.get(f"{base}/statefulsets").mock(return_value=httpx.Response(200, json={"items": []}))

        async with DirectClusterAdapter(direct_site) as adapter:
            workloads = await adapter.list_workloads("ignored", "edge")

        assert [(w.name, w.image) for w in workloads] == [("api", "p/api:v1")]

    @respx.mock
    async def test_config_map_keys(self, direct_site: DirectSite) -> None:
        """Test key listing from the core v1 endpoint."""
        respx.get(f"{SERVER}/api/v1/namespaces/edge/configmaps/settings").mock(
            return_value=httpx.Response(200, json={"data": {"B": "2", "A": "1"}})
        )

        async with DirectClusterAdapter(direct_site) as adapter:
            keys = await adapter.get_config_map_keys("", "edge", "settings")

        assert keys == ["A", "B"]

    @respx.mock
    async def test_server_url_override(self, direct_site: DirectSite) -> None:
        """Test that a stored server_url replaces the kubeconfig server."""
        direct_site.server_url = "https://edge.example.com:6443/"
        route = respx.get("https://edge.example.com:6443/api/v1/namespaces").mock(
            return_value=httpx.Response(200, json={"items": []})
        )

        async with DirectClusterAdapter(direct_site) as adapter:
            assert await adapter.list_namespaces() == []

        assert route.called
