# ABOUTME: Unit tests for cluster and registry adapter factories
# ABOUTME: Covers host normalization, Harbor-vs-DockerHub routing and missing-site errors

import pytest

from clustersync.adapters.direct import DirectClusterAdapter
from clustersync.adapters.dockerhub import DockerHubRegistryAdapter
from clustersync.adapters.factory import (
    ClusterAdapterFactory,
    RegistryAdapterFactory,
    image_host,
    normalize_host,
)
from clustersync.adapters.harbor import HarborRegistryAdapter
from clustersync.adapters.proxied import ProxiedClusterAdapter
from clustersync.errors import NotFound
from clustersync.models import AppInstance


@pytest.mark.unit
class TestHostHelpers:
    """Tests for normalize_host and image_host."""

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("https://Registry.example.com/api/v2.0", "registry.example.com"),
            ("registry.example.com", "registry.example.com"),
            ("http://registry.example.com:8443/", "registry.example.com:8443"),
            ("  ", ""),
        ],
    )
    def test_normalize_host(self, url: str, expected: str) -> None:
        """Test reduction to lowercase host[:port]."""
        assert normalize_host(url) == expected

    def test_image_host(self) -> None:
        """Test host extraction from image references."""
        assert image_host("registry.example.com/p/api:v1") == "registry.example.com"
        assert image_host("bitnami/redis") == "bitnami"
        assert image_host("nginx:1.27") == ""


@pytest.mark.unit
class TestClusterAdapterFactory:
    """Tests for ClusterAdapterFactory."""

    async def test_resolves_by_backend_kind(
        self,
        cluster_factory: ClusterAdapterFactory,
        source_instance: AppInstance,
        edge_instance: AppInstance,
    ) -> None:
        """Test that proxied and direct instances get matching adapters."""
        assert isinstance(
            await cluster_factory.resolve_cluster_adapter(source_instance), ProxiedClusterAdapter
        )
        assert isinstance(
            await cluster_factory.resolve_cluster_adapter(edge_instance), DirectClusterAdapter
        )

    async def test_preloaded_site_skips_store(
        self, cluster_factory: ClusterAdapterFactory, source_instance: AppInstance, proxied_site
    ) -> None:
        """Test that a preloaded site is used even when the id is unknown to the store."""
        source_instance.proxied_site_id = "elsewhere"
        source_instance.site = proxied_site

        adapter = await cluster_factory.resolve_cluster_adapter(source_instance)

        assert adapter.label == "proxied:rancher"

    async def test_missing_site(
        self, cluster_factory: ClusterAdapterFactory, source_instance: AppInstance
    ) -> None:
        """Test NotFound when the referenced site does not exist."""
        source_instance.proxied_site_id = "gone"

        with pytest.raises(NotFound, match="Proxied site not found: gone"):
            await cluster_factory.resolve_cluster_adapter(source_instance)

    async def test_from_site_kind_mismatch(self, cluster_factory: ClusterAdapterFactory) -> None:
        """Test that a direct site id is not found under the proxied kind."""
        with pytest.raises(NotFound):
            await cluster_factory.create_cluster_adapter_from_site("proxied", "edge")
        adapter = await cluster_factory.create_cluster_adapter_from_site("direct", "edge")
        assert isinstance(adapter, DirectClusterAdapter)


@pytest.mark.unit
class TestRegistryAdapterFactory:
    """Tests for RegistryAdapterFactory."""

    @pytest.mark.parametrize(
        ("image", "expected"),
        [
            ("registry.example.com/platform/api:v2", HarborRegistryAdapter),
            ("REGISTRY.example.com/platform/api:v2", HarborRegistryAdapter),
            ("other.example.com/platform/api:v2", DockerHubRegistryAdapter),
            ("bitnami/redis:7", DockerHubRegistryAdapter),
            ("nginx", DockerHubRegistryAdapter),
        ],
    )
    async def test_routing(
        self, registry_factory: RegistryAdapterFactory, image: str, expected: type
    ) -> None:
        """Test that stored hosts go to Harbor and everything else to DockerHub."""
        assert isinstance(await registry_factory.resolve_registry_adapter(image), expected)

    async def test_from_site(self, registry_factory: RegistryAdapterFactory) -> None:
        """Test site lookup by id."""
        adapter = await registry_factory.create_registry_adapter_from_site("harbor")
        assert adapter.site.id == "harbor"

        with pytest.raises(NotFound, match="Registry site not found: nope"):
            await registry_factory.create_registry_adapter_from_site("nope")
