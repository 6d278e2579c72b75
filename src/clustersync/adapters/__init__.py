# ABOUTME: Adapters package: cluster (proxied, direct) and registry (Harbor, DockerHub) backends
# ABOUTME: Re-exports the protocols, concrete adapters and factories

"""Backend adapters. Use the factories rather than constructing adapters by hand."""

from clustersync.adapters.base import ClusterAdapter, RegistryAdapter
from clustersync.adapters.direct import DirectClusterAdapter
from clustersync.adapters.dockerhub import DockerHubRegistryAdapter
from clustersync.adapters.factory import ClusterAdapterFactory, RegistryAdapterFactory
from clustersync.adapters.harbor import HarborRegistryAdapter
from clustersync.adapters.proxied import ProxiedClusterAdapter

__all__ = [
    "ClusterAdapter",
    "ClusterAdapterFactory",
    "DirectClusterAdapter",
    "DockerHubRegistryAdapter",
    "HarborRegistryAdapter",
    "ProxiedClusterAdapter",
    "RegistryAdapter",
    "RegistryAdapterFactory",
]
