# ABOUTME: Resolves app instances, site ids and image references to concrete adapters
# ABOUTME: Routes registry lookups by normalized host, defaulting to DockerHub

"""
Adapter factories.

Cluster side: an AppInstance says HOW its cluster is reached (backend_kind)
and WHICH site holds the credentials. The factory loads that site from the
store when it was not preloaded and builds the matching adapter.

Registry side: an image reference like "registry.example.com/team/api:v2"
names its registry host. The host is compared against every Harbor site's
normalized url; no match (or no host at all) means DockerHub.

    "registry.example.com/team/api:v2"  -> Harbor site with that host
    "nginx:1.27"                        -> DockerHub
    "bitnami/redis:7"                   -> DockerHub ("bitnami" is not a stored host)
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING
from urllib.parse import urlparse

import structlog

from clustersync.adapters.direct import DirectClusterAdapter
from clustersync.adapters.dockerhub import DockerHubRegistryAdapter
from clustersync.adapters.harbor import HarborRegistryAdapter
from clustersync.adapters.proxied import ProxiedClusterAdapter
from clustersync.errors import NotFound
from clustersync.models import BackendKind, DirectSite, ProjectRegistrySite, ProxiedSite

if TYPE_CHECKING:
    from clustersync.config import ServerSettings
    from clustersync.models import AppInstance, ClusterSite
    from clustersync.store import Store

logger = structlog.get_logger(__name__)

_HOST_PATTERN = re.compile(r"^(?:[a-zA-Z][a-zA-Z0-9+.-]*://)?([^/?#]+)")


def normalize_host(url: str) -> str:
    """
    Reduce a URL or bare host to lowercase "hostname[:port]".

    "https://Registry.example.com:8443/api/v2.0" -> "registry.example.com:8443"
    "registry.example.com"                       -> "registry.example.com"
    """
    text = url.strip()
    if not text:
        return ""
    candidate = text if "://" in text else f"https://{text}"
    try:
        parsed = urlparse(candidate)
        host = parsed.hostname or ""
        port = parsed.port
    except ValueError:
        # Malformed port or bracketed host; keep whatever precedes the path
        match = _HOST_PATTERN.match(text)
        return match.group(1).lower() if match else ""
    if not host:
        return ""
    return f"{host}:{port}" if port else host


def image_host(image_ref: str) -> str:
    """Text before the first "/" of an image reference, or "" when there is none."""
    head, sep, _ = image_ref.partition("/")
    return head if sep else ""


class ClusterAdapterFactory:
    """Builds cluster adapters for app instances and sites."""

    def __init__(self, store: Store, settings: ServerSettings) -> None:
        self._store = store
        self._settings = settings

    def _build(self, site: ClusterSite) -> ProxiedClusterAdapter | DirectClusterAdapter:
        if isinstance(site, ProxiedSite):
            return ProxiedClusterAdapter(
                site, timeout=self._settings.http_timeout, insecure=self._settings.insecure
            )
        return DirectClusterAdapter(site, timeout=self._settings.http_timeout)

    async def _load_site(self, kind: BackendKind, site_id: str) -> ClusterSite:
        site = await self._store.find_site(kind.value, site_id)
        expected = ProxiedSite if kind is BackendKind.PROXIED else DirectSite
        if not isinstance(site, expected):
            raise NotFound(f"{kind.value.capitalize()} site not found: {site_id}")
        return site

    async def resolve_cluster_adapter(
        self, instance: AppInstance
    ) -> ProxiedClusterAdapter | DirectClusterAdapter:
        """
        Adapter for the site an app instance lives on.

        Raises:
            NotFound: the referenced site does not exist
        """
        site = instance.site
        if site is None:
            site = await self._load_site(instance.backend_kind, instance.site_id)
        logger.debug(
            "Resolved cluster adapter",
            instance=instance.name,
            backend=instance.backend_kind.value,
            site=site.name,
        )
        return self._build(site)

    async def create_cluster_adapter_from_site(
        self, kind: BackendKind | str, site_id: str
    ) -> ProxiedClusterAdapter | DirectClusterAdapter:
        """
        Adapter for site-level operations (connection tests, cluster listings).

        Raises:
            NotFound: no site of that kind with that id
        """
        return self._build(await self._load_site(BackendKind(kind), site_id))


class RegistryAdapterFactory:
    """
    Builds registry adapters.

    `base_url_cache` is handed to every Harbor adapter so the API base found
    by one call is tried first by the next.
    """

    def __init__(
        self,
        store: Store,
        settings: ServerSettings,
        base_url_cache: dict[str, str] | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._base_url_cache = base_url_cache if base_url_cache is not None else {}

    def _harbor(self, site: ProjectRegistrySite) -> HarborRegistryAdapter:
        return HarborRegistryAdapter(
            site,
            timeout=self._settings.http_timeout,
            insecure=self._settings.insecure,
            base_url_cache=self._base_url_cache,
        )

    def dockerhub(self) -> DockerHubRegistryAdapter:
        return DockerHubRegistryAdapter(
            base_url=self._settings.dockerhub_url, timeout=self._settings.http_timeout
        )

    async def resolve_registry_adapter(
        self, image_ref: str
    ) -> HarborRegistryAdapter | DockerHubRegistryAdapter:
        """Adapter for the registry an image reference points at. Never raises NotFound."""
        host = normalize_host(image_host(image_ref))
        if host:
            for site in await self._store.list_registry_sites():
                if normalize_host(site.url) == host:
                    logger.debug("Resolved registry adapter", host=host, site=site.name)
                    return self._harbor(site)
        logger.debug("Using DockerHub for image", image=image_ref, host=host or None)
        return self.dockerhub()

    async def create_registry_adapter_from_site(self, site_id: str) -> HarborRegistryAdapter:
        """
        Raises:
            NotFound: no registry site with that id
        """
        site = await self._store.find_site("registry", site_id)
        if not isinstance(site, ProjectRegistrySite):
            raise NotFound(f"Registry site not found: {site_id}")
        return self._harbor(site)
