# ABOUTME: Registry adapter for DockerHub, the flat namespace/repository registry
# ABOUTME: Lists tags and searches tag detail; project and catalog listing are not supported

"""DockerHub (flat registry) adapter. Always available, needs no stored site."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import structlog

from clustersync.adapters.base import HttpAdapter
from clustersync.errors import NotFound, OperationNotSupported
from clustersync.models import (
    ConnectionResult,
    RegistryCapabilities,
    RegistryProject,
    RegistryRepoRef,
    RegistryRepository,
    RegistryTag,
    RegistryTagDetail,
    parse_timestamp,
    sort_tags,
)

logger = structlog.get_logger(__name__)

DEFAULT_DOCKERHUB_URL = "https://hub.docker.com/v2"
PAGE_SIZE = 100
MAX_TAG_PAGES = 5


class DockerHubRegistryAdapter(HttpAdapter):
    """Anonymous DockerHub v2 API client."""

    def __init__(self, base_url: str = DEFAULT_DOCKERHUB_URL, timeout: float = 30.0) -> None:
        super().__init__(timeout=timeout)
        self._base_url = base_url.rstrip("/")

    @property
    def label(self) -> str:
        return "dockerhub"

    def _client_kwargs(self) -> dict[str, Any]:
        return {"base_url": self._base_url, "headers": {"Accept": "application/json"}}

    def capabilities(self) -> RegistryCapabilities:
        return RegistryCapabilities(
            supports_projects=False,
            supports_list_all_repositories=False,
            supports_tag_detail=True,
        )

    @staticmethod
    def _tags_path(ref: RegistryRepoRef) -> str:
        namespace = quote(ref.project_or_namespace or "library", safe="")
        return f"/repositories/{namespace}/{quote(ref.repository, safe='/')}/tags/"

    async def _tag_page(self, ref: RegistryRepoRef, page: int, page_size: int = PAGE_SIZE) -> dict[str, Any]:
        data = await self._request(
            "GET", self._tags_path(ref), params={"page": page, "page_size": page_size}
        )
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _detail(raw: dict[str, Any]) -> RegistryTagDetail:
        images = raw.get("images") or []
        return RegistryTagDetail(
            name=raw.get("name", ""),
            pushed_at=parse_timestamp(raw.get("tag_last_pushed") or raw.get("last_updated")),
            pulled_at=parse_timestamp(raw.get("tag_last_pulled")),
            size=raw.get("full_size"),
            digest=raw.get("digest") or (images[0].get("digest") if images else None),
            media_type=raw.get("media_type"),
        )

    async def _probe(self) -> ConnectionResult:
        await self._tag_page(RegistryRepoRef("library", "nginx"), page=1, page_size=1)
        return ConnectionResult(success=True, message="Connection successful")

    async def list_projects(self) -> list[RegistryProject]:
        raise OperationNotSupported(
            "DockerHub does not support listing projects (no first-class project concept)"
        )

    async def list_repositories(self, project_or_namespace: str) -> list[RegistryRepository]:
        raise OperationNotSupported(
            "DockerHub repository listing is not supported (requires namespace-scoped listing API)"
        )

    async def list_all_repositories(self) -> list[RegistryRepository]:
        raise OperationNotSupported("DockerHub does not support listing all repositories")

    async def list_tags(self, ref: RegistryRepoRef) -> list[RegistryTag]:
        """First page of up to 100 tags, newest push first."""
        data = await self._tag_page(ref, page=1)
        tags: list[RegistryTag] = [self._detail(raw) for raw in data.get("results") or []]
        return sort_tags(tags)

    async def get_tag_detail(self, ref: RegistryRepoRef, tag: str) -> RegistryTagDetail:
        """
        Search tag pages (following `next`, at most 5) for `tag`.

        Raises:
            NotFound: the tag is not on any searched page
        """
        for page in range(1, MAX_TAG_PAGES + 1):
            logger.debug("Searching DockerHub tag", repository=ref.full_name, tag=tag, page=page)
            data = await self._tag_page(ref, page=page)
            for raw in data.get("results") or []:
                if raw.get("name") == tag:
                    return self._detail(raw)
            if not data.get("next"):
                break
        raise NotFound(f"DockerHub tag not found: {ref.full_name}:{tag}")
