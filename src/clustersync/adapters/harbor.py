# ABOUTME: Registry adapter for Harbor, the project-scoped registry
# ABOUTME: Probes API base URL candidates, pages artifacts, flattens and de-duplicates tags

"""
Harbor (project-scoped registry) adapter.

=============================================================================
HARBOR REST API OVERVIEW
=============================================================================

Harbor organizes images as project -> repository -> artifact -> tags:

    GET /api/v2.0/projects
    GET /api/v2.0/projects/{project}/repositories
    GET /api/v2.0/projects/{project}/repositories/{repo}/artifacts?with_tag=true
    GET /api/v2.0/health

Authentication is HTTP Basic with the site's username and password.

Repository names containing "/" ("team/api") must be URL-encoded TWICE in the
artifacts path ("team%252Fapi"), otherwise Harbor's router splits them.

=============================================================================
BASE URL PROBING
=============================================================================

Operators paste the Harbor URL in many shapes: "https://harbor.example.com",
".../api", ".../api/v2.0". Each request walks a short candidate list and moves
on when a candidate answers 400, 404 or 405. Every candidate is tried at most
once per request. The first candidate that works is remembered per site id in
a cache dict shared through the factory; a cache miss only costs a re-probe.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
import structlog

from clustersync.adapters.base import HttpAdapter, extract_items, status_error
from clustersync.errors import NotFound
from clustersync.models import (
    ConnectionResult,
    RegistryCapabilities,
    RegistryProject,
    RegistryRepoRef,
    RegistryRepository,
    RegistryTag,
    RegistryTagDetail,
    dedupe_tags,
    parse_timestamp,
    push_sort_key,
)

if TYPE_CHECKING:
    from clustersync.models import ProjectRegistrySite

logger = structlog.get_logger(__name__)

PAGE_SIZE = 100
MAX_ARTIFACT_PAGES = 5
MAX_LIST_PAGES = 50
FALLBACK_STATUSES = frozenset([400, 404, 405])

ARTIFACT_PARAMS = {
    "with_tag": "true",
    "with_label": "true",
    "with_scan_overview": "false",
    "with_signature": "false",
    "with_immutable_status": "false",
    "with_accessory": "false",
}


def base_url_candidates(url: str) -> list[str]:
    """
    API base URLs to try for a site url, most likely first.

    "https://h" -> ["https://h/api/v2.0", "https://h/api"]
    "https://h/api" -> ["https://h/api/v2.0", "https://h/api"]
    """
    trimmed = url.rstrip("/")
    if trimmed.endswith("/api/v2.0"):
        root = trimmed[: -len("/api/v2.0")]
    elif trimmed.endswith("/api"):
        root = trimmed[: -len("/api")]
    else:
        root = trimmed
    candidates: list[str] = []
    for option in (f"{root}/api/v2.0", f"{root}/api"):
        if option not in candidates:
            candidates.append(option)
    return candidates


def encode_repository(name: str) -> str:
    once = quote(name, safe="")
    return quote(once, safe="") if "/" in name else once


class HarborRegistryAdapter(HttpAdapter):
    """Registry adapter for one Harbor site."""

    def __init__(
        self,
        site: ProjectRegistrySite,
        timeout: float = 30.0,
        insecure: bool = False,
        base_url_cache: dict[str, str] | None = None,
    ) -> None:
        super().__init__(timeout=timeout)
        self._site = site
        self._insecure = insecure
        self._base_url_cache = base_url_cache if base_url_cache is not None else {}

    @property
    def label(self) -> str:
        return f"harbor:{self._site.name}"

    @property
    def site(self) -> ProjectRegistrySite:
        return self._site

    def _client_kwargs(self) -> dict[str, Any]:
        return {
            "auth": httpx.BasicAuth(self._site.username, self._site.password),
            "headers": {"Content-Type": "application/json"},
            "verify": not self._insecure,
        }

    def capabilities(self) -> RegistryCapabilities:
        return RegistryCapabilities(
            supports_projects=True,
            supports_list_all_repositories=True,
            supports_tag_detail=True,
        )

    # =========================================================================
    # REQUESTS WITH BASE URL FALLBACK
    # =========================================================================

    def _candidates(self) -> list[str]:
        candidates = base_url_candidates(self._site.url)
        cached = self._base_url_cache.get(self._site.id)
        if cached in candidates:
            candidates.remove(cached)
            candidates.insert(0, cached)
        return candidates

    async def _get(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        """
        GET `endpoint` against each base URL candidate until one works.

        Raises:
            AdapterError subclass mapped from the last candidate's response
        """
        candidates = self._candidates()
        for index, base in enumerate(candidates):
            response = await self._send("GET", f"{base}{endpoint}", params=params)
            if response.status_code < 400:
                self._base_url_cache[self._site.id] = base
                return response.json() if response.content else None
            if response.status_code in FALLBACK_STATUSES and index < len(candidates) - 1:
                logger.warning(
                    "Harbor base URL candidate rejected, trying next",
                    site=self._site.name,
                    base=base,
                    status=response.status_code,
                )
                continue
            raise status_error(response)
        raise NotFound(f"No Harbor API base URL answered for {self._site.url}")

    async def _get_pages(
        self, endpoint: str, params: dict[str, Any] | None = None, max_pages: int = MAX_LIST_PAGES
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for page in range(1, max_pages + 1):
            batch = extract_items(
                await self._get(endpoint, {**(params or {}), "page": page, "page_size": PAGE_SIZE})
            )
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
        return items

    @staticmethod
    def _artifacts_path(ref: RegistryRepoRef) -> str:
        project = quote(ref.project_or_namespace, safe="")
        return f"/projects/{project}/repositories/{encode_repository(ref.repository)}/artifacts"

    # =========================================================================
    # REGISTRY OPERATIONS
    # =========================================================================

    async def _probe(self) -> ConnectionResult:
        data = await self._get("/health") or {}
        return ConnectionResult(
            success=True,
            message="Connection successful",
            data={
                "status": data.get("status", "unknown"),
                "components": [c.get("name") for c in data.get("components") or []],
            },
        )

    async def list_projects(self) -> list[RegistryProject]:
        projects = await self._get_pages("/projects")
        return [
            RegistryProject(
                id=p.get("project_id", ""),
                name=p.get("name", ""),
                is_public=str((p.get("metadata") or {}).get("public", p.get("public", ""))).lower()
                == "true",
                repo_count=p.get("repo_count") or 0,
            )
            for p in projects
        ]

    async def list_repositories(self, project_or_namespace: str) -> list[RegistryRepository]:
        """List repositories of one project with the "project/" prefix stripped from names."""
        project = project_or_namespace
        repos = await self._get_pages(f"/projects/{quote(project, safe='')}/repositories")
        prefix = f"{project}/"
        result = []
        for repo in repos:
            name = repo.get("name", "")
            if name.startswith(prefix):
                name = name[len(prefix) :]
            result.append(
                RegistryRepository(
                    name=name,
                    full_name=f"{project}/{name}",
                    description=repo.get("description") or "",
                    pull_count=repo.get("pull_count") or 0,
                    star_count=repo.get("star_count") or 0,
                    tags_count=repo.get("artifact_count") or repo.get("tags_count") or 0,
                )
            )
        return result

    async def list_all_repositories(self) -> list[RegistryRepository]:
        """Aggregate every project's repositories; a failing project is logged and skipped."""
        result: list[RegistryRepository] = []
        for project in await self.list_projects():
            try:
                result.extend(await self.list_repositories(project.name))
            except Exception as e:  # noqa: BLE001 - one project must not fail the listing
                logger.warning(
                    "Failed to list repositories for Harbor project",
                    site=self._site.name,
                    project=project.name,
                    error=str(e),
                )
        return result

    @staticmethod
    def _tags_of(artifact: dict[str, Any]) -> list[RegistryTag]:
        return [
            RegistryTag(
                name=tag.get("name", ""),
                pushed_at=parse_timestamp(tag.get("push_time")),
                pulled_at=parse_timestamp(tag.get("pull_time")),
                size=artifact.get("size"),
                digest=artifact.get("digest"),
                media_type=artifact.get("media_type"),
            )
            for tag in artifact.get("tags") or []
        ]

    async def list_tags(self, ref: RegistryRepoRef) -> list[RegistryTag]:
        """Flatten artifact tags, keep the newest entry per name, newest first."""
        artifacts = await self._get_pages(
            self._artifacts_path(ref), ARTIFACT_PARAMS, max_pages=MAX_ARTIFACT_PAGES
        )
        return dedupe_tags([tag for artifact in artifacts for tag in self._tags_of(artifact)])

    async def get_tag_detail(self, ref: RegistryRepoRef, tag: str) -> RegistryTagDetail:
        """
        Find the artifact carrying `tag` within the first 5 pages of 100 artifacts.

        Raises:
            NotFound: no artifact in the searched pages carries the tag
        """
        path = self._artifacts_path(ref)
        matches: list[tuple[RegistryTag, dict[str, Any]]] = []
        for page in range(1, MAX_ARTIFACT_PAGES + 1):
            artifacts = extract_items(
                await self._get(path, {**ARTIFACT_PARAMS, "page": page, "page_size": PAGE_SIZE})
            )
            for artifact in artifacts:
                matches.extend((t, artifact) for t in self._tags_of(artifact) if t.name == tag)
            if matches or len(artifacts) < PAGE_SIZE:
                break

        if not matches:
            raise NotFound(f"Harbor tag not found: {ref.full_name}:{tag}")

        best, artifact = matches[0]
        for candidate, candidate_artifact in matches[1:]:
            if push_sort_key(candidate) >= push_sort_key(best):
                best, artifact = candidate, candidate_artifact

        labels = [label.get("name", "") for label in artifact.get("labels") or []]
        return RegistryTagDetail(
            name=best.name,
            pushed_at=best.pushed_at or parse_timestamp(artifact.get("push_time")),
            pulled_at=best.pulled_at or parse_timestamp(artifact.get("pull_time")),
            size=artifact.get("size"),
            digest=artifact.get("digest"),
            media_type=artifact.get("media_type"),
            manifest_media_type=artifact.get("manifest_media_type"),
            annotations=dict(artifact.get("annotations") or {}),
            labels=labels,
        )
