# ABOUTME: Pure helpers for container image references and workload kinds
# ABOUTME: Splits "host/project/repo:tag" into parts and normalizes "Deployments" to "deployment"

"""Image reference parsing, independent of which registry serves the image."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_TAG = "latest"
DEFAULT_NAMESPACE = "library"


@dataclass(frozen=True)
class ImageReference:
    """Parsed image reference. registry_host is None for implicit DockerHub images."""

    registry_host: str | None
    project: str
    repository: str
    tag: str

    @property
    def path(self) -> str:
        return f"{self.project}/{self.repository}"


def split_tag(image: str) -> tuple[str, str]:
    """
    Split "path:tag" at the last colon.

    The colon only counts as a tag separator when the text after it has no
    "/", so "registry:5000/app" keeps its port and gets the default tag.
    """
    idx = image.rfind(":")
    if idx != -1 and "/" not in image[idx + 1 :]:
        return image[:idx], image[idx + 1 :] or DEFAULT_TAG
    return image, DEFAULT_TAG


def registry_host(image: str) -> str | None:
    """
    Return the segment before the first "/" when it looks like a registry host.

    "nginx" and "bitnami/redis" have no host; "harbor.example.com/p/r",
    "localhost/r" and "registry:5000/r" do.
    """
    if "/" not in image:
        return None
    first = image.split("/", 1)[0]
    if "." in first or ":" in first or first == "localhost":
        return first
    return None


def parse_image_reference(image: str, known_host: str | None = None) -> ImageReference:
    """
    Parse an image reference into (host, project, repository, tag).

    Args:
        image: Reference such as "harbor.example.com/proj/team/api:v2" or "nginx"
        known_host: Registry host to strip when the reference starts with it

    Returns:
        ImageReference; single-segment paths land in the "library" namespace.
    """
    path, tag = split_tag(image.strip())

    host: str | None = None
    if known_host and path.startswith(f"{known_host}/"):
        host = known_host
        path = path[len(known_host) + 1 :]
    else:
        host = registry_host(path)
        if host:
            path = path[len(host) + 1 :]

    parts = [p for p in path.split("/") if p]
    if len(parts) <= 1:
        return ImageReference(host, DEFAULT_NAMESPACE, parts[0] if parts else "", tag)
    return ImageReference(host, parts[0], "/".join(parts[1:]), tag)


def normalize_workload_kind(kind: str) -> str:
    """Case-fold and strip the trailing plural: "Deployments" -> "deployment"."""
    # idempotent for every input, "ss" included
    return kind.strip().lower().rstrip("s")


def extract_version(image: str) -> str | None:
    """Text after the last colon, or the whole string. Display only."""
    if not image:
        return None
    return image.rsplit(":", 1)[-1]


def replace_tag(image: str, new_tag: str) -> str:
    """Rebuild "path:new_tag" keeping the registry host and path."""
    path, _ = split_tag(image)
    return f"{path}:{new_tag}"
