# ABOUTME: Shared async HTTP plumbing and the ClusterAdapter / RegistryAdapter protocols
# ABOUTME: Converts httpx transport errors and HTTP status codes into the AdapterError taxonomy

"""
Adapter base layer.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Every backend (Rancher, kubeconfig cluster, Harbor, DockerHub) speaks HTTP +
JSON. This module holds the parts they share:

1. HttpAdapter: async context manager owning one httpx.AsyncClient
2. ERROR MAPPING: transport failures -> ConnectionFailed, 401/403 -> AuthFailed,
   404 -> NotFound, anything else >= 400 -> AdapterError
3. PROTOCOLS: the operations every cluster/registry variant must offer

=============================================================================
LIFECYCLE
=============================================================================

    async with ProxiedClusterAdapter(site) as adapter:
        workloads = await adapter.list_workloads("c-abc", "default")

__aenter__ builds the httpx client from `_client_kwargs()` (base URL, auth
headers, TLS settings); __aexit__ closes its connection pool.

=============================================================================
RETRIES
=============================================================================

Adapters never retry. A failed request surfaces immediately as a typed error;
whether to try again is the caller's decision (see sync.py).
"""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx
import structlog

from clustersync.errors import AdapterError, AuthFailed, ConnectionFailed, NotFound
from clustersync.models import ConnectionResult

if TYPE_CHECKING:
    from clustersync.models import (
        ConfigMapSnapshot,
        Namespace,
        RegistryCapabilities,
        RegistryProject,
        RegistryRepoRef,
        RegistryRepository,
        RegistryTag,
        RegistryTagDetail,
        SecretSnapshot,
        Workload,
    )

logger = structlog.get_logger(__name__)

# Fragments of resolver error messages across platforms
NAME_RESOLUTION_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "name resolution",
    "no address associated",
)


# =============================================================================
# ERROR MAPPING
# =============================================================================


def connection_error(exc: httpx.TransportError, target: str) -> ConnectionFailed:
    """
    Turn an httpx transport error into ConnectionFailed with an actionable hint.

    Args:
        exc: The transport exception raised by httpx
        target: URL or site name, included in details for debugging

    Returns:
        ConnectionFailed ready to raise
    """
    text = str(exc).lower()
    if isinstance(exc, httpx.TimeoutException):
        message = "Request timed out - server may be overloaded or unreachable"
    elif isinstance(exc, httpx.ConnectError):
        if any(marker in text for marker in NAME_RESOLUTION_MARKERS):
            message = "Server not found - check URL"
        else:
            message = "Connection refused - server may be down"
    else:
        message = "Connection failed"
    return ConnectionFailed(message, details=f"{target}: {exc}" if str(exc) else target)


def status_error(response: httpx.Response) -> AdapterError:
    """Map an HTTP error response (>= 400) onto the error taxonomy."""
    status = response.status_code
    body = response.text
    message = f"HTTP {status}"
    details: str | None = body[:200] if body else None
    try:
        error_json = response.json()
    except ValueError:
        error_json = None
    if isinstance(error_json, dict):
        # Kubernetes and Rancher use "message"; Harbor wraps it in "errors"
        if error_json.get("message"):
            message = str(error_json["message"])
        elif isinstance(error_json.get("errors"), list) and error_json["errors"]:
            message = str(error_json["errors"][0].get("message", message))
        details = error_json.get("reason") or error_json.get("code") or None
        details = str(details) if details else None

    if status == 401:
        return AuthFailed("Authentication failed - check token", code=401, details=message)
    if status == 403:
        return AuthFailed("Access forbidden - insufficient permissions", code=403, details=message)
    if status == 404:
        return NotFound(message, code=404, details=details)
    return AdapterError(message, code=status, details=details)


def extract_items(payload: Any) -> list[dict[str, Any]]:
    """
    Pull the list of objects out of a list response.

    Kubernetes returns {"items": [...]}, Rancher v3 and Steve {"data": [...]},
    Harbor a bare list.
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("items", "data", "results"):
            if isinstance(payload.get(key), list):
                return payload[key]
    return []


def encode_secret_value(value: str | bytes) -> str:
    """Base64 text for a Secret's data field. Text is encoded as UTF-8, bytes are taken as they are."""
    raw = value.encode() if isinstance(value, str) else value
    return base64.b64encode(raw).decode()


def decode_secret_value(value: str) -> bytes:
    """
    Decode one Secret data value to its raw bytes.

    Secret data may be binary (keystores, DER certificates), so no text
    decoding happens here.

    Raises:
        AdapterError: the value is not valid base64
    """
    try:
        return base64.b64decode(value, validate=True)
    except ValueError as e:
        raise AdapterError("Secret value is not valid base64", details=str(e)) from e


# =============================================================================
# HTTP ADAPTER BASE
# =============================================================================


class HttpAdapter:
    """
    Owns one httpx.AsyncClient for the duration of an `async with` block.

    Subclasses implement `_client_kwargs()` and call `_request()`.
    """

    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def label(self) -> str:
        """Name used in log lines."""
        return type(self).__name__

    def _client_kwargs(self) -> dict[str, Any]:
        raise NotImplementedError

    async def __aenter__(self) -> HttpAdapter:
        self._client = httpx.AsyncClient(timeout=self._timeout, **self._client_kwargs())
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
    ) -> httpx.Response:
        """Send a request, mapping transport errors. Status codes are left to the caller."""
        if not self._client:
            raise RuntimeError("Adapter not initialized. Use 'async with' context manager.")

        log = logger.bind(adapter=self.label, method=method, path=path)
        log.debug("Backend request")
        try:
            return await self._client.request(method, path, params=params, json=json_data)
        except httpx.TransportError as e:
            log.warning("Backend unreachable", error=str(e))
            raise connection_error(e, str(self._client.base_url) or path) from e

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
    ) -> Any:
        """
        Send a request and return the decoded JSON body.

        Raises:
            ConnectionFailed: Network failure or timeout
            AuthFailed: 401 or 403
            NotFound: 404
            AdapterError: Any other status >= 400
        """
        response = await self._send(method, path, params=params, json_data=json_data)
        if response.status_code >= 400:
            logger.warning(
                "Backend API error",
                adapter=self.label,
                path=path,
                status=response.status_code,
                body=response.text[:200],
            )
            raise status_error(response)
        return response.json() if response.content else {}

    async def _probe(self) -> ConnectionResult:
        """Backend-specific connectivity check; may raise."""
        raise NotImplementedError

    async def test_connection(self) -> ConnectionResult:
        """
        Run `_probe()` and report the outcome. Never raises.

        Works inside or outside an `async with` block; outside, the client is
        opened and closed around the probe.
        """
        try:
            if self._client is None:
                async with self:
                    return await self._probe()
            return await self._probe()
        except AdapterError as e:
            message = e.message
        except Exception as e:  # noqa: BLE001 - status report contract
            message = f"Connection failed: {e}"
        logger.warning("Connection test failed", adapter=self.label, error=message)
        return ConnectionResult(success=False, message=message)


# =============================================================================
# PROTOCOLS
# =============================================================================


@runtime_checkable
class ClusterAdapter(Protocol):
    """Operations every cluster backend offers."""

    async def __aenter__(self) -> ClusterAdapter: ...

    async def __aexit__(self, *args: object) -> None: ...

    async def test_connection(self) -> ConnectionResult: ...

    async def list_namespaces(self, cluster_scope: str | None = None) -> list[Namespace]: ...

    async def list_workloads(self, cluster: str, namespace: str) -> list[Workload]: ...

    async def update_workload_image(
        self, cluster: str, namespace: str, name: str, kind: str, image: str
    ) -> dict[str, Any]: ...

    async def list_config_maps(self, cluster: str, namespace: str) -> list[ConfigMapSnapshot]: ...

    async def get_config_map_keys(self, cluster: str, namespace: str, name: str) -> list[str]: ...

    async def update_config_map_key(
        self, cluster: str, namespace: str, name: str, key: str, value: str
    ) -> dict[str, Any]: ...

    async def sync_config_map_keys(
        self, cluster: str, namespace: str, name: str, keys: dict[str, str]
    ) -> dict[str, Any]: ...

    async def list_secrets(self, cluster: str, namespace: str) -> list[SecretSnapshot]: ...

    async def get_secret_keys(self, cluster: str, namespace: str, name: str) -> list[str]: ...

    async def update_secret_key(
        self, cluster: str, namespace: str, name: str, key: str, value: str | bytes
    ) -> dict[str, Any]: ...

    async def sync_secret_keys(
        self, cluster: str, namespace: str, name: str, keys: dict[str, str | bytes]
    ) -> dict[str, Any]: ...


@runtime_checkable
class RegistryAdapter(Protocol):
    """Operations every registry backend offers (or refuses with OperationNotSupported)."""

    async def __aenter__(self) -> RegistryAdapter: ...

    async def __aexit__(self, *args: object) -> None: ...

    def capabilities(self) -> RegistryCapabilities: ...

    async def test_connection(self) -> ConnectionResult: ...

    async def list_projects(self) -> list[RegistryProject]: ...

    async def list_repositories(self, project_or_namespace: str) -> list[RegistryRepository]: ...

    async def list_all_repositories(self) -> list[RegistryRepository]: ...

    async def list_tags(self, ref: RegistryRepoRef) -> list[RegistryTag]: ...

    async def get_tag_detail(self, ref: RegistryRepoRef, tag: str) -> RegistryTagDetail: ...
