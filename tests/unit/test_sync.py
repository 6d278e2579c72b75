# ABOUTME: Unit tests for the sync orchestrator against mocked Rancher and Harbor APIs
# ABOUTME: Covers partial batches, history rows, compare-sync-compare, key sync, retagging and tag listing

import base64

import httpx
import pytest
import respx

from clustersync.compare import ComparisonEngine, DifferenceType
from clustersync.config import ServerSettings
from clustersync.errors import AdapterError, ConnectionFailed, NotFound
from clustersync.models import HistoryStatus, ServiceRecord, SyncStatus
from clustersync.store import InMemoryStore
from clustersync.sync import SyncItemResult, SyncOrchestrator, batch_status

RANCHER = "https://rancher.example.com"
PROD = f"{RANCHER}/k8s/clusters/c-prod"
STAGING = f"{RANCHER}/k8s/clusters/c-src"
IMAGE = "registry.example.com/platform/{name}:{tag}"


def _b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def _deployment_url(name: str) -> str:
    return f"{PROD}/apis/apps/v1/namespaces/prod/deployments/{name}"


@pytest.fixture
def orchestrator(store, cluster_factory, registry_factory, server_settings) -> SyncOrchestrator:
    return SyncOrchestrator(store, cluster_factory, registry_factory, server_settings)


async def _source_service(store: InMemoryStore, name: str, tag: str = "v2") -> ServiceRecord:
    return await store.upsert_service(
        ServiceRecord(
            name=name,
            app_instance_id="api-staging",
            image_tag=IMAGE.format(name=name, tag=tag),
            workload_type="deployment",
            status="active",
            replicas=2,
        )
    )


@pytest.mark.unit
class TestBatchStatus:
    """Tests for batch_status."""

    @pytest.mark.parametrize(
        ("statuses", "expected"),
        [
            ([HistoryStatus.SUCCESS, HistoryStatus.SUCCESS], SyncStatus.COMPLETED),
            ([HistoryStatus.FAILED, HistoryStatus.FAILED], SyncStatus.FAILED),
            ([HistoryStatus.SUCCESS, HistoryStatus.FAILED], SyncStatus.PARTIAL),
        ],
    )
    def test_status(self, statuses: list[HistoryStatus], expected: SyncStatus) -> None:
        """Test the terminal status derived from item outcomes."""
        results = [SyncItemResult("svc", "t", s) for s in statuses]
        assert batch_status(results) is expected


@pytest.mark.unit
class TestSyncServices:
    """Tests for SyncOrchestrator.sync_services."""

    async def test_requires_services_and_targets(self, orchestrator: SyncOrchestrator) -> None:
        """Test that empty lists are rejected before anything is recorded."""
        with pytest.raises(ValueError):
            await orchestrator.sync_services([], ["api-prod"])
        with pytest.raises(ValueError):
            await orchestrator.sync_services(["x"], [])

    @respx.mock
    async def test_partial_batch(
        self, orchestrator: SyncOrchestrator, store: InMemoryStore, make_deployment
    ) -> None:
        """Test that one failing item is recorded and its siblings still sync."""
        services = [await _source_service(store, n) for n in ("api", "web", "worker")]
        for name in ("api", "worker"):
            respx.get(_deployment_url(name)).mock(
                return_value=httpx.Response(
                    200, json=make_deployment(name, IMAGE.format(name=name, tag="v1"), "prod")
                )
            )
            respx.put(_deployment_url(name)).mock(return_value=httpx.Response(200, json={}))
        respx.get(_deployment_url("web")).mock(
            return_value=httpx.Response(404, json={"message": 'deployments.apps "web" not found'})
        )

        report = await orchestrator.sync_services(
            [s.id for s in services], ["api-prod"], initiated_by="alice"
        )

        assert report.operation.status is SyncStatus.PARTIAL
        assert report.operation.end_time is not None
        assert (report.succeeded, report.failed) == (2, 1)
        failed = [r for r in report.results if r.status is HistoryStatus.FAILED]
        assert [(r.resource_name, r.target_instance_id) for r in failed] == [("web", "api-prod")]

        rows = await store.list_sync_history(report.operation.id)
        by_name = {r.resource_name: r for r in rows}
        assert len(rows) == 3
        assert by_name["web"].status is HistoryStatus.FAILED
        assert "Workload update failed" in by_name["web"].error
        assert by_name["api"].status is HistoryStatus.SUCCESS
        assert by_name["api"].initiated_by == "alice"
        assert by_name["api"].target_namespace == "prod"
        assert by_name["api"].source_environment_name == "Staging"

        synced = await store.find_service_by_name("api-prod", "api")
        assert synced.status == "synced"
        assert synced.last_synced is not None
        assert await store.find_service_by_name("api-prod", "web") is None

    async def test_unknown_service_fails_item(
        self, orchestrator: SyncOrchestrator, store: InMemoryStore
    ) -> None:
        """Test that an unknown service id fails its item and the whole batch."""
        report = await orchestrator.sync_services(["missing"], ["api-prod"])

        assert report.operation.status is SyncStatus.FAILED
        assert report.results[0].resource_name == "missing"
        rows = await store.list_sync_history(report.operation.id)
        assert [r.status for r in rows] == [HistoryStatus.FAILED]
        assert "Source service not found" in rows[0].error

    @respx.mock
    async def test_compare_sync_compare(
        self, store: InMemoryStore, cluster_factory, orchestrator: SyncOrchestrator, make_deployment
    ) -> None:
        """Test that a differing service becomes identical after sync."""
        lists = {}
        for base, ns, tag in ((STAGING, "staging", "v2"), (PROD, "prod", "v1")):
            respx.get(f"{base}/v1/apps.daemonsets").mock(
                return_value=httpx.Response(200, json={"data": []})
            )
            respx.get(f"{base}/v1/apps.statefulsets").mock(
                return_value=httpx.Response(200, json={"data": []})
            )
            lists[ns] = respx.get(f"{base}/v1/apps.deployments").mock(
                return_value=httpx.Response(
                    200, json={"data": [make_deployment("api", IMAGE.format(name="api", tag=tag), ns)]}
                )
            )
        prod_list = lists["prod"]
        respx.get(_deployment_url("api")).mock(
            return_value=httpx.Response(
                200, json=make_deployment("api", IMAGE.format(name="api", tag="v1"), "prod")
            )
        )
        put = respx.put(_deployment_url("api")).mock(return_value=httpx.Response(200, json={}))
        engine = ComparisonEngine(store, cluster_factory)

        before = await engine.compare_services("api-staging", "api-prod")
        assert before.get("api").difference_type is DifferenceType.DIFFERENT

        source_id = before.get("api").source.id
        report = await orchestrator.sync_services([source_id], ["api-prod"])

        assert report.operation.status is SyncStatus.COMPLETED
        rows = await store.list_sync_history(report.operation.id)
        assert len(rows) == 1
        assert rows[0].previous_value.endswith(":v1")
        assert rows[0].new_value.endswith(":v2")
        assert rows[0].config_changes["image_tag"]["to"].endswith(":v2")
        sent = httpx.Response(200, content=put.calls[0].request.content).json()
        assert sent["spec"]["template"]["spec"]["containers"][0]["image"].endswith(":v2")

        prod_list.mock(
            return_value=httpx.Response(
                200, json={"data": [make_deployment("api", IMAGE.format(name="api", tag="v2"), "prod")]}
            )
        )
        after = await engine.compare_services("api-staging", "api-prod")
        assert after.get("api").difference_type is DifferenceType.IDENTICAL

    @respx.mock
    async def test_retries_connection_failures(
        self, store: InMemoryStore, cluster_factory, registry_factory, server_settings, make_deployment
    ) -> None:
        """Test that a dropped connection is retried when retries are configured."""
        settings: ServerSettings = server_settings.model_copy(update={"sync_retry_attempts": 2})
        orchestrator = SyncOrchestrator(store, cluster_factory, registry_factory, settings)
        service = await _source_service(store, "api")
        get = respx.get(_deployment_url("api")).mock(
            side_effect=[
                httpx.ConnectError("Connection refused"),
                httpx.Response(200, json=make_deployment("api", "old:v1", "prod")),
            ]
        )
        respx.put(_deployment_url("api")).mock(return_value=httpx.Response(200, json={}))

        report = await orchestrator.sync_services([service.id], ["api-prod"])

        assert report.operation.status is SyncStatus.COMPLETED
        assert get.call_count == 2


@pytest.mark.unit
class TestUpdateServiceImage:
    """Tests for SyncOrchestrator.update_service_image."""

    @respx.mock
    async def test_retag(
        self, orchestrator: SyncOrchestrator, store: InMemoryStore, make_deployment
    ) -> None:
        """Test that only the tag changes and the record is marked updating."""
        record = await store.upsert_service(
            ServiceRecord(
                name="api", app_instance_id="api-prod", image_tag=IMAGE.format(name="api", tag="v1")
            )
        )
        respx.get(_deployment_url("api")).mock(
            return_value=httpx.Response(200, json=make_deployment("api", record.image_tag, "prod"))
        )
        put = respx.put(_deployment_url("api")).mock(return_value=httpx.Response(200, json={}))

        report = await orchestrator.update_service_image(record.id, "v3")

        assert report.operation.status is SyncStatus.COMPLETED
        sent = httpx.Response(200, content=put.calls[0].request.content).json()
        assert sent["spec"]["template"]["spec"]["containers"][0]["image"] == IMAGE.format(
            name="api", tag="v3"
        )
        updated = await store.find_service(record.id)
        assert updated.status == "updating"
        assert updated.image_tag.endswith(":v3")

    @respx.mock
    async def test_failure_recorded(self, orchestrator: SyncOrchestrator, store: InMemoryStore) -> None:
        """Test that a failed retag appends a failed row and marks the operation failed."""
        record = await store.upsert_service(
            ServiceRecord(name="api", app_instance_id="api-prod", image_tag="p/api:v1")
        )
        respx.get(_deployment_url("api")).mock(return_value=httpx.Response(403))

        with pytest.raises(AdapterError):
            await orchestrator.update_service_image(record.id, "v2")

        rows = await store.list_sync_history()
        assert [r.status for r in rows] == [HistoryStatus.FAILED]
        assert (await store.find_service(record.id)).image_tag == "p/api:v1"

    async def test_validation(self, orchestrator: SyncOrchestrator, store: InMemoryStore) -> None:
        """Test unknown services, image-less services and blank tags."""
        with pytest.raises(NotFound):
            await orchestrator.update_service_image("nope", "v2")
        bare = await store.upsert_service(ServiceRecord(name="bare", app_instance_id="api-prod"))
        with pytest.raises(ValueError, match="does not have an image"):
            await orchestrator.update_service_image(bare.id, "v2")
        record = await store.upsert_service(
            ServiceRecord(name="api", app_instance_id="api-prod", image_tag="p/api:v1")
        )
        with pytest.raises(ValueError, match="must not be empty"):
            await orchestrator.update_service_image(record.id, "  ")


@pytest.mark.unit
class TestKeySync:
    """Tests for ConfigMap and Secret key sync."""

    @respx.mock
    async def test_config_map_keys(self, orchestrator: SyncOrchestrator, store: InMemoryStore) -> None:
        """Test that selected keys are merged and one history row is written per key."""
        respx.get(f"{STAGING}/v1/configmaps").mock(
            return_value=httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "metadata": {"name": "settings", "namespace": "staging"},
                            "data": {"LOG_LEVEL": "debug", "FEATURE_X": "on", "OTHER": "s"},
                        }
                    ]
                },
            )
        )
        respx.get(f"{PROD}/v1/configmaps").mock(
            return_value=httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "metadata": {"name": "settings", "namespace": "prod"},
                            "data": {"LOG_LEVEL": "warn", "OTHER": "p"},
                        }
                    ]
                },
            )
        )
        url = f"{PROD}/v1/configmaps/prod/settings"
        respx.get(url).mock(
            return_value=httpx.Response(200, json={"data": {"LOG_LEVEL": "warn", "OTHER": "p"}})
        )
        put = respx.put(url).mock(return_value=httpx.Response(200, json={}))

        report = await orchestrator.sync_config_map_keys(
            "api-staging", "api-prod", "settings", ["LOG_LEVEL", "FEATURE_X"]
        )

        assert report.operation.status is SyncStatus.COMPLETED
        sent = httpx.Response(200, content=put.calls[0].request.content).json()
        assert sent["data"] == {"LOG_LEVEL": "debug", "FEATURE_X": "on", "OTHER": "p"}
        rows = {r.resource_name: r for r in await store.list_sync_history(report.operation.id)}
        assert set(rows) == {"settings:LOG_LEVEL", "settings:FEATURE_X"}
        assert rows["settings:LOG_LEVEL"].previous_value == "warn"
        assert rows["settings:LOG_LEVEL"].new_value == "debug"
        assert rows["settings:FEATURE_X"].previous_value == ""

    @respx.mock
    async def test_secret_keys_are_masked(
        self, orchestrator: SyncOrchestrator, store: InMemoryStore
    ) -> None:
        """Test that secret values are written encoded and never recorded."""
        for base, ns, value in ((STAGING, "staging", "new-pass"), (PROD, "prod", "old-pass")):
            respx.get(f"{base}/v1/secrets").mock(
                return_value=httpx.Response(
                    200,
                    json={
                        "data": [
                            {
                                "metadata": {"name": "db", "namespace": ns},
                                "type": "Opaque",
                                "data": {"password": _b64(value)},
                            }
                        ]
                    },
                )
            )
        url = f"{PROD}/v1/secrets/prod/db"
        respx.get(url).mock(
            return_value=httpx.Response(200, json={"data": {"password": _b64("old-pass")}})
        )
        put = respx.put(url).mock(return_value=httpx.Response(200, json={}))

        report = await orchestrator.sync_secret_keys("api-staging", "api-prod", "db", ["password"])

        sent = httpx.Response(200, content=put.calls[0].request.content).json()
        assert sent["data"]["password"] == _b64("new-pass")
        rows = await store.list_sync_history(report.operation.id)
        assert (rows[0].previous_value, rows[0].new_value) == ("<set>", "<set>")
        assert "new-pass" not in str(report.to_dict())

    @respx.mock
    async def test_binary_secret_value(
        self, orchestrator: SyncOrchestrator, store: InMemoryStore
    ) -> None:
        """Test that a non-UTF-8 Secret value (a PKCS#12 keystore) is copied byte for byte."""
        keystore = base64.b64encode(b"\x30\x82\xff\xfe").decode()
        for base, ns, data in (
            (STAGING, "staging", {"keystore.p12": keystore}),
            (PROD, "prod", {}),
        ):
            respx.get(f"{base}/v1/secrets").mock(
                return_value=httpx.Response(
                    200,
                    json={
                        "data": [
                            {
                                "metadata": {"name": "tls", "namespace": ns},
                                "type": "Opaque",
                                "data": data,
                            }
                        ]
                    },
                )
            )
        url = f"{PROD}/v1/secrets/prod/tls"
        respx.get(url).mock(return_value=httpx.Response(200, json={"data": {}}))
        put = respx.put(url).mock(return_value=httpx.Response(200, json={}))

        report = await orchestrator.sync_secret_keys(
            "api-staging", "api-prod", "tls", ["keystore.p12"]
        )

        assert report.operation.status is SyncStatus.COMPLETED
        sent = httpx.Response(200, content=put.calls[0].request.content).json()
        assert sent["data"] == {"keystore.p12": keystore}
        rows = await store.list_sync_history(report.operation.id)
        assert (rows[0].previous_value, rows[0].new_value) == ("", "<set>")

    @respx.mock
    async def test_missing_source_key(
        self, orchestrator: SyncOrchestrator, store: InMemoryStore
    ) -> None:
        """Test that a key absent on the source fails the operation before writing."""
        for base, ns in ((STAGING, "staging"), (PROD, "prod")):
            respx.get(f"{base}/v1/configmaps").mock(
                return_value=httpx.Response(
                    200,
                    json={"data": [{"metadata": {"name": "settings", "namespace": ns}, "data": {}}]},
                )
            )

        with pytest.raises(NotFound, match="NOPE"):
            await orchestrator.sync_config_map_keys("api-staging", "api-prod", "settings", ["NOPE"])

        rows = await store.list_sync_history()
        assert [r.status for r in rows] == [HistoryStatus.FAILED]

    async def test_requires_keys(self, orchestrator: SyncOrchestrator) -> None:
        """Test that an empty key list is rejected."""
        with pytest.raises(ValueError):
            await orchestrator.sync_secret_keys("api-staging", "api-prod", "db", [])


@pytest.mark.unit
class TestListImageTags:
    """Tests for SyncOrchestrator.list_image_tags."""

    @respx.mock
    async def test_harbor_tags(self, orchestrator: SyncOrchestrator, store: InMemoryStore) -> None:
        """Test that a Harbor-hosted image lists tags from its project repository."""
        record = await _source_service(store, "api")
        respx.get(
            "https://registry.example.com/api/v2.0/projects/platform/repositories/api/artifacts"
        ).mock(
            return_value=httpx.Response(
                200,
                json=[
                    {"digest": "sha256:1", "tags": [{"name": "v1", "push_time": "2024-01-01T00:00:00Z"}]},
                    {"digest": "sha256:2", "tags": [{"name": "v2", "push_time": "2024-02-01T00:00:00Z"}]},
                ],
            )
        )

        tags = await orchestrator.list_image_tags(record.id)

        assert [t.name for t in tags] == ["v2", "v1"]

    @respx.mock
    async def test_dockerhub_tags(self, orchestrator: SyncOrchestrator, store: InMemoryStore) -> None:
        """Test that an implicit DockerHub image uses the library namespace."""
        record = await store.upsert_service(
            ServiceRecord(name="proxy", app_instance_id="api-prod", image_tag="nginx:1.25")
        )
        respx.get("https://hub.docker.com/v2/repositories/library/nginx/tags/").mock(
            return_value=httpx.Response(200, json={"results": [{"name": "1.25"}]})
        )

        tags = await orchestrator.list_image_tags(record.id)

        assert [t.name for t in tags] == ["1.25"]

    @respx.mock
    async def test_registry_unreachable(
        self, orchestrator: SyncOrchestrator, store: InMemoryStore
    ) -> None:
        """Test that registry transport errors propagate as ConnectionFailed."""
        record = await _source_service(store, "api")
        respx.get(
            "https://registry.example.com/api/v2.0/projects/platform/repositories/api/artifacts"
        ).mock(side_effect=httpx.ConnectTimeout("timed out"))

        with pytest.raises(ConnectionFailed):
            await orchestrator.list_image_tags(record.id)
