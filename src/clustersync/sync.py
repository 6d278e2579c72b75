# ABOUTME: Sync orchestrator: pushes images, ConfigMap keys and Secret keys from one app instance to others
# ABOUTME: Records one history row per attempted item and derives the batch operation's final status

"""
Sync orchestrator.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

A sync copies selected state from a source app instance to target instances:

    sync_services           source workloads' images -> same-named workloads on targets
    sync_config_map_keys    selected ConfigMap keys  -> the ConfigMap on one target
    sync_secret_keys        selected Secret keys     -> the Secret on one target
    update_service_image    retag one service in place

Every call creates a SyncOperation and appends one SyncHistory row per item
it attempts, successful or not, so an operator can always answer "what
changed, where, from what, to what".

=============================================================================
BATCH SEMANTICS (sync_services)
=============================================================================

    operation = pending
    for each target (up to sync_concurrency targets at once):
        for each service (sequentially, in request order):
            try:    update workload, upsert record, history row "success"
            except: history row "failed", carry on with the next item
    operation = completed  if every item succeeded
                failed     if every item failed
                partial    otherwise

A failing item never aborts its siblings. Only a failure outside the item
loop (the batch itself cannot run) marks the whole operation failed.

Adapters never retry. With CLUSTERSYNC_SYNC_RETRY_ATTEMPTS > 1 the workload
update is retried here on ConnectionFailed only, with exponential backoff.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from clustersync.adapters.base import decode_secret_value
from clustersync.adapters.factory import normalize_host
from clustersync.compare import load_instance
from clustersync.errors import AdapterError, ConnectionFailed, NotFound
from clustersync.images import normalize_workload_kind, parse_image_reference, replace_tag
from clustersync.models import (
    HistoryStatus,
    PlainMixin,
    RegistryRepoRef,
    ServiceRecord,
    SyncHistory,
    SyncOperation,
    SyncStatus,
    utcnow,
)

if TYPE_CHECKING:
    from clustersync.adapters.factory import ClusterAdapterFactory, RegistryAdapterFactory
    from clustersync.config import ServerSettings
    from clustersync.models import AppInstance, RegistryTag
    from clustersync.store import Store

logger = structlog.get_logger(__name__)

DEFAULT_WORKLOAD_KIND = "deployment"
SYNCED_STATUS = "synced"
UPDATING_STATUS = "updating"


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass(frozen=True)
class SyncItemResult(PlainMixin):
    """Outcome of one item of a batch, mirroring its history row."""

    resource_name: str
    target_instance_id: str
    status: HistoryStatus
    previous_value: str = ""
    new_value: str = ""
    error: str | None = None


@dataclass
class SyncReport(PlainMixin):
    operation: SyncOperation
    results: list[SyncItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(r.status is HistoryStatus.SUCCESS for r in self.results)

    @property
    def failed(self) -> int:
        return sum(r.status is HistoryStatus.FAILED for r in self.results)


def batch_status(results: list[SyncItemResult]) -> SyncStatus:
    """completed when nothing failed, failed when nothing succeeded, else partial."""
    failures = sum(r.status is HistoryStatus.FAILED for r in results)
    if failures == 0:
        return SyncStatus.COMPLETED
    if failures == len(results):
        return SyncStatus.FAILED
    return SyncStatus.PARTIAL


def _placement(prefix: str, instance: AppInstance | None) -> dict[str, Any]:
    """History columns describing where an instance lives."""
    if instance is None:
        return {}
    return {
        f"{prefix}_app_instance_id": instance.id,
        f"{prefix}_cluster": instance.cluster or None,
        f"{prefix}_namespace": instance.namespace,
        f"{prefix}_environment_name": instance.environment_name,
    }


# =============================================================================
# ORCHESTRATOR
# =============================================================================


class SyncOrchestrator:
    """Runs sync operations against the adapters and records their history."""

    def __init__(
        self,
        store: Store,
        cluster_factory: ClusterAdapterFactory,
        registry_factory: RegistryAdapterFactory,
        settings: ServerSettings,
    ) -> None:
        self._store = store
        self._cluster_factory = cluster_factory
        self._registry_factory = registry_factory
        self._concurrency = settings.sync_concurrency
        self._retry_attempts = settings.sync_retry_attempts

    async def _update_image(
        self, instance: AppInstance, name: str, kind: str, image: str
    ) -> None:
        """Push an image through the instance's adapter, retrying connection failures."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ConnectionFailed),
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "Retrying workload update",
                        instance=instance.name,
                        name=name,
                        attempt=attempt.retry_state.attempt_number,
                    )
                async with await self._cluster_factory.resolve_cluster_adapter(instance) as adapter:
                    await adapter.update_workload_image(
                        instance.cluster, instance.namespace, name, kind, image
                    )

    # =========================================================================
    # SERVICES
    # =========================================================================

    async def sync_services(
        self,
        service_ids: list[str],
        target_instance_ids: list[str],
        initiated_by: str = "system",
    ) -> SyncReport:
        """
        Copy the images of source services onto every target instance.

        Args:
            service_ids: ServiceRecord ids on the source instance, synced in order
            target_instance_ids: App instances to update
            initiated_by: Recorded on the operation and every history row

        Returns:
            SyncReport with the terminal operation and one result per (target, service)

        Raises:
            ValueError: empty service or target list
        """
        if not service_ids or not target_instance_ids:
            raise ValueError("At least one service and one target instance are required")

        records = {sid: await self._store.find_service(sid) for sid in service_ids}
        names = {sid: record.name for sid, record in records.items() if record is not None}
        first = records[service_ids[0]]
        source = await self._store.find_app_instance(first.app_instance_id) if first else None
        targets = [await self._store.find_app_instance(t) for t in target_instance_ids]
        target_envs = {t.environment_id for t in targets if t is not None}

        operation = SyncOperation(
            source_id=source.id if source else "",
            target_ids=list(target_instance_ids),
            resource_ids=list(service_ids),
            initiated_by=initiated_by,
            source_environment_id=source.environment_id if source else None,
            target_environment_id=target_envs.pop() if len(target_envs) == 1 else None,
        )
        await self._store.save_sync_operation(operation)
        log = logger.bind(operation_id=operation.id)
        log.info("Sync started", services=len(service_ids), targets=len(target_instance_ids))

        semaphore = asyncio.Semaphore(self._concurrency)

        async def sync_target(target_id: str) -> list[SyncItemResult]:
            async with semaphore:
                results = []
                for service_id in service_ids:
                    try:
                        results.append(
                            await self.sync_single_service(service_id, target_id, operation)
                        )
                    except Exception as e:  # noqa: BLE001 - one item must not abort the batch
                        results.append(
                            SyncItemResult(
                                resource_name=names.get(service_id, service_id),
                                target_instance_id=target_id,
                                status=HistoryStatus.FAILED,
                                error=str(e),
                            )
                        )
                return results

        try:
            per_target = await asyncio.gather(*(sync_target(t) for t in target_instance_ids))
        except Exception:
            operation.finish(SyncStatus.FAILED)
            await self._store.save_sync_operation(operation)
            log.exception("Sync aborted")
            raise

        results = [r for batch in per_target for r in batch]
        operation.finish(batch_status(results))
        await self._store.save_sync_operation(operation)
        report = SyncReport(operation, results)
        log.info(
            "Sync finished",
            status=operation.status.value,
            succeeded=report.succeeded,
            failed=report.failed,
        )
        return report

    async def sync_single_service(
        self, service_id: str, target_instance_id: str, operation: SyncOperation
    ) -> SyncItemResult:
        """
        Copy one service's image to one target instance.

        Steps: load the source service and both instances, capture the target's
        current image, update the workload, upsert the target record, append
        the history row. A failure at any step appends a "failed" row and
        re-raises.

        Raises:
            NotFound: unknown service or instance
            AdapterError: the workload update failed
        """
        started = time.monotonic()
        source_record: ServiceRecord | None = None
        source: AppInstance | None = None
        target: AppInstance | None = None
        previous = ""
        try:
            source_record = await self._store.find_service(service_id)
            if source_record is None:
                raise NotFound(f"Source service not found: {service_id}")
            source = await self._store.find_app_instance(source_record.app_instance_id)
            target = await load_instance(self._store, target_instance_id)

            target_record = await self._store.find_service_by_name(target.id, source_record.name)
            previous = target_record.image_tag if target_record else ""
            kind = normalize_workload_kind(source_record.workload_type) or DEFAULT_WORKLOAD_KIND

            logger.info(
                "Syncing service",
                operation_id=operation.id,
                service=source_record.name,
                source=f"{source.cluster}/{source.namespace}" if source else None,
                target=f"{target.cluster}/{target.namespace}",
                image=source_record.image_tag,
            )
            try:
                await self._update_image(target, source_record.name, kind, source_record.image_tag)
            except AdapterError as e:
                raise AdapterError(
                    f"Workload update failed: {e.message}", code=e.code, details=e.details
                ) from e

            now = utcnow()
            if target_record is not None:
                updated = dataclasses.replace(
                    target_record,
                    image_tag=source_record.image_tag,
                    workload_type=kind,
                    status=SYNCED_STATUS,
                    last_synced=now,
                )
            else:
                updated = ServiceRecord(
                    name=source_record.name,
                    app_instance_id=target.id,
                    image_tag=source_record.image_tag,
                    workload_type=kind,
                    status=SYNCED_STATUS,
                    replicas=source_record.replicas,
                    available_replicas=0,
                    last_synced=now,
                )
            await self._store.upsert_service(updated)
        except Exception as e:
            await self._store.append_sync_history(
                SyncHistory(
                    operation_id=operation.id,
                    resource_name=source_record.name if source_record else service_id,
                    resource_type="service",
                    status=HistoryStatus.FAILED,
                    service_id=service_id,
                    previous_value=previous,
                    new_value=source_record.image_tag if source_record else "",
                    error=str(e),
                    duration_ms=int((time.monotonic() - started) * 1000),
                    initiated_by=operation.initiated_by,
                    **_placement("source", source),
                    **_placement("target", target),
                )
            )
            logger.warning(
                "Service sync failed",
                operation_id=operation.id,
                service_id=service_id,
                target=target_instance_id,
                error=str(e),
            )
            raise

        await self._store.append_sync_history(
            SyncHistory(
                operation_id=operation.id,
                resource_name=source_record.name,
                resource_type="service",
                status=HistoryStatus.SUCCESS,
                service_id=service_id,
                previous_value=previous,
                new_value=source_record.image_tag,
                config_changes={"image_tag": {"from": previous, "to": source_record.image_tag}},
                duration_ms=int((time.monotonic() - started) * 1000),
                initiated_by=operation.initiated_by,
                **_placement("source", source),
                **_placement("target", target),
            )
        )
        return SyncItemResult(
            resource_name=source_record.name,
            target_instance_id=target.id,
            status=HistoryStatus.SUCCESS,
            previous_value=previous,
            new_value=source_record.image_tag,
        )

    async def update_service_image(
        self, service_id: str, new_tag: str, initiated_by: str = "system"
    ) -> SyncReport:
        """
        Retag one service's image in place ("host/proj/api:v1" -> "host/proj/api:v2").

        Raises:
            NotFound: unknown service or instance
            ValueError: the service has no image or new_tag is empty
            AdapterError: the workload update failed
        """
        record = await self._store.find_service(service_id)
        if record is None:
            raise NotFound(f"Service not found: {service_id}")
        if not record.image_tag:
            raise ValueError(f"Service {record.name} does not have an image")
        if not new_tag.strip():
            raise ValueError("New tag must not be empty")
        instance = await load_instance(self._store, record.app_instance_id)

        image = replace_tag(record.image_tag, new_tag.strip())
        operation = SyncOperation(
            source_id=instance.id,
            target_ids=[instance.id],
            resource_ids=[service_id],
            initiated_by=initiated_by,
            source_environment_id=instance.environment_id,
            target_environment_id=instance.environment_id,
        )
        await self._store.save_sync_operation(operation)

        started = time.monotonic()
        kind = normalize_workload_kind(record.workload_type) or DEFAULT_WORKLOAD_KIND
        try:
            await self._update_image(instance, record.name, kind, image)
        except AdapterError as e:
            result = SyncItemResult(
                record.name, instance.id, HistoryStatus.FAILED, record.image_tag, image, str(e)
            )
            await self._record_single(operation, record, instance, result, started)
            raise

        await self._store.upsert_service(
            dataclasses.replace(record, image_tag=image, status=UPDATING_STATUS)
        )
        result = SyncItemResult(record.name, instance.id, HistoryStatus.SUCCESS, record.image_tag, image)
        await self._record_single(operation, record, instance, result, started)
        return SyncReport(operation, [result])

    async def _record_single(
        self,
        operation: SyncOperation,
        record: ServiceRecord,
        instance: AppInstance,
        result: SyncItemResult,
        started: float,
    ) -> None:
        await self._store.append_sync_history(
            SyncHistory(
                operation_id=operation.id,
                resource_name=record.name,
                resource_type="service",
                status=result.status,
                service_id=record.id,
                previous_value=result.previous_value,
                new_value=result.new_value,
                config_changes={"image_tag": {"from": result.previous_value, "to": result.new_value}},
                error=result.error,
                duration_ms=int((time.monotonic() - started) * 1000),
                initiated_by=operation.initiated_by,
                **_placement("source", instance),
                **_placement("target", instance),
            )
        )
        operation.finish(
            SyncStatus.COMPLETED if result.status is HistoryStatus.SUCCESS else SyncStatus.FAILED
        )
        await self._store.save_sync_operation(operation)

    # =========================================================================
    # CONFIGMAP AND SECRET KEYS
    # =========================================================================

    async def sync_config_map_keys(
        self,
        source_instance_id: str,
        target_instance_id: str,
        name: str,
        keys: list[str],
        initiated_by: str = "system",
    ) -> SyncReport:
        """
        Copy selected keys of a ConfigMap from source to target (merged, never replaced).

        Raises:
            NotFound: unknown instance, ConfigMap, or a key absent on the source
            AdapterError: reading or writing failed
        """
        return await self._sync_keys(
            "configmap", source_instance_id, target_instance_id, name, keys, initiated_by
        )

    async def sync_secret_keys(
        self,
        source_instance_id: str,
        target_instance_id: str,
        name: str,
        keys: list[str],
        initiated_by: str = "system",
    ) -> SyncReport:
        """
        Copy selected keys of a Secret from source to target.

        History rows name the keys but never carry their values.
        """
        return await self._sync_keys(
            "secret", source_instance_id, target_instance_id, name, keys, initiated_by
        )

    async def _read_values(
        self, resource_type: str, instance: AppInstance, name: str
    ) -> dict[str, str] | None:
        """Data of a ConfigMap or Secret as stored (Secret values encoded), None when absent."""
        async with await self._cluster_factory.resolve_cluster_adapter(instance) as adapter:
            if resource_type == "configmap":
                items = await adapter.list_config_maps(instance.cluster, instance.namespace)
            else:
                items = await adapter.list_secrets(instance.cluster, instance.namespace)
        found = next((item for item in items if item.name == name), None)
        return dict(found.data) if found is not None else None

    async def _sync_keys(
        self,
        resource_type: str,
        source_instance_id: str,
        target_instance_id: str,
        name: str,
        keys: list[str],
        initiated_by: str,
    ) -> SyncReport:
        if not keys:
            raise ValueError("At least one key is required")
        source = await load_instance(self._store, source_instance_id)
        target = await load_instance(self._store, target_instance_id)

        operation = SyncOperation(
            source_id=source.id,
            target_ids=[target.id],
            resource_ids=[f"{name}:{key}" for key in keys],
            initiated_by=initiated_by,
            source_environment_id=source.environment_id,
            target_environment_id=target.environment_id,
        )
        await self._store.save_sync_operation(operation)
        log = logger.bind(operation_id=operation.id, resource_type=resource_type, name=name)
        started = time.monotonic()

        previous: dict[str, str] = {}
        try:
            source_values, target_values = await asyncio.gather(
                self._read_values(resource_type, source, name),
                self._read_values(resource_type, target, name),
            )
            if source_values is None:
                raise NotFound(f"{resource_type} {name} not found in source instance")
            missing = [k for k in keys if k not in source_values]
            if missing:
                raise NotFound(f"Keys not found in source {resource_type} {name}: {', '.join(missing)}")
            if target_values is None:
                raise NotFound(f"{resource_type} {name} not found in target instance")
            previous = {k: target_values.get(k, "") for k in keys}
            if resource_type == "secret":
                # raw bytes: Secret data may be binary
                updates: dict[str, str | bytes] = {
                    k: decode_secret_value(source_values[k]) for k in keys
                }
            else:
                updates = {k: source_values[k] for k in keys}

            async with await self._cluster_factory.resolve_cluster_adapter(target) as adapter:
                if resource_type == "configmap":
                    await adapter.sync_config_map_keys(target.cluster, target.namespace, name, updates)
                else:
                    await adapter.sync_secret_keys(target.cluster, target.namespace, name, updates)
        except Exception as e:
            await self._key_history(
                operation, resource_type, name, keys, source, target, started,
                HistoryStatus.FAILED, previous, {}, error=str(e),
            )
            operation.finish(SyncStatus.FAILED)
            await self._store.save_sync_operation(operation)
            log.warning("Key sync failed", keys=keys, error=str(e))
            raise

        await self._key_history(
            operation, resource_type, name, keys, source, target, started,
            HistoryStatus.SUCCESS, previous, updates,
        )
        operation.finish(SyncStatus.COMPLETED)
        await self._store.save_sync_operation(operation)
        log.info("Keys synced", keys=keys, target=target.name)
        results = [
            SyncItemResult(
                f"{name}:{key}",
                target.id,
                HistoryStatus.SUCCESS,
                *self._shown(resource_type, previous.get(key, ""), updates[key]),
            )
            for key in keys
        ]
        return SyncReport(operation, results)

    @staticmethod
    def _shown(resource_type: str, previous: str, new: str | bytes) -> tuple[str, str]:
        """Values as they may appear in history and results. Secret values never do."""
        if resource_type == "secret":
            return ("<set>" if previous else "", "<set>")
        return previous, new

    async def _key_history(
        self,
        operation: SyncOperation,
        resource_type: str,
        name: str,
        keys: list[str],
        source: AppInstance,
        target: AppInstance,
        started: float,
        status: HistoryStatus,
        previous: dict[str, str],
        updates: dict[str, str | bytes],
        error: str | None = None,
    ) -> None:
        duration = int((time.monotonic() - started) * 1000)
        for key in keys:
            before, after = self._shown(resource_type, previous.get(key, ""), updates.get(key, ""))
            if status is HistoryStatus.FAILED:
                after = ""
            await self._store.append_sync_history(
                SyncHistory(
                    operation_id=operation.id,
                    resource_name=f"{name}:{key}",
                    resource_type=resource_type,
                    status=status,
                    previous_value=before,
                    new_value=after,
                    config_changes={"name": name, "key": key},
                    error=error,
                    duration_ms=duration,
                    initiated_by=operation.initiated_by,
                    **_placement("source", source),
                    **_placement("target", target),
                )
            )

    # =========================================================================
    # REGISTRY
    # =========================================================================

    async def list_image_tags(self, service_id: str) -> list[RegistryTag]:
        """
        Tags available for a service's image repository, newest first.

        Raises:
            NotFound: unknown service, or the repository does not exist
            ValueError: the service has no image
            OperationNotSupported / AdapterError: from the registry
        """
        record = await self._store.find_service(service_id)
        if record is None:
            raise NotFound(f"Service not found: {service_id}")
        if not record.image_tag:
            raise ValueError(f"Service {record.name} does not have an image")

        adapter = await self._registry_factory.resolve_registry_adapter(record.image_tag)
        known_host = getattr(adapter, "site", None)
        ref = parse_image_reference(
            record.image_tag,
            known_host=normalize_host(known_host.url) if known_host is not None else None,
        )
        async with adapter:
            tags = await adapter.list_tags(RegistryRepoRef(ref.project, ref.repository))
        logger.debug("Listed image tags", service=record.name, repository=ref.path, count=len(tags))
        return tags

