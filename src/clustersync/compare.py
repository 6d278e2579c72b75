# ABOUTME: Generic keyed diff between two app instances plus service, ConfigMap and Secret calculators
# ABOUTME: Fetches both sides concurrently, classifies every name, orders results and summarizes them

"""
Comparison engine.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Every comparison follows the same recipe, whatever the resource:

1. FETCH the collection from the source and target instance (concurrently)
2. KEY both sides by name and take the union of names
3. CLASSIFY each name:
       only in target  -> missing_in_source
       only in source  -> missing_in_target
       on both sides   -> the kind's calculator decides different/identical
4. SORT: missing_in_source, missing_in_target, different, identical, then name
5. SUMMARIZE: one count per class, plus the total

`compare_collections()` implements steps 2-5 once. A calculator is a plain
function `(source, target) -> (is_different, differences)`:

    service_differences      image, status, replicas (version is display only)
    config_map_differences   key sets, changed values, labels, annotations
    secret_differences       key sets and changed values, never the values

=============================================================================
LIVE SERVICES
=============================================================================

Services are compared from ServiceRecords. `ServiceInventory.refresh()` lists
the live workloads through the instance's adapter and upserts a record per
workload first, so comparisons see current state and sync has record ids to
work with.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import structlog

from clustersync.errors import AdapterError, NotFound
from clustersync.images import extract_version
from clustersync.models import PlainMixin, ServiceRecord

if TYPE_CHECKING:
    from clustersync.adapters.factory import ClusterAdapterFactory
    from clustersync.models import AppInstance, ConfigMapSnapshot, SecretSnapshot
    from clustersync.store import Store

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Calculator = Callable[[T, T], tuple[bool, dict[str, Any]]]


class DifferenceType(StrEnum):
    MISSING_IN_SOURCE = "missing_in_source"
    MISSING_IN_TARGET = "missing_in_target"
    DIFFERENT = "different"
    IDENTICAL = "identical"


SORT_PRIORITY = {
    DifferenceType.MISSING_IN_SOURCE: 0,
    DifferenceType.MISSING_IN_TARGET: 1,
    DifferenceType.DIFFERENT: 2,
    DifferenceType.IDENTICAL: 3,
}


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass(frozen=True)
class ComparisonResult(PlainMixin, Generic[T]):
    name: str
    source: T | None
    target: T | None
    difference_type: DifferenceType
    differences: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ComparisonSummary(PlainMixin):
    total: int = 0
    identical: int = 0
    different: int = 0
    missing_in_source: int = 0
    missing_in_target: int = 0

    @classmethod
    def of(cls, results: list[ComparisonResult[Any]]) -> ComparisonSummary:
        counts = {t: 0 for t in DifferenceType}
        for result in results:
            counts[result.difference_type] += 1
        return cls(
            total=len(results),
            identical=counts[DifferenceType.IDENTICAL],
            different=counts[DifferenceType.DIFFERENT],
            missing_in_source=counts[DifferenceType.MISSING_IN_SOURCE],
            missing_in_target=counts[DifferenceType.MISSING_IN_TARGET],
        )


@dataclass(frozen=True)
class ComparisonReport(PlainMixin, Generic[T]):
    """Ordered comparisons between two instances with their summary."""

    resource_type: str
    source_instance_id: str
    target_instance_id: str
    summary: ComparisonSummary
    comparisons: list[ComparisonResult[T]]

    def get(self, name: str) -> ComparisonResult[T] | None:
        return next((c for c in self.comparisons if c.name == name), None)


@dataclass(frozen=True)
class SecretKeyComparison(PlainMixin):
    key: str
    source_exists: bool
    target_exists: bool
    different: bool
    identical: bool

    @property
    def missing_in_source(self) -> bool:
        return self.target_exists and not self.source_exists

    @property
    def missing_in_target(self) -> bool:
        return self.source_exists and not self.target_exists

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["missing_in_source"] = self.missing_in_source
        data["missing_in_target"] = self.missing_in_target
        return data


@dataclass(frozen=True)
class SecretKeyReport(PlainMixin):
    """Per-key view of one secret on both sides. Values are never included."""

    secret_name: str
    source_instance_id: str
    target_instance_id: str
    source: SecretSnapshot | None
    target: SecretSnapshot | None
    keys: list[SecretKeyComparison]
    summary: ComparisonSummary


# =============================================================================
# GENERIC DIFF
# =============================================================================


def compare_collections(
    source: dict[str, T],
    target: dict[str, T],
    calculator: Calculator[T],
) -> tuple[list[ComparisonResult[T]], ComparisonSummary]:
    """
    Classify every name of two keyed collections.

    Returns:
        (results ordered by difference priority then name, summary of counts)
    """
    results: list[ComparisonResult[T]] = []
    for name in source.keys() | target.keys():
        src, tgt = source.get(name), target.get(name)
        if src is None:
            results.append(
                ComparisonResult(name, None, tgt, DifferenceType.MISSING_IN_SOURCE, {"existence": True})
            )
        elif tgt is None:
            results.append(
                ComparisonResult(name, src, None, DifferenceType.MISSING_IN_TARGET, {"existence": True})
            )
        else:
            is_different, differences = calculator(src, tgt)
            kind = DifferenceType.DIFFERENT if is_different else DifferenceType.IDENTICAL
            results.append(ComparisonResult(name, src, tgt, kind, {"existence": False, **differences}))

    results.sort(key=lambda r: (SORT_PRIORITY[r.difference_type], r.name))
    return results, ComparisonSummary.of(results)


# =============================================================================
# CALCULATORS
# =============================================================================


def service_differences(source: ServiceRecord, target: ServiceRecord) -> tuple[bool, dict[str, Any]]:
    source_version = extract_version(source.image_tag)
    target_version = extract_version(target.image_tag)
    differences = {
        "image_tag": source.image_tag != target.image_tag,
        "version": source_version != target_version,
        "source_version": source_version,
        "target_version": target_version,
        "status": source.status != target.status,
        "replicas": source.replicas != target.replicas,
    }
    is_different = differences["image_tag"] or differences["status"] or differences["replicas"]
    return bool(is_different), differences


def _key_diff(source: dict[str, str], target: dict[str, str]) -> dict[str, list[str]]:
    return {
        "only_in_source": sorted(source.keys() - target.keys()),
        "only_in_target": sorted(target.keys() - source.keys()),
        "changed": sorted(k for k in source.keys() & target.keys() if source[k] != target[k]),
    }


def config_map_differences(
    source: ConfigMapSnapshot, target: ConfigMapSnapshot
) -> tuple[bool, dict[str, Any]]:
    differences: dict[str, Any] = _key_diff(source.data, target.data)
    differences["labels"] = source.labels != target.labels
    differences["annotations"] = source.annotations != target.annotations
    is_different = any(differences.values())
    return is_different, differences


def secret_differences(
    source: SecretSnapshot, target: SecretSnapshot
) -> tuple[bool, dict[str, Any]]:
    """Compare key sets and encoded values; only key names are reported."""
    differences = _key_diff(source.data, target.data)
    return any(differences.values()), differences


def secret_key_report(
    secret_name: str,
    source_instance_id: str,
    target_instance_id: str,
    source: SecretSnapshot | None,
    target: SecretSnapshot | None,
) -> SecretKeyReport:
    """
    Build the per-key comparison of one secret.

    Raises:
        NotFound: the secret exists on neither side
    """
    if source is None and target is None:
        raise NotFound(f"Secret {secret_name} not found in either instance")

    source_data = source.data if source else {}
    target_data = target.data if target else {}
    keys = []
    for key in sorted(source_data.keys() | target_data.keys()):
        in_source, in_target = key in source_data, key in target_data
        same = in_source and in_target and source_data[key] == target_data[key]
        keys.append(
            SecretKeyComparison(
                key=key,
                source_exists=in_source,
                target_exists=in_target,
                different=in_source and in_target and not same,
                identical=same,
            )
        )

    summary = ComparisonSummary(
        total=len(keys),
        identical=sum(k.identical for k in keys),
        different=sum(k.different for k in keys),
        missing_in_source=sum(k.missing_in_source for k in keys),
        missing_in_target=sum(k.missing_in_target for k in keys),
    )
    return SecretKeyReport(
        secret_name=secret_name,
        source_instance_id=source_instance_id,
        target_instance_id=target_instance_id,
        source=source,
        target=target,
        keys=keys,
        summary=summary,
    )


# =============================================================================
# SERVICE INVENTORY
# =============================================================================


async def load_instance(store: Store, instance_id: str) -> AppInstance:
    """
    Raises:
        NotFound: no app instance with that id
    """
    instance = await store.find_app_instance(instance_id)
    if instance is None:
        raise NotFound(f"App instance not found: {instance_id}")
    return instance


class ServiceInventory:
    """Keeps ServiceRecords in step with the workloads actually running."""

    def __init__(self, store: Store, cluster_factory: ClusterAdapterFactory) -> None:
        self._store = store
        self._cluster_factory = cluster_factory

    async def refresh(self, instance_id: str, fallback_to_cache: bool = False) -> list[ServiceRecord]:
        """
        List live workloads of an instance and upsert one ServiceRecord each.

        Args:
            instance_id: App instance to refresh
            fallback_to_cache: On adapter failure, return the stored records
                instead of raising

        Raises:
            NotFound: unknown instance or site
            AdapterError: the listing failed and fallback_to_cache is False
        """
        instance = await load_instance(self._store, instance_id)
        log = logger.bind(instance=instance.name, cluster=instance.cluster, namespace=instance.namespace)
        try:
            async with await self._cluster_factory.resolve_cluster_adapter(instance) as adapter:
                workloads = await adapter.list_workloads(instance.cluster, instance.namespace)
        except AdapterError as e:
            if not fallback_to_cache:
                raise
            log.warning("Workload listing failed, using cached services", error=str(e))
            return await self._store.list_services(instance.id)

        records = []
        for workload in workloads:
            existing = await self._store.find_service_by_name(instance.id, workload.name)
            values = {
                "image_tag": workload.image,
                "workload_type": workload.kind,
                "status": workload.state.value,
                "replicas": workload.scale,
                "available_replicas": workload.available_replicas,
            }
            if existing is not None:
                record = dataclasses.replace(existing, **values)
            else:
                record = ServiceRecord(name=workload.name, app_instance_id=instance.id, **values)
            records.append(await self._store.upsert_service(record))
        log.debug("Refreshed services", count=len(records))
        return sorted(records, key=lambda r: r.name)


# =============================================================================
# ENGINE
# =============================================================================


class ComparisonEngine:
    """Compares services, ConfigMaps and Secrets between two app instances."""

    def __init__(
        self,
        store: Store,
        cluster_factory: ClusterAdapterFactory,
        inventory: ServiceInventory | None = None,
    ) -> None:
        self._store = store
        self._cluster_factory = cluster_factory
        self._inventory = inventory or ServiceInventory(store, cluster_factory)

    async def _fetch(
        self,
        instance_id: str,
        fetch: Callable[[Any, AppInstance], Awaitable[list[T]]],
    ) -> list[T]:
        instance = await load_instance(self._store, instance_id)
        async with await self._cluster_factory.resolve_cluster_adapter(instance) as adapter:
            return await fetch(adapter, instance)

    async def _fetch_both(
        self,
        source_id: str,
        target_id: str,
        fetch: Callable[[Any, AppInstance], Awaitable[list[T]]],
    ) -> tuple[list[T], list[T]]:
        source, target = await asyncio.gather(
            self._fetch(source_id, fetch), self._fetch(target_id, fetch)
        )
        return source, target

    def _report(
        self,
        resource_type: str,
        source_id: str,
        target_id: str,
        source: dict[str, T],
        target: dict[str, T],
        calculator: Calculator[T],
    ) -> ComparisonReport[T]:
        comparisons, summary = compare_collections(source, target, calculator)
        logger.info(
            "Compared instances",
            resource_type=resource_type,
            source=source_id,
            target=target_id,
            **summary.to_dict(),
        )
        return ComparisonReport(resource_type, source_id, target_id, summary, comparisons)

    async def compare_services(
        self, source_id: str, target_id: str, fallback_to_cache: bool = False
    ) -> ComparisonReport[ServiceRecord]:
        source, target = await asyncio.gather(
            self._inventory.refresh(source_id, fallback_to_cache),
            self._inventory.refresh(target_id, fallback_to_cache),
        )
        return self._report(
            "service",
            source_id,
            target_id,
            {r.name: r for r in source},
            {r.name: r for r in target},
            service_differences,
        )

    async def compare_config_maps(
        self, source_id: str, target_id: str
    ) -> ComparisonReport[ConfigMapSnapshot]:
        source, target = await self._fetch_both(
            source_id,
            target_id,
            lambda adapter, i: adapter.list_config_maps(i.cluster, i.namespace),
        )
        return self._report(
            "configmap",
            source_id,
            target_id,
            {c.name: c for c in source},
            {c.name: c for c in target},
            config_map_differences,
        )

    async def compare_secrets(
        self, source_id: str, target_id: str
    ) -> ComparisonReport[SecretSnapshot]:
        source, target = await self._fetch_both(
            source_id,
            target_id,
            lambda adapter, i: adapter.list_secrets(i.cluster, i.namespace),
        )
        return self._report(
            "secret",
            source_id,
            target_id,
            {s.name: s for s in source},
            {s.name: s for s in target},
            secret_differences,
        )

    async def compare_secret_keys(
        self, secret_name: str, source_id: str, target_id: str
    ) -> SecretKeyReport:
        """
        Raises:
            NotFound: the secret exists in neither instance
        """
        source, target = await self._fetch_both(
            source_id,
            target_id,
            lambda adapter, i: adapter.list_secrets(i.cluster, i.namespace),
        )
        return secret_key_report(
            secret_name,
            source_id,
            target_id,
            next((s for s in source if s.name == secret_name), None),
            next((s for s in target if s.name == secret_name), None),
        )
