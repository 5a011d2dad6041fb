"""Shared fixtures for storage sizing tests."""
import pytest

from dynamic_storage.models import (
    GiB,
    ClusterSpec,
    InstanceReport,
    PVCInfo,
    StorageSizingPolicy,
    VolumeKind,
    WALHealthStatus,
)
from tests.helpers import NOW, FakeClock, stats


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_stats():
    return stats


@pytest.fixture
def make_policy():
    def _make(request="10Gi", limit="100Gi", **overrides):
        return StorageSizingPolicy(request=request, limit=limit, **overrides)
    return _make


@pytest.fixture
def make_cluster(make_policy):
    def _make(instances=("pg-1", "pg-2"), storage=None, wal_storage=None, **kwargs):
        return ClusterSpec(
            name="pg",
            namespace="db",
            storage=storage or make_policy(),
            wal_storage=wal_storage,
            instances=list(instances),
            **kwargs,
        )
    return _make


@pytest.fixture
def make_report():
    def _make(name, volumes, is_primary=False, wal_health=None, wal_health_error=None, reported_at=NOW):
        return InstanceReport(
            instance_name=name,
            volume_stats=dict(volumes),
            wal_health=wal_health,
            wal_health_error=wal_health_error,
            is_primary=is_primary,
            reported_at=reported_at,
        )
    return _make


@pytest.fixture
def make_pvc():
    def _make(instance, size_bytes=10 * GiB, kind=None, capacity_bytes=None):
        kind = kind or VolumeKind.data()
        suffix = "" if kind == VolumeKind.data() else f"-{str(kind).replace(':', '-')}"
        return PVCInfo(
            name=f"{instance}{suffix}",
            instance_name=instance,
            kind=kind,
            requested_bytes=size_bytes,
            capacity_bytes=capacity_bytes if capacity_bytes is not None else size_bytes,
            namespace="db",
        )
    return _make


@pytest.fixture
def healthy_wal():
    return WALHealthStatus(archive_healthy=True, pending_archive_files=0)
