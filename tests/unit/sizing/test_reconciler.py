"""Unit tests for the storage sizing reconciler."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import REGISTRY

from dynamic_storage.config import OperatorConfig
from dynamic_storage.errors import PatchConflict, StorageSizingError
from dynamic_storage.models import (
    GiB,
    EmergencyGrowPolicy,
    SizingAction,
    SizingActionKind,
    StorageSizingStatus,
    VolumeKind,
    VolumeSizingStatus,
    VolumeState,
    WALHealthStatus,
    WALUnknownPolicy,
)
from dynamic_storage.sizing.interfaces import (
    EVENT_WARNING,
    EventRecorder,
    InstanceStatusSource,
    PVCClient,
    StatusWriter,
)
from dynamic_storage.sizing.reconciler import Reconciler, effective_size_for_new_replica
from tests.helpers import NOW, stats

DATA = VolumeKind.data()
WAL = VolumeKind.wal()
GROUP = "db/pg/data"


def make_reconciler(clock, reports=None, pvcs=None, config=None):
    status_source = MagicMock(spec=InstanceStatusSource)
    status_source.fetch = AsyncMock(return_value=reports or {})
    pvc_client = MagicMock(spec=PVCClient)
    pvc_client.list_pvcs = AsyncMock(return_value=pvcs or [])
    pvc_client.resize = AsyncMock(return_value=None)
    status_writer = MagicMock(spec=StatusWriter)
    status_writer.write = AsyncMock(return_value=None)
    events = MagicMock(spec=EventRecorder)
    events.record = AsyncMock(return_value=None)
    return Reconciler(
        status_source=status_source,
        pvc_client=pvc_client,
        status_writer=status_writer,
        events=events,
        config=config or OperatorConfig(),
        clock=clock,
    )


def event_reasons(reconciler):
    return [c.args[2] for c in reconciler.events.record.await_args_list]


@pytest.fixture
def reports(make_report, healthy_wal):
    """Primary at 90% and replica at 80% on 10Gi data volumes."""
    def _make(used_primary=9 * GiB, used_replica=8 * GiB, total=10 * GiB, reported_at=NOW,
              wal_health=healthy_wal, kind=DATA):
        return {
            "pg-1": make_report("pg-1", {kind: stats(used_primary, total, reported_at)},
                                is_primary=True, wal_health=wal_health, reported_at=reported_at),
            "pg-2": make_report("pg-2", {kind: stats(used_replica, total, reported_at)},
                                reported_at=reported_at),
        }
    return _make


@pytest.fixture
def data_pvcs(make_pvc):
    def _make(requested=10 * GiB, capacity=None):
        return [
            make_pvc("pg-1", requested, capacity_bytes=capacity),
            make_pvc("pg-2", requested, capacity_bytes=capacity),
        ]
    return _make


class TestScheduledGrowth:
    """Growth, convergence and the in-flight guard."""

    @pytest.mark.asyncio
    async def test_grows_every_instance(self, clock, make_cluster, reports, data_pvcs):
        cluster = make_cluster()
        reconciler = make_reconciler(clock, reports(), data_pvcs())

        report = await reconciler.reconcile(cluster)

        result = report.for_kind(DATA)
        assert result.action is SizingActionKind.SCHEDULED_GROW
        assert result.state is VolumeState.RESIZING
        assert sorted(result.resized) == ["pg-1", "pg-2"]
        assert reconciler.pvc_client.resize.await_count == 2
        for call in reconciler.pvc_client.resize.await_args_list:
            assert call.args[1] == 12 * GiB

        status = cluster.status.data
        assert status.state == "Resizing"
        assert status.target_size == "12Gi"
        assert status.effective_size == "12Gi"
        assert status.actual_sizes == {"pg-1": "10Gi", "pg-2": "10Gi"}
        assert status.last_action.kind is SizingActionKind.SCHEDULED_GROW
        assert status.last_action.from_size == "10Gi"
        assert status.last_action.to_size == "12Gi"
        assert status.last_action.instance == "pg-1"
        assert status.budget.actions_last_24h == 1
        assert len(status.history) == 1

        assert report.status_written
        reconciler.status_writer.write.assert_awaited_once()
        written = reconciler.status_writer.write.await_args.args[1]
        assert written["data"]["state"] == "Resizing"
        assert SizingActionKind.SCHEDULED_GROW.value in event_reasons(reconciler)
        assert REGISTRY.get_sample_value(
            'cnpg_storage_state', {'cluster': 'db/pg', 'volume': 'data', 'state': 'Resizing'}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_resizing_converges_to_balanced(self, clock, make_cluster, reports, data_pvcs):
        cluster = make_cluster()
        reconciler = make_reconciler(clock, reports(), data_pvcs())
        await reconciler.reconcile(cluster)

        reconciler.pvc_client.resize.reset_mock()
        reconciler.pvc_client.list_pvcs.return_value = data_pvcs(12 * GiB)
        reconciler.status_source.fetch.return_value = reports(total=12 * GiB)

        report = await reconciler.reconcile(cluster)

        assert report.for_kind(DATA).action is SizingActionKind.NOOP
        assert cluster.status.data.state == "Balanced"
        assert cluster.status.data.effective_size == "12Gi"
        reconciler.pvc_client.resize.assert_not_awaited()

        # Unchanged inputs reproduce the same decision
        again = await reconciler.reconcile(cluster)
        assert again.for_kind(DATA).state is VolumeState.BALANCED
        reconciler.pvc_client.resize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_duplicate_resize_while_in_flight(self, clock, make_cluster, reports, data_pvcs):
        cluster = make_cluster()
        reconciler = make_reconciler(clock, reports(), data_pvcs())
        await reconciler.reconcile(cluster)
        reconciler.pvc_client.resize.reset_mock()

        clock.advance(timedelta(minutes=5))
        reconciler.status_source.fetch.return_value = reports(reported_at=clock.now)
        report = await reconciler.reconcile(cluster)

        assert report.for_kind(DATA).state is VolumeState.RESIZING
        assert report.for_kind(DATA).action is SizingActionKind.NOOP
        reconciler.pvc_client.resize.assert_not_awaited()
        assert cluster.status.data.budget.actions_last_24h == 1

    @pytest.mark.asyncio
    async def test_stalled_resize_is_retried(self, clock, make_cluster, reports, data_pvcs):
        cluster = make_cluster()
        reconciler = make_reconciler(clock, reports(), data_pvcs())
        await reconciler.reconcile(cluster)
        reconciler.pvc_client.resize.reset_mock()

        clock.advance(timedelta(minutes=31))
        reconciler.status_source.fetch.return_value = reports(reported_at=clock.now)
        report = await reconciler.reconcile(cluster)

        assert "ResizeStalled" in event_reasons(reconciler)
        assert report.for_kind(DATA).action is SizingActionKind.SCHEDULED_GROW
        assert reconciler.pvc_client.resize.await_count == 2
        assert len(cluster.status.data.history) == 2

    @pytest.mark.asyncio
    async def test_requests_already_at_target_are_not_patched(self, clock, make_cluster, reports, data_pvcs):
        cluster = make_cluster()
        reconciler = make_reconciler(clock, reports(), data_pvcs(requested=12 * GiB, capacity=10 * GiB))

        report = await reconciler.reconcile(cluster)

        reconciler.pvc_client.resize.assert_not_awaited()
        assert report.for_kind(DATA).state is VolumeState.RESIZING
        assert cluster.status.data.last_action is None
        assert reconciler.budget.remaining_budget(GROUP, 4) == 4


class TestFailures:
    """Failures stay inside one volume group and spend no budget."""

    @pytest.mark.asyncio
    async def test_patch_conflict_leaves_status_unchanged(self, clock, make_cluster, reports, data_pvcs):
        cluster = make_cluster()
        reconciler = make_reconciler(clock, reports(), data_pvcs())
        reconciler.pvc_client.resize.side_effect = PatchConflict("pg-1", "object has been modified")

        report = await reconciler.reconcile(cluster)

        result = report.for_kind(DATA)
        assert result.error
        assert result.action is SizingActionKind.NOOP
        assert cluster.status.data.state == ""
        assert cluster.status.data.last_action is None
        assert reconciler.budget.remaining_budget(GROUP, 4) == 4
        assert "ResizeFailed" in event_reasons(reconciler)
        assert report.status_written

    @pytest.mark.asyncio
    async def test_stale_stats_are_skipped(self, clock, make_cluster, reports, data_pvcs):
        cluster = make_cluster()
        reconciler = make_reconciler(clock, reports(reported_at=NOW - timedelta(minutes=5)), data_pvcs())

        report = await reconciler.reconcile(cluster)

        assert report.for_kind(DATA).skipped == "no fresh disk statistics"
        reconciler.pvc_client.resize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_pvcs_are_skipped(self, clock, make_cluster, reports):
        cluster = make_cluster()
        reconciler = make_reconciler(clock, reports(), [])

        report = await reconciler.reconcile(cluster)

        assert report.for_kind(DATA).skipped == "waiting for PVC size data"

    @pytest.mark.asyncio
    async def test_pvc_listing_failure_skips_volumes(self, clock, make_cluster, reports):
        cluster = make_cluster()
        reconciler = make_reconciler(clock, reports())
        reconciler.pvc_client.list_pvcs.side_effect = StorageSizingError("forbidden")

        report = await reconciler.reconcile(cluster)

        assert report.for_kind(DATA).skipped == "PVC inventory unavailable"
        assert report.status_written

    @pytest.mark.asyncio
    async def test_invalid_policy_does_not_block_siblings(self, clock, make_cluster, make_policy, make_pvc,
                                                          make_report, healthy_wal):
        tablespace = VolumeKind.for_tablespace("idx")
        cluster = make_cluster(
            instances=("pg-1",),
            storage=make_policy(request="lots"),
            tablespaces={"idx": make_policy(request="1Gi")},
        )
        reports = {
            "pg-1": make_report("pg-1", {DATA: stats(9 * GiB, 10 * GiB), tablespace: stats(9 * GiB, 10 * GiB)},
                                is_primary=True, wal_health=healthy_wal),
        }
        pvcs = [make_pvc("pg-1"), make_pvc("pg-1", kind=tablespace)]
        reconciler = make_reconciler(clock, reports, pvcs)

        report = await reconciler.reconcile(cluster)

        assert report.for_kind(DATA).action is SizingActionKind.NOOP
        conditions = {c.type: c for c in cluster.status.data.conditions}
        assert conditions["ConfigurationInvalid"].status == "True"
        assert "InvalidStoragePolicy" in event_reasons(reconciler)

        assert report.for_kind(tablespace).action is SizingActionKind.SCHEDULED_GROW
        reconciler.pvc_client.resize.assert_awaited_once()
        assert reconciler.pvc_client.resize.await_args.args[0].name == "pg-1-tablespace-idx"

    @pytest.mark.asyncio
    async def test_partial_resize_failure_names_patched_claims(self, clock, make_cluster, reports, data_pvcs):
        cluster = make_cluster()
        reconciler = make_reconciler(clock, reports(), data_pvcs())
        reconciler.pvc_client.resize.side_effect = [None, PatchConflict("pg-2", "object has been modified")]

        report = await reconciler.reconcile(cluster)

        assert report.for_kind(DATA).error
        failed = [c.args[3] for c in reconciler.events.record.await_args_list if c.args[2] == "ResizeFailed"]
        assert len(failed) == 1
        assert "already requested 12Gi for pg-1" in failed[0]
        assert reconciler.budget.remaining_budget(GROUP, 4) == 4

    @pytest.mark.asyncio
    async def test_malformed_section_does_not_block_siblings(self, clock, make_cluster, reports, data_pvcs):
        message = "Invalid spec.walStorage {'maintenanceWindow': 'nightly'}: maintenanceWindow must be an object"
        cluster = make_cluster(has_dedicated_wal=True, invalid_policies={WAL: message})
        reconciler = make_reconciler(clock, reports(), data_pvcs())

        report = await reconciler.reconcile(cluster)

        assert cluster.sized_volumes() == [DATA, WAL]
        assert report.for_kind(WAL).skipped == message
        conditions = {c.type: c for c in cluster.status.wal.conditions}
        assert conditions["ConfigurationInvalid"].message == message
        assert "InvalidStoragePolicy" in event_reasons(reconciler)

        assert report.for_kind(DATA).action is SizingActionKind.SCHEDULED_GROW
        assert reconciler.pvc_client.resize.await_count == 2
        assert report.status_written


class TestBudgetGates:
    """Planned growth respects the emergency reserve."""

    @pytest.fixture
    def budget_cluster(self, make_cluster, make_policy):
        def _make():
            policy = make_policy(
                limit="500Gi",
                emergency_grow=EmergencyGrowPolicy(max_actions_per_day=3, reserved_actions_for_emergency=1),
            )
            history = [
                SizingAction(SizingActionKind.SCHEDULED_GROW, "8Gi", "9Gi", NOW - timedelta(hours=3)),
                SizingAction(SizingActionKind.SCHEDULED_GROW, "9Gi", "10Gi", NOW - timedelta(hours=2)),
            ]
            status = StorageSizingStatus(data=VolumeSizingStatus(
                state="Balanced", history=history, last_action=history[-1],
            ))
            return make_cluster(storage=policy, status=status)
        return _make

    @pytest.mark.asyncio
    async def test_planned_growth_waits_for_budget(self, clock, budget_cluster, reports, data_pvcs):
        cluster = budget_cluster()
        reconciler = make_reconciler(clock, reports(), data_pvcs())

        report = await reconciler.reconcile(cluster)

        assert report.for_kind(DATA).action is SizingActionKind.PENDING_GROWTH
        assert cluster.status.data.state == "PendingGrowth"
        assert cluster.status.data.budget.available_for_planned == 0
        assert cluster.status.data.budget.available_for_emergency == 1
        assert "BudgetExhausted" in event_reasons(reconciler)
        reconciler.pvc_client.resize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_emergency_uses_reserved_slot(self, clock, budget_cluster, reports, data_pvcs):
        cluster = budget_cluster()
        reconciler = make_reconciler(clock, reports(used_primary=9 * GiB + 800 * 1024 ** 2), data_pvcs())

        report = await reconciler.reconcile(cluster)

        assert report.for_kind(DATA).action is SizingActionKind.EMERGENCY_GROW
        assert cluster.status.data.budget.available_for_emergency == 0
        assert cluster.status.data.last_action.kind is SizingActionKind.EMERGENCY_GROW


class TestWALGate:
    """WAL health gates WAL-bearing volumes only."""

    @pytest.mark.asyncio
    async def test_unhealthy_archive_blocks_single_volume_cluster(self, clock, make_cluster, reports, data_pvcs):
        cluster = make_cluster()
        unhealthy = WALHealthStatus(archive_healthy=False, pending_archive_files=42)
        reconciler = make_reconciler(clock, reports(wal_health=unhealthy), data_pvcs())

        report = await reconciler.reconcile(cluster)

        assert report.for_kind(DATA).action is SizingActionKind.PENDING_GROWTH
        assert report.for_kind(DATA).decision.block_reason.value == "WALUnsafe"
        reconciler.pvc_client.resize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_health_fails_closed(self, clock, make_cluster, reports, data_pvcs):
        cluster = make_cluster()
        reconciler = make_reconciler(clock, reports(wal_health=None), data_pvcs())

        report = await reconciler.reconcile(cluster)

        assert report.for_kind(DATA).action is SizingActionKind.PENDING_GROWTH
        reconciler.pvc_client.resize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_health_fail_open_warns(self, clock, make_cluster, reports, data_pvcs):
        cluster = make_cluster()
        config = OperatorConfig(wal_health_unknown_policy=WALUnknownPolicy.FAIL_OPEN)
        reconciler = make_reconciler(clock, reports(wal_health=None), data_pvcs(), config=config)

        report = await reconciler.reconcile(cluster)

        assert report.for_kind(DATA).action is SizingActionKind.SCHEDULED_GROW
        warnings = [c for c in reconciler.events.record.await_args_list if c.args[1] == EVENT_WARNING]
        assert [c.args[2] for c in warnings] == ["WALSafetyWarning"]

    @pytest.mark.asyncio
    async def test_dedicated_wal_only_gates_wal_volume(self, clock, make_cluster, make_policy, make_report,
                                                       make_pvc):
        cluster = make_cluster(wal_storage=make_policy(request="1Gi", limit="50Gi"))
        unhealthy = WALHealthStatus(archive_healthy=False)
        volumes = {DATA: stats(9 * GiB, 10 * GiB), WAL: stats(9 * GiB, 10 * GiB)}
        reports = {
            "pg-1": make_report("pg-1", volumes, is_primary=True, wal_health=unhealthy),
            "pg-2": make_report("pg-2", volumes),
        }
        pvcs = [make_pvc(name, kind=kind) for name in ("pg-1", "pg-2") for kind in (DATA, WAL)]
        reconciler = make_reconciler(clock, reports, pvcs)

        report = await reconciler.reconcile(cluster)

        assert report.for_kind(DATA).action is SizingActionKind.SCHEDULED_GROW
        assert report.for_kind(WAL).action is SizingActionKind.PENDING_GROWTH
        assert cluster.status.wal.state == "PendingGrowth"


class TestCancellation:
    """A superseded pass never writes status."""

    @pytest.mark.asyncio
    async def test_cancel_abandons_fetch(self, clock, make_cluster, data_pvcs):
        cluster = make_cluster()
        cancel = asyncio.Event()
        reconciler = make_reconciler(clock, pvcs=data_pvcs())

        async def slow_fetch(_cluster):
            cancel.set()
            await asyncio.sleep(30)
            return {}

        reconciler.status_source.fetch.side_effect = slow_fetch

        report = await asyncio.wait_for(reconciler.reconcile(cluster, cancel), timeout=5)

        assert report.cancelled
        assert not report.status_written
        reconciler.status_writer.write.assert_not_awaited()
        reconciler.pvc_client.resize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancelled_before_pass(self, clock, make_cluster, reports, data_pvcs):
        cancel = asyncio.Event()
        cancel.set()
        reconciler = make_reconciler(clock, reports(), data_pvcs())

        report = await reconciler.reconcile(make_cluster(), cancel)

        assert report.cancelled
        reconciler.status_writer.write.assert_not_awaited()


class TestMisc:
    """Effective size and multi-cluster passes."""

    @pytest.mark.asyncio
    async def test_effective_size_never_decreases(self, clock, make_cluster, reports, data_pvcs):
        status = StorageSizingStatus(data=VolumeSizingStatus(effective_size="50Gi", state="Balanced"))
        cluster = make_cluster(status=status)
        reconciler = make_reconciler(clock, reports(used_primary=2 * GiB, used_replica=2 * GiB), data_pvcs())

        await reconciler.reconcile(cluster)

        assert cluster.status.data.effective_size == "50Gi"
        assert cluster.status.data.state == "Balanced"

    def test_effective_size_for_new_replica(self, make_cluster):
        cluster = make_cluster()
        assert effective_size_for_new_replica(cluster, DATA) == "10Gi"
        assert effective_size_for_new_replica(cluster, WAL) is None

        cluster.status.ensure(DATA).effective_size = "24Gi"
        assert effective_size_for_new_replica(cluster, DATA) == "24Gi"

    @pytest.mark.asyncio
    async def test_reconcile_many(self, clock, make_cluster, reports, data_pvcs):
        reconciler = make_reconciler(clock, reports(), data_pvcs())
        clusters = [make_cluster(), make_cluster()]

        results = await reconciler.reconcile_many(clusters)

        assert len(results) == 2
        assert all(r.status_written for r in results)

    @pytest.mark.asyncio
    async def test_unexpected_error_stays_with_its_cluster(self, clock, make_cluster, reports, data_pvcs):
        """A collaborator raising outside the sizing error hierarchy fails only its own cluster."""
        reconciler = make_reconciler(clock, pvcs=data_pvcs())
        healthy = reports()

        async def fetch(cluster):
            if cluster.name == "broken":
                raise ValueError("Expecting value: line 1 column 1 (char 0)")
            return healthy

        reconciler.status_source.fetch.side_effect = fetch
        broken = make_cluster()
        broken.name = "broken"

        results = await reconciler.reconcile_many([broken, make_cluster()])

        assert results[0].cluster_id == "db/broken"
        assert "Expecting value" in results[0].error
        assert not results[0].status_written
        assert results[1].status_written
        assert results[1].for_kind(DATA).action is SizingActionKind.SCHEDULED_GROW
