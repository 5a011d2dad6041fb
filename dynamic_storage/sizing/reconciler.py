"""Reconciliation of storage sizing for database clusters.

One pass walks every sized volume group of a cluster (data, WAL when it has
its own volume, each tablespace with a policy), gathers the latest stats and
gate verdicts, asks the engine for a decision, issues resize requests and
writes the resulting status once at the end of the pass.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Dict, Iterable, List, Optional, Tuple

from dynamic_storage.config import OperatorConfig
from dynamic_storage.errors import (
    ConfigurationInvalid,
    ReconciliationSuperseded,
    StorageSizingError,
)
from dynamic_storage.models import (
    ACTION_RESULT_FAILED,
    ACTION_RESULT_SUCCESS,
    ClusterSpec,
    InstanceReport,
    LogicalVolume,
    PVCInfo,
    SizingAction,
    SizingActionKind,
    SizingBounds,
    StatusCondition,
    VolumeKind,
    VolumeSizingStatus,
    VolumeState,
    VolumeStats,
    WALHealthStatus,
    format_quantity,
    parse_quantity,
    requires_wal_gate,
    utcnow,
)
from dynamic_storage.monitoring.metrics import SizingMetricsCollector
from dynamic_storage.sizing.budget import BudgetTracker
from dynamic_storage.sizing.engine import SizingDecision, SizingInput, decide
from dynamic_storage.sizing.interfaces import (
    EVENT_NORMAL,
    EVENT_WARNING,
    EventRecorder,
    InstanceStatusSource,
    LoggingEventRecorder,
    PVCClient,
    StatusWriter,
)
from dynamic_storage.sizing.maintenance import MaintenanceWindowEvaluator
from dynamic_storage.sizing.safety import evaluate_wal_safety

logger = logging.getLogger(__name__)

CONDITION_CONFIGURATION_INVALID = "ConfigurationInvalid"
CONDITION_MAINTENANCE_WINDOW_INVALID = "MaintenanceWindowInvalid"


@dataclass
class VolumeResult:
    """Outcome of one volume group within a pass."""
    kind: VolumeKind
    action: SizingActionKind = SizingActionKind.NOOP
    state: Optional[VolumeState] = None
    decision: Optional[SizingDecision] = None
    skipped: str = ""
    resized: List[str] = field(default_factory=list)
    error: str = ""


@dataclass
class ReconcileReport:
    cluster_id: str
    volumes: List[VolumeResult] = field(default_factory=list)
    status_written: bool = False
    cancelled: bool = False
    error: str = ""

    def for_kind(self, kind: VolumeKind) -> Optional[VolumeResult]:
        for result in self.volumes:
            if result.kind == kind:
                return result
        return None


def effective_size_for_new_replica(cluster: ClusterSpec, kind: VolumeKind) -> Optional[str]:
    """Size a freshly provisioned replica volume should be created with.

    The persisted effective size once one exists, otherwise the policy's
    request. None when the volume has no sizing policy.
    """
    status = cluster.status.get(kind)
    if status is not None and status.effective_size:
        return status.effective_size
    policy = cluster.policy_for(kind)
    if policy is None:
        return None
    return policy.request


def _primary_wal_health(reports: Dict[str, InstanceReport]) -> Tuple[Optional[WALHealthStatus], Optional[str]]:
    for report in reports.values():
        if report.is_primary:
            return report.wal_health, report.wal_health_error
    return None, "no primary instance reported WAL health"


class Reconciler:
    """Drives sizing decisions for clusters through its collaborators."""

    def __init__(self,
                 status_source: InstanceStatusSource,
                 pvc_client: PVCClient,
                 status_writer: StatusWriter,
                 events: Optional[EventRecorder] = None,
                 budget: Optional[BudgetTracker] = None,
                 config: Optional[OperatorConfig] = None,
                 clock=utcnow):
        self.status_source = status_source
        self.pvc_client = pvc_client
        self.status_writer = status_writer
        self.events = events or LoggingEventRecorder()
        self.config = config or OperatorConfig()
        self._clock = clock
        self.budget = budget or BudgetTracker(clock=clock)

    async def reconcile_many(self, clusters: Iterable[ClusterSpec],
                             cancel: Optional[asyncio.Event] = None) -> List[ReconcileReport]:
        """Reconcile several clusters concurrently.

        A cluster whose pass fails unexpectedly gets a report carrying the
        error; the other clusters are unaffected.
        """
        return list(await asyncio.gather(*(self._reconcile_isolated(c, cancel) for c in clusters)))

    async def _reconcile_isolated(self, cluster: ClusterSpec, cancel: Optional[asyncio.Event]) -> ReconcileReport:
        try:
            return await self.reconcile(cluster, cancel)
        except Exception as e:
            logger.exception(f"[{cluster.cluster_id}] Reconciliation failed: {e}")
            return ReconcileReport(cluster_id=cluster.cluster_id, error=str(e) or type(e).__name__)

    async def reconcile(self, cluster: ClusterSpec, cancel: Optional[asyncio.Event] = None) -> ReconcileReport:
        """Run one sizing pass for a cluster.

        Setting ``cancel`` abandons in-flight fetches and skips the status
        write, so a superseded pass never persists stale decisions.
        """
        cancel = cancel or asyncio.Event()
        # Persisted timestamps have second precision; budget keys must match them
        now = self._clock().replace(microsecond=0)
        report = ReconcileReport(cluster_id=cluster.cluster_id)
        metrics = SizingMetricsCollector(cluster.cluster_id)

        try:
            reports, pvcs = await self._fetch(cluster, cancel)
            for kind in cluster.sized_volumes():
                if cancel.is_set():
                    raise ReconciliationSuperseded(f"Pass for {cluster.cluster_id} superseded")
                try:
                    result = await self._reconcile_volume(cluster, kind, reports, pvcs, now, metrics, cancel)
                except ReconciliationSuperseded:
                    raise
                except StorageSizingError as e:
                    logger.error(f"[{cluster.cluster_id}] Failed to reconcile {kind} volume: {e}")
                    result = VolumeResult(kind=kind, error=str(e))
                report.volumes.append(result)
        except ReconciliationSuperseded as e:
            logger.info(f"Abandoning reconciliation: {e}")
            report.cancelled = True
            return report

        if cancel.is_set():
            logger.info(f"[{cluster.cluster_id}] Pass cancelled, skipping status write")
            report.cancelled = True
            return report

        try:
            await self.status_writer.write(cluster, cluster.status.to_dict())
            report.status_written = True
        except StorageSizingError as e:
            logger.error(f"[{cluster.cluster_id}] Failed to write storage sizing status: {e}")
        return report

    async def _until_cancelled(self, cancel: asyncio.Event, awaitable: Awaitable):
        """Await ``awaitable`` unless ``cancel`` is set first."""
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if task not in done:
            raise ReconciliationSuperseded("cancelled while waiting for collaborators")
        return task.result()

    async def _fetch(self, cluster: ClusterSpec,
                     cancel: asyncio.Event) -> Tuple[Dict[str, InstanceReport], Optional[List[PVCInfo]]]:
        reports_task = self._until_cancelled(cancel, self.status_source.fetch(cluster))
        pvcs_task = self._until_cancelled(cancel, self.pvc_client.list_pvcs(cluster))
        reports, pvcs = await asyncio.gather(reports_task, pvcs_task, return_exceptions=True)

        for outcome in (reports, pvcs):
            if isinstance(outcome, ReconciliationSuperseded):
                raise outcome
        if isinstance(reports, BaseException):
            if not isinstance(reports, StorageSizingError):
                raise reports
            logger.warning(f"[{cluster.cluster_id}] Instance status unavailable: {reports}")
            reports = {}
        if isinstance(pvcs, BaseException):
            if not isinstance(pvcs, StorageSizingError):
                raise pvcs
            logger.warning(f"[{cluster.cluster_id}] PVC inventory unavailable: {pvcs}")
            pvcs = None
        return reports, pvcs

    def _fresh_stats(self, kind: VolumeKind, reports: Dict[str, InstanceReport],
                     now: datetime) -> Dict[str, VolumeStats]:
        max_age = timedelta(seconds=self.config.stats_max_age_seconds)
        fresh = {}
        for name, instance_report in reports.items():
            stats = instance_report.volume_stats.get(kind)
            if stats is None:
                continue
            reported_at = stats.reported_at or instance_report.reported_at
            if reported_at is None or now - reported_at > max_age:
                logger.debug(f"Ignoring stale {kind} stats from {name} (reported {reported_at})")
                continue
            fresh[name] = stats
        return fresh

    async def _reconcile_volume(self,
                                cluster: ClusterSpec,
                                kind: VolumeKind,
                                reports: Dict[str, InstanceReport],
                                pvcs: Optional[List[PVCInfo]],
                                now: datetime,
                                metrics: SizingMetricsCollector,
                                cancel: asyncio.Event) -> VolumeResult:
        policy = cluster.policy_for(kind)
        status = cluster.status.ensure(kind)
        group = LogicalVolume.group_key(cluster.cluster_id, kind)

        message = cluster.invalid_policies.get(kind)
        if message is None:
            try:
                bounds = SizingBounds.from_policy(policy)
            except ConfigurationInvalid as e:
                message = str(e)
        if message is not None:
            if not any(c.type == CONDITION_CONFIGURATION_INVALID and c.message == message
                       for c in status.conditions):
                await self.events.record(cluster, EVENT_WARNING, "InvalidStoragePolicy", f"{kind}: {message}")
            status.set_condition(StatusCondition(
                type=CONDITION_CONFIGURATION_INVALID,
                status="True",
                reason="InvalidPolicy",
                message=message,
            ))
            status.reason = message
            return VolumeResult(kind=kind, skipped=message)
        status.remove_condition(CONDITION_CONFIGURATION_INVALID)

        if pvcs is None:
            return VolumeResult(kind=kind, skipped="PVC inventory unavailable")
        group_pvcs = [
            p for p in pvcs
            if p.kind == kind and (not cluster.instances or p.instance_name in cluster.instances)
        ]
        if not group_pvcs:
            logger.info(f"[{cluster.cluster_id}] No PVCs found for {kind} volume, waiting for PVC size data")
            return VolumeResult(kind=kind, skipped="waiting for PVC size data")

        stats_by_instance = self._fresh_stats(kind, reports, now)
        if not stats_by_instance:
            logger.info(f"[{cluster.cluster_id}] No fresh disk statistics for {kind} volume, skipping")
            return VolumeResult(kind=kind, skipped="no fresh disk statistics")
        worst_instance, stats = max(stats_by_instance.items(), key=lambda item: (item[1].percent_used, item[0]))

        actual = {p.instance_name: p.actual_bytes for p in group_pvcs}
        current = min(actual.values())

        emergency_policy = policy.emergency
        self.budget.restore(group, status.successful_action_times())
        planned_ok = self.budget.has_budget(
            group, emergency_policy.max_actions_per_day,
            emergency_policy.reserved_actions_for_emergency, for_emergency=False,
        )
        emergency_ok = self.budget.has_budget(
            group, emergency_policy.max_actions_per_day,
            emergency_policy.reserved_actions_for_emergency, for_emergency=True,
        )

        window = MaintenanceWindowEvaluator(
            policy.maintenance_window,
            lookback=timedelta(hours=self.config.maintenance_lookback_hours),
        )
        if window.valid:
            status.remove_condition(CONDITION_MAINTENANCE_WINDOW_INVALID)
        else:
            status.set_condition(StatusCondition(
                type=CONDITION_MAINTENANCE_WINDOW_INVALID,
                status="True",
                reason="InvalidSchedule",
                message=window.error,
            ))
        next_window = window.next_window_start(now)

        gated = requires_wal_gate(kind, cluster.has_dedicated_wal)
        health, health_error = _primary_wal_health(reports) if gated else (None, None)
        verdict = evaluate_wal_safety(
            health,
            policy.safety,
            gated,
            max_slot_retention_bytes=bounds.max_slot_retention_bytes,
            health_error=health_error,
            default_on_unknown=self.config.wal_health_unknown_policy,
        )
        if verdict.warning:
            await self.events.record(cluster, EVENT_WARNING, "WALSafetyWarning", f"{kind}: {verdict.warning}")

        decision = decide(SizingInput(
            kind=kind,
            policy=policy,
            bounds=bounds,
            stats=stats,
            current_size=current,
            wal_verdict=verdict,
            window_open=window.is_open(now),
            next_window=next_window,
            planned_budget_available=planned_ok,
            emergency_budget_available=emergency_ok,
        ))
        result = VolumeResult(kind=kind, action=decision.action, state=decision.state, decision=decision)
        state = decision.state
        reason = decision.reason

        in_flight = self._resize_in_flight(status, actual)
        if in_flight and status.last_action is not None:
            age = now - status.last_action.timestamp
            if age < timedelta(seconds=self.config.resize_stale_after_seconds):
                state = VolumeState.RESIZING
                reason = f"resize to {status.last_action.to_size} in progress"
                result.action = SizingActionKind.NOOP
            else:
                await self.events.record(
                    cluster, EVENT_WARNING, "ResizeStalled",
                    f"{kind}: resize to {status.last_action.to_size} not completed after {age}, retrying",
                )
                in_flight = False

        if decision.requires_growth and not in_flight:
            if cancel.is_set():
                raise ReconciliationSuperseded(f"Pass for {cluster.cluster_id} superseded before resizing")
            patched = await self._resize_group(cluster, kind, group_pvcs, decision, metrics)
            if patched is None:
                result.action = SizingActionKind.NOOP
                result.error = "resize request failed"
                return result
            result.resized = patched

        if decision.requires_growth and not in_flight and not result.resized:
            # Requests already at target; only the provider is behind
            state = VolumeState.RESIZING
            reason = f"waiting for volumes to reach {format_quantity(decision.target_size)}"
            result.action = SizingActionKind.NOOP
        elif decision.requires_growth and not in_flight:
            action = SizingAction(
                kind=decision.action,
                from_size=format_quantity(current),
                to_size=format_quantity(decision.target_size),
                timestamp=now,
                instance=worst_instance,
                result=ACTION_RESULT_SUCCESS,
            )
            self.budget.record_action(group, at=now)
            status.record_action(
                action, max(self.config.action_history_limit, emergency_policy.max_actions_per_day)
            )
            metrics.record_resize(kind, decision.action, ACTION_RESULT_SUCCESS)
            state = VolumeState.RESIZING
            await self.events.record(
                cluster, EVENT_NORMAL, decision.action.value,
                f"{kind}: growing from {action.from_size} to {action.to_size} ({decision.reason})",
            )
        elif state is not VolumeState.RESIZING and (state.value != status.state or reason != status.reason):
            await self._record_transition(cluster, kind, decision, state, reason)

        self._update_status(status, bounds, decision, state, reason, actual, next_window, window.configured)
        status.budget = self.budget.status(
            group, emergency_policy.max_actions_per_day, emergency_policy.reserved_actions_for_emergency
        )
        result.state = state
        self._record_metrics(metrics, kind, status, decision, state, actual, next_window, now)
        return result

    def _resize_in_flight(self, status: VolumeSizingStatus, actual: Dict[str, int]) -> bool:
        if status.state != VolumeState.RESIZING.value or status.last_action is None:
            return False
        try:
            requested = parse_quantity(status.last_action.to_size, "lastAction.to")
        except ConfigurationInvalid:
            return False
        return any(size < requested for size in actual.values())

    async def _resize_group(self, cluster: ClusterSpec, kind: VolumeKind, pvcs: List[PVCInfo],
                            decision: SizingDecision, metrics: SizingMetricsCollector) -> Optional[List[str]]:
        """Patch every claim of the group below the target.

        Returns the patched claim names, or None when a request failed. A
        failure stops the remaining patches and spends no budget.
        """
        patched = []
        for pvc in pvcs:
            if pvc.requested_bytes >= decision.target_size:
                continue
            try:
                await self.pvc_client.resize(pvc, decision.target_size)
            except StorageSizingError as e:
                logger.warning(f"[{cluster.cluster_id}] Resize of {pvc.name} failed: {e}")
                metrics.record_resize(kind, decision.action, ACTION_RESULT_FAILED)
                message = f"{kind}: {e}"
                if patched:
                    message += (f"; already requested {format_quantity(decision.target_size)} "
                                f"for {', '.join(patched)}")
                await self.events.record(cluster, EVENT_WARNING, "ResizeFailed", message)
                return None
            logger.info(
                f"[{cluster.cluster_id}] Requested {format_quantity(decision.target_size)} "
                f"for PVC {pvc.name} ({decision.action.value})"
            )
            patched.append(pvc.name)
        return patched

    async def _record_transition(self, cluster: ClusterSpec, kind: VolumeKind, decision: SizingDecision,
                                 state: VolumeState, reason: str) -> None:
        if decision.block_reason is not None:
            message = f"{kind}: growth to {format_quantity(decision.target_size)} pending: {reason}"
            if decision.next_window is not None:
                message = f"{message} (next window {decision.next_window.isoformat()})"
            await self.events.record(cluster, EVENT_NORMAL, decision.block_reason.value, message)
        elif state is VolumeState.AT_LIMIT:
            await self.events.record(cluster, EVENT_WARNING, "AtLimit", f"{kind}: {reason}")
        else:
            await self.events.record(cluster, EVENT_NORMAL, state.value, f"{kind}: {reason}")

    def _update_status(self, status: VolumeSizingStatus, bounds: SizingBounds, decision: SizingDecision,
                       state: VolumeState, reason: str, actual: Dict[str, int],
                       next_window: Optional[datetime], window_configured: bool) -> None:
        effective = max([bounds.request_bytes] + list(actual.values()))
        if state is VolumeState.RESIZING and status.last_action is not None:
            effective = max(effective, parse_quantity(status.last_action.to_size, "lastAction.to"))
        if status.effective_size:
            effective = max(effective, parse_quantity(status.effective_size, "effectiveSize"))

        status.effective_size = format_quantity(effective)
        status.target_size = format_quantity(decision.target_size)
        status.actual_sizes = {name: format_quantity(size) for name, size in sorted(actual.items())}
        status.state = state.value
        status.reason = reason
        status.next_maintenance_window = next_window if window_configured else None

    def _record_metrics(self, metrics: SizingMetricsCollector, kind: VolumeKind, status: VolumeSizingStatus,
                        decision: SizingDecision, state: VolumeState, actual: Dict[str, int],
                        next_window: Optional[datetime], now: datetime) -> None:
        metrics.record_sizes(kind, decision.target_size, parse_quantity(status.effective_size), actual)
        metrics.record_state(kind, state)
        metrics.record_block_reason(kind, decision.block_reason)
        if status.budget is not None:
            metrics.record_budget(kind, status.budget)
        seconds = (next_window - now).total_seconds() if next_window is not None else -1
        metrics.record_next_window(kind, seconds)
