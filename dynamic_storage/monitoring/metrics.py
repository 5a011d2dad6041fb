from prometheus_client import Counter, Gauge

from dynamic_storage.models import BlockReason, VolumeState, VolumeStats, WALHealthStatus

# Disk Metrics (instance side)
DISK_TOTAL_BYTES = Gauge(
    'cnpg_disk_total_bytes',
    'Total capacity of the volume in bytes',
    ['instance', 'volume']
)

DISK_USED_BYTES = Gauge(
    'cnpg_disk_used_bytes',
    'Used space on the volume in bytes',
    ['instance', 'volume']
)

DISK_AVAILABLE_BYTES = Gauge(
    'cnpg_disk_available_bytes',
    'Available space on the volume in bytes',
    ['instance', 'volume']
)

DISK_PERCENT_USED = Gauge(
    'cnpg_disk_percent_used',
    'Percentage of volume space used',
    ['instance', 'volume']
)

DISK_INODES_TOTAL = Gauge(
    'cnpg_disk_inodes_total',
    'Total inodes on the volume',
    ['instance', 'volume']
)

DISK_INODES_USED = Gauge(
    'cnpg_disk_inodes_used',
    'Used inodes on the volume',
    ['instance', 'volume']
)

DISK_INODES_FREE = Gauge(
    'cnpg_disk_inodes_free',
    'Free inodes on the volume',
    ['instance', 'volume']
)

# WAL Health Metrics (instance side)
WAL_ARCHIVE_HEALTHY = Gauge(
    'cnpg_wal_archive_healthy',
    'WAL archive health (1 for healthy, 0 for unhealthy)',
    ['instance']
)

WAL_PENDING_ARCHIVE_FILES = Gauge(
    'cnpg_wal_pending_archive_files',
    'WAL segments waiting to be archived',
    ['instance']
)

WAL_INACTIVE_SLOTS = Gauge(
    'cnpg_wal_inactive_slots',
    'Number of inactive physical replication slots',
    ['instance']
)

WAL_SLOT_RETENTION_BYTES = Gauge(
    'cnpg_wal_slot_retention_bytes',
    'WAL retained by an inactive replication slot in bytes',
    ['instance', 'slot_name']
)

# Sizing Metrics (operator side)
SIZING_TARGET_BYTES = Gauge(
    'cnpg_storage_target_size_bytes',
    'Size the volume should have according to its target buffer',
    ['cluster', 'volume']
)

SIZING_EFFECTIVE_BYTES = Gauge(
    'cnpg_storage_effective_size_bytes',
    'Size new replicas of the volume are provisioned with',
    ['cluster', 'volume']
)

SIZING_ACTUAL_BYTES = Gauge(
    'cnpg_storage_actual_size_bytes',
    'Provisioned size of the volume per instance',
    ['cluster', 'volume', 'instance']
)

SIZING_STATE = Gauge(
    'cnpg_storage_state',
    'Current sizing state of the volume (one-hot)',
    ['cluster', 'volume', 'state']
)

SIZING_AT_LIMIT = Gauge(
    'cnpg_storage_at_limit',
    '1 if the volume has reached its configured limit',
    ['cluster', 'volume']
)

SIZING_RESIZE_BLOCKED = Gauge(
    'cnpg_storage_resize_blocked',
    '1 if growth is needed but blocked, per reason',
    ['cluster', 'volume', 'reason']
)

SIZING_RESIZES_TOTAL = Counter(
    'cnpg_storage_resizes_total',
    'Total number of resize requests',
    ['cluster', 'volume', 'kind', 'result']
)

BUDGET_ACTIONS_LAST_24H = Gauge(
    'cnpg_storage_budget_actions_last_24h',
    'Resize actions taken in the rolling 24h window',
    ['cluster', 'volume']
)

BUDGET_AVAILABLE_PLANNED = Gauge(
    'cnpg_storage_budget_available_planned',
    'Resize actions still available for planned growth',
    ['cluster', 'volume']
)

BUDGET_AVAILABLE_EMERGENCY = Gauge(
    'cnpg_storage_budget_available_emergency',
    'Resize actions still available for emergency growth',
    ['cluster', 'volume']
)

NEXT_WINDOW_SECONDS = Gauge(
    'cnpg_storage_next_maintenance_window_seconds',
    'Seconds until the next maintenance window opens',
    ['cluster', 'volume']
)


class InstanceMetricsCollector:
    def __init__(self, instance_name):
        self.instance_name = instance_name

    def record_volume(self, volume, stats: VolumeStats):
        """Record filesystem statistics for one volume"""
        labels = {'instance': self.instance_name, 'volume': str(volume)}
        DISK_TOTAL_BYTES.labels(**labels).set(stats.total_bytes)
        DISK_USED_BYTES.labels(**labels).set(stats.used_bytes)
        DISK_AVAILABLE_BYTES.labels(**labels).set(stats.available_bytes)
        DISK_PERCENT_USED.labels(**labels).set(stats.percent_used)
        DISK_INODES_TOTAL.labels(**labels).set(stats.inodes_total)
        DISK_INODES_USED.labels(**labels).set(stats.inodes_used)
        DISK_INODES_FREE.labels(**labels).set(stats.inodes_free)

    def record_wal_health(self, health: WALHealthStatus):
        """Record WAL archive and slot health"""
        WAL_ARCHIVE_HEALTHY.labels(instance=self.instance_name).set(1 if health.archive_healthy else 0)
        WAL_PENDING_ARCHIVE_FILES.labels(instance=self.instance_name).set(health.pending_archive_files)
        WAL_INACTIVE_SLOTS.labels(instance=self.instance_name).set(len(health.inactive_slots))
        for slot in health.inactive_slots:
            WAL_SLOT_RETENTION_BYTES.labels(
                instance=self.instance_name,
                slot_name=slot.name
            ).set(slot.retained_bytes)


class SizingMetricsCollector:
    def __init__(self, cluster_id):
        self.cluster_id = cluster_id

    def _labels(self, volume):
        return {'cluster': self.cluster_id, 'volume': str(volume)}

    def record_sizes(self, volume, target_bytes, effective_bytes, actual_bytes):
        """Update target, effective and per-instance actual sizes"""
        SIZING_TARGET_BYTES.labels(**self._labels(volume)).set(target_bytes)
        SIZING_EFFECTIVE_BYTES.labels(**self._labels(volume)).set(effective_bytes)
        for instance, size in actual_bytes.items():
            SIZING_ACTUAL_BYTES.labels(instance=instance, **self._labels(volume)).set(size)

    def record_state(self, volume, state: VolumeState):
        """Set the one-hot state gauge"""
        for candidate in VolumeState:
            SIZING_STATE.labels(state=candidate.value, **self._labels(volume)).set(
                1 if candidate is state else 0
            )
        SIZING_AT_LIMIT.labels(**self._labels(volume)).set(1 if state is VolumeState.AT_LIMIT else 0)

    def record_block_reason(self, volume, block_reason):
        """Flag the reason growth is blocked, clearing the others"""
        for reason in BlockReason:
            SIZING_RESIZE_BLOCKED.labels(reason=reason.value, **self._labels(volume)).set(
                1 if reason is block_reason else 0
            )

    def record_resize(self, volume, kind, result):
        SIZING_RESIZES_TOTAL.labels(kind=kind.value, result=result, **self._labels(volume)).inc()

    def record_budget(self, volume, budget):
        BUDGET_ACTIONS_LAST_24H.labels(**self._labels(volume)).set(budget.actions_last_24h)
        BUDGET_AVAILABLE_PLANNED.labels(**self._labels(volume)).set(budget.available_for_planned)
        BUDGET_AVAILABLE_EMERGENCY.labels(**self._labels(volume)).set(budget.available_for_emergency)

    def record_next_window(self, volume, seconds):
        """Seconds until the next window; -1 when no window is scheduled"""
        NEXT_WINDOW_SECONDS.labels(**self._labels(volume)).set(seconds)
