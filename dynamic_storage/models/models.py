"""Data models for dynamic storage sizing."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from dynamic_storage.models.quantity import (
    format_quantity,
    parse_optional_quantity,
    parse_quantity,
)

ACTION_RESULT_SUCCESS = "Success"
ACTION_RESULT_FAILED = "Failed"


# Enums
class VolumeRole(Enum):
    DATA = "data"
    WAL = "wal"
    TABLESPACE = "tablespace"


class SizingActionKind(Enum):
    NOOP = "NoOp"
    EMERGENCY_GROW = "EmergencyGrow"
    SCHEDULED_GROW = "ScheduledGrow"
    PENDING_GROWTH = "PendingGrowth"

    @property
    def is_growth(self) -> bool:
        return self in (SizingActionKind.EMERGENCY_GROW, SizingActionKind.SCHEDULED_GROW)


class VolumeState(Enum):
    BALANCED = "Balanced"
    NEEDS_GROW = "NeedsGrow"
    EMERGENCY = "Emergency"
    PENDING_GROWTH = "PendingGrowth"
    RESIZING = "Resizing"
    AT_LIMIT = "AtLimit"


class BlockReason(Enum):
    WAL_UNSAFE = "WALUnsafe"
    BUDGET_EXHAUSTED = "BudgetExhausted"
    MAINTENANCE_WINDOW_CLOSED = "MaintenanceWindowClosed"


class WALUnknownPolicy(Enum):
    FAIL_CLOSED = "fail-closed"
    FAIL_OPEN = "fail-open"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# Volume identity
@dataclass(frozen=True)
class VolumeKind:
    """Closed union of the volume kinds a cluster owns: data, WAL or a tablespace."""
    role: VolumeRole
    tablespace: Optional[str] = None

    def __post_init__(self):
        if self.role is VolumeRole.TABLESPACE and not self.tablespace:
            raise ValueError("tablespace volumes need a tablespace name")
        if self.role is not VolumeRole.TABLESPACE and self.tablespace is not None:
            raise ValueError(f"{self.role.value} volumes cannot carry a tablespace name")

    @classmethod
    def data(cls) -> "VolumeKind":
        return cls(VolumeRole.DATA)

    @classmethod
    def wal(cls) -> "VolumeKind":
        return cls(VolumeRole.WAL)

    @classmethod
    def for_tablespace(cls, name: str) -> "VolumeKind":
        return cls(VolumeRole.TABLESPACE, name)

    @classmethod
    def parse(cls, value: str) -> "VolumeKind":
        """Parse the wire form: ``data``, ``wal`` or ``tablespace:<name>``."""
        if value == VolumeRole.DATA.value:
            return cls.data()
        if value == VolumeRole.WAL.value:
            return cls.wal()
        prefix = VolumeRole.TABLESPACE.value + ":"
        if value.startswith(prefix) and len(value) > len(prefix):
            return cls.for_tablespace(value[len(prefix):])
        raise ValueError(f"Unknown volume kind: {value!r}")

    def __str__(self) -> str:
        if self.role is VolumeRole.TABLESPACE:
            return f"{self.role.value}:{self.tablespace}"
        return self.role.value


@dataclass(frozen=True)
class LogicalVolume:
    """Stable identity of one instance's volume, surviving PVC replacement."""
    cluster_id: str
    instance_name: str
    kind: VolumeKind

    @staticmethod
    def group_key(cluster_id: str, kind: VolumeKind) -> str:
        """Key shared by every instance's copy of the same volume."""
        return f"{cluster_id}/{kind}"

    @property
    def key(self) -> str:
        return f"{self.group_key(self.cluster_id, self.kind)}/{self.instance_name}"


# Observed state
@dataclass
class VolumeStats:
    """Filesystem statistics for one mount point, valid for a single cycle."""
    total_bytes: int
    used_bytes: int
    available_bytes: int
    percent_used: float
    inodes_total: int = 0
    inodes_used: int = 0
    inodes_free: int = 0
    path: str = ""
    reported_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "totalBytes": self.total_bytes,
            "usedBytes": self.used_bytes,
            "availableBytes": self.available_bytes,
            "percentUsed": self.percent_used,
            "inodesTotal": self.inodes_total,
            "inodesUsed": self.inodes_used,
            "inodesFree": self.inodes_free,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], reported_at: Optional[datetime] = None) -> "VolumeStats":
        return cls(
            total_bytes=int(data["totalBytes"]),
            used_bytes=int(data["usedBytes"]),
            available_bytes=int(data["availableBytes"]),
            percent_used=float(data["percentUsed"]),
            inodes_total=int(data.get("inodesTotal", 0)),
            inodes_used=int(data.get("inodesUsed", 0)),
            inodes_free=int(data.get("inodesFree", 0)),
            path=data.get("path", ""),
            reported_at=reported_at,
        )


@dataclass
class SlotInfo:
    name: str
    retained_bytes: int = 0
    restart_lsn: Optional[str] = None
    active: bool = False


@dataclass
class WALHealthStatus:
    archive_healthy: bool = True
    pending_archive_files: int = 0
    last_archive_success: Optional[datetime] = None
    last_archive_failure: Optional[datetime] = None
    inactive_slots: List[SlotInfo] = field(default_factory=list)
    total_slot_retention_bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "archiveHealthy": self.archive_healthy,
            "pendingArchiveFiles": self.pending_archive_files,
            "lastArchiveSuccess": _format_time(self.last_archive_success),
            "lastArchiveFailure": _format_time(self.last_archive_failure),
            "inactiveSlots": [
                {"name": s.name, "retainedBytes": s.retained_bytes, "restartLSN": s.restart_lsn}
                for s in self.inactive_slots
            ],
            "totalSlotRetentionBytes": self.total_slot_retention_bytes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WALHealthStatus":
        return cls(
            archive_healthy=bool(data.get("archiveHealthy", True)),
            pending_archive_files=int(data.get("pendingArchiveFiles", 0)),
            last_archive_success=_parse_time(data.get("lastArchiveSuccess")),
            last_archive_failure=_parse_time(data.get("lastArchiveFailure")),
            inactive_slots=[
                SlotInfo(
                    name=s["name"],
                    retained_bytes=int(s.get("retainedBytes", 0)),
                    restart_lsn=s.get("restartLSN"),
                )
                for s in data.get("inactiveSlots") or []
            ],
            total_slot_retention_bytes=int(data.get("totalSlotRetentionBytes", 0)),
        )


@dataclass
class InstanceReport:
    """Last status an instance reported: per-volume stats plus WAL health."""
    instance_name: str
    volume_stats: Dict[VolumeKind, VolumeStats] = field(default_factory=dict)
    wal_health: Optional[WALHealthStatus] = None
    wal_health_error: Optional[str] = None
    is_primary: bool = False
    reported_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instanceName": self.instance_name,
            "isPrimary": self.is_primary,
            "reportedAt": _format_time(self.reported_at),
            "volumes": {str(kind): stats.to_dict() for kind, stats in self.volume_stats.items()},
            "walHealth": self.wal_health.to_dict() if self.wal_health else None,
            "walHealthError": self.wal_health_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstanceReport":
        reported_at = _parse_time(data.get("reportedAt"))
        return cls(
            instance_name=data["instanceName"],
            volume_stats={
                VolumeKind.parse(kind): VolumeStats.from_dict(stats, reported_at)
                for kind, stats in (data.get("volumes") or {}).items()
            },
            wal_health=WALHealthStatus.from_dict(data["walHealth"]) if data.get("walHealth") else None,
            wal_health_error=data.get("walHealthError"),
            is_primary=bool(data.get("isPrimary", False)),
            reported_at=reported_at,
        )


@dataclass
class PVCInfo:
    """Inventory entry for one PersistentVolumeClaim."""
    name: str
    instance_name: str
    kind: VolumeKind
    requested_bytes: int
    capacity_bytes: Optional[int] = None
    namespace: str = ""

    @property
    def actual_bytes(self) -> int:
        """Provisioned capacity when the provider reported it, else the request."""
        if self.capacity_bytes is not None:
            return self.capacity_bytes
        return self.requested_bytes


# Policy
@dataclass
class MaintenanceWindow:
    schedule: str = ""
    duration: str = ""
    timezone: str = ""


@dataclass
class EmergencyGrowPolicy:
    enabled: bool = True
    critical_threshold_percent: int = 95
    critical_minimum_free: str = "1Gi"
    exceed_limit_on_emergency: bool = False
    max_actions_per_day: int = 4
    reserved_actions_for_emergency: int = 1


@dataclass
class WALSafetyPolicy:
    require_archive_healthy: bool = True
    max_pending_wal_files: int = 100
    max_slot_retention_bytes: Optional[str] = None
    acknowledge_wal_risk: bool = False
    on_unknown_health: Optional[WALUnknownPolicy] = None


@dataclass
class StorageSizingPolicy:
    request: str
    limit: str
    target_buffer_percent: int = 20
    maintenance_window: Optional[MaintenanceWindow] = None
    emergency_grow: Optional[EmergencyGrowPolicy] = None
    wal_safety: Optional[WALSafetyPolicy] = None

    @property
    def emergency(self) -> EmergencyGrowPolicy:
        return self.emergency_grow or EmergencyGrowPolicy()

    @property
    def safety(self) -> WALSafetyPolicy:
        return self.wal_safety or WALSafetyPolicy()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StorageSizingPolicy":
        for key in ("maintenanceWindow", "emergencyGrow", "walSafetyPolicy"):
            if data.get(key) is not None and not isinstance(data[key], dict):
                raise TypeError(f"{key} must be an object, got {type(data[key]).__name__}")
        window = data.get("maintenanceWindow")
        emergency = data.get("emergencyGrow")
        safety = data.get("walSafetyPolicy")
        defaults = EmergencyGrowPolicy()
        on_unknown = (safety or {}).get("onUnknownHealth")
        return cls(
            request=data.get("request", ""),
            limit=data.get("limit", ""),
            target_buffer_percent=int(data.get("targetBuffer", 20)),
            maintenance_window=MaintenanceWindow(
                schedule=window.get("schedule", ""),
                duration=window.get("duration", ""),
                timezone=window.get("timezone", ""),
            ) if window is not None else None,
            emergency_grow=EmergencyGrowPolicy(
                enabled=emergency.get("enabled", True),
                critical_threshold_percent=int(emergency.get("criticalThreshold") or defaults.critical_threshold_percent),
                critical_minimum_free=emergency.get("criticalMinimumFree") or defaults.critical_minimum_free,
                exceed_limit_on_emergency=bool(emergency.get("exceedLimitOnEmergency", False)),
                max_actions_per_day=int(emergency.get("maxActionsPerDay", defaults.max_actions_per_day)),
                reserved_actions_for_emergency=int(
                    emergency.get("reservedActionsForEmergency", defaults.reserved_actions_for_emergency)
                ),
            ) if emergency is not None else None,
            wal_safety=WALSafetyPolicy(
                require_archive_healthy=safety.get("requireArchiveHealthy", True),
                max_pending_wal_files=int(safety.get("maxPendingWALFiles", 100)),
                max_slot_retention_bytes=safety.get("maxSlotRetentionBytes"),
                acknowledge_wal_risk=bool(safety.get("acknowledgeWALRisk", False)),
                on_unknown_health=WALUnknownPolicy(on_unknown) if on_unknown else None,
            ) if safety is not None else None,
        )


@dataclass
class SizingBounds:
    """Parsed byte bounds of a policy."""
    request_bytes: int
    limit_bytes: int
    critical_minimum_free_bytes: int
    max_slot_retention_bytes: Optional[int] = None

    @classmethod
    def from_policy(cls, policy: StorageSizingPolicy) -> "SizingBounds":
        """Parse the quantities of a policy.

        Raises ConfigurationInvalid for unparseable values. A request above
        the limit is tolerated and treated as request == limit.
        """
        request = parse_quantity(policy.request, "request")
        limit = parse_quantity(policy.limit, "limit")
        if request > limit:
            request = limit
        return cls(
            request_bytes=request,
            limit_bytes=limit,
            critical_minimum_free_bytes=parse_quantity(
                policy.emergency.critical_minimum_free, "criticalMinimumFree"
            ),
            max_slot_retention_bytes=parse_optional_quantity(
                policy.safety.max_slot_retention_bytes, "maxSlotRetentionBytes"
            ),
        )


# Persisted status
@dataclass
class SizingAction:
    kind: SizingActionKind
    from_size: str
    to_size: str
    timestamp: datetime
    instance: str = ""
    result: str = ACTION_RESULT_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "from": self.from_size,
            "to": self.to_size,
            "timestamp": _format_time(self.timestamp),
            "instance": self.instance,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SizingAction":
        return cls(
            kind=SizingActionKind(data["kind"]),
            from_size=data.get("from", ""),
            to_size=data.get("to", ""),
            timestamp=_parse_time(data["timestamp"]),
            instance=data.get("instance", ""),
            result=data.get("result", ACTION_RESULT_SUCCESS),
        )


@dataclass
class BudgetStatus:
    actions_last_24h: int = 0
    available_for_planned: int = 0
    available_for_emergency: int = 0
    budget_resets_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actionsLast24h": self.actions_last_24h,
            "availableForPlanned": self.available_for_planned,
            "availableForEmergency": self.available_for_emergency,
            "budgetResetsAt": _format_time(self.budget_resets_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BudgetStatus":
        return cls(
            actions_last_24h=int(data.get("actionsLast24h", 0)),
            available_for_planned=int(data.get("availableForPlanned", 0)),
            available_for_emergency=int(data.get("availableForEmergency", 0)),
            budget_resets_at=_parse_time(data.get("budgetResetsAt")),
        )


@dataclass
class StatusCondition:
    type: str
    status: str
    reason: str
    message: str = ""


@dataclass
class VolumeSizingStatus:
    effective_size: str = ""
    target_size: str = ""
    actual_sizes: Dict[str, str] = field(default_factory=dict)
    state: str = ""
    reason: str = ""
    budget: Optional[BudgetStatus] = None
    last_action: Optional[SizingAction] = None
    next_maintenance_window: Optional[datetime] = None
    history: List[SizingAction] = field(default_factory=list)
    conditions: List[StatusCondition] = field(default_factory=list)

    def set_condition(self, condition: StatusCondition) -> None:
        self.conditions = [c for c in self.conditions if c.type != condition.type]
        self.conditions.append(condition)

    def remove_condition(self, condition_type: str) -> None:
        self.conditions = [c for c in self.conditions if c.type != condition_type]

    def record_action(self, action: SizingAction, history_limit: int) -> None:
        self.last_action = action
        self.history.append(action)
        if len(self.history) > history_limit:
            self.history = self.history[-history_limit:]

    def successful_action_times(self) -> List[datetime]:
        return [a.timestamp for a in self.history if a.result == ACTION_RESULT_SUCCESS]

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "effectiveSize": self.effective_size,
            "targetSize": self.target_size,
            "actualSizes": dict(self.actual_sizes),
            "state": self.state,
            "reason": self.reason,
            "budget": self.budget.to_dict() if self.budget else None,
            "lastAction": self.last_action.to_dict() if self.last_action else None,
            "nextMaintenanceWindow": _format_time(self.next_maintenance_window),
            "history": [a.to_dict() for a in self.history],
            "conditions": [
                {"type": c.type, "status": c.status, "reason": c.reason, "message": c.message}
                for c in self.conditions
            ],
        }
        return {k: v for k, v in data.items() if v not in (None, "", [], {})}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "VolumeSizingStatus":
        if not data:
            return cls()
        return cls(
            effective_size=data.get("effectiveSize", ""),
            target_size=data.get("targetSize", ""),
            actual_sizes=dict(data.get("actualSizes") or {}),
            state=data.get("state", ""),
            reason=data.get("reason", ""),
            budget=BudgetStatus.from_dict(data["budget"]) if data.get("budget") else None,
            last_action=SizingAction.from_dict(data["lastAction"]) if data.get("lastAction") else None,
            next_maintenance_window=_parse_time(data.get("nextMaintenanceWindow")),
            history=[SizingAction.from_dict(a) for a in data.get("history") or []],
            conditions=[
                StatusCondition(
                    type=c["type"], status=c["status"], reason=c.get("reason", ""), message=c.get("message", "")
                )
                for c in data.get("conditions") or []
            ],
        )


@dataclass
class StorageSizingStatus:
    data: Optional[VolumeSizingStatus] = None
    wal: Optional[VolumeSizingStatus] = None
    tablespaces: Dict[str, VolumeSizingStatus] = field(default_factory=dict)

    def get(self, kind: VolumeKind) -> Optional[VolumeSizingStatus]:
        if kind.role is VolumeRole.DATA:
            return self.data
        if kind.role is VolumeRole.WAL:
            return self.wal
        if kind.role is VolumeRole.TABLESPACE:
            return self.tablespaces.get(kind.tablespace)
        raise ValueError(f"Unhandled volume role: {kind.role}")

    def ensure(self, kind: VolumeKind) -> VolumeSizingStatus:
        """Return the status for a volume, creating it on first reconciliation."""
        status = self.get(kind)
        if status is not None:
            return status
        status = VolumeSizingStatus()
        if kind.role is VolumeRole.DATA:
            self.data = status
        elif kind.role is VolumeRole.WAL:
            self.wal = status
        elif kind.role is VolumeRole.TABLESPACE:
            self.tablespaces[kind.tablespace] = status
        else:
            raise ValueError(f"Unhandled volume role: {kind.role}")
        return status

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.data is not None:
            data["data"] = self.data.to_dict()
        if self.wal is not None:
            data["wal"] = self.wal.to_dict()
        if self.tablespaces:
            data["tablespaces"] = {name: s.to_dict() for name, s in self.tablespaces.items()}
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StorageSizingStatus":
        if not data:
            return cls()
        return cls(
            data=VolumeSizingStatus.from_dict(data["data"]) if "data" in data else None,
            wal=VolumeSizingStatus.from_dict(data["wal"]) if "wal" in data else None,
            tablespaces={
                name: VolumeSizingStatus.from_dict(s)
                for name, s in (data.get("tablespaces") or {}).items()
            },
        )


@dataclass
class ClusterSpec:
    """The slice of a database cluster object the sizing engine works on."""
    name: str
    namespace: str
    storage: Optional[StorageSizingPolicy] = None
    wal_storage: Optional[StorageSizingPolicy] = None
    tablespaces: Dict[str, StorageSizingPolicy] = field(default_factory=dict)
    instances: List[str] = field(default_factory=list)
    has_dedicated_wal: Optional[bool] = None
    status: StorageSizingStatus = field(default_factory=StorageSizingStatus)
    # Malformed storage sections, by volume kind, with the parse error message
    invalid_policies: Dict[VolumeKind, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.has_dedicated_wal is None:
            self.has_dedicated_wal = self.wal_storage is not None or VolumeKind.wal() in self.invalid_policies

    @property
    def cluster_id(self) -> str:
        return f"{self.namespace}/{self.name}"

    def sized_volumes(self) -> List[VolumeKind]:
        """Volume kinds that carry a dynamic sizing policy, in evaluation order."""
        kinds = []
        if self.storage is not None or VolumeKind.data() in self.invalid_policies:
            kinds.append(VolumeKind.data())
        if self.has_dedicated_wal and (self.wal_storage is not None or VolumeKind.wal() in self.invalid_policies):
            kinds.append(VolumeKind.wal())
        names = set(self.tablespaces)
        names.update(k.tablespace for k in self.invalid_policies if k.role is VolumeRole.TABLESPACE)
        for name in sorted(names):
            kinds.append(VolumeKind.for_tablespace(name))
        return kinds

    def policy_for(self, kind: VolumeKind) -> Optional[StorageSizingPolicy]:
        if kind.role is VolumeRole.DATA:
            return self.storage
        if kind.role is VolumeRole.WAL:
            return self.wal_storage
        if kind.role is VolumeRole.TABLESPACE:
            return self.tablespaces.get(kind.tablespace)
        raise ValueError(f"Unhandled volume role: {kind.role}")


def requires_wal_gate(kind: VolumeKind, has_dedicated_wal: bool) -> bool:
    """WAL safety gates the WAL volume, or the data volume when WAL shares it."""
    if kind.role is VolumeRole.WAL:
        return True
    if kind.role is VolumeRole.DATA:
        return not has_dedicated_wal
    if kind.role is VolumeRole.TABLESPACE:
        return False
    raise ValueError(f"Unhandled volume role: {kind.role}")


__all__ = [
    "ACTION_RESULT_FAILED",
    "ACTION_RESULT_SUCCESS",
    "BlockReason",
    "BudgetStatus",
    "ClusterSpec",
    "EmergencyGrowPolicy",
    "InstanceReport",
    "LogicalVolume",
    "MaintenanceWindow",
    "PVCInfo",
    "SizingAction",
    "SizingActionKind",
    "SizingBounds",
    "SlotInfo",
    "StatusCondition",
    "StorageSizingPolicy",
    "StorageSizingStatus",
    "VolumeKind",
    "VolumeRole",
    "VolumeSizingStatus",
    "VolumeState",
    "VolumeStats",
    "WALHealthStatus",
    "WALSafetyPolicy",
    "WALUnknownPolicy",
    "format_quantity",
    "requires_wal_gate",
    "utcnow",
]
