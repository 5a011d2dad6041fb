"""WAL safety gate.

Growing a volume that fills up because WAL cannot be archived, or because an
abandoned replication slot pins it, only hides the real failure. The gate
turns a WALHealthStatus and the policy into a verdict the engine can use.
"""

from dataclasses import dataclass
from typing import Optional

from dynamic_storage.models import WALHealthStatus, WALSafetyPolicy, WALUnknownPolicy


@dataclass(frozen=True)
class WALSafetyVerdict:
    safe: bool
    reason: str = ""
    warning: str = ""


SAFE = WALSafetyVerdict(safe=True)


def _unsafe_reason(health: WALHealthStatus,
                   policy: WALSafetyPolicy,
                   max_slot_retention_bytes: Optional[int]) -> str:
    if policy.require_archive_healthy and not health.archive_healthy:
        return f"WAL archive unhealthy: {health.pending_archive_files} files pending"
    if policy.max_pending_wal_files > 0 and health.pending_archive_files > policy.max_pending_wal_files:
        return (
            f"Too many pending WAL files: "
            f"{health.pending_archive_files} > {policy.max_pending_wal_files}"
        )
    if max_slot_retention_bytes is not None and health.total_slot_retention_bytes > max_slot_retention_bytes:
        names = ", ".join(slot.name for slot in health.inactive_slots)
        return (
            f"Inactive replication slots retain {health.total_slot_retention_bytes} bytes "
            f"(limit {max_slot_retention_bytes}): {names}"
        )
    return ""


def evaluate_wal_safety(health: Optional[WALHealthStatus],
                        policy: WALSafetyPolicy,
                        gated: bool,
                        max_slot_retention_bytes: Optional[int] = None,
                        health_error: Optional[str] = None,
                        default_on_unknown: WALUnknownPolicy = WALUnknownPolicy.FAIL_CLOSED) -> WALSafetyVerdict:
    """Decide whether growth of a WAL-bearing volume is safe.

    Unknown health fails closed unless fail-open is configured, in which case
    growth proceeds with a warning for the event stream. With
    ``acknowledge_wal_risk`` an unhealthy verdict is downgraded to a warning.
    """
    if not gated:
        return SAFE

    if health is None:
        detail = health_error or "no WAL health reported"
        on_unknown = policy.on_unknown_health or default_on_unknown
        if on_unknown is WALUnknownPolicy.FAIL_OPEN:
            return WALSafetyVerdict(safe=True, warning=f"WAL health unknown, proceeding (fail-open): {detail}")
        return WALSafetyVerdict(safe=False, reason=f"WAL health unknown: {detail}")

    reason = _unsafe_reason(health, policy, max_slot_retention_bytes)
    if not reason:
        return SAFE
    if policy.acknowledge_wal_risk:
        return WALSafetyVerdict(safe=True, warning=f"WAL risk acknowledged: {reason}")
    return WALSafetyVerdict(safe=False, reason=reason)
