"""Sizing decisions for a single volume group.

Everything here is pure: the reconciler gathers stats, gate verdicts and the
current size, and ``decide`` turns them into a SizingDecision. No clock and
no I/O, so the same input always yields the same decision.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from dynamic_storage.models import (
    BlockReason,
    SizingActionKind,
    SizingBounds,
    StorageSizingPolicy,
    VolumeKind,
    VolumeState,
    VolumeStats,
    ceil_to_gib,
    format_quantity,
)
from dynamic_storage.sizing.safety import SAFE, WALSafetyVerdict

DEFAULT_TARGET_BUFFER = 20
MIN_TARGET_BUFFER = 5
MAX_TARGET_BUFFER = 50
DEFAULT_CRITICAL_THRESHOLD = 95


@dataclass
class SizingInput:
    """Everything the engine needs to decide for one volume group."""
    kind: VolumeKind
    policy: StorageSizingPolicy
    bounds: SizingBounds
    stats: VolumeStats
    current_size: int
    wal_verdict: WALSafetyVerdict = SAFE
    window_open: bool = True
    next_window: Optional[datetime] = None
    planned_budget_available: bool = True
    emergency_budget_available: bool = True


@dataclass
class SizingDecision:
    action: SizingActionKind
    state: VolumeState
    target_size: int
    current_size: int
    reason: str = ""
    block_reason: Optional[BlockReason] = None
    next_window: Optional[datetime] = None

    @property
    def requires_growth(self) -> bool:
        return self.action.is_growth


def effective_target_buffer(percent: int) -> int:
    if percent < MIN_TARGET_BUFFER or percent > MAX_TARGET_BUFFER:
        return DEFAULT_TARGET_BUFFER
    return percent


def raw_target_size(used_bytes: int, target_buffer_percent: int) -> int:
    """Size that leaves ``target_buffer_percent`` free, rounded up to whole GiB."""
    buffer = effective_target_buffer(target_buffer_percent)
    needed = -(-int(used_bytes) * 100 // (100 - buffer))
    return ceil_to_gib(needed)


def clamp_size(size: int, request: int, limit: int) -> int:
    if size < request:
        return request
    if size > limit:
        return limit
    return size


def calculate_target_size(used_bytes: int, target_buffer_percent: int, request: int, limit: int) -> int:
    """Buffer target clamped to ``[request, limit]``."""
    return clamp_size(raw_target_size(used_bytes, target_buffer_percent), request, limit)


def is_emergency_condition(stats: VolumeStats, policy: StorageSizingPolicy, bounds: SizingBounds) -> bool:
    emergency = policy.emergency
    if not emergency.enabled:
        return False
    threshold = emergency.critical_threshold_percent or DEFAULT_CRITICAL_THRESHOLD
    if stats.percent_used >= threshold:
        return True
    return stats.available_bytes < bounds.critical_minimum_free_bytes


def emergency_growth_size(raw_target: int, target: int, policy: StorageSizingPolicy) -> int:
    """Size to request in an emergency.

    The clamped buffer target, or the unclamped one when the policy allows
    exceeding the limit.
    """
    if policy.emergency.exceed_limit_on_emergency:
        return max(raw_target, target)
    return target


def _noop(inp: SizingInput, target: int, state: VolumeState, reason: str) -> SizingDecision:
    return SizingDecision(
        action=SizingActionKind.NOOP,
        state=state,
        target_size=target,
        current_size=inp.current_size,
        reason=reason,
    )


def _pending(inp: SizingInput, target: int, block_reason: BlockReason, reason: str) -> SizingDecision:
    return SizingDecision(
        action=SizingActionKind.PENDING_GROWTH,
        state=VolumeState.PENDING_GROWTH,
        target_size=target,
        current_size=inp.current_size,
        reason=reason,
        block_reason=block_reason,
        next_window=inp.next_window,
    )


def decide(inp: SizingInput) -> SizingDecision:
    """Decide whether a volume group grows now, later or not at all.

    First match wins: EmergencyGrow, ScheduledGrow, PendingGrowth, NoOp.
    A volume is never shrunk: a target below the current size is a NoOp
    whatever the other inputs say.
    """
    bounds = inp.bounds
    current = inp.current_size
    used = inp.stats.used_bytes
    raw_target = raw_target_size(used, inp.policy.target_buffer_percent)
    target = clamp_size(raw_target, bounds.request_bytes, bounds.limit_bytes)
    emergency = is_emergency_condition(inp.stats, inp.policy, bounds)
    if emergency and target >= current:
        target = emergency_growth_size(raw_target, target, inp.policy)

    if target <= current:
        if current >= bounds.limit_bytes and (emergency or raw_target > current):
            return _noop(inp, target, VolumeState.AT_LIMIT,
                         f"growth needed but volume is at its limit {format_quantity(bounds.limit_bytes)}")
        if target < current:
            return _noop(inp, target, VolumeState.BALANCED,
                         f"current size {format_quantity(current)} exceeds target {format_quantity(target)}")
        return _noop(inp, target, VolumeState.BALANCED, "within target buffer")

    verdict = inp.wal_verdict
    if emergency:
        if verdict.safe and inp.emergency_budget_available:
            return SizingDecision(
                action=SizingActionKind.EMERGENCY_GROW,
                state=VolumeState.EMERGENCY,
                target_size=target,
                current_size=current,
                reason=f"critical disk usage: {inp.stats.percent_used}% used, "
                       f"{format_quantity(inp.stats.available_bytes)} available",
            )
        if not verdict.safe:
            return _pending(inp, target, BlockReason.WAL_UNSAFE, verdict.reason)
        return _pending(inp, target, BlockReason.BUDGET_EXHAUSTED, "emergency budget exhausted")

    if not verdict.safe:
        return _pending(inp, target, BlockReason.WAL_UNSAFE, verdict.reason)
    if not inp.window_open:
        return _pending(inp, target, BlockReason.MAINTENANCE_WINDOW_CLOSED,
                        "waiting for maintenance window")
    if not inp.planned_budget_available:
        return _pending(inp, target, BlockReason.BUDGET_EXHAUSTED, "planned budget exhausted")

    return SizingDecision(
        action=SizingActionKind.SCHEDULED_GROW,
        state=VolumeState.NEEDS_GROW,
        target_size=target,
        current_size=current,
        reason=f"below target buffer: {inp.stats.percent_used}% used",
    )
