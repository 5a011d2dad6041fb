from .budget import BudgetTracker
from .engine import SizingDecision, SizingInput, calculate_target_size, decide
from .maintenance import MaintenanceWindowEvaluator
from .reconciler import ReconcileReport, Reconciler, effective_size_for_new_replica
from .safety import WALSafetyVerdict, evaluate_wal_safety

__all__ = [
    "BudgetTracker",
    "MaintenanceWindowEvaluator",
    "ReconcileReport",
    "Reconciler",
    "SizingDecision",
    "SizingInput",
    "WALSafetyVerdict",
    "calculate_target_size",
    "decide",
    "effective_size_for_new_replica",
    "evaluate_wal_safety",
]
