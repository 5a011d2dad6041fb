"""Rolling 24h resize budget per volume."""

import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from dynamic_storage.models import BudgetStatus, utcnow

DEFAULT_WINDOW = timedelta(hours=24)


class BudgetTracker:
    """Counts resize actions per volume key in a rolling window.

    The reconciler owns one instance. Its history is rebuilt from the
    actions persisted in cluster status (see ``restore``), so a restarted
    operator does not hand out budget that was already spent.
    """

    def __init__(self, window: timedelta = DEFAULT_WINDOW, clock: Callable[[], datetime] = utcnow):
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._actions: Dict[str, List[datetime]] = defaultdict(list)

    def _prune(self, key: str, now: datetime) -> List[datetime]:
        cutoff = now - self.window
        kept = [ts for ts in self._actions[key] if ts > cutoff]
        self._actions[key] = kept
        return kept

    def has_budget(self,
                   key: str,
                   max_per_day: int,
                   reserved_for_emergency: int = 0,
                   for_emergency: bool = False) -> bool:
        """Check whether one more action fits in the window.

        Planned actions may not touch the emergency reserve; emergency
        actions may use everything that is left.
        """
        with self._lock:
            used = len(self._prune(key, self._clock()))
        available = max_per_day - used
        if not for_emergency:
            available -= max(reserved_for_emergency, 0)
        return available > 0

    def record_action(self, key: str, at: Optional[datetime] = None) -> None:
        """Record an issued resize request."""
        now = self._clock()
        with self._lock:
            self._prune(key, now)
            self._actions[key].append(at or now)
            self._actions[key].sort()

    def remaining_budget(self, key: str, max_per_day: int) -> int:
        with self._lock:
            used = len(self._prune(key, self._clock()))
        return max(0, max_per_day - used)

    def restore(self, key: str, timestamps: Iterable[datetime]) -> None:
        """Merge action timestamps replayed from persisted status."""
        now = self._clock()
        with self._lock:
            merged = set(self._actions[key])
            merged.update(timestamps)
            self._actions[key] = sorted(merged)
            self._prune(key, now)

    def status(self, key: str, max_per_day: int, reserved_for_emergency: int = 0) -> BudgetStatus:
        now = self._clock()
        with self._lock:
            actions = list(self._prune(key, now))
        remaining = max(0, max_per_day - len(actions))
        return BudgetStatus(
            actions_last_24h=len(actions),
            available_for_planned=max(0, remaining - max(reserved_for_emergency, 0)),
            available_for_emergency=remaining,
            budget_resets_at=(actions[0] + self.window) if actions else now,
        )

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._actions.clear()
            else:
                self._actions.pop(key, None)
