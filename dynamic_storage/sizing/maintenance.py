"""Maintenance window evaluation for planned storage growth."""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from dynamic_storage.models import MaintenanceWindow

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULE = "0 0 3 * * *"  # 03:00:00 every day
DEFAULT_DURATION = timedelta(hours=2)
DEFAULT_TIMEZONE = "UTC"
DEFAULT_LOOKBACK = timedelta(hours=48)

# Fire times in (now, now + 1s] can precede the most recent one at or before now
_MAX_BACKWARD_STEPS = 5

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {
    "h": timedelta(hours=1),
    "m": timedelta(minutes=1),
    "s": timedelta(seconds=1),
    "ms": timedelta(milliseconds=1),
}


def parse_duration(value: str) -> timedelta:
    """Parse durations such as "2h", "90m" or "1h30m"."""
    text = value.strip()
    if not text:
        raise ValueError("empty duration")
    total = timedelta()
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration {value!r}")
    if total <= timedelta():
        raise ValueError(f"duration must be positive: {value!r}")
    return total


def normalize_schedule(schedule: str) -> str:
    """Translate a cron schedule into croniter syntax.

    Five-field schedules are used as-is. Six-field schedules carry seconds in
    the first position and are rotated to croniter's trailing seconds field.

    Raises:
        ValueError: the schedule is malformed
    """
    fields = schedule.split()
    if len(fields) == 1 and fields[0].startswith("@"):
        expression = fields[0]
    elif len(fields) == 5:
        expression = " ".join(fields)
    elif len(fields) == 6:
        expression = " ".join(fields[1:] + fields[:1])
    else:
        raise ValueError(f"expected 5 or 6 fields, got {len(fields)}")
    if not croniter.is_valid(expression):
        raise ValueError(f"invalid cron expression {schedule!r}")
    return expression


class MaintenanceWindowEvaluator:
    """Answers whether planned growth may run now, and when it may next run.

    No window configured means always open. A schedule that cannot be
    parsed keeps the window closed rather than silently opening it.
    """

    def __init__(self, window: Optional[MaintenanceWindow], lookback: timedelta = DEFAULT_LOOKBACK):
        self.window = window
        self.configured = window is not None
        self.expression: Optional[str] = None
        self.duration = DEFAULT_DURATION
        self.tz = ZoneInfo(DEFAULT_TIMEZONE)
        self.error: Optional[str] = None

        if window is None:
            self.lookback = lookback
            return

        schedule = window.schedule or DEFAULT_SCHEDULE
        try:
            self.expression = normalize_schedule(schedule)
        except ValueError as e:
            self.error = f"invalid maintenance window schedule {schedule!r}: {e}"
            logger.warning(f"Treating maintenance window as closed: {self.error}")

        if window.duration:
            try:
                self.duration = parse_duration(window.duration)
            except ValueError as e:
                logger.warning(
                    f"Invalid maintenance window duration {window.duration!r}, "
                    f"using {DEFAULT_DURATION}: {e}"
                )

        if window.timezone:
            try:
                self.tz = ZoneInfo(window.timezone)
            except (ZoneInfoNotFoundError, ValueError) as e:
                logger.warning(f"Invalid maintenance window timezone {window.timezone!r}, using UTC: {e}")

        self.lookback = max(lookback, self.duration)

    @property
    def valid(self) -> bool:
        return self.error is None

    def _most_recent_start(self, now: datetime) -> Optional[datetime]:
        """Most recent fire time at or before ``now``, within the lookback."""
        local_now = now.astimezone(self.tz)
        earliest = local_now - self.lookback
        start = (local_now + timedelta(seconds=1)).replace(microsecond=0)
        schedule = croniter(self.expression, start)
        for _ in range(_MAX_BACKWARD_STEPS):
            fire = schedule.get_prev(datetime)
            if fire < earliest:
                return None
            if fire <= local_now:
                return fire.astimezone(timezone.utc)
        return None

    def current_window(self, now: datetime) -> Optional[Tuple[datetime, datetime]]:
        """The occurrence containing ``now`` as ``(start, end)``, if any."""
        if not self.configured or not self.valid:
            return None
        start = self._most_recent_start(now)
        if start is None:
            return None
        end = start + self.duration
        if start <= now < end:
            return start, end
        return None

    def is_open(self, now: datetime) -> bool:
        if not self.configured:
            return True
        if not self.valid:
            return False
        return self.current_window(now) is not None

    def next_window_start(self, now: datetime) -> Optional[datetime]:
        """First fire time strictly after ``now``; None when unscheduled or invalid."""
        if not self.configured or not self.valid:
            return None
        schedule = croniter(self.expression, now.astimezone(self.tz))
        return schedule.get_next(datetime).astimezone(timezone.utc)
