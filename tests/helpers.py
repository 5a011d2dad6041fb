"""Test helpers shared across test modules."""
from datetime import datetime, timezone

from dynamic_storage.models import VolumeStats

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for code that takes a ``clock`` callable."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


def stats(used_bytes, total_bytes, reported_at=NOW):
    """VolumeStats with percent and available derived from used/total"""
    return VolumeStats(
        total_bytes=total_bytes,
        used_bytes=used_bytes,
        available_bytes=total_bytes - used_bytes,
        percent_used=round(used_bytes / total_bytes * 100, 2),
        reported_at=reported_at,
    )
