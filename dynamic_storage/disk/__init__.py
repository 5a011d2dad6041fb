"""Instance-side disk and WAL probes."""

from .probe import DiskProbe
from .walhealth import WALHealthChecker

__all__ = ["DiskProbe", "WALHealthChecker"]
