"""Filesystem probe for PostgreSQL volumes."""

import logging
import os
from pathlib import Path
from typing import Dict, Iterable, Optional

import psutil

from dynamic_storage.errors import ProbeUnavailable
from dynamic_storage.models import VolumeKind, VolumeStats, utcnow

logger = logging.getLogger(__name__)

DEFAULT_DATA_PATH = "/var/lib/postgresql/data"
DEFAULT_WAL_PATH = "/var/lib/postgresql/wal"
DEFAULT_TABLESPACES_PATH = "/var/lib/postgresql/tablespaces"


class DiskProbe:
    """Reads raw filesystem statistics for the volumes mounted in an instance."""

    def __init__(self,
                 data_path: str = DEFAULT_DATA_PATH,
                 wal_path: str = DEFAULT_WAL_PATH,
                 tablespaces_path: str = DEFAULT_TABLESPACES_PATH):
        self.data_path = data_path
        self.wal_path = wal_path
        self.tablespaces_path = tablespaces_path

    def get_stats(self, path: str) -> VolumeStats:
        """Return statistics for the filesystem holding ``path``.

        ``percent_used`` is computed against the space usable by non-root
        users (used + available), so root-reserved blocks do not make a
        volume look emptier than PostgreSQL experiences it.

        Raises:
            ProbeUnavailable: the path does not exist or the syscall failed
        """
        if not os.path.exists(path):
            raise ProbeUnavailable(path, "path does not exist")
        try:
            usage = psutil.disk_usage(path)
            fs = os.statvfs(path)
        except OSError as e:
            raise ProbeUnavailable(path, str(e))

        usable = usage.used + usage.free
        percent_used = (usage.used / usable * 100) if usable > 0 else 0.0

        return VolumeStats(
            total_bytes=usage.total,
            used_bytes=usage.used,
            available_bytes=usage.free,
            percent_used=round(percent_used, 2),
            inodes_total=fs.f_files,
            inodes_used=fs.f_files - fs.f_ffree,
            inodes_free=fs.f_ffree,
            path=path,
            reported_at=utcnow(),
        )

    def get_data_stats(self) -> VolumeStats:
        return self.get_stats(self.data_path)

    def get_wal_stats(self, separate_wal: bool) -> Optional[VolumeStats]:
        """WAL statistics, or None when WAL lives on the data volume."""
        if not separate_wal:
            return None
        return self.get_stats(self.wal_path)

    def get_tablespace_stats(self, name: str) -> VolumeStats:
        return self.get_stats(str(Path(self.tablespaces_path) / name))

    def probe_all(self, separate_wal: bool, tablespaces: Iterable[str] = ()) -> Dict[VolumeKind, VolumeStats]:
        """Probe every volume of the instance.

        A missing data or WAL volume propagates ProbeUnavailable; a tablespace
        that cannot be probed is logged and left out of the result.
        """
        results = {VolumeKind.data(): self.get_data_stats()}
        wal_stats = self.get_wal_stats(separate_wal)
        if wal_stats is not None:
            results[VolumeKind.wal()] = wal_stats
        for name in tablespaces:
            try:
                results[VolumeKind.for_tablespace(name)] = self.get_tablespace_stats(name)
            except ProbeUnavailable as e:
                logger.warning(f"Skipping tablespace {name}: {e}")
        return results
