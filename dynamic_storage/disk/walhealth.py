"""WAL archiving and replication slot health checks."""

import logging
import os
import re
from typing import List

import psycopg2

from dynamic_storage.errors import WALHealthUnknown
from dynamic_storage.models import SlotInfo, WALHealthStatus

logger = logging.getLogger(__name__)

DEFAULT_ARCHIVE_STATUS_PATH = "/var/lib/postgresql/data/pgdata/pg_wal/archive_status"
DEFAULT_MAX_PENDING_FILES = 10

# 24 hex digits: timeline, log and segment number
WAL_READY_FILE = re.compile(r"^[0-9A-F]{24}\.ready$")

ARCHIVER_QUERY = """
    SELECT last_archived_time, last_failed_time, failed_count
    FROM pg_stat_archiver
"""

PHYSICAL_SLOTS_QUERY = """
    SELECT slot_name,
           active,
           restart_lsn::text,
           pg_wal_lsn_diff(pg_current_wal_lsn(), restart_lsn)::bigint AS retained_bytes
    FROM pg_replication_slots
    WHERE slot_type = 'physical'
"""


class WALHealthChecker:
    """Classifies whether WAL is being archived and reclaimed safely."""

    def __init__(self,
                 archive_status_path: str = DEFAULT_ARCHIVE_STATUS_PATH,
                 max_pending_files: int = DEFAULT_MAX_PENDING_FILES):
        self.archive_status_path = archive_status_path
        self.max_pending_files = max_pending_files

    def count_pending_archive(self) -> int:
        """Count WAL segments flagged ready but not yet archived."""
        try:
            entries = os.listdir(self.archive_status_path)
        except FileNotFoundError:
            return 0
        except OSError as e:
            raise WALHealthUnknown(f"Cannot read {self.archive_status_path}: {e}")
        return sum(1 for name in entries if WAL_READY_FILE.match(name))

    def check(self, conn, is_primary: bool = True) -> WALHealthStatus:
        """Build a WALHealthStatus from the archive directory and the database.

        Args:
            conn: DB-API connection to the local instance, or None to only
                count pending files
            is_primary: standbys skip archiver and slot queries

        Raises:
            WALHealthUnknown: the archive directory or a query failed
        """
        status = WALHealthStatus(archive_healthy=True)
        status.pending_archive_files = self.count_pending_archive()
        if status.pending_archive_files > self.max_pending_files:
            status.archive_healthy = False

        if conn is None or not is_primary:
            return status

        try:
            with conn.cursor() as cursor:
                self._check_archiver(cursor, status)
                slots = self._physical_slots(cursor)
        except psycopg2.Error as e:
            raise WALHealthUnknown(f"WAL health query failed: {e}")

        for slot in slots:
            if not slot.active:
                status.inactive_slots.append(slot)
                status.total_slot_retention_bytes += slot.retained_bytes
        return status

    def _check_archiver(self, cursor, status: WALHealthStatus) -> None:
        cursor.execute(ARCHIVER_QUERY)
        row = cursor.fetchone()
        if row is None:
            return
        last_archived, last_failed, _failed_count = row
        status.last_archive_success = last_archived
        status.last_archive_failure = last_failed
        if last_failed is not None and (last_archived is None or last_failed > last_archived):
            status.archive_healthy = False

    def _physical_slots(self, cursor) -> List[SlotInfo]:
        cursor.execute(PHYSICAL_SLOTS_QUERY)
        slots = []
        for name, active, restart_lsn, retained in cursor.fetchall():
            slots.append(SlotInfo(
                name=name,
                active=bool(active),
                restart_lsn=restart_lsn,
                retained_bytes=int(retained or 0),
            ))
        return slots


def connect(dsn: str, timeout_seconds: int = 5):
    """Open a short-lived connection for a health check."""
    try:
        return psycopg2.connect(dsn, connect_timeout=timeout_seconds)
    except psycopg2.Error as e:
        raise WALHealthUnknown(f"Cannot connect to PostgreSQL: {e}")


def is_primary(conn) -> bool:
    """True unless the instance is replaying WAL as a standby."""
    try:
        with conn.cursor() as cursor:
            cursor.execute("SELECT pg_is_in_recovery()")
            (in_recovery,) = cursor.fetchone()
    except psycopg2.Error as e:
        raise WALHealthUnknown(f"Cannot determine recovery state: {e}")
    return not in_recovery
