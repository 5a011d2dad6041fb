"""Unit tests for WAL health checks."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import psycopg2
import pytest

from dynamic_storage.disk.walhealth import WALHealthChecker, is_primary
from dynamic_storage.errors import WALHealthUnknown

SEGMENT = "00000001000000000000000{}"
T0 = datetime(2026, 1, 15, 11, 0, tzinfo=timezone.utc)


def make_conn(archiver_row=None, slots=(), in_recovery=False):
    """Connection whose cursor context manager yields canned rows."""
    conn = MagicMock()
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.fetchone.return_value = archiver_row if archiver_row is not None else (in_recovery,)
    cursor.fetchall.return_value = list(slots)
    return conn, cursor


@pytest.fixture
def archive_dir(tmp_path):
    path = tmp_path / "archive_status"
    path.mkdir()
    return path


def add_ready(path, count, start=1):
    for i in range(start, start + count):
        (path / f"{SEGMENT.format(i)}.ready").touch()


class TestPendingArchive:
    """Counting .ready files in archive_status."""

    def test_counts_only_ready_segments(self, archive_dir):
        add_ready(archive_dir, 3)
        (archive_dir / f"{SEGMENT.format(9)}.done").touch()
        (archive_dir / "00000002.history.ready").touch()

        checker = WALHealthChecker(str(archive_dir))
        assert checker.count_pending_archive() == 3

    def test_missing_directory_counts_zero(self, tmp_path):
        checker = WALHealthChecker(str(tmp_path / "missing"))
        assert checker.count_pending_archive() == 0

    def test_over_ceiling_is_unhealthy(self, archive_dir):
        add_ready(archive_dir, 6)
        health = WALHealthChecker(str(archive_dir), max_pending_files=5).check(None)
        assert not health.archive_healthy
        assert health.pending_archive_files == 6

    def test_at_ceiling_is_healthy(self, archive_dir):
        add_ready(archive_dir, 5)
        assert WALHealthChecker(str(archive_dir), max_pending_files=5).check(None).archive_healthy


class TestDatabaseChecks:
    """Archiver and replication slot queries."""

    def test_recent_failure_marks_archive_unhealthy(self, archive_dir):
        conn, _ = make_conn(archiver_row=(T0, T0 + timedelta(minutes=5), 3))
        health = WALHealthChecker(str(archive_dir)).check(conn)
        assert not health.archive_healthy
        assert health.last_archive_success == T0

    def test_failure_older_than_success_is_healthy(self, archive_dir):
        conn, _ = make_conn(archiver_row=(T0, T0 - timedelta(hours=1), 1))
        assert WALHealthChecker(str(archive_dir)).check(conn).archive_healthy

    def test_inactive_slots_are_summed(self, archive_dir):
        slots = [
            ("replica_a", True, "0/3000000", 1024),
            ("old_b", False, "0/1000000", 4096),
            ("old_c", False, None, None),
        ]
        conn, _ = make_conn(archiver_row=(T0, None, 0), slots=slots)

        health = WALHealthChecker(str(archive_dir)).check(conn)

        assert [s.name for s in health.inactive_slots] == ["old_b", "old_c"]
        assert health.total_slot_retention_bytes == 4096
        assert health.archive_healthy

    def test_standby_skips_queries(self, archive_dir):
        conn, cursor = make_conn()
        WALHealthChecker(str(archive_dir)).check(conn, is_primary=False)
        cursor.execute.assert_not_called()

    def test_query_error_is_unknown(self, archive_dir):
        conn, cursor = make_conn()
        cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")
        with pytest.raises(WALHealthUnknown):
            WALHealthChecker(str(archive_dir)).check(conn)


class TestIsPrimary:
    """Recovery state detection."""

    def test_primary(self):
        conn, cursor = make_conn(in_recovery=False)
        assert is_primary(conn)
        cursor.execute.assert_called_once_with("SELECT pg_is_in_recovery()")

    def test_standby(self):
        conn, _ = make_conn(in_recovery=True)
        assert not is_primary(conn)

    def test_error(self):
        conn, cursor = make_conn()
        cursor.execute.side_effect = psycopg2.InterfaceError("connection already closed")
        with pytest.raises(WALHealthUnknown):
            is_primary(conn)
