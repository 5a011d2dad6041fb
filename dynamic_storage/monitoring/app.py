"""
Instance status application.

Runs next to each PostgreSQL instance and reports the disk and WAL health
the operator bases its sizing decisions on.
"""
from flask import Flask, jsonify, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
import os
import sys
import logging

from dynamic_storage.config import InstanceConfig, load_instance_config
from dynamic_storage.disk.probe import DiskProbe
from dynamic_storage.disk.walhealth import WALHealthChecker, connect, is_primary
from dynamic_storage.errors import ProbeUnavailable, WALHealthUnknown
from dynamic_storage.models import InstanceReport, utcnow
from dynamic_storage.monitoring.metrics import InstanceMetricsCollector

logger = logging.getLogger(__name__)


def list_tablespaces(path):
    """Names of the tablespace volumes mounted under ``path``"""
    try:
        return sorted(
            name for name in os.listdir(path)
            if os.path.isdir(os.path.join(path, name))
        )
    except FileNotFoundError:
        return []


def collect_report(instance: InstanceConfig, probe: DiskProbe, checker: WALHealthChecker) -> InstanceReport:
    """Probe every volume and check WAL health.

    Raises:
        ProbeUnavailable: the data (or dedicated WAL) volume cannot be probed
    """
    report = InstanceReport(instance_name=instance.instance_name, reported_at=utcnow())
    report.volume_stats = probe.probe_all(instance.separate_wal, list_tablespaces(instance.tablespaces_path))

    conn = None
    try:
        if instance.database_dsn:
            conn = connect(instance.database_dsn)
            report.is_primary = is_primary(conn)
        report.wal_health = checker.check(conn, report.is_primary)
    except WALHealthUnknown as e:
        logger.warning(f"WAL health unknown: {e}")
        report.wal_health_error = str(e)
    finally:
        if conn is not None:
            conn.close()
    return report


def create_app(instance: InstanceConfig = None, probe: DiskProbe = None, checker: WALHealthChecker = None):
    """Create the Flask application serving /pg/status, /metrics and /health"""
    instance = instance or load_instance_config()
    probe = probe or DiskProbe(
        data_path=instance.pgdata,
        wal_path=instance.pg_wal_path,
        tablespaces_path=instance.tablespaces_path,
    )
    checker = checker or WALHealthChecker(
        archive_status_path=instance.archive_status_path,
        max_pending_files=instance.wal_pending_files_ceiling,
    )
    metrics = InstanceMetricsCollector(instance.instance_name)

    app = Flask(__name__)

    @app.route('/pg/status')
    def pg_status():
        """Disk and WAL status of this instance"""
        try:
            report = collect_report(instance, probe, checker)
        except ProbeUnavailable as e:
            logger.error(f"Disk probe failed: {e}")
            return jsonify({'error': str(e), 'path': e.path}), 503

        for kind, stats in report.volume_stats.items():
            metrics.record_volume(kind, stats)
        if report.wal_health is not None:
            metrics.record_wal_health(report.wal_health)
        return jsonify(report.to_dict())

    @app.route('/metrics')
    def get_metrics():
        """Prometheus metrics endpoint"""
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

    @app.route('/health')
    def health_check():
        """Health check endpoint"""
        return jsonify({
            'status': 'healthy',
            'instance': instance.instance_name,
            'timestamp': utcnow().isoformat(),
        })

    return app


if __name__ == '__main__':
    from dynamic_storage.logging_config import setup_logging

    setup_logging()
    try:
        config = load_instance_config()
        create_app(config).run(host=config.host, port=config.port, debug=False)
    except Exception as e:
        logger.error(f"Application failed to start: {e}")
        sys.exit(1)
