"""Operator and instance configuration management."""

import os
from dataclasses import dataclass
from typing import Optional

from dynamic_storage.config import base_config
from dynamic_storage.errors import ConfigurationInvalid
from dynamic_storage.models import WALUnknownPolicy


@dataclass
class OperatorConfig:
    namespace: str = "default"
    stats_max_age_seconds: int = 120
    resize_stale_after_seconds: int = 1800
    wal_health_unknown_policy: WALUnknownPolicy = WALUnknownPolicy.FAIL_CLOSED
    maintenance_lookback_hours: int = 48
    action_history_limit: int = 20
    instance_status_port: int = 8000
    instance_status_timeout_seconds: int = 10
    reconcile_interval_seconds: int = 30
    metrics_port: int = 9187


@dataclass
class InstanceConfig:
    instance_name: str
    pgdata: str
    pg_wal_path: str
    tablespaces_path: str
    separate_wal: bool
    wal_pending_files_ceiling: int = 10
    database_dsn: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def archive_status_path(self) -> str:
        return os.path.join(self.pgdata, "pg_wal", "archive_status")


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationInvalid(name, raw, "not an integer")
    if value < minimum:
        raise ConfigurationInvalid(name, raw, f"must be at least {minimum}")
    return value


def _bool_env(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() == 'true'


def load_sizing_config() -> OperatorConfig:
    """Load operator configuration from environment variables."""
    raw_policy = os.getenv('WAL_HEALTH_UNKNOWN_POLICY', WALUnknownPolicy.FAIL_CLOSED.value)
    try:
        unknown_policy = WALUnknownPolicy(raw_policy.lower())
    except ValueError:
        raise ConfigurationInvalid(
            'WAL_HEALTH_UNKNOWN_POLICY', raw_policy, "expected fail-closed or fail-open"
        )

    return OperatorConfig(
        namespace=os.getenv('WATCH_NAMESPACE', base_config.WATCH_NAMESPACE),
        stats_max_age_seconds=_int_env('STATS_MAX_AGE_SECONDS', 120, minimum=1),
        resize_stale_after_seconds=_int_env('RESIZE_STALE_AFTER_SECONDS', 1800, minimum=1),
        wal_health_unknown_policy=unknown_policy,
        maintenance_lookback_hours=_int_env('MAINTENANCE_LOOKBACK_HOURS', 48, minimum=1),
        action_history_limit=_int_env('ACTION_HISTORY_LIMIT', 20, minimum=1),
        instance_status_port=_int_env('INSTANCE_STATUS_PORT', 8000, minimum=1),
        instance_status_timeout_seconds=_int_env('INSTANCE_STATUS_TIMEOUT_SECONDS', 10, minimum=1),
        reconcile_interval_seconds=_int_env('RECONCILE_INTERVAL_SECONDS', 30, minimum=1),
        metrics_port=_int_env('METRICS_PORT', 9187, minimum=1),
    )


def load_instance_config() -> InstanceConfig:
    """Load instance-side configuration from environment variables."""
    return InstanceConfig(
        instance_name=os.getenv('POD_NAME', base_config.INSTANCE_NAME),
        pgdata=os.getenv('PGDATA', base_config.PGDATA),
        pg_wal_path=os.getenv('PG_WAL_PATH', base_config.PG_WAL_PATH),
        tablespaces_path=os.getenv('TABLESPACES_PATH', base_config.TABLESPACES_PATH),
        separate_wal=_bool_env('SEPARATE_WAL', False),
        wal_pending_files_ceiling=_int_env('WAL_PENDING_FILES_CEILING', 10),
        database_dsn=os.getenv('DATABASE_DSN') or None,
        host=os.getenv('INSTANCE_STATUS_HOST', base_config.INSTANCE_STATUS_HOST),
        port=_int_env('INSTANCE_STATUS_PORT', base_config.INSTANCE_STATUS_PORT, minimum=1),
    )
