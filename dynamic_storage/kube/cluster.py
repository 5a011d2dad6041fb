"""Read the sizing-relevant parts of a Cluster custom resource."""

import logging
from typing import Any, Dict, Optional

from dynamic_storage.errors import ConfigurationInvalid
from dynamic_storage.models import ClusterSpec, StorageSizingPolicy, StorageSizingStatus, VolumeKind

logger = logging.getLogger(__name__)


def _sizing_policy(storage: Any, field: str) -> Optional[StorageSizingPolicy]:
    """Policy of a storage section; dynamic sizing needs both request and limit."""
    if not storage:
        return None
    if not isinstance(storage, dict):
        raise ConfigurationInvalid(field, storage, "expected an object")
    if not storage.get("request") or not storage.get("limit"):
        return None
    try:
        return StorageSizingPolicy.from_dict(storage)
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigurationInvalid(field, storage, str(e))


def _section(obj: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = obj.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationInvalid(key, value, "expected an object")
    return value


def cluster_from_resource(obj: Dict[str, Any]) -> ClusterSpec:
    """Build a ClusterSpec from a Cluster object as returned by the API.

    A malformed storage section only invalidates its own volume: the error is
    kept in ``invalid_policies`` and the other sections are still parsed.

    Raises:
        ConfigurationInvalid: the object itself cannot be read (no name,
            non-object spec or status, unreadable persisted status)
    """
    if not isinstance(obj, dict):
        raise ConfigurationInvalid("cluster", obj, "expected an object")
    metadata = _section(obj, "metadata")
    spec = _section(obj, "spec")
    status = _section(obj, "status")
    name = metadata.get("name")
    if not name:
        raise ConfigurationInvalid("metadata.name", name, "missing")

    invalid = {}

    def parse(kind: VolumeKind, storage: Any, field: str) -> Optional[StorageSizingPolicy]:
        try:
            return _sizing_policy(storage, field)
        except ConfigurationInvalid as e:
            logger.warning(f"Cluster {name}: {e}")
            invalid[kind] = str(e)
            return None

    tablespaces = {}
    for tablespace in spec.get("tablespaces") or []:
        if not isinstance(tablespace, dict) or not tablespace.get("name"):
            logger.warning(f"Cluster {name}: ignoring unnamed tablespace entry {tablespace!r}")
            continue
        ts_name = tablespace["name"]
        policy = parse(VolumeKind.for_tablespace(ts_name), tablespace.get("storage"),
                       f"spec.tablespaces[{ts_name}].storage")
        if policy is not None:
            tablespaces[ts_name] = policy

    storage = parse(VolumeKind.data(), spec.get("storage"), "spec.storage")
    wal_storage = parse(VolumeKind.wal(), spec.get("walStorage"), "spec.walStorage")

    try:
        sizing_status = StorageSizingStatus.from_dict(status.get("storageSizing"))
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise ConfigurationInvalid("status.storageSizing", status.get("storageSizing"), str(e))

    return ClusterSpec(
        name=name,
        namespace=metadata.get("namespace", "default"),
        storage=storage,
        wal_storage=wal_storage,
        tablespaces=tablespaces,
        instances=list(status.get("instanceNames") or []),
        has_dedicated_wal=bool(spec.get("walStorage")),
        status=sizing_status,
        invalid_policies=invalid,
    )
