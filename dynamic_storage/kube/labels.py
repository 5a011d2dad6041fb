"""Labels and roles used by the operator on PVCs."""

from typing import Dict, Optional

from dynamic_storage.models import VolumeKind

CLUSTER_LABEL = "cnpg.io/cluster"
INSTANCE_NAME_LABEL = "cnpg.io/instanceName"
PVC_ROLE_LABEL = "cnpg.io/pvcRole"
TABLESPACE_NAME_LABEL = "cnpg.io/tablespaceName"

PVC_ROLE_DATA = "PG_DATA"
PVC_ROLE_WAL = "PG_WAL"
PVC_ROLE_TABLESPACE = "PG_TABLESPACE"


def kind_from_labels(labels: Dict[str, str]) -> Optional[VolumeKind]:
    """Volume kind of a claim, or None for claims the engine does not size."""
    role = labels.get(PVC_ROLE_LABEL)
    if role == PVC_ROLE_DATA:
        return VolumeKind.data()
    if role == PVC_ROLE_WAL:
        return VolumeKind.wal()
    if role == PVC_ROLE_TABLESPACE:
        name = labels.get(TABLESPACE_NAME_LABEL)
        if name:
            return VolumeKind.for_tablespace(name)
    return None

