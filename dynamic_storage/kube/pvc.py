"""PVC inventory and resize requests through the Kubernetes API."""

import asyncio
import logging
from typing import List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from dynamic_storage.errors import (
    ConfigurationInvalid,
    PatchConflict,
    ResizeRequestFailed,
    StorageSizingError,
)
from dynamic_storage.kube.labels import CLUSTER_LABEL, INSTANCE_NAME_LABEL, kind_from_labels
from dynamic_storage.models import ClusterSpec, PVCInfo, format_quantity, parse_quantity
from dynamic_storage.sizing.interfaces import PVCClient

logger = logging.getLogger(__name__)


def pvc_to_info(pvc) -> Optional[PVCInfo]:
    """Convert a V1PersistentVolumeClaim, or None if it is not a sized volume."""
    labels = pvc.metadata.labels or {}
    kind = kind_from_labels(labels)
    instance_name = labels.get(INSTANCE_NAME_LABEL)
    if kind is None or not instance_name:
        return None

    requests = (pvc.spec.resources.requests or {}) if pvc.spec.resources else {}
    if "storage" not in requests:
        logger.warning(f"PVC {pvc.metadata.name} has no storage request, skipping")
        return None
    try:
        requested = parse_quantity(requests["storage"], "spec.resources.requests.storage")
        capacity = None
        if pvc.status is not None and pvc.status.capacity and "storage" in pvc.status.capacity:
            capacity = parse_quantity(pvc.status.capacity["storage"], "status.capacity.storage")
    except ConfigurationInvalid as e:
        logger.warning(f"PVC {pvc.metadata.name} has an unreadable size: {e}")
        return None

    return PVCInfo(
        name=pvc.metadata.name,
        instance_name=instance_name,
        kind=kind,
        requested_bytes=requested,
        capacity_bytes=capacity,
        namespace=pvc.metadata.namespace,
    )


class KubernetesPVCClient(PVCClient):
    def __init__(self, core_api: Optional[client.CoreV1Api] = None):
        self._core_api = core_api or client.CoreV1Api()

    async def list_pvcs(self, cluster: ClusterSpec) -> List[PVCInfo]:
        try:
            pvc_list = await asyncio.to_thread(
                self._core_api.list_namespaced_persistent_volume_claim,
                cluster.namespace,
                label_selector=f"{CLUSTER_LABEL}={cluster.name}",
            )
        except ApiException as e:
            raise StorageSizingError(f"Failed to list PVCs for {cluster.cluster_id}: {e.reason}")
        except HTTPError as e:
            raise StorageSizingError(f"Failed to list PVCs for {cluster.cluster_id}: {e}")

        infos = []
        for pvc in pvc_list.items:
            info = pvc_to_info(pvc)
            if info is not None:
                infos.append(info)
        return infos

    async def resize(self, pvc: PVCInfo, size_bytes: int) -> None:
        body = {"spec": {"resources": {"requests": {"storage": format_quantity(size_bytes)}}}}
        try:
            await asyncio.to_thread(
                self._core_api.patch_namespaced_persistent_volume_claim,
                pvc.name,
                pvc.namespace,
                body,
            )
        except ApiException as e:
            if e.status == 409:  # Modified concurrently
                raise PatchConflict(pvc.name, str(e.reason))
            raise ResizeRequestFailed(pvc.name, str(e.reason))
        except HTTPError as e:
            raise ResizeRequestFailed(pvc.name, str(e))
