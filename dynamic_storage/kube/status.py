"""Persist storage sizing status on the Cluster resource."""

import asyncio
import logging
from typing import Any, Dict, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from dynamic_storage.config import base_config
from dynamic_storage.errors import PatchConflict, StorageSizingError
from dynamic_storage.models import ClusterSpec
from dynamic_storage.sizing.interfaces import StatusWriter

logger = logging.getLogger(__name__)


class KubernetesStatusWriter(StatusWriter):
    """Merges ``status.storageSizing`` into the Cluster status subresource."""

    def __init__(self,
                 custom_api: Optional[client.CustomObjectsApi] = None,
                 group: str = base_config.CLUSTER_GROUP,
                 version: str = base_config.CLUSTER_VERSION,
                 plural: str = base_config.CLUSTER_PLURAL):
        self._custom_api = custom_api or client.CustomObjectsApi()
        self.group = group
        self.version = version
        self.plural = plural

    async def write(self, cluster: ClusterSpec, status: Dict[str, Any]) -> None:
        body = {"status": {"storageSizing": status}}
        try:
            await asyncio.to_thread(
                self._custom_api.patch_namespaced_custom_object_status,
                self.group,
                self.version,
                cluster.namespace,
                self.plural,
                cluster.name,
                body,
            )
        except ApiException as e:
            if e.status == 409:
                raise PatchConflict(cluster.name, str(e.reason))
            raise StorageSizingError(f"Failed to update status of {cluster.cluster_id}: {e.reason}")
        except HTTPError as e:
            raise StorageSizingError(f"Failed to update status of {cluster.cluster_id}: {e}")
        logger.debug(f"Updated storage sizing status of {cluster.cluster_id}")
