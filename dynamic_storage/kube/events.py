"""Kubernetes events for sizing decisions."""

import asyncio
import logging
from typing import Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from dynamic_storage.config import base_config
from dynamic_storage.models import ClusterSpec, utcnow
from dynamic_storage.sizing.interfaces import EventRecorder

logger = logging.getLogger(__name__)

COMPONENT = "dynamic-storage-sizing"


class KubernetesEventRecorder(EventRecorder):
    """Records events against the Cluster resource.

    Events are informational: a failure to create one is logged and does
    not interrupt reconciliation.
    """

    def __init__(self, core_api: Optional[client.CoreV1Api] = None, component: str = COMPONENT):
        self._core_api = core_api or client.CoreV1Api()
        self.component = component

    def _build_event(self, cluster: ClusterSpec, event_type: str, reason: str, message: str):
        now = utcnow()
        return client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{cluster.name}-", namespace=cluster.namespace),
            involved_object=client.V1ObjectReference(
                api_version=f"{base_config.CLUSTER_GROUP}/{base_config.CLUSTER_VERSION}",
                kind="Cluster",
                name=cluster.name,
                namespace=cluster.namespace,
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=client.V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )

    async def record(self, cluster: ClusterSpec, event_type: str, reason: str, message: str) -> None:
        event = self._build_event(cluster, event_type, reason, message)
        try:
            await asyncio.to_thread(self._core_api.create_namespaced_event, cluster.namespace, event)
        except ApiException as e:
            logger.error(f"Failed to record event {reason} for {cluster.cluster_id}: {e.reason}")
        except HTTPError as e:
            logger.error(f"Failed to record event {reason} for {cluster.cluster_id}: {e}")
