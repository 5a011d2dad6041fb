"""Fetch disk and WAL status reported by each PostgreSQL instance."""

import asyncio
import logging
from typing import Dict, Optional

import aiohttp
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from dynamic_storage.errors import StorageSizingError
from dynamic_storage.kube.labels import CLUSTER_LABEL
from dynamic_storage.models import ClusterSpec, InstanceReport
from dynamic_storage.sizing.interfaces import InstanceStatusSource

logger = logging.getLogger(__name__)

STATUS_PATH = "/pg/status"


class HTTPInstanceStatusClient(InstanceStatusSource):
    """Queries the status endpoint every instance serves.

    Pod IPs are looked up through the Kubernetes API when a CoreV1Api is
    given; otherwise instance names are used as host names. Instances that
    cannot be reached within the timeout are left out of the result.
    """

    def __init__(self, port: int = 8000, timeout_seconds: int = 10,
                 core_api: Optional[client.CoreV1Api] = None):
        self.port = port
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._core_api = core_api

    async def _addresses(self, cluster: ClusterSpec) -> Dict[str, str]:
        if self._core_api is None:
            return {name: name for name in cluster.instances}
        try:
            pods = await asyncio.to_thread(
                self._core_api.list_namespaced_pod,
                cluster.namespace,
                label_selector=f"{CLUSTER_LABEL}={cluster.name}",
            )
        except ApiException as e:
            raise StorageSizingError(f"Failed to list pods for {cluster.cluster_id}: {e.reason}")
        except HTTPError as e:
            raise StorageSizingError(f"Failed to list pods for {cluster.cluster_id}: {e}")
        addresses = {}
        for pod in pods.items:
            if pod.status is not None and pod.status.pod_ip:
                addresses[pod.metadata.name] = pod.status.pod_ip
        if cluster.instances:
            addresses = {name: ip for name, ip in addresses.items() if name in cluster.instances}
        return addresses

    async def _fetch_one(self, session: aiohttp.ClientSession, instance: str,
                         address: str) -> Optional[InstanceReport]:
        url = f"http://{address}:{self.port}{STATUS_PATH}"
        try:
            async with session.get(url) as response:
                if response.status != 200:
                    logger.warning(f"Status request to {instance} returned {response.status}")
                    return None
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Failed to fetch status from {instance}: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Status from {instance} is not valid JSON: {e}")
            return None
        try:
            return InstanceReport.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Malformed status from {instance}: {e}")
            return None

    async def fetch(self, cluster: ClusterSpec) -> Dict[str, InstanceReport]:
        addresses = await self._addresses(cluster)
        if not addresses:
            return {}
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            results = await asyncio.gather(*(
                self._fetch_one(session, name, address) for name, address in addresses.items()
            ))
        return {
            name: report
            for name, report in zip(addresses, results)
            if report is not None
        }
