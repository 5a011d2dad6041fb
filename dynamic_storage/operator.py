"""Operator loop: periodically reconcile storage sizing of every cluster."""

import asyncio
import logging
import signal
from typing import List

from kubernetes import client
from kubernetes.client.rest import ApiException
from prometheus_client import start_http_server
from urllib3.exceptions import HTTPError

from dynamic_storage.config import OperatorConfig, base_config
from dynamic_storage.errors import ConfigurationInvalid
from dynamic_storage.kube import load_kube_config
from dynamic_storage.kube.cluster import cluster_from_resource
from dynamic_storage.kube.events import KubernetesEventRecorder
from dynamic_storage.kube.instance_status import HTTPInstanceStatusClient
from dynamic_storage.kube.pvc import KubernetesPVCClient
from dynamic_storage.kube.status import KubernetesStatusWriter
from dynamic_storage.models import ClusterSpec
from dynamic_storage.sizing.reconciler import Reconciler

logger = logging.getLogger(__name__)


async def list_clusters(custom_api: client.CustomObjectsApi, namespace: str) -> List[ClusterSpec]:
    """Clusters in ``namespace`` that have at least one sized volume."""
    try:
        response = await asyncio.to_thread(
            custom_api.list_namespaced_custom_object,
            base_config.CLUSTER_GROUP,
            base_config.CLUSTER_VERSION,
            namespace,
            base_config.CLUSTER_PLURAL,
        )
    except ApiException as e:
        logger.error(f"Failed to list clusters in {namespace}: {e.reason}")
        return []
    except HTTPError as e:
        logger.error(f"Failed to list clusters in {namespace}: {e}")
        return []

    clusters = []
    for item in response.get("items", []):
        try:
            cluster = cluster_from_resource(item)
        except ConfigurationInvalid as e:
            logger.error(f"Skipping cluster in {namespace}: {e}")
            continue
        if cluster.sized_volumes():
            clusters.append(cluster)
    return clusters


def build_reconciler(config: OperatorConfig) -> Reconciler:
    core_api = client.CoreV1Api()
    return Reconciler(
        status_source=HTTPInstanceStatusClient(
            port=config.instance_status_port,
            timeout_seconds=config.instance_status_timeout_seconds,
            core_api=core_api,
        ),
        pvc_client=KubernetesPVCClient(core_api),
        status_writer=KubernetesStatusWriter(),
        events=KubernetesEventRecorder(core_api),
        config=config,
    )


async def operator_loop(reconciler: Reconciler, custom_api: client.CustomObjectsApi,
                        config: OperatorConfig, stop: asyncio.Event):
    """Run sizing passes until ``stop`` is set.

    ``stop`` doubles as the cancel token of the running pass, so a pass
    interrupted by shutdown skips its status write.
    """
    while not stop.is_set():
        try:
            clusters = await list_clusters(custom_api, config.namespace)
            reports = await reconciler.reconcile_many(clusters, stop)
            for report in reports:
                logger.debug(
                    f"{report.cluster_id}: "
                    + ", ".join(f"{r.kind}={r.state.value if r.state else r.skipped or r.error}" for r in report.volumes)
                    + (f" failed: {report.error}" if report.error else "")
                )
        except Exception as e:
            logger.exception(f"Reconciliation pass failed: {e}")
        try:
            await asyncio.wait_for(stop.wait(), timeout=config.reconcile_interval_seconds)
        except asyncio.TimeoutError:
            pass
    logger.info("Operator loop stopped")


async def run_operator(config: OperatorConfig):
    load_kube_config()
    start_http_server(config.metrics_port)
    custom_api = client.CustomObjectsApi()
    reconciler = build_reconciler(config)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)
    logger.info(f"Reconciling storage sizing in {config.namespace} every {config.reconcile_interval_seconds}s")
    await operator_loop(reconciler, custom_api, config, stop)
