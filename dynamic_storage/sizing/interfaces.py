"""Collaborator interfaces for the reconciler."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from dynamic_storage.models import ClusterSpec, InstanceReport, PVCInfo

logger = logging.getLogger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


class InstanceStatusSource(ABC):
    """Base interface for reading the status each instance last reported."""

    @abstractmethod
    async def fetch(self, cluster: ClusterSpec) -> Dict[str, InstanceReport]:
        """Return the latest report per instance name.

        Instances that could not be reached are left out of the result.
        """
        pass


class PVCClient(ABC):
    """Base interface for the PVC lifecycle collaborator."""

    @abstractmethod
    async def list_pvcs(self, cluster: ClusterSpec) -> List[PVCInfo]:
        """List the claims that belong to a cluster."""
        pass

    @abstractmethod
    async def resize(self, pvc: PVCInfo, size_bytes: int) -> None:
        """Request a new size for a claim.

        Raises:
            PatchConflict: the claim was modified concurrently
            ResizeRequestFailed: the request was rejected
        """
        pass


class StatusWriter(ABC):
    """Base interface for persisting storage sizing status."""

    @abstractmethod
    async def write(self, cluster: ClusterSpec, status: Dict[str, Any]) -> None:
        """Persist the serialized storage sizing status of a cluster."""
        pass


class EventRecorder(ABC):
    """Base interface for emitting events about a cluster."""

    @abstractmethod
    async def record(self, cluster: ClusterSpec, event_type: str, reason: str, message: str) -> None:
        pass


class LoggingEventRecorder(EventRecorder):
    """Event recorder that only writes to the log."""

    async def record(self, cluster: ClusterSpec, event_type: str, reason: str, message: str) -> None:
        if event_type == EVENT_WARNING:
            logger.warning(f"[{cluster.cluster_id}] {reason}: {message}")
        else:
            logger.info(f"[{cluster.cluster_id}] {reason}: {message}")
