"""
Workload Status Enumeration

Maps what the cluster reports for a pod onto the broker's status values.
The broker only reads status; it never evaluates health itself.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class WorkloadStatus(str, Enum):
    """
    Status of an operator or unit pod.

    Attributes:
        ALLOCATING: Pod accepted but not all containers started (Pending)
        RUNNING: Pod bound and containers running
        ERROR: Pod terminated with a failure
        TERMINATED: Pod ran to completion
        UNKNOWN: Cluster could not report the pod state
    """

    ALLOCATING = "allocating"
    RUNNING = "running"
    ERROR = "error"
    TERMINATED = "terminated"
    UNKNOWN = "unknown"

    @classmethod
    def from_pod_phase(cls, phase: Optional[str]) -> "WorkloadStatus":
        """
        Convert a pod phase to WorkloadStatus.

        Args:
            phase: Pod phase ("Pending", "Running", "Succeeded", "Failed", "Unknown")

        Returns:
            WorkloadStatus enum value; UNKNOWN for anything unrecognised
        """
        return _PHASE_STATUS.get(phase or "", cls.UNKNOWN)

    @property
    def is_running(self) -> bool:
        """Check if the pod is running."""
        return self == WorkloadStatus.RUNNING

    def __str__(self) -> str:
        return self.value


_PHASE_STATUS = {
    "Pending": WorkloadStatus.ALLOCATING,
    "Running": WorkloadStatus.RUNNING,
    "Failed": WorkloadStatus.ERROR,
    "Succeeded": WorkloadStatus.TERMINATED,
}


class OperatorInfo(BaseModel):
    """Status of an application's operator pod."""
    pod_name: str
    status: WorkloadStatus
    message: str = ""


class UnitInfo(BaseModel):
    """Status of one unit pod."""
    id: str
    pod_name: str
    address: str = ""
    ports: List[str] = Field(default_factory=list)  # "<port>/<protocol>"
    status: WorkloadStatus
    message: str = ""
    filesystems: List[Dict[str, Any]] = Field(default_factory=list)  # Claimed volumes: {"volume", "claim_name", "mount_path"}
