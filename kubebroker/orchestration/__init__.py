"""
Orchestration Module - Reconciliation of application state on a substrate

Architecture:
- BaseBroker: Abstract interface the application orchestrator drives
- KubernetesBroker: Kubernetes implementation, one per model namespace
- WorkloadStatus / OperatorInfo / UnitInfo: status reported back

Usage:
    from kubebroker.orchestration import KubernetesBroker

    broker = KubernetesBroker("my-model")
    await broker.ensure_namespace()
    await broker.ensure_service("mariadb", params, num_units=1)
"""

from .base import BaseBroker
from .status import OperatorInfo, UnitInfo, WorkloadStatus
from .kubernetes_broker import (
    KubernetesBroker,
    BrokerError,
    ResourceNotFoundError,
    StorageClassNotFoundError,
    KubernetesOperationError,
    NamespaceTerminationCancelled,
)

__all__ = [
    # Base class
    "BaseBroker",
    # Status
    "WorkloadStatus",
    "OperatorInfo",
    "UnitInfo",
    # Kubernetes
    "KubernetesBroker",
    # Errors
    "BrokerError",
    "ResourceNotFoundError",
    "StorageClassNotFoundError",
    "KubernetesOperationError",
    "NamespaceTerminationCancelled",
]
