"""
Abstract Base Broker

Defines the interface the application orchestrator drives to realize
applications on a container substrate. Every mutating operation is an
idempotent "ensure" or a not-found-tolerant "delete".
"""

from abc import ABC, abstractmethod
import asyncio
from typing import Any, Dict, List, Optional, Set

from ..schemas import OperatorConfig, ServiceParams
from .status import OperatorInfo, UnitInfo


class BaseBroker(ABC):
    """
    Abstract base class for resource brokers.

    This interface provides:
    - Model (namespace) lifecycle
    - Operator lifecycle and status
    - Application service lifecycle and unit status
    - Host cloud discovery
    """

    @property
    @abstractmethod
    def provider_type(self) -> str:
        """Return the substrate this broker drives (e.g. "kubernetes")."""
        pass

    # =========================================================================
    # MODEL LIFECYCLE
    # =========================================================================

    @abstractmethod
    async def ensure_namespace(self) -> None:
        """Create or update the model's namespace."""
        pass

    @abstractmethod
    async def destroy(
        self,
        cancel: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None
    ) -> None:
        """
        Tear down the whole model and wait until it is gone.

        Args:
            cancel: Set to abandon the wait
            timeout: Seconds to wait before abandoning
        """
        pass

    # =========================================================================
    # OPERATOR
    # =========================================================================

    @abstractmethod
    async def ensure_operator(self, app_name: str, agent_path: str, config: OperatorConfig) -> None:
        """
        Create or update the operator of an application.

        Args:
            app_name: Application name
            agent_path: Agent data directory inside the operator
            config: Operator image, version, agent config and charm storage
        """
        pass

    @abstractmethod
    async def delete_operator(self, app_name: str) -> None:
        """Delete an application's operator and everything it owns."""
        pass

    @abstractmethod
    async def operator(self, app_name: str) -> OperatorInfo:
        """Return the status of an application's operator."""
        pass

    # =========================================================================
    # APPLICATION SERVICE
    # =========================================================================

    @abstractmethod
    async def ensure_service(
        self,
        app_name: str,
        params: ServiceParams,
        num_units: int,
        config: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Create or update an application's workload and service.

        Args:
            app_name: Application name
            params: Pod spec, storage, devices, constraints and placement
            num_units: Desired number of units
            config: Application config attributes
        """
        pass

    @abstractmethod
    async def delete_service(self, app_name: str) -> None:
        """Delete an application's workload, service and owned resources."""
        pass

    @abstractmethod
    async def units(self, app_name: str) -> List[UnitInfo]:
        """Return the status of an application's units."""
        pass

    # =========================================================================
    # DISCOVERY
    # =========================================================================

    @abstractmethod
    async def list_host_cloud_regions(self) -> Set[str]:
        """Return the "<cloud>/<region>" values the cluster appears to run in."""
        pass
