"""
Kubernetes Client

Holds the typed API handles the broker talks to. Configuration is loaded
in-cluster first (the operator runs as a pod) and falls back to a kubeconfig
file for development.
"""

from kubernetes import client, config
import logging
from typing import Optional

from ...config import Settings, get_settings

logger = logging.getLogger(__name__)


class KubernetesClient:
    """
    API handles for one cluster.

    Attributes:
        core_v1: Namespaces, pods, services, secrets, config maps, volumes, nodes
        apps_v1: Deployments and stateful sets
        storage_v1: Storage classes
        apiextensions_v1: Custom resource definitions
        custom_objects: Custom resource instances
        rbac_v1: Roles, cluster roles and their bindings
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None, settings: Optional[Settings] = None):
        """
        Initialize API handles.

        Args:
            api_client: Preconfigured API client; configuration is loaded when omitted
            settings: Settings providing the kubeconfig path and context
        """
        self.settings = settings or get_settings()

        if api_client is None:
            self._load_config()

        self.api_client = api_client
        self.core_v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)
        self.storage_v1 = client.StorageV1Api(api_client)
        self.apiextensions_v1 = client.ApiextensionsV1Api(api_client)
        self.custom_objects = client.CustomObjectsApi(api_client)
        self.rbac_v1 = client.RbacAuthorizationV1Api(api_client)

    def _load_config(self) -> None:
        try:
            # Try in-cluster config first (for production)
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            try:
                # Fall back to kubeconfig (for development)
                config.load_kube_config(
                    config_file=self.settings.k8s_kubeconfig_path or None,
                    context=self.settings.k8s_context or None
                )
                logger.info("Loaded kubeconfig for development")
            except config.ConfigException as e:
                logger.error(f"Failed to load Kubernetes config: {e}")
                raise RuntimeError("Cannot load Kubernetes configuration") from e


# Global instance
_k8s_client: Optional[KubernetesClient] = None


def get_k8s_client() -> KubernetesClient:
    """Get the shared Kubernetes client, loading configuration on first use."""
    global _k8s_client
    if _k8s_client is None:
        _k8s_client = KubernetesClient()
    return _k8s_client
