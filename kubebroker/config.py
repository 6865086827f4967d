from pydantic_settings import BaseSettings
from functools import lru_cache
import logging


class Settings(BaseSettings):
    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # Cluster credentials
    # In-cluster config is always tried first; these only apply to the kubeconfig fallback
    k8s_kubeconfig_path: str = ""  # Empty = default kubeconfig location (~/.kube/config)
    k8s_context: str = ""  # Empty = current-context from the kubeconfig

    # Storage classes
    # Resolution probes "<namespace>-<class>" first, then the bare class name
    k8s_unit_storage_class: str = "juju-unit-storage"
    k8s_operator_storage_class: str = "juju-operator-storage"
    k8s_storage_mount_base: str = "/var/lib/juju/storage"  # Mount root for unnamed filesystem attachments

    # Workload defaults
    k8s_operator_image_pull_policy: str = "IfNotPresent"
    k8s_default_service_type: str = "ClusterIP"

    # Cloud/region inference: how many nodes to sample when reading labels
    k8s_node_sample_size: int = 5

    # Namespace teardown
    k8s_watch_timeout_seconds: int = 30  # Server-side timeout of one watch request before it is reopened
    k8s_namespace_termination_timeout_seconds: int = 0  # 0 = wait until the namespace is gone

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False  # Allow lowercase env vars to match uppercase field names


@lru_cache()
def get_settings():
    return Settings()


def configure_logging(settings: Settings = None) -> None:
    """Configure root logging from settings (LOG_LEVEL)."""
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # The kubernetes client logs every request body at DEBUG
    logging.getLogger("kubernetes").setLevel(max(log_level, logging.INFO))
