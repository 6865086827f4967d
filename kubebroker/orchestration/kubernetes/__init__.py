"""
Kubernetes Orchestration Module

This module contains all Kubernetes-specific code:
- KubernetesClient: API handles for one cluster
- translator: Pod spec -> native V1PodSpec, pull secrets, file-set config maps
- helpers: Pure builders for every object the broker reconciles
- NamespaceWatcher: Cancellable watch used during namespace teardown
- regions: Host cloud/region inference from node labels

These are used internally by KubernetesBroker.
"""

from .client import KubernetesClient, get_k8s_client
from .helpers import (
    # Labels
    ownership_labels,
    application_labels,
    # Operator
    create_operator_config_map,
    create_operator_statefulset,
    # Units
    create_pvc_template,
    create_filesystem_claim_templates,
    create_deployment_manifest,
    create_statefulset_manifest,
    create_service_manifest,
    # Custom resources
    create_crd_manifest,
    crd_from_definition,
    crd_from_raw_spec,
)
from .regions import cloud_region, list_host_cloud_regions
from .translator import ImagePullSecretError, PullSecret, UnitSpec, make_unit_spec
from .watcher import NamespaceWatcher

__all__ = [
    # Client
    "KubernetesClient",
    "get_k8s_client",
    # Translation
    "make_unit_spec",
    "UnitSpec",
    "PullSecret",
    "ImagePullSecretError",
    # Label Helpers
    "ownership_labels",
    "application_labels",
    # Manifest Helpers
    "create_operator_config_map",
    "create_operator_statefulset",
    "create_pvc_template",
    "create_filesystem_claim_templates",
    "create_deployment_manifest",
    "create_statefulset_manifest",
    "create_service_manifest",
    "create_crd_manifest",
    "crd_from_definition",
    "crd_from_raw_spec",
    # Watch
    "NamespaceWatcher",
    # Regions
    "cloud_region",
    "list_host_cloud_regions",
]
