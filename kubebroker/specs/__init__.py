"""
Pod spec parsing and validation.

Charms describe their workload with a versioned pod spec; this package turns
that text into a validated PodSpec model.
"""

from .models import (
    ContainerPort,
    ContainerSpec,
    CustomResourceDefinition,
    FileSet,
    ImageDetails,
    K8sContainerSpec,
    K8sPodSpec,
    K8sPodSpecV2,
    K8sServiceAccountSpec,
    KubernetesResources,
    PodSpec,
    SecretSpec,
    ServiceAccountSpec,
    ServiceSpec,
    SpecValidationError,
    SpecVersion,
)
from .parser import parse_pod_spec

__all__ = [
    # Parsing
    'parse_pod_spec',
    'SpecValidationError',
    'SpecVersion',
    # Common models
    'PodSpec',
    'ContainerSpec',
    'ContainerPort',
    'ImageDetails',
    'FileSet',
    'CustomResourceDefinition',
    'ServiceSpec',
    'ServiceAccountSpec',
    # Provider extensions
    'K8sPodSpec',
    'K8sPodSpecV2',
    'K8sContainerSpec',
    'KubernetesResources',
    'K8sServiceAccountSpec',
    'SecretSpec',
]
