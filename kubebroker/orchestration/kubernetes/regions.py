"""
Cloud/Region Inference

Best-effort guess of which public cloud (and region) hosts a cluster,
read from the labels managed Kubernetes offerings put on their nodes.
A node contributes only when both its cloud and its region are known.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

REGION_LABEL = "failure-domain.beta.kubernetes.io/region"
TOPOLOGY_REGION_LABEL = "topology.kubernetes.io/region"

GKE_NODEPOOL_LABEL = "cloud.google.com/gke-nodepool"
GKE_OS_DISTRIBUTION_LABEL = "cloud.google.com/gke-os-distribution"
AZURE_CLUSTER_LABEL = "kubernetes.azure.com/cluster"
EC2_MANUFACTURER_LABEL = "manufacturer"
EC2_MANUFACTURER_VALUE = "amazon_ec2"

GCE_CLOUD = "gce"
AZURE_CLOUD = "azure"
EC2_CLOUD = "ec2"


def _is_gke(labels: Dict[str, str]) -> bool:
    return GKE_NODEPOOL_LABEL in labels and GKE_OS_DISTRIBUTION_LABEL in labels


def _is_aks(labels: Dict[str, str]) -> bool:
    return AZURE_CLUSTER_LABEL in labels


def _is_ec2(labels: Dict[str, str]) -> bool:
    return labels.get(EC2_MANUFACTURER_LABEL) == EC2_MANUFACTURER_VALUE


# Checked in order; the first matching cloud wins
CLOUD_CHECKERS: List[Tuple[str, Callable[[Dict[str, str]], bool]]] = [
    (GCE_CLOUD, _is_gke),
    (AZURE_CLOUD, _is_aks),
    (EC2_CLOUD, _is_ec2),
]


def node_cloud(labels: Dict[str, str]) -> Optional[str]:
    for cloud, matches in CLOUD_CHECKERS:
        if matches(labels):
            return cloud
    return None


def node_region(labels: Dict[str, str]) -> Optional[str]:
    return labels.get(REGION_LABEL) or labels.get(TOPOLOGY_REGION_LABEL) or None


def cloud_region(labels: Optional[Dict[str, str]]) -> Optional[str]:
    """
    Infer "<cloud>/<region>" from one node's labels.

    Examples:
        >>> cloud_region({"manufacturer": "amazon_ec2",
        ...               "failure-domain.beta.kubernetes.io/region": "ap-southeast-2"})
        "ec2/ap-southeast-2"
    """
    labels = labels or {}
    cloud = node_cloud(labels)
    region = node_region(labels)
    if cloud is None or region is None:
        return None
    return f"{cloud}/{region}"


def list_host_cloud_regions(nodes: Iterable) -> Set[str]:
    """
    Collect the distinct cloud regions of a sample of nodes.

    Args:
        nodes: V1Node objects (anything with metadata.labels)

    Returns:
        Set of "<cloud>/<region>" strings; empty when nothing is recognised
    """
    regions = set()
    for node in nodes:
        metadata = getattr(node, "metadata", None)
        labels = getattr(metadata, "labels", None) if metadata is not None else None
        result = cloud_region(labels)
        if result is not None:
            regions.add(result)
    logger.debug(f"[K8S] Inferred host cloud regions: {sorted(regions)}")
    return regions
