"""
Pod Spec Translator

Turns a validated PodSpec into the native Kubernetes pod spec for one
application's units, plus the secrets and config maps that pod references.
"""

import base64
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List

from kubernetes import client

from ...specs.models import ContainerSpec, PodSpec
from ...specs.parser import BOOL_TOKENS
from ...utils import resource_naming

logger = logging.getLogger(__name__)

DOCKER_CONFIG_JSON_KEY = ".dockerconfigjson"
DOCKER_CONFIG_JSON_TYPE = "kubernetes.io/dockerconfigjson"
DEFAULT_REGISTRY = "docker.io"
LEGACY_DEFAULT_REGISTRY = "index.docker.io"

TRUE_TOKENS = frozenset(["y", "yes", "true", "on"])

# Docker image reference grammar (distribution/reference)
_DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
_DOMAIN = rf"{_DOMAIN_COMPONENT}(?:\.{_DOMAIN_COMPONENT})*(?::[0-9]+)?"
_PATH_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|[-]*)[a-z0-9]+)*"
_NAME = rf"(?:{_DOMAIN}/)?{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*"
_TAG = r"[\w][\w.-]{0,127}"
_DIGEST = r"[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}"
IMAGE_REFERENCE_PATTERN = re.compile(rf"^({_NAME})(?::{_TAG})?(?:@{_DIGEST})?$")


class ImagePullSecretError(ValueError):
    """Raised when an image path cannot be resolved to a registry host."""
    pass


@dataclass
class PullSecret:
    """An image-pull secret the pod spec references."""
    name: str
    docker_config_json: bytes  # Raw ".dockerconfigjson" payload (not base64 encoded)


@dataclass
class UnitSpec:
    """Everything needed to run the units of one application."""
    pod: client.V1PodSpec
    secrets: List[PullSecret] = field(default_factory=list)
    config_maps: Dict[str, Dict[str, str]] = field(default_factory=dict)  # File-set config maps by name


# =============================================================================
# IMAGE REGISTRY HELPERS
# =============================================================================

def registry_host(image_path: str) -> str:
    """
    Resolve the registry host of an image reference.

    Args:
        image_path: Image reference, e.g. "gitlab/gitlab-ce:latest"

    Returns:
        Registry host; "docker.io" when the reference names no registry

    Raises:
        ImagePullSecretError: If image_path is not a valid image reference

    Examples:
        >>> registry_host("juju/image")
        "docker.io"
        >>> registry_host("registry.example.com:5000/team/app:1.0")
        "registry.example.com:5000"
    """
    match = IMAGE_REFERENCE_PATTERN.match(image_path or "")
    if not match:
        raise ImagePullSecretError(f"invalid image path {image_path!r}")

    name = match.group(1)
    host, sep, _ = name.partition("/")
    if not sep or (not any(c in host for c in ".:") and host != "localhost"):
        return DEFAULT_REGISTRY
    if host == LEGACY_DEFAULT_REGISTRY:
        return DEFAULT_REGISTRY
    return host


def create_docker_config_json(username: str, password: str, image_path: str) -> bytes:
    """
    Build a ".dockerconfigjson" payload authenticating against the image's registry.

    Raises:
        ImagePullSecretError: If the registry host cannot be determined
    """
    host = registry_host(image_path)
    auth = base64.b64encode(f"{username}:{password}".encode()).decode()
    config = {
        "auths": {
            host: {
                "username": username,
                "password": password,
                "auth": auth,
            }
        }
    }
    return json.dumps(config).encode()


# =============================================================================
# ENVIRONMENT
# =============================================================================

def env_value(value: Any) -> str:
    """
    Render one config value as an environment variable string.

    - Booleans render as "true"/"false"
    - A value wrapped in single quotes has the quotes stripped
    - An unquoted boolean-like token ("on", "yes", ...) renders as "true"/"false"
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, str):
        if len(value) >= 2 and value.startswith("'") and value.endswith("'"):
            return value[1:-1]
        if value in BOOL_TOKENS:
            return "true" if value.lower() in TRUE_TOKENS else "false"
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def default_env(config: Dict[str, Any]) -> List[client.V1EnvVar]:
    """Environment variables for a container's config, sorted by name."""
    return [
        client.V1EnvVar(name=key, value=env_value(config[key]))
        for key in sorted(config)
    ]


# =============================================================================
# POD SPEC
# =============================================================================

def _make_container(spec: ContainerSpec) -> client.V1Container:
    ports = [
        client.V1ContainerPort(
            container_port=port.container_port,
            protocol=port.protocol or "TCP",
            name=port.name,
        )
        for port in spec.ports
    ]

    container = client.V1Container(
        name=spec.name,
        image=spec.image_path,
        ports=ports or None,
        command=spec.command or None,
        args=spec.args or None,
        working_dir=spec.working_dir or None,
        env=default_env(spec.config) or None,
    )

    provider = spec.provider_container
    if provider is not None:
        if provider.image_pull_policy:
            container.image_pull_policy = provider.image_pull_policy
        if provider.liveness_probe is not None:
            container.liveness_probe = provider.liveness_probe
        if provider.readiness_probe is not None:
            container.readiness_probe = provider.readiness_probe
    return container


def make_unit_spec(app_name: str, deployment_name: str, pod_spec: PodSpec) -> UnitSpec:
    """
    Translate a pod spec into the native pod spec for an application's units.

    Args:
        app_name: Application name (pull secrets are named after it)
        deployment_name: Workload name (file-set config maps are named after it)
        pod_spec: Validated pod spec

    Returns:
        UnitSpec with the pod spec and the secrets/config maps it references

    Raises:
        ImagePullSecretError: If a private image path has no resolvable registry
    """
    pod = client.V1PodSpec(containers=[])
    unit_spec = UnitSpec(pod=pod)

    # Provider pod attributes are copied verbatim
    provider_pod = pod_spec.provider_pod_attributes
    if provider_pod is not None:
        for name, value in provider_pod.model_dump(exclude_none=True).items():
            setattr(pod, name, value)

    if pod_spec.service_account is not None and not pod.service_account_name:
        pod.service_account_name = app_name
        if pod_spec.service_account.automount_service_account_token is not None:
            pod.automount_service_account_token = pod_spec.service_account.automount_service_account_token

    volumes = []
    for spec in pod_spec.containers:
        container = _make_container(spec)

        if spec.image_details.username:
            secret_name = resource_naming.pull_secret_name(app_name, spec.name)
            unit_spec.secrets.append(PullSecret(
                name=secret_name,
                docker_config_json=create_docker_config_json(
                    spec.image_details.username,
                    spec.image_details.password,
                    spec.image_path,
                ),
            ))
            pod.image_pull_secrets = (pod.image_pull_secrets or []) + [
                client.V1LocalObjectReference(name=secret_name)
            ]

        for file_set in spec.files:
            config_map_name = resource_naming.file_set_config_map_name(deployment_name, file_set.name)
            if config_map_name not in unit_spec.config_maps:
                unit_spec.config_maps[config_map_name] = dict(file_set.files)
                volumes.append(client.V1Volume(
                    name=file_set.name,
                    config_map=client.V1ConfigMapVolumeSource(
                        name=config_map_name,
                        items=[
                            client.V1KeyToPath(key=filename, path=filename)
                            for filename in sorted(file_set.files)
                        ],
                    ),
                ))
            container.volume_mounts = (container.volume_mounts or []) + [
                client.V1VolumeMount(name=file_set.name, mount_path=file_set.mount_path)
            ]

        pod.containers.append(container)

    if volumes:
        pod.volumes = volumes

    logger.debug(
        f"[K8S] Translated pod spec for {app_name}: "
        f"{len(pod.containers)} container(s), {len(unit_spec.secrets)} pull secret(s)"
    )
    return unit_spec
