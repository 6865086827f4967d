"""
Kubernetes Resource Builders

Pure functions assembling the cluster objects the broker reconciles:
- Operator: config map, pod template, stateful set with charm storage
- Units: deployment (stateless) or stateful set (with filesystems)
- Service, secrets, config maps, namespace
- Custom resource definitions, service accounts and RBAC

Nothing here talks to the cluster. Every object carries its ownership
label; resource tags are merged in but never replace the ownership key.
"""

import base64
import copy
from kubernetes import client
from typing import Any, Dict, List, Optional
import logging

from ...schemas import Constraints, DeviceParams, FilesystemParams, OperatorConfig, ServiceConfig
from ...specs.models import CustomResourceDefinition, K8sServiceAccountSpec, SecretSpec
from ...utils import resource_naming
from .translator import DOCKER_CONFIG_JSON_KEY, DOCKER_CONFIG_JSON_TYPE, PullSecret, env_value

logger = logging.getLogger(__name__)

ACCELERATOR_LABEL = "accelerator"
GPU_ATTRIBUTE = "gpu"
CRD_API_VERSION = "apiextensions.k8s.io/v1"
DEFAULT_CRD_SCHEMA = {"type": "object", "x-kubernetes-preserve-unknown-fields": True}


# =============================================================================
# Labels and Quantities
# =============================================================================

def ownership_labels(key: str, value: str, tags: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Merge resource tags with an ownership label.

    Args:
        key: Ownership label key (e.g. juju-application)
        value: Owning application or model name
        tags: Caller-supplied resource tags

    Returns:
        Labels dict; the ownership pair always wins over a clashing tag
    """
    labels = dict(tags or {})
    labels[key] = value
    return labels


def application_labels(app_name: str, tags: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    return ownership_labels(resource_naming.LABEL_APPLICATION, app_name, tags)


def mebibytes(size: int) -> str:
    return f"{size}Mi"


def millicores(cpu_power: int) -> str:
    return f"{cpu_power}m"


# =============================================================================
# Namespace, Config Maps and Secrets
# =============================================================================

def create_namespace_manifest(namespace: str) -> client.V1Namespace:
    return client.V1Namespace(
        metadata=client.V1ObjectMeta(
            name=namespace,
            labels={resource_naming.LABEL_MODEL: namespace}
        )
    )


def create_config_map_manifest(
    name: str,
    namespace: str,
    data: Dict[str, Any],
    labels: Optional[Dict[str, str]] = None
) -> client.V1ConfigMap:
    return client.V1ConfigMap(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels
        ),
        # Strings (file contents included) are stored verbatim
        data={key: value if isinstance(value, str) else env_value(value) for key, value in data.items()}
    )


def create_pull_secret_manifest(
    secret: PullSecret,
    namespace: str,
    labels: Dict[str, str]
) -> client.V1Secret:
    """Image-pull secret carrying a ".dockerconfigjson" payload."""
    return client.V1Secret(
        metadata=client.V1ObjectMeta(
            name=secret.name,
            namespace=namespace,
            labels=labels
        ),
        type=DOCKER_CONFIG_JSON_TYPE,
        data={
            DOCKER_CONFIG_JSON_KEY: base64.b64encode(secret.docker_config_json).decode()
        }
    )


def create_secret_manifest(
    secret: SecretSpec,
    namespace: str,
    labels: Dict[str, str]
) -> client.V1Secret:
    """Secret declared by a v2 pod spec; data values are already base64 encoded."""
    return client.V1Secret(
        metadata=client.V1ObjectMeta(
            name=secret.name,
            namespace=namespace,
            labels=labels,
            annotations=secret.annotations or None
        ),
        type=secret.type,
        data=secret.data or None,
        string_data=secret.string_data or None
    )


# =============================================================================
# Operator
# =============================================================================

def create_operator_config_map(
    app_name: str,
    namespace: str,
    agent_conf: bytes
) -> client.V1ConfigMap:
    return client.V1ConfigMap(
        metadata=client.V1ObjectMeta(
            name=resource_naming.operator_config_map_name(app_name),
            namespace=namespace
        ),
        data={
            resource_naming.operator_config_map_key(app_name): agent_conf.decode()
        }
    )


def create_operator_pod_spec(
    app_name: str,
    agent_path: str,
    image: str,
    pull_policy: str = "IfNotPresent"
) -> client.V1PodSpec:
    """
    Pod spec of an application's operator.

    The operator reads its agent config from the operator config map,
    mounted as a single file, and keeps its charm on the "charm" volume.
    """
    config_map_name = resource_naming.operator_config_map_name(app_name)
    agents_path = f"{agent_path}/agents"

    return client.V1PodSpec(
        containers=[
            client.V1Container(
                name=resource_naming.OPERATOR_CONTAINER_NAME,
                image_pull_policy=pull_policy,
                image=image,
                env=[
                    client.V1EnvVar(name=resource_naming.OPERATOR_APPLICATION_ENV, value=app_name)
                ],
                volume_mounts=[
                    client.V1VolumeMount(
                        name=config_map_name,
                        mount_path=f"{agents_path}/application-{app_name}/{resource_naming.TEMPLATE_AGENT_FILE}",
                        sub_path=resource_naming.TEMPLATE_AGENT_FILE
                    ),
                    client.V1VolumeMount(
                        name=resource_naming.OPERATOR_CHARM_STORAGE,
                        mount_path=agents_path
                    )
                ]
            )
        ],
        volumes=[
            client.V1Volume(
                name=config_map_name,
                config_map=client.V1ConfigMapVolumeSource(
                    name=config_map_name,
                    items=[
                        client.V1KeyToPath(
                            key=resource_naming.operator_config_map_key(app_name),
                            path=resource_naming.TEMPLATE_AGENT_FILE
                        )
                    ]
                )
            )
        ]
    )


def create_operator_statefulset(
    app_name: str,
    name: str,
    namespace: str,
    agent_path: str,
    config: OperatorConfig,
    storage_class: str,
    pull_policy: str = "IfNotPresent"
) -> client.V1StatefulSet:
    """
    Operator stateful set: one replica with a persistent "charm" volume.

    Args:
        app_name: Application the operator manages
        name: Stateful set name (see resource_naming.operator_name)
        namespace: Model namespace
        agent_path: Agent data directory inside the operator container
        config: Operator image, version, tags and charm storage size
        storage_class: Resolved storage class for the charm volume
        pull_policy: Image pull policy for the operator container

    Returns:
        V1StatefulSet manifest
    """
    labels = ownership_labels(resource_naming.LABEL_OPERATOR, app_name, config.resource_tags)
    labels[resource_naming.LABEL_VERSION] = config.version

    charm_storage = create_pvc_template(
        name=resource_naming.OPERATOR_CHARM_STORAGE,
        labels=ownership_labels(
            resource_naming.LABEL_OPERATOR, app_name, config.charm_storage.resource_tags
        ),
        storage_class=storage_class,
        size=config.charm_storage.size
    )

    return client.V1StatefulSet(
        api_version="apps/v1",
        kind="StatefulSet",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels
        ),
        spec=client.V1StatefulSetSpec(
            replicas=1,
            service_name=name,
            selector=client.V1LabelSelector(
                match_labels={resource_naming.LABEL_OPERATOR: app_name}
            ),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=dict(labels)),
                spec=create_operator_pod_spec(
                    app_name, agent_path, config.operator_image_path, pull_policy
                )
            ),
            volume_claim_templates=[charm_storage],
            pod_management_policy="Parallel"
        )
    )


# =============================================================================
# Unit Storage and Scheduling
# =============================================================================

def create_pvc_template(
    name: str,
    labels: Dict[str, str],
    storage_class: str,
    size: int,
    read_only: bool = False
) -> client.V1PersistentVolumeClaim:
    """
    Volume claim template for a stateful set.

    Args:
        name: Template name; pods get "<name>-<pod name>" claims
        labels: Claim labels
        storage_class: Resolved storage class name
        size: Requested size in MiB
        read_only: Request ReadOnlyMany instead of ReadWriteOnce

    Returns:
        V1PersistentVolumeClaim manifest
    """
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(
            name=name,
            labels=labels
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            storage_class_name=storage_class,
            access_modes=["ReadOnlyMany" if read_only else "ReadWriteOnce"],
            resources=client.V1VolumeResourceRequirements(
                requests={"storage": mebibytes(size)}
            )
        )
    )


def create_filesystem_claim_templates(
    app_name: str,
    pod_spec: client.V1PodSpec,
    filesystems: List[FilesystemParams],
    storage_classes: Dict[str, str],
    mount_base: str
) -> List[client.V1PersistentVolumeClaim]:
    """
    Build one claim template per filesystem and mount each in the first container.

    Args:
        app_name: Owning application
        pod_spec: Unit pod spec; its first container receives the mounts
        filesystems: Filesystems requested for each unit
        storage_classes: Resolved storage class per storage name
        mount_base: Mount root used when an attachment gives no path

    Returns:
        Claim templates named "<storage name>-<ordinal>"
    """
    templates = []
    container = pod_spec.containers[0]
    for ordinal, fs in enumerate(filesystems):
        template_name = resource_naming.pvc_template_name(fs.storage_name, ordinal)
        labels = application_labels(app_name, fs.resource_tags)
        labels[resource_naming.LABEL_STORAGE] = fs.storage_name

        read_only = fs.attachment.read_only if fs.attachment else False
        templates.append(create_pvc_template(
            name=template_name,
            labels=labels,
            storage_class=storage_classes[fs.storage_name],
            size=fs.size,
            read_only=read_only
        ))

        mount_path = fs.attachment.path if fs.attachment and fs.attachment.path else f"{mount_base}/{fs.storage_name}"
        mount = client.V1VolumeMount(name=template_name, mount_path=mount_path)
        if read_only:
            mount.read_only = True
        container.volume_mounts = (container.volume_mounts or []) + [mount]
    return templates


def apply_resource_requirements(
    pod_spec: client.V1PodSpec,
    constraints: Optional[Constraints] = None,
    devices: Optional[List[DeviceParams]] = None
) -> None:
    """
    Compose constraint limits and device requests on every container.

    Constraint limits (memory in MiB, cpu in millicores) and device counts
    share one resource requirements object. Devices are requested and
    limited at the same count; a device's "gpu" attribute pins the pod to
    nodes labelled accelerator=<gpu>.
    """
    limits: Dict[str, str] = {}
    requests: Dict[str, str] = {}

    if constraints is not None:
        if constraints.mem:
            limits["memory"] = mebibytes(constraints.mem)
        if constraints.cpu_power:
            limits["cpu"] = millicores(constraints.cpu_power)

    for device in devices or []:
        limits[device.type] = str(device.count)
        requests[device.type] = str(device.count)
        gpu = device.attributes.get(GPU_ATTRIBUTE)
        if gpu:
            pod_spec.node_selector = {**(pod_spec.node_selector or {}), ACCELERATOR_LABEL: gpu}

    if not limits and not requests:
        return

    for container in pod_spec.containers:
        container.resources = client.V1ResourceRequirements(
            limits=dict(limits) or None,
            requests=dict(requests) or None
        )


def apply_placement(pod_spec: client.V1PodSpec, placement: str) -> None:
    """
    Merge a "key=value[,key=value]" placement directive into the node selector.

    Raises:
        ValueError: If an entry has no "="
    """
    if not placement:
        return
    selector = dict(pod_spec.node_selector or {})
    for item in placement.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep or not key:
            raise ValueError(f"invalid placement directive {item!r}")
        selector[key] = value
    pod_spec.node_selector = selector


# =============================================================================
# Unit Workloads and Service
# =============================================================================

def create_deployment_manifest(
    name: str,
    namespace: str,
    app_name: str,
    pod_spec: client.V1PodSpec,
    replicas: int,
    tags: Optional[Dict[str, str]] = None
) -> client.V1Deployment:
    """
    Stateless unit workload.

    Pods are generated as "<name>-<suffix>"; the selector pins the
    application label only so tags can change without orphaning pods.
    """
    labels = application_labels(app_name, tags)

    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels
        ),
        spec=client.V1DeploymentSpec(
            replicas=replicas,
            selector=client.V1LabelSelector(
                match_labels={resource_naming.LABEL_APPLICATION: app_name}
            ),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(
                    generate_name=f"{name}-",
                    labels=dict(labels)
                ),
                spec=pod_spec
            )
        )
    )


def create_statefulset_manifest(
    name: str,
    namespace: str,
    app_name: str,
    pod_spec: client.V1PodSpec,
    replicas: int,
    volume_claim_templates: List[client.V1PersistentVolumeClaim],
    tags: Optional[Dict[str, str]] = None
) -> client.V1StatefulSet:
    """Unit workload with per-unit persistent storage."""
    labels = application_labels(app_name, tags)

    return client.V1StatefulSet(
        api_version="apps/v1",
        kind="StatefulSet",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels
        ),
        spec=client.V1StatefulSetSpec(
            replicas=replicas,
            service_name=name,
            selector=client.V1LabelSelector(
                match_labels={resource_naming.LABEL_APPLICATION: app_name}
            ),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=dict(labels)),
                spec=pod_spec
            ),
            volume_claim_templates=volume_claim_templates,
            pod_management_policy="Parallel"
        )
    )


def create_service_manifest(
    name: str,
    namespace: str,
    app_name: str,
    containers: List[client.V1Container],
    config: ServiceConfig,
    default_type: str = "ClusterIP",
    annotations: Optional[Dict[str, str]] = None,
    tags: Optional[Dict[str, str]] = None
) -> client.V1Service:
    """
    Service fronting an application's units.

    Args:
        name: Service name (same as the workload)
        namespace: Model namespace
        app_name: Owning application; also the pod selector
        containers: Unit containers; each container port becomes a service port
        config: kubernetes-service-* application config
        default_type: Service type when config sets none
        annotations: Annotations from the pod spec; config annotations win
        tags: Resource tags

    Returns:
        V1Service manifest
    """
    ports = []
    for container in containers:
        for port in container.ports or []:
            ports.append(client.V1ServicePort(
                name=port.name,
                port=port.container_port,
                target_port=port.container_port,
                protocol=port.protocol or "TCP"
            ))

    merged_annotations = {**(annotations or {}), **config.annotations}

    return client.V1Service(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=application_labels(app_name, tags),
            annotations=merged_annotations or None
        ),
        spec=client.V1ServiceSpec(
            selector={resource_naming.LABEL_APPLICATION: app_name},
            type=config.service_type or default_type,
            ports=ports,
            load_balancer_ip=config.load_balancer_ip,
            external_name=config.external_name,
            external_ips=config.external_ips or None
        )
    )


# =============================================================================
# Custom Resource Definitions
# =============================================================================

def create_crd_manifest(
    name: str,
    group: str,
    version: str,
    kind: str,
    scope: str,
    labels: Dict[str, str],
    schema: Optional[Dict[str, Any]] = None,
    plural: Optional[str] = None,
    singular: Optional[str] = None
) -> client.V1CustomResourceDefinition:
    """
    Custom resource definition with a single served and stored version.

    Args:
        name: "<plural>.<group>"
        group: API group
        version: API version name (e.g. "v1alpha2")
        kind: Resource kind
        scope: "Namespaced"
        labels: Ownership labels
        schema: openAPIV3Schema; defaults to an object preserving unknown fields
        plural: Plural name; defaults to lower(kind) + "s"
        singular: Singular name; defaults to lower(kind)

    Returns:
        V1CustomResourceDefinition manifest
    """
    return client.V1CustomResourceDefinition(
        api_version=CRD_API_VERSION,
        kind="CustomResourceDefinition",
        metadata=client.V1ObjectMeta(
            name=name,
            labels=labels
        ),
        spec=client.V1CustomResourceDefinitionSpec(
            group=group,
            versions=[
                client.V1CustomResourceDefinitionVersion(
                    name=version,
                    served=True,
                    storage=True,
                    schema=client.V1CustomResourceValidation(
                        open_apiv3_schema=schema or DEFAULT_CRD_SCHEMA
                    )
                )
            ],
            scope=scope,
            names=client.V1CustomResourceDefinitionNames(
                plural=plural or resource_naming.crd_plural(kind),
                singular=singular or resource_naming.crd_singular(kind),
                kind=kind
            )
        )
    )


def crd_from_definition(
    crd: CustomResourceDefinition,
    labels: Dict[str, str]
) -> client.V1CustomResourceDefinition:
    """CRD manifest from a provider-neutral (v1 pod spec) declaration."""
    schema = None
    if crd.validation.properties:
        schema = {"type": "object", "properties": copy.deepcopy(crd.validation.properties)}
    return create_crd_manifest(
        name=resource_naming.crd_name(crd.kind, crd.group),
        group=crd.group,
        version=crd.version,
        kind=crd.kind,
        scope=crd.scope,
        labels=labels,
        schema=schema
    )


def crd_from_raw_spec(
    name: str,
    spec: Dict[str, Any],
    labels: Dict[str, str]
) -> client.V1CustomResourceDefinition:
    """
    CRD manifest from a v2 "customResourceDefinitions" entry.

    Accepts both the single-version layout (version + validation) and a
    versions list; only the first version is served.
    """
    names = spec.get("names") or {}
    kind = names.get("kind", "")

    version = spec.get("version")
    schema = (spec.get("validation") or {}).get("openAPIV3Schema")
    versions = spec.get("versions") or []
    if versions:
        first = versions[0]
        version = version or first.get("name")
        schema = schema or (first.get("schema") or {}).get("openAPIV3Schema")

    return create_crd_manifest(
        name=name,
        group=spec.get("group", ""),
        version=version or "v1",
        kind=kind,
        scope=spec.get("scope", ""),
        labels=labels,
        schema=copy.deepcopy(schema) if schema else None,
        plural=names.get("plural"),
        singular=names.get("singular")
    )


def custom_resource_manifest(
    resource: Dict[str, Any],
    namespace: str,
    labels: Dict[str, str]
) -> Dict[str, Any]:
    """Copy of a custom resource object with namespace and ownership labels set."""
    body = copy.deepcopy(resource)
    metadata = body.setdefault("metadata", {})
    metadata["namespace"] = namespace
    metadata["labels"] = {**(metadata.get("labels") or {}), **labels}
    return body


# =============================================================================
# Service Accounts and RBAC
# =============================================================================

def create_service_account_manifest(
    name: str,
    namespace: str,
    labels: Dict[str, str],
    automount_token: Optional[bool] = None
) -> client.V1ServiceAccount:
    return client.V1ServiceAccount(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels
        ),
        automount_service_account_token=automount_token
    )


def _policy_rule(rule: Dict[str, Any]) -> client.V1PolicyRule:
    return client.V1PolicyRule(
        api_groups=rule.get("apiGroups"),
        resources=rule.get("resources"),
        resource_names=rule.get("resourceNames"),
        non_resource_urls=rule.get("nonResourceURLs"),
        verbs=rule.get("verbs") or []
    )


def create_role_manifest(
    name: str,
    namespace: str,
    labels: Dict[str, str],
    rules: List[Dict[str, Any]],
    cluster_scoped: bool = False
):
    """Role (or ClusterRole when cluster_scoped) granting the given rules."""
    policy_rules = [_policy_rule(rule) for rule in rules]
    if cluster_scoped:
        return client.V1ClusterRole(
            metadata=client.V1ObjectMeta(name=name, labels=labels),
            rules=policy_rules
        )
    return client.V1Role(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
        rules=policy_rules
    )


def create_role_binding_manifest(
    name: str,
    namespace: str,
    labels: Dict[str, str],
    service_account: str,
    cluster_scoped: bool = False
):
    """Bind the role of the same name to a service account."""
    subjects = [
        client.RbacV1Subject(kind="ServiceAccount", name=service_account, namespace=namespace)
    ]
    if cluster_scoped:
        return client.V1ClusterRoleBinding(
            metadata=client.V1ObjectMeta(name=name, labels=labels),
            role_ref=client.V1RoleRef(api_group="rbac.authorization.k8s.io", kind="ClusterRole", name=name),
            subjects=subjects
        )
    return client.V1RoleBinding(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
        role_ref=client.V1RoleRef(api_group="rbac.authorization.k8s.io", kind="Role", name=name),
        subjects=subjects
    )


def service_account_specs(app_name: str, pod_spec) -> List[K8sServiceAccountSpec]:
    """
    All service accounts a pod spec asks for.

    The v2 common "serviceAccount" is named after the application; the
    provider "serviceAccounts" list carries explicit names.
    """
    accounts = []
    if pod_spec.service_account is not None:
        accounts.append(K8sServiceAccountSpec(
            name=app_name,
            automount_service_account_token=pod_spec.service_account.automount_service_account_token,
            global_=pod_spec.service_account.global_,
            rules=pod_spec.service_account.rules
        ))
    resources = pod_spec.kubernetes_resources
    if resources is not None:
        accounts.extend(resources.service_accounts)
    return accounts
