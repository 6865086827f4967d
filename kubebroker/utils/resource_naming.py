"""
Resource naming utilities for applications and their cluster objects.

Centralized label keys and name patterns used by:
- Resource builders (labels, selectors, object names)
- The reconciliation broker (lookups and label-scoped deletes)
- Region inference (node label keys live with the inference code)

These names are persisted in running clusters. Changing any of them
orphans objects created by earlier versions.
"""

# Ownership / bookkeeping label keys
LABEL_APPLICATION = "juju-application"
LABEL_OPERATOR = "juju-operator"
LABEL_MODEL = "juju-model"
LABEL_STORAGE = "juju-storage"
LABEL_VERSION = "juju-version"

OPERATOR_CONTAINER_NAME = "juju-operator"
OPERATOR_CHARM_STORAGE = "charm"
OPERATOR_APPLICATION_ENV = "JUJU_APPLICATION"
TEMPLATE_AGENT_FILE = "template-agent.conf"

LEGACY_PREFIX = "juju-"


def label_selector(key: str, value: str) -> str:
    """
    Render an equality label selector.

    Examples:
        >>> label_selector(LABEL_APPLICATION, "mariadb")
        "juju-application==mariadb"
    """
    return f"{key}=={value}"


def application_selector(app_name: str) -> str:
    return label_selector(LABEL_APPLICATION, app_name)


def operator_selector(app_name: str) -> str:
    return label_selector(LABEL_OPERATOR, app_name)


def model_selector(namespace: str) -> str:
    return label_selector(LABEL_MODEL, namespace)


def legacy_operator_name(app_name: str) -> str:
    return f"{LEGACY_PREFIX}operator-{app_name}"


def operator_name(app_name: str, legacy: bool = False) -> str:
    """
    Get the operator stateful set / pod name for an application.

    Args:
        app_name: Application name
        legacy: Whether the application was deployed with legacy names

    Returns:
        "<app>-operator", or "juju-operator-<app>" for legacy deployments
    """
    if legacy:
        return legacy_operator_name(app_name)
    return f"{app_name}-operator"


def deployment_name(app_name: str, legacy: bool = False) -> str:
    """
    Get the workload (deployment/stateful set) and service name.

    Examples:
        >>> deployment_name("gitlab")
        "gitlab"
        >>> deployment_name("gitlab", legacy=True)
        "juju-gitlab"
    """
    if legacy:
        return f"{LEGACY_PREFIX}{app_name}"
    return app_name


def operator_config_map_name(app_name: str) -> str:
    return f"{app_name}-operator-config"


def operator_config_map_key(app_name: str) -> str:
    return f"{app_name}-agent.conf"


def configurations_config_map_name(app_name: str) -> str:
    return f"{app_name}-configurations-config"


def pull_secret_name(app_name: str, container_name: str) -> str:
    """
    Get the image-pull secret name for one container.

    Examples:
        >>> pull_secret_name("gitlab", "gitlab")
        "gitlab-gitlab-secret"
    """
    return f"{app_name}-{container_name}-secret"


def file_set_config_map_name(deployment: str, file_set: str) -> str:
    return f"{deployment}-{file_set}-config"


def pvc_template_name(storage_name: str, ordinal: int) -> str:
    """
    Get the volume claim template name for the n-th filesystem.

    Examples:
        >>> pvc_template_name("database", 0)
        "database-0"
    """
    return f"{storage_name}-{ordinal}"


def qualified_storage_class_name(namespace: str, storage_class: str) -> str:
    """Namespace-qualified storage class name, probed before the bare name."""
    return f"{namespace}-{storage_class}"


def crd_plural(kind: str) -> str:
    return f"{kind.lower()}s"


def crd_singular(kind: str) -> str:
    return kind.lower()


def crd_name(kind: str, group: str) -> str:
    """
    Get the cluster name of a custom resource definition.

    Examples:
        >>> crd_name("TFJob", "kubeflow.org")
        "tfjobs.kubeflow.org"
    """
    return f"{crd_plural(kind)}.{group}"
