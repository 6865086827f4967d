"""
Test configuration and fixtures for pytest.

Fixtures replace the cluster with mocks of the kubernetes.client API
objects. All API handles hang off one parent Mock so tests can assert the
order of calls across APIs through parent.mock_calls.
"""

import os
from types import SimpleNamespace
from unittest.mock import Mock

import pytest


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    os.environ["LOG_LEVEL"] = "DEBUG"
    os.environ["K8S_NAMESPACE_TERMINATION_TIMEOUT_SECONDS"] = "0"

    # Import and clear settings cache after env vars are set
    from kubebroker.config import get_settings
    get_settings.cache_clear()

    # Register custom markers
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "kubernetes: mark test as exercising Kubernetes objects")


def not_found():
    from kubernetes.client.rest import ApiException
    return ApiException(status=404, reason="Not Found")


def conflict():
    from kubernetes.client.rest import ApiException
    return ApiException(status=409, reason="Conflict")


@pytest.fixture
def settings():
    from kubebroker.config import Settings
    return Settings(
        k8s_watch_timeout_seconds=1,
        k8s_namespace_termination_timeout_seconds=0,
    )


@pytest.fixture
def api():
    """Parent mock of every API handle; child calls are recorded in order."""
    parent = Mock()
    # Nothing exists unless a test says otherwise
    parent.apps_v1.read_namespaced_stateful_set.side_effect = not_found()
    parent.apps_v1.read_namespaced_deployment.side_effect = not_found()
    parent.core_v1.read_namespaced_service.side_effect = not_found()
    parent.core_v1.list_namespaced_pod.return_value = SimpleNamespace(items=[])
    parent.core_v1.list_namespaced_secret.return_value = SimpleNamespace(items=[])
    return parent


@pytest.fixture
def k8s_client(api):
    return SimpleNamespace(
        core_v1=api.core_v1,
        apps_v1=api.apps_v1,
        storage_v1=api.storage_v1,
        apiextensions_v1=api.apiextensions_v1,
        custom_objects=api.custom_objects,
        rbac_v1=api.rbac_v1,
    )


@pytest.fixture
def broker(k8s_client, settings):
    from kubebroker.orchestration.kubernetes_broker import KubernetesBroker
    return KubernetesBroker("test", k8s_client=k8s_client, settings=settings)
