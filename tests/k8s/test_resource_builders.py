"""
Unit tests for the Kubernetes resource builders.

Tests the manifests the broker reconciles:
- Ownership labels and selectors
- Operator config map, pod and stateful set
- PVC templates and filesystem mounts
- Resource requirements, devices and placement
- Deployments, stateful sets and services
- CRDs, custom resources and RBAC
"""

import base64

import pytest

pytest.importorskip("kubernetes")

from kubernetes import client

from kubebroker.orchestration.kubernetes import helpers
from kubebroker.orchestration.kubernetes.translator import PullSecret
from kubebroker.schemas import (
    CharmStorageParams,
    Constraints,
    DeviceParams,
    FilesystemAttachment,
    FilesystemParams,
    OperatorConfig,
    ServiceConfig,
)
from kubebroker.specs import CustomResourceDefinition, SecretSpec, SpecVersion, parse_pod_spec


def unit_pod(*containers):
    return client.V1PodSpec(containers=list(containers) or [client.V1Container(name="app", image="app/image")])


@pytest.fixture
def operator_config():
    return OperatorConfig(
        operator_image_path="jujusolutions/jujud-operator",
        version="2.99.0",
        agent_conf=b"agent-conf-data",
        resource_tags={"fred": "mary"},
        charm_storage=CharmStorageParams(size=10, resource_tags={"foo": "bar"}),
    )


@pytest.mark.unit
class TestLabels:
    """Test ownership labels."""

    def test_tags_are_merged(self):
        labels = helpers.application_labels("gitlab", {"fred": "mary"})
        assert labels == {"fred": "mary", "juju-application": "gitlab"}

    def test_ownership_key_wins_over_tag(self):
        labels = helpers.application_labels("gitlab", {"juju-application": "impostor"})
        assert labels == {"juju-application": "gitlab"}

    def test_tags_not_mutated(self):
        tags = {"fred": "mary"}
        helpers.application_labels("gitlab", tags)
        assert tags == {"fred": "mary"}


@pytest.mark.unit
@pytest.mark.kubernetes
class TestOperatorManifests:
    """Test operator config map, pod and stateful set."""

    def test_namespace(self):
        namespace = helpers.create_namespace_manifest("test")
        assert namespace.metadata.name == "test"
        assert namespace.metadata.labels == {"juju-model": "test"}

    def test_config_map(self):
        config_map = helpers.create_operator_config_map("gitlab", "test", b"agent-conf-data")

        assert config_map.metadata.name == "gitlab-operator-config"
        assert config_map.metadata.namespace == "test"
        assert config_map.data == {"gitlab-agent.conf": "agent-conf-data"}

    def test_pod_spec(self):
        """Test the agent config is mounted as a single file next to the charm volume."""
        pod_spec = helpers.create_operator_pod_spec("gitlab", "/var/lib/juju", "jujusolutions/jujud-operator")

        container = pod_spec.containers[0]
        assert container.name == "juju-operator"
        assert container.image == "jujusolutions/jujud-operator"
        assert container.image_pull_policy == "IfNotPresent"
        assert [(e.name, e.value) for e in container.env] == [("JUJU_APPLICATION", "gitlab")]
        assert [(m.name, m.mount_path, m.sub_path) for m in container.volume_mounts] == [
            (
                "gitlab-operator-config",
                "/var/lib/juju/agents/application-gitlab/template-agent.conf",
                "template-agent.conf",
            ),
            ("charm", "/var/lib/juju/agents", None),
        ]

        volume = pod_spec.volumes[0]
        assert volume.config_map.name == "gitlab-operator-config"
        assert [(i.key, i.path) for i in volume.config_map.items] == [("gitlab-agent.conf", "template-agent.conf")]

    def test_statefulset(self, operator_config):
        statefulset = helpers.create_operator_statefulset(
            app_name="gitlab",
            name="gitlab-operator",
            namespace="test",
            agent_path="/var/lib/juju",
            config=operator_config,
            storage_class="test-juju-operator-storage",
        )

        assert statefulset.metadata.name == "gitlab-operator"
        assert statefulset.metadata.labels == {
            "fred": "mary",
            "juju-operator": "gitlab",
            "juju-version": "2.99.0",
        }
        spec = statefulset.spec
        assert spec.replicas == 1
        assert spec.selector.match_labels == {"juju-operator": "gitlab"}
        assert spec.template.metadata.labels["juju-operator"] == "gitlab"
        assert spec.pod_management_policy == "Parallel"

        charm = spec.volume_claim_templates[0]
        assert charm.metadata.name == "charm"
        assert charm.metadata.labels == {"foo": "bar", "juju-operator": "gitlab"}
        assert charm.spec.storage_class_name == "test-juju-operator-storage"
        assert charm.spec.access_modes == ["ReadWriteOnce"]
        assert charm.spec.resources.requests == {"storage": "10Mi"}


@pytest.mark.unit
@pytest.mark.kubernetes
class TestStorageAndScheduling:
    """Test PVC templates, resource requirements and placement."""

    def test_filesystem_claim_templates(self):
        pod = unit_pod()
        filesystems = [
            FilesystemParams(storage_name="database", size=100, resource_tags={"foo": "bar"}),
            FilesystemParams(
                storage_name="logs", size=200,
                attachment=FilesystemAttachment(path="/var/log/app", read_only=True)
            ),
        ]
        templates = helpers.create_filesystem_claim_templates(
            "gitlab", pod, filesystems,
            {"database": "test-juju-unit-storage", "logs": "juju-unit-storage"},
            "/var/lib/juju/storage"
        )

        assert [t.metadata.name for t in templates] == ["database-0", "logs-1"]
        assert templates[0].metadata.labels == {
            "foo": "bar",
            "juju-application": "gitlab",
            "juju-storage": "database",
        }
        assert templates[0].spec.resources.requests == {"storage": "100Mi"}
        assert templates[0].spec.storage_class_name == "test-juju-unit-storage"
        assert templates[0].spec.access_modes == ["ReadWriteOnce"]
        assert templates[1].spec.access_modes == ["ReadOnlyMany"]

        mounts = pod.containers[0].volume_mounts
        assert [(m.name, m.mount_path) for m in mounts] == [
            ("database-0", "/var/lib/juju/storage/database"),
            ("logs-1", "/var/log/app"),
        ]
        assert mounts[1].read_only is True

    def test_constraints(self):
        pod = unit_pod()
        helpers.apply_resource_requirements(pod, Constraints(mem=64, cpu_power=500))

        resources = pod.containers[0].resources
        assert resources.limits == {"memory": "64Mi", "cpu": "500m"}
        assert resources.requests is None

    def test_devices_and_constraints_compose(self):
        """Test device requests and constraint limits share one requirements object."""
        pod = unit_pod(
            client.V1Container(name="a", image="a/image"),
            client.V1Container(name="b", image="b/image"),
        )
        helpers.apply_resource_requirements(
            pod,
            Constraints(mem=64),
            [DeviceParams(type="nvidia.com/gpu", count=3, attributes={"gpu": "nvidia-tesla-p100"})]
        )

        for container in pod.containers:
            assert container.resources.limits == {"memory": "64Mi", "nvidia.com/gpu": "3"}
            assert container.resources.requests == {"nvidia.com/gpu": "3"}
        assert pod.node_selector == {"accelerator": "nvidia-tesla-p100"}

    def test_no_requirements(self):
        pod = unit_pod()
        helpers.apply_resource_requirements(pod, Constraints(), [])
        assert pod.containers[0].resources is None

    def test_placement(self):
        pod = unit_pod()
        pod.node_selector = {"accelerator": "gpu"}
        helpers.apply_placement(pod, "disktype=ssd, zone=a")

        assert pod.node_selector == {"accelerator": "gpu", "disktype": "ssd", "zone": "a"}

    def test_invalid_placement(self):
        with pytest.raises(ValueError, match="invalid placement"):
            helpers.apply_placement(unit_pod(), "disktype")


@pytest.mark.unit
@pytest.mark.kubernetes
class TestWorkloads:
    """Test deployments, stateful sets and services."""

    def test_deployment(self):
        deployment = helpers.create_deployment_manifest(
            "gitlab", "test", "gitlab", unit_pod(), 2, tags={"fred": "mary"}
        )

        assert deployment.metadata.labels == {"fred": "mary", "juju-application": "gitlab"}
        assert deployment.spec.replicas == 2
        assert deployment.spec.selector.match_labels == {"juju-application": "gitlab"}
        assert deployment.spec.template.metadata.generate_name == "gitlab-"
        assert deployment.spec.template.metadata.labels == {"fred": "mary", "juju-application": "gitlab"}

    def test_statefulset(self):
        template = helpers.create_pvc_template("database-0", {"juju-storage": "database"}, "sc", 100)
        statefulset = helpers.create_statefulset_manifest(
            "gitlab", "test", "gitlab", unit_pod(), 3, [template]
        )

        assert statefulset.spec.replicas == 3
        assert statefulset.spec.service_name == "gitlab"
        assert statefulset.spec.selector.match_labels == {"juju-application": "gitlab"}
        assert statefulset.spec.volume_claim_templates == [template]
        assert statefulset.spec.pod_management_policy == "Parallel"

    def test_service(self):
        containers = [
            client.V1Container(
                name="gitlab",
                image="gitlab/latest",
                ports=[
                    client.V1ContainerPort(container_port=80, name="fred", protocol="TCP"),
                    client.V1ContainerPort(container_port=443, name="mary", protocol="TCP"),
                ],
            )
        ]
        config = ServiceConfig.model_validate({
            "kubernetes-service-type": "LoadBalancer",
            "kubernetes-service-loadbalancer-ip": "10.0.0.1",
            "kubernetes-service-externalips": "10.0.0.2, 10.0.0.3",
            "kubernetes-service-annotations": "a=b,c=d",
        })
        service = helpers.create_service_manifest(
            "gitlab", "test", "gitlab", containers, config,
            annotations={"a": "spec", "x": "y"}, tags={"fred": "mary"}
        )

        assert service.metadata.labels == {"fred": "mary", "juju-application": "gitlab"}
        assert service.metadata.annotations == {"a": "b", "c": "d", "x": "y"}
        assert service.spec.selector == {"juju-application": "gitlab"}
        assert service.spec.type == "LoadBalancer"
        assert service.spec.load_balancer_ip == "10.0.0.1"
        assert service.spec.external_ips == ["10.0.0.2", "10.0.0.3"]
        assert [(p.name, p.port, p.target_port, p.protocol) for p in service.spec.ports] == [
            ("fred", 80, 80, "TCP"),
            ("mary", 443, 443, "TCP"),
        ]

    def test_service_default_type(self):
        service = helpers.create_service_manifest(
            "gitlab", "test", "gitlab", [], ServiceConfig(), default_type="ClusterIP"
        )
        assert service.spec.type == "ClusterIP"
        assert service.metadata.annotations is None
        assert service.spec.external_ips is None


@pytest.mark.unit
@pytest.mark.kubernetes
class TestSecretsAndConfigMaps:

    def test_pull_secret(self):
        secret = helpers.create_pull_secret_manifest(
            PullSecret(name="app-name-secret-image-user-secret", docker_config_json=b'{"auths": {}}'),
            "test",
            {"juju-application": "app-name"}
        )

        assert secret.type == "kubernetes.io/dockerconfigjson"
        assert secret.metadata.labels == {"juju-application": "app-name"}
        assert base64.b64decode(secret.data[".dockerconfigjson"]) == b'{"auths": {}}'

    def test_declared_secret(self):
        secret = helpers.create_secret_manifest(
            SecretSpec(name="build-robot-secret", string_data={"config.yaml": "apiUrl: x"}),
            "test",
            {"juju-application": "app"}
        )

        assert secret.type == "Opaque"
        assert secret.string_data == {"config.yaml": "apiUrl: x"}
        assert secret.data is None

    def test_config_map_values_are_strings(self):
        config_map = helpers.create_config_map_manifest(
            "app-config", "test", {"port": 8080, "debug": True, "verbose": False, "mode": "yes"}
        )
        assert config_map.data == {"port": "8080", "debug": "true", "verbose": "false", "mode": "yes"}


@pytest.mark.unit
@pytest.mark.kubernetes
class TestCustomResourceDefinitions:
    """Test CRD and custom resource manifests."""

    def test_crd_from_definition(self):
        crd = helpers.crd_from_definition(
            CustomResourceDefinition(
                kind="TFJob",
                group="kubeflow.org",
                version="v1alpha2",
                validation={"properties": {"tfReplicaSpecs": {"type": "object"}}},
            ),
            {"juju-application": "app"}
        )

        assert crd.api_version == "apiextensions.k8s.io/v1"
        assert crd.metadata.name == "tfjobs.kubeflow.org"
        assert crd.metadata.labels == {"juju-application": "app"}
        assert crd.spec.group == "kubeflow.org"
        assert crd.spec.scope == "Namespaced"
        assert (crd.spec.names.kind, crd.spec.names.plural, crd.spec.names.singular) == ("TFJob", "tfjobs", "tfjob")

        version = crd.spec.versions[0]
        assert (version.name, version.served, version.storage) == ("v1alpha2", True, True)

    def test_crd_from_raw_spec(self):
        pod_spec = parse_pod_spec("""
containers:
  - name: app
    image: app/image
kubernetesResources:
  customResourceDefinitions:
    tfjobs.kubeflow.org:
      group: kubeflow.org
      scope: Namespaced
      names:
        kind: TFJob
        singular: tfjob
        plural: tfjobs
      versions:
        - name: v1
          served: true
          storage: true
""", version=SpecVersion.V2)
        name, raw = next(iter(pod_spec.kubernetes_resources.custom_resource_definitions.items()))
        crd = helpers.crd_from_raw_spec(name, raw, {"juju-application": "app"})

        assert crd.metadata.name == "tfjobs.kubeflow.org"
        assert crd.spec.versions[0].name == "v1"
        assert crd.spec.names.plural == "tfjobs"

    def test_custom_resource(self):
        resource = {"apiVersion": "kubeflow.org/v1", "kind": "TFJob", "metadata": {"name": "job", "labels": {"a": "b"}}}
        body = helpers.custom_resource_manifest(resource, "test", {"juju-application": "app"})

        assert body["metadata"] == {
            "name": "job",
            "namespace": "test",
            "labels": {"a": "b", "juju-application": "app"},
        }
        # The declared object is left untouched
        assert "namespace" not in resource["metadata"]


@pytest.mark.unit
@pytest.mark.kubernetes
class TestServiceAccounts:
    """Test service accounts and RBAC manifests."""

    RULES = [{"apiGroups": [""], "resources": ["pods"], "verbs": ["get", "list"]}]

    def test_role(self):
        role = helpers.create_role_manifest("app", "test", {"juju-application": "app"}, self.RULES)

        assert isinstance(role, client.V1Role)
        assert role.metadata.namespace == "test"
        assert role.rules[0].verbs == ["get", "list"]
        assert role.rules[0].resources == ["pods"]

    def test_cluster_role(self):
        role = helpers.create_role_manifest("test-app", "test", {}, self.RULES, cluster_scoped=True)
        assert isinstance(role, client.V1ClusterRole)
        assert role.metadata.namespace is None

    def test_role_binding(self):
        binding = helpers.create_role_binding_manifest("app", "test", {}, "app")

        assert isinstance(binding, client.V1RoleBinding)
        assert binding.role_ref.kind == "Role"
        assert binding.role_ref.name == "app"
        assert [(s.kind, s.name, s.namespace) for s in binding.subjects] == [("ServiceAccount", "app", "test")]

    def test_service_account_specs(self):
        """Test the application account is named after the app and declared accounts follow."""
        pod_spec = parse_pod_spec("""
serviceAccount:
  global: true
  rules:
    - apiGroups: [""]
      resources: ["pods"]
      verbs: ["get"]
containers:
  - name: app
    image: app/image
kubernetesResources:
  serviceAccounts:
    - name: sa2
      rules: []
""", version=SpecVersion.V2)
        accounts = helpers.service_account_specs("app", pod_spec)

        assert [a.name for a in accounts] == ["app", "sa2"]
        assert accounts[0].global_ is True
