"""
Kubernetes Reconciliation Broker

Drives one model's namespace toward the state the orchestrator declares.

Key Concepts:
1. ENSURE (create-or-update):
   - Update the object; create it when the update reports "not found"
   - Safe to repeat; every call converges on the same objects
   - CRDs and custom resources are created first and replaced with the live
     resourceVersion on conflict (the API server refuses blind updates)

2. DELETE:
   - Foreground propagation; "not found" counts as success
   - Application teardown finds what it owns through labels, never through
     in-process bookkeeping

3. NAMESPACE TEARDOWN:
   - Delete the namespace, then wait on a watch for it to disappear
   - The wait can be cancelled (event or deadline) and always stops its watch

4. LEGACY NAMES:
   - Applications deployed before the current naming scheme keep their names
     ("juju-operator-<app>", "juju-<app>"), detected per call
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..config import Settings, get_settings
from ..schemas import OperatorConfig, ServiceConfig, ServiceParams
from ..specs.models import PodSpec
from ..utils import resource_naming
from .base import BaseBroker
from .status import OperatorInfo, UnitInfo, WorkloadStatus
from .kubernetes import helpers
from .kubernetes.client import get_k8s_client, KubernetesClient
from .kubernetes.regions import list_host_cloud_regions
from .kubernetes.translator import make_unit_spec
from .kubernetes.watcher import NamespaceWatcher

logger = logging.getLogger(__name__)

PROVIDER_TYPE = "kubernetes"


class BrokerError(Exception):
    """Base class for broker failures."""
    pass


class ResourceNotFoundError(BrokerError):
    """A resource the operation depends on does not exist."""
    pass


class StorageClassNotFoundError(ResourceNotFoundError):
    pass


class KubernetesOperationError(BrokerError):
    """
    The cluster rejected a request.

    Attributes:
        kind: Resource kind (e.g. "statefulset")
        name: Resource name
        status: HTTP status reported by the API server (0 for transport errors)
    """

    def __init__(self, message: str, kind: str = "", name: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.name = name
        self.status = status


class NamespaceTerminationCancelled(BrokerError):
    """The wait for namespace termination was cancelled or ran out of time."""
    pass


def _foreground() -> client.V1DeleteOptions:
    return client.V1DeleteOptions(propagation_policy="Foreground")


def _discard_result(future: asyncio.Future) -> None:
    # Result of an abandoned watch read; only logged
    if not future.cancelled() and future.exception() is not None:
        logger.debug(f"[K8S:WATCH] Abandoned watch read failed: {future.exception()}")


class KubernetesBroker(BaseBroker):
    """
    Reconciliation broker for one model namespace.

    Blocking client calls run in worker threads, so a long namespace wait
    never blocks other operations on the event loop. The broker holds no
    state besides its namespace; applications may be reconciled concurrently.
    """

    def __init__(
        self,
        namespace: str,
        k8s_client: Optional[KubernetesClient] = None,
        settings: Optional[Settings] = None
    ):
        self.namespace = namespace
        self.settings = settings or get_settings()
        self._k8s_client = k8s_client

        logger.info(f"[K8S:BROKER] Broker initialized for namespace {namespace}")

    @property
    def provider_type(self) -> str:
        return PROVIDER_TYPE

    @property
    def k8s_client(self) -> KubernetesClient:
        """Lazy load the Kubernetes client."""
        if self._k8s_client is None:
            self._k8s_client = get_k8s_client()
        return self._k8s_client

    @property
    def core_v1(self):
        return self.k8s_client.core_v1

    @property
    def apps_v1(self):
        return self.k8s_client.apps_v1

    @property
    def storage_v1(self):
        return self.k8s_client.storage_v1

    @property
    def apiextensions_v1(self):
        return self.k8s_client.apiextensions_v1

    @property
    def custom_objects(self):
        return self.k8s_client.custom_objects

    @property
    def rbac_v1(self):
        return self.k8s_client.rbac_v1

    # =========================================================================
    # PRIMITIVES
    # =========================================================================

    def _operation_error(self, action: str, kind: str, name: str, e: ApiException) -> KubernetesOperationError:
        logger.error(f"[K8S:BROKER] Failed to {action} {kind} {name}: {e.status} {e.reason}")
        return KubernetesOperationError(
            f"failed to {action} {kind} {name!r}: {e.reason}",
            kind=kind,
            name=name,
            status=e.status
        )

    async def _read(self, kind: str, read: Callable, name: str, **kwargs):
        """Read an object; None when it does not exist."""
        try:
            return await asyncio.to_thread(read, name=name, **kwargs)
        except ApiException as e:
            if e.status == 404:
                return None
            raise self._operation_error("get", kind, name, e) from e

    async def _ensure(self, kind: str, name: str, update: Callable, create: Callable, **kwargs):
        """
        Update an object, creating it when the update reports "not found".

        Args:
            kind: Resource kind, for logs and errors
            name: Object name
            update: replace_* API method
            create: create_* API method
            **kwargs: body and, for namespaced kinds, namespace

        Returns:
            The object returned by the API server
        """
        try:
            result = await asyncio.to_thread(update, name=name, **kwargs)
            logger.debug(f"[K8S:BROKER] Updated {kind} {name}")
            return result
        except ApiException as e:
            if e.status != 404:
                raise self._operation_error("update", kind, name, e) from e

        try:
            result = await asyncio.to_thread(create, **kwargs)
        except ApiException as e:
            raise self._operation_error("create", kind, name, e) from e
        logger.info(f"[K8S:BROKER] ✅ Created {kind} {name}")
        return result

    async def _delete(self, kind: str, delete: Callable, name: str, **kwargs) -> bool:
        """
        Delete an object with foreground propagation.

        Returns:
            True if deleted, False if it was already gone
        """
        try:
            await asyncio.to_thread(delete, name=name, body=_foreground(), **kwargs)
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"[K8S:BROKER] {kind} {name} already deleted")
                return False
            raise self._operation_error("delete", kind, name, e) from e
        logger.info(f"[K8S:BROKER] Deleted {kind} {name}")
        return True

    async def _delete_collection(self, kind: str, delete_collection: Callable, label_selector: str, **kwargs) -> None:
        try:
            await asyncio.to_thread(
                delete_collection,
                label_selector=label_selector,
                body=_foreground(),
                **kwargs
            )
        except ApiException as e:
            if e.status == 404:
                return
            raise self._operation_error("delete", kind, label_selector, e) from e
        logger.info(f"[K8S:BROKER] Deleted {kind} objects matching {label_selector}")

    async def _list(self, kind: str, list_func: Callable, label_selector: str, **kwargs) -> List:
        try:
            result = await asyncio.to_thread(list_func, label_selector=label_selector, **kwargs)
        except ApiException as e:
            raise self._operation_error("list", kind, label_selector, e) from e
        return result.items or []

    async def _is_legacy(self, app_name: str) -> bool:
        """Whether the application was deployed under the legacy naming scheme."""
        statefulset = await self._read(
            "statefulset",
            self.apps_v1.read_namespaced_stateful_set,
            resource_naming.legacy_operator_name(app_name),
            namespace=self.namespace
        )
        return statefulset is not None

    async def resolve_storage_class(self, storage_class: str) -> str:
        """
        Find the storage class to use for a volume.

        Args:
            storage_class: Configured storage class name

        Returns:
            "<namespace>-<storage_class>" if it exists, else storage_class

        Raises:
            StorageClassNotFoundError: If neither exists
        """
        qualified = resource_naming.qualified_storage_class_name(self.namespace, storage_class)
        for candidate in (qualified, storage_class):
            found = await self._read("storage class", self.storage_v1.read_storage_class, candidate)
            if found is not None:
                return candidate
        raise StorageClassNotFoundError(
            f"storage class {storage_class!r} not found (also tried {qualified!r})"
        )

    # =========================================================================
    # NAMESPACE MANAGEMENT
    # =========================================================================

    async def ensure_namespace(self) -> None:
        await self._ensure(
            "namespace",
            self.namespace,
            self.core_v1.replace_namespace,
            self.core_v1.create_namespace,
            body=helpers.create_namespace_manifest(self.namespace)
        )

    async def get_namespace(self, name: Optional[str] = None) -> client.V1Namespace:
        """
        Read a namespace (the model's own by default).

        Raises:
            ResourceNotFoundError: If the namespace does not exist
        """
        name = name or self.namespace
        namespace = await self._read("namespace", self.core_v1.read_namespace, name)
        if namespace is None:
            raise ResourceNotFoundError(f"namespace {name!r} not found")
        return namespace

    async def namespaces(self) -> List[str]:
        """Names of all namespaces in the cluster."""
        try:
            result = await asyncio.to_thread(self.core_v1.list_namespace)
        except ApiException as e:
            raise self._operation_error("list", "namespace", "*", e) from e
        return [ns.metadata.name for ns in result.items or []]

    async def delete_namespace(self) -> None:
        await self._delete("namespace", self.core_v1.delete_namespace, self.namespace)

    async def destroy(
        self,
        cancel: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None
    ) -> None:
        """
        Delete the model's namespace and storage classes, then wait until the
        namespace is gone.

        Raises:
            NamespaceTerminationCancelled: If cancel is set or timeout expires first
        """
        logger.info(f"[K8S:BROKER] Destroying namespace {self.namespace}")
        watcher = NamespaceWatcher(self.core_v1, self.namespace, self.settings.k8s_watch_timeout_seconds)
        try:
            await self.delete_namespace()
            await self._delete_collection(
                "storage class",
                self.storage_v1.delete_collection_storage_class,
                resource_naming.model_selector(self.namespace)
            )
            await self.wait_namespace_terminated(cancel=cancel, timeout=timeout, watcher=watcher)
        finally:
            watcher.stop()
        logger.info(f"[K8S:BROKER] ✅ Namespace {self.namespace} destroyed")

    async def _namespace_exists(self) -> bool:
        namespace = await self._read("namespace", self.core_v1.read_namespace, self.namespace)
        return namespace is not None

    async def wait_namespace_terminated(
        self,
        cancel: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
        watcher: Optional[NamespaceWatcher] = None
    ) -> None:
        """
        Wait until the namespace no longer exists.

        Completes when a read reports "not found" or the watch reports the
        namespace deleted. The namespace is re-read after every watch event
        and every expired watch request.

        Args:
            cancel: Set to abandon the wait
            timeout: Seconds to wait; defaults to k8s_namespace_termination_timeout_seconds (0 = no deadline)
            watcher: Watch to consume; a new one is opened (and stopped) when omitted

        Raises:
            NamespaceTerminationCancelled: If cancel is set or the deadline passes
        """
        if timeout is None:
            timeout = self.settings.k8s_namespace_termination_timeout_seconds or None

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None

        owns_watcher = watcher is None
        if watcher is None:
            watcher = NamespaceWatcher(self.core_v1, self.namespace, self.settings.k8s_watch_timeout_seconds)

        try:
            while True:
                if not await self._namespace_exists():
                    logger.info(f"[K8S:BROKER] Namespace {self.namespace} terminated")
                    return

                if cancel is not None and cancel.is_set():
                    raise NamespaceTerminationCancelled(
                        f"waiting for namespace {self.namespace!r} to terminate was cancelled"
                    )
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    raise NamespaceTerminationCancelled(
                        f"namespace {self.namespace!r} still exists after {timeout}s"
                    )

                event = await self._next_watch_event(watcher, cancel, remaining)
                if event is not None and event.get("type") == "DELETED":
                    logger.info(f"[K8S:BROKER] Namespace {self.namespace} terminated")
                    return
        finally:
            if owns_watcher:
                watcher.stop()

    async def _next_watch_event(
        self,
        watcher: NamespaceWatcher,
        cancel: Optional[asyncio.Event],
        remaining: Optional[float]
    ) -> Optional[Dict[str, Any]]:
        """
        Next watch event, or None when the watch request expired.

        Raises:
            NamespaceTerminationCancelled: If cancel is set or remaining runs out first
        """
        read = asyncio.ensure_future(watcher.next_event())
        waiters = {read}
        cancelled = None
        if cancel is not None:
            cancelled = asyncio.ensure_future(cancel.wait())
            waiters.add(cancelled)

        try:
            done, _ = await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancelled is not None:
                cancelled.cancel()
            if not read.done():
                # The worker thread returns once the watch is stopped
                read.add_done_callback(_discard_result)

        if read in done:
            try:
                return read.result()
            except ApiException as e:
                raise self._operation_error("watch", "namespace", self.namespace, e) from e

        if cancelled is not None and cancelled in done:
            raise NamespaceTerminationCancelled(
                f"waiting for namespace {self.namespace!r} to terminate was cancelled"
            )
        raise NamespaceTerminationCancelled(
            f"timed out waiting for namespace {self.namespace!r} to terminate"
        )

    # =========================================================================
    # OPERATOR MANAGEMENT
    # =========================================================================

    async def ensure_operator(self, app_name: str, agent_path: str, config: OperatorConfig) -> None:
        """
        Create or update the operator stateful set of an application.

        Args:
            app_name: Application name
            agent_path: Agent data directory inside the operator
            config: Operator image, version, agent config and charm storage

        Raises:
            ResourceNotFoundError: If no agent config is given and the operator
                config map does not exist yet
            StorageClassNotFoundError: If no operator storage class exists
        """
        await self.ensure_namespace()

        legacy = await self._is_legacy(app_name)
        name = resource_naming.operator_name(app_name, legacy)

        config_map_name = resource_naming.operator_config_map_name(app_name)
        if config.agent_conf is not None:
            await self._ensure(
                "config map",
                config_map_name,
                self.core_v1.replace_namespaced_config_map,
                self.core_v1.create_namespaced_config_map,
                namespace=self.namespace,
                body=helpers.create_operator_config_map(app_name, self.namespace, config.agent_conf)
            )
        else:
            existing = await self._read(
                "config map", self.core_v1.read_namespaced_config_map, config_map_name, namespace=self.namespace
            )
            if existing is None:
                raise ResourceNotFoundError(
                    f"config map for {app_name!r} should already exist: config map {config_map_name!r} not found"
                )

        storage_class = await self.resolve_storage_class(
            config.charm_storage.storage_class or self.settings.k8s_operator_storage_class
        )

        statefulset = helpers.create_operator_statefulset(
            app_name=app_name,
            name=name,
            namespace=self.namespace,
            agent_path=agent_path,
            config=config,
            storage_class=storage_class,
            pull_policy=self.settings.k8s_operator_image_pull_policy
        )
        await self._ensure(
            "statefulset",
            name,
            self.apps_v1.replace_namespaced_stateful_set,
            self.apps_v1.create_namespaced_stateful_set,
            namespace=self.namespace,
            body=statefulset
        )
        logger.info(f"[K8S:BROKER] ✅ Operator {name} ensured")

    async def delete_operator(self, app_name: str) -> None:
        legacy = await self._is_legacy(app_name)
        name = resource_naming.operator_name(app_name, legacy)

        for config_map_name in (
            resource_naming.operator_config_map_name(app_name),
            resource_naming.configurations_config_map_name(app_name),
        ):
            await self._delete(
                "config map", self.core_v1.delete_namespaced_config_map, config_map_name, namespace=self.namespace
            )

        await self._delete(
            "statefulset", self.apps_v1.delete_namespaced_stateful_set, name, namespace=self.namespace
        )

        pods = await self._list(
            "pod",
            self.core_v1.list_namespaced_pod,
            resource_naming.operator_selector(app_name),
            namespace=self.namespace
        )
        for pod in pods:
            for container in pod.spec.containers:
                await self._delete(
                    "secret",
                    self.core_v1.delete_namespaced_secret,
                    resource_naming.pull_secret_name(app_name, container.name),
                    namespace=self.namespace
                )
            await self._delete_pod_volumes(pod)

        await self._delete(
            "deployment", self.apps_v1.delete_namespaced_deployment, name, namespace=self.namespace
        )

    async def _delete_pod_volumes(self, pod: client.V1Pod) -> None:
        """Delete the claims a pod mounts and the volumes bound to them."""
        for volume in pod.spec.volumes or []:
            if volume.persistent_volume_claim is None:
                continue
            claim_name = volume.persistent_volume_claim.claim_name
            claim = await self._read(
                "persistent volume claim",
                self.core_v1.read_namespaced_persistent_volume_claim,
                claim_name,
                namespace=self.namespace
            )
            # An already deleted claim no longer names its volume
            volume_name = claim.spec.volume_name if claim is not None and claim.spec.volume_name else claim_name

            await self._delete(
                "persistent volume claim",
                self.core_v1.delete_namespaced_persistent_volume_claim,
                claim_name,
                namespace=self.namespace
            )
            await self._delete("persistent volume", self.core_v1.delete_persistent_volume, volume_name)

    async def operator(self, app_name: str) -> OperatorInfo:
        """
        Status of the operator pod.

        Raises:
            ResourceNotFoundError: If no operator pod exists
        """
        pods = await self._list(
            "pod",
            self.core_v1.list_namespaced_pod,
            resource_naming.operator_selector(app_name),
            namespace=self.namespace
        )
        if not pods:
            raise ResourceNotFoundError(f"operator pod for application {app_name!r} not found")

        pod = pods[0]
        return OperatorInfo(
            pod_name=pod.metadata.name,
            status=self._pod_status(pod),
            message=(pod.status.message if pod.status else None) or ""
        )

    @staticmethod
    def _pod_status(pod: client.V1Pod) -> WorkloadStatus:
        if pod.metadata.deletion_timestamp is not None:
            return WorkloadStatus.TERMINATED
        return WorkloadStatus.from_pod_phase(pod.status.phase if pod.status else None)

    # =========================================================================
    # APPLICATION SERVICE
    # =========================================================================

    async def ensure_service(
        self,
        app_name: str,
        params: ServiceParams,
        num_units: int,
        config: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Create or update an application's workload and service.

        Without a pod spec only the unit count of the existing workload is
        changed. With one, the pod spec is translated and its secrets, config
        maps and Kubernetes resources are ensured before the workload (a
        stateful set when filesystems are requested, otherwise a deployment)
        and finally the service.

        Raises:
            SpecValidationError: If the pod spec is invalid
            ImagePullSecretError: If a private image has no resolvable registry
            StorageClassNotFoundError: If a filesystem has no storage class
        """
        legacy = await self._is_legacy(app_name)
        name = resource_naming.deployment_name(app_name, legacy)

        if params.pod_spec is None:
            await self._scale(name, num_units)
            return

        pod_spec = params.pod_spec
        pod_spec.validate_spec()
        unit_spec = make_unit_spec(app_name, name, pod_spec)

        pod = unit_spec.pod
        helpers.apply_resource_requirements(pod, params.constraints, params.devices)
        helpers.apply_placement(pod, params.placement)

        # Resolve storage before anything is written
        storage_classes = {}
        for fs in params.filesystems:
            storage_classes[fs.storage_name] = await self.resolve_storage_class(
                fs.storage_class or self.settings.k8s_unit_storage_class
            )

        labels = helpers.application_labels(app_name, params.resource_tags)
        for secret in unit_spec.secrets:
            await self._ensure_secret(helpers.create_pull_secret_manifest(secret, self.namespace, labels))

        config_maps = {**pod_spec.config_maps, **unit_spec.config_maps}
        for config_map_name, data in config_maps.items():
            await self._ensure(
                "config map",
                config_map_name,
                self.core_v1.replace_namespaced_config_map,
                self.core_v1.create_namespaced_config_map,
                namespace=self.namespace,
                body=helpers.create_config_map_manifest(config_map_name, self.namespace, data, labels)
            )

        await self._ensure_kubernetes_resources(app_name, pod_spec, labels)

        if params.filesystems:
            templates = helpers.create_filesystem_claim_templates(
                app_name, pod, params.filesystems, storage_classes, self.settings.k8s_storage_mount_base
            )
            statefulset = helpers.create_statefulset_manifest(
                name, self.namespace, app_name, pod, num_units, templates, params.resource_tags
            )
            await self._ensure(
                "statefulset",
                name,
                self.apps_v1.replace_namespaced_stateful_set,
                self.apps_v1.create_namespaced_stateful_set,
                namespace=self.namespace,
                body=statefulset
            )
        else:
            deployment = helpers.create_deployment_manifest(
                name, self.namespace, app_name, pod, num_units, params.resource_tags
            )
            await self._ensure(
                "deployment",
                name,
                self.apps_v1.replace_namespaced_deployment,
                self.apps_v1.create_namespaced_deployment,
                namespace=self.namespace,
                body=deployment
            )

        if pod_spec.omit_service_frontend:
            logger.debug(f"[K8S:BROKER] Service frontend omitted for {app_name}")
        else:
            await self._ensure_service_frontend(app_name, name, pod_spec, pod, config, params.resource_tags)

        logger.info(f"[K8S:BROKER] ✅ Service {name} ensured with {num_units} unit(s)")

    async def _scale(self, name: str, num_units: int) -> None:
        for kind, read, replace in (
            ("statefulset", self.apps_v1.read_namespaced_stateful_set, self.apps_v1.replace_namespaced_stateful_set),
            ("deployment", self.apps_v1.read_namespaced_deployment, self.apps_v1.replace_namespaced_deployment),
        ):
            workload = await self._read(kind, read, name, namespace=self.namespace)
            if workload is None:
                continue
            workload.spec.replicas = num_units
            try:
                await asyncio.to_thread(replace, name=name, namespace=self.namespace, body=workload)
            except ApiException as e:
                raise self._operation_error("scale", kind, name, e) from e
            logger.info(f"[K8S:BROKER] Scaled {kind} {name} to {num_units} unit(s)")
            return
        logger.debug(f"[K8S:BROKER] No workload {name} to scale")

    async def _ensure_secret(self, secret: client.V1Secret) -> None:
        await self._ensure(
            "secret",
            secret.metadata.name,
            self.core_v1.replace_namespaced_secret,
            self.core_v1.create_namespaced_secret,
            namespace=self.namespace,
            body=secret
        )

    async def _ensure_service_frontend(
        self,
        app_name: str,
        name: str,
        pod_spec: PodSpec,
        pod: client.V1PodSpec,
        config: Optional[Dict[str, Any]],
        tags: Dict[str, str]
    ) -> None:
        service_config = ServiceConfig.model_validate(config or {})
        service = helpers.create_service_manifest(
            name=name,
            namespace=self.namespace,
            app_name=app_name,
            containers=pod.containers,
            config=service_config,
            default_type=self.settings.k8s_default_service_type,
            annotations=pod_spec.service.annotations if pod_spec.service else None,
            tags=tags
        )
        if not service.spec.ports and service.spec.type != "ExternalName":
            logger.debug(f"[K8S:BROKER] No ports exposed by {app_name}, skipping service")
            return

        existing = await self._read("service", self.core_v1.read_namespaced_service, name, namespace=self.namespace)
        if existing is not None:
            # Allocated fields survive the update
            service.metadata.resource_version = existing.metadata.resource_version
            if existing.spec.cluster_ip and service.spec.type != "ExternalName":
                service.spec.cluster_ip = existing.spec.cluster_ip

        await self._ensure(
            "service",
            name,
            self.core_v1.replace_namespaced_service,
            self.core_v1.create_namespaced_service,
            namespace=self.namespace,
            body=service
        )

    async def delete_service(self, app_name: str) -> None:
        """
        Delete everything an application owns in the namespace.

        Order: workload, service, claimed volumes, secrets, then config maps,
        service accounts and RBAC objects carrying the application label.
        """
        legacy = await self._is_legacy(app_name)
        name = resource_naming.deployment_name(app_name, legacy)
        selector = resource_naming.application_selector(app_name)

        await self._delete("statefulset", self.apps_v1.delete_namespaced_stateful_set, name, namespace=self.namespace)
        await self._delete("deployment", self.apps_v1.delete_namespaced_deployment, name, namespace=self.namespace)
        await self._delete("service", self.core_v1.delete_namespaced_service, name, namespace=self.namespace)

        pods = await self._list("pod", self.core_v1.list_namespaced_pod, selector, namespace=self.namespace)
        for pod in pods:
            await self._delete_pod_volumes(pod)

        secrets = await self._list("secret", self.core_v1.list_namespaced_secret, selector, namespace=self.namespace)
        for secret in secrets:
            await self._delete(
                "secret", self.core_v1.delete_namespaced_secret, secret.metadata.name, namespace=self.namespace
            )

        await self._delete_collection(
            "config map", self.core_v1.delete_collection_namespaced_config_map, selector, namespace=self.namespace
        )
        await self._delete_collection(
            "service account", self.core_v1.delete_collection_namespaced_service_account, selector, namespace=self.namespace
        )
        await self._delete_collection(
            "role binding", self.rbac_v1.delete_collection_namespaced_role_binding, selector, namespace=self.namespace
        )
        await self._delete_collection(
            "role", self.rbac_v1.delete_collection_namespaced_role, selector, namespace=self.namespace
        )

        cluster_selector = f"{selector},{resource_naming.model_selector(self.namespace)}"
        await self._delete_collection(
            "cluster role binding", self.rbac_v1.delete_collection_cluster_role_binding, cluster_selector
        )
        await self._delete_collection(
            "cluster role", self.rbac_v1.delete_collection_cluster_role, cluster_selector
        )
        logger.info(f"[K8S:BROKER] ✅ Service {name} deleted")

    async def units(self, app_name: str) -> List[UnitInfo]:
        """Status of every unit pod of an application."""
        pods = await self._list(
            "pod",
            self.core_v1.list_namespaced_pod,
            resource_naming.application_selector(app_name),
            namespace=self.namespace
        )

        units = []
        for pod in pods:
            mounts = {}
            ports = []
            for container in pod.spec.containers:
                for mount in container.volume_mounts or []:
                    mounts.setdefault(mount.name, mount.mount_path)
                for port in container.ports or []:
                    ports.append(f"{port.container_port}/{port.protocol or 'TCP'}")

            filesystems = [
                {
                    "volume": volume.name,
                    "claim_name": volume.persistent_volume_claim.claim_name,
                    "mount_path": mounts.get(volume.name, ""),
                }
                for volume in pod.spec.volumes or []
                if volume.persistent_volume_claim is not None
            ]

            units.append(UnitInfo(
                id=pod.metadata.uid or pod.metadata.name,
                pod_name=pod.metadata.name,
                address=(pod.status.pod_ip if pod.status else None) or "",
                ports=ports,
                status=self._pod_status(pod),
                message=(pod.status.message if pod.status else None) or "",
                filesystems=filesystems
            ))
        return units

    # =========================================================================
    # KUBERNETES RESOURCES (CRDs, custom resources, service accounts)
    # =========================================================================

    async def _ensure_kubernetes_resources(self, app_name: str, pod_spec: PodSpec, labels: Dict[str, str]) -> None:
        await self.ensure_service_accounts(app_name, pod_spec)

        resources = pod_spec.kubernetes_resources
        if resources is not None:
            for secret in resources.secrets:
                await self._ensure_secret(helpers.create_secret_manifest(secret, self.namespace, labels))

        await self.ensure_custom_resource_definitions(app_name, pod_spec)
        await self.ensure_custom_resources(app_name, pod_spec)

    def _cluster_labels(self, app_name: str) -> Dict[str, str]:
        # Cluster-scoped objects also record the model they belong to
        return helpers.ownership_labels(
            resource_naming.LABEL_APPLICATION,
            app_name,
            {resource_naming.LABEL_MODEL: self.namespace}
        )

    async def ensure_custom_resource_definitions(self, app_name: str, pod_spec: PodSpec) -> List[str]:
        """
        Create or update the CRDs a pod spec declares.

        Returns:
            Names of the ensured CRDs
        """
        labels = self._cluster_labels(app_name)
        crds = [helpers.crd_from_definition(crd, labels) for crd in pod_spec.custom_resource_definitions]
        resources = pod_spec.kubernetes_resources
        if resources is not None:
            crds.extend(
                helpers.crd_from_raw_spec(name, spec, labels)
                for name, spec in resources.custom_resource_definitions.items()
            )

        names = []
        for crd in crds:
            await self.ensure_custom_resource_definition(crd)
            names.append(crd.metadata.name)
        return names

    async def ensure_custom_resource_definition(
        self,
        crd: client.V1CustomResourceDefinition
    ) -> client.V1CustomResourceDefinition:
        """Create a CRD; on conflict replace it using the live resourceVersion."""
        name = crd.metadata.name
        try:
            result = await asyncio.to_thread(self.apiextensions_v1.create_custom_resource_definition, body=crd)
            logger.info(f"[K8S:BROKER] ✅ Created custom resource definition {name}")
            return result
        except ApiException as e:
            if e.status != 409:
                raise self._operation_error("create", "custom resource definition", name, e) from e

        try:
            existing = await asyncio.to_thread(self.apiextensions_v1.read_custom_resource_definition, name=name)
            crd.metadata.resource_version = existing.metadata.resource_version
            result = await asyncio.to_thread(
                self.apiextensions_v1.replace_custom_resource_definition, name=name, body=crd
            )
        except ApiException as e:
            raise self._operation_error("update", "custom resource definition", name, e) from e
        logger.debug(f"[K8S:BROKER] Updated custom resource definition {name}")
        return result

    async def ensure_custom_resources(self, app_name: str, pod_spec: PodSpec) -> None:
        """Create or update the custom resources a v2 pod spec declares."""
        resources = pod_spec.kubernetes_resources
        if resources is None:
            return

        labels = helpers.application_labels(app_name)
        for crd_name, objects in resources.custom_resources.items():
            crd_spec = resources.custom_resource_definitions[crd_name]
            group = crd_spec.get("group") or crd_name.partition(".")[2]
            plural = (crd_spec.get("names") or {}).get("plural") or crd_name.partition(".")[0]
            default_version = crd_spec.get("version") or ((crd_spec.get("versions") or [{}])[0]).get("name", "")

            for obj in objects:
                body = helpers.custom_resource_manifest(obj, self.namespace, labels)
                api_version = body.get("apiVersion", "")
                version = api_version.partition("/")[2] or default_version
                await self._ensure_custom_object(group, version, plural, body)

    async def _ensure_custom_object(self, group: str, version: str, plural: str, body: Dict[str, Any]) -> None:
        name = body["metadata"].get("name", "")
        kind = f"custom resource {plural}.{group}"
        api_args = dict(group=group, version=version, namespace=self.namespace, plural=plural)
        try:
            await asyncio.to_thread(self.custom_objects.create_namespaced_custom_object, body=body, **api_args)
            logger.info(f"[K8S:BROKER] ✅ Created {kind} {name}")
            return
        except ApiException as e:
            if e.status != 409:
                raise self._operation_error("create", kind, name, e) from e

        try:
            existing = await asyncio.to_thread(
                self.custom_objects.get_namespaced_custom_object, name=name, **api_args
            )
            body["metadata"]["resourceVersion"] = existing["metadata"]["resourceVersion"]
            await asyncio.to_thread(
                self.custom_objects.replace_namespaced_custom_object, name=name, body=body, **api_args
            )
        except ApiException as e:
            raise self._operation_error("update", kind, name, e) from e
        logger.debug(f"[K8S:BROKER] Updated {kind} {name}")

    async def ensure_service_accounts(self, app_name: str, pod_spec: PodSpec) -> None:
        """Create or update service accounts and their RBAC rules."""
        for account in helpers.service_account_specs(app_name, pod_spec):
            labels = helpers.application_labels(app_name)
            await self._ensure(
                "service account",
                account.name,
                self.core_v1.replace_namespaced_service_account,
                self.core_v1.create_namespaced_service_account,
                namespace=self.namespace,
                body=helpers.create_service_account_manifest(
                    account.name, self.namespace, labels, account.automount_service_account_token
                )
            )
            if not account.rules:
                continue

            if account.global_:
                role_name = f"{self.namespace}-{account.name}"
                cluster_labels = self._cluster_labels(app_name)
                await self._ensure(
                    "cluster role",
                    role_name,
                    self.rbac_v1.replace_cluster_role,
                    self.rbac_v1.create_cluster_role,
                    body=helpers.create_role_manifest(
                        role_name, self.namespace, cluster_labels, account.rules, cluster_scoped=True
                    )
                )
                await self._ensure(
                    "cluster role binding",
                    role_name,
                    self.rbac_v1.replace_cluster_role_binding,
                    self.rbac_v1.create_cluster_role_binding,
                    body=helpers.create_role_binding_manifest(
                        role_name, self.namespace, cluster_labels, account.name, cluster_scoped=True
                    )
                )
            else:
                await self._ensure(
                    "role",
                    account.name,
                    self.rbac_v1.replace_namespaced_role,
                    self.rbac_v1.create_namespaced_role,
                    namespace=self.namespace,
                    body=helpers.create_role_manifest(account.name, self.namespace, labels, account.rules)
                )
                await self._ensure(
                    "role binding",
                    account.name,
                    self.rbac_v1.replace_namespaced_role_binding,
                    self.rbac_v1.create_namespaced_role_binding,
                    namespace=self.namespace,
                    body=helpers.create_role_binding_manifest(account.name, self.namespace, labels, account.name)
                )

    # =========================================================================
    # DISCOVERY
    # =========================================================================

    async def list_host_cloud_regions(self) -> Set[str]:
        """
        Infer the cloud regions hosting the cluster from a sample of nodes.

        Returns:
            Set of "<cloud>/<region>" strings; empty when nothing is recognised
        """
        try:
            nodes = await asyncio.to_thread(self.core_v1.list_node, limit=self.settings.k8s_node_sample_size)
        except ApiException as e:
            raise self._operation_error("list", "node", "*", e) from e
        return list_host_cloud_regions(nodes.items or [])
