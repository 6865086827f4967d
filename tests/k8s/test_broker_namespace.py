"""
Unit tests for namespace management in the Kubernetes broker.

Tests:
- Ensure protocol (update, create on 404, errors surfaced with context)
- Namespace lookup and listing
- Destroy: namespace and model storage classes deleted, termination awaited
- Termination wait: DELETED event, 404 re-read, cancellation, deadline
- Stopping a watch closes its response and releases a blocked read
"""

import asyncio
import threading
from types import SimpleNamespace
from unittest.mock import patch

import pytest

pytest.importorskip("kubernetes")

from kubernetes.client.rest import ApiException

from kubebroker.orchestration.kubernetes_broker import (
    KubernetesOperationError,
    NamespaceTerminationCancelled,
    ResourceNotFoundError,
)
from kubebroker.orchestration.kubernetes.watcher import NamespaceWatcher

NOT_FOUND = ApiException(status=404, reason="Not Found")
NAMESPACE = SimpleNamespace(metadata=SimpleNamespace(name="test"))


class FakeWatch:
    """Stands in for kubernetes.watch.Watch; optionally blocks until stopped."""

    def __init__(self, events=(), block=False):
        self.events = list(events)
        self.block = block
        self.stopped = threading.Event()
        self.stream_calls = []

    def stream(self, func, **kwargs):
        self.stream_calls.append(kwargs)
        return self._events()

    def _events(self):
        for event in self.events:
            yield event
        if self.block:
            self.stopped.wait(5)

    def stop(self):
        self.stopped.set()


class BlockingResponse:
    """A watch response whose stream blocks until the response is closed."""

    def __init__(self):
        self.reading = threading.Event()
        self.closed = threading.Event()
        self.finished = threading.Event()

    def stream(self, amt=None, decode_content=False):
        self.reading.set()
        self.closed.wait(5)
        self.finished.set()
        yield from ()

    def close(self):
        self.closed.set()

    def release_conn(self):
        pass


def patch_watch(fake):
    return patch("kubebroker.orchestration.kubernetes.watcher.watch.Watch", return_value=fake)


def call_names(api):
    return [c[0] for c in api.mock_calls]


@pytest.mark.unit
@pytest.mark.kubernetes
class TestEnsureNamespace:
    """Test the ensure protocol on namespaces."""

    @pytest.mark.asyncio
    async def test_update_existing(self, broker, api):
        await broker.ensure_namespace()

        api.core_v1.replace_namespace.assert_called_once()
        api.core_v1.create_namespace.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_when_update_not_found(self, broker, api):
        api.core_v1.replace_namespace.side_effect = NOT_FOUND

        await broker.ensure_namespace()

        body = api.core_v1.create_namespace.call_args.kwargs["body"]
        assert body.metadata.name == "test"
        assert body.metadata.labels == {"juju-model": "test"}
        assert call_names(api) == ["core_v1.replace_namespace", "core_v1.create_namespace"]

    @pytest.mark.asyncio
    async def test_repeated_ensure_converges(self, broker, api):
        api.core_v1.replace_namespace.side_effect = [NOT_FOUND, None]

        await broker.ensure_namespace()
        await broker.ensure_namespace()

        assert api.core_v1.create_namespace.call_count == 1
        assert api.core_v1.replace_namespace.call_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_are_surfaced(self, broker, api):
        cause = ApiException(status=500, reason="Internal Server Error")
        api.core_v1.replace_namespace.side_effect = cause

        with pytest.raises(KubernetesOperationError) as exc_info:
            await broker.ensure_namespace()

        assert exc_info.value.status == 500
        assert exc_info.value.kind == "namespace"
        assert exc_info.value.name == "test"
        assert exc_info.value.__cause__ is cause
        api.core_v1.create_namespace.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_failure(self, broker, api):
        api.core_v1.replace_namespace.side_effect = NOT_FOUND
        api.core_v1.create_namespace.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(KubernetesOperationError, match="failed to create namespace"):
            await broker.ensure_namespace()


@pytest.mark.unit
@pytest.mark.kubernetes
class TestNamespaceLookup:
    """Test namespace reads."""

    @pytest.mark.asyncio
    async def test_get_namespace(self, broker, api):
        api.core_v1.read_namespace.return_value = NAMESPACE

        assert await broker.get_namespace() is NAMESPACE
        api.core_v1.read_namespace.assert_called_once_with(name="test")

    @pytest.mark.asyncio
    async def test_get_missing_namespace(self, broker, api):
        api.core_v1.read_namespace.side_effect = NOT_FOUND

        with pytest.raises(ResourceNotFoundError, match="namespace 'other' not found"):
            await broker.get_namespace("other")

    @pytest.mark.asyncio
    async def test_namespaces(self, broker, api):
        api.core_v1.list_namespace.return_value = SimpleNamespace(items=[
            SimpleNamespace(metadata=SimpleNamespace(name="default")),
            SimpleNamespace(metadata=SimpleNamespace(name="test")),
        ])

        assert await broker.namespaces() == ["default", "test"]

    @pytest.mark.asyncio
    async def test_delete_missing_namespace_succeeds(self, broker, api):
        api.core_v1.delete_namespace.side_effect = NOT_FOUND

        await broker.delete_namespace()

        options = api.core_v1.delete_namespace.call_args.kwargs["body"]
        assert options.propagation_policy == "Foreground"


@pytest.mark.unit
@pytest.mark.kubernetes
class TestDestroy:
    """Test model teardown."""

    @pytest.mark.asyncio
    async def test_destroy_deletes_then_waits(self, broker, api):
        fake = FakeWatch()
        api.core_v1.read_namespace.side_effect = NOT_FOUND

        with patch_watch(fake):
            await broker.destroy()

        assert call_names(api) == [
            "core_v1.delete_namespace",
            "storage_v1.delete_collection_storage_class",
            "core_v1.read_namespace",
        ]
        kwargs = api.storage_v1.delete_collection_storage_class.call_args.kwargs
        assert kwargs["label_selector"] == "juju-model==test"
        assert kwargs["body"].propagation_policy == "Foreground"
        assert fake.stopped.is_set()

    @pytest.mark.asyncio
    async def test_destroy_stops_watch_on_failure(self, broker, api):
        fake = FakeWatch()
        api.core_v1.delete_namespace.side_effect = ApiException(status=500, reason="boom")

        with patch_watch(fake):
            with pytest.raises(KubernetesOperationError):
                await broker.destroy()

        assert fake.stopped.is_set()
        api.storage_v1.delete_collection_storage_class.assert_not_called()


@pytest.mark.unit
@pytest.mark.kubernetes
class TestWaitNamespaceTerminated:
    """Test the watch-confirmed termination wait."""

    @pytest.mark.asyncio
    async def test_deleted_event_completes(self, broker, api):
        fake = FakeWatch(events=[{"type": "DELETED", "object": NAMESPACE}])
        api.core_v1.read_namespace.return_value = NAMESPACE

        with patch_watch(fake):
            await broker.wait_namespace_terminated()

        assert fake.stream_calls == [{"field_selector": "metadata.name=test", "timeout_seconds": 1}]
        assert fake.stopped.is_set()

    @pytest.mark.asyncio
    async def test_not_found_after_event_completes(self, broker, api):
        """Test the namespace is re-read after each event and the wait ends on 404."""
        fake = FakeWatch(events=[{"type": "MODIFIED", "object": NAMESPACE}])
        api.core_v1.read_namespace.side_effect = [NAMESPACE, NAMESPACE, NOT_FOUND]

        with patch_watch(fake):
            await broker.wait_namespace_terminated()

        assert api.core_v1.read_namespace.call_count == 3
        assert fake.stopped.is_set()

    @pytest.mark.asyncio
    async def test_cancel_event(self, broker, api):
        fake = FakeWatch(block=True)
        api.core_v1.read_namespace.return_value = NAMESPACE
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        with patch_watch(fake):
            with pytest.raises(NamespaceTerminationCancelled, match="cancelled"):
                await broker.wait_namespace_terminated(cancel=cancel)

        assert fake.stopped.is_set()

    @pytest.mark.asyncio
    async def test_already_cancelled(self, broker, api):
        fake = FakeWatch()
        api.core_v1.read_namespace.return_value = NAMESPACE
        cancel = asyncio.Event()
        cancel.set()

        with patch_watch(fake):
            with pytest.raises(NamespaceTerminationCancelled):
                await broker.wait_namespace_terminated(cancel=cancel)

        assert fake.stream_calls == []

    @pytest.mark.asyncio
    async def test_deadline(self, broker, api):
        fake = FakeWatch(block=True)
        api.core_v1.read_namespace.return_value = NAMESPACE

        with patch_watch(fake):
            with pytest.raises(NamespaceTerminationCancelled, match="timed out"):
                await broker.wait_namespace_terminated(timeout=0.1)

        assert fake.stopped.is_set()

    @pytest.mark.asyncio
    async def test_destroy_cancelled(self, broker, api):
        """Test destroy surfaces the cancelled wait and stops its watch."""
        fake = FakeWatch(block=True)
        api.core_v1.read_namespace.return_value = NAMESPACE

        with patch_watch(fake):
            with pytest.raises(NamespaceTerminationCancelled):
                await broker.destroy(timeout=0.1)

        api.core_v1.delete_namespace.assert_called_once()
        assert fake.stopped.is_set()

    @pytest.mark.asyncio
    async def test_cancel_releases_blocked_read(self, broker, api):
        """Test stopping the watch closes its response so the reading thread exits."""
        response = BlockingResponse()
        api.core_v1.list_namespace.return_value = response
        api.core_v1.read_namespace.return_value = NAMESPACE
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.1, cancel.set)

        with pytest.raises(NamespaceTerminationCancelled, match="cancelled"):
            await broker.wait_namespace_terminated(cancel=cancel)

        assert response.closed.is_set()
        assert await asyncio.to_thread(response.finished.wait, 1)
        kwargs = api.core_v1.list_namespace.call_args.kwargs
        assert kwargs["watch"] is True
        assert kwargs["_preload_content"] is False
        assert kwargs["field_selector"] == "metadata.name=test"


@pytest.mark.unit
@pytest.mark.kubernetes
class TestNamespaceWatcher:
    """Test the watcher's response handling."""

    def test_stop_closes_open_response(self, api):
        response = BlockingResponse()
        api.core_v1.list_namespace.return_value = response
        watcher = NamespaceWatcher(api.core_v1, "test", timeout_seconds=1)

        reader = threading.Thread(target=watcher.read_event)
        reader.start()
        assert response.reading.wait(1)

        watcher.stop()
        reader.join(1)

        assert not reader.is_alive()
        assert response.closed.is_set()
        assert watcher.read_event() is None

    def test_stop_before_open(self, api):
        watcher = NamespaceWatcher(api.core_v1, "test")
        watcher.stop()

        assert watcher.read_event() is None
        api.core_v1.list_namespace.assert_not_called()
