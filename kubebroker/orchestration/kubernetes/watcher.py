"""
Namespace Watcher

A watch on a single namespace, consumed one event at a time from a worker
thread so an async caller can race it against cancellation or a deadline.
The server closes each watch request after timeout_seconds; the next read
reopens it. Stopping the watcher closes the open response, which releases
a worker thread blocked on it.
"""

import asyncio
import logging
import socket
from typing import Any, Dict, Optional

from kubernetes import client, watch

logger = logging.getLogger(__name__)


class NamespaceWatcher:
    """
    Watch events for one namespace.

    Usage:
        watcher = NamespaceWatcher(core_v1, "my-model")
        try:
            event = await watcher.next_event()
        finally:
            watcher.stop()
    """

    def __init__(self, core_v1, namespace: str, timeout_seconds: int = 30):
        self._core_v1 = core_v1
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds
        self._watch = watch.Watch(return_type=client.V1Namespace)
        self._events = None
        self._response = None
        self.stopped = False

    def _list_namespace(self, *args, **kwargs):
        # Watch.stream calls this with watch=True and _preload_content=False
        response = self._core_v1.list_namespace(*args, **kwargs)
        self._response = response
        if self.stopped:
            self._close_response()
        return response

    def _open(self):
        logger.debug(f"[K8S:WATCH] Watching namespace {self.namespace}")
        return self._watch.stream(
            self._list_namespace,
            field_selector=f"metadata.name={self.namespace}",
            timeout_seconds=self.timeout_seconds
        )

    def read_event(self) -> Optional[Dict[str, Any]]:
        """
        Block until the next event.

        Returns:
            Watch event dict ({"type", "object", "raw_object"}), or None when
            the current watch request expired or the watcher was stopped
        """
        if self.stopped:
            return None
        if self._events is None:
            self._events = self._open()
        try:
            return next(self._events)
        except StopIteration:
            self._events = None
            return None
        except Exception:
            if self.stopped:
                # Reading from a response closed by stop()
                return None
            raise

    async def next_event(self) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.read_event)

    def _close_response(self) -> None:
        response = self._response
        if response is None:
            return
        self._response = None
        conn = getattr(response, "connection", None)
        sock = getattr(conn, "sock", None)
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                logger.debug(f"[K8S:WATCH] Socket shutdown for namespace {self.namespace}: {e}")
        response.close()
        response.release_conn()

    def stop(self) -> None:
        """Stop the watch and close its response so a blocked read returns."""
        if not self.stopped:
            logger.debug(f"[K8S:WATCH] Stopped watching namespace {self.namespace}")
        self.stopped = True
        self._watch.stop()
        self._close_response()
