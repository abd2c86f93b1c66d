from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from revision_controller.src.metrics import METRICS


class EventKind(StrEnum):
    ADDED = "Added"
    UPDATED = "Updated"
    DELETED = "Deleted"


_WATCH_EVENT_KINDS = {
    "ADDED": EventKind.ADDED,
    "MODIFIED": EventKind.UPDATED,
    "DELETED": EventKind.DELETED,
}


@dataclass(frozen=True)
class ResourceEvent:
    """A change notification: what happened and to which ``namespace/name``."""

    kind: EventKind
    key: str


@dataclass(frozen=True)
class ResourceEventHandler:
    on_add: Callable[[ResourceEvent], None]
    on_update: Callable[[ResourceEvent], None]
    on_delete: Callable[[ResourceEvent], None]

    def dispatch(self, event: ResourceEvent) -> None:
        if event.kind is EventKind.ADDED:
            self.on_add(event)
        elif event.kind is EventKind.UPDATED:
            self.on_update(event)
        else:
            self.on_delete(event)


def _metadata_field(obj: Any, attr: str, key: str) -> Any:
    """Read a metadata field from a typed client model or a raw dict."""
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get(key)
    return getattr(getattr(obj, "metadata", None), attr, None)


def object_key(obj: Any) -> str | None:
    name = _metadata_field(obj, "name", "name")
    if not name:
        return None
    namespace = _metadata_field(obj, "namespace", "namespace")
    return f"{namespace}/{name}" if namespace else str(name)


def _list_items(listing: Any) -> list[Any]:
    if isinstance(listing, dict):
        return list(listing.get("items") or [])
    return list(getattr(listing, "items", None) or [])


def _list_resource_version(listing: Any) -> str | None:
    if isinstance(listing, dict):
        return (listing.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(listing, "metadata", None), "resource_version", None)


class Informer:
    """List-then-watch one resource type and report every change to a handler.

    The initial list is delivered as ``Added`` events and marks the informer
    as synced.  A ``410 Gone`` triggers a re-list that reports ``Updated``
    for surviving objects and ``Deleted`` for objects that vanished while
    the watch was disconnected.  Transient errors back off exponentially
    with jitter (capped at 30 s); ``401``/``403`` stop the informer since
    they indicate RBAC misconfiguration rather than a transient fault.
    """

    def __init__(
        self,
        name: str,
        list_fn: Callable[..., Any],
        handler: ResourceEventHandler,
        list_kwargs: dict[str, Any] | None = None,
        watch_timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.list_fn = list_fn
        self.handler = handler
        self.list_kwargs = dict(list_kwargs or {})
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.synced = threading.Event()
        self.failed = threading.Event()
        self._known: set[str] = set()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def start(self, stop_event: threading.Event) -> threading.Thread:
        self._thread = threading.Thread(
            target=self.run, args=(stop_event,), name=f"informer-{self.name}", daemon=True
        )
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _deliver(self, kind: EventKind, key: str) -> None:
        try:
            self.handler.dispatch(ResourceEvent(kind=kind, key=key))
        except Exception:
            self.logger.exception("Event handler for %s failed on %s %s", self.name, kind, key)

    def _replace(self, listing: Any, initial: bool) -> str | None:
        """Reconcile the known key set against a full listing and report the differences."""
        seen: set[str] = set()
        for item in _list_items(listing):
            key = object_key(item)
            if key is None:
                continue
            seen.add(key)
            kind = EventKind.ADDED if initial or key not in self._known else EventKind.UPDATED
            self._deliver(kind, key)
        for key in sorted(self._known - seen):
            self._deliver(EventKind.DELETED, key)
        self._known = seen
        return _list_resource_version(listing)

    def _handle_watch_event(self, event: dict[str, Any]) -> str | None:
        obj = event.get("object")
        if obj is None:
            return None
        resource_version = _metadata_field(obj, "resource_version", "resourceVersion")
        kind = _WATCH_EVENT_KINDS.get(str(event.get("type", "")))
        key = object_key(obj)
        if kind is None or key is None:
            return resource_version
        if kind is EventKind.DELETED:
            self._known.discard(key)
        else:
            self._known.add(key)
        self._deliver(kind, key)
        return resource_version

    def _access_denied(self, exc: ApiException, during: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            during,
            self.name,
            exc.status,
        )
        METRICS.watch_errors_total.labels(informer=self.name).inc()
        self.failed.set()
        self.synced.clear()
        return True

    def run(self, stop_event: threading.Event) -> None:
        stop = stop_event
        self._external_stop.clear()

        resource_version: str | None = None
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                listing = self.list_fn(**self.list_kwargs)
                resource_version = self._replace(listing, initial=True)
                self.synced.set()
                self.logger.info(
                    "Informer %s synced; watching from resourceVersion %s",
                    self.name,
                    resource_version,
                )
                break
            except ApiException as exc:
                if self._access_denied(exc, "initial list"):
                    return
                self.logger.exception("Initial list for informer %s failed", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list for informer %s", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()

            stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
            backoff_seconds = min(backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(informer=self.name).inc()
                watch_stream_count += 1
                for event in watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self.list_kwargs,
                ):
                    if self._should_stop(stop):
                        break
                    latest = self._handle_watch_event(event)
                    if latest:
                        resource_version = latest
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch for %s expired, re-listing", self.name)
                    try:
                        resource_version = self._replace(self.list_fn(**self.list_kwargs), initial=False)
                    except ApiException as relist_exc:
                        if self._access_denied(relist_exc, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.name)
                        METRICS.watch_errors_total.labels(informer=self.name).inc()
                        resource_version = None
                    continue
                if self._access_denied(exc, "watch"):
                    return
                self.logger.exception("Kubernetes API watch error for %s", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.synced.clear()
