from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from typing import Any

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CustomObjectsApi,
    V1ConfigMap,
    V1ObjectMeta,
    V1ObjectReference,
    V1OwnerReference,
)

from revision_controller.src.config import ControllerConfig
from revision_controller.src.errors import (
    NotFoundError,
    StatusUpdateConflictError,
    SyntheticRequeueError,
    is_not_found,
    not_found_message,
)
from revision_controller.src.events import EventRecorder, KubeEventRecorder
from revision_controller.src.informers import Informer, ResourceEvent, ResourceEventHandler
from revision_controller.src.kube import ConfigStore
from revision_controller.src.metrics import METRICS
from revision_controller.src.queue import ExponentialBackoffPolicy, RateLimitingQueue
from revision_controller.src.status import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    ManagementState,
    OperatorCondition,
    OperatorSpec,
    OperatorStatus,
    OperatorStatusClient,
    update_condition_fn,
    update_status,
)

REVISION_CONTROLLER_FAILING = "RevisionControllerFailing"
REVISION_CONTROLLER_WORK_QUEUE_KEY = "key"
REVISION_STATUS_PREFIX = "revision-status"


def name_for(name: str, revision: int) -> str:
    return f"{name}-{revision}"


class RevisionController:
    """Snapshots a fixed set of ConfigMaps and Secrets into numbered revisions.

    Whenever a source's ``data`` no longer matches its snapshot for
    ``status.latestAvailableRevision``, the next revision is created: first
    a ``revision-status-<r>`` marker ConfigMap, then a ``<source>-<r>`` copy
    of every source owned by that marker, and only then is the revision
    counter advanced in the operator status.

    All change notifications collapse into a single work queue key, so a
    burst of updates produces one reconciliation that observes the latest
    state.  Exactly one worker thread drains the queue; failed passes are
    re-added with exponential backoff and never escape the worker.
    """

    def __init__(
        self,
        target_namespace: str,
        config_maps: Sequence[str],
        secrets: Sequence[str],
        status_client: OperatorStatusClient,
        config_store: ConfigStore,
        event_recorder: EventRecorder,
        queue: RateLimitingQueue | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.target_namespace = target_namespace
        # The first ConfigMap is expected to carry the static pod manifest.
        self.config_maps = list(config_maps)
        self.secrets = list(secrets)
        self.status_client = status_client
        self.config_store = config_store
        self.event_recorder = event_recorder
        self.queue = queue or RateLimitingQueue("RevisionController")
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._informers: list[Informer] = []
        self._external_stop = threading.Event()

    def event_handler(self) -> ResourceEventHandler:
        """Return a handler that queues the singleton key for any add, update or delete."""

        def _enqueue(event: ResourceEvent) -> None:
            self.logger.debug("Queueing sync after %s of %s", event.kind, event.key)
            self.queue.add(REVISION_CONTROLLER_WORK_QUEUE_KEY)

        return ResourceEventHandler(on_add=_enqueue, on_update=_enqueue, on_delete=_enqueue)

    def add_informer(self, informer: Informer) -> None:
        self._informers.append(informer)

    def _sources(self) -> list[tuple[str, str, Callable[[str, str], Any], list[str]]]:
        return [
            ("configmap", "configmaps", self.config_store.get_config_map, self.config_maps),
            ("secret", "secrets", self.config_store.get_secret, self.secrets),
        ]

    def is_latest_revision_current(self, revision: int) -> tuple[bool, str]:
        """Return whether every source still matches its snapshot for *revision*, and why not.

        Sources are checked in declared order (ConfigMaps, then Secrets) and
        the first mismatch is reported; a missing source or snapshot counts
        as a mismatch.
        """
        for kind, resource, getter, names in self._sources():
            for name in names:
                try:
                    required = getter(self.target_namespace, name)
                except ApiException as exc:
                    if is_not_found(exc):
                        return False, not_found_message(exc, resource, name)
                    raise
                snapshot_name = name_for(name, revision)
                try:
                    existing = getter(self.target_namespace, snapshot_name)
                except ApiException as exc:
                    if is_not_found(exc):
                        return False, not_found_message(exc, resource, snapshot_name)
                    raise
                if (existing.data or {}) != (required.data or {}):
                    return False, f"{kind}/{name} has changed"

        return True, ""

    def create_new_revision(self, revision: int) -> None:
        """Materialize every snapshot for *revision*; raises on the first failure.

        Names derive only from the revision number, so retrying an aborted
        creation re-applies the same objects instead of duplicating them.
        """
        marker = V1ConfigMap(
            metadata=V1ObjectMeta(
                namespace=self.target_namespace,
                name=name_for(REVISION_STATUS_PREFIX, revision),
            ),
            data={"status": "InProgress", "revision": str(revision)},
        )
        marker, _ = self.config_store.apply_config_map(marker)
        owner_refs = [
            V1OwnerReference(
                api_version="v1",
                kind="ConfigMap",
                name=marker.metadata.name,
                uid=marker.metadata.uid,
            )
        ]

        for name in self.config_maps:
            obj, _ = self.config_store.sync_config_map(
                self.target_namespace,
                name,
                self.target_namespace,
                name_for(name, revision),
                owner_refs,
            )
            if obj is None:
                raise NotFoundError("configmaps", name, self.target_namespace)
        for name in self.secrets:
            obj, _ = self.config_store.sync_secret(
                self.target_namespace,
                name,
                self.target_namespace,
                name_for(name, revision),
                owner_refs,
            )
            if obj is None:
                raise NotFoundError("secrets", name, self.target_namespace)

    def create_revision_if_needed(
        self,
        operator_spec: OperatorSpec,
        operator_status: OperatorStatus,
        resource_version: str | None,
    ) -> tuple[bool, Exception | None]:
        """Create the next revision when the latest one is stale.

        Returns ``(requeue, error)``.  The failing condition is updated here
        for creation outcomes; ``error`` is only set when that status write
        itself failed, since it then takes priority over the creation error.
        """
        latest_revision = operator_status.latest_available_revision
        is_current, reason = self.is_latest_revision_current(latest_revision)
        if is_current:
            return False, None

        next_revision = latest_revision + 1
        self.logger.info("new revision %d triggered by %r", next_revision, reason)
        try:
            self.create_new_revision(next_revision)
        except Exception as exc:
            METRICS.revision_create_errors_total.inc()
            self.logger.warning("Failed to create revision %d: %s", next_revision, exc)
            condition = OperatorCondition(
                type=REVISION_CONTROLLER_FAILING,
                status=CONDITION_TRUE,
                reason="ContentCreationError",
                message=str(exc),
            )
            try:
                update_status(self.status_client, update_condition_fn(condition))
            except Exception as update_error:
                self.event_recorder.warningf(
                    "RevisionCreateFailed",
                    "Failed to create revision %d: %s",
                    next_revision,
                    str(exc),
                )
                return True, update_error
            return True, None

        def _advance(status: OperatorStatus) -> None:
            if status.latest_available_revision != latest_revision:
                raise StatusUpdateConflictError(
                    f"latestAvailableRevision moved from {latest_revision} to "
                    f"{status.latest_available_revision} during revision creation"
                )
            status.latest_available_revision = next_revision

        condition = OperatorCondition(type=REVISION_CONTROLLER_FAILING, status=CONDITION_FALSE)
        try:
            _, updated = update_status(
                self.status_client,
                update_condition_fn(condition),
                _advance,
                expected_resource_version=resource_version,
            )
        except Exception as update_error:
            return True, update_error
        if updated:
            METRICS.revisions_created_total.inc()
            self.event_recorder.eventf(
                "RevisionCreate", "Revision %d created because %s", next_revision, reason
            )
        return False, None

    def sync(self) -> None:
        """Run one reconciliation pass; raises to request a requeue with backoff."""
        operator_spec, operator_status, resource_version = self.status_client.get()
        METRICS.latest_available_revision.set(operator_status.latest_available_revision)

        if operator_spec.management_state is ManagementState.UNMANAGED:
            return
        if operator_spec.management_state is ManagementState.REMOVED:
            # Whether Removed should fail is undecided; static pod content cannot be removed.
            self.logger.debug("managementState is Removed; skipping revision sync")
            return

        requeue, sync_error = self.create_revision_if_needed(
            operator_spec, operator_status, resource_version
        )
        if requeue and sync_error is None:
            raise SyntheticRequeueError(sync_error)

        condition = OperatorCondition(type=REVISION_CONTROLLER_FAILING, status=CONDITION_FALSE)
        if sync_error is not None:
            condition.status = CONDITION_TRUE
            condition.reason = "Error"
            condition.message = str(sync_error)
        try:
            update_status(self.status_client, update_condition_fn(condition))
        except Exception as update_error:
            if sync_error is None:
                raise
            self.logger.warning("Failed to record failing condition: %s", update_error)

        if sync_error is not None:
            raise sync_error

    def process_next_work_item(self) -> bool:
        """Process one queued key. Returns False once the queue has shut down."""
        key, shutdown = self.queue.get()
        if shutdown:
            return False
        started = time.monotonic()
        try:
            self.sync()
        except Exception as exc:
            METRICS.sync_total.labels(result="error").inc()
            self.logger.error("%s failed with: %s", key, exc)
            self.queue.add_rate_limited(key)
        else:
            METRICS.sync_total.labels(result="success").inc()
            self.queue.forget(key)
        finally:
            METRICS.sync_duration_seconds.observe(time.monotonic() - started)
            self.queue.done(key)
        return True

    def run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def request_stop(self) -> None:
        """Request a cooperative stop from another thread; the in-flight sync completes first."""
        self._external_stop.set()
        for informer in self._informers:
            informer.request_stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _wait_for_informers(self, stop_event: threading.Event) -> bool:
        while not self._should_stop(stop_event):
            if any(informer.failed.is_set() for informer in self._informers):
                self.logger.error("An informer stopped before syncing; not starting the worker")
                return False
            if all(informer.synced.is_set() for informer in self._informers):
                return True
            stop_event.wait(timeout=0.1)
        return False

    def run(self, shutdown_event: threading.Event | None = None) -> None:
        """Start informers and a single worker, then block until shutdown.

        On shutdown the queue is closed, which releases the worker once the
        in-flight sync (if any) has finished.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        if self.queue.shutting_down:
            self.queue = RateLimitingQueue(self.queue.name, self.queue.policy)

        self.logger.info("Starting RevisionController")
        informer_stop = threading.Event()
        for informer in self._informers:
            informer.start(informer_stop)

        worker: threading.Thread | None = None
        try:
            if not self._wait_for_informers(stop):
                return
            self.ready.set()
            self.queue.add(REVISION_CONTROLLER_WORK_QUEUE_KEY)

            # Exactly one worker regardless of load: revision creation must never overlap.
            worker = threading.Thread(
                target=self.run_worker, name="revision-controller-worker", daemon=True
            )
            worker.start()

            while not self._should_stop(stop):
                if not worker.is_alive():
                    self.logger.error("Revision worker exited unexpectedly")
                    break
                stop.wait(timeout=1.0)
        finally:
            self.ready.clear()
            self.queue.shut_down()
            informer_stop.set()
            for informer in self._informers:
                informer.request_stop()
            if worker is not None:
                worker.join()
            for informer in self._informers:
                informer.join(timeout=5.0)
            self.logger.info("Shutting down RevisionController")


def build_controller(
    controller_config: ControllerConfig,
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
    event_recorder: EventRecorder | None = None,
) -> RevisionController:
    """Wire a :class:`RevisionController` and its three informers from *controller_config*."""
    operator = controller_config.operator
    status_client = OperatorStatusClient(
        custom_api=custom_api,
        group=operator.group,
        version=operator.version,
        plural=operator.plural,
        name=operator.name,
        namespace=operator.namespace,
    )
    recorder = event_recorder or KubeEventRecorder(
        core_api=core_api,
        namespace=controller_config.target_namespace,
        involved_object=V1ObjectReference(
            api_version=f"{operator.group}/{operator.version}",
            kind=operator.kind,
            name=operator.name,
            namespace=operator.namespace,
        ),
    )
    queue = RateLimitingQueue(
        "RevisionController",
        ExponentialBackoffPolicy(
            base_delay=controller_config.backoff_base_seconds,
            max_delay=controller_config.backoff_max_seconds,
        ),
    )
    controller = RevisionController(
        target_namespace=controller_config.target_namespace,
        config_maps=controller_config.config_maps,
        secrets=controller_config.secrets,
        status_client=status_client,
        config_store=ConfigStore(core_api, recorder=recorder),
        event_recorder=recorder,
        queue=queue,
    )

    handler = controller.event_handler()
    controller.add_informer(
        Informer(
            name="operator",
            list_fn=status_client.list_function(),
            list_kwargs=status_client.list_kwargs(),
            handler=handler,
        )
    )
    controller.add_informer(
        Informer(
            name="configmaps",
            list_fn=core_api.list_namespaced_config_map,
            list_kwargs={"namespace": controller_config.target_namespace},
            handler=handler,
        )
    )
    controller.add_informer(
        Informer(
            name="secrets",
            list_fn=core_api.list_namespaced_secret,
            list_kwargs={"namespace": controller_config.target_namespace},
            handler=handler,
        )
    )
    return controller
