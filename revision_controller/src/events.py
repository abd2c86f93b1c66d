from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)

from revision_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


class EventRecorder(ABC):
    """Operator-visible audit trail.

    ``eventf`` and ``warningf`` format their message printf-style and never
    raise: a failure to record an event must not fail a reconciliation.
    """

    def eventf(self, reason: str, fmt: str, *args: Any) -> None:
        self._emit(EVENT_TYPE_NORMAL, reason, fmt % args if args else fmt)

    def warningf(self, reason: str, fmt: str, *args: Any) -> None:
        self._emit(EVENT_TYPE_WARNING, reason, fmt % args if args else fmt)

    def _emit(self, event_type: str, reason: str, message: str) -> None:
        try:
            self.record(event_type, reason, message)
        except Exception:
            LOGGER.warning("Failed to record %s event %s: %s", event_type, reason, message, exc_info=True)

    @abstractmethod
    def record(self, event_type: str, reason: str, message: str) -> None:
        """Deliver one formatted event."""


class KubeEventRecorder(EventRecorder):
    """Creates ``core/v1`` Events attached to *involved_object* in *namespace*."""

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        involved_object: V1ObjectReference,
        component: str = "revision-controller",
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.involved_object = involved_object
        self.component = component

    def record(self, event_type: str, reason: str, message: str) -> None:
        now = datetime.now(UTC)
        name = f"{self.involved_object.name}.{time.time_ns():x}"
        body = CoreV1Event(
            metadata=V1ObjectMeta(name=name, namespace=self.namespace),
            involved_object=self.involved_object,
            reason=reason,
            message=message,
            type=event_type,
            source=V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        level = logging.WARNING if event_type == EVENT_TYPE_WARNING else logging.INFO
        LOGGER.log(level, "Event(%s) %s: %s", event_type, reason, message)
        METRICS.events_total.labels(type=event_type, reason=reason).inc()
        try:
            self.core_api.create_namespaced_event(namespace=self.namespace, body=body)
        except ApiException as exc:
            LOGGER.warning("Failed to create event %s in %s: %s", reason, self.namespace, exc.reason)
