from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from kubernetes.client import ApiException, CustomObjectsApi

from revision_controller.src.errors import StatusUpdateConflictError, is_conflict
from revision_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class ManagementState(StrEnum):
    MANAGED = "Managed"
    UNMANAGED = "Unmanaged"
    REMOVED = "Removed"

    @classmethod
    def parse(cls, raw: Any) -> ManagementState:
        """Parse ``spec.managementState``; empty or unrecognized values mean ``Managed``."""
        if not raw:
            return cls.MANAGED
        try:
            return cls(str(raw))
        except ValueError:
            LOGGER.warning("Unrecognized managementState %r; treating as Managed", raw)
            return cls.MANAGED


@dataclass
class OperatorCondition:
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> OperatorCondition:
        return cls(
            type=str(raw.get("type", "")),
            status=str(raw.get("status", CONDITION_UNKNOWN)),
            reason=str(raw.get("reason") or ""),
            message=str(raw.get("message") or ""),
            last_transition_time=raw.get("lastTransitionTime"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type, "status": self.status}
        if self.reason:
            result["reason"] = self.reason
        if self.message:
            result["message"] = self.message
        if self.last_transition_time:
            result["lastTransitionTime"] = self.last_transition_time
        return result


@dataclass
class OperatorSpec:
    management_state: ManagementState = ManagementState.MANAGED

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> OperatorSpec:
        raw = raw or {}
        return cls(management_state=ManagementState.parse(raw.get("managementState")))


@dataclass
class OperatorStatus:
    """Persisted controller status: the revision counter and health conditions."""

    latest_available_revision: int = 0
    conditions: list[OperatorCondition] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> OperatorStatus:
        raw = raw or {}
        return cls(
            latest_available_revision=int(raw.get("latestAvailableRevision") or 0),
            conditions=[
                OperatorCondition.from_dict(item)
                for item in raw.get("conditions") or []
                if isinstance(item, dict)
            ],
        )

    def to_dict(self, base: dict[str, Any] | None = None) -> dict[str, Any]:
        """Serialize onto a copy of *base* so status fields owned by others survive."""
        result = copy.deepcopy(base) if base else {}
        result["latestAvailableRevision"] = self.latest_available_revision
        result["conditions"] = [condition.to_dict() for condition in self.conditions]
        return result

    def find_condition(self, condition_type: str) -> OperatorCondition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


def set_operator_condition(
    conditions: list[OperatorCondition],
    new_condition: OperatorCondition,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> None:
    """Insert or update the condition of ``new_condition.type`` in place.

    ``last_transition_time`` only moves when the status value changes, so
    re-applying an identical condition is a no-op.
    """
    for existing in conditions:
        if existing.type != new_condition.type:
            continue
        if existing.status != new_condition.status:
            existing.status = new_condition.status
            existing.last_transition_time = now_fn()
        existing.reason = new_condition.reason
        existing.message = new_condition.message
        return

    added = copy.copy(new_condition)
    added.last_transition_time = now_fn()
    conditions.append(added)


StatusMutator = Callable[[OperatorStatus], None]


def update_condition_fn(condition: OperatorCondition) -> StatusMutator:
    def _update(status: OperatorStatus) -> None:
        set_operator_condition(status.conditions, condition)

    return _update


class OperatorStatusClient:
    """Reads and writes the operator custom resource holding spec and status.

    The resource is cluster-scoped unless *namespace* is given.  Status is
    written through the ``/status`` subresource with the ``resourceVersion``
    observed at read time, so the apiserver rejects stale writes with 409.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        group: str,
        version: str,
        plural: str,
        name: str,
        namespace: str | None = None,
    ) -> None:
        self.custom_api = custom_api
        self.group = group
        self.version = version
        self.plural = plural
        self.name = name
        self.namespace = namespace

    def get_object(self) -> dict[str, Any]:
        if self.namespace:
            return self.custom_api.get_namespaced_custom_object(
                group=self.group,
                version=self.version,
                namespace=self.namespace,
                plural=self.plural,
                name=self.name,
            )
        return self.custom_api.get_cluster_custom_object(
            group=self.group,
            version=self.version,
            plural=self.plural,
            name=self.name,
        )

    def get(self) -> tuple[OperatorSpec, OperatorStatus, str | None]:
        obj = self.get_object()
        resource_version = (obj.get("metadata") or {}).get("resourceVersion")
        return (
            OperatorSpec.from_dict(obj.get("spec")),
            OperatorStatus.from_dict(obj.get("status")),
            resource_version,
        )

    def replace_status(self, body: dict[str, Any]) -> dict[str, Any]:
        if self.namespace:
            return self.custom_api.replace_namespaced_custom_object_status(
                group=self.group,
                version=self.version,
                namespace=self.namespace,
                plural=self.plural,
                name=self.name,
                body=body,
            )
        return self.custom_api.replace_cluster_custom_object_status(
            group=self.group,
            version=self.version,
            plural=self.plural,
            name=self.name,
            body=body,
        )

    def list_function(self) -> Callable[..., Any]:
        """Return the list call an informer can watch for this resource."""
        if self.namespace:
            return self.custom_api.list_namespaced_custom_object
        return self.custom_api.list_cluster_custom_object

    def list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "group": self.group,
            "version": self.version,
            "plural": self.plural,
            "field_selector": f"metadata.name={self.name}",
        }
        if self.namespace:
            kwargs["namespace"] = self.namespace
        return kwargs


def update_status(
    client: OperatorStatusClient,
    *mutators: StatusMutator,
    expected_resource_version: str | None = None,
) -> tuple[OperatorStatus, bool]:
    """Apply *mutators* to a fresh copy of the operator status and write it back.

    Returns the resulting status and whether a write happened.  Nothing is
    written when the mutators leave the status unchanged.  A 409 from the
    apiserver is raised as :class:`StatusUpdateConflictError` so the caller
    requeues instead of overwriting a concurrent writer.

    With *expected_resource_version* the write is also refused when the
    object changed after the caller read it, since the caller's decision
    was made against that earlier version.
    """
    obj = client.get_object()
    current_version = (obj.get("metadata") or {}).get("resourceVersion")
    if expected_resource_version is not None and current_version != expected_resource_version:
        METRICS.status_update_conflicts_total.inc()
        raise StatusUpdateConflictError(
            f"operator status for {client.plural}/{client.name} changed since resourceVersion "
            f"{expected_resource_version} (now {current_version})"
        )
    raw_status = obj.get("status") or {}
    original = OperatorStatus.from_dict(raw_status)
    status = copy.deepcopy(original)
    for mutate in mutators:
        mutate(status)

    if status == original:
        return original, False

    body = copy.deepcopy(obj)
    body["status"] = status.to_dict(base=raw_status)
    try:
        updated = client.replace_status(body)
    except ApiException as exc:
        if is_conflict(exc):
            METRICS.status_update_conflicts_total.inc()
            raise StatusUpdateConflictError(
                f"operator status for {client.plural}/{client.name} was modified concurrently"
            ) from exc
        raise

    result = OperatorStatus.from_dict((updated or {}).get("status") or body["status"])
    METRICS.latest_available_revision.set(result.latest_available_revision)
    return result, True
