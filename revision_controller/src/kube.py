from __future__ import annotations

import copy
import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CustomObjectsApi,
    V1ConfigMap,
    V1ObjectMeta,
    V1OwnerReference,
    V1Secret,
)
from kubernetes.config.config_exception import ConfigException

from revision_controller.src.events import EventRecorder

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return the CoreV1 client for ConfigMaps/Secrets/Events and the custom objects client for operator status."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def _owner_key(ref: Any) -> tuple[Any, Any, Any, Any]:
    return (
        getattr(ref, "api_version", None),
        getattr(ref, "kind", None),
        getattr(ref, "name", None),
        getattr(ref, "uid", None),
    )


def merge_owner_references(
    existing: list[Any] | None, required: list[Any] | None
) -> tuple[list[Any], bool]:
    """Append every required owner reference missing from *existing*.

    Returns the merged list and whether anything was added.
    """
    merged = list(existing or [])
    known = {_owner_key(ref) for ref in merged}
    modified = False
    for ref in required or []:
        if _owner_key(ref) not in known:
            merged.append(ref)
            known.add(_owner_key(ref))
            modified = True
    return merged, modified


def _merge_string_map(
    existing: dict[str, str] | None, required: dict[str, str] | None
) -> tuple[dict[str, str] | None, bool]:
    if not required:
        return existing, False
    merged = dict(existing or {})
    modified = False
    for key, value in required.items():
        if merged.get(key) != value:
            merged[key] = value
            modified = True
    return merged, modified


def _same_data(left: dict[str, str] | None, right: dict[str, str] | None) -> bool:
    return (left or {}) == (right or {})


class ConfigStore:
    """Create, copy and read ConfigMaps and Secrets through ``CoreV1Api``.

    Every write is an idempotent create-or-update: applying an object whose
    content already matches the cluster state performs no API write, so a
    retried revision creation re-applies the same deterministic names
    without producing duplicates.
    """

    def __init__(self, core_api: CoreV1Api, recorder: EventRecorder | None = None) -> None:
        self.core_api = core_api
        self.recorder = recorder

    def get_config_map(self, namespace: str, name: str) -> V1ConfigMap:
        return self.core_api.read_namespaced_config_map(name=name, namespace=namespace)

    def get_secret(self, namespace: str, name: str) -> V1Secret:
        return self.core_api.read_namespaced_secret(name=name, namespace=namespace)

    def _event(self, reason: str, fmt: str, *args: Any) -> None:
        if self.recorder is not None:
            self.recorder.eventf(reason, fmt, *args)

    def apply_config_map(self, required: V1ConfigMap) -> tuple[V1ConfigMap, bool]:
        """Create *required* or update the existing ConfigMap to match it.

        Labels, annotations and owner references are merged into the
        existing object; ``data`` and ``binary_data`` are replaced.  Returns
        the resulting object and whether a write happened.
        """
        namespace = required.metadata.namespace
        name = required.metadata.name
        try:
            existing = self.get_config_map(namespace, name)
        except ApiException as exc:
            if exc.status != 404:
                raise
            created = self.core_api.create_namespaced_config_map(
                namespace=namespace, body=required
            )
            self._event(
                "ConfigMapCreated",
                "Created ConfigMap/%s -n %s because it was missing",
                name,
                namespace,
            )
            return created, True

        updated = copy.deepcopy(existing)
        if updated.metadata is None:
            updated.metadata = V1ObjectMeta(name=name, namespace=namespace)
        labels, labels_modified = _merge_string_map(
            updated.metadata.labels, required.metadata.labels
        )
        annotations, annotations_modified = _merge_string_map(
            updated.metadata.annotations, required.metadata.annotations
        )
        owners, owners_modified = merge_owner_references(
            updated.metadata.owner_references, required.metadata.owner_references
        )
        data_modified = not _same_data(updated.data, required.data) or not _same_data(
            updated.binary_data, required.binary_data
        )

        if not (labels_modified or annotations_modified or owners_modified or data_modified):
            return existing, False

        updated.metadata.labels = labels
        updated.metadata.annotations = annotations
        updated.metadata.owner_references = owners or None
        updated.data = required.data
        updated.binary_data = required.binary_data
        replaced = self.core_api.replace_namespaced_config_map(
            name=name, namespace=namespace, body=updated
        )
        self._event(
            "ConfigMapUpdated", "Updated ConfigMap/%s -n %s", name, namespace
        )
        return replaced, True

    def apply_secret(self, required: V1Secret) -> tuple[V1Secret, bool]:
        """Secret counterpart of :meth:`apply_config_map`; ``type`` is carried over."""
        namespace = required.metadata.namespace
        name = required.metadata.name
        try:
            existing = self.get_secret(namespace, name)
        except ApiException as exc:
            if exc.status != 404:
                raise
            created = self.core_api.create_namespaced_secret(namespace=namespace, body=required)
            self._event(
                "SecretCreated",
                "Created Secret/%s -n %s because it was missing",
                name,
                namespace,
            )
            return created, True

        updated = copy.deepcopy(existing)
        if updated.metadata is None:
            updated.metadata = V1ObjectMeta(name=name, namespace=namespace)
        owners, owners_modified = merge_owner_references(
            updated.metadata.owner_references, required.metadata.owner_references
        )
        data_modified = not _same_data(updated.data, required.data)
        type_modified = required.type is not None and updated.type != required.type

        if not (owners_modified or data_modified or type_modified):
            return existing, False

        updated.metadata.owner_references = owners or None
        updated.data = required.data
        if required.type is not None:
            updated.type = required.type
        replaced = self.core_api.replace_namespaced_secret(
            name=name, namespace=namespace, body=updated
        )
        self._event("SecretUpdated", "Updated Secret/%s -n %s", name, namespace)
        return replaced, True

    def sync_config_map(
        self,
        source_namespace: str,
        source_name: str,
        target_namespace: str,
        target_name: str,
        owner_refs: list[V1OwnerReference],
    ) -> tuple[V1ConfigMap | None, bool]:
        """Copy a ConfigMap under a new name.

        When the source does not exist the target is deleted (if present)
        and ``(None, ...)`` is returned so callers can report the source as
        missing.
        """
        try:
            source = self.get_config_map(source_namespace, source_name)
        except ApiException as exc:
            if exc.status != 404:
                raise
            return None, self._delete_config_map(target_namespace, target_name)

        target = V1ConfigMap(
            metadata=V1ObjectMeta(
                name=target_name,
                namespace=target_namespace,
                owner_references=list(owner_refs) or None,
            ),
            data=dict(source.data) if source.data else None,
            binary_data=dict(source.binary_data) if source.binary_data else None,
        )
        return self.apply_config_map(target)

    def sync_secret(
        self,
        source_namespace: str,
        source_name: str,
        target_namespace: str,
        target_name: str,
        owner_refs: list[V1OwnerReference],
    ) -> tuple[V1Secret | None, bool]:
        """Copy a Secret under a new name; see :meth:`sync_config_map`."""
        try:
            source = self.get_secret(source_namespace, source_name)
        except ApiException as exc:
            if exc.status != 404:
                raise
            return None, self._delete_secret(target_namespace, target_name)

        target = V1Secret(
            metadata=V1ObjectMeta(
                name=target_name,
                namespace=target_namespace,
                owner_references=list(owner_refs) or None,
            ),
            data=dict(source.data) if source.data else None,
            type=source.type,
        )
        return self.apply_secret(target)

    def _delete_config_map(self, namespace: str, name: str) -> bool:
        try:
            self.core_api.delete_namespaced_config_map(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise
        self._event("ConfigMapDeleted", "Deleted ConfigMap/%s -n %s", name, namespace)
        return True

    def _delete_secret(self, namespace: str, name: str) -> bool:
        try:
            self.core_api.delete_namespaced_secret(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise
        self._event("SecretDeleted", "Deleted Secret/%s -n %s", name, namespace)
        return True
