from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import patch

import pytest
from kubernetes.client import ApiException, V1ConfigMap, V1ObjectMeta, V1OwnerReference

from revision_controller.src.kube import (
    ConfigStore,
    build_clients,
    load_kube_configuration,
    merge_owner_references,
)
from revision_controller.tests.fakes import NAMESPACE, FakeCoreApi, RecordingEventRecorder


def _owner(name: str = "revision-status-1", uid: str = "uid-marker") -> V1OwnerReference:
    return V1OwnerReference(api_version="v1", kind="ConfigMap", name=name, uid=uid)


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("revision_controller.src.kube.config.load_incluster_config") as mock_incluster,
        patch("revision_controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "revision_controller.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("revision_controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_core_and_custom_objects() -> None:
    with patch("revision_controller.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.CustomObjectsApi.return_value = SimpleNamespace(name="custom")
        core, custom = build_clients()

    assert core.name == "core"
    assert custom.name == "custom"


def test_merge_owner_references_appends_only_missing() -> None:
    existing = [_owner("a", "1")]

    merged, modified = merge_owner_references(existing, [_owner("a", "1"), _owner("b", "2")])

    assert modified is True
    assert [ref.name for ref in merged] == ["a", "b"]
    assert merge_owner_references(merged, [_owner("b", "2")])[1] is False


class TestApplyConfigMap:
    def test_creates_missing_config_map(self) -> None:
        api = FakeCoreApi()
        recorder = RecordingEventRecorder()
        store = ConfigStore(api, recorder=recorder)  # type: ignore[arg-type]

        obj, modified = store.apply_config_map(
            V1ConfigMap(metadata=V1ObjectMeta(name="marker", namespace=NAMESPACE), data={"k": "v"})
        )

        assert modified is True
        assert obj.metadata.uid
        assert api.writes == [("create", "configmap", "marker")]
        assert recorder.reasons() == ["ConfigMapCreated"]

    def test_identical_content_is_not_rewritten(self) -> None:
        api = FakeCoreApi()
        api.add_config_map("marker", {"k": "v"})
        store = ConfigStore(api)  # type: ignore[arg-type]

        obj, modified = store.apply_config_map(
            V1ConfigMap(metadata=V1ObjectMeta(name="marker", namespace=NAMESPACE), data={"k": "v"})
        )

        assert modified is False
        assert obj.data == {"k": "v"}
        assert api.writes == []

    def test_changed_content_replaces_and_keeps_uid(self) -> None:
        api = FakeCoreApi()
        api.add_config_map("marker", {"k": "old"})
        uid = api.config_map("marker").metadata.uid
        store = ConfigStore(api)  # type: ignore[arg-type]

        obj, modified = store.apply_config_map(
            V1ConfigMap(
                metadata=V1ObjectMeta(name="marker", namespace=NAMESPACE, labels={"app": "x"}),
                data={"k": "new"},
            )
        )

        assert modified is True
        assert obj.data == {"k": "new"}
        assert obj.metadata.uid == uid
        assert obj.metadata.labels == {"app": "x"}
        assert api.writes == [("replace", "configmap", "marker")]

    def test_read_errors_other_than_not_found_propagate(self) -> None:
        api = FakeCoreApi()
        api.failures[("read", "configmap", "marker")] = ApiException(status=500, reason="boom")
        store = ConfigStore(api)  # type: ignore[arg-type]

        with pytest.raises(ApiException):
            store.apply_config_map(V1ConfigMap(metadata=V1ObjectMeta(name="marker", namespace=NAMESPACE)))


class TestSync:
    def test_sync_config_map_copies_data_with_owner(self) -> None:
        api = FakeCoreApi()
        api.add_config_map("config", {"a": "1"})
        store = ConfigStore(api)  # type: ignore[arg-type]

        obj, modified = store.sync_config_map(NAMESPACE, "config", NAMESPACE, "config-1", [_owner()])

        assert modified is True
        assert obj.metadata.name == "config-1"
        assert api.config_map("config-1").data == {"a": "1"}
        assert [ref.uid for ref in api.config_map("config-1").metadata.owner_references] == ["uid-marker"]

    def test_sync_config_map_missing_source_deletes_target(self) -> None:
        api = FakeCoreApi()
        api.add_config_map("config-1", {"a": "stale"})
        store = ConfigStore(api)  # type: ignore[arg-type]

        obj, modified = store.sync_config_map(NAMESPACE, "config", NAMESPACE, "config-1", [_owner()])

        assert obj is None
        assert modified is True
        assert api.config_map("config-1") is None

    def test_sync_config_map_missing_source_and_target(self) -> None:
        store = ConfigStore(FakeCoreApi())  # type: ignore[arg-type]

        assert store.sync_config_map(NAMESPACE, "config", NAMESPACE, "config-1", []) == (None, False)

    def test_sync_secret_copies_data_and_type(self) -> None:
        api = FakeCoreApi()
        api.add_secret("serving-cert", {"tls.key": "a2V5"})
        store = ConfigStore(api)  # type: ignore[arg-type]

        obj, _ = store.sync_secret(NAMESPACE, "serving-cert", NAMESPACE, "serving-cert-2", [_owner()])

        assert obj.metadata.name == "serving-cert-2"
        assert api.secret("serving-cert-2").data == {"tls.key": "a2V5"}
        assert api.secret("serving-cert-2").type == "Opaque"

    def test_sync_secret_reapply_is_noop(self) -> None:
        api = FakeCoreApi()
        api.add_secret("serving-cert", {"tls.key": "a2V5"})
        store = ConfigStore(api)  # type: ignore[arg-type]
        store.sync_secret(NAMESPACE, "serving-cert", NAMESPACE, "serving-cert-2", [_owner()])
        api.writes.clear()

        _, modified = store.sync_secret(NAMESPACE, "serving-cert", NAMESPACE, "serving-cert-2", [_owner()])

        assert modified is False
        assert api.writes == []

    def test_sync_secret_missing_source_returns_none(self) -> None:
        store = ConfigStore(FakeCoreApi())  # type: ignore[arg-type]

        obj, _ = store.sync_secret(NAMESPACE, "serving-cert", NAMESPACE, "serving-cert-1", [_owner()])

        assert obj is None
