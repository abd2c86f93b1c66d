from __future__ import annotations

import pytest

from revision_controller.src.config import (
    ConfigError,
    OperatorResource,
    env_float,
    env_int,
    load_config,
    parse_bool,
    parse_name_list,
)


def test_defaults_target_kube_apiserver_operator() -> None:
    config = load_config(env={})

    assert config.target_namespace == "openshift-kube-apiserver"
    assert config.config_maps == ("pod",)
    assert config.secrets == ()
    assert config.operator == OperatorResource(
        group="operator.openshift.io",
        version="v1",
        plural="kubeapiservers",
        name="cluster",
        kind="KubeAPIServer",
    )
    assert (config.backoff_base_seconds, config.backoff_max_seconds) == (0.005, 1000.0)
    assert config.health_port == 8080


def test_overrides_from_environment() -> None:
    config = load_config(
        env={
            "TARGET_NAMESPACE": "openshift-etcd",
            "REVISION_CONFIGMAPS": "etcd-pod, config ,etcd-pod",
            "REVISION_SECRETS": "etcd-all-certs",
            "OPERATOR_GROUP": "operator.openshift.io",
            "OPERATOR_VERSION": "v1",
            "OPERATOR_PLURAL": "etcds",
            "OPERATOR_NAME": "cluster",
            "OPERATOR_KIND": "Etcd",
            "BACKOFF_BASE_SECONDS": "0.5",
            "BACKOFF_MAX_SECONDS": "60",
            "HEALTH_PORT": "9090",
        }
    )

    assert config.target_namespace == "openshift-etcd"
    assert config.config_maps == ("etcd-pod", "config")
    assert config.secrets == ("etcd-all-certs",)
    assert config.operator.plural == "etcds"
    assert config.operator.kind == "Etcd"
    assert config.operator.namespace is None
    assert (config.backoff_base_seconds, config.backoff_max_seconds) == (0.5, 60.0)
    assert config.health_port == 9090


def test_namespaced_operator_resource() -> None:
    config = load_config(env={"OPERATOR_NAMESPACE": "operators"})

    assert config.operator.namespace == "operators"


def test_secrets_only_configuration_is_allowed() -> None:
    config = load_config(env={"REVISION_CONFIGMAPS": "", "REVISION_SECRETS": "serving-cert"})

    assert config.config_maps == ()
    assert config.secrets == ("serving-cert",)


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"TARGET_NAMESPACE": "  "}, "TARGET_NAMESPACE"),
        ({"REVISION_CONFIGMAPS": " , "}, "REVISION_CONFIGMAPS or REVISION_SECRETS"),
        ({"OPERATOR_PLURAL": ""}, "OPERATOR_PLURAL"),
        ({"BACKOFF_BASE_SECONDS": "fast"}, "BACKOFF_BASE_SECONDS must be a number"),
        ({"BACKOFF_BASE_SECONDS": "-1"}, "BACKOFF_BASE_SECONDS must be >= 0.0"),
        ({"BACKOFF_BASE_SECONDS": "10", "BACKOFF_MAX_SECONDS": "5"}, "BACKOFF_MAX_SECONDS"),
        ({"HEALTH_PORT": "70000"}, "HEALTH_PORT must be <= 65535"),
    ],
)
def test_invalid_configuration_is_rejected(env: dict[str, str], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(env=env)


def test_config_error_is_a_value_error() -> None:
    assert issubclass(ConfigError, ValueError)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("true", True), ("1", True), (" Yes ", True), ("on", True), ("false", False), ("0", False), (None, True)],
)
def test_parse_bool(raw: str | None, expected: bool) -> None:
    assert parse_bool(raw, default=True) is expected


def test_parse_name_list_keeps_declared_order() -> None:
    assert parse_name_list("b,a,,b , c") == ("b", "a", "c")
    assert parse_name_list(None) == ()


def test_env_helpers_read_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SOME_INT", "7")
    monkeypatch.setenv("SOME_FLOAT", "2.5")

    assert env_int("SOME_INT", 1) == 7
    assert env_float("SOME_FLOAT", 1.0) == 2.5
    assert env_int("MISSING_INT_SETTING", 3) == 3


def test_env_int_rejects_out_of_range() -> None:
    with pytest.raises(ConfigError, match="must be >= 1"):
        env_int("PORT", 8080, minimum=1, env={"PORT": "0"})
