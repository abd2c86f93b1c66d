from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class OperatorResource:
    """Coordinates of the operator custom resource holding spec and status."""

    group: str
    version: str
    plural: str
    name: str
    kind: str = "KubeAPIServer"
    namespace: str | None = None


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        target_namespace: Namespace holding the source ConfigMaps/Secrets and
                          every revision snapshot.
        config_maps:      ConfigMap names snapshotted per revision, in the
                          order they are checked and copied.
        secrets:          Secret names snapshotted per revision.
        operator:         The custom resource whose status records revisions.
        backoff_base_seconds / backoff_max_seconds: requeue backoff policy.
    """

    target_namespace: str
    config_maps: tuple[str, ...]
    secrets: tuple[str, ...]
    operator: OperatorResource
    backoff_base_seconds: float = 0.005
    backoff_max_seconds: float = 1000.0
    health_port: int = 8080


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_name_list(value: str | None) -> tuple[str, ...]:
    """Split a comma-separated list, keeping declared order and dropping blanks and repeats."""
    names: list[str] = []
    for part in (value or "").split(","):
        part = part.strip()
        if part and part not in names:
            names.append(part)
    return tuple(names)


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    env: Mapping[str, str] | None = None,
) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``TARGET_NAMESPACE``    : namespace of sources and snapshots (``openshift-kube-apiserver``).
        ``REVISION_CONFIGMAPS`` : comma-separated ConfigMap names (``pod``).
        ``REVISION_SECRETS``    : comma-separated Secret names (empty).
        ``OPERATOR_GROUP`` / ``OPERATOR_VERSION`` / ``OPERATOR_PLURAL`` / ``OPERATOR_NAME``
                                : operator resource (``operator.openshift.io/v1``,
                                   ``kubeapiservers``, ``cluster``).
        ``OPERATOR_KIND``       : kind that events are attached to (``KubeAPIServer``).
        ``OPERATOR_NAMESPACE``  : set only for a namespaced operator resource.
        ``BACKOFF_BASE_SECONDS`` / ``BACKOFF_MAX_SECONDS``: requeue backoff (``0.005`` / ``1000``).
        ``HEALTH_PORT``         : health and metrics port (``8080``).
    """
    values = env if env is not None else os.environ

    target_namespace = values.get("TARGET_NAMESPACE", "openshift-kube-apiserver").strip()
    if not target_namespace:
        raise ConfigError("TARGET_NAMESPACE must be a non-empty string")

    config_maps = parse_name_list(values.get("REVISION_CONFIGMAPS", "pod"))
    secrets = parse_name_list(values.get("REVISION_SECRETS", ""))
    if not config_maps and not secrets:
        raise ConfigError("At least one of REVISION_CONFIGMAPS or REVISION_SECRETS must name a resource")

    operator = OperatorResource(
        group=values.get("OPERATOR_GROUP", "operator.openshift.io"),
        version=values.get("OPERATOR_VERSION", "v1"),
        plural=values.get("OPERATOR_PLURAL", "kubeapiservers"),
        name=values.get("OPERATOR_NAME", "cluster"),
        kind=values.get("OPERATOR_KIND", "KubeAPIServer"),
        namespace=values.get("OPERATOR_NAMESPACE") or None,
    )
    for field_name in ("group", "version", "plural", "name", "kind"):
        if not getattr(operator, field_name).strip():
            raise ConfigError(f"OPERATOR_{field_name.upper()} must be a non-empty string")

    backoff_base = env_float("BACKOFF_BASE_SECONDS", 0.005, minimum=0.0, env=values)
    backoff_max = env_float("BACKOFF_MAX_SECONDS", 1000.0, minimum=0.0, env=values)
    if backoff_max < backoff_base:
        raise ConfigError("BACKOFF_MAX_SECONDS must be >= BACKOFF_BASE_SECONDS")

    return ControllerConfig(
        target_namespace=target_namespace,
        config_maps=config_maps,
        secrets=secrets,
        operator=operator,
        backoff_base_seconds=backoff_base,
        backoff_max_seconds=backoff_max,
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
    )
