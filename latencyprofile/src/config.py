from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        target_namespace:      Namespace holding the revisioned ConfigMaps.
        node_config_name:      Name of the ``config.openshift.io/v1`` Node object.
        operator_name:         Name of the ``KubeControllerManager`` operator object.
        config_map_base_name:  Revisioned ConfigMaps are ``<base>-<revision>``.
        resync_seconds:        Periodic sync interval independent of watch events.
        lookup_workers:        Concurrent ConfigMap lookups per sync.
        watch_timeout_seconds: Server-side timeout for each watch stream.
        health_port:           Port of the health and metrics server.
    """

    target_namespace: str = "openshift-kube-controller-manager"
    node_config_name: str = "cluster"
    operator_name: str = "cluster"
    config_map_base_name: str = "config"
    resync_seconds: int = 300
    lookup_workers: int = 4
    watch_timeout_seconds: int = 30
    health_port: int = 8080


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer, got: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _env_name(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Every variable is optional; defaults match a stock cluster.  Invalid
    values raise :class:`ConfigError` so the pod fails fast instead of
    reporting against the wrong objects.
    """
    values = env if env is not None else os.environ

    return ControllerConfig(
        target_namespace=_env_name(
            values, "TARGET_NAMESPACE", "openshift-kube-controller-manager"
        ),
        node_config_name=_env_name(values, "NODE_CONFIG_NAME", "cluster"),
        operator_name=_env_name(values, "OPERATOR_NAME", "cluster"),
        config_map_base_name=_env_name(values, "CONFIG_MAP_BASE_NAME", "config"),
        resync_seconds=env_int(values, "RESYNC_SECONDS", 300, minimum=1),
        lookup_workers=env_int(values, "SNAPSHOT_LOOKUP_WORKERS", 4, minimum=1, maximum=32),
        watch_timeout_seconds=env_int(
            values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1, maximum=300
        ),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
    )
