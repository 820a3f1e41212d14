from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClusterResource:
    """Coordinates of a cluster-scoped custom resource served by the API server."""

    group: str
    version: str
    plural: str

    @property
    def display_name(self) -> str:
        return f"{self.plural}.{self.group}"


NODE_CONFIG = ClusterResource(group="config.openshift.io", version="v1", plural="nodes")
KUBE_CONTROLLER_MANAGER = ClusterResource(
    group="operator.openshift.io", version="v1", plural="kubecontrollermanagers"
)


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
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def get_cluster_object(
    custom_api: CustomObjectsApi, resource: ClusterResource, name: str
) -> dict[str, Any]:
    """Read a cluster-scoped custom object.  Raises ``ApiException`` (404 when absent)."""
    return custom_api.get_cluster_custom_object(
        group=resource.group,
        version=resource.version,
        plural=resource.plural,
        name=name,
    )


def replace_cluster_object_status(
    custom_api: CustomObjectsApi,
    resource: ClusterResource,
    name: str,
    body: dict[str, Any],
) -> dict[str, Any]:
    """Write the ``status`` subresource of a cluster-scoped custom object.

    The API server rejects the write with ``409 Conflict`` when
    ``body.metadata.resourceVersion`` is no longer current.
    """
    return custom_api.replace_cluster_custom_object_status(
        group=resource.group,
        version=resource.version,
        plural=resource.plural,
        name=name,
        body=body,
    )


def read_config_map(core_api: CoreV1Api, name: str, namespace: str) -> Any:
    return core_api.read_namespaced_config_map(name=name, namespace=namespace)
