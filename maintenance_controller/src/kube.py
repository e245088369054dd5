from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import CoreV1Api
from kubernetes.config.config_exception import ConfigException

from maintenance_controller.src.units import WorkerUnit

LOGGER = logging.getLogger(__name__)


def load_kube_configuration(kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    An explicit *kubeconfig* path wins.  Otherwise in-cluster config is tried
    first (running inside a pod), falling back to the local kubeconfig for
    development.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
        return
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_api() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def patch_unit_annotations(core_api: CoreV1Api, unit: WorkerUnit) -> None:
    """Write *unit*'s annotations back to its Pod.

    The patch carries ``metadata.resourceVersion``, so the API server
    rejects it with ``409 Conflict`` when the Pod changed since the snapshot
    was cached.  Annotations are only ever added here, never removed.
    """
    metadata: dict[str, object] = {"annotations": dict(unit.annotations)}
    if unit.resource_version:
        metadata["resourceVersion"] = unit.resource_version

    core_api.patch_namespaced_pod(
        name=unit.name,
        namespace=unit.namespace,
        body={"metadata": metadata},
    )
