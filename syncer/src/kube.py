from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration(kubeconfig: str | None = None, master_url: str | None = None) -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.  An explicit *kubeconfig* path
    skips the in-cluster attempt.  *master_url* overrides the API server
    address of whichever configuration was loaded.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
    else:
        try:
            config.load_incluster_config()
            LOGGER.info("Loaded in-cluster Kubernetes configuration")
        except ConfigException:
            config.load_kube_config()
            LOGGER.info("Loaded local kubeconfig")

    if master_url:
        configuration = client.Configuration.get_default_copy()
        configuration.host = master_url
        client.Configuration.set_default(configuration)
        LOGGER.info("Using Kubernetes API server %s", master_url)


def build_core_api() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


def object_key(obj: Any) -> str:
    """Return the ``namespace/name`` key of *obj*, or just ``name`` for cluster-scoped objects."""
    metadata = obj.metadata
    if metadata.namespace:
        return f"{metadata.namespace}/{metadata.name}"
    return metadata.name


def split_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` (or ``name``) key.

    Raises ``ValueError`` for keys with more than one separator or empty parts.
    """
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[0] and parts[1]:
        return parts[0], parts[1]
    raise ValueError(f"invalid resource key: {key!r}")
