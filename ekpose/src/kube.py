from __future__ import annotations

import json
import logging
import os
from typing import Any

import yaml
from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    AppsV1Api,
    CoreV1Api,
    NetworkingV1Api,
    V1Ingress,
    V1Service,
)
from kubernetes.config.config_exception import ConfigException

from ekpose.src.keys import WorkKey

LOGGER = logging.getLogger(__name__)

DEFAULT_KUBECONFIG = os.path.join(os.path.expanduser("~"), ".kube", "config")


def load_kube_configuration(kubeconfig: str = DEFAULT_KUBECONFIG) -> None:
    """Load Kubernetes client configuration.

    Tries the kubeconfig file first and falls back to the in-cluster service
    account when the file is missing or unusable.  If neither works the
    ``ConfigException`` propagates: without credentials there is nothing
    the controller can do.
    """
    try:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
        return
    except (ConfigException, OSError, yaml.YAMLError) as exc:
        LOGGER.warning("Cannot use kubeconfig %s (%s); trying in-cluster configuration", kubeconfig, exc)

    config.load_incluster_config()
    LOGGER.info("Loaded in-cluster Kubernetes configuration")


def build_clients() -> tuple[AppsV1Api, CoreV1Api, NetworkingV1Api]:
    """Return AppsV1, CoreV1 and NetworkingV1 API clients using the active kube configuration."""
    return client.AppsV1Api(), client.CoreV1Api(), client.NetworkingV1Api()


def api_status_reason(exc: ApiException) -> str | None:
    """Return the machine-readable ``reason`` from an API error's Status body, if any."""
    body: Any = getattr(exc, "body", None)
    if not body:
        return None
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    reason = payload.get("reason")
    return reason if isinstance(reason, str) else None


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def is_already_exists(exc: ApiException) -> bool:
    """Return True for a create rejected because the object already exists.

    The API server answers ``409`` for both ``AlreadyExists`` and optimistic
    concurrency ``Conflict``.  Only the former is benign; a ``409`` without a
    parseable Status body is assumed to be ``AlreadyExists`` because creates
    carry no resourceVersion to conflict on.
    """
    if exc.status != 409:
        return False
    reason = api_status_reason(exc)
    return reason is None or reason == "AlreadyExists"


def describe_api_error(exc: ApiException) -> str:
    reason = api_status_reason(exc) or exc.reason
    return f"{exc.status} {reason}"


def read_deployment(apps_api: AppsV1Api, key: WorkKey) -> Any:
    return apps_api.read_namespaced_deployment(name=key.name, namespace=key.namespace)


def create_service(core_api: CoreV1Api, service: V1Service) -> Any:
    return core_api.create_namespaced_service(namespace=service.metadata.namespace, body=service)


def delete_service(core_api: CoreV1Api, key: WorkKey) -> None:
    core_api.delete_namespaced_service(name=key.name, namespace=key.namespace)


def create_ingress(networking_api: NetworkingV1Api, ingress: V1Ingress) -> Any:
    return networking_api.create_namespaced_ingress(namespace=ingress.metadata.namespace, body=ingress)


def delete_ingress(networking_api: NetworkingV1Api, key: WorkKey) -> None:
    networking_api.delete_namespaced_ingress(name=key.name, namespace=key.namespace)
