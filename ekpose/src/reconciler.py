from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, NetworkingV1Api

from ekpose.src.builder import build_ingress, build_service, pod_template_labels
from ekpose.src.keys import WorkKey
from ekpose.src.kube import (
    create_ingress,
    create_service,
    delete_ingress,
    delete_service,
    describe_api_error,
    is_already_exists,
    is_not_found,
    read_deployment,
)
from ekpose.src.metrics import METRICS

CREATED = "created"
EXISTS = "exists"
DELETED = "deleted"
ABSENT = "absent"
FAILED = "failed"
SKIPPED = "skipped"


class DeploymentCache(Protocol):
    def get_cached(self, key: WorkKey) -> Any | None: ...


@dataclass(frozen=True)
class SyncResult:
    """Outcome of reconciling one key.

    ``path`` is ``create`` or ``delete`` for the two sync paths, or ``read``
    when the authoritative Deployment lookup itself failed.  ``service`` and
    ``route`` hold one of the module-level outcome strings.
    """

    key: WorkKey
    path: str
    service: str
    route: str
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class Reconciler:
    """Converges a Deployment's Service and Ingress toward its current existence.

    Every side effect is idempotent: creates treat ``AlreadyExists`` as
    success and deletes treat ``NotFound`` as success.  A failed attempt is
    therefore safe to repeat as-is, and no rollback is attempted.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        core_api: CoreV1Api,
        networking_api: NetworkingV1Api,
        cache: DeploymentCache | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.apps_api = apps_api
        self.core_api = core_api
        self.networking_api = networking_api
        self.cache = cache
        self.logger = logger or logging.getLogger(__name__)

    def sync(self, key: WorkKey) -> SyncResult:
        """Reconcile ``key`` and record its duration and outcome.

        Exceptions other than ``ApiException`` (connection errors, timeouts)
        propagate to the caller and are counted with ``path="error"``.
        """
        started = time.monotonic()
        path, outcome = "error", "failure"
        try:
            result = self._sync(key)
            path = result.path
            outcome = "success" if result.succeeded else "failure"
            return result
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
            METRICS.reconcile_total.labels(path=path, result=outcome).inc()

    def _sync(self, key: WorkKey) -> SyncResult:
        # Read from the API server, not the cache: a stale cache entry must
        # not keep derived resources alive after the Deployment is gone.
        try:
            deployment = read_deployment(self.apps_api, key)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.info("Deployment %s no longer exists; deleting derived resources", key)
                return self.sync_deleted(key)
            self.logger.warning("Failed to read deployment %s: %s", key, describe_api_error(exc))
            return SyncResult(
                key=key,
                path="read",
                service=SKIPPED,
                route=SKIPPED,
                error=describe_api_error(exc),
            )

        return self.sync_present(key, deployment)

    def _labels_for(self, key: WorkKey, deployment: Any) -> dict[str, str]:
        cached = self.cache.get_cached(key) if self.cache is not None else None
        return pod_template_labels(cached if cached is not None else deployment)

    def sync_present(self, key: WorkKey, deployment: Any) -> SyncResult:
        """Creation path: ensure the Service, then the Ingress pointing at it."""
        metadata = getattr(deployment, "metadata", None)
        namespace = getattr(metadata, "namespace", None) or key.namespace
        name = getattr(metadata, "name", None) or key.name

        desired_service = build_service(name, namespace, self._labels_for(key, deployment))
        try:
            created = create_service(self.core_api, desired_service)
            service_outcome = CREATED
            self.logger.info("Created service %s", key)
        except ApiException as exc:
            if not is_already_exists(exc):
                METRICS.derived_operations_total.labels(kind="service", outcome=FAILED).inc()
                self.logger.warning("Failed to create service %s: %s", key, describe_api_error(exc))
                return SyncResult(
                    key=key,
                    path="create",
                    service=FAILED,
                    route=SKIPPED,
                    error=describe_api_error(exc),
                )
            # Existing Services are left untouched; labels changed since
            # creation are not patched in.
            created = None
            service_outcome = EXISTS
            self.logger.debug("Service %s already exists", key)
        METRICS.derived_operations_total.labels(kind="service", outcome=service_outcome).inc()

        created_meta = getattr(created, "metadata", None)
        service_name = getattr(created_meta, "name", None) or desired_service.metadata.name
        service_namespace = (
            getattr(created_meta, "namespace", None) or desired_service.metadata.namespace
        )

        try:
            create_ingress(self.networking_api, build_ingress(service_name, service_namespace))
            route_outcome = CREATED
            self.logger.info("Created ingress %s", key)
        except ApiException as exc:
            if not is_already_exists(exc):
                METRICS.derived_operations_total.labels(kind="ingress", outcome=FAILED).inc()
                self.logger.warning("Failed to create ingress %s: %s", key, describe_api_error(exc))
                return SyncResult(
                    key=key,
                    path="create",
                    service=service_outcome,
                    route=FAILED,
                    error=describe_api_error(exc),
                )
            route_outcome = EXISTS
            self.logger.debug("Ingress %s already exists", key)
        METRICS.derived_operations_total.labels(kind="ingress", outcome=route_outcome).inc()

        return SyncResult(key=key, path="create", service=service_outcome, route=route_outcome)

    def sync_deleted(self, key: WorkKey) -> SyncResult:
        """Deletion path: remove the Service and the Ingress, both always attempted.

        The Service goes first.  If the Ingress delete then fails, the retry
        finds the Service already absent and only has the Ingress left to do.
        """
        errors: list[str] = []

        try:
            delete_service(self.core_api, key)
            service_outcome = DELETED
            self.logger.info("Deleted service %s", key)
        except ApiException as exc:
            if is_not_found(exc):
                service_outcome = ABSENT
            else:
                service_outcome = FAILED
                errors.append(f"service: {describe_api_error(exc)}")
                self.logger.warning("Failed to delete service %s: %s", key, describe_api_error(exc))
        METRICS.derived_operations_total.labels(kind="service", outcome=service_outcome).inc()

        try:
            delete_ingress(self.networking_api, key)
            route_outcome = DELETED
            self.logger.info("Deleted ingress %s", key)
        except ApiException as exc:
            if is_not_found(exc):
                route_outcome = ABSENT
            else:
                route_outcome = FAILED
                errors.append(f"ingress: {describe_api_error(exc)}")
                self.logger.warning("Failed to delete ingress %s: %s", key, describe_api_error(exc))
        METRICS.derived_operations_total.labels(kind="ingress", outcome=route_outcome).inc()

        return SyncResult(
            key=key,
            path="delete",
            service=service_outcome,
            route=route_outcome,
            error="; ".join(errors) or None,
        )
