from __future__ import annotations

import logging
import os
import threading
from collections.abc import Hashable
from typing import Any, Protocol

from kubernetes.client import AppsV1Api, CoreV1Api, NetworkingV1Api

from ekpose.src.informer import DeploymentInformer, EventStream, Observed, Removed, WatchEvent
from ekpose.src.keys import MalformedKeyError, WorkKey, key_for
from ekpose.src.metrics import METRICS
from ekpose.src.reconciler import Reconciler, SyncResult
from ekpose.src.workqueue import RateLimitingQueue, default_controller_rate_limiter


class Informer(Protocol):
    def subscribe(self) -> EventStream: ...

    def run(self, stop_event: threading.Event | None = None) -> None: ...

    def wait_for_initial_sync(self, stop_event: threading.Event) -> bool: ...

    def request_stop(self) -> None: ...


class ExposeController:
    """Keeps a Service and an Ingress in step with every watched Deployment.

    Threads, all stopped by one shutdown event:
        informer
            Lists and watches Deployments and publishes typed events.
        dispatcher
            Drains the informer's event stream into the work queue.
        workers
            ``workers`` loops pulling keys from the queue and reconciling
            them.  They start only after the cache-sync barrier.

    The queue never hands one key to two workers, so workers need no
    coordination of their own.
    """

    def __init__(
        self,
        informer: Informer,
        reconciler: Reconciler,
        queue: RateLimitingQueue | None = None,
        workers: int = 2,
        logger: logging.Logger | None = None,
        stop_join_timeout_seconds: float = 45.0,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.informer = informer
        self.reconciler = reconciler
        self.queue = queue or RateLimitingQueue()
        self.workers = workers
        self.logger = logger or logging.getLogger(__name__)
        self.stop_join_timeout_seconds = stop_join_timeout_seconds
        self.ready = threading.Event()
        self._stream = informer.subscribe()

    def handle_event(self, event: WatchEvent) -> None:
        """Turn an informer event into a queued key.

        No filtering and no deduplication happen here; the queue coalesces
        repeated keys.  Payloads without a usable key are dropped.
        """
        try:
            key = key_for(event.obj)
        except MalformedKeyError as exc:
            self.logger.warning("Dropping %s notification: %s", type(event).__name__, exc)
            METRICS.malformed_keys_total.inc()
            return

        if isinstance(event, Observed):
            self.logger.debug("Deployment %s observed", key)
        elif isinstance(event, Removed):
            self.logger.debug("Deployment %s removed", key)
        self.queue.submit(key)

    def _dispatch(self) -> None:
        for event in self._stream:
            try:
                self.handle_event(event)
            except Exception:
                self.logger.exception("Failed to dispatch informer event")

    def _reconcile(self, item: Hashable) -> bool:
        """Reconcile one queued item; return True when it must not be retried."""
        try:
            key = WorkKey.coerce(item)
        except MalformedKeyError as exc:
            # Retrying cannot make an unparseable key valid.
            self.logger.error("Dropping malformed work item %r: %s", item, exc)
            METRICS.malformed_keys_total.inc()
            return True

        try:
            result: SyncResult = self.reconciler.sync(key)
        except Exception:
            self.logger.exception("Unexpected error reconciling %s", key)
            return False

        if not result.succeeded:
            self.logger.warning(
                "Reconcile of %s failed on %s path (service=%s, route=%s): %s",
                key,
                result.path,
                result.service,
                result.route,
                result.error,
            )
        return result.succeeded

    def process_next_item(self) -> bool:
        """Process one key from the queue; return False once the queue has shut down."""
        item, ok = self.queue.next()
        if not ok:
            return False

        try:
            succeeded = self._reconcile(item)
        finally:
            self.queue.done(item)

        if succeeded:
            self.queue.forget(item)
        else:
            delay = self.queue.requeue_after_failure(item)
            self.logger.info(
                "Requeued %s after %.3fs (attempt %d)",
                item,
                delay,
                self.queue.num_requeues(item),
            )
        return True

    def _worker(self) -> None:
        while self.process_next_item():
            pass

    def request_stop(self) -> None:
        self.informer.request_stop()
        self._stream.close()
        self.queue.shut_down(drain=False)

    def run(self, shutdown_event: threading.Event | None = None) -> None:
        """Start the informer, wait for the cache-sync barrier, and run workers until shutdown.

        If the informer thread exits on its own (for example after an RBAC
        denial) the controller shuts down instead of running blind.
        """
        stop = shutdown_event or threading.Event()

        def _run_informer() -> None:
            try:
                self.informer.run(stop_event=stop)
            except Exception:
                self.logger.exception("Informer thread crashed")
            if not stop.is_set():
                self.logger.error("Informer exited without a stop signal; shutting down controller")
                stop.set()

        informer_thread = threading.Thread(target=_run_informer, name="informer", daemon=True)
        dispatcher_thread = threading.Thread(target=self._dispatch, name="dispatcher", daemon=True)
        informer_thread.start()
        dispatcher_thread.start()

        self.logger.info("Starting controller; waiting for deployment cache to sync")
        worker_threads: list[threading.Thread] = []
        if self.informer.wait_for_initial_sync(stop):
            for index in range(self.workers):
                thread = threading.Thread(target=self._worker, name=f"worker-{index}", daemon=True)
                thread.start()
                worker_threads.append(thread)
            self.ready.set()
            self.logger.info("Cache synced; started %d worker(s)", self.workers)
            stop.wait()
        else:
            self.logger.warning("Stopped before the deployment cache synced")

        self.ready.clear()
        self.request_stop()
        for thread in [*worker_threads, dispatcher_thread, informer_thread]:
            thread.join(timeout=self.stop_join_timeout_seconds)
            if thread.is_alive():
                self.logger.error(
                    "Thread %s did not stop within %ss", thread.name, self.stop_join_timeout_seconds
                )
        self.logger.info("Controller stopped")


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def build_controller_from_env(
    apps_api: AppsV1Api,
    core_api: CoreV1Api,
    networking_api: NetworkingV1Api,
) -> ExposeController:
    """Construct an :class:`ExposeController` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``: namespace to watch; empty means all (``""``).
        ``WORKERS``: concurrent worker loops (``2``).
        ``RESYNC_SECONDS``: informer resync period, ``0`` disables (``30``).
        ``RETRY_BASE_DELAY_MS``: first per-key retry delay (``5``).
        ``RETRY_MAX_DELAY_SECONDS``: per-key retry delay cap (``1000``).
        ``QUEUE_QPS`` / ``QUEUE_BURST``: overall retry token bucket (``10`` / ``100``).
    """
    namespace = os.getenv("WATCH_NAMESPACE", "").strip()
    workers = env_int("WORKERS", 2, minimum=1, maximum=64)
    resync_seconds = env_int("RESYNC_SECONDS", 30, minimum=0)
    base_delay_ms = env_int("RETRY_BASE_DELAY_MS", 5, minimum=1)
    max_delay_seconds = env_int("RETRY_MAX_DELAY_SECONDS", 1000, minimum=1)
    if base_delay_ms / 1000.0 > max_delay_seconds:
        raise ValueError("RETRY_BASE_DELAY_MS must not exceed RETRY_MAX_DELAY_SECONDS")
    qps = env_int("QUEUE_QPS", 10, minimum=1)
    burst = env_int("QUEUE_BURST", 100, minimum=1)

    informer = DeploymentInformer(
        apps_api=apps_api,
        namespace=namespace,
        resync_seconds=resync_seconds,
    )
    reconciler = Reconciler(
        apps_api=apps_api,
        core_api=core_api,
        networking_api=networking_api,
        cache=informer,
    )
    queue = RateLimitingQueue(
        rate_limiter=default_controller_rate_limiter(
            base_delay=base_delay_ms / 1000.0,
            max_delay=float(max_delay_seconds),
            qps=float(qps),
            burst=burst,
        )
    )
    return ExposeController(
        informer=informer,
        reconciler=reconciler,
        queue=queue,
        workers=workers,
    )


def describe(controller: ExposeController) -> dict[str, Any]:
    """Summarize runtime settings for the startup log line."""
    informer = controller.informer
    return {
        "namespace": getattr(informer, "namespace", "") or "<all>",
        "workers": controller.workers,
        "resync_seconds": getattr(informer, "resync_seconds", None),
    }
