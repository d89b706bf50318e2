from __future__ import annotations

import logging
import queue
import random
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api

from ekpose.src.keys import MalformedKeyError, WorkKey, key_for
from ekpose.src.metrics import METRICS


@dataclass(frozen=True)
class Observed:
    """A Deployment was listed, added, modified, or re-announced by resync."""

    obj: Any


@dataclass(frozen=True)
class Removed:
    """A Deployment was deleted, or vanished between two listings."""

    obj: Any


WatchEvent = Observed | Removed

_CLOSED = object()


class EventStream:
    """Iterator over informer events backed by an unbounded queue.

    ``put`` never blocks, so the watch thread is never held up by a slow
    consumer.  Iteration ends after :meth:`close`.
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[Any] = queue.Queue()

    def put(self, event: WatchEvent) -> None:
        self._queue.put_nowait(event)

    def close(self) -> None:
        self._queue.put_nowait(_CLOSED)

    def __iter__(self) -> Iterator[WatchEvent]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item


class DeploymentInformer:
    """List-then-watch Deployments into a local keyed store and publish typed events.

    The store is the fast, possibly stale view used for cached reads.  The
    ``synced`` event is the cache-sync barrier: it is set once the first full
    listing is in the store and every listed Deployment has been announced.

    Key internal state:
        ``_store``
            Maps :class:`WorkKey` to the last-seen Deployment object.
        ``_subscribers``
            Event streams that receive every :class:`Observed` and
            :class:`Removed` event.
        ``_next_resync``
            ``time.monotonic()`` timestamp of the next periodic resync, when
            every cached Deployment is re-announced so derived resources that
            were deleted out-of-band get recreated.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        namespace: str = "",
        resync_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.apps_api = apps_api
        self.namespace = namespace
        self.resync_seconds = resync_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._store: dict[WorkKey, Any] = {}
        self._store_lock = threading.Lock()
        self._subscribers: list[EventStream] = []
        self._next_resync: float | None = None

        self.synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def subscribe(self) -> EventStream:
        stream = EventStream()
        self._subscribers.append(stream)
        return stream

    def get_cached(self, key: WorkKey) -> Any | None:
        with self._store_lock:
            return self._store.get(key)

    def list_keys(self) -> list[WorkKey]:
        with self._store_lock:
            return sorted(self._store)

    def wait_for_initial_sync(self, stop_event: threading.Event, poll_seconds: float = 0.1) -> bool:
        """Block until the initial listing is stored; False if stopped first."""
        while not (stop_event.is_set() or self._external_stop.is_set()):
            if self.synced.wait(timeout=poll_seconds):
                return True
        return self.synced.is_set()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        if self.namespace:
            return self.apps_api.list_namespaced_deployment, {"namespace": self.namespace}
        return self.apps_api.list_deployment_for_all_namespaces, {}

    def _publish(self, event: WatchEvent) -> None:
        METRICS.informer_events_total.labels(
            type="observed" if isinstance(event, Observed) else "removed"
        ).inc()
        for stream in self._subscribers:
            stream.put(event)

    def _replace(self, listing: Any) -> None:
        """Replace the store with a full listing and announce the difference.

        Every listed Deployment is announced as :class:`Observed`; keys that
        were cached but are missing from the listing are announced as
        :class:`Removed` with their last-known object.
        """
        fresh: dict[WorkKey, Any] = {}
        for item in getattr(listing, "items", None) or []:
            try:
                fresh[key_for(item)] = item
            except MalformedKeyError:
                self.logger.warning("Skipping listed deployment without usable metadata")
                METRICS.malformed_keys_total.inc()

        with self._store_lock:
            vanished = [obj for key, obj in self._store.items() if key not in fresh]
            self._store = fresh

        for obj in vanished:
            self._publish(Removed(obj))
        for obj in fresh.values():
            self._publish(Observed(obj))

    def _resync(self) -> None:
        with self._store_lock:
            cached = list(self._store.values())
        self.logger.debug("Resyncing %d cached deployment(s)", len(cached))
        for obj in cached:
            self._publish(Observed(obj))

    def _maybe_resync(self, now_monotonic: float) -> None:
        if self._next_resync is None or now_monotonic < self._next_resync:
            return
        self._resync()
        self._next_resync = now_monotonic + self.resync_seconds

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the watch timeout, shortened so the stream ends in time for resync."""
        if self._next_resync is None:
            return 300
        remaining = self._next_resync - now_monotonic
        return min(300, max(1, int(remaining + 0.999)))

    def handle_watch_event(self, event_type: str, obj: Any) -> None:
        """Apply one watch event to the store and publish it."""
        try:
            key = key_for(obj)
        except MalformedKeyError:
            self.logger.warning("Ignoring %s event for deployment without usable metadata", event_type)
            METRICS.malformed_keys_total.inc()
            return

        if event_type in {"ADDED", "MODIFIED"}:
            with self._store_lock:
                self._store[key] = obj
            self._publish(Observed(obj))
        elif event_type == "DELETED":
            with self._store_lock:
                self._store.pop(key, None)
            self._publish(Removed(obj))

    def _list(self) -> str | None:
        list_func, kwargs = self._list_call()
        listing = list_func(**kwargs)
        self._replace(listing)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List Deployments, then watch them until stopped.

        1. Retries the initial list with exponential backoff and jitter
           (1 s to 30 s) so a slow API server at startup does not crash-loop.
        2. Seeds the store, announces every Deployment, and sets ``synced``.
        3. Watches from the listing's ``resourceVersion``.
        4. On ``410 Gone`` re-lists, announcing vanished keys as removed.
        5. On other errors backs off with jitter, capped at 30 s.
        6. Re-announces the whole store every ``resync_seconds``.

        ``401``/``403`` are configuration errors (RBAC or credentials) and
        end the loop with an error log instead of retrying forever.
        """
        stop = stop_event or threading.Event()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list()
                self.synced.set()
                self.logger.info(
                    "Initial deployment list synced (%d cached); watching from resourceVersion %s",
                    len(self.list_keys()),
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial deployment list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    return
                self.logger.exception("Initial deployment list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial deployment list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            return

        if self.resync_seconds > 0:
            self._next_resync = time.monotonic() + self.resync_seconds

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            self._maybe_resync(now_monotonic=time.monotonic())
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                list_func, kwargs = self._list_call()
                stream = watcher.stream(
                    list_func,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(time.monotonic()),
                    **kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.handle_watch_event(event_type=str(event.get("type", "")), obj=obj)
                    self._maybe_resync(now_monotonic=time.monotonic())

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the resourceVersion was compacted away.  Only a
                # fresh listing can tell which Deployments were deleted meanwhile.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        resource_version = self._list()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
