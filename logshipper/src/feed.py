from __future__ import annotations

import logging
import random
import threading
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from logshipper.src.cache import PodCache
from logshipper.src.errors import FeedAuthorizationError
from logshipper.src.metrics import METRICS
from logshipper.src.models import WatchedPod, pod_from_api
from logshipper.src.workqueue import RateLimitingQueue

_AUTH_STATUSES = {401, 403}
_MAX_BACKOFF_SECONDS = 30


class PodChangeFeed:
    """List+watch pods in one namespace, mirroring them into a :class:`PodCache`.

    Every applied change is followed by ``queue.add(key)``, so a worker that
    dequeues a key always finds the cache at least as new as the event that
    enqueued it.

    The loop mirrors what a client-go informer does:

    1. List pods (retrying with jittered exponential backoff) and replace the
       cache; the first successful list releases the initial-sync latch.
    2. Watch from the listing's ``resourceVersion``; the server closes the
       stream every ``watch_timeout_seconds`` and the loop reopens it.
    3. On ``410 Gone`` re-list: keys that vanished while disconnected are
       deleted from the cache and enqueued like regular deletes.
    4. On other errors back off (1 s doubling to 30 s, with jitter).

    ``401``/``403`` are not transient: the loop records a
    :class:`FeedAuthorizationError` in ``failure`` and returns.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        cache: PodCache,
        queue: RateLimitingQueue,
        namespace: str,
        label_selector: str = "",
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.cache = cache
        self.queue = queue
        self.namespace = namespace
        self.label_selector = label_selector
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self.failure: FeedAuthorizationError | None = None
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"namespace": self.namespace}
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector
        return kwargs

    def _deny(self, exc: ApiException, during: str) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s (status=%s). "
            "Check RBAC permissions to list/watch pods in namespace %s.",
            during,
            exc.status,
            self.namespace,
        )
        METRICS.watch_errors_total.inc()
        self.failure = FeedAuthorizationError(
            f"pod {during} denied with status {exc.status} in namespace {self.namespace}"
        )
        self.ready.clear()

    def list_and_replace(self) -> str | None:
        """List pods, replace the cache and enqueue every affected key.

        Returns the listing's ``resourceVersion`` for the follow-up watch.
        """
        listing = self.core_api.list_namespaced_pod(**self._list_kwargs())
        pods: list[WatchedPod] = []
        for item in getattr(listing, "items", None) or []:
            pod = pod_from_api(item)
            if pod is not None:
                pods.append(pod)

        removed = self.cache.replace(pods)
        for key in sorted(removed):
            self.logger.info("Pod %s disappeared while the watch was down", key)
            self.queue.add(key)
        for pod in pods:
            self.queue.add(pod.key)

        self.logger.info(
            "Listed %d pod(s) in namespace %s (%d removed)",
            len(pods),
            self.namespace,
            len(removed),
        )
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def handle_event(self, event_type: str, obj: Any) -> str | None:
        """Apply one watch event to the cache and enqueue its key.

        Returns the key, or ``None`` when the event was ignored (bookmarks,
        unknown types, objects without a name).
        """
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None

        pod = pod_from_api(obj)
        if pod is None:
            self.logger.warning("Ignoring %s event for a pod without metadata.name", event_type)
            return None

        # Deletes are keyed off the object carried by the event, which is the
        # last state the API server knew.
        key = pod.key
        if event_type == "DELETED":
            self.cache.delete(key)
        else:
            self.cache.upsert(pod)
        METRICS.watch_events_total.labels(type=event_type).inc()
        self.queue.add(key)
        return key

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self.failure = None

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self.list_and_replace()
                self.ready.set()
                self.logger.info("Starting pod watch from resourceVersion %s", resource_version)
                break
            except ApiException as exc:
                if exc.status in _AUTH_STATUSES:
                    self._deny(exc, "initial list")
                    return
                self.logger.exception("Initial pod list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial pod list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, _MAX_BACKOFF_SECONDS)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0
        needs_relist = False

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if needs_relist:
                    METRICS.relists_total.inc()
                    resource_version = self.list_and_replace()
                    needs_relist = False

                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1

                stream_kwargs = self._list_kwargs()
                if resource_version:
                    stream_kwargs["resource_version"] = resource_version
                stream = watcher.stream(
                    self.core_api.list_namespaced_pod,
                    timeout_seconds=self.watch_timeout_seconds,
                    **stream_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version

                    self.handle_event(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    # The cache may have missed deletes; rebuild it from a
                    # fresh listing before watching again.
                    self.logger.warning("Pod watch resource version expired, re-listing")
                    needs_relist = True
                    resource_version = None
                    continue

                if exc.status in _AUTH_STATUSES:
                    self._deny(exc, "re-list" if needs_relist else "watch")
                    return

                self.logger.exception("Kubernetes API pod watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, _MAX_BACKOFF_SECONDS)
            except Exception:
                self.logger.exception("Unexpected pod watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, _MAX_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
