from __future__ import annotations

import logging
import threading
import time

from kubernetes.client import CoreV1Api

from logshipper.src.cache import PodCache
from logshipper.src.config import ShipperConfig
from logshipper.src.errors import CacheSyncTimeoutError, ShipperError, handle_error
from logshipper.src.feed import PodChangeFeed
from logshipper.src.metrics import METRICS
from logshipper.src.shipping import LogShipper, NotificationSink, ShippingPool
from logshipper.src.workqueue import RateLimitingQueue

MAX_REQUEUES = 5


class Reconciler:
    """Pool of worker threads turning queued pod keys into shipping work.

    Each worker loops over ``get -> sync -> handle_err -> done``. The queue
    never hands the same key to two workers at once, so ``sync`` for one pod
    is never concurrent with itself.

    ``sync`` only resolves the key and hands the snapshot to the
    :class:`ShippingPool`; log delivery happens on shipping threads and its
    outcome never reaches the retry bookkeeping here. Errors raised by
    ``sync`` are retried with the queue's backoff up to ``max_requeues``
    times, after which the key is dropped and reported to
    :func:`~logshipper.src.errors.handle_error`.
    """

    def __init__(
        self,
        queue: RateLimitingQueue,
        cache: PodCache,
        pool: ShippingPool,
        feed: PodChangeFeed | None = None,
        workers: int = 1,
        max_requeues: int = MAX_REQUEUES,
        worker_restart_seconds: float = 1.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.cache = cache
        self.pool = pool
        self.feed = feed
        self.workers = workers
        self.max_requeues = max_requeues
        self.worker_restart_seconds = worker_restart_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.ready = feed.ready if feed is not None else threading.Event()
        self._stop = threading.Event()

    def sync(self, key: str) -> None:
        pod, exists = self.cache.get_by_key(key)
        if not exists or pod is None:
            self.logger.info("Pod %s does not exist anymore", key)
            return
        # The snapshot may be newer than the event that enqueued the key;
        # shipping is idempotent with respect to that.
        self.pool.submit(pod)

    def handle_err(self, err: Exception | None, key: str) -> None:
        if err is None:
            self.queue.forget(key)
            return

        METRICS.reconcile_errors_total.inc()
        if self.queue.num_requeues(key) < self.max_requeues:
            self.logger.info("Error syncing pod %s: %s", key, err)
            self.queue.add_rate_limited(key)
            METRICS.requeues_total.inc()
            return

        self.queue.forget(key)
        handle_error(err, key)
        self.logger.info("Dropping pod %s out of the queue: %s", key, err)

    def process_next_item(self) -> bool:
        """Process one key; returns False once the queue is shutting down."""
        key, shutting_down = self.queue.get()
        if shutting_down or key is None:
            return False
        try:
            err: Exception | None = None
            try:
                self.sync(key)
            except Exception as exc:
                err = exc
            self.handle_err(err, key)
        finally:
            self.queue.done(key)
        return True

    def _run_worker(self) -> None:
        while not self._stop.is_set():
            try:
                while self.process_next_item():
                    pass
            except Exception:
                self.logger.exception(
                    "Reconcile worker crashed; restarting in %.1fs", self.worker_restart_seconds
                )
            self._stop.wait(timeout=self.worker_restart_seconds)

    def _wait_for_initial_sync(
        self, stop_event: threading.Event, timeout_seconds: float
    ) -> bool:
        deadline = time.monotonic() + timeout_seconds
        while not self.cache.wait_for_initial_sync(timeout=0.5):
            if self.feed is not None and self.feed.failure is not None:
                raise self.feed.failure
            if stop_event.is_set():
                return False
            if time.monotonic() >= deadline:
                raise CacheSyncTimeoutError(
                    f"timed out after {timeout_seconds:.0f}s waiting for the pod cache to sync"
                )
        return True

    def run(self, stop_event: threading.Event, sync_timeout_seconds: float = 120.0) -> None:
        """Run the feed, shipping pool and workers until *stop_event* is set.

        Raises :class:`CacheSyncTimeoutError` when the initial listing does not
        complete in time and re-raises the feed's
        :class:`~logshipper.src.errors.FeedAuthorizationError`; both are fatal.
        """
        self._stop.clear()
        self.logger.info("Starting pod log shipper")
        self.pool.start()

        feed_thread: threading.Thread | None = None
        worker_threads: list[threading.Thread] = []
        try:
            if self.feed is not None:
                feed_thread = threading.Thread(
                    target=self.feed.run_forever,
                    kwargs={"shutdown_event": stop_event},
                    name="pod-feed",
                    daemon=True,
                )
                feed_thread.start()

            if not self._wait_for_initial_sync(stop_event, sync_timeout_seconds):
                return
            self.logger.info("Pod cache synced with %d pod(s)", len(self.cache))

            for index in range(self.workers):
                thread = threading.Thread(
                    target=self._run_worker, name=f"reconciler-{index}", daemon=True
                )
                worker_threads.append(thread)
                thread.start()

            while not stop_event.wait(timeout=1.0):
                if self.feed is not None and self.feed.failure is not None:
                    raise self.feed.failure
                if feed_thread is not None and not feed_thread.is_alive():
                    raise ShipperError("pod feed exited without a stop signal")
        finally:
            self.logger.info("Stopping pod log shipper")
            self._stop.set()
            self.queue.shut_down_with_drain(timeout=30)
            if self.feed is not None:
                self.feed.request_stop()
            if feed_thread is not None:
                feed_thread.join(timeout=5)
            for thread in worker_threads:
                thread.join(timeout=5)
            self.pool.stop(timeout=30)


def build_reconciler(
    config: ShipperConfig,
    core_api: CoreV1Api,
    sink: NotificationSink,
) -> Reconciler:
    """Wire cache, queue, feed, shipping pool and workers from one :class:`ShipperConfig`."""
    cache = PodCache()
    queue = RateLimitingQueue()
    feed = PodChangeFeed(
        core_api=core_api,
        cache=cache,
        queue=queue,
        namespace=config.namespace,
        label_selector=config.label_selector,
    )
    shipper = LogShipper(core_api=core_api, sink=sink, config=config)
    pool = ShippingPool(
        shipper,
        workers=config.shipping_workers,
        max_backlog=config.shipping_backlog,
    )
    return Reconciler(
        queue=queue,
        cache=cache,
        pool=pool,
        feed=feed,
        workers=config.workers,
    )
