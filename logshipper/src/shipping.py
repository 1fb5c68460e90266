from __future__ import annotations

import logging
import re
import threading
from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from logshipper.src.config import ShipperConfig
from logshipper.src.errors import DeliveryError, LogFetchError, ShippingBacklogFullError
from logshipper.src.kube import fetch_container_logs
from logshipper.src.metrics import METRICS
from logshipper.src.models import ContainerState, ContainerStatus, StateKind, WatchedPod

LOGGER = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def send(self, chat_id: int, buffer: bytes, label: str) -> None: ...


def utc_now() -> datetime:
    return datetime.now(UTC)


def pod_admitted(pod_name: str, patterns: Sequence[re.Pattern[str]]) -> bool:
    """Return True if any pattern matches anywhere in *pod_name* (or no patterns are set)."""
    if not patterns:
        return True
    return any(pattern.search(pod_name) for pattern in patterns)


def container_admitted(container_name: str, names: Sequence[str]) -> bool:
    if not names:
        return True
    return container_name in names


def is_eligible(state: ContainerState, now: datetime, delay_seconds: float) -> bool:
    """Decide whether a container's logs are still worth shipping.

    Eligible iff the container is terminated, ``started_at < finished_at``
    and fewer than *delay_seconds* have passed since ``finished_at``.
    Missing or inverted timestamps (clock skew, half-written status) make the
    container ineligible rather than an error.
    """
    if state.kind is not StateKind.TERMINATED:
        return False
    if state.started_at is None or state.finished_at is None:
        return False
    if not state.started_at < state.finished_at:
        return False
    return (now - state.finished_at).total_seconds() < delay_seconds


@dataclass(frozen=True)
class DeliveryRequest:
    namespace: str
    pod_name: str
    container_name: str
    buffer: bytes

    @property
    def label(self) -> str:
        return f"{self.pod_name}_{self.container_name}"


class DeliveryLedger:
    """Terminations already delivered by this process.

    Keyed by ``(pod uid, container name, finished_at)`` so a restarted
    container (new ``finished_at``) or a recreated pod (new uid) ships again.
    Entries older than the staleness window can never be eligible again and
    are pruned.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str, datetime], datetime] = {}
        self._lock = threading.Lock()

    def seen(self, uid: str, container_name: str, finished_at: datetime) -> bool:
        with self._lock:
            return (uid, container_name, finished_at) in self._entries

    def record(self, uid: str, container_name: str, finished_at: datetime) -> None:
        with self._lock:
            self._entries[(uid, container_name, finished_at)] = finished_at

    def prune(self, now: datetime, delay_seconds: float) -> int:
        cutoff = now - timedelta(seconds=delay_seconds)
        with self._lock:
            expired = [key for key, finished_at in self._entries.items() if finished_at <= cutoff]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class LogShipper:
    """Filters a pod's containers and forwards the logs of freshly terminated ones.

    Each container ships independently: a fetch or delivery failure is
    logged and counted, and the remaining containers are still processed.
    """

    def __init__(
        self,
        core_api: Any,
        sink: NotificationSink,
        config: ShipperConfig,
        ledger: DeliveryLedger | None = None,
        clock: Callable[[], datetime] = utc_now,
        fetch_logs: Callable[..., bytes] = fetch_container_logs,
    ) -> None:
        self.core_api = core_api
        self.sink = sink
        self.config = config
        self.ledger = ledger or DeliveryLedger()
        self.clock = clock
        self.fetch_logs = fetch_logs

    def eligible_containers(self, pod: WatchedPod, now: datetime) -> list[ContainerStatus]:
        if not pod_admitted(pod.name, self.config.pod_name_patterns):
            return []
        return [
            status
            for status in pod.container_statuses
            if container_admitted(status.name, self.config.container_name_patterns)
            and is_eligible(status.state, now, self.config.delay_seconds)
        ]

    def ship_pod(self, pod: WatchedPod) -> int:
        """Ship every eligible container of *pod*; returns the number delivered."""
        LOGGER.debug("Event from pod %s", pod.key)
        now = self.clock()
        self.ledger.prune(now, self.config.delay_seconds)

        delivered = 0
        for status in self.eligible_containers(pod, now):
            finished_at = status.state.finished_at
            if finished_at is not None and self.ledger.seen(pod.uid, status.name, finished_at):
                LOGGER.debug(
                    "Logs for pod %s container %s already delivered", pod.key, status.name
                )
                continue
            try:
                if self.ship_container(pod, status):
                    delivered += 1
            except LogFetchError as exc:
                METRICS.shipping_failures_total.labels(stage="fetch").inc()
                LOGGER.error("Failed to fetch container logs: %s", exc)
            except DeliveryError as exc:
                METRICS.shipping_failures_total.labels(stage="deliver").inc()
                LOGGER.error("Failed to send container logs: %s", exc)
            except Exception:
                METRICS.shipping_failures_total.labels(stage="unexpected").inc()
                LOGGER.exception(
                    "Unexpected error shipping logs for pod %s container %s",
                    pod.key,
                    status.name,
                )
        return delivered

    def ship_container(self, pod: WatchedPod, status: ContainerStatus) -> bool:
        LOGGER.info(
            "Send logs from pod: %s, container: %s (exit code %s, reason %s)",
            pod.name,
            status.name,
            status.state.exit_code,
            status.state.reason,
        )
        buffer = self.fetch_logs(
            self.core_api,
            namespace=pod.namespace,
            pod_name=pod.name,
            container_name=status.name,
            tail_lines=self.config.tail_lines,
        )
        finished_at = status.state.finished_at
        if not buffer:
            LOGGER.info(
                "Container %s of pod %s produced no logs; nothing to send", status.name, pod.key
            )
            if finished_at is not None:
                self.ledger.record(pod.uid, status.name, finished_at)
            return False

        request = DeliveryRequest(
            namespace=pod.namespace,
            pod_name=pod.name,
            container_name=status.name,
            buffer=buffer,
        )
        self.sink.send(self.config.chat_id, request.buffer, request.label)
        if finished_at is not None:
            self.ledger.record(pod.uid, status.name, finished_at)
        METRICS.logs_shipped_total.inc()
        return True


class ShippingPool:
    """Fixed set of shipping threads fed by a bounded, key-coalescing backlog.

    Submitting a pod whose key is already waiting replaces the waiting
    snapshot. A key being shipped is not handed to a second thread until the
    first one finishes. When the backlog is full, :meth:`submit` raises
    :class:`ShippingBacklogFullError` instead of blocking the caller.
    """

    def __init__(self, shipper: LogShipper, workers: int = 4, max_backlog: int = 256) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if max_backlog < 1:
            raise ValueError("max_backlog must be >= 1")
        self.shipper = shipper
        self.workers = workers
        self.max_backlog = max_backlog

        self._pending: OrderedDict[str, WatchedPod] = OrderedDict()
        self._active: set[str] = set()
        self._stopping = False
        self._threads: list[threading.Thread] = []
        self._cond = threading.Condition()

    def start(self) -> None:
        with self._cond:
            if self._threads:
                return
            for index in range(self.workers):
                thread = threading.Thread(
                    target=self._run_worker, name=f"shipper-{index}", daemon=True
                )
                self._threads.append(thread)
                thread.start()

    def submit(self, pod: WatchedPod) -> None:
        key = pod.key
        with self._cond:
            if self._stopping:
                raise ShippingBacklogFullError("shipping pool is stopping")
            if key not in self._pending and len(self._pending) >= self.max_backlog:
                raise ShippingBacklogFullError(
                    f"shipping backlog full ({self.max_backlog} pods); cannot accept {key}"
                )
            self._pending[key] = pod
            METRICS.shipping_backlog.set(len(self._pending))
            self._cond.notify()

    def _next_locked(self) -> WatchedPod | None:
        for key in self._pending:
            if key not in self._active:
                self._active.add(key)
                pod = self._pending.pop(key)
                METRICS.shipping_backlog.set(len(self._pending))
                return pod
        return None

    def _run_worker(self) -> None:
        while True:
            with self._cond:
                pod = self._next_locked()
                while pod is None:
                    if self._stopping and not self._pending:
                        return
                    self._cond.wait()
                    pod = self._next_locked()
            try:
                self.shipper.ship_pod(pod)
            except Exception:
                LOGGER.exception("Shipping worker failed on pod %s", pod.key)
            finally:
                with self._cond:
                    self._active.discard(pod.key)
                    self._cond.notify_all()

    def stop(self, timeout: float | None = None) -> None:
        """Let the threads drain the backlog, then wait up to *timeout* seconds for them."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout=timeout)

    def __len__(self) -> int:
        with self._cond:
            return len(self._pending)
