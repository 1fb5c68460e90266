from __future__ import annotations

import threading
from collections.abc import Iterable

from logshipper.src.models import WatchedPod


class PodCache:
    """Thread-safe store of the latest :class:`WatchedPod` per resource key.

    Snapshots are immutable, so readers never observe a half-applied update:
    a write swaps the whole object under the lock.
    """

    def __init__(self) -> None:
        self._items: dict[str, WatchedPod] = {}
        self._lock = threading.Lock()
        self._synced = threading.Event()

    def get_by_key(self, key: str) -> tuple[WatchedPod | None, bool]:
        """Return ``(pod, exists)``; an in-memory lookup cannot fail, so there is no error leg."""
        with self._lock:
            pod = self._items.get(key)
        return pod, pod is not None

    def upsert(self, pod: WatchedPod) -> None:
        with self._lock:
            self._items[pod.key] = pod

    def delete(self, key: str) -> WatchedPod | None:
        with self._lock:
            return self._items.pop(key, None)

    def replace(self, pods: Iterable[WatchedPod]) -> set[str]:
        """Replace the cache contents with a full listing.

        Returns the keys that were cached before but are absent from the
        listing, i.e. deletions missed while the watch was down. The first
        replace also releases :meth:`wait_for_initial_sync`.
        """
        fresh = {pod.key: pod for pod in pods}
        with self._lock:
            removed = set(self._items) - set(fresh)
            self._items = fresh
        self._synced.set()
        return removed

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    @property
    def has_synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_initial_sync(self, timeout: float | None = None) -> bool:
        """Block until the first full listing was applied; ``False`` on timeout."""
        return self._synced.wait(timeout=timeout)
