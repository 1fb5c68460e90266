from __future__ import annotations

import threading
from datetime import UTC, datetime
from types import SimpleNamespace

from logshipper.src.cache import PodCache
from logshipper.src.models import StateKind, WatchedPod, pod_from_api, resource_key, split_key


def test_resource_key_joins_namespace_and_name() -> None:
    assert resource_key("default", "web-1") == "default/web-1"
    assert resource_key("", "web-1") == "web-1"
    assert resource_key(None, "web-1") == "web-1"


def test_split_key_inverts_resource_key() -> None:
    assert split_key("default/web-1") == ("default", "web-1")
    assert split_key("web-1") == ("", "web-1")


def test_pod_from_api_converts_container_states() -> None:
    started = datetime(2026, 1, 1, 11, 0, tzinfo=UTC)
    finished_naive = datetime(2026, 1, 1, 12, 0)
    api_pod = SimpleNamespace(
        metadata=SimpleNamespace(
            name="job-1", namespace="batch", uid="abc", resource_version="77"
        ),
        status=SimpleNamespace(
            container_statuses=[
                SimpleNamespace(
                    name="main",
                    state=SimpleNamespace(
                        terminated=SimpleNamespace(
                            started_at=started,
                            finished_at=finished_naive,
                            exit_code=137,
                            reason="OOMKilled",
                        ),
                        running=None,
                        waiting=None,
                    ),
                ),
                SimpleNamespace(
                    name="sidecar",
                    state=SimpleNamespace(terminated=None, running=SimpleNamespace(), waiting=None),
                ),
                SimpleNamespace(
                    name="init",
                    state=SimpleNamespace(terminated=None, running=None, waiting=SimpleNamespace()),
                ),
            ]
        ),
    )

    pod = pod_from_api(api_pod)

    assert pod is not None
    assert pod.key == "batch/job-1"
    assert pod.uid == "abc"
    assert pod.resource_version == "77"
    kinds = [status.state.kind for status in pod.container_statuses]
    assert kinds == [StateKind.TERMINATED, StateKind.RUNNING, StateKind.WAITING]
    main = pod.container_statuses[0].state
    assert main.started_at == started
    assert main.finished_at == finished_naive.replace(tzinfo=UTC)
    assert main.exit_code == 137
    assert main.reason == "OOMKilled"


def test_pod_from_api_tolerates_missing_status() -> None:
    pod = pod_from_api(SimpleNamespace(metadata=SimpleNamespace(name="pending"), status=None))

    assert pod is not None
    assert pod.container_statuses == ()
    assert pod.key == "pending"


def test_pod_from_api_rejects_nameless_objects() -> None:
    assert pod_from_api(SimpleNamespace(metadata=None)) is None


# ---------------------------------------------------------------------------
# PodCache
# ---------------------------------------------------------------------------


def _pod(name: str, version: str = "1") -> WatchedPod:
    return WatchedPod(namespace="default", name=name, uid=name, resource_version=version)


def test_cache_get_upsert_delete() -> None:
    cache = PodCache()
    assert cache.get_by_key("default/a") == (None, False)

    cache.upsert(_pod("a", "1"))
    cache.upsert(_pod("a", "2"))
    pod, exists = cache.get_by_key("default/a")
    assert exists is True
    assert pod is not None and pod.resource_version == "2"

    assert cache.delete("default/a") is not None
    assert cache.delete("default/a") is None
    assert len(cache) == 0


def test_cache_replace_reports_removed_keys_and_releases_sync_latch() -> None:
    cache = PodCache()
    assert cache.wait_for_initial_sync(timeout=0.01) is False
    cache.upsert(_pod("stale"))

    removed = cache.replace([_pod("a"), _pod("b")])

    assert removed == {"default/stale"}
    assert sorted(cache.keys()) == ["default/a", "default/b"]
    assert cache.has_synced is True
    assert cache.wait_for_initial_sync(timeout=0) is True


def test_cache_wait_for_initial_sync_unblocks_waiters() -> None:
    cache = PodCache()
    results: list[bool] = []
    waiter = threading.Thread(target=lambda: results.append(cache.wait_for_initial_sync(timeout=2)))
    waiter.start()

    cache.replace([])
    waiter.join(timeout=2)

    assert results == [True]
