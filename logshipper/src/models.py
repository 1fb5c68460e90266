from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class StateKind(StrEnum):
    WAITING = "waiting"
    RUNNING = "running"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class ContainerState:
    """Lifecycle state of one container.

    Only ``TERMINATED`` states carry ``started_at``/``finished_at``; the API
    may still omit either timestamp, in which case they are ``None``.
    """

    kind: StateKind
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exit_code: int | None = None
    reason: str | None = None


@dataclass(frozen=True)
class ContainerStatus:
    name: str
    state: ContainerState


@dataclass(frozen=True)
class WatchedPod:
    """Immutable snapshot of a pod as last observed by the change feed."""

    namespace: str
    name: str
    uid: str
    resource_version: str | None = None
    container_statuses: tuple[ContainerStatus, ...] = ()

    @property
    def key(self) -> str:
        return resource_key(self.namespace, self.name)


def resource_key(namespace: str | None, name: str) -> str:
    """Return the canonical ``<namespace>/<name>`` key (``<name>`` when unnamespaced)."""
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_key(key: str) -> tuple[str, str]:
    """Inverse of :func:`resource_key`; the namespace is empty for bare names."""
    namespace, separator, name = key.partition("/")
    if not separator:
        return "", key
    return namespace, name


def _as_utc(value: Any) -> datetime | None:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _state_from_api(state: Any) -> ContainerState:
    terminated = getattr(state, "terminated", None)
    if terminated is not None:
        return ContainerState(
            kind=StateKind.TERMINATED,
            started_at=_as_utc(getattr(terminated, "started_at", None)),
            finished_at=_as_utc(getattr(terminated, "finished_at", None)),
            exit_code=getattr(terminated, "exit_code", None),
            reason=getattr(terminated, "reason", None),
        )
    if getattr(state, "running", None) is not None:
        return ContainerState(kind=StateKind.RUNNING)
    return ContainerState(kind=StateKind.WAITING)


def pod_from_api(obj: Any) -> WatchedPod | None:
    """Convert a ``V1Pod`` (or a duck-typed stand-in) into a :class:`WatchedPod`.

    Returns ``None`` when the object has no ``metadata.name``; such objects
    cannot be keyed and are ignored by the feed.
    """
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        return None

    status = getattr(obj, "status", None)
    statuses = tuple(
        ContainerStatus(
            name=container_status.name,
            state=_state_from_api(getattr(container_status, "state", None)),
        )
        for container_status in (getattr(status, "container_statuses", None) or [])
    )
    return WatchedPod(
        namespace=getattr(metadata, "namespace", None) or "",
        name=name,
        uid=getattr(metadata, "uid", None) or "",
        resource_version=getattr(metadata, "resource_version", None),
        container_statuses=statuses,
    )
