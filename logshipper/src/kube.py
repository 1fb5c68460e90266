from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api
from urllib3.exceptions import HTTPError

from logshipper.src.errors import LogFetchError

LOGGER = logging.getLogger(__name__)

_LOG_CHUNK_BYTES = 64 * 1024


def load_kube_configuration(kubeconfig: str = "") -> None:
    """Load Kubernetes client configuration.

    Uses the given kubeconfig file when a path is set and in-cluster
    service-account credentials otherwise. Failures propagate: without
    credentials there is nothing to watch.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
    else:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")


def build_core_api() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def fetch_container_logs(
    core_api: CoreV1Api,
    namespace: str,
    pod_name: str,
    container_name: str,
    tail_lines: int,
) -> bytes:
    """Stream up to *tail_lines* trailing log lines of one container into memory.

    The response is read unparsed (``_preload_content=False``) so the
    client does not try to decode arbitrary log bytes as UTF-8.
    """
    try:
        response = core_api.read_namespaced_pod_log(
            name=pod_name,
            namespace=namespace,
            container=container_name,
            tail_lines=tail_lines,
            _preload_content=False,
        )
    except ApiException as exc:
        raise LogFetchError(
            f"failed to open log stream for {namespace}/{pod_name}/{container_name}: "
            f"status={exc.status} reason={exc.reason}"
        ) from exc

    chunks: list[bytes] = []
    try:
        for chunk in response.stream(_LOG_CHUNK_BYTES):
            chunks.append(chunk)
    except HTTPError as exc:
        raise LogFetchError(
            f"failed to read log stream for {namespace}/{pod_name}/{container_name}: {exc}"
        ) from exc
    finally:
        response.release_conn()
    return b"".join(chunks)
