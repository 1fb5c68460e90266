from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading
from collections.abc import Sequence

from logshipper.src.config import VERSION, load_config
from logshipper.src.errors import ConfigError, ShipperError
from logshipper.src.health import start_health_server
from logshipper.src.kube import build_core_api, load_kube_configuration
from logshipper.src.metrics import METRICS
from logshipper.src.reconciler import build_reconciler
from logshipper.src.telegram import TelegramSink

LOGGER = logging.getLogger(__name__)

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    # Telegram puts the bot token in the URL path: /bot123456:AAE.../sendDocument
    (
        re.compile(r"(/bot)(\d+:[A-Za-z0-9_-]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))
    # httpx logs every request URL at INFO, bot token included
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main(argv: Sequence[str] | None = None) -> int:
    """Entrypoint: load config and credentials, then run the shipper until signalled.

    Returns the process exit status: 0 after a signal-driven shutdown, 1 on
    any fatal configuration, credential, authorization or cache-sync error.
    """
    configure_logging()

    try:
        config = load_config(argv)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1

    METRICS.build_info.info(
        {
            "version": VERSION,
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    LOGGER.info(
        "Watching pods in namespace %s (delay=%ss, tail=%d, pod patterns=%d, container patterns=%d)",
        config.namespace,
        config.delay_seconds,
        config.tail_lines,
        len(config.pod_name_patterns),
        len(config.container_name_patterns),
    )

    try:
        load_kube_configuration(config.kubeconfig)
    except Exception:
        LOGGER.exception("Failed to load Kubernetes credentials")
        return 1
    core_api = build_core_api()

    sink = TelegramSink(token=config.telegram_token, api_url=config.telegram_api_url)
    reconciler = build_reconciler(config=config, core_api=core_api, sink=sink)
    health_server = start_health_server(ready=reconciler.ready, port=config.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    exit_code = 0
    try:
        reconciler.run(shutdown_event, sync_timeout_seconds=config.cache_sync_timeout_seconds)
    except ShipperError as exc:
        LOGGER.error("Fatal: %s", exc)
        exit_code = 1
    finally:
        health_server.shutdown()
        sink.close()

    LOGGER.info("Pod log shipper stopped")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
