from __future__ import annotations

import argparse
import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from logshipper.src.errors import ConfigError

VERSION = "0.3.0"
DEFAULT_TELEGRAM_API_URL = "https://api.telegram.org"


@dataclass(frozen=True)
class ShipperConfig:
    """Immutable runtime configuration built once at startup.

    Every component receives the pieces it needs from this object instead of
    reading flags or environment variables on its own.

    Attributes:
        delay_seconds: Staleness window; a terminated container is shipped
            only while ``now - finished_at`` is below it.
        chat_id: Telegram chat receiving the log documents.
        kubeconfig: Path to a kubeconfig file, empty for in-cluster credentials.
        namespace: Namespace whose pods are watched.
        pod_name_patterns: Compiled regexes; a pod is admitted when any of
            them matches its name. Empty admits every pod.
        container_name_patterns: Exact container names to ship. Empty admits
            every container.
        tail_lines: Maximum trailing log lines fetched per container.
    """

    delay_seconds: int
    chat_id: int
    telegram_token: str = field(repr=False)
    telegram_api_url: str = DEFAULT_TELEGRAM_API_URL
    kubeconfig: str = ""
    namespace: str = "default"
    label_selector: str = ""
    pod_name_patterns: tuple[re.Pattern[str], ...] = ()
    container_name_patterns: tuple[str, ...] = ()
    tail_lines: int = 100000
    workers: int = 1
    shipping_workers: int = 4
    shipping_backlog: int = 256
    cache_sync_timeout_seconds: int = 120
    health_port: int = 8080


def check_range(
    name: str,
    value: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer") from exc


def version_text(commit: str | None = None) -> str:
    """Return the two-column version banner printed by ``--version``."""
    rows = [("version:", VERSION), ("git commit:", commit or "unknown")]
    width = max(len(label) for label, _ in rows) + 2
    return "\n".join(f"{label:<{width}}{value}" for label, value in rows)


class _VersionAction(argparse.Action):
    def __init__(self, option_strings: Sequence[str], dest: str, **kwargs: object) -> None:
        super().__init__(option_strings, dest, nargs=0, help="print version and exit")

    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: object,
        option_string: str | None = None,
    ) -> None:
        parser.exit(0, version_text(os.getenv("GIT_SHA")) + "\n")


def build_parser(env: Mapping[str, str]) -> argparse.ArgumentParser:
    """Build the command-line parser.

    Integer flags default to ``None``; :func:`load_config` resolves their
    environment fallbacks after parsing so ``--version`` never depends on them.
    """
    parser = argparse.ArgumentParser(
        prog="podlog-shipper",
        description="Ship logs of freshly terminated pod containers to Telegram.",
    )
    parser.add_argument("--version", action=_VersionAction)
    parser.add_argument(
        "--delay",
        type=int,
        default=None,
        help=(
            "seconds after container termination during which logs are still shipped "
            "(env DELAY_SECONDS, default 60)"
        ),
    )
    parser.add_argument(
        "--chat-id",
        type=int,
        default=None,
        help="telegram chat id (env TELEGRAM_CHAT_ID, required)",
    )
    parser.add_argument(
        "--kubeconfig",
        default=env.get("KUBECONFIG", ""),
        help="absolute path to the kubeconfig file; in-cluster config when empty",
    )
    parser.add_argument(
        "--namespace",
        default=env.get("WATCH_NAMESPACE", "default"),
        help="monitored namespace",
    )
    parser.add_argument(
        "--label-selector",
        default=env.get("LABEL_SELECTOR", ""),
        help="optional label selector narrowing the watched pods",
    )
    parser.add_argument(
        "--pod-name-pattern",
        action="append",
        default=[],
        help="pod name regexp to monitor (repeatable)",
    )
    parser.add_argument(
        "--container-name-pattern",
        action="append",
        default=[],
        help="container name to monitor (repeatable)",
    )
    parser.add_argument(
        "--tail",
        type=int,
        default=None,
        help="tail last num lines (env TAIL_LINES, default 100000)",
    )
    parser.add_argument("--workers", type=int, default=None, help="env WORKERS, default 1")
    parser.add_argument(
        "--shipping-workers", type=int, default=None, help="env SHIPPING_WORKERS, default 4"
    )
    parser.add_argument(
        "--shipping-backlog", type=int, default=None, help="env SHIPPING_BACKLOG, default 256"
    )
    parser.add_argument(
        "--cache-sync-timeout",
        type=int,
        default=None,
        help=(
            "seconds to wait for the initial pod listing before giving up "
            "(env CACHE_SYNC_TIMEOUT_SECONDS, default 120)"
        ),
    )
    parser.add_argument(
        "--health-port", type=int, default=None, help="env HEALTH_PORT, default 8080"
    )
    parser.add_argument(
        "--telegram-api-url",
        default=env.get("TELEGRAM_API_URL", DEFAULT_TELEGRAM_API_URL),
    )
    return parser


_INT_ENV_FALLBACKS = (
    ("delay", "DELAY_SECONDS", 60),
    ("chat_id", "TELEGRAM_CHAT_ID", 0),
    ("tail", "TAIL_LINES", 100000),
    ("workers", "WORKERS", 1),
    ("shipping_workers", "SHIPPING_WORKERS", 4),
    ("shipping_backlog", "SHIPPING_BACKLOG", 256),
    ("cache_sync_timeout", "CACHE_SYNC_TIMEOUT_SECONDS", 120),
    ("health_port", "HEALTH_PORT", 8080),
)


def _compile_patterns(patterns: Sequence[str]) -> tuple[re.Pattern[str], ...]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as exc:
            raise ConfigError(f"invalid --pod-name-pattern {pattern!r}: {exc}") from exc
    return tuple(compiled)


def load_config(
    argv: Sequence[str] | None = None, env: Mapping[str, str] | None = None
) -> ShipperConfig:
    """Parse *argv* and *env* into a validated :class:`ShipperConfig`.

    ``argparse`` exits with status 2 on malformed flags; semantic problems
    raise :class:`ConfigError`.
    """
    values = env if env is not None else os.environ
    args = build_parser(values).parse_args(argv)
    for dest, name, default in _INT_ENV_FALLBACKS:
        if getattr(args, dest) is None:
            setattr(args, dest, env_int(values, name, default))

    token = values.get("TELEGRAM_BOT_TOKEN", "").strip()
    if not token:
        raise ConfigError("TELEGRAM_BOT_TOKEN must be set")
    if args.chat_id == 0:
        raise ConfigError("--chat-id (or TELEGRAM_CHAT_ID) must be set to a non-zero id")
    if not args.namespace.strip():
        raise ConfigError("--namespace must be a non-empty string")

    return ShipperConfig(
        delay_seconds=check_range("--delay", args.delay, minimum=1),
        chat_id=args.chat_id,
        telegram_token=token,
        telegram_api_url=args.telegram_api_url.rstrip("/"),
        kubeconfig=args.kubeconfig.strip(),
        namespace=args.namespace.strip(),
        label_selector=args.label_selector.strip(),
        pod_name_patterns=_compile_patterns(args.pod_name_pattern),
        container_name_patterns=tuple(args.container_name_pattern),
        tail_lines=check_range("--tail", args.tail, minimum=1),
        workers=check_range("--workers", args.workers, minimum=1),
        shipping_workers=check_range("--shipping-workers", args.shipping_workers, minimum=1),
        shipping_backlog=check_range("--shipping-backlog", args.shipping_backlog, minimum=1),
        cache_sync_timeout_seconds=check_range(
            "--cache-sync-timeout", args.cache_sync_timeout, minimum=1
        ),
        health_port=check_range("--health-port", args.health_port, minimum=1, maximum=65535),
    )
