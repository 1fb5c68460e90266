from __future__ import annotations

import logging

from logshipper.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ShipperError(RuntimeError):
    """Base class for errors raised by the log shipper."""


class ConfigError(ShipperError):
    """Raised when flags or environment variables are invalid."""


class CacheSyncTimeoutError(ShipperError):
    """Raised when the pod cache does not finish its initial listing in time."""


class FeedAuthorizationError(ShipperError):
    """Raised when the API server rejects the pod list/watch with 401 or 403."""


class ShippingBacklogFullError(ShipperError):
    """Raised when a pod snapshot cannot be handed to the shipping pool."""


class LogFetchError(ShipperError):
    """Raised when container logs cannot be streamed from the API server."""


class DeliveryError(ShipperError):
    """Raised when the notification sink rejects a log buffer."""


def handle_error(err: BaseException, key: str | None = None) -> None:
    """Process-wide sink for errors nobody upstream can act on any more."""
    METRICS.dropped_keys_total.inc()
    if key is None:
        LOGGER.error("Unhandled error: %s", err, exc_info=err)
    else:
        LOGGER.error("Unhandled error for %s: %s", key, err, exc_info=err)
