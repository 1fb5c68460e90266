"""Telegram Bot API notification sink.

Log buffers are uploaded as documents so that large tails survive the
4096-character limit of plain messages.
"""

from __future__ import annotations

import logging

import httpx

from logshipper.src.errors import DeliveryError

LOGGER = logging.getLogger(__name__)

_CAPTION_LIMIT = 1024


class TelegramSink:
    """Delivers log buffers to one Telegram chat via ``sendDocument``.

    Args:
        token:    Bot token issued by BotFather.
        api_url:  Bot API base URL; overridable for self-hosted Bot API servers.
        timeout:  HTTP request timeout in seconds.
        client:   Optional pre-built ``httpx.Client`` (tests inject a mock transport).
    """

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.telegram.org",
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        if not token:
            raise ValueError("Telegram bot token must not be empty")
        self._token = token
        self._api_url = api_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, chat_id: int, buffer: bytes, label: str) -> None:
        """Upload *buffer* as ``<label>.log`` to *chat_id*.

        Raises :class:`DeliveryError` on transport failures, non-2xx
        responses and ``"ok": false`` replies.
        """
        url = f"{self._api_url}/bot{self._token}/sendDocument"
        try:
            response = self._client.post(
                url,
                data={"chat_id": str(chat_id), "caption": label[:_CAPTION_LIMIT]},
                files={"document": (f"{label}.log", buffer, "text/plain")},
            )
        except httpx.TimeoutException as exc:
            raise DeliveryError(f"telegram request timed out for {label}") from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(f"telegram request failed for {label}: {exc}") from exc

        if not response.is_success:
            raise DeliveryError(
                f"telegram rejected {label}: status={response.status_code} "
                f"body={response.text[:200]}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise DeliveryError(f"telegram returned a non-JSON reply for {label}") from exc
        if not payload.get("ok", False):
            raise DeliveryError(
                f"telegram rejected {label}: {payload.get('description', 'unknown error')}"
            )
        LOGGER.debug("Delivered %d byte(s) for %s to chat %s", len(buffer), label, chat_id)

    def close(self) -> None:
        self._client.close()
