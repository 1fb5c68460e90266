from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from logshipper.src.__main__ import JSONFormatter, main, redact_sensitive_text
from logshipper.src.errors import CacheSyncTimeoutError, FeedAuthorizationError


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "error" not in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg=(
                "token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi "
                "url=/healthz?access_token=qwerty"
            )
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message
        assert "access_token=qwerty" not in message

    def test_format_redacts_bot_token_in_exception_text(self) -> None:
        try:
            raise RuntimeError(
                "POST https://api.telegram.org/bot123456:AAE-x_yz/sendDocument failed"
            )
        except RuntimeError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "123456:AAE-x_yz" not in parsed["error"]
        assert "/bot[REDACTED]/sendDocument" in parsed["error"]


def test_redact_leaves_ordinary_text_alone() -> None:
    text = "Shipped logs of container app in pod default/worker-1"
    assert redact_sensitive_text(text) == text


@pytest.fixture
def shipper_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "-1001")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    for name in ("KUBECONFIG", "WATCH_NAMESPACE", "HEALTH_PORT", "DELAY_SECONDS"):
        monkeypatch.delenv(name, raising=False)


def _stopping_reconciler() -> MagicMock:
    reconciler = MagicMock()
    reconciler.ready = threading.Event()

    def fake_run(shutdown_event: threading.Event, **_: Any) -> None:
        shutdown_event.set()

    reconciler.run.side_effect = fake_run
    return reconciler


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def test_main_wires_components_and_exits_zero(self, shipper_env: None) -> None:
        reconciler = _stopping_reconciler()
        core_api = SimpleNamespace()

        with (
            patch("logshipper.src.__main__.load_kube_configuration") as mock_load,
            patch("logshipper.src.__main__.build_core_api", return_value=core_api),
            patch("logshipper.src.__main__.TelegramSink") as mock_sink_cls,
            patch(
                "logshipper.src.__main__.build_reconciler", return_value=reconciler
            ) as mock_build,
            patch("logshipper.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            exit_code = main(["--namespace", "batch", "--kubeconfig", "/tmp/kc"])

        assert exit_code == 0
        mock_load.assert_called_once_with("/tmp/kc")
        mock_sink_cls.assert_called_once_with(
            token="123:abc", api_url="https://api.telegram.org"
        )
        build_kwargs = mock_build.call_args.kwargs
        assert build_kwargs["core_api"] is core_api
        assert build_kwargs["sink"] is mock_sink_cls.return_value
        assert build_kwargs["config"].namespace == "batch"
        assert mock_health.call_args.kwargs == {"ready": reconciler.ready, "port": 8080}
        assert reconciler.run.call_args.kwargs["sync_timeout_seconds"] == 120
        mock_health.return_value.shutdown.assert_called_once()
        mock_sink_cls.return_value.close.assert_called_once()

    @pytest.mark.parametrize(
        "error",
        [
            CacheSyncTimeoutError("pod cache did not sync within 120s"),
            FeedAuthorizationError("pod watch denied with status 403 in namespace default"),
        ],
    )
    def test_main_returns_one_on_fatal_runtime_errors(
        self, shipper_env: None, error: Exception
    ) -> None:
        reconciler = MagicMock()
        reconciler.ready = threading.Event()
        reconciler.run.side_effect = error

        with (
            patch("logshipper.src.__main__.load_kube_configuration"),
            patch("logshipper.src.__main__.build_core_api", return_value=SimpleNamespace()),
            patch("logshipper.src.__main__.TelegramSink") as mock_sink_cls,
            patch("logshipper.src.__main__.build_reconciler", return_value=reconciler),
            patch("logshipper.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            exit_code = main([])

        assert exit_code == 1
        mock_health.return_value.shutdown.assert_called_once()
        mock_sink_cls.return_value.close.assert_called_once()

    def test_main_returns_one_on_invalid_configuration(
        self, shipper_env: None, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with (
            patch("logshipper.src.__main__.load_kube_configuration") as mock_load,
            patch("logshipper.src.__main__.build_reconciler") as mock_build,
        ):
            exit_code = main([])

        assert exit_code == 1
        mock_load.assert_not_called()
        mock_build.assert_not_called()

    def test_main_returns_one_without_bot_token(
        self, shipper_env: None, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("TELEGRAM_BOT_TOKEN")

        with patch("logshipper.src.__main__.load_kube_configuration") as mock_load:
            assert main([]) == 1

        mock_load.assert_not_called()

    def test_main_returns_one_when_credentials_fail_to_load(self, shipper_env: None) -> None:
        with (
            patch(
                "logshipper.src.__main__.load_kube_configuration",
                side_effect=RuntimeError("no kubeconfig and not in cluster"),
            ),
            patch("logshipper.src.__main__.build_reconciler") as mock_build,
            patch("logshipper.src.__main__.start_health_server") as mock_health,
        ):
            exit_code = main([])

        assert exit_code == 1
        mock_build.assert_not_called()
        mock_health.assert_not_called()

    def test_main_registers_signal_handlers(self, shipper_env: None) -> None:
        registered_signals: list[int] = []
        original_signal = signal.signal

        def tracking_signal(signum: int, handler: object) -> object:
            registered_signals.append(signum)
            return original_signal(signum, signal.SIG_DFL)

        with (
            patch("logshipper.src.__main__.load_kube_configuration"),
            patch("logshipper.src.__main__.build_core_api", return_value=SimpleNamespace()),
            patch("logshipper.src.__main__.TelegramSink"),
            patch(
                "logshipper.src.__main__.build_reconciler",
                return_value=_stopping_reconciler(),
            ),
            patch("logshipper.src.__main__.start_health_server") as mock_health,
            patch("logshipper.src.__main__.signal.signal", side_effect=tracking_signal),
        ):
            mock_health.return_value = MagicMock()
            main([])

        assert signal.SIGTERM in registered_signals
        assert signal.SIGINT in registered_signals
