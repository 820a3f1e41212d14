from __future__ import annotations

import json
import logging
import sys
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from latencyprofile.src.__main__ import JSONFormatter, main, redact_sensitive_text
from latencyprofile.src.config import ConfigError


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
        assert "thread" in parsed
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
            msg="token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi"
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message


def test_redaction_leaves_ordinary_text_alone() -> None:
    text = "Evaluated 2 revision(s) for profile 'Default': converged=True"

    assert redact_sensitive_text(text) == text


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def _controller(self, abort: bool = False) -> MagicMock:
        controller = MagicMock()
        controller.ready = threading.Event()
        controller.aborted = threading.Event()

        def fake_run_forever(shutdown_event: threading.Event | None = None) -> None:
            if abort:
                controller.aborted.set()
            if shutdown_event is not None:
                shutdown_event.set()

        controller.run_forever.side_effect = fake_run_forever
        return controller

    def test_main_wires_components(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("HEALTH_PORT", "9191")
        monkeypatch.setenv("OPERATOR_NAME", "kcm")
        controller = self._controller()
        core, custom = SimpleNamespace(name="core"), SimpleNamespace(name="custom")

        with (
            patch("latencyprofile.src.__main__.load_kube_configuration") as mock_load,
            patch("latencyprofile.src.__main__.build_clients", return_value=(core, custom)),
            patch(
                "latencyprofile.src.__main__.LatencyProfileController",
                return_value=controller,
            ) as mock_controller_class,
            patch("latencyprofile.src.__main__.start_health_server") as mock_health,
            patch("latencyprofile.src.__main__.signal.signal"),
        ):
            exit_code = main()

        assert exit_code == 0
        mock_load.assert_called_once()
        kwargs = mock_controller_class.call_args.kwargs
        assert kwargs["core_api"] is core
        assert kwargs["custom_api"] is custom
        assert kwargs["config"].operator_name == "kcm"
        health_kwargs = mock_health.call_args.kwargs
        assert health_kwargs["port"] == 9191
        assert health_kwargs["ready"] is controller.ready
        assert health_kwargs["aborted"] is controller.aborted
        controller.run_forever.assert_called_once()
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_returns_nonzero_when_aborted(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        with (
            patch("latencyprofile.src.__main__.load_kube_configuration"),
            patch(
                "latencyprofile.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch(
                "latencyprofile.src.__main__.LatencyProfileController",
                return_value=self._controller(abort=True),
            ),
            patch("latencyprofile.src.__main__.start_health_server") as mock_health,
            patch("latencyprofile.src.__main__.signal.signal"),
        ):
            assert main() == 1

        mock_health.return_value.shutdown.assert_called_once()

    def test_main_rejects_invalid_config_before_connecting(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("RESYNC_SECONDS", "never")

        with (
            patch("latencyprofile.src.__main__.load_kube_configuration") as mock_load,
            pytest.raises(ConfigError),
        ):
            main()

        mock_load.assert_not_called()
