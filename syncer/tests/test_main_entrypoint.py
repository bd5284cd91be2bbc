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
from kubernetes.config.config_exception import ConfigException

from syncer.src.__main__ import (
    JSONFormatter,
    RedactingFormatter,
    _parse_bool_env,
    configure_logging,
    main,
)


def _make_record(
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


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(_make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert parsed["thread"]
        assert "ts" in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = _make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_omits_error_when_no_exception(self) -> None:
        parsed = json.loads(JSONFormatter().format(_make_record()))

        assert "error" not in parsed

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(_make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = _make_record(
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

    def test_format_redacts_sensitive_values_in_exception_text(self) -> None:
        try:
            raise ValueError("token=abc123")
        except ValueError:
            record = _make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "[REDACTED]" in parsed["error"]
        assert "abc123" not in parsed["error"]


def test_human_readable_formatter_redacts() -> None:
    output = RedactingFormatter("%(levelname)s %(message)s").format(
        _make_record(msg="password=hunter2")
    )

    assert output == "INFO password=[REDACTED]"


class TestParseBoolEnv:
    """Tests for the _parse_bool_env helper."""

    def test_returns_default_when_unset(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TEST_BOOL_VAR", raising=False)
        assert _parse_bool_env("TEST_BOOL_VAR", default=False) is False
        assert _parse_bool_env("TEST_BOOL_VAR", default=True) is True

    @pytest.mark.parametrize("value", ["true", "True", "TRUE", "1", "yes", "on"])
    def test_truthy_values(self, monkeypatch: pytest.MonkeyPatch, value: str) -> None:
        monkeypatch.setenv("TEST_BOOL_VAR", value)
        assert _parse_bool_env("TEST_BOOL_VAR") is True

    @pytest.mark.parametrize("value", ["false", "False", "0", "no", "off", ""])
    def test_falsy_values(self, monkeypatch: pytest.MonkeyPatch, value: str) -> None:
        monkeypatch.setenv("TEST_BOOL_VAR", value)
        assert _parse_bool_env("TEST_BOOL_VAR") is False

    def test_whitespace_is_stripped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TEST_BOOL_VAR", "  true  ")
        assert _parse_bool_env("TEST_BOOL_VAR") is True


class TestConfigureLogging:
    def setup_method(self) -> None:
        self.handlers = list(logging.root.handlers)
        self.level = logging.root.level

    def teardown_method(self) -> None:
        logging.root.handlers = self.handlers
        logging.root.setLevel(self.level)

    def test_debug_overrides_log_level(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DEBUG", "true")
        monkeypatch.setenv("LOG_LEVEL", "ERROR")

        configure_logging()

        assert logging.root.level == logging.DEBUG
        assert logging.getLogger("kubernetes").level == logging.INFO
        assert logging.getLogger("urllib3").level == logging.INFO

    def test_log_level_and_json_output_by_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DEBUG", raising=False)
        monkeypatch.delenv("HUMAN_READABLE_LOGS", raising=False)
        monkeypatch.setenv("LOG_LEVEL", "warning")

        configure_logging()

        assert logging.root.level == logging.WARNING
        assert isinstance(logging.root.handlers[-1].formatter, JSONFormatter)

    def test_human_readable_logs(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DEBUG", raising=False)
        monkeypatch.setenv("HUMAN_READABLE_LOGS", "1")

        configure_logging()

        assert isinstance(logging.root.handlers[-1].formatter, RedactingFormatter)


def _stopping_controller(failed: bool = False) -> MagicMock:
    mock_controller = MagicMock()
    mock_controller.ready = threading.Event()
    mock_controller.failed = threading.Event()

    # run_forever should set the shutdown event to exit immediately
    def fake_run_forever(shutdown_event: threading.Event | None = None) -> None:
        if failed:
            mock_controller.failed.set()
        if shutdown_event is not None:
            shutdown_event.set()

    mock_controller.run_forever.side_effect = fake_run_forever
    return mock_controller


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def setup_method(self) -> None:
        self.handlers = list(logging.root.handlers)

    def teardown_method(self) -> None:
        logging.root.handlers = self.handlers

    def test_main_wires_components(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("KUBECONFIG", "/tmp/kubeconfig")
        monkeypatch.setenv("KUBE_MASTER_URL", "https://api.example:6443")
        monkeypatch.delenv("HEALTH_PORT", raising=False)
        mock_controller = _stopping_controller()
        core_api = SimpleNamespace()

        with (
            patch("syncer.src.__main__.load_kube_configuration") as mock_load,
            patch("syncer.src.__main__.build_core_api", return_value=core_api),
            patch(
                "syncer.src.__main__.build_controller_from_env",
                return_value=mock_controller,
            ) as mock_build,
            patch("syncer.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            main()

        mock_load.assert_called_once_with(
            kubeconfig="/tmp/kubeconfig", master_url="https://api.example:6443"
        )
        mock_build.assert_called_once_with(core_api=core_api)
        mock_controller.run_forever.assert_called_once()
        assert mock_health.call_args.kwargs["ready"] is mock_controller.ready
        assert mock_health.call_args.kwargs["port"] == 8080
        assert mock_health.call_args.kwargs["cache_status"] == mock_controller.readiness
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_registers_signal_handlers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Verify SIGTERM and SIGINT handlers are registered."""
        registered_signals: list[int] = []
        original_signal = signal.signal

        def tracking_signal(signum: int, handler: object) -> object:
            registered_signals.append(signum)
            return original_signal(signum, signal.SIG_DFL)

        with (
            patch("syncer.src.__main__.load_kube_configuration"),
            patch("syncer.src.__main__.build_core_api", return_value=SimpleNamespace()),
            patch(
                "syncer.src.__main__.build_controller_from_env",
                return_value=_stopping_controller(),
            ),
            patch("syncer.src.__main__.start_health_server") as mock_health,
            patch("syncer.src.__main__.signal.signal", side_effect=tracking_signal),
        ):
            mock_health.return_value = MagicMock()
            main()

        assert signal.SIGTERM in registered_signals
        assert signal.SIGINT in registered_signals

    def test_main_exits_when_cluster_config_is_missing(self) -> None:
        build = MagicMock()

        with (
            patch(
                "syncer.src.__main__.load_kube_configuration",
                side_effect=ConfigException("no config"),
            ),
            patch("syncer.src.__main__.build_controller_from_env", build),
            pytest.raises(SystemExit) as excinfo,
        ):
            main()

        assert excinfo.value.code == 1
        build.assert_not_called()

    def test_main_exits_non_zero_after_fatal_controller_error(self) -> None:
        with (
            patch("syncer.src.__main__.load_kube_configuration"),
            patch("syncer.src.__main__.build_core_api", return_value=SimpleNamespace()),
            patch(
                "syncer.src.__main__.build_controller_from_env",
                return_value=_stopping_controller(failed=True),
            ),
            patch("syncer.src.__main__.start_health_server") as mock_health,
            pytest.raises(SystemExit) as excinfo,
        ):
            mock_health.return_value = MagicMock()
            main()

        assert excinfo.value.code == 1
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_rejects_invalid_health_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with (
            patch("syncer.src.__main__.load_kube_configuration"),
            patch("syncer.src.__main__.build_core_api", return_value=SimpleNamespace()),
            patch(
                "syncer.src.__main__.build_controller_from_env",
                return_value=SimpleNamespace(ready=threading.Event()),
            ),
            pytest.raises(ValueError, match="HEALTH_PORT must be <= 65535, got: 70000"),
        ):
            main()


def test_build_info_is_published(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_VERSION", "1.2.3")
    published: list[dict[str, Any]] = []
    handlers = list(logging.root.handlers)

    try:
        with (
            patch("syncer.src.__main__.METRICS") as mock_metrics,
            patch(
                "syncer.src.__main__.load_kube_configuration",
                side_effect=ConfigException("no config"),
            ),
            pytest.raises(SystemExit),
        ):
            mock_metrics.build_info.info.side_effect = published.append
            main()
    finally:
        logging.root.handlers = handlers

    assert published[0]["version"] == "1.2.3"
