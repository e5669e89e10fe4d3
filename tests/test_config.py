"""Tests for the flowbot configuration system and logging setup."""

from __future__ import annotations

import json
import logging
import os
import platform
from pathlib import Path

import pytest
import tomli_w

from flowbot.config import ConfigManager, FlowbotConfig, configure_logging
from flowbot.config.defaults import DEFAULT_CONFIG
from flowbot.config.logging import JSONFormatter, SanitizingFilter, sanitize_log_message
from flowbot.config.manager import deep_merge
from flowbot.config.schema import RuntimeSection, StorageSection

# ------------------------------------------------------------------
# ConfigManager — load
# ------------------------------------------------------------------


class TestLoadNoFile:
    """Loading when no config file exists returns pure defaults."""

    def test_returns_flowbot_config(self, tmp_path: Path) -> None:
        assert isinstance(ConfigManager(config_dir=tmp_path).load(), FlowbotConfig)

    def test_default_runtime_limits(self, tmp_path: Path) -> None:
        cfg = ConfigManager(config_dir=tmp_path).load()
        assert cfg.runtime.max_flow_depth == 50
        assert cfg.runtime.max_loop_iterations == 10_000
        assert cfg.runtime.expression_timeout_ms == 5000
        assert cfg.runtime.strict_variables is False
        assert cfg.runtime.stop_on_error is True

    def test_default_storage(self, tmp_path: Path) -> None:
        cfg = ConfigManager(config_dir=tmp_path).load()
        assert cfg.storage.backend == "memory"
        assert cfg.get_storage_path() == Path("~/.local/share/flowbot/state.db").expanduser()

    def test_defaults_match_schema(self, tmp_path: Path) -> None:
        cfg = ConfigManager(config_dir=tmp_path).load()
        assert cfg.model_dump() == FlowbotConfig(**DEFAULT_CONFIG).model_dump()

    def test_exists_false(self, tmp_path: Path) -> None:
        assert ConfigManager(config_dir=tmp_path).exists() is False


# ------------------------------------------------------------------
# ConfigManager — save / reload round-trip
# ------------------------------------------------------------------


class TestSaveAndReload:
    def test_round_trip_custom_values(self, tmp_path: Path) -> None:
        mgr = ConfigManager(config_dir=tmp_path)
        cfg = FlowbotConfig(
            runtime=RuntimeSection(max_flow_depth=10, strict_variables=True),
            storage=StorageSection(backend="sqlite", path="/tmp/flowbot-test/state.db"),
        )
        mgr.save(cfg)
        reloaded = mgr.load()
        assert reloaded.runtime.max_flow_depth == 10
        assert reloaded.runtime.strict_variables is True
        assert reloaded.storage.backend == "sqlite"
        assert mgr.exists() is True

    def test_save_creates_directory(self, tmp_path: Path) -> None:
        mgr = ConfigManager(config_dir=tmp_path / "nested" / "dir")
        mgr.save(FlowbotConfig())
        assert mgr.get_config_path().is_file()

    @pytest.mark.skipif(
        platform.system() not in ("Linux", "Darwin"), reason="chmod only on Linux/macOS"
    )
    def test_permissions_are_600(self, tmp_path: Path) -> None:
        mgr = ConfigManager(config_dir=tmp_path)
        mgr.save(FlowbotConfig())
        mode = os.stat(mgr.get_config_path()).st_mode & 0o777
        assert mode == 0o600


class TestPartialAndBrokenFiles:
    def test_partial_section_keeps_defaults(self, tmp_path: Path) -> None:
        with open(tmp_path / "config.toml", "wb") as fh:
            tomli_w.dump({"runtime": {"max_flow_depth": 7}}, fh)
        cfg = ConfigManager(config_dir=tmp_path).load()
        assert cfg.runtime.max_flow_depth == 7
        assert cfg.runtime.max_parallel == 50
        assert cfg.logging.level == "INFO"

    def test_invalid_toml_falls_back(self, tmp_path: Path) -> None:
        (tmp_path / "config.toml").write_text("not [valid toml")
        cfg = ConfigManager(config_dir=tmp_path).load()
        assert cfg.runtime.max_flow_depth == 50

    def test_env_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FLOWBOT_RUNTIME__MAX_PARALLEL", "3")
        cfg = FlowbotConfig()
        assert cfg.runtime.max_parallel == 3


class TestDeepMerge:
    def test_nested_merge(self) -> None:
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        merged = deep_merge(base, {"a": {"y": 3}, "c": 4})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}
        assert base == {"a": {"x": 1, "y": 2}, "b": 1}


# ------------------------------------------------------------------
# Logging
# ------------------------------------------------------------------


class TestSanitize:
    @pytest.mark.parametrize(
        ("message", "leak"),
        [
            ("Authorization: Bearer abc.def-123", "abc.def-123"),
            ("connecting with token=s3cr3t-value", "s3cr3t-value"),
            ('{"password": "hunter2"}', "hunter2"),
            ("webhook secret: topsecret", "topsecret"),
        ],
    )
    def test_redacts(self, message: str, leak: str) -> None:
        assert leak not in sanitize_log_message(message)

    def test_plain_messages_untouched(self) -> None:
        assert sanitize_log_message("Pipe api connected") == "Pipe api connected"

    def test_filter_cleans_args(self) -> None:
        record = logging.LogRecord(
            "flowbot", logging.INFO, __file__, 1, "auth %s", ("Bearer xyz123",), None
        )
        SanitizingFilter().filter(record)
        assert record.getMessage() == "auth Bearer [REDACTED]"


@pytest.mark.usefixtures("restore_root_logging")
class TestConfigureLogging:
    def test_json_format(self) -> None:
        configure_logging(level="DEBUG", format="json")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_json_formatter_fields(self) -> None:
        record = logging.LogRecord("flowbot.engine", logging.WARNING, __file__, 1, "hi", (), None)
        record.flow = "greet"
        data = json.loads(JSONFormatter().format(record))
        assert data["level"] == "WARNING"
        assert data["logger"] == "flowbot.engine"
        assert data["flow"] == "greet"
        assert "trigger" not in data

    def test_sanitize_can_be_disabled(self) -> None:
        configure_logging(sanitize_logs=False)
        assert logging.getLogger().handlers[0].filters == []
