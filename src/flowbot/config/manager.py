"""Reads and writes the flowbot TOML config file."""

from __future__ import annotations

import logging
import os
import platform
import stat
import tomllib
from pathlib import Path

import tomli_w

from flowbot.config.defaults import DEFAULT_CONFIG
from flowbot.config.schema import FlowbotConfig

logger = logging.getLogger(__name__)

_CONFIG_DIR = Path("~/.config/flowbot").expanduser()
_CONFIG_FILE = "config.toml"


class ConfigManager:
    """Locates, loads and saves ``config.toml``.

    A missing or unreadable file yields a :class:`FlowbotConfig` built from
    defaults (plus any ``FLOWBOT_`` environment overrides).
    """

    def __init__(self, config_dir: Path | None = None) -> None:
        self._config_dir = config_dir or _CONFIG_DIR

    def load(self) -> FlowbotConfig:
        path = self.get_config_path()
        if not path.is_file():
            logger.debug("Config file not found at %s, using defaults", path)
            return FlowbotConfig()

        try:
            with open(path, "rb") as fh:
                raw = tomllib.load(fh)
        except (tomllib.TOMLDecodeError, OSError) as exc:
            logger.warning("Failed to read config at %s: %s, using defaults", path, exc)
            return FlowbotConfig()

        return FlowbotConfig(**deep_merge(DEFAULT_CONFIG, raw))

    def save(self, config: FlowbotConfig) -> None:
        """Write *config* as TOML; ``chmod 600`` on Linux and macOS."""
        path = self.get_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as fh:
            tomli_w.dump(config.model_dump(), fh)
        if platform.system() in ("Linux", "Darwin"):
            os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
        logger.debug("Config saved to %s", path)

    def exists(self) -> bool:
        return self.get_config_path().is_file()

    def get_config_path(self) -> Path:
        return self._config_dir / _CONFIG_FILE


def deep_merge(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    """Recursively merge *override* into a copy of *base*; partial sections keep defaults."""
    merged: dict[str, object] = {}
    for key in {*base, *override}:
        base_val = base.get(key)
        over_val = override.get(key)
        if isinstance(base_val, dict) and isinstance(over_val, dict):
            merged[key] = deep_merge(base_val, over_val)  # type: ignore[arg-type]
        elif key in override:
            merged[key] = over_val
        else:
            merged[key] = base_val
    return merged
