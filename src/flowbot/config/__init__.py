"""flowbot configuration system."""

from flowbot.config.logging import configure_logging
from flowbot.config.manager import ConfigManager
from flowbot.config.schema import FlowbotConfig

__all__ = ["ConfigManager", "FlowbotConfig", "configure_logging"]
