"""Pydantic models for flowbot configuration.

Nested sections are plain ``BaseModel`` so pydantic-settings does not read
environment variables such as ``PATH`` into fields named ``path``. Only the
top-level :class:`FlowbotConfig` extends ``BaseSettings``; override nested
values with ``FLOWBOT_<SECTION>__<FIELD>``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RuntimeSection(BaseModel):
    """Interpreter limits and registration policy."""

    max_flow_depth: int = Field(default=50, ge=1)
    max_loop_iterations: int = Field(default=10_000, ge=1)
    max_parallel: int = Field(default=50, ge=1)
    max_actions: int = Field(default=1000, ge=1)
    stop_on_error: bool = True
    expression_timeout_ms: int = Field(default=5000, ge=1)
    strict_variables: bool = False
    allow_override: bool = True
    error_message: str = ""


class StorageSection(BaseModel):
    """State storage backend."""

    backend: Literal["memory", "sqlite"] = "memory"
    path: str = "~/.local/share/flowbot/state.db"


class LoggingSection(BaseModel):
    level: str = "INFO"
    format: Literal["text", "json"] = "text"
    sanitize: bool = True


class SchedulerSection(BaseModel):
    enabled: bool = True
    timezone: str = ""


class WebhooksSection(BaseModel):
    """Inbound webhook routes mounted on the FastAPI app."""

    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    prefix: str = ""


class FlowbotConfig(BaseSettings):
    """Top-level configuration.

    Maps to the TOML structure:
        [runtime] / [storage] / [logging] / [scheduler] / [webhooks]

    Config file lives at ``~/.config/flowbot/config.toml``.
    """

    model_config = SettingsConfigDict(env_prefix="FLOWBOT_", env_nested_delimiter="__")

    runtime: RuntimeSection = Field(default_factory=RuntimeSection)
    storage: StorageSection = Field(default_factory=StorageSection)
    logging: LoggingSection = Field(default_factory=LoggingSection)
    scheduler: SchedulerSection = Field(default_factory=SchedulerSection)
    webhooks: WebhooksSection = Field(default_factory=WebhooksSection)

    def get_storage_path(self) -> Path:
        """Return the resolved state database path."""
        return Path(self.storage.path).expanduser()
