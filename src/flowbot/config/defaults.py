"""Default configuration values for flowbot."""

from __future__ import annotations

DEFAULT_CONFIG: dict[str, dict[str, object]] = {
    "runtime": {
        "max_flow_depth": 50,
        "max_loop_iterations": 10_000,
        "max_parallel": 50,
        "max_actions": 1000,
        "stop_on_error": True,
        "expression_timeout_ms": 5000,
        "strict_variables": False,
        "allow_override": True,
        "error_message": "",
    },
    "storage": {
        "backend": "memory",
        "path": "~/.local/share/flowbot/state.db",
    },
    "logging": {
        "level": "INFO",
        "format": "text",
        "sanitize": True,
    },
    "scheduler": {
        "enabled": True,
        "timezone": "",
    },
    "webhooks": {
        "host": "127.0.0.1",
        "port": 8080,
        "prefix": "",
    },
}
