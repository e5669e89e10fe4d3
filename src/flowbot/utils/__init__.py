"""Shared utilities: duration parsing and backoff policies."""

from flowbot.utils.backoff import BackoffPolicy
from flowbot.utils.duration import parse_duration

__all__ = ["BackoffPolicy", "parse_duration"]
