"""Pipes — connectors to external systems."""

from flowbot.pipes.base import ConnectionState, Pipe, PipeResponse, ReconnectingPipe
from flowbot.pipes.manager import PIPE_TYPES, PipeManager

__all__ = [
    "PIPE_TYPES",
    "ConnectionState",
    "Pipe",
    "PipeManager",
    "PipeResponse",
    "ReconnectingPipe",
]
