"""Built-in leaf actions."""

from __future__ import annotations

from flowbot.actions.builtin.channel import get_channel_actions
from flowbot.actions.builtin.member import get_member_actions
from flowbot.actions.builtin.message import get_message_actions
from flowbot.actions.builtin.misc import get_misc_actions
from flowbot.actions.builtin.pipes import get_pipe_actions
from flowbot.actions.builtin.state import get_state_actions
from flowbot.actions.models import ActionHandler


def get_builtin_actions() -> list[ActionHandler]:
    """Every built-in handler, in registration order."""
    return [
        *get_message_actions(),
        *get_member_actions(),
        *get_channel_actions(),
        *get_state_actions(),
        *get_misc_actions(),
        *get_pipe_actions(),
    ]


__all__ = [
    "get_builtin_actions",
    "get_channel_actions",
    "get_member_actions",
    "get_message_actions",
    "get_misc_actions",
    "get_pipe_actions",
    "get_state_actions",
]
