"""State collaborator — scoped variables and storage adapters."""

from flowbot.state.manager import StateManager
from flowbot.state.scopes import SCOPES, build_key, scope_ids
from flowbot.state.storage import (
    MemoryStorage,
    SQLiteStorage,
    StorageAdapter,
    StoredValue,
    create_storage,
)

__all__ = [
    "SCOPES",
    "MemoryStorage",
    "SQLiteStorage",
    "StateManager",
    "StorageAdapter",
    "StoredValue",
    "build_key",
    "create_storage",
    "scope_ids",
]
