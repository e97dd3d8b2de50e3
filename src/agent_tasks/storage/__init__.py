"""SQLite-backed resource store."""

from agent_tasks.storage.repository import (
    ChangeType,
    ResourceChange,
    ResourceStore,
    SqliteResourceStore,
)

__all__ = ["ChangeType", "ResourceChange", "ResourceStore", "SqliteResourceStore"]
