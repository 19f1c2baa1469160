# src/agenda_planner/storage/__init__.py
"""
Goal store backends for the Agenda Planner.

Backends:
- memory: InMemoryGoalStore (testing, single process)
- sqlite: SqliteGoalStore (development, single instance)
- postgres: PostgresGoalStore (production, multiple instances)

The SQL backends are imported lazily so that their drivers are only
required when selected.
"""

from __future__ import annotations

import logging

from ..config import StorageConfig
from ..exceptions import ConfigError
from .base import GOAL_COLUMNS, GOALS_TABLE, JOURNAL_TABLE, GoalStore
from .memory import InMemoryGoalStore

logger = logging.getLogger(__name__)


def create_goal_store(storage_config: StorageConfig | None = None) -> GoalStore:
    """
    Create an uninitialised goal store for the configured backend.

    Args:
        storage_config: Backend settings; defaults to the memory backend

    Returns:
        A GoalStore; call ``initialize(storage_config.to_store_config())``
        before use

    Raises:
        ConfigError: If the backend name is unknown or misconfigured
    """
    storage_config = storage_config or StorageConfig()

    if storage_config.backend == "memory":
        return InMemoryGoalStore()

    elif storage_config.backend == "sqlite":
        from .sqlite import SqliteGoalStore

        return SqliteGoalStore()

    elif storage_config.backend == "postgres":
        storage_config.validate_backend()
        from .postgres import PostgresGoalStore

        return PostgresGoalStore()

    else:
        raise ConfigError(f"Unknown storage backend: {storage_config.backend}")


async def open_goal_store(storage_config: StorageConfig | None = None) -> GoalStore:
    """Create a goal store and initialize it from ``storage_config``."""
    storage_config = storage_config or StorageConfig()
    store = create_goal_store(storage_config)
    await store.initialize(storage_config.to_store_config())
    logger.info(f"Goal store ready with {storage_config.backend} backend")
    return store


__all__ = [
    "GOALS_TABLE",
    "GOAL_COLUMNS",
    "JOURNAL_TABLE",
    "GoalStore",
    "InMemoryGoalStore",
    "create_goal_store",
    "open_goal_store",
]
