# src/agenda_planner/exceptions.py
"""
Custom exceptions for the Agenda Planner.

This module defines a hierarchy of custom exception classes so that callers
can tell configuration problems, store failures and lock failures apart
and handle them in a targeted way.
"""


class AgendaPlannerError(Exception):
    """Base class for all Agenda Planner specific errors."""
    def __init__(self, message: str = "An unspecified error occurred in the agenda planner."):
        super().__init__(message)

class ConfigError(AgendaPlannerError):
    """Raised for errors related to configuration loading or validation."""
    def __init__(self, message: str = "Configuration error."):
        super().__init__(message)

class StorageError(AgendaPlannerError):
    """Base class for errors related to goal store operations."""
    def __init__(self, message: str = "Storage error."):
        super().__init__(message)

class StorageNotInitializedError(StorageError):
    """Raised when a store operation runs before ``initialize()``."""
    def __init__(self, backend: str = "unknown", message: str = "Storage not initialized."):
        self.backend = backend
        super().__init__(f"{message} Backend: '{backend}'")

class GoalNotFoundError(StorageError):
    """
    Raised when a goal ID that must exist is not found in the store.
    Inherits from StorageError as it's a storage-related lookup failure.
    """
    def __init__(self, goal_id: int, message: str = "Goal not found."):
        self.goal_id = goal_id
        super().__init__(f"{message} Goal ID: {goal_id}")

class LockError(AgendaPlannerError):
    """Raised when a session lock cannot be acquired."""
    def __init__(self, lock_name: str = "unknown", message: str = "Failed to acquire session lock."):
        self.lock_name = lock_name
        super().__init__(f"{message} Lock: '{lock_name}'")
