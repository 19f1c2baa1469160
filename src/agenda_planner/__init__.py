# src/agenda_planner/__init__.py
"""
Agenda Planner - a per-conversation goal stack engine.

Keeps a prioritised stack of active objectives for each (user, session)
pair, mutates it under a session lock on every inbound message, records an
append-only journal of every change, and renders a bounded agenda block
for prompt construction.
"""

from importlib.metadata import PackageNotFoundError, version

from .cache import StackCache, TTLStackCache
from .config import AgendaConfig, StorageConfig, load_config
from .exceptions import (
    AgendaPlannerError,
    ConfigError,
    GoalNotFoundError,
    LockError,
    StorageError,
    StorageNotInitializedError,
)
from .formatter import format_agenda_for_prompt
from .locking import KeyedMutex, LockCoordinator, lock_key, session_lock_name
from .models import (
    AgendaContext,
    ClassifierGoal,
    EvalResult,
    Goal,
    GoalInput,
    GoalSource,
    GoalStatus,
    GoalType,
    JournalEntry,
    JournalEventType,
    MessageComplexity,
    PulseState,
    UpsertResult,
    clamp_priority,
)
from .planner import AgendaPlanner
from .policy import PolicyEngine
from .storage import GoalStore, InMemoryGoalStore, create_goal_store, open_goal_store

try:
    __version__ = version("agenda-planner")
except PackageNotFoundError:
    __version__ = "0.0.0"


__all__ = [
    # Service
    "AgendaPlanner",
    "PolicyEngine",
    "format_agenda_for_prompt",
    # Models
    "AgendaContext",
    "ClassifierGoal",
    "EvalResult",
    "Goal",
    "GoalInput",
    "GoalSource",
    "GoalStatus",
    "GoalType",
    "JournalEntry",
    "JournalEventType",
    "MessageComplexity",
    "PulseState",
    "UpsertResult",
    "clamp_priority",
    # Storage
    "GoalStore",
    "InMemoryGoalStore",
    "create_goal_store",
    "open_goal_store",
    # Locking and caching
    "KeyedMutex",
    "LockCoordinator",
    "StackCache",
    "TTLStackCache",
    "lock_key",
    "session_lock_name",
    # Config
    "AgendaConfig",
    "StorageConfig",
    "load_config",
    # Exceptions
    "AgendaPlannerError",
    "ConfigError",
    "GoalNotFoundError",
    "LockError",
    "StorageError",
    "StorageNotInitializedError",
    "__version__",
]
