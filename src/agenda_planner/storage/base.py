# src/agenda_planner/storage/base.py
"""
Abstract goal store.

A GoalStore persists the ``conversation_goals`` and
``conversation_goal_journal`` tables and encodes the goal invariants:

- merge key for upserts: (user_id, session_id, status=active,
  source=agenda_planner, goal_type, parent_goal_id)
- bulk and singular transitions only ever touch active agenda_planner rows
- journal rows are append-only

Implementations:
- InMemoryGoalStore: For testing (optionally transactional)
- SqliteGoalStore: aiosqlite, single instance
- PostgresGoalStore: psycopg pool, advisory locks, multiple instances

Transactions:
    ``transaction()`` yields a handle implementing the same operations bound
    to one database transaction. The handle commits when the block exits
    normally and rolls back when it raises. ``advisory_xact_lock()`` is only
    valid on such a handle and is released with the transaction.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..models import (
    Goal,
    GoalInput,
    GoalStatus,
    GoalType,
    JournalEntry,
    JournalEventType,
    UpsertResult,
)

logger = logging.getLogger(__name__)

GOALS_TABLE = "conversation_goals"
JOURNAL_TABLE = "conversation_goal_journal"

GOAL_COLUMNS = (
    "id, user_id, session_id, goal, status, context, goal_type, priority, "
    "next_action, deadline, parent_goal_id, source, created_at, updated_at"
)


# =============================================================================
# ABSTRACT GOAL STORE
# =============================================================================


class GoalStore(ABC):
    """
    Abstract base class for goal persistence.

    Every mutating operation accepts ``now``; it is written as ``updated_at``
    (and ``created_at`` on insert). When omitted the current UTC time is used.
    """

    backend_name: str = "abstract"

    #: Whether ``transaction()`` is available.
    supports_transactions: bool = False

    #: Whether ``advisory_xact_lock()`` is available on transaction handles.
    supports_advisory_locks: bool = False

    async def initialize(self, config: Optional[Dict[str, Any]] = None) -> None:
        """Prepare the backend (connect, create schema)."""

    async def close(self) -> None:
        """Release backend resources."""

    def transaction(self) -> AbstractAsyncContextManager["GoalStore"]:
        """Open a transaction and yield a handle bound to it."""
        raise NotImplementedError(f"{self.backend_name} store does not support transactions")

    async def advisory_xact_lock(self, key: int) -> None:
        """Acquire a transaction-scoped lock identified by ``key``."""
        raise NotImplementedError(f"{self.backend_name} store does not support advisory locks")

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @abstractmethod
    async def upsert_goal(self, goal_input: GoalInput, now: Optional[datetime] = None) -> UpsertResult:
        """
        Update the newest active goal matching the merge key, or insert one.

        On update the text is trimmed, context is shallow-merged (new keys
        win, old keys survive), priority is clamped, next_action and
        deadline are replaced, source is forced to agenda_planner and
        updated_at is bumped.
        """
        ...

    @abstractmethod
    async def complete_goals_by_type(
        self,
        user_id: str,
        session_id: str,
        goal_types: Sequence[GoalType],
        status: GoalStatus,
        now: Optional[datetime] = None,
    ) -> List[int]:
        """Transition active agenda goals of the given types. Returns affected ids."""
        ...

    @abstractmethod
    async def complete_goal_by_id(
        self,
        goal_id: int,
        status: GoalStatus,
        now: Optional[datetime] = None,
    ) -> bool:
        """Transition one active agenda goal. Returns False if nothing matched."""
        ...

    @abstractmethod
    async def complete_all_active_goals(
        self,
        user_id: str,
        session_id: str,
        status: GoalStatus,
        now: Optional[datetime] = None,
    ) -> List[int]:
        """Transition every active agenda goal of a session. Returns affected ids."""
        ...

    @abstractmethod
    async def trim_excess_goals(
        self,
        user_id: str,
        session_id: str,
        keep_top_n: int,
        now: Optional[datetime] = None,
    ) -> List[int]:
        """Complete active agenda goals ranked below ``keep_top_n``. Returns affected ids."""
        ...

    @abstractmethod
    async def abandon_stale_goals(
        self,
        user_id: str,
        session_id: str,
        stale_before: datetime,
        now: Optional[datetime] = None,
    ) -> List[int]:
        """Abandon active agenda goals with ``updated_at < stale_before``. Returns affected ids."""
        ...

    @abstractmethod
    async def append_journal(
        self,
        user_id: str,
        session_id: str,
        goal_id: Optional[int],
        event_type: JournalEventType,
        payload: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> JournalEntry:
        """Append a journal row."""
        ...

    @abstractmethod
    async def insert_goal_row(self, goal: Goal) -> Goal:
        """
        Insert a goal exactly as given (ignoring ``goal.id``), bypassing the
        merge key. Used to seed goals owned by other producers.
        """
        ...

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @abstractmethod
    async def load_active_goals(self, user_id: str, session_id: str, limit: int) -> List[Goal]:
        """Active agenda goals ordered by (priority desc, updated_at desc)."""
        ...

    @abstractmethod
    async def get_goal(self, goal_id: int) -> Optional[Goal]:
        """Get goal by ID."""
        ...

    @abstractmethod
    async def list_goals(
        self,
        user_id: str,
        session_id: str,
        status: Optional[GoalStatus] = None,
    ) -> List[Goal]:
        """All goals of a session (any source), oldest first."""
        ...

    @abstractmethod
    async def list_journal(
        self,
        user_id: str,
        session_id: str,
        limit: Optional[int] = None,
    ) -> List[JournalEntry]:
        """Journal rows of a session in insertion order (last ``limit`` when given)."""
        ...


__all__ = [
    "GOALS_TABLE",
    "GOAL_COLUMNS",
    "JOURNAL_TABLE",
    "GoalStore",
]
