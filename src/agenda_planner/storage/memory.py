# src/agenda_planner/storage/memory.py
"""
In-memory goal store for testing.

Data is lost when the process ends. By default the store is transactional:
``transaction()`` hands out a handle that records an undo entry for every
row it changes and replays them when the block raises. Transactions do not
lock the store; the lock coordinator serialises each session with its
in-process mutex, and every method body runs without awaiting, so reads
and writes of other sessions proceed freely. Reads are not isolated from
an open transaction of the same session. With ``transactional=False``
it behaves as a plain test double without any transaction concept, which
makes the lock coordinator run its unit of work directly.
"""

from __future__ import annotations

import copy
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from ..models import (
    Goal,
    GoalInput,
    GoalSource,
    GoalStatus,
    GoalType,
    JournalEntry,
    JournalEventType,
    UpsertResult,
    as_utc,
    clamp_priority,
    ensure_terminal_status,
    goal_from_row,
    journal_entry_from_row,
    stack_sort_key,
    utcnow,
)
from .base import GoalStore

logger = logging.getLogger(__name__)


class _MemoryState:
    """Mutable tables shared by the store and its transaction handles."""

    def __init__(self) -> None:
        self.goals: Dict[int, Dict[str, Any]] = {}
        self.journal: List[Dict[str, Any]] = []
        self.next_goal_id = 1
        self.next_journal_id = 1


class _UndoLog:
    """Prior versions of the rows one transaction touched."""

    def __init__(self) -> None:
        # goal id -> row before the first change, None for rows inserted here
        self.goals: Dict[int, Optional[Dict[str, Any]]] = {}
        self.journal_ids: List[int] = []

    def touch(self, row: Dict[str, Any]) -> None:
        if row["id"] not in self.goals:
            self.goals[row["id"]] = copy.deepcopy(row)

    def inserted(self, goal_id: int) -> None:
        self.goals.setdefault(goal_id, None)

    def rollback(self, state: _MemoryState) -> None:
        for goal_id, prior in self.goals.items():
            if prior is None:
                state.goals.pop(goal_id, None)
            else:
                state.goals[goal_id] = prior
        if self.journal_ids:
            dropped = set(self.journal_ids)
            state.journal[:] = [row for row in state.journal if row["id"] not in dropped]


class InMemoryGoalStore(GoalStore):
    """
    Dict-backed goal store.

    Args:
        transactional: When False, ``transaction()`` is unavailable and the
            lock coordinator falls back to running work without a lock.
    """

    backend_name = "memory"

    def __init__(self, transactional: bool = True):
        self.supports_transactions = transactional
        self._state = _MemoryState()
        self._undo: Optional[_UndoLog] = None
        self._bound = False

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryGoalStore"]:
        if not self.supports_transactions:
            raise NotImplementedError("memory store was created with transactional=False")
        handle = copy.copy(self)
        handle._bound = True
        handle._undo = _UndoLog()
        try:
            yield handle
        except BaseException:
            handle._undo.rollback(self._state)
            logger.debug("Rolled back in-memory transaction")
            raise
        finally:
            handle._undo = None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _touch(self, row: Dict[str, Any]) -> None:
        if self._undo is not None:
            self._undo.touch(row)

    def _agenda_rows(self, user_id: str, session_id: str) -> List[Dict[str, Any]]:
        return [
            row
            for row in self._state.goals.values()
            if row["user_id"] == user_id
            and row["session_id"] == session_id
            and row["status"] == GoalStatus.ACTIVE.value
            and row["source"] == GoalSource.AGENDA_PLANNER.value
        ]

    def _ranked(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return sorted(rows, key=lambda row: stack_sort_key(goal_from_row(row)))

    def _transition(self, rows: List[Dict[str, Any]], status: GoalStatus, now: datetime) -> List[int]:
        for row in rows:
            self._touch(row)
            row["status"] = status.value
            row["updated_at"] = now
        return [row["id"] for row in rows]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def upsert_goal(self, goal_input: GoalInput, now: Optional[datetime] = None) -> UpsertResult:
        now = now or utcnow()
        matches = [
            row
            for row in self._agenda_rows(goal_input.user_id, goal_input.session_id)
            if row["goal_type"] == goal_input.goal_type.value
            and row["parent_goal_id"] == goal_input.parent_goal_id
        ]
        if matches:
            row = max(matches, key=lambda r: (goal_from_row(r).updated_at, r["id"]))
            self._touch(row)
            row.update(
                goal=goal_input.goal_text.strip(),
                context={**(row.get("context") or {}), **goal_input.context},
                priority=clamp_priority(goal_input.priority),
                next_action=goal_input.next_action,
                deadline=goal_input.deadline,
                source=GoalSource.AGENDA_PLANNER.value,
                updated_at=now,
            )
            return UpsertResult(goal=goal_from_row(row), was_created=False)

        row = {
            "id": self._state.next_goal_id,
            "user_id": goal_input.user_id,
            "session_id": goal_input.session_id,
            "goal": goal_input.goal_text.strip(),
            "status": GoalStatus.ACTIVE.value,
            "context": dict(goal_input.context),
            "goal_type": goal_input.goal_type.value,
            "priority": clamp_priority(goal_input.priority),
            "next_action": goal_input.next_action,
            "deadline": goal_input.deadline,
            "parent_goal_id": goal_input.parent_goal_id,
            "source": GoalSource.AGENDA_PLANNER.value,
            "created_at": now,
            "updated_at": now,
        }
        self._state.goals[row["id"]] = row
        self._state.next_goal_id += 1
        if self._undo is not None:
            self._undo.inserted(row["id"])
        return UpsertResult(goal=goal_from_row(row), was_created=True)

    async def complete_goals_by_type(
        self,
        user_id: str,
        session_id: str,
        goal_types: Sequence[GoalType],
        status: GoalStatus,
        now: Optional[datetime] = None,
    ) -> List[int]:
        status = ensure_terminal_status(status)
        if not goal_types:
            return []
        wanted = {GoalType(t).value for t in goal_types}
        rows = [r for r in self._agenda_rows(user_id, session_id) if r["goal_type"] in wanted]
        return self._transition(rows, status, now or utcnow())

    async def complete_goal_by_id(
        self,
        goal_id: int,
        status: GoalStatus,
        now: Optional[datetime] = None,
    ) -> bool:
        status = ensure_terminal_status(status)
        row = self._state.goals.get(goal_id)
        if (
            row is None
            or row["status"] != GoalStatus.ACTIVE.value
            or row["source"] != GoalSource.AGENDA_PLANNER.value
        ):
            return False
        self._transition([row], status, now or utcnow())
        return True

    async def complete_all_active_goals(
        self,
        user_id: str,
        session_id: str,
        status: GoalStatus,
        now: Optional[datetime] = None,
    ) -> List[int]:
        status = ensure_terminal_status(status)
        return self._transition(self._agenda_rows(user_id, session_id), status, now or utcnow())

    async def trim_excess_goals(
        self,
        user_id: str,
        session_id: str,
        keep_top_n: int,
        now: Optional[datetime] = None,
    ) -> List[int]:
        ranked = self._ranked(self._agenda_rows(user_id, session_id))
        overflow = ranked[max(0, keep_top_n):]
        return self._transition(overflow, GoalStatus.COMPLETED, now or utcnow())

    async def abandon_stale_goals(
        self,
        user_id: str,
        session_id: str,
        stale_before: datetime,
        now: Optional[datetime] = None,
    ) -> List[int]:
        stale_before = as_utc(stale_before)
        rows = [
            r
            for r in self._agenda_rows(user_id, session_id)
            if goal_from_row(r).updated_at < stale_before
        ]
        return self._transition(rows, GoalStatus.ABANDONED, now or utcnow())

    async def append_journal(
        self,
        user_id: str,
        session_id: str,
        goal_id: Optional[int],
        event_type: JournalEventType,
        payload: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> JournalEntry:
        row = {
            "id": self._state.next_journal_id,
            "user_id": user_id,
            "session_id": session_id,
            "goal_id": goal_id,
            "event_type": JournalEventType(event_type).value,
            "payload": copy.deepcopy(payload),
            "created_at": now or utcnow(),
        }
        self._state.journal.append(row)
        self._state.next_journal_id += 1
        if self._undo is not None:
            self._undo.journal_ids.append(row["id"])
        return journal_entry_from_row(row)

    async def insert_goal_row(self, goal: Goal) -> Goal:
        row = goal.model_dump(mode="python")
        row["id"] = self._state.next_goal_id
        row["goal"] = row.pop("goal_text")
        for key in ("status", "goal_type", "source"):
            row[key] = row[key].value
        self._state.goals[row["id"]] = row
        self._state.next_goal_id += 1
        if self._undo is not None:
            self._undo.inserted(row["id"])
        return goal_from_row(row)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def load_active_goals(self, user_id: str, session_id: str, limit: int) -> List[Goal]:
        ranked = self._ranked(self._agenda_rows(user_id, session_id))
        return [goal_from_row(row) for row in ranked[: max(0, limit)]]

    async def get_goal(self, goal_id: int) -> Optional[Goal]:
        row = self._state.goals.get(goal_id)
        return goal_from_row(row) if row else None

    async def list_goals(
        self,
        user_id: str,
        session_id: str,
        status: Optional[GoalStatus] = None,
    ) -> List[Goal]:
        rows = [
            row
            for row in sorted(self._state.goals.values(), key=lambda r: r["id"])
            if row["user_id"] == user_id
            and row["session_id"] == session_id
            and (status is None or row["status"] == GoalStatus(status).value)
        ]
        return [goal_from_row(row) for row in rows]

    async def list_journal(
        self,
        user_id: str,
        session_id: str,
        limit: Optional[int] = None,
    ) -> List[JournalEntry]:
        rows = [
            row
            for row in self._state.journal
            if row["user_id"] == user_id and row["session_id"] == session_id
        ]
        if limit is not None:
            rows = rows[-limit:] if limit > 0 else []
        return [journal_entry_from_row(row) for row in rows]

    def clear(self) -> None:
        """Clear all data (for testing)."""
        self._state = _MemoryState()


__all__ = ["InMemoryGoalStore"]
