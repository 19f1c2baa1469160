# src/agenda_planner/storage/sqlite.py
"""
SQLite implementation of the goal store.

Suitable for development and single-instance deployments.

Architecture:
    - Uses aiosqlite for async database operations
    - WAL mode for better concurrency
    - JSON stored as text, timestamps as fixed-width ISO-8601 UTC strings
      (lexically ordered, so range comparisons work in SQL)
    - One write connection; every transaction is ``BEGIN IMMEDIATE`` and
      transactions are serialised on a connection-level asyncio lock
      (SQLite admits a single writer per database file)
    - A second, read-only connection serves reads made outside a
      transaction; under WAL it sees the last committed state and never
      waits for the writer. An in-memory database has no second
      connection, so its reads share the write connection

SQLite has no advisory locks, so the lock coordinator pairs this store
with its in-process mutex. That is only safe while a single process
writes to the database file.

Usage:
    from agenda_planner.storage.sqlite import SqliteGoalStore

    store = SqliteGoalStore()
    await store.initialize({"path": "~/.local/share/agenda_planner/agenda.db"})
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import pathlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import aiosqlite

from ..exceptions import StorageError, StorageNotInitializedError
from ..models import (
    Goal,
    GoalInput,
    GoalStatus,
    GoalType,
    JournalEntry,
    JournalEventType,
    UpsertResult,
    clamp_priority,
    ensure_terminal_status,
    goal_from_row,
    journal_entry_from_row,
    parse_json_object,
    utcnow,
)
from .base import GOAL_COLUMNS, GOALS_TABLE, JOURNAL_TABLE, GoalStore

logger = logging.getLogger(__name__)


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


class SqliteGoalStore(GoalStore):
    """
    SQLite-based goal store.

    Schema:
        conversation_goals: Goals of every producer; agenda goals are
            ``source = 'agenda_planner'``
        conversation_goal_journal: Append-only lifecycle events
    """

    backend_name = "sqlite"
    supports_transactions = True
    supports_advisory_locks = False

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS {goals} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        goal TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'completed', 'abandoned')),
        context TEXT NOT NULL DEFAULT '{{}}',
        goal_type TEXT,
        priority INTEGER NOT NULL DEFAULT 5,
        next_action TEXT,
        deadline TEXT,
        parent_goal_id INTEGER REFERENCES {goals}(id) ON DELETE SET NULL,
        parent_key INTEGER GENERATED ALWAYS AS (COALESCE(parent_goal_id, 0)) STORED,
        source TEXT NOT NULL DEFAULT 'classifier',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_{goals}_user_session_status_priority
        ON {goals}(user_id, session_id, status, priority DESC, updated_at DESC);
    CREATE INDEX IF NOT EXISTS idx_{goals}_parent ON {goals}(parent_goal_id);
    CREATE INDEX IF NOT EXISTS idx_{goals}_source_status
        ON {goals}(source, status, updated_at DESC);
    CREATE UNIQUE INDEX IF NOT EXISTS uq_{goals}_active_agenda_key
        ON {goals}(user_id, session_id, goal_type, parent_key)
        WHERE status = 'active' AND source = 'agenda_planner';

    CREATE TABLE IF NOT EXISTS {journal} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        goal_id INTEGER REFERENCES {goals}(id) ON DELETE SET NULL,
        event_type TEXT NOT NULL
            CHECK (event_type IN ('seeded', 'created', 'updated', 'completed',
                                  'abandoned', 'promoted', 'snapshot')),
        payload TEXT NOT NULL DEFAULT '{{}}',
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_{journal}_session_time
        ON {journal}(session_id, created_at DESC);
    CREATE INDEX IF NOT EXISTS idx_{journal}_user_time
        ON {journal}(user_id, created_at DESC);
    """

    def __init__(self):
        """Initialize SQLite goal store."""
        self._db_path: pathlib.Path | None = None
        self._conn: aiosqlite.Connection | None = None
        self._reader: aiosqlite.Connection | None = None
        self._tx_lock = asyncio.Lock()
        self._bound = False
        self._goals = GOALS_TABLE
        self._journal = JOURNAL_TABLE

    async def initialize(self, config: Optional[Dict[str, Any]] = None) -> None:
        """
        Initialize the SQLite database and create schema.

        Args:
            config: Configuration dictionary with 'path' key and optional
                   'table_prefix'

        Raises:
            ValueError: If path is not provided
            StorageError: If database initialization fails
        """
        config = config or {}
        db_path_str = config.get("path")
        if not db_path_str:
            raise ValueError("SQLite goal store 'path' not specified in config")

        prefix = config.get("table_prefix", "")
        self._goals = f"{prefix}{GOALS_TABLE}"
        self._journal = f"{prefix}{JOURNAL_TABLE}"

        if db_path_str == ":memory:":
            self._db_path = None
        else:
            self._db_path = pathlib.Path(os.path.expanduser(db_path_str))

        try:
            if self._db_path is not None:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)

            # isolation_level=None: transactions are opened explicitly
            self._conn = await aiosqlite.connect(
                str(self._db_path) if self._db_path else ":memory:",
                isolation_level=None,
            )
            self._conn.row_factory = aiosqlite.Row

            await self._conn.execute("PRAGMA journal_mode=WAL;")
            await self._conn.execute("PRAGMA foreign_keys=ON;")
            await self._conn.executescript(
                self.SCHEMA.format(goals=self._goals, journal=self._journal)
            )

            if self._db_path is not None:
                self._reader = await aiosqlite.connect(str(self._db_path), isolation_level=None)
                self._reader.row_factory = aiosqlite.Row
                await self._reader.execute("PRAGMA query_only=ON;")
            else:
                self._reader = self._conn

            logger.info(f"SQLite goal store initialized at: {self._db_path or ':memory:'}")

        except (aiosqlite.Error, OSError) as e:
            await self._close_connections()
            raise StorageError(f"Failed to initialize SQLite goal store: {e}") from e

    async def close(self) -> None:
        """Close the database connections."""
        if not self._bound:
            await self._close_connections()

    async def _close_connections(self) -> None:
        if self._reader is not None and self._reader is not self._conn:
            await self._reader.close()
        self._reader = None
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    @asynccontextmanager
    async def _scope(self) -> AsyncIterator[aiosqlite.Connection]:
        if not self._conn:
            raise StorageNotInitializedError(self.backend_name)
        if self._bound:
            yield self._conn
            return

        async with self._tx_lock:
            await self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                await self._conn.execute("ROLLBACK")
                raise
            await self._conn.execute("COMMIT")

    @asynccontextmanager
    async def _read_scope(self) -> AsyncIterator[aiosqlite.Connection]:
        if not self._conn:
            raise StorageNotInitializedError(self.backend_name)
        yield self._conn if self._bound else self._reader

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SqliteGoalStore"]:
        async with self._scope():
            handle = copy.copy(self)
            handle._bound = True
            yield handle

    async def _fetchall(self, conn: aiosqlite.Connection, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        try:
            async with conn.execute(sql, tuple(params)) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StorageError(f"SQLite goal store query failed: {e}") from e
        return [dict(row) for row in rows]

    async def _ids(self, conn: aiosqlite.Connection, sql: str, params: Sequence[Any]) -> List[int]:
        return [row["id"] for row in await self._fetchall(conn, sql, params)]

    # =========================================================================
    # WRITES
    # =========================================================================

    async def _update_existing(
        self,
        conn: aiosqlite.Connection,
        goal_input: GoalInput,
        now: datetime,
    ) -> Optional[Goal]:
        rows = await self._fetchall(
            conn,
            f"""SELECT id, context FROM {self._goals}
                WHERE user_id = ? AND session_id = ?
                  AND status = 'active' AND source = 'agenda_planner'
                  AND COALESCE(goal_type, 'general') = ? AND parent_key = ?
                ORDER BY updated_at DESC, id DESC
                LIMIT 1""",
            (
                goal_input.user_id,
                goal_input.session_id,
                goal_input.goal_type.value,
                goal_input.parent_goal_id or 0,
            ),
        )
        if not rows:
            return None

        merged = {**parse_json_object(rows[0]["context"]), **goal_input.context}
        updated = await self._fetchall(
            conn,
            f"""UPDATE {self._goals}
                SET goal = ?, context = ?, priority = ?, next_action = ?, deadline = ?,
                    source = 'agenda_planner', updated_at = ?
                WHERE id = ?
                RETURNING {GOAL_COLUMNS}""",
            (
                goal_input.goal_text.strip(),
                json.dumps(merged, default=str),
                clamp_priority(goal_input.priority),
                goal_input.next_action,
                _ts(goal_input.deadline),
                _ts(now),
                rows[0]["id"],
            ),
        )
        return goal_from_row(updated[0])

    async def upsert_goal(self, goal_input: GoalInput, now: Optional[datetime] = None) -> UpsertResult:
        now = now or utcnow()
        async with self._scope() as conn:
            goal = await self._update_existing(conn, goal_input, now)
            if goal is not None:
                return UpsertResult(goal=goal, was_created=False)

            inserted = await self._fetchall(
                conn,
                f"""INSERT INTO {self._goals}
                       (user_id, session_id, goal, status, context, goal_type, priority,
                        next_action, deadline, parent_goal_id, source, created_at, updated_at)
                    VALUES (?, ?, ?, 'active', ?, ?, ?, ?, ?, ?, 'agenda_planner', ?, ?)
                    ON CONFLICT (user_id, session_id, goal_type, parent_key)
                        WHERE status = 'active' AND source = 'agenda_planner'
                    DO NOTHING
                    RETURNING {GOAL_COLUMNS}""",
                (
                    goal_input.user_id,
                    goal_input.session_id,
                    goal_input.goal_text.strip(),
                    json.dumps(goal_input.context, default=str),
                    goal_input.goal_type.value,
                    clamp_priority(goal_input.priority),
                    goal_input.next_action,
                    _ts(goal_input.deadline),
                    goal_input.parent_goal_id,
                    _ts(now),
                    _ts(now),
                ),
            )
            if inserted:
                return UpsertResult(goal=goal_from_row(inserted[0]), was_created=True)

            # Lost an insert race against another writer: merge into its row.
            logger.debug(f"Upsert conflict for {goal_input.goal_type.value} goal; merging")
            goal = await self._update_existing(conn, goal_input, now)
            if goal is None:
                raise StorageError("Upsert conflict but no matching active goal found")
            return UpsertResult(goal=goal, was_created=False)

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
        types = [GoalType(t).value for t in goal_types]
        placeholders = ", ".join("?" for _ in types)
        async with self._scope() as conn:
            return await self._ids(
                conn,
                f"""UPDATE {self._goals}
                    SET status = ?, updated_at = ?
                    WHERE user_id = ? AND session_id = ?
                      AND status = 'active' AND source = 'agenda_planner'
                      AND COALESCE(goal_type, 'general') IN ({placeholders})
                    RETURNING id""",
                (status.value, _ts(now or utcnow()), user_id, session_id, *types),
            )

    async def complete_goal_by_id(
        self,
        goal_id: int,
        status: GoalStatus,
        now: Optional[datetime] = None,
    ) -> bool:
        status = ensure_terminal_status(status)
        async with self._scope() as conn:
            ids = await self._ids(
                conn,
                f"""UPDATE {self._goals}
                    SET status = ?, updated_at = ?
                    WHERE id = ? AND status = 'active' AND source = 'agenda_planner'
                    RETURNING id""",
                (status.value, _ts(now or utcnow()), goal_id),
            )
            return bool(ids)

    async def complete_all_active_goals(
        self,
        user_id: str,
        session_id: str,
        status: GoalStatus,
        now: Optional[datetime] = None,
    ) -> List[int]:
        status = ensure_terminal_status(status)
        async with self._scope() as conn:
            return await self._ids(
                conn,
                f"""UPDATE {self._goals}
                    SET status = ?, updated_at = ?
                    WHERE user_id = ? AND session_id = ?
                      AND status = 'active' AND source = 'agenda_planner'
                    RETURNING id""",
                (status.value, _ts(now or utcnow()), user_id, session_id),
            )

    async def trim_excess_goals(
        self,
        user_id: str,
        session_id: str,
        keep_top_n: int,
        now: Optional[datetime] = None,
    ) -> List[int]:
        async with self._scope() as conn:
            return await self._ids(
                conn,
                f"""UPDATE {self._goals}
                    SET status = 'completed', updated_at = ?
                    WHERE id IN (
                        SELECT id FROM (
                            SELECT id, ROW_NUMBER() OVER (
                                ORDER BY priority DESC, updated_at DESC, id DESC
                            ) AS rn
                            FROM {self._goals}
                            WHERE user_id = ? AND session_id = ?
                              AND status = 'active' AND source = 'agenda_planner'
                        ) WHERE rn > ?
                    )
                    RETURNING id""",
                (_ts(now or utcnow()), user_id, session_id, max(0, keep_top_n)),
            )

    async def abandon_stale_goals(
        self,
        user_id: str,
        session_id: str,
        stale_before: datetime,
        now: Optional[datetime] = None,
    ) -> List[int]:
        async with self._scope() as conn:
            return await self._ids(
                conn,
                f"""UPDATE {self._goals}
                    SET status = 'abandoned', updated_at = ?
                    WHERE user_id = ? AND session_id = ?
                      AND status = 'active' AND source = 'agenda_planner'
                      AND updated_at < ?
                    RETURNING id""",
                (_ts(now or utcnow()), user_id, session_id, _ts(stale_before)),
            )

    async def append_journal(
        self,
        user_id: str,
        session_id: str,
        goal_id: Optional[int],
        event_type: JournalEventType,
        payload: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> JournalEntry:
        async with self._scope() as conn:
            rows = await self._fetchall(
                conn,
                f"""INSERT INTO {self._journal}
                       (user_id, session_id, goal_id, event_type, payload, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    RETURNING id, user_id, session_id, goal_id, event_type, payload, created_at""",
                (
                    user_id,
                    session_id,
                    goal_id,
                    JournalEventType(event_type).value,
                    json.dumps(payload, default=str),
                    _ts(now or utcnow()),
                ),
            )
            return journal_entry_from_row(rows[0])

    async def insert_goal_row(self, goal: Goal) -> Goal:
        async with self._scope() as conn:
            rows = await self._fetchall(
                conn,
                f"""INSERT INTO {self._goals}
                       (user_id, session_id, goal, status, context, goal_type, priority,
                        next_action, deadline, parent_goal_id, source, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    RETURNING {GOAL_COLUMNS}""",
                (
                    goal.user_id,
                    goal.session_id,
                    goal.goal_text,
                    goal.status.value,
                    json.dumps(goal.context, default=str),
                    goal.goal_type.value,
                    goal.priority,
                    goal.next_action,
                    _ts(goal.deadline),
                    goal.parent_goal_id,
                    goal.source.value,
                    _ts(goal.created_at),
                    _ts(goal.updated_at),
                ),
            )
            return goal_from_row(rows[0])

    # =========================================================================
    # READS
    # =========================================================================

    async def load_active_goals(self, user_id: str, session_id: str, limit: int) -> List[Goal]:
        async with self._read_scope() as conn:
            rows = await self._fetchall(
                conn,
                f"""SELECT {GOAL_COLUMNS} FROM {self._goals}
                    WHERE user_id = ? AND session_id = ?
                      AND status = 'active' AND source = 'agenda_planner'
                    ORDER BY priority DESC, updated_at DESC, id DESC
                    LIMIT ?""",
                (user_id, session_id, max(0, limit)),
            )
        return [goal_from_row(row) for row in rows]

    async def get_goal(self, goal_id: int) -> Optional[Goal]:
        async with self._read_scope() as conn:
            rows = await self._fetchall(
                conn, f"SELECT {GOAL_COLUMNS} FROM {self._goals} WHERE id = ?", (goal_id,)
            )
        return goal_from_row(rows[0]) if rows else None

    async def list_goals(
        self,
        user_id: str,
        session_id: str,
        status: Optional[GoalStatus] = None,
    ) -> List[Goal]:
        sql = f"SELECT {GOAL_COLUMNS} FROM {self._goals} WHERE user_id = ? AND session_id = ?"
        params: List[Any] = [user_id, session_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(GoalStatus(status).value)
        async with self._read_scope() as conn:
            rows = await self._fetchall(conn, sql + " ORDER BY id", params)
        return [goal_from_row(row) for row in rows]

    async def list_journal(
        self,
        user_id: str,
        session_id: str,
        limit: Optional[int] = None,
    ) -> List[JournalEntry]:
        sql = f"""SELECT id, user_id, session_id, goal_id, event_type, payload, created_at
                  FROM {self._journal}
                  WHERE user_id = ? AND session_id = ?
                  ORDER BY id DESC"""
        params: List[Any] = [user_id, session_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(0, limit))
        async with self._read_scope() as conn:
            rows = await self._fetchall(conn, sql, params)
        return [journal_entry_from_row(row) for row in reversed(rows)]


__all__ = ["SqliteGoalStore"]
