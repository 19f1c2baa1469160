# src/agenda_planner/locking.py
"""
Per-session serialisation of agenda mutations.

Every evaluation runs inside one store transaction that first takes a lock
named ``agenda:{user_id}:{session_id}``. Callers for the same session
therefore run one after another, and each sees the committed state of the
previous one; different sessions never wait on each other.

Lock strategies, chosen from the store's capability flags:

- advisory: ``pg_advisory_xact_lock`` inside the transaction. Works across
  processes and is released by commit or rollback.
- local: an in-process :class:`KeyedMutex` held for the lifetime of the
  transaction. Only serialises callers within one process.
- none: the store has no transactions at all. The unit of work runs
  directly and a warning is logged; only valid for non-concurrent callers.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

from .exceptions import LockError, StorageError
from .storage.base import GoalStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def session_lock_name(user_id: str, session_id: str) -> str:
    """Canonical lock name of a conversation."""
    return f"agenda:{user_id}:{session_id}"


def lock_key(name: str) -> int:
    """
    Map a lock name to a signed 64-bit integer.

    The value is derived from BLAKE2b, so it is identical across processes
    and interpreter runs and fits PostgreSQL's ``bigint`` advisory lock key.

    Examples:
        >>> lock_key("agenda:u1:s1") == lock_key("agenda:u1:s1")
        True
        >>> -(2**63) <= lock_key("agenda:u1:s1") < 2**63
        True
    """
    digest = hashlib.blake2b(name.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class KeyedMutex:
    """
    Lazily created ``asyncio.Lock`` per key.

    Entries are dropped once no holder or waiter remains, so the table only
    grows with the number of sessions currently in flight.
    """

    def __init__(self) -> None:
        self._locks: Dict[int, asyncio.Lock] = {}
        self._users: Dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, key: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class LockCoordinator:
    """
    Run a unit of work under the session lock inside one transaction.

    Args:
        store: The goal store to open transactions on
        local_mutex: Mutex used when the store has transactions but no
            advisory locks; a private one is created when omitted
    """

    def __init__(self, store: GoalStore, local_mutex: Optional[KeyedMutex] = None):
        self.store = store
        self.local_mutex = local_mutex or KeyedMutex()
        if not store.supports_transactions:
            logger.warning(
                f"{store.backend_name} store has no transactions; "
                "session updates will not be serialised"
            )

    @property
    def strategy(self) -> str:
        if not self.store.supports_transactions:
            return "none"
        if self.store.supports_advisory_locks:
            return "advisory"
        return "local"

    async def with_session_lock(
        self,
        user_id: str,
        session_id: str,
        fn: Callable[[GoalStore], Awaitable[T]],
    ) -> T:
        """
        Await ``fn(handle)`` while holding the session lock.

        Commits when ``fn`` returns and rolls back (re-raising) when it
        raises. ``handle`` is the transaction-bound store; ``fn`` must use it
        for every read and write that belongs to the unit of work.

        Raises:
            LockError: If the advisory lock cannot be acquired
        """
        name = session_lock_name(user_id, session_id)
        key = lock_key(name)
        strategy = self.strategy

        if strategy == "none":
            return await fn(self.store)

        if strategy == "local":
            async with self.local_mutex.hold(key):
                async with self.store.transaction() as handle:
                    logger.debug(f"Holding local lock {name}")
                    return await fn(handle)

        async with self.store.transaction() as handle:
            try:
                await handle.advisory_xact_lock(key)
            except StorageError as e:
                raise LockError(name, f"Failed to acquire advisory lock: {e}") from e
            logger.debug(f"Holding advisory lock {name} ({key})")
            return await fn(handle)


__all__ = [
    "KeyedMutex",
    "LockCoordinator",
    "lock_key",
    "session_lock_name",
]
