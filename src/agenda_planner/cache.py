# src/agenda_planner/cache.py
"""
Stack cache.

Holds the most recently read window of a session's active goals so that
``AgendaPlanner.get_stack`` can skip the store on hot paths. Entries are
keyed by ``(user_id, session_id)`` and expire after a fixed TTL. A read
that started before an invalidation cannot store its window afterwards.

The default implementation is process-local. In a multi-instance
deployment a reader on another instance may see a stack up to one TTL old
after a mutation made elsewhere; a shared backend can be plugged in by
implementing :class:`StackCache`.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .models import Goal

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


class StackCache(ABC):
    """Interface of a session stack cache."""

    @abstractmethod
    def get(self, user_id: str, session_id: str) -> Optional[List[Goal]]:
        """Return the cached window, or None on miss or expiry."""
        ...

    def token(self, user_id: str, session_id: str) -> Any:
        """
        Capture the invalidation state of a key before a store read.

        Passing the token back to ``set`` makes the write a no-op when the
        key was invalidated in between.
        """
        return None

    @abstractmethod
    def set(self, user_id: str, session_id: str, goals: List[Goal], token: Any = None) -> None:
        ...

    @abstractmethod
    def invalidate(self, user_id: str, session_id: str) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...

    def stats(self) -> Dict[str, Any]:
        return {}


@dataclass
class _CacheEntry:
    goals: List[Goal]
    expires_at: float


class TTLStackCache(StackCache):
    """
    In-process TTL cache.

    Args:
        ttl_seconds: Lifetime of an entry; ``0`` disables caching
        clock: Monotonic clock, injectable for tests
    """

    def __init__(self, ttl_seconds: float = 20.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = max(0.0, ttl_seconds)
        self._clock = clock
        self._entries: Dict[CacheKey, _CacheEntry] = {}
        # invalidation counter; _invalidated_at maps a key to its last tick
        self._tick = 0
        self._cleared_at = 0
        self._invalidated_at: Dict[CacheKey, int] = {}
        self._stats = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "stale_sets": 0,
            "invalidations": 0,
            "expirations": 0,
        }

    def get(self, user_id: str, session_id: str) -> Optional[List[Goal]]:
        key = (user_id, session_id)
        entry = self._entries.get(key)
        if entry is None:
            self._stats["misses"] += 1
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            self._stats["expirations"] += 1
            self._stats["misses"] += 1
            return None
        self._stats["hits"] += 1
        return list(entry.goals)

    def token(self, user_id: str, session_id: str) -> int:
        return self._tick

    def set(self, user_id: str, session_id: str, goals: List[Goal], token: Optional[int] = None) -> None:
        if self.ttl_seconds <= 0:
            return
        key = (user_id, session_id)
        if token is not None and max(self._cleared_at, self._invalidated_at.get(key, 0)) > token:
            logger.debug(f"Dropping stack read for {user_id}/{session_id} that predates an invalidation")
            self._stats["stale_sets"] += 1
            return
        self._entries[key] = _CacheEntry(
            goals=list(goals),
            expires_at=self._clock() + self.ttl_seconds,
        )
        self._stats["sets"] += 1

    def invalidate(self, user_id: str, session_id: str) -> None:
        key = (user_id, session_id)
        self._tick += 1
        self._invalidated_at[key] = self._tick
        if self._entries.pop(key, None) is not None:
            self._stats["invalidations"] += 1

    def clear(self) -> None:
        self._tick += 1
        self._cleared_at = self._tick
        self._invalidated_at.clear()
        self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dictionary with entry count, TTL, hit rate and raw counters
        """
        total = self._stats["hits"] + self._stats["misses"]
        return {
            "entries": len(self._entries),
            "ttl_seconds": self.ttl_seconds,
            "hit_rate": self._stats["hits"] / total if total > 0 else 0.0,
            **self._stats,
        }


__all__ = ["StackCache", "TTLStackCache"]
