# src/agenda_planner/planner.py
"""
Agenda Planner service facade.

Ties the pieces together for callers:

    evaluate(context)
        -> LockCoordinator.with_session_lock  (transaction + session lock)
            -> PolicyEngine.run               (rules against the bound store)
        -> cache invalidation
        -> get_stack()                        (fresh re-read through the cache)

Usage:
    >>> planner = await AgendaPlanner.from_config(load_config())
    >>> result = await planner.evaluate(AgendaContext(
    ...     user_id="u1", session_id="s1", message="compare biryani prices",
    ...     display_name="Adi", home_location="Bengaluru",
    ... ))
    >>> prompt_block = planner.format(result.stack)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Set

from .cache import StackCache, TTLStackCache
from .config import AgendaConfig
from .formatter import format_agenda_for_prompt
from .locking import LockCoordinator
from .models import AgendaContext, EvalResult, Goal, as_utc, utcnow
from .policy import PolicyEngine
from .storage import open_goal_store
from .storage.base import GoalStore

logger = logging.getLogger(__name__)


class AgendaPlanner:
    """
    Per-conversation goal stack engine.

    Args:
        store: Initialized goal store
        config: Tunables; defaults are used when omitted
        cache: Stack cache; a TTLStackCache with ``config.cache_ttl_seconds``
            is created when omitted
        coordinator: Lock coordinator; created over ``store`` when omitted
    """

    def __init__(
        self,
        store: GoalStore,
        config: Optional[AgendaConfig] = None,
        cache: Optional[StackCache] = None,
        coordinator: Optional[LockCoordinator] = None,
    ):
        self.store = store
        self.config = config or AgendaConfig()
        self.cache = cache if cache is not None else TTLStackCache(self.config.cache_ttl_seconds)
        self.coordinator = coordinator or LockCoordinator(store)
        self.policy = PolicyEngine(self.config)
        self._background: Set[asyncio.Task] = set()

    @classmethod
    async def from_config(cls, config: Optional[AgendaConfig] = None) -> "AgendaPlanner":
        """Open the configured goal store and build a planner over it."""
        config = config or AgendaConfig()
        store = await open_goal_store(config.storage)
        return cls(store, config=config)

    async def close(self) -> None:
        await self.drain()
        await self.store.close()

    # =========================================================================
    # READS
    # =========================================================================

    async def get_stack(self, user_id: str, session_id: str, limit: Optional[int] = None) -> List[Goal]:
        """
        Return the top active agenda goals of a session.

        Served from the cache when a fresh entry exists; otherwise loads up
        to ``max(limit, max_active_goals)`` goals, caches that window and
        slices it. Store errors on a miss propagate.
        """
        limit = self.config.default_stack_limit if limit is None else limit
        window = max(1, limit)

        cached = self.cache.get(user_id, session_id)
        if cached is not None:
            logger.debug(f"Stack cache hit for {user_id}/{session_id}")
            return cached[:window]

        logger.debug(f"Stack cache miss for {user_id}/{session_id}")
        token = self.cache.token(user_id, session_id)
        goals = await self.store.load_active_goals(
            user_id, session_id, max(limit, self.config.max_active_goals)
        )
        self.cache.set(user_id, session_id, goals, token=token)
        return goals[:window]

    def format(self, goals: Optional[List[Goal]]) -> str:
        """Render goals with the configured prompt budget."""
        return format_agenda_for_prompt(
            goals,
            max_goals=self.config.default_max_goals,
            max_chars=self.config.default_max_chars,
        )

    async def format_stack(self, user_id: str, session_id: str) -> str:
        """Read the stack and render it as a prompt block."""
        goals = await self.get_stack(user_id, session_id, limit=self.config.default_max_goals)
        return self.format(goals)

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def evaluate(self, context: AgendaContext) -> EvalResult:
        """
        Apply the policy rules for one inbound message.

        All rules run in one transaction under the session lock; any error
        rolls everything back and propagates.

        Returns:
            EvalResult with the fresh stack, touched ids and action tags
        """
        now = context.now or utcnow()
        try:
            outcome = await self.coordinator.with_session_lock(
                context.user_id,
                context.session_id,
                lambda store: self.policy.run(store, context, now),
            )
        finally:
            self.cache.invalidate(context.user_id, context.session_id)

        result = outcome.to_result()
        result.stack = await self.get_stack(
            context.user_id, context.session_id, self.config.default_stack_limit
        )
        logger.info(
            f"Evaluated agenda for {context.user_id}/{context.session_id}: "
            f"{', '.join(result.actions) or 'no actions'}"
        )
        return result

    async def seed_onboarding(
        self,
        user_id: str,
        session_id: str,
        now: Optional[datetime] = None,
    ) -> List[Goal]:
        """Ensure an onboarding goal exists for a new conversation and return the stack."""
        now = as_utc(now) if now else utcnow()
        try:
            await self.coordinator.with_session_lock(
                user_id,
                session_id,
                lambda store: self.policy.seed_onboarding(store, user_id, session_id, now),
            )
        finally:
            self.cache.invalidate(user_id, session_id)
        return await self.get_stack(user_id, session_id)

    # =========================================================================
    # BACKGROUND
    # =========================================================================

    def schedule_evaluate(self, context: AgendaContext) -> asyncio.Task:
        """
        Run ``evaluate`` in the background.

        The returned task never raises: failures are logged with their
        traceback and the task result is None.
        """
        task = asyncio.create_task(self._evaluate_logged(context))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _evaluate_logged(self, context: AgendaContext) -> Optional[EvalResult]:
        try:
            return await self.evaluate(context)
        except Exception:
            logger.exception(
                f"Background agenda evaluation failed for {context.user_id}/{context.session_id}"
            )
            return None

    async def drain(self) -> None:
        """Wait for every scheduled background evaluation to finish."""
        while True:
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending)

    @property
    def pending(self) -> int:
        return len(self._background)


__all__ = ["AgendaPlanner"]
