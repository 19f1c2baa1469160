# src/agenda_planner/policy.py
"""
Goal policy rules.

The PolicyEngine applies one ordered sequence of rules to a session's goal
stack for a single inbound message:

1. Stale sweep
2. Onboarding gate
3. Cancellation branch (skips rule 4 when it fires)
4. Price intent, booking intent, general fallback
5. Trim to ``max_active_goals``
6. Snapshot journal entry

The engine never opens transactions or takes locks itself; it is handed a
transaction-bound store by :class:`~agenda_planner.locking.LockCoordinator`
and every read and write goes through that handle. Goals owned by other
producers are never touched because every store transition is restricted
to ``source = 'agenda_planner'``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .config import AgendaConfig
from .heuristics import (
    agenda_type_for_classifier_goal,
    is_booking_intent,
    is_cancel_all_message,
    is_cancellation_message,
    is_price_intent,
    pulse_boost,
    topic_from_message,
)
from .models import (
    AgendaContext,
    EvalResult,
    GoalInput,
    GoalSource,
    GoalStatus,
    GoalType,
    JournalEventType,
    MessageComplexity,
    PulseState,
    UpsertResult,
    unique_ids,
)
from .storage.base import GoalStore

logger = logging.getLogger(__name__)

MESSAGE_PREVIEW_CHARS = 120
GENERAL_GOAL_MIN_MESSAGE_LENGTH = 12

ONBOARDING_PRIORITY = 9
BOOKING_PRIORITY = 9
PRICE_WATCH_BASE_PRIORITY = 7
RECOMMENDATION_BASE_PRIORITY = 6
GENERAL_BASE_PRIORITY = 5

ONBOARDING_GOAL = "Collect missing profile basics (name + city) to personalize recommendations."
ONBOARDING_NEXT_ACTION = "Ask one concise onboarding question before proposing deals."
SEED_ONBOARDING_GOAL = "Learn user name and home city before deep recommendations."
SEED_ONBOARDING_NEXT_ACTION = "Ask one onboarding question only (name or city)."
PRICE_WATCH_GOAL = "Guide user to compare real prices before committing."
PRICE_WATCH_TOPIC_GOAL = "Guide user from {topic} interest to a clear price comparison decision."
PRICE_WATCH_NEXT_WITH_RESULT = "Summarize the winner in one line and ask for go-ahead."
PRICE_WATCH_NEXT_OFFER = "Offer a live comparison (Swiggy/Zomato or Blinkit/Zepto/Instamart)."
RECOMMENDATION_GOAL = (
    "Convert comparison output into one concrete recommendation with ETA/offer context."
)
RECOMMENDATION_NEXT_ACTION = "Ask a single yes/no next-step question."
BOOKING_GOAL = "Drive clean booking confirmation and immediate follow-through."
BOOKING_NEXT_ACTION = "Confirm app/platform choice and ask if backup options are needed."
GENERAL_GOAL = "Advance current conversation objective with one concrete next step."
GENERAL_LABELED_GOAL = "Advance conversation objective: {label}."
GENERAL_NEXT_ACTION = "Ask one precise follow-up that moves toward action."


@dataclass
class PolicyOutcome:
    """Mutations collected over one evaluation turn."""

    created: List[int] = field(default_factory=list)
    completed: List[int] = field(default_factory=list)
    abandoned: List[int] = field(default_factory=list)
    promoted: List[int] = field(default_factory=list)
    actions: List[str] = field(default_factory=list)

    def to_result(self) -> EvalResult:
        return EvalResult(
            created_goal_ids=unique_ids(self.created),
            completed_goal_ids=unique_ids(self.completed),
            abandoned_goal_ids=unique_ids(self.abandoned),
            promoted_goal_ids=unique_ids(self.promoted),
            actions=list(self.actions),
        )


class PolicyEngine:
    """
    Ordered goal rules applied inside one locked transaction.

    Args:
        config: Tunables (``max_active_goals``, ``stale_goal_hours``)
    """

    def __init__(self, config: Optional[AgendaConfig] = None):
        self.config = config or AgendaConfig()

    async def run(self, store: GoalStore, context: AgendaContext, now: datetime) -> PolicyOutcome:
        """
        Apply every rule for one turn.

        Args:
            store: Transaction-bound goal store
            context: Turn inputs
            now: Evaluation time, written as ``updated_at`` by every mutation

        Returns:
            The ids touched and the ordered action tags
        """
        outcome = PolicyOutcome()
        turn = _Turn(store, context, now, outcome)
        message = (context.message or "").strip()

        await self._sweep_stale(turn)
        await self._onboarding_gate(turn)

        if message and is_cancellation_message(message):
            await self._cancel(turn, message)
        else:
            await self._advance(turn, message)

        await self._trim(turn)
        await turn.journal(
            None,
            JournalEventType.SNAPSHOT,
            {
                "actions": list(outcome.actions),
                "pulse_state": (context.pulse_state or PulseState.PASSIVE).value,
            },
        )
        return outcome

    async def seed_onboarding(self, store: GoalStore, user_id: str, session_id: str, now: datetime) -> UpsertResult:
        """Upsert the onboarding goal proactively; journals ``seeded`` on creation only."""
        result = await store.upsert_goal(
            GoalInput(
                user_id=user_id,
                session_id=session_id,
                goal_text=SEED_ONBOARDING_GOAL,
                goal_type=GoalType.ONBOARDING,
                priority=ONBOARDING_PRIORITY,
                next_action=SEED_ONBOARDING_NEXT_ACTION,
                context={"source": "seed", "seeded_at": now.isoformat()},
            ),
            now=now,
        )
        if result.was_created:
            await store.append_journal(
                user_id,
                session_id,
                result.goal.id,
                JournalEventType.SEEDED,
                {"goal_type": GoalType.ONBOARDING.value},
                now=now,
            )
        return result

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    async def _sweep_stale(self, turn: "_Turn") -> None:
        stale_before = turn.now - timedelta(hours=self.config.stale_goal_hours)
        ids = await turn.store.abandon_stale_goals(
            turn.context.user_id, turn.context.session_id, stale_before, now=turn.now
        )
        if ids:
            turn.outcome.abandoned.extend(ids)
            turn.act(f"abandoned_stale:{len(ids)}")
            for goal_id in ids:
                await turn.journal(goal_id, JournalEventType.ABANDONED, {"reason": "stale"})

    async def _onboarding_gate(self, turn: "_Turn") -> None:
        context = turn.context
        if not context.display_name or not context.home_location:
            result = await turn.upsert(
                GoalType.ONBOARDING,
                ONBOARDING_GOAL,
                ONBOARDING_PRIORITY,
                ONBOARDING_NEXT_ACTION,
                context={
                    "missing_display_name": not context.display_name,
                    "missing_home_location": not context.home_location,
                },
            )
            await turn.record_upsert(result, "onboarding", {"reason": "profile_missing"})
            return

        ids = await turn.store.complete_goals_by_type(
            context.user_id,
            context.session_id,
            [GoalType.ONBOARDING],
            GoalStatus.COMPLETED,
            now=turn.now,
        )
        if ids:
            turn.outcome.completed.extend(ids)
            turn.act(f"completed_onboarding:{len(ids)}")
            for goal_id in ids:
                await turn.journal(goal_id, JournalEventType.COMPLETED, {"reason": "profile_complete"})

    async def _cancel(self, turn: "_Turn", message: str) -> None:
        context = turn.context
        preview = message[:MESSAGE_PREVIEW_CHARS]

        if is_cancel_all_message(message):
            ids = await turn.store.complete_all_active_goals(
                context.user_id, context.session_id, GoalStatus.ABANDONED, now=turn.now
            )
            if ids:
                turn.outcome.abandoned.extend(ids)
                turn.act(f"abandoned_user_opt_out_all:{len(ids)}")
                for goal_id in ids:
                    await turn.journal(
                        goal_id,
                        JournalEventType.ABANDONED,
                        {"reason": "user_opt_out_all", "message_preview": preview},
                    )
            return

        active = [
            goal
            for goal in await turn.store.list_goals(
                context.user_id, context.session_id, status=GoalStatus.ACTIVE
            )
            if goal.source == GoalSource.AGENDA_PLANNER
        ]
        if not active:
            return
        latest = max(active, key=lambda goal: (goal.updated_at, goal.id))
        if await turn.store.complete_goal_by_id(latest.id, GoalStatus.ABANDONED, now=turn.now):
            turn.outcome.abandoned.append(latest.id)
            turn.act("abandoned_user_opt_out_single")
            await turn.journal(
                latest.id,
                JournalEventType.ABANDONED,
                {"reason": "user_opt_out", "message_preview": preview},
            )

    async def _advance(self, turn: "_Turn", message: str) -> None:
        context = turn.context
        topic = topic_from_message(message)
        boost = pulse_boost(context.pulse_state)
        price_intent = bool(message) and is_price_intent(
            message, context.active_tool_name, context.has_tool_result
        )

        if price_intent:
            parent = await turn.upsert(
                GoalType.PRICE_WATCH,
                PRICE_WATCH_TOPIC_GOAL.format(topic=topic) if topic else PRICE_WATCH_GOAL,
                PRICE_WATCH_BASE_PRIORITY + boost,
                PRICE_WATCH_NEXT_WITH_RESULT if context.has_tool_result else PRICE_WATCH_NEXT_OFFER,
                context={
                    "topic": topic,
                    "via_tool": context.active_tool_name,
                    "pulse_state": (context.pulse_state or PulseState.PASSIVE).value,
                },
            )
            await turn.record_upsert(parent, "price_watch", {"topic": topic})

            child = await turn.upsert(
                GoalType.RECOMMENDATION,
                RECOMMENDATION_GOAL,
                RECOMMENDATION_BASE_PRIORITY + boost,
                RECOMMENDATION_NEXT_ACTION,
                parent_goal_id=parent.goal.id,
                context={"parent_goal_type": parent.goal.goal_type.value, "topic": topic},
            )
            await turn.record_upsert(
                child, "recommendation_child", {"parent_goal_id": parent.goal.id}
            )

        if message and is_booking_intent(message):
            ids = await turn.store.complete_goals_by_type(
                context.user_id,
                context.session_id,
                [GoalType.PRICE_WATCH, GoalType.RECOMMENDATION],
                GoalStatus.COMPLETED,
                now=turn.now,
            )
            if ids:
                turn.outcome.completed.extend(ids)
                turn.act(f"completed_pre_booking:{len(ids)}")
                for goal_id in ids:
                    await turn.journal(
                        goal_id,
                        JournalEventType.COMPLETED,
                        {
                            "reason": "booking_commit_intent",
                            "message_preview": message[:MESSAGE_PREVIEW_CHARS],
                        },
                    )

            booking = await turn.upsert(
                GoalType.UPSELL,
                BOOKING_GOAL,
                BOOKING_PRIORITY,
                BOOKING_NEXT_ACTION,
                context={"trigger": "booking_intent"},
            )
            await turn.record_upsert(booking, "booking_goal", {"reason": "booking_intent"})

        wants_general = (
            context.message_complexity in (MessageComplexity.MODERATE, MessageComplexity.COMPLEX)
            and len(message) > GENERAL_GOAL_MIN_MESSAGE_LENGTH
            and not price_intent
        )
        if wants_general:
            label = context.classifier_goal
            general = await turn.upsert(
                agenda_type_for_classifier_goal(label),
                GENERAL_LABELED_GOAL.format(label=label.value) if label else GENERAL_GOAL,
                GENERAL_BASE_PRIORITY + max(0, boost),
                GENERAL_NEXT_ACTION,
                context={
                    "classifier_goal": label.value if label else None,
                    "message_preview": message[:MESSAGE_PREVIEW_CHARS],
                },
            )
            await turn.record_upsert(general, "general_goal", {})

    async def _trim(self, turn: "_Turn") -> None:
        ids = await turn.store.trim_excess_goals(
            turn.context.user_id,
            turn.context.session_id,
            self.config.max_active_goals,
            now=turn.now,
        )
        if ids:
            turn.outcome.completed.extend(ids)
            turn.act(f"trimmed:{len(ids)}")
            for goal_id in ids:
                await turn.journal(goal_id, JournalEventType.COMPLETED, {"reason": "trimmed_low_priority"})


class _Turn:
    """Per-turn helpers bound to one store handle and context."""

    def __init__(self, store: GoalStore, context: AgendaContext, now: datetime, outcome: PolicyOutcome):
        self.store = store
        self.context = context
        self.now = now
        self.outcome = outcome

    def act(self, tag: str) -> None:
        logger.debug(f"agenda {self.context.user_id}/{self.context.session_id}: {tag}")
        self.outcome.actions.append(tag)

    async def journal(
        self,
        goal_id: Optional[int],
        event_type: JournalEventType,
        payload: Dict[str, Any],
    ) -> None:
        await self.store.append_journal(
            self.context.user_id,
            self.context.session_id,
            goal_id,
            event_type,
            payload,
            now=self.now,
        )

    async def upsert(
        self,
        goal_type: GoalType,
        text: str,
        priority: int,
        next_action: str,
        parent_goal_id: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> UpsertResult:
        return await self.store.upsert_goal(
            GoalInput(
                user_id=self.context.user_id,
                session_id=self.context.session_id,
                goal_text=text,
                goal_type=goal_type,
                priority=priority,
                next_action=next_action,
                parent_goal_id=parent_goal_id,
                context=context or {},
            ),
            now=self.now,
        )

    async def record_upsert(self, result: UpsertResult, tag: str, created_payload: Dict[str, Any]) -> None:
        """Tag and journal an upsert as ``created_<tag>`` or ``promoted_<tag>``."""
        goal = result.goal
        if result.was_created:
            self.outcome.created.append(goal.id)
            self.act(f"created_{tag}")
            await self.journal(
                goal.id,
                JournalEventType.CREATED,
                {"goal_type": goal.goal_type.value, **created_payload},
            )
        else:
            self.outcome.promoted.append(goal.id)
            self.act(f"promoted_{tag}")
            await self.journal(goal.id, JournalEventType.PROMOTED, {"goal_type": goal.goal_type.value})


__all__ = ["PolicyEngine", "PolicyOutcome"]
