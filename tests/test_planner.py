# tests/test_planner.py
"""
End-to-end tests for AgendaPlanner.evaluate and the surrounding service API.

Every test runs against both local backends through the ``planner``
fixture, with a fake clock driving the stack cache.
"""

import asyncio
import logging
from datetime import timedelta, timezone

import pytest

from agenda_planner import (
    AgendaConfig,
    AgendaPlanner,
    ClassifierGoal,
    GoalSource,
    GoalStatus,
    GoalType,
    InMemoryGoalStore,
    JournalEventType,
    MessageComplexity,
    PulseState,
    StorageConfig,
    StorageError,
)
from agenda_planner.formatter import HEADER
from agenda_planner.policy import (
    BOOKING_GOAL,
    GENERAL_GOAL,
    PRICE_WATCH_GOAL,
    PRICE_WATCH_NEXT_WITH_RESULT,
    RECOMMENDATION_GOAL,
)

PRICE_MESSAGE = "compare biryani deals on swiggy and zomato"


async def _active(store, session_id="s1"):
    return await store.list_goals("u1", session_id, status=GoalStatus.ACTIVE)


def _by_type(goals, goal_type):
    return [g for g in goals if g.goal_type == goal_type]


class TestOnboarding:
    """Tests for the onboarding gate."""

    @pytest.mark.asyncio
    async def test_repeated_evaluation_promotes_single_goal(self, planner, make_context):
        context = make_context(profile=False)

        first = await planner.evaluate(context)
        second = await planner.evaluate(context)

        onboarding = _by_type(await _active(planner.store), GoalType.ONBOARDING)
        assert len(onboarding) == 1
        assert first.created_goal_ids == [onboarding[0].id]
        assert "created_onboarding" in first.actions
        assert second.created_goal_ids == []
        assert second.promoted_goal_ids == [onboarding[0].id]
        assert "promoted_onboarding" in second.actions
        assert onboarding[0].priority == 9
        assert onboarding[0].context == {"missing_display_name": True, "missing_home_location": True}

    @pytest.mark.asyncio
    async def test_missing_fields_recorded_in_context(self, planner, make_context):
        await planner.evaluate(make_context(profile=False, display_name="Adi"))

        goal = _by_type(await _active(planner.store), GoalType.ONBOARDING)[0]

        assert goal.context == {"missing_display_name": False, "missing_home_location": True}

    @pytest.mark.asyncio
    async def test_complete_profile_completes_onboarding(self, planner, make_context):
        created = await planner.evaluate(make_context(profile=False))

        result = await planner.evaluate(make_context())

        assert result.completed_goal_ids == created.created_goal_ids
        assert result.actions == ["completed_onboarding:1"]
        assert _by_type(await _active(planner.store), GoalType.ONBOARDING) == []

    @pytest.mark.asyncio
    async def test_seed_onboarding_journals_once(self, planner, now):
        stack = await planner.seed_onboarding("u1", "s1", now=now)
        await planner.seed_onboarding("u1", "s1", now=now)

        assert [g.goal_type for g in stack] == [GoalType.ONBOARDING]
        assert stack[0].context["seeded_at"] == now.isoformat()
        journal = await planner.store.list_journal("u1", "s1")
        assert [e.event_type for e in journal] == [JournalEventType.SEEDED]
        assert len(await _active(planner.store)) == 1


class TestPriceAndBooking:
    """Tests for price intent, booking intent and the general fallback."""

    @pytest.mark.asyncio
    async def test_price_intent_creates_parent_and_child(self, planner, make_context):
        result = await planner.evaluate(make_context(PRICE_MESSAGE))

        active = await _active(planner.store)
        parent = _by_type(active, GoalType.PRICE_WATCH)[0]
        child = _by_type(active, GoalType.RECOMMENDATION)[0]

        assert child.parent_goal_id == parent.id
        assert result.actions == ["created_price_watch", "created_recommendation_child"]
        assert result.created_goal_ids == [parent.id, child.id]
        assert parent.goal_text == "Guide user from biryani interest to a clear price comparison decision."
        assert child.goal_text == RECOMMENDATION_GOAL
        # absent pulse counts as passive
        assert (parent.priority, child.priority) == (6, 5)
        assert parent.context["topic"] == "biryani"
        assert child.context["parent_goal_type"] == "price_watch"

    @pytest.mark.asyncio
    async def test_repeat_price_intent_promotes(self, planner, make_context):
        await planner.evaluate(make_context(PRICE_MESSAGE))

        result = await planner.evaluate(make_context(PRICE_MESSAGE, pulse_state=PulseState.PROACTIVE))

        assert result.created_goal_ids == []
        assert result.actions == ["promoted_price_watch", "promoted_recommendation_child"]
        active = await _active(planner.store)
        assert len(active) == 2
        assert sorted(g.priority for g in active) == [8, 9]

    @pytest.mark.asyncio
    async def test_tool_result_drives_price_goal(self, planner, make_context):
        await planner.evaluate(
            make_context("here you go", active_tool_name="weather_lookup", has_tool_result=True)
        )

        parent = _by_type(await _active(planner.store), GoalType.PRICE_WATCH)[0]

        assert parent.goal_text == PRICE_WATCH_GOAL
        assert parent.next_action == PRICE_WATCH_NEXT_WITH_RESULT
        assert parent.context["via_tool"] == "weather_lookup"

    @pytest.mark.asyncio
    async def test_booking_completes_price_goals(self, planner, make_context):
        first = await planner.evaluate(make_context(PRICE_MESSAGE))

        result = await planner.evaluate(make_context("go ahead and book it"))
        again = await planner.evaluate(make_context("go ahead and book it"))

        assert sorted(result.completed_goal_ids) == sorted(first.created_goal_ids)
        assert result.actions == ["completed_pre_booking:2", "created_booking_goal"]
        assert again.actions == ["promoted_booking_goal"]
        active = await _active(planner.store)
        assert [g.goal_type for g in active] == [GoalType.UPSELL]
        assert active[0].goal_text == BOOKING_GOAL
        assert active[0].priority == 9

    @pytest.mark.asyncio
    async def test_general_goal_from_classifier_label(self, planner, make_context):
        result = await planner.evaluate(
            make_context(
                "Can you help me plan a weekend in Goa?",
                message_complexity=MessageComplexity.MODERATE,
                classifier_goal=ClassifierGoal.PLAN,
                pulse_state=PulseState.ENGAGED,
            )
        )

        goal = (await _active(planner.store))[0]
        assert result.actions == ["created_general_goal"]
        assert goal.goal_type == GoalType.TRIP_PLAN
        assert goal.goal_text == "Advance conversation objective: plan."
        assert goal.priority == 6
        assert goal.context["classifier_goal"] == "plan"

    @pytest.mark.asyncio
    async def test_general_goal_without_label_never_loses_priority(self, planner, make_context):
        await planner.evaluate(
            make_context(
                "tell me something about the weather",
                message_complexity=MessageComplexity.COMPLEX,
                pulse_state=PulseState.PASSIVE,
            )
        )

        goal = (await _active(planner.store))[0]
        assert goal.goal_type == GoalType.GENERAL
        assert goal.goal_text == GENERAL_GOAL
        assert goal.priority == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "message,complexity",
        [
            ("short msg", MessageComplexity.COMPLEX),
            ("tell me something about the weather", MessageComplexity.SIMPLE),
            ("tell me something about the weather", None),
            (PRICE_MESSAGE, MessageComplexity.COMPLEX),
        ],
    )
    async def test_general_goal_not_created(self, planner, make_context, message, complexity):
        result = await planner.evaluate(make_context(message, message_complexity=complexity))

        assert "created_general_goal" not in result.actions
        assert _by_type(await _active(planner.store), GoalType.GENERAL) == []


class TestCancellation:
    """Tests for the cancellation branch."""

    @pytest.mark.asyncio
    async def test_cancel_everything(self, planner, make_context, make_goal_input, now):
        ids = [
            (await planner.store.upsert_goal(make_goal_input(goal_type), now=now)).goal.id
            for goal_type in (GoalType.GENERAL, GoalType.UPSELL, GoalType.TRIP_PLAN)
        ]

        result = await planner.evaluate(make_context("cancel everything"))

        assert sorted(result.abandoned_goal_ids) == sorted(ids)
        assert result.created_goal_ids == []
        assert result.actions == ["abandoned_user_opt_out_all:3"]
        assert result.stack == []
        assert await _active(planner.store) == []

    @pytest.mark.asyncio
    async def test_cancel_single_abandons_most_recently_updated(
        self, planner, make_context, make_goal_input, now
    ):
        older = (
            await planner.store.upsert_goal(
                make_goal_input(GoalType.GENERAL, priority=9), now=now - timedelta(minutes=3)
            )
        ).goal
        newest = (
            await planner.store.upsert_goal(
                make_goal_input(GoalType.UPSELL, priority=2), now=now - timedelta(minutes=1)
            )
        ).goal
        middle = (
            await planner.store.upsert_goal(
                make_goal_input(GoalType.TRIP_PLAN), now=now - timedelta(minutes=2)
            )
        ).goal

        result = await planner.evaluate(make_context("cancel it"))

        assert result.abandoned_goal_ids == [newest.id]
        assert result.actions == ["abandoned_user_opt_out_single"]
        assert sorted(g.id for g in await _active(planner.store)) == sorted([older.id, middle.id])

    @pytest.mark.asyncio
    async def test_cancellation_skips_new_goals(self, planner, make_context):
        result = await planner.evaluate(make_context("forget it, compare prices on zomato"))

        assert result.created_goal_ids == []
        assert await _active(planner.store) == []

    @pytest.mark.asyncio
    async def test_cancel_journal_has_preview(self, planner, make_context, make_goal_input, now):
        goal = (await planner.store.upsert_goal(make_goal_input(), now=now)).goal

        await planner.evaluate(make_context("never mind, " + "x" * 200))

        journal = await planner.store.list_journal("u1", "s1")
        abandoned = [e for e in journal if e.event_type == JournalEventType.ABANDONED]
        assert abandoned[0].goal_id == goal.id
        assert abandoned[0].payload["reason"] == "user_opt_out"
        assert len(abandoned[0].payload["message_preview"]) == 120


class TestMaintenance:
    """Tests for the stale sweep and trimming."""

    @pytest.mark.asyncio
    async def test_stale_goal_is_abandoned(self, planner, make_context, make_goal_input, now):
        stale = (
            await planner.store.upsert_goal(make_goal_input(GoalType.UPSELL), now=now - timedelta(hours=73))
        ).goal
        fresh = (
            await planner.store.upsert_goal(make_goal_input(), now=now - timedelta(hours=1))
        ).goal

        result = await planner.evaluate(make_context())

        assert result.abandoned_goal_ids == [stale.id]
        assert result.actions == ["abandoned_stale:1"]
        assert (await planner.store.get_goal(fresh.id)).status == GoalStatus.ACTIVE
        assert (await planner.store.get_goal(fresh.id)).updated_at == now - timedelta(hours=1)
        journal = await planner.store.list_journal("u1", "s1")
        assert journal[0].payload == {"reason": "stale"}

    @pytest.mark.asyncio
    async def test_naive_now_is_read_as_utc(self, planner, make_context, now):
        naive = now.replace(tzinfo=None)

        await planner.evaluate(make_context(PRICE_MESSAGE, now=naive))
        result = await planner.evaluate(make_context(PRICE_MESSAGE, now=naive + timedelta(minutes=5)))

        assert result.actions == ["promoted_price_watch", "promoted_recommendation_child"]
        assert result.stack[0].updated_at == now + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_offset_now_drives_stale_sweep(self, planner, make_context, make_goal_input, now):
        goal = (await planner.store.upsert_goal(make_goal_input(), now=now)).goal
        ist = timezone(timedelta(hours=5, minutes=30))

        result = await planner.evaluate(make_context(now=(now + timedelta(hours=73)).astimezone(ist)))

        assert result.abandoned_goal_ids == [goal.id]
        assert (await planner.store.get_goal(goal.id)).updated_at == now + timedelta(hours=73)

    @pytest.mark.asyncio
    async def test_trim_to_max_active_goals(self, planner, make_context, make_goal_input, now):
        types = [t for t in GoalType if t != GoalType.ONBOARDING]
        ids = [
            (await planner.store.upsert_goal(make_goal_input(t, priority=p), now=now)).goal.id
            for p, t in enumerate(types, start=1)
        ]

        result = await planner.evaluate(make_context())

        assert result.actions == ["trimmed:1"]
        assert result.completed_goal_ids == [ids[0]]
        assert len(await _active(planner.store)) == 6

    @pytest.mark.asyncio
    async def test_snapshot_is_last_journal_entry(self, planner, make_context):
        result = await planner.evaluate(make_context(PRICE_MESSAGE, pulse_state=PulseState.CURIOUS))

        journal = await planner.store.list_journal("u1", "s1")

        assert [e.event_type for e in journal] == [
            JournalEventType.CREATED,
            JournalEventType.CREATED,
            JournalEventType.SNAPSHOT,
        ]
        assert journal[0].payload == {"goal_type": "price_watch", "topic": "biryani"}
        assert journal[1].payload["parent_goal_id"] == result.created_goal_ids[0]
        assert journal[-1].goal_id is None
        assert journal[-1].payload == {"actions": result.actions, "pulse_state": "CURIOUS"}

    @pytest.mark.asyncio
    async def test_quiet_turn_still_snapshots(self, planner, make_context):
        result = await planner.evaluate(make_context("hi"))

        journal = await planner.store.list_journal("u1", "s1")

        assert result.actions == []
        assert [e.event_type for e in journal] == [JournalEventType.SNAPSHOT]
        assert journal[0].payload == {"actions": [], "pulse_state": "PASSIVE"}


class TestForeignGoals:
    """Goals owned by other producers are never touched."""

    @pytest.mark.asyncio
    async def test_policy_rules_leave_classifier_goals_alone(self, planner, make_context, foreign_goal, now):
        foreign = [
            await planner.store.insert_goal_row(
                foreign_goal(goal_type, priority=10, updated_at=now - timedelta(hours=100))
            )
            for goal_type in (
                GoalType.ONBOARDING,
                GoalType.PRICE_WATCH,
                GoalType.RECOMMENDATION,
                GoalType.UPSELL,
            )
        ]

        for message in (PRICE_MESSAGE, "go ahead and book it", "cancel it", "cancel everything"):
            await planner.evaluate(make_context(message))

        for goal in foreign:
            stored = await planner.store.get_goal(goal.id)
            assert stored.status == GoalStatus.ACTIVE
            assert stored.source == GoalSource.CLASSIFIER
            assert stored.updated_at == goal.updated_at
            assert stored.goal_text == goal.goal_text

    @pytest.mark.asyncio
    async def test_stack_excludes_foreign_goals(self, planner, make_context, foreign_goal):
        await planner.store.insert_goal_row(foreign_goal(GoalType.TRIP_PLAN, priority=10))

        result = await planner.evaluate(make_context(PRICE_MESSAGE))

        assert all(g.source == GoalSource.AGENDA_PLANNER for g in result.stack)
        assert len(result.stack) == 2


class TestStackReads:
    """Tests for get_stack caching and prompt rendering."""

    @pytest.mark.asyncio
    async def test_evaluate_returns_fresh_stack(self, planner, make_context):
        await planner.get_stack("u1", "s1")

        result = await planner.evaluate(make_context(PRICE_MESSAGE))

        assert [g.goal_type for g in result.stack] == [GoalType.PRICE_WATCH, GoalType.RECOMMENDATION]
        assert [g.goal_type for g in await planner.get_stack("u1", "s1")] == [
            GoalType.PRICE_WATCH,
            GoalType.RECOMMENDATION,
        ]

    @pytest.mark.asyncio
    async def test_limit_slices_cached_window(self, planner, make_goal_input, now):
        for priority, goal_type in enumerate([GoalType.GENERAL, GoalType.UPSELL, GoalType.TRIP_PLAN], start=1):
            await planner.store.upsert_goal(make_goal_input(goal_type, priority=priority), now=now)

        assert len(await planner.get_stack("u1", "s1", limit=1)) == 1
        assert [g.priority for g in await planner.get_stack("u1", "s1", limit=5)] == [3, 2, 1]
        assert planner.cache.stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_external_writes_visible_after_ttl(self, planner, make_goal_input, clock, now):
        assert await planner.get_stack("u1", "s1") == []

        await planner.store.upsert_goal(make_goal_input(), now=now)

        assert await planner.get_stack("u1", "s1") == []
        clock.advance(20)
        assert len(await planner.get_stack("u1", "s1")) == 1

    @pytest.mark.asyncio
    async def test_slow_read_cannot_overwrite_fresh_stack(self, planner, make_context, monkeypatch):
        """A read that started before a write must not cache its older window."""
        load = planner.store.load_active_goals
        parked = asyncio.Event()
        release = asyncio.Event()
        calls = 0

        async def gated_load(*args, **kwargs):
            nonlocal calls
            calls += 1
            goals = await load(*args, **kwargs)
            if calls == 1:
                parked.set()
                await release.wait()
            return goals

        monkeypatch.setattr(planner.store, "load_active_goals", gated_load)

        reader = asyncio.create_task(planner.get_stack("u1", "s1"))
        await parked.wait()
        result = await planner.evaluate(make_context(PRICE_MESSAGE))
        release.set()

        assert await reader == []
        assert len(result.stack) == 2
        assert [g.goal_type for g in await planner.get_stack("u1", "s1")] == [
            GoalType.PRICE_WATCH,
            GoalType.RECOMMENDATION,
        ]
        assert planner.cache.stats()["stale_sets"] == 1

    @pytest.mark.asyncio
    async def test_miss_errors_propagate(self, planner, monkeypatch):
        async def broken(*args, **kwargs):
            raise StorageError("connection reset")

        monkeypatch.setattr(planner.store, "load_active_goals", broken)

        with pytest.raises(StorageError):
            await planner.get_stack("u1", "s1")

    @pytest.mark.asyncio
    async def test_format_stack(self, planner, make_context):
        assert await planner.format_stack("u1", "s1") == ""

        await planner.evaluate(make_context(PRICE_MESSAGE))
        block = await planner.format_stack("u1", "s1")

        assert block.startswith(HEADER)
        assert "1. [price_watch|P6]" in block
        assert "| parent:" in block
        assert len(block) <= 600


class TestFailureAndConcurrency:
    """Tests for rollback, background scheduling and session serialisation."""

    @pytest.mark.asyncio
    async def test_failure_rolls_back_whole_turn(self, planner, make_context, monkeypatch):
        async def failing_trim(turn):
            raise StorageError("disk full")

        monkeypatch.setattr(planner.policy, "_trim", failing_trim)

        with pytest.raises(StorageError):
            await planner.evaluate(make_context(PRICE_MESSAGE))

        assert await planner.store.list_goals("u1", "s1") == []
        assert await planner.store.list_journal("u1", "s1") == []

    @pytest.mark.asyncio
    async def test_concurrent_evaluations_on_one_session(self, planner, make_context):
        results = await asyncio.gather(*(planner.evaluate(make_context(PRICE_MESSAGE)) for _ in range(5)))

        created = [r for r in results if r.created_goal_ids]
        assert len(created) == 1
        assert sum(len(r.promoted_goal_ids) for r in results) == 8
        active = await _active(planner.store)
        assert sorted(g.goal_type.value for g in active) == ["price_watch", "recommendation"]

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, planner, make_context):
        a, b = await asyncio.gather(
            planner.evaluate(make_context(PRICE_MESSAGE, session_id="s1")),
            planner.evaluate(make_context(PRICE_MESSAGE, session_id="s2")),
        )

        assert len(a.created_goal_ids) == 2
        assert len(b.created_goal_ids) == 2
        assert not set(a.created_goal_ids) & set(b.created_goal_ids)

    @pytest.mark.asyncio
    async def test_open_transaction_does_not_block_other_session_reads(self, planner, make_context):
        await planner.evaluate(make_context(PRICE_MESSAGE))
        holding = asyncio.Event()
        release = asyncio.Event()

        async def hold(handle):
            holding.set()
            await release.wait()

        holder = asyncio.create_task(planner.coordinator.with_session_lock("u1", "other", hold))
        await holding.wait()
        try:
            planner.cache.clear()
            stack = await asyncio.wait_for(planner.get_stack("u1", "s1"), 1.0)
        finally:
            release.set()
            await holder

        assert len(stack) == 2

    @pytest.mark.asyncio
    async def test_memory_sessions_evaluate_in_parallel(self, make_context):
        planner = AgendaPlanner(InMemoryGoalStore())
        holding = asyncio.Event()
        release = asyncio.Event()

        async def hold(handle):
            holding.set()
            await release.wait()

        holder = asyncio.create_task(planner.coordinator.with_session_lock("u1", "other", hold))
        await holding.wait()
        try:
            result = await asyncio.wait_for(planner.evaluate(make_context(PRICE_MESSAGE)), 1.0)
        finally:
            release.set()
            await holder

        assert len(result.created_goal_ids) == 2

    @pytest.mark.asyncio
    async def test_schedule_evaluate_and_drain(self, planner, make_context):
        task = planner.schedule_evaluate(make_context(PRICE_MESSAGE))
        assert planner.pending == 1

        await planner.drain()

        assert task.result().actions == ["created_price_watch", "created_recommendation_child"]
        assert planner.pending == 0

    @pytest.mark.asyncio
    async def test_background_failures_are_logged(self, planner, make_context, monkeypatch, caplog):
        async def failing_evaluate(context):
            raise StorageError("connection refused")

        monkeypatch.setattr(planner, "evaluate", failing_evaluate)

        with caplog.at_level(logging.ERROR, logger="agenda_planner.planner"):
            task = planner.schedule_evaluate(make_context(PRICE_MESSAGE))
            await planner.drain()

        assert task.result() is None
        assert "Background agenda evaluation failed for u1/s1" in caplog.text

    @pytest.mark.asyncio
    async def test_non_transactional_store(self, make_context):
        planner = AgendaPlanner(InMemoryGoalStore(transactional=False))

        result = await planner.evaluate(make_context(PRICE_MESSAGE))

        assert planner.coordinator.strategy == "none"
        assert len(result.created_goal_ids) == 2


class TestConstruction:
    """Tests for building planners from configuration."""

    @pytest.mark.asyncio
    async def test_from_config(self, tmp_path, make_context):
        config = AgendaConfig(
            max_active_goals=2,
            cache_ttl_ms=0,
            storage=StorageConfig(backend="sqlite", sqlite_path=str(tmp_path / "agenda.db")),
        )
        planner = await AgendaPlanner.from_config(config)
        try:
            await planner.evaluate(make_context(profile=False))
            result = await planner.evaluate(make_context(PRICE_MESSAGE, profile=False))
        finally:
            await planner.close()

        assert planner.store.backend_name == "sqlite"
        assert planner.cache.ttl_seconds == 0
        assert result.actions[-1] == "trimmed:1"
        assert len(result.stack) == 2
