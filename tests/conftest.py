# tests/conftest.py
"""
Pytest configuration and shared fixtures for agenda planner tests.
"""

from datetime import datetime, timezone

import pytest

from agenda_planner import (
    AgendaContext,
    AgendaPlanner,
    Goal,
    GoalInput,
    GoalSource,
    GoalType,
    InMemoryGoalStore,
    TTLStackCache,
)
from agenda_planner.storage.sqlite import SqliteGoalStore

NOW = datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc)
USER = "u1"
SESSION = "s1"


class FakeClock:
    """Monotonic clock stand-in for cache TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


# =============================================================================
# COMMON FIXTURES
# =============================================================================


@pytest.fixture
def now():
    """Fixed evaluation time."""
    return NOW


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    """Each local backend in turn."""
    if request.param == "memory":
        store = InMemoryGoalStore()
        await store.initialize()
    else:
        store = SqliteGoalStore()
        await store.initialize({"path": str(tmp_path / "agenda.db")})
    yield store
    await store.close()


@pytest.fixture
def planner(store, clock):
    """Planner over the parametrised store with a controllable cache clock."""
    return AgendaPlanner(store, cache=TTLStackCache(20.0, clock=clock))


@pytest.fixture
def make_context():
    """
    Factory for evaluation contexts.

    The profile is complete unless ``profile=False`` is passed, so tests
    that are not about onboarding don't get an onboarding goal.
    """

    def _make(message: str = "", profile: bool = True, **kwargs) -> AgendaContext:
        if profile:
            kwargs.setdefault("display_name", "Adi")
            kwargs.setdefault("home_location", "Bengaluru")
        kwargs.setdefault("now", NOW)
        kwargs.setdefault("user_id", USER)
        kwargs.setdefault("session_id", SESSION)
        return AgendaContext(message=message, **kwargs)

    return _make


@pytest.fixture
def make_goal_input():
    """Factory for upsert requests in the default session."""

    def _make(goal_type: GoalType = GoalType.GENERAL, **kwargs) -> GoalInput:
        kwargs.setdefault("goal_text", f"{goal_type.value} goal")
        kwargs.setdefault("priority", 5)
        kwargs.setdefault("user_id", USER)
        kwargs.setdefault("session_id", SESSION)
        return GoalInput(goal_type=goal_type, **kwargs)

    return _make


@pytest.fixture
def foreign_goal():
    """Factory for goals owned by another producer."""

    def _make(goal_type: GoalType = GoalType.GENERAL, **kwargs) -> Goal:
        kwargs.setdefault("source", GoalSource.CLASSIFIER)
        kwargs.setdefault("updated_at", NOW)
        kwargs.setdefault("created_at", NOW)
        return Goal(
            id=0,
            user_id=USER,
            session_id=SESSION,
            goal_text=f"classifier {goal_type.value}",
            goal_type=goal_type,
            **kwargs,
        )

    return _make
