# src/agenda_planner/models.py
"""
Agenda Planner Data Models.

Defines the core data structures of the conversation goal stack:
- Enums for goal status, type, source, journal events and external signals
- Goal and JournalEntry records as persisted by the goal stores
- Upsert input/result and evaluation context/result models
- Read-boundary normalisation of persisted rows

Rows coming back from a store are never trusted blindly: unknown enum
values, out-of-range priorities and unparsable timestamps are normalised
here instead of raising, so a single malformed row cannot break a turn.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


# =============================================================================
# ENUMS
# =============================================================================


class GoalStatus(str, Enum):
    """Lifecycle state of a goal. ``completed`` and ``abandoned`` are terminal."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class GoalType(str, Enum):
    """Closed set of goal categories."""

    TRIP_PLAN = "trip_plan"
    FOOD_SEARCH = "food_search"
    PRICE_WATCH = "price_watch"
    RECOMMENDATION = "recommendation"
    ONBOARDING = "onboarding"
    RE_ENGAGEMENT = "re_engagement"
    UPSELL = "upsell"
    GENERAL = "general"


class GoalSource(str, Enum):
    """Producer that owns a goal row."""

    CLASSIFIER = "classifier"
    AGENDA_PLANNER = "agenda_planner"
    FUNNEL = "funnel"
    TASK_ORCHESTRATOR = "task_orchestrator"
    MANUAL = "manual"


class JournalEventType(str, Enum):
    """Types of goal journal events."""

    SEEDED = "seeded"
    CREATED = "created"
    UPDATED = "updated"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    PROMOTED = "promoted"
    SNAPSHOT = "snapshot"


class PulseState(str, Enum):
    """Engagement signal supplied by the pulse scorer."""

    PASSIVE = "PASSIVE"
    CURIOUS = "CURIOUS"
    ENGAGED = "ENGAGED"
    PROACTIVE = "PROACTIVE"


class MessageComplexity(str, Enum):
    """Message complexity as judged by the classifier."""

    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class ClassifierGoal(str, Enum):
    """Conversation goal label produced by the classifier."""

    INFORM = "inform"
    RECOMMEND = "recommend"
    CLARIFY = "clarify"
    EMPATHIZE = "empathize"
    REDIRECT = "redirect"
    UPSELL = "upsell"
    PLAN = "plan"
    REASSURE = "reassure"


TERMINAL_STATUSES = (GoalStatus.COMPLETED, GoalStatus.ABANDONED)


# =============================================================================
# HELPERS
# =============================================================================


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def clamp_priority(value: Any) -> int:
    """
    Clamp a priority into the ``[1, 10]`` range.

    Non-numeric and non-finite values fall back to the default priority.
    Halves round up, so ``clamp_priority(clamp_priority(x)) == clamp_priority(x)``.

    Examples:
        >>> clamp_priority(12)
        10
        >>> clamp_priority(-3)
        1
        >>> clamp_priority(6.5)
        7
        >>> clamp_priority(float("nan"))
        5
    """
    if isinstance(value, bool):
        return DEFAULT_PRIORITY
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_PRIORITY
    if not math.isfinite(number):
        return DEFAULT_PRIORITY
    if number < MIN_PRIORITY:
        return MIN_PRIORITY
    if number > MAX_PRIORITY:
        return MAX_PRIORITY
    return int(math.floor(number + 0.5))


def ensure_terminal_status(status: GoalStatus | str) -> GoalStatus:
    """Validate a status used for a bulk transition."""
    status = GoalStatus(status)
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"Transition target must be completed or abandoned, got '{status.value}'")
    return status


def unique_ids(ids: Iterable[int]) -> List[int]:
    """De-duplicate ids keeping first-occurrence order."""
    return list(dict.fromkeys(ids))


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def parse_json_object(value: Any) -> Dict[str, Any]:
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, (str, bytes)):
        try:
            decoded = json.loads(value)
        except (TypeError, ValueError):
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def _parse_enum(enum_cls: type[Enum], value: Any, fallback: Enum) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        return fallback


def _parse_optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# =============================================================================
# PERSISTED RECORDS
# =============================================================================


class Goal(BaseModel):
    """A persisted conversation objective."""

    id: int = Field(..., description="Store-assigned unique id")
    user_id: str
    session_id: str
    goal_text: str
    status: GoalStatus = GoalStatus.ACTIVE
    context: Dict[str, Any] = Field(default_factory=dict)
    goal_type: GoalType = GoalType.GENERAL
    priority: int = Field(DEFAULT_PRIORITY, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    next_action: Optional[str] = None
    deadline: Optional[datetime] = None
    parent_goal_id: Optional[int] = None
    source: GoalSource = GoalSource.CLASSIFIER
    created_at: datetime = EPOCH
    updated_at: datetime = EPOCH

    @property
    def is_active(self) -> bool:
        return self.status == GoalStatus.ACTIVE


class JournalEntry(BaseModel):
    """Append-only audit record of a goal lifecycle event."""

    id: int
    user_id: str
    session_id: str
    goal_id: Optional[int] = None
    event_type: JournalEventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = EPOCH


def goal_from_row(row: Mapping[str, Any]) -> Goal:
    """
    Build a Goal from a raw store row, normalising malformed values.

    Unknown ``goal_type``/``source`` fall back to ``general``/``classifier``,
    unknown status to ``abandoned`` (so it never surfaces in a stack),
    priority is clamped, and unparsable timestamps fall back to the epoch.
    """
    row = dict(row)
    status = _parse_enum(GoalStatus, row.get("status"), GoalStatus.ABANDONED)
    if status is GoalStatus.ABANDONED and row.get("status") != GoalStatus.ABANDONED.value:
        logger.warning(f"Goal {row.get('id')} has unknown status {row.get('status')!r}")
    priority = row.get("priority")
    return Goal(
        id=int(row["id"]),
        user_id=str(row.get("user_id", "")),
        session_id=str(row.get("session_id", "")),
        goal_text=str(row.get("goal") or ""),
        status=status,
        context=parse_json_object(row.get("context")),
        goal_type=_parse_enum(GoalType, row.get("goal_type"), GoalType.GENERAL),
        priority=clamp_priority(DEFAULT_PRIORITY if priority is None else priority),
        next_action=row.get("next_action"),
        deadline=_parse_timestamp(row.get("deadline")),
        parent_goal_id=_parse_optional_int(row.get("parent_goal_id")),
        source=_parse_enum(GoalSource, row.get("source"), GoalSource.CLASSIFIER),
        created_at=_parse_timestamp(row.get("created_at")) or EPOCH,
        updated_at=_parse_timestamp(row.get("updated_at")) or EPOCH,
    )


def journal_entry_from_row(row: Mapping[str, Any]) -> JournalEntry:
    """Build a JournalEntry from a raw store row."""
    row = dict(row)
    return JournalEntry(
        id=int(row["id"]),
        user_id=str(row.get("user_id", "")),
        session_id=str(row.get("session_id", "")),
        goal_id=_parse_optional_int(row.get("goal_id")),
        event_type=_parse_enum(JournalEventType, row.get("event_type"), JournalEventType.UPDATED),
        payload=parse_json_object(row.get("payload")),
        created_at=_parse_timestamp(row.get("created_at")) or EPOCH,
    )


def stack_sort_key(goal: Goal) -> tuple:
    """Sort key for (priority desc, updated_at desc, id desc) ordering."""
    return (-goal.priority, -goal.updated_at.timestamp(), -goal.id)


# =============================================================================
# STORE INPUT / OUTPUT
# =============================================================================


class GoalInput(BaseModel):
    """Upsert request for an agenda_planner goal."""

    user_id: str
    session_id: str
    goal_text: str
    goal_type: GoalType
    priority: int = DEFAULT_PRIORITY
    next_action: Optional[str] = None
    deadline: Optional[datetime] = None
    parent_goal_id: Optional[int] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class UpsertResult(BaseModel):
    """Outcome of ``GoalStore.upsert_goal``."""

    goal: Goal
    was_created: bool


# =============================================================================
# EVALUATION
# =============================================================================


class AgendaContext(BaseModel):
    """Per-turn inputs to ``AgendaPlanner.evaluate``."""

    user_id: str
    session_id: str
    message: str = ""
    now: Optional[datetime] = None
    display_name: Optional[str] = None
    home_location: Optional[str] = None
    pulse_state: Optional[PulseState] = None
    classifier_goal: Optional[ClassifierGoal] = None
    message_complexity: Optional[MessageComplexity] = None
    active_tool_name: Optional[str] = None
    has_tool_result: bool = False

    @field_validator("now")
    @classmethod
    def normalize_now(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None


class EvalResult(BaseModel):
    """Result of one evaluation turn."""

    stack: List[Goal] = Field(default_factory=list)
    created_goal_ids: List[int] = Field(default_factory=list)
    completed_goal_ids: List[int] = Field(default_factory=list)
    abandoned_goal_ids: List[int] = Field(default_factory=list)
    promoted_goal_ids: List[int] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=list)


__all__ = [
    "EPOCH",
    "MAX_PRIORITY",
    "MIN_PRIORITY",
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
    "as_utc",
    "clamp_priority",
    "ensure_terminal_status",
    "goal_from_row",
    "parse_json_object",
    "journal_entry_from_row",
    "stack_sort_key",
    "unique_ids",
    "utcnow",
]
