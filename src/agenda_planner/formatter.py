# src/agenda_planner/formatter.py
"""
Prompt rendering of the goal stack.

Produces a short, budgeted block for the system prompt:

    ## Conversation Agenda
    Prioritize these goals in order:
    1. [price_watch|P8] Guide user from biryani interest to a clear price comparison decision.
       next: Offer a live comparison (Swiggy/Zomato or Blinkit/Zepto/Instamart).
    2. [recommendation|P7] Convert comparison output into ... | parent:12
       next: Ask a single yes/no next-step question.

The output never exceeds ``max_chars``; goals that would overflow the
budget are dropped from the end.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional

from .models import Goal, GoalStatus, stack_sort_key

DEFAULT_MAX_GOALS = 3
DEFAULT_MAX_CHARS = 600
MIN_MAX_CHARS = 120

GOAL_TEXT_CHARS = 110
NEXT_ACTION_CHARS = 90

HEADER = "## Conversation Agenda\nPrioritize these goals in order:"

_WHITESPACE_RE = re.compile(r"\s+")


def compact_text(value: str, max_len: int) -> str:
    """
    Collapse whitespace and cut to ``max_len`` characters with an ellipsis.

    Examples:
        >>> compact_text("  a   b  ", 10)
        'a b'
        >>> compact_text("abcdefghij", 5)
        'abcd…'
    """
    normalized = _WHITESPACE_RE.sub(" ", value or "").strip()
    if len(normalized) <= max_len:
        return normalized
    return f"{normalized[: max(0, max_len - 1)].strip()}…"


def format_agenda_for_prompt(
    goals: Optional[Iterable[Goal]],
    max_goals: int = DEFAULT_MAX_GOALS,
    max_chars: int = DEFAULT_MAX_CHARS,
) -> str:
    """
    Render the highest-priority active goals as a prompt block.

    Args:
        goals: Goals in any order; inactive ones are ignored
        max_goals: Maximum goals rendered (at least 1)
        max_chars: Character budget of the whole block (at least 120)

    Returns:
        The block, or ``""`` when there is nothing to render or no goal
        line fits the budget
    """
    if not goals:
        return ""

    max_goals = max(1, max_goals)
    max_chars = max(MIN_MAX_CHARS, max_chars)
    top = sorted(
        (goal for goal in goals if goal.status == GoalStatus.ACTIVE),
        key=stack_sort_key,
    )[:max_goals]
    if not top:
        return ""

    lines = [HEADER]
    used = len(HEADER)

    for index, goal in enumerate(top, start=1):
        parent = f" | parent:{goal.parent_goal_id}" if goal.parent_goal_id else ""
        base_line = (
            f"{index}. [{goal.goal_type.value}|P{goal.priority}] "
            f"{compact_text(goal.goal_text, GOAL_TEXT_CHARS)}{parent}"
        )
        next_line = (
            f"   next: {compact_text(goal.next_action, NEXT_ACTION_CHARS)}" if goal.next_action else ""
        )

        # +1 per joining newline
        projected = used + 1 + len(base_line) + (1 + len(next_line) if next_line else 0)
        if projected > max_chars:
            break

        lines.append(base_line)
        if next_line:
            lines.append(next_line)
        used = projected

    if len(lines) == 1:
        return ""
    return "\n".join(lines)


__all__ = ["HEADER", "compact_text", "format_agenda_for_prompt"]
