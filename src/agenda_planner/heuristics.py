# src/agenda_planner/heuristics.py
"""
Keyword heuristics used by the policy rules.

These are deliberately shallow: no language model calls and no semantic
parsing, just word-boundary regular expressions over the raw message. They
may misclassify ambiguous phrasing (for example, "cancel all" followed by a
new request in the same sentence).
"""

from __future__ import annotations

import re
from typing import Optional

from .models import ClassifierGoal, GoalType, PulseState

# Short messages (at most this many words) may opt out with a bare phrase.
SHORT_OPT_OUT_MAX_WORDS = 5

_SHORT_OPT_OUT_RE = re.compile(
    r"^(not now|no thanks|nah|cancel|stop|leave it|leave this|nope|nevermind|never mind)$",
    re.IGNORECASE,
)
_EXPLICIT_CANCEL_RE = re.compile(
    r"\b(cancel (this|that|it)|stop (this|that)|leave it|not interested"
    r"|i('m| am) done|drop it|forget it|never\s*mind)\b",
    re.IGNORECASE,
)
_CANCEL_ALL_RE = re.compile(
    r"\b(cancel (everything|all)|stop (everything|all)|abandon all)\b",
    re.IGNORECASE,
)

_PRICE_TOOL_RE = re.compile(r"compare|price|swiggy|zomato|blinkit|zepto|instamart", re.IGNORECASE)
_PRICE_MESSAGE_RE = re.compile(
    r"\b(compare|cheapest|deal|discount|coupon|price|swiggy|zomato|blinkit|zepto|instamart)\b",
    re.IGNORECASE,
)
_BOOKING_RE = re.compile(
    r"\b(book|booking|order|checkout|place order|go ahead|confirm|done)\b",
    re.IGNORECASE,
)

_TOPIC_PATTERNS = (
    re.compile(r"\b(biryani|pizza|burger|dosa|food|restaurant|swiggy|zomato)\b"),
    re.compile(r"\b(grocery|blinkit|zepto|instamart)\b"),
    re.compile(r"\b(flight|hotel|trip|travel|vacation|booking)\b"),
)

_PULSE_BOOSTS = {
    PulseState.PROACTIVE: 2,
    PulseState.ENGAGED: 1,
    PulseState.CURIOUS: 0,
    PulseState.PASSIVE: -1,
}

_CLASSIFIER_GOAL_TYPES = {
    ClassifierGoal.PLAN: GoalType.TRIP_PLAN,
    ClassifierGoal.UPSELL: GoalType.UPSELL,
    ClassifierGoal.RECOMMEND: GoalType.RECOMMENDATION,
    ClassifierGoal.REDIRECT: GoalType.RE_ENGAGEMENT,
}


def is_cancel_all_message(message: str) -> bool:
    """True for "cancel everything", "stop all", "abandon all" and friends."""
    return bool(_CANCEL_ALL_RE.search(message or ""))


def is_cancellation_message(message: str) -> bool:
    """
    Detect an explicit opt-out.

    A short message (five words or fewer) matching one of the bare opt-out
    phrases counts, as does any message containing an explicit cancel
    phrase. The "everything/all" variants count as cancellations too.

    Examples:
        >>> is_cancellation_message("nah")
        True
        >>> is_cancellation_message("I was going to cancel but never mind, keep going")
        True
        >>> is_cancellation_message("stop by the store later")
        False
    """
    normalized = (message or "").strip().lower()
    if not normalized:
        return False
    if len(normalized.split()) <= SHORT_OPT_OUT_MAX_WORDS and _SHORT_OPT_OUT_RE.match(normalized):
        return True
    return bool(_EXPLICIT_CANCEL_RE.search(normalized)) or is_cancel_all_message(normalized)


def is_price_intent(
    message: str,
    active_tool_name: Optional[str] = None,
    has_tool_result: bool = False,
) -> bool:
    """Comparison or delivery-platform intent from the message or the active tool."""
    if active_tool_name and _PRICE_TOOL_RE.search(active_tool_name):
        return True
    if has_tool_result and active_tool_name:
        return True
    return bool(_PRICE_MESSAGE_RE.search(message or ""))


def is_booking_intent(message: str) -> bool:
    return bool(_BOOKING_RE.search(message or ""))


def topic_from_message(message: str) -> Optional[str]:
    """First food keyword, else grocery, else travel; None when nothing matches."""
    lower = (message or "").lower()
    for pattern in _TOPIC_PATTERNS:
        match = pattern.search(lower)
        if match:
            return match.group(1)
    return None


def pulse_boost(state: Optional[PulseState]) -> int:
    """Priority delta for the engagement state; absent counts as passive."""
    if state is None:
        return -1
    return _PULSE_BOOSTS.get(PulseState(state), -1)


def agenda_type_for_classifier_goal(goal: Optional[ClassifierGoal]) -> GoalType:
    if goal is None:
        return GoalType.GENERAL
    return _CLASSIFIER_GOAL_TYPES.get(ClassifierGoal(goal), GoalType.GENERAL)


__all__ = [
    "agenda_type_for_classifier_goal",
    "is_booking_intent",
    "is_cancel_all_message",
    "is_cancellation_message",
    "is_price_intent",
    "pulse_boost",
    "topic_from_message",
]
