# tests/test_heuristics.py
"""
Tests for the keyword heuristics behind the policy rules.
"""

import pytest

from agenda_planner.heuristics import (
    agenda_type_for_classifier_goal,
    is_booking_intent,
    is_cancel_all_message,
    is_cancellation_message,
    is_price_intent,
    pulse_boost,
    topic_from_message,
)
from agenda_planner.models import ClassifierGoal, GoalType, PulseState


class TestCancellation:
    """Tests for opt-out detection."""

    @pytest.mark.parametrize(
        "message",
        ["nah", "Not now", "  stop  ", "no thanks", "Never mind", "nevermind", "nope", "leave this"],
    )
    def test_short_opt_out_phrases(self, message):
        assert is_cancellation_message(message)

    @pytest.mark.parametrize(
        "message",
        [
            "ok forget it, show me hotels in Goa instead",
            "I'm done with this for today",
            "I am done",
            "honestly I'm not interested in deals",
            "please cancel this one",
            "drop it",
            "I was going to ask but never mind, keep going",
        ],
    )
    def test_explicit_phrases_in_longer_messages(self, message):
        """Explicit cancel phrases count regardless of message length."""
        assert is_cancellation_message(message)

    @pytest.mark.parametrize(
        "message",
        [
            "",
            "   ",
            "stop by the store later",
            "cancel my order",
            "show me biryani places",
            "nah I think the second one looks better honestly",
        ],
    )
    def test_not_cancellation(self, message):
        assert not is_cancellation_message(message)

    @pytest.mark.parametrize(
        "message", ["cancel everything", "Cancel all of it", "please stop everything", "abandon all"]
    )
    def test_cancel_all(self, message):
        """Cancel-all phrases are detected and also count as cancellations."""
        assert is_cancel_all_message(message)
        assert is_cancellation_message(message)

    def test_single_cancel_is_not_cancel_all(self):
        assert not is_cancel_all_message("cancel this")
        assert not is_cancel_all_message("")


class TestPriceIntent:
    """Tests for comparison intent."""

    @pytest.mark.parametrize(
        "message",
        ["compare biryani", "what's the price on Zomato", "any coupon?", "cheapest option please"],
    )
    def test_message_keywords(self, message):
        assert is_price_intent(message)

    def test_plain_message_has_no_intent(self):
        assert not is_price_intent("tell me a joke")
        assert not is_price_intent("")

    def test_whole_words_only(self):
        """Plural or embedded forms do not count."""
        assert not is_price_intent("prices are crazy these days")

    def test_tool_name_triggers_intent(self):
        assert is_price_intent("hello", active_tool_name="swiggy_search")
        assert is_price_intent("hello", active_tool_name="PriceCompare")

    def test_any_tool_with_result_triggers_intent(self):
        assert is_price_intent("hello", active_tool_name="weather", has_tool_result=True)
        assert not is_price_intent("hello", active_tool_name="weather")
        assert not is_price_intent("hello", has_tool_result=True)


class TestBookingIntent:
    """Tests for booking commit intent."""

    @pytest.mark.parametrize(
        "message", ["Book it", "go ahead", "place order now", "confirm please", "done", "checkout"]
    )
    def test_booking_phrases(self, message):
        assert is_booking_intent(message)

    @pytest.mark.parametrize("message", ["", "I booked it yesterday", "tell me more"])
    def test_not_booking(self, message):
        assert not is_booking_intent(message)


class TestTopic:
    """Tests for topic extraction."""

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("Compare biryani prices on Swiggy", "biryani"),
            ("Swiggy deals tonight", "swiggy"),
            ("Zepto vs Blinkit for milk", "zepto"),
            ("cheap hotel in Goa", "hotel"),
            ("hello there", None),
            ("", None),
        ],
    )
    def test_topic_from_message(self, message, expected):
        assert topic_from_message(message) == expected

    def test_food_wins_over_grocery_and_travel(self):
        """Food keywords take precedence regardless of position."""
        assert topic_from_message("after the trip, order pizza via zepto") == "pizza"


class TestMappings:
    """Tests for pulse boosts and classifier goal mapping."""

    @pytest.mark.parametrize(
        "state,expected",
        [
            (PulseState.PROACTIVE, 2),
            (PulseState.ENGAGED, 1),
            (PulseState.CURIOUS, 0),
            (PulseState.PASSIVE, -1),
            (None, -1),
            ("ENGAGED", 1),
        ],
    )
    def test_pulse_boost(self, state, expected):
        assert pulse_boost(state) == expected

    @pytest.mark.parametrize(
        "label,expected",
        [
            (ClassifierGoal.PLAN, GoalType.TRIP_PLAN),
            (ClassifierGoal.UPSELL, GoalType.UPSELL),
            (ClassifierGoal.RECOMMEND, GoalType.RECOMMENDATION),
            (ClassifierGoal.REDIRECT, GoalType.RE_ENGAGEMENT),
            (ClassifierGoal.INFORM, GoalType.GENERAL),
            (ClassifierGoal.REASSURE, GoalType.GENERAL),
            (None, GoalType.GENERAL),
        ],
    )
    def test_agenda_type_for_classifier_goal(self, label, expected):
        assert agenda_type_for_classifier_goal(label) == expected
