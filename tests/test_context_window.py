"""Tests for context window selection."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conversation import Turn
from context_window import estimate_cost, select_context_window, messages_for_request


def test_estimate_cost_rounds_up():
    assert estimate_cost("") == 0
    assert estimate_cost("a") == 1
    assert estimate_cost("aaa") == 1
    assert estimate_cost("aaaa") == 2
    assert estimate_cost("a" * 10) == 4


def test_small_history_returned_unchanged():
    turns = [Turn("system", ""), Turn("user", "aaaaaaaaaa")]

    selected = select_context_window(turns, max_tokens=10, max_turns=24)

    assert selected == turns


def test_oversized_turn_dropped_whole():
    turns = [Turn("system", "rules"), Turn("user", "x" * 30), Turn("user", "abc")]

    selected = select_context_window(turns, max_tokens=10, max_turns=24)

    assert selected == [Turn("system", "rules"), Turn("user", "abc")]


def test_everything_older_than_a_stop_is_excluded():
    turns = [
        Turn("system", "rules"),
        Turn("user", "old"),
        Turn("assistant", "y" * 300),
        Turn("user", "new"),
    ]

    selected = select_context_window(turns, max_tokens=20, max_turns=24)

    assert [t.content for t in selected] == ["rules", "new"]


def test_turn_limit_stops_scan():
    turns = [Turn("system", "s")] + [Turn("user", str(i)) for i in range(10)]

    selected = select_context_window(turns, max_tokens=1000, max_turns=3)

    # Scanning stops once more than max_turns turns are included.
    non_system = [t.content for t in selected if t.role != "system"]
    assert non_system == ["6", "7", "8", "9"]


def test_system_turn_is_free():
    turns = [Turn("system", "s" * 3000), Turn("user", "abc")]

    selected = select_context_window(turns, max_tokens=1, max_turns=24)

    assert selected == turns


def test_output_chronological_with_single_leading_system():
    turns = [Turn("system", "rules")]
    for i in range(40):
        turns.append(Turn("user" if i % 2 == 0 else "assistant", f"turn {i} " + "z" * (i * 7)))

    for budget in (0, 5, 50, 500, 5000):
        selected = select_context_window(turns, max_tokens=budget, max_turns=24)

        assert selected[0].role == "system"
        assert sum(1 for t in selected if t.role == "system") == 1
        positions = [turns.index(t) for t in selected]
        assert positions == sorted(positions)


def test_no_system_turn_in_log():
    turns = [Turn("user", "a"), Turn("assistant", "b")]
    assert select_context_window(turns) == turns


def test_messages_for_request():
    turns = [Turn("system", "s"), Turn("user", "hi")]
    assert messages_for_request(turns) == [
        {"role": "system", "content": "s"},
        {"role": "user", "content": "hi"},
    ]
