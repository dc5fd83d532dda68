"""
context_window.py – Selects the bounded subset of turns sent with a request.

The selection walks the log from newest to oldest, keeping system turns for
free and charging every other turn an approximate token cost. It stops at the
first turn that does not fit, so an old turn can survive only if everything
newer than it fit as well.
"""

import math
from typing import Any, Dict, List, Sequence

from config import (
    CONTEXT_COST_DIVISOR,
    DEFAULT_CONTEXT_MAX_TOKENS,
    DEFAULT_CONTEXT_MAX_TURNS,
)
from conversation import Turn


def estimate_cost(text: str, divisor: int = CONTEXT_COST_DIVISOR) -> int:
    """Approximate token cost of a piece of text: ceil(len / divisor)."""
    return math.ceil(len(text or "") / divisor)


def select_context_window(
    turns: Sequence[Turn],
    max_tokens: int = DEFAULT_CONTEXT_MAX_TOKENS,
    max_turns: int = DEFAULT_CONTEXT_MAX_TURNS,
    divisor: int = CONTEXT_COST_DIVISOR,
) -> List[Turn]:
    """
    Derive the turns to send for the next request.

    Parameters
    ----------
    turns : Sequence[Turn]
        The full session log, oldest first.
    max_tokens : int
        Soft budget for the summed cost of non-system turns. A turn that would
        exceed it is dropped whole, never truncated.
    max_turns : int
        Scanning stops once more than this many non-system turns are included.
    divisor : int
        Characters per cost unit.

    Returns
    -------
    List[Turn]
        Selected turns in chronological order, with exactly one system turn
        at the head (when the log has one).
    """
    selected: List[Turn] = []
    accumulated = 0
    included = 0

    for turn in reversed(turns):
        if turn.role == "system":
            selected.append(turn)
            continue
        cost = estimate_cost(turn.content, divisor)
        if accumulated + cost > max_tokens or included > max_turns:
            break
        selected.append(turn)
        accumulated += cost
        included += 1

    selected.reverse()

    if not any(turn.role == "system" for turn in selected):
        system_turn = next((turn for turn in turns if turn.role == "system"), None)
        if system_turn is not None:
            selected.insert(0, system_turn)

    return selected


def messages_for_request(
    turns: Sequence[Turn],
    max_tokens: int = DEFAULT_CONTEXT_MAX_TOKENS,
    max_turns: int = DEFAULT_CONTEXT_MAX_TURNS,
) -> List[Dict[str, Any]]:
    """Selected context window as ``{role, content}`` dicts for the wire."""
    return [turn.to_dict() for turn in select_context_window(turns, max_tokens, max_turns)]
