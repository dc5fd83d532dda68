"""
conversation.py – Domain layer for sessions and their turn logs.

This module provides:
- Turn and Session dataclasses for representing a campaign conversation.
- Session operations (append, system prompt replacement, title derivation)
  that keep the log invariants intact.
- SessionContext, the state object threaded through controller and services.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import DEFAULT_SESSION_TITLE, TITLE_MAX_LENGTH


ROLES = ("system", "user", "assistant")


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class Turn:
    """
    One role-tagged message in a session log.

    Attributes
    ----------
    role : str
        The role of the sender ('system', 'user', 'assistant').
    content : str
        The text content of the turn.
    """
    role: str
    content: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization or API calls."""
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Turn":
        """Create from dictionary."""
        return cls(
            role=data.get("role", "user"),
            content=data.get("content", "") or "",
        )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None


@dataclass
class Session:
    """
    A titled, timestamped conversation.

    The turn log always starts with exactly one system turn. Every mutation
    goes through the methods below so that the invariants and ``updated_at``
    stay consistent.
    """
    id: str
    title: str
    system_prompt: str
    model: str
    turns: List[Turn] = field(default_factory=list)
    last_assistant_utterance: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def create(cls, system_prompt: str, model: str, session_id: Optional[str] = None) -> "Session":
        """
        Create a new session whose only turn is the system prompt.

        Parameters
        ----------
        system_prompt : str
            Content of the system turn.
        model : str
            Model identifier sent with each request.
        session_id : Optional[str]
            Explicit id; a UUID is synthesized when omitted.

        Returns
        -------
        Session
            The new session.
        """
        now = datetime.now()
        return cls(
            id=session_id or str(uuid.uuid4()),
            title=DEFAULT_SESSION_TITLE,
            system_prompt=system_prompt,
            model=model,
            turns=[Turn(role="system", content=system_prompt)],
            created_at=now,
            updated_at=now,
        )

    def __len__(self) -> int:
        return len(self.turns)

    def touch(self) -> None:
        """Advance ``updated_at``; it never moves backwards."""
        now = datetime.now()
        if now > self.updated_at:
            self.updated_at = now

    def add_turn(self, role: str, content: str) -> Turn:
        """
        Append a turn at the tail of the log.

        Raises
        ------
        ValueError
            If the role is unknown or is 'system' (the log holds exactly one
            system turn, use replace_system_turn instead).
        """
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")
        if role == "system":
            raise ValueError("A session has exactly one system turn; use replace_system_turn()")
        turn = Turn(role=role, content=content)
        self.turns.append(turn)
        self.touch()
        return turn

    def replace_system_turn(self, prompt: str) -> None:
        """Overwrite the system turn at index 0 in place."""
        self.system_prompt = prompt
        if self.turns and self.turns[0].role == "system":
            self.turns[0].content = prompt
        else:
            self.turns.insert(0, Turn(role="system", content=prompt))
        self.touch()

    def set_model(self, model: str) -> None:
        """Change the model used for future requests."""
        if model == self.model:
            return
        self.model = model
        self.touch()

    def set_last_assistant_utterance(self, text: str) -> None:
        self.last_assistant_utterance = text
        self.touch()

    def get_first_user_turn(self) -> Optional[Turn]:
        """Return the first user turn with non-blank content, or None."""
        for turn in self.turns:
            if turn.role == "user" and turn.content.strip():
                return turn
        return None

    def derive_title(self) -> bool:
        """
        Name the session after its first user turn.

        Only applies while the title is empty or still the default placeholder,
        so repeated calls after a title is set are no-ops.

        Returns
        -------
        bool
            True if the title changed.
        """
        if self.title and self.title != DEFAULT_SESSION_TITLE:
            return False
        first_user = self.get_first_user_turn()
        if first_user is None:
            return False
        first_line = first_user.content.strip().splitlines()[0].strip()
        title = first_line[:TITLE_MAX_LENGTH]
        if not title:
            return False
        self.title = title
        self.touch()
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "title": self.title,
            "system_prompt": self.system_prompt,
            "model": self.model,
            "turns": [turn.to_dict() for turn in self.turns],
            "last_assistant_utterance": self.last_assistant_utterance,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_system: str = "") -> "Session":
        """
        Create from dictionary.

        A record whose first turn is not a system turn gets one built from its
        ``system_prompt`` (or ``default_system``); system turns found anywhere
        else in the log are dropped.
        """
        system_prompt = data.get("system_prompt")
        raw_turns = [Turn.from_dict(t) for t in data.get("turns") or []]

        turns: List[Turn] = []
        if raw_turns and raw_turns[0].role == "system":
            turns.append(raw_turns[0])
            if system_prompt is None:
                system_prompt = raw_turns[0].content
            raw_turns = raw_turns[1:]
        if system_prompt is None:
            system_prompt = default_system
        if not turns:
            turns.append(Turn(role="system", content=system_prompt))
        turns.extend(t for t in raw_turns if t.role in ("user", "assistant"))

        created_at = _parse_timestamp(data.get("created_at")) or datetime.now()
        updated_at = _parse_timestamp(data.get("updated_at")) or created_at

        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            title=data.get("title", DEFAULT_SESSION_TITLE),
            system_prompt=system_prompt,
            model=data.get("model", ""),
            turns=turns,
            last_assistant_utterance=data.get("last_assistant_utterance", "") or "",
            created_at=created_at,
            updated_at=max(updated_at, created_at),
        )


@dataclass
class SessionContext:
    """
    Mutable application state passed explicitly to services.

    Attributes
    ----------
    session : Session
        The session currently being played.
    pending_input : str
        Text waiting in the input box (typed or transcribed).
    """
    session: Session
    pending_input: str = ""
