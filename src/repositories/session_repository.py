"""
Repository for managing session persistence.
"""

import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Any
from dataclasses import dataclass

from .base import Repository
from .session_index import load_session_index, save_session_index, SESSION_INDEX_FILENAME
from conversation import Session
from config import SESSIONS_DIR, DEFAULT_SYSTEM_PROMPT


@dataclass
class SessionMetadata:
    """Summary of a stored session, as shown in the session list."""
    session_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    turn_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'title': self.title,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'turn_count': self.turn_count,
        }


class SessionRepository(Repository[Session, SessionMetadata]):
    """
    Repository for campaign sessions.

    Each session is one JSON file named after its id inside the sessions
    directory. A hidden index file caches listing metadata and records which
    session is current.
    """

    def __init__(self, sessions_dir: str = None):
        """
        Initialize the session repository.

        Parameters
        ----------
        sessions_dir : str, optional
            Directory where sessions are stored.
            Defaults to SESSIONS_DIR from config.
        """
        self.sessions_dir = Path(sessions_dir or SESSIONS_DIR)
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def _get_session_path(self, session_id: str) -> Path:
        """Get the file path for a session ID."""
        if session_id.endswith('.json'):
            session_id = session_id[:-5]
        return self.sessions_dir / f"{session_id}.json"

    def get(self, session_id: str) -> Optional[Session]:
        """
        Load a session by ID.

        Returns
        -------
        Optional[Session]
            The session if found and readable, None otherwise.
        """
        path = self._get_session_path(session_id)
        if not path.exists():
            return None

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            print(f"Error loading session {session_id}: {e}")
            return None

        if not isinstance(data, dict):
            print(f"Error loading session {session_id}: not a session record")
            return None
        data.setdefault('id', path.stem)
        return Session.from_dict(data, default_system=DEFAULT_SYSTEM_PROMPT)

    def save(self, session: Session) -> None:
        """
        Save a session, replacing any previous record with the same id.

        Raises
        ------
        OSError
            If the session file cannot be written.
        """
        path = self._get_session_path(session.id)
        try:
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(session.to_dict(), f, indent=2, ensure_ascii=False)
        except OSError as e:
            print(f"Error saving session {session.id}: {e}")
            raise

        self._update_index(session, path)

    def delete(self, session_id: str) -> bool:
        """
        Delete a session and its associated files.

        Returns
        -------
        bool
            True if the session was deleted, False if not found.
        """
        path = self._get_session_path(session_id)
        if not path.exists():
            return False

        try:
            path.unlink()
            session_dir = self.sessions_dir / path.stem
            if session_dir.is_dir():
                shutil.rmtree(session_dir)
        except OSError as e:
            print(f"Error deleting session {session_id}: {e}")
            return False

        index = load_session_index(self.sessions_dir)
        index["entries"].pop(path.stem, None)
        if index.get("current") == path.stem:
            index["current"] = ""
        save_session_index(self.sessions_dir, index)
        return True

    def list_all(self) -> List[SessionMetadata]:
        """
        List all stored sessions.

        Returns
        -------
        List[SessionMetadata]
            Metadata for every session, most recently updated first.
        """
        sessions: List[SessionMetadata] = []
        index = load_session_index(self.sessions_dir)
        entries = index["entries"]
        changed = False
        seen_ids = set()

        for session_file in self.sessions_dir.glob("*.json"):
            if session_file.name == SESSION_INDEX_FILENAME or session_file.name.startswith("."):
                continue
            session_id = session_file.stem
            seen_ids.add(session_id)

            try:
                file_mtime = session_file.stat().st_mtime
            except OSError:
                continue

            entry = entries.get(session_id)
            if entry and entry.get("file_mtime") == file_mtime:
                meta = _metadata_from_entry(session_id, entry)
                if meta:
                    sessions.append(meta)
                    continue

            session = self.get(session_id)
            if session is None:
                continue

            entries[session_id] = _entry_for(session, file_mtime)
            changed = True
            sessions.append(_metadata_from_session(session))

        for session_id in list(entries.keys()):
            if session_id not in seen_ids:
                del entries[session_id]
                changed = True

        if changed:
            save_session_index(self.sessions_dir, index)

        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    # -------------------------------------------------------------------------
    # Current session pointer
    # -------------------------------------------------------------------------

    def get_current_id(self) -> Optional[str]:
        """Return the id recorded as the current session, if any."""
        current = load_session_index(self.sessions_dir).get("current")
        return current or None

    def set_current_id(self, session_id: Optional[str]) -> None:
        """Record which session is current (None clears the record)."""
        index = load_session_index(self.sessions_dir)
        index["current"] = session_id or ""
        save_session_index(self.sessions_dir, index)

    def load_current(self) -> Optional[Session]:
        """Load the current session, or None if unset or missing."""
        session_id = self.get_current_id()
        if not session_id:
            return None
        return self.get(session_id)

    def _update_index(self, session: Session, path: Path) -> None:
        """Update the cached index entry for this session."""
        try:
            file_mtime = path.stat().st_mtime
        except OSError:
            return
        index = load_session_index(self.sessions_dir)
        index["entries"][session.id] = _entry_for(session, file_mtime)
        save_session_index(self.sessions_dir, index)


def _entry_for(session: Session, file_mtime: float) -> Dict[str, Any]:
    return {
        "title": session.title,
        "created_at": session.created_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
        "turn_count": len(session.turns),
        "file_mtime": file_mtime,
    }


def _metadata_from_session(session: Session) -> SessionMetadata:
    return SessionMetadata(
        session_id=session.id,
        title=session.title,
        created_at=session.created_at,
        updated_at=session.updated_at,
        turn_count=len(session.turns),
    )


def _metadata_from_entry(session_id: str, entry: Dict[str, Any]) -> Optional[SessionMetadata]:
    created_at = _parse_iso(entry.get("created_at"))
    updated_at = _parse_iso(entry.get("updated_at"))
    if not created_at or not updated_at:
        return None
    return SessionMetadata(
        session_id=session_id,
        title=entry.get("title", session_id),
        created_at=created_at,
        updated_at=updated_at,
        turn_count=entry.get("turn_count", 0),
    )


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp string to datetime."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None
