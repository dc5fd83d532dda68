"""
Session index helpers: fast listings and the current-session pointer.
"""

import json
from pathlib import Path
from typing import Dict, Any


SESSION_INDEX_FILENAME = ".session_index.json"


def _default_index() -> Dict[str, Any]:
    return {"version": 1, "current": "", "entries": {}}


def load_session_index(sessions_dir: Path) -> Dict[str, Any]:
    """Load the session index file or return an empty index."""
    path = sessions_dir / SESSION_INDEX_FILENAME
    if not path.exists():
        return _default_index()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        print(f"Error reading session index, rebuilding: {e}")
        return _default_index()
    if not isinstance(data, dict):
        return _default_index()
    if not isinstance(data.get("entries"), dict):
        data["entries"] = {}
    if not isinstance(data.get("current"), str):
        data["current"] = ""
    return data


def save_session_index(sessions_dir: Path, data: Dict[str, Any]) -> None:
    """Persist the session index file."""
    path = sessions_dir / SESSION_INDEX_FILENAME
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
    except OSError as e:
        # The index is a cache; listings fall back to reading session files.
        print(f"Error writing session index: {e}")
