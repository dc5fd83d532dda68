import os
import re
from pathlib import Path

from config import SESSIONS_DIR


def is_debug_enabled() -> bool:
    """Return True when GMCHAT_DEBUG asks for verbose logging."""
    return os.environ.get("GMCHAT_DEBUG", "").lower() in ("1", "true", "yes")


def clean_display_text(text):
    """Strip markdown and normalize whitespace for session lists and titles."""
    if not text:
        return ""
    text = re.sub(r'[#*`]', '', text)
    text = re.sub(r'\s+', ' ', text).strip()
    return text


def truncate_text(text, limit):
    """Cut text to at most `limit` characters (never negative)."""
    if not text:
        return ""
    return text[:max(limit, 0)]


def get_session_dir(session_id, sessions_dir=None):
    """Get the directory path for a session's associated files (images)."""
    if session_id.endswith('.json'):
        session_id = session_id[:-5]
    return Path(sessions_dir or SESSIONS_DIR) / session_id
