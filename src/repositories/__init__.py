"""
Repository pattern implementations for data access layer.

This package provides repository classes that abstract data persistence
and retrieval operations, separating data access concerns from session logic.
"""

from .base import Repository
from .session_repository import SessionRepository, SessionMetadata
from .settings_repository import SettingsRepository

__all__ = [
    'Repository',
    'SessionRepository',
    'SessionMetadata',
    'SettingsRepository',
]
