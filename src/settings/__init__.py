"""
Settings management for GMChat.
"""

from .settings_manager import SettingsManager

__all__ = ['SettingsManager']
