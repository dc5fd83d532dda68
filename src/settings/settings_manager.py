"""
Typed, cached access to GMChat settings.

Values are coerced to the types declared in SETTINGS_CONFIG, and a
SETTINGS_CHANGED event is published whenever a value actually changes.
"""

from typing import Any, Dict, Optional

from repositories import SettingsRepository
from events import EventBus, EventType, Event
from config import SETTINGS_CONFIG

TRUE_WORDS = ('true', '1', 'yes', 'on')


def coerce_setting(key: str, value: Any) -> Any:
    """
    Convert a raw value to the type declared for ``key``.

    Strings are trimmed. Numbers that cannot be parsed fall back to the
    declared default. Unknown keys pass through unchanged.
    """
    config = SETTINGS_CONFIG.get(key)
    if config is None:
        return value
    expected, default = config['type'], config['default']

    if expected is bool:
        if isinstance(value, str):
            return value.strip().lower() in TRUE_WORDS
        return bool(value)
    if expected is str:
        return '' if value is None else str(value).strip()
    if value is None or value == '':
        return default
    try:
        return expected(value)
    except (TypeError, ValueError):
        print(f"[SettingsManager] Invalid value for {key}: {value!r}, using {default!r}")
        return default


class SettingsManager:
    """Settings cache in front of a SettingsRepository."""

    def __init__(
        self,
        repository: Optional[SettingsRepository] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self._repo = repository or SettingsRepository()
        self._event_bus = event_bus
        self._values: Dict[str, Any] = self._repo.get_all()

    def get(self, key: str, default: Any = None) -> Any:
        """Current value of a setting, or ``default`` if it is unknown."""
        return self._values.get(key, default)

    def set(self, key: str, value: Any, emit_event: bool = True) -> bool:
        """
        Change a setting in memory; call ``save`` to write it out.

        Returns
        -------
        bool
            True if the stored value changed.
        """
        value = coerce_setting(key, value)
        old_value = self._values.get(key)
        if key in self._values and old_value == value:
            return False

        self._values[key] = value
        self._repo.set(key, value)
        if emit_event and self._event_bus:
            self._event_bus.publish(Event(
                type=EventType.SETTINGS_CHANGED,
                data={'key': key, 'value': value, 'old_value': old_value},
                source='settings_manager'
            ))
        return True

    def save(self) -> None:
        """
        Write all settings to disk.

        Raises
        ------
        OSError
            If the settings file cannot be written.
        """
        self._repo.save()
