"""
Repository for managing application settings persistence.
"""

from typing import Dict, Any
from pathlib import Path

from config import SETTINGS_FILE, SETTINGS_CONFIG

# DEFAULT_SETTINGS is computed from SETTINGS_CONFIG
DEFAULT_SETTINGS = {key: config['default'] for key, config in SETTINGS_CONFIG.items()}

# Provider labels written by older front ends.
LEGACY_TTS_PROVIDERS = {
    'webspeech': 'local',
    'custom': 'remote',
}


class SettingsRepository:
    """
    Repository for managing application settings.

    Settings are stored one per line as KEY=VALUE string entries and
    converted to the types declared in SETTINGS_CONFIG on load.
    """

    def __init__(self, settings_file: str = None):
        """
        Initialize the settings repository.

        Parameters
        ----------
        settings_file : str, optional
            Path to the settings file. Defaults to SETTINGS_FILE from config.
        """
        self.settings_file = Path(settings_file or SETTINGS_FILE)
        self._settings: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        """Load settings from file."""
        self._settings = DEFAULT_SETTINGS.copy()

        if not self.settings_file.exists():
            return

        try:
            with open(self.settings_file, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#') or '=' not in line:
                        continue

                    key, value = line.split('=', 1)
                    key = key.strip().upper()
                    value = value.strip()
                    if key not in SETTINGS_CONFIG:
                        continue

                    try:
                        self._settings[key] = _decode_value(SETTINGS_CONFIG[key]['type'], value)
                    except ValueError:
                        print(f"Ignoring invalid value for {key}: {value!r}")
        except OSError as e:
            print(f"Error loading settings: {e}")

        self._migrate_legacy_tts_provider()

    def _migrate_legacy_tts_provider(self) -> None:
        """Map old provider labels onto the current ones."""
        provider = str(self._settings.get('TTS_PROVIDER', '')).strip().lower()
        if provider in LEGACY_TTS_PROVIDERS:
            self._settings['TTS_PROVIDER'] = LEGACY_TTS_PROVIDERS[provider]

    def get_all(self) -> Dict[str, Any]:
        """Get a copy of all settings."""
        return self._settings.copy()

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a setting value.

        Parameters
        ----------
        key : str
            The setting key (case-insensitive, will be uppercased).
        default : Any, optional
            Default value if key not found.
        """
        return self._settings.get(key.upper(), default)

    def set(self, key: str, value: Any) -> None:
        """
        Set a setting value.

        Raises
        ------
        ValueError
            If the value cannot be converted to the declared type.
        """
        key = key.upper()

        if key in SETTINGS_CONFIG:
            expected_type = SETTINGS_CONFIG[key]['type']
            if not isinstance(value, expected_type):
                try:
                    if expected_type == bool:
                        value = value.lower() == 'true' if isinstance(value, str) else bool(value)
                    else:
                        value = expected_type(value)
                except (ValueError, TypeError) as e:
                    raise ValueError(f"Cannot convert value for {key} to {expected_type.__name__}: {e}")

        self._settings[key] = value

    def save(self) -> None:
        """Save settings to file."""
        try:
            self.settings_file.parent.mkdir(parents=True, exist_ok=True)

            with open(self.settings_file, 'w', encoding='utf-8') as f:
                f.write("# GMChat Settings\n")
                f.write("# Format: KEY=VALUE\n\n")

                for key in sorted(self._settings.keys()):
                    if key not in SETTINGS_CONFIG:
                        continue
                    f.write(f"{key}={_encode_value(self._settings[key])}\n")

        except OSError as e:
            print(f"Error saving settings: {e}")
            raise


def _decode_value(expected_type, value: str) -> Any:
    if expected_type == bool:
        return value.lower() == 'true'
    if expected_type == str:
        return value.replace('\\n', '\n').replace('\\r', '\r')
    return expected_type(value)


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, str):
        return value.replace('\r', '\\r').replace('\n', '\\n')
    return str(value)
