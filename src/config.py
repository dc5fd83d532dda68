import os
from pathlib import Path

# Base directory of the project source files (location of GMChat.py)
BASE_DIR = os.path.dirname(os.path.abspath(__file__))


def _default_data_root() -> str:
    """
    Determine a writable data root for GMChat.

    Priority:
      1. GMCHAT_DATA_DIR environment variable (explicit override)
      2. XDG data directory: $XDG_DATA_HOME/gmchat or ~/.local/share/gmchat
    """
    override = os.environ.get("GMCHAT_DATA_DIR")
    if override:
        return override

    home = str(Path.home())
    xdg_data_home = os.environ.get("XDG_DATA_HOME", os.path.join(home, ".local", "share"))
    return os.path.join(xdg_data_home, "gmchat")


# Writable application data root (per-user by default)
PARENT_DIR = _default_data_root()

# Paths
SETTINGS_FILE = os.path.join(PARENT_DIR, "settings.cfg")
SESSIONS_DIR = os.path.join(PARENT_DIR, "sessions")

# ---------------------------------------------------------------------------
# Session defaults
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_PROMPT = (
    "You are a cinematic, fair D&D Game Master. It's a sandbox. Defer to the "
    "player's setup and house rules. Keep turns brisk and descriptive."
)

# Placeholder title for sessions that have not been named from a user turn yet.
DEFAULT_SESSION_TITLE = "New Campaign"
TITLE_MAX_LENGTH = 40

# Context window pruning. Cost of a turn is ceil(len(content) / divisor).
DEFAULT_CONTEXT_MAX_TOKENS = 3500
DEFAULT_CONTEXT_MAX_TURNS = 24
CONTEXT_COST_DIVISOR = 3

# Error bodies rendered inline are cut to this many characters.
ERROR_BODY_MAX_LENGTH = 500

# ---------------------------------------------------------------------------
# Image prompt
# ---------------------------------------------------------------------------

IMAGE_PROMPT_PREFIX = "D&D scene: "
IMAGE_PROMPT_SEPARATOR = "\nStyle: "
IMAGE_PROMPT_STYLE_SUFFIX = "painterly, high detail, cinematic lighting."
IMAGE_PROMPT_CEILING = 1000

ALLOWED_IMAGE_SIZES = ("256x256", "512x512", "1024x1024", "1024x1792", "1792x1024")
DEFAULT_IMAGE_SIZE = "1024x1024"

# ---------------------------------------------------------------------------
# Audio
# ---------------------------------------------------------------------------

# soundfile format name -> (file extension, MIME type) for transcription uploads
RECORDING_FORMATS = {
    "WAV": ("wav", "audio/wav"),
    "FLAC": ("flac", "audio/flac"),
    "OGG": ("ogg", "audio/ogg"),
}

# Define settings configuration with their types and defaults
SETTINGS_CONFIG = {
    # Base URL of the proxy exposing /chat, /image, /stt and /health.
    'PROXY_URL': {'type': str, 'default': ''},
    'MODEL': {'type': str, 'default': 'gpt-4o-mini'},
    'SYSTEM_PROMPT': {'type': str, 'default': DEFAULT_SYSTEM_PROMPT},
    # Speech provider: 'local' speaks through the offline engine,
    # 'remote' posts the text to TTS_URL and plays the returned audio.
    'TTS_PROVIDER': {'type': str, 'default': 'local'},
    'TTS_URL': {'type': str, 'default': ''},
    # Automatically speak each committed assistant reply.
    'TTS_ENABLED': {'type': bool, 'default': False},
    'IMAGE_SIZE': {'type': str, 'default': DEFAULT_IMAGE_SIZE},
    'CONTEXT_MAX_TOKENS': {'type': int, 'default': DEFAULT_CONTEXT_MAX_TOKENS},
    'CONTEXT_MAX_TURNS': {'type': int, 'default': DEFAULT_CONTEXT_MAX_TURNS},
    'MICROPHONE': {'type': str, 'default': 'default'},
    # One of the keys of RECORDING_FORMATS.
    'RECORDING_FORMAT': {'type': str, 'default': 'WAV'},
    # Seconds before a proxy request is abandoned. Streaming reads are not capped.
    'REQUEST_TIMEOUT': {'type': float, 'default': 60.0},
}
