"""
Image generation service for scene illustrations.
"""

from datetime import datetime
from pathlib import Path
from typing import List, Optional

from config import (
    IMAGE_PROMPT_PREFIX,
    IMAGE_PROMPT_SEPARATOR,
    IMAGE_PROMPT_STYLE_SUFFIX,
    IMAGE_PROMPT_CEILING,
    ALLOWED_IMAGE_SIZES,
    DEFAULT_IMAGE_SIZE,
)
from conversation import SessionContext
from proxy_provider import ProxyProvider
from events import EventBus, EventType, Event
from utils import get_session_dir, truncate_text

NO_NARRATION_MESSAGE = "No GM narration yet. Send a message first."


def build_image_prompt(utterance: str) -> str:
    """
    Build the scene prompt for the last narration.

    Only the narration is truncated, so the result never exceeds
    IMAGE_PROMPT_CEILING characters.
    """
    fixed = len(IMAGE_PROMPT_PREFIX) + len(IMAGE_PROMPT_SEPARATOR) + len(IMAGE_PROMPT_STYLE_SUFFIX)
    room = max(0, IMAGE_PROMPT_CEILING - fixed)
    return (
        IMAGE_PROMPT_PREFIX
        + truncate_text(utterance, room)
        + IMAGE_PROMPT_SEPARATOR
        + IMAGE_PROMPT_STYLE_SUFFIX
    )


def sanitize_image_size(size: Optional[str]) -> str:
    """Map a size descriptor onto ALLOWED_IMAGE_SIZES, else DEFAULT_IMAGE_SIZE."""
    if not size:
        return DEFAULT_IMAGE_SIZE
    normalized = str(size).strip().lower().replace("×", "x").replace("*", "x").replace(" ", "")
    if normalized in ALLOWED_IMAGE_SIZES:
        return normalized
    return DEFAULT_IMAGE_SIZE


class ImageGenerationService:
    """
    Service for generating scene images and storing them with their session.

    Images are written to ``<sessions_dir>/<session_id>/images/``.
    """

    def __init__(
        self,
        provider: ProxyProvider,
        settings_manager=None,
        event_bus: Optional[EventBus] = None,
        sessions_dir: Optional[str] = None,
    ):
        self._provider = provider
        self._settings_manager = settings_manager
        self._event_bus = event_bus
        self._sessions_dir = sessions_dir

    def _emit(self, event_type: EventType, **data) -> None:
        """Emit an event if event bus is configured."""
        if self._event_bus:
            self._event_bus.publish(Event(type=event_type, data=data, source='image_service'))

    def _image_dir(self, session_id: str) -> Path:
        return get_session_dir(session_id, self._sessions_dir) / 'images'

    async def generate_image(self, ctx: SessionContext, size: Optional[str] = None) -> Optional[Path]:
        """
        Illustrate the last narration of the current session.

        Parameters
        ----------
        ctx : SessionContext
            Holds the session whose last assistant utterance is drawn.
        size : Optional[str]
            Requested size; defaults to the IMAGE_SIZE setting.

        Returns
        -------
        Optional[Path]
            Path of the saved PNG, or None if nothing was generated.
        """
        session = ctx.session
        utterance = (session.last_assistant_utterance or "").strip()
        if not utterance:
            self._emit(EventType.NOTIFICATION, message=NO_NARRATION_MESSAGE, blocking=False)
            return None

        if size is None and self._settings_manager is not None:
            size = self._settings_manager.get('IMAGE_SIZE', DEFAULT_IMAGE_SIZE)
        size = sanitize_image_size(size)
        prompt = build_image_prompt(utterance)

        try:
            image_bytes = await self._provider.generate_image(prompt, size)
        except Exception as e:
            print(f"Image generation error: {e}")
            self._emit(EventType.ERROR_OCCURRED, error=str(e), context='image_generation')
            self._emit(EventType.NOTIFICATION, message=f"Image failed: {e}", blocking=False)
            return None

        image_dir = self._image_dir(session.id)
        image_path = image_dir / f"scene_{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}.png"
        try:
            image_dir.mkdir(parents=True, exist_ok=True)
            with open(image_path, 'wb') as f:
                f.write(image_bytes)
        except OSError as e:
            print(f"Error saving image: {e}")
            self._emit(EventType.NOTIFICATION, message=f"Image could not be saved: {e}", blocking=False)
            return None

        self._emit(
            EventType.IMAGE_GENERATED,
            image_path=str(image_path),
            prompt=prompt,
            size=size,
            session_id=session.id,
        )
        return image_path

    def list_session_images(self, session_id: str) -> List[str]:
        """List all images for a session, newest first."""
        image_dir = self._image_dir(session_id)
        if not image_dir.exists():
            return []
        images = [
            str(f) for f in image_dir.iterdir()
            if f.is_file() and f.suffix.lower() in ['.png', '.jpg', '.jpeg', '.webp', '.gif']
        ]
        images.sort(key=lambda p: Path(p).stat().st_mtime, reverse=True)
        return images
