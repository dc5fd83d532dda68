"""
controller.py – Application state and intent dispatch, decoupled from any UI.

This module provides the SessionController class that manages:
- The SessionContext (current session and pending input)
- Session lifecycle through the chat service
- Settings changes and reconfiguration of the proxy and speech providers
- A dispatch table mapping user intents to handlers

Front ends only call ``dispatch`` and render what arrives on the event bus.
"""

from __future__ import annotations

import inspect
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from repositories import SettingsRepository, SessionRepository
from services import (
    ChatService,
    ImageGenerationService,
    AudioCaptureService,
    SpeechPlaybackService,
    sanitize_image_size,
)
from services.image_service import NO_NARRATION_MESSAGE
from settings import SettingsManager
from events import EventBus, EventType, Event, get_event_bus
from conversation import Session, SessionContext
from proxy_provider import ProxyProvider, HealthStatus
from repositories.settings_repository import LEGACY_TTS_PROVIDERS


class Intent(Enum):
    """User actions understood by the controller."""
    NEW_SESSION = auto()
    LOAD_SESSION = auto()
    SAVE_SESSION = auto()
    DELETE_SESSION = auto()
    LIST_SESSIONS = auto()
    SEND_MESSAGE = auto()
    UPDATE_INPUT = auto()
    SUBMIT_INPUT = auto()
    GENERATE_IMAGE = auto()
    TOGGLE_RECORDING = auto()
    SPEAK_LAST = auto()
    STOP_SPEECH = auto()
    SET_PROXY_URL = auto()
    SET_MODEL = auto()
    SET_SYSTEM_PROMPT = auto()
    SET_TTS_PROVIDER = auto()
    SET_TTS_URL = auto()
    SET_AUTO_SPEAK = auto()
    SET_IMAGE_SIZE = auto()
    CHECK_HEALTH = auto()


class SessionController:
    """
    Owns the SessionContext and routes intents to the services.
    """

    def __init__(self,
                 settings_repo: Optional[SettingsRepository] = None,
                 session_repo: Optional[SessionRepository] = None,
                 event_bus: Optional[EventBus] = None,
                 settings_manager: Optional[SettingsManager] = None,
                 provider: Optional[ProxyProvider] = None,
                 speech_service: Optional[SpeechPlaybackService] = None,
                 audio_service: Optional[AudioCaptureService] = None,
                 image_service: Optional[ImageGenerationService] = None):
        """Initialize the controller, its services and the current session.

        Parameters
        ----------
        settings_repo : Optional[SettingsRepository]
            Settings repository instance. If None, creates a new one.
        session_repo : Optional[SessionRepository]
            Session repository instance. If None, creates a new one.
        event_bus : Optional[EventBus]
            Event bus for publishing/subscribing to events. If None, uses global.
        settings_manager : Optional[SettingsManager]
            Settings manager instance. If None, creates a new one.
        provider : Optional[ProxyProvider]
            Proxy client. If None, one is built from PROXY_URL.
        speech_service, audio_service, image_service : optional
            Service instances; built from the above when omitted.
        """
        self._settings_repo = settings_repo or SettingsRepository()
        self._session_repo = session_repo or SessionRepository()
        self._event_bus = event_bus or get_event_bus()
        self._settings_manager = settings_manager or SettingsManager(
            repository=self._settings_repo,
            event_bus=self._event_bus,
        )

        self._provider = provider or ProxyProvider(
            base_url=self._settings_manager.get('PROXY_URL', ''),
            timeout=self._settings_manager.get('REQUEST_TIMEOUT', 60.0),
        )

        # Initialize services with event bus
        self._speech_service = speech_service or SpeechPlaybackService(
            settings_manager=self._settings_manager,
            provider=self._provider,
            event_bus=self._event_bus,
        )
        self._chat_service = ChatService(
            session_repo=self._session_repo,
            provider=self._provider,
            settings_manager=self._settings_manager,
            event_bus=self._event_bus,
            speech_service=self._speech_service,
        )
        self._audio_service = audio_service or AudioCaptureService(
            provider=self._provider,
            settings_manager=self._settings_manager,
            event_bus=self._event_bus,
        )
        self._image_service = image_service or ImageGenerationService(
            provider=self._provider,
            settings_manager=self._settings_manager,
            event_bus=self._event_bus,
            sessions_dir=str(self._session_repo.sessions_dir),
        )

        self._event_bus.subscribe(EventType.SETTINGS_CHANGED, self._on_settings_changed)

        self.ctx = SessionContext(session=self._restore_session())

        self._handlers: Dict[Intent, Callable[..., Any]] = {
            Intent.NEW_SESSION: self.new_session,
            Intent.LOAD_SESSION: self.load_session,
            Intent.SAVE_SESSION: self.save_session,
            Intent.DELETE_SESSION: self.delete_session,
            Intent.LIST_SESSIONS: self.list_sessions,
            Intent.SEND_MESSAGE: self.send_message,
            Intent.UPDATE_INPUT: self.update_input,
            Intent.SUBMIT_INPUT: self.submit_input,
            Intent.GENERATE_IMAGE: self.generate_image,
            Intent.TOGGLE_RECORDING: self.toggle_recording,
            Intent.SPEAK_LAST: self.speak_last,
            Intent.STOP_SPEECH: self.stop_speech,
            Intent.SET_PROXY_URL: self.set_proxy_url,
            Intent.SET_MODEL: self.set_model,
            Intent.SET_SYSTEM_PROMPT: self.set_system_prompt,
            Intent.SET_TTS_PROVIDER: self.set_tts_provider,
            Intent.SET_TTS_URL: self.set_tts_url,
            Intent.SET_AUTO_SPEAK: self.set_auto_speak,
            Intent.SET_IMAGE_SIZE: self.set_image_size,
            Intent.CHECK_HEALTH: self.check_health,
        }

    def _notify(self, message: str, blocking: bool = False) -> None:
        self._event_bus.publish(Event(
            type=EventType.NOTIFICATION,
            data={'message': message, 'blocking': blocking},
            source='controller'
        ))

    # -----------------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------------

    async def dispatch(self, intent: Intent, **payload) -> Any:
        """
        Run the handler registered for an intent.

        Raises
        ------
        ValueError
            If no handler is registered for the intent.
        """
        handler = self._handlers.get(intent)
        if handler is None:
            raise ValueError(f"Unknown intent: {intent}")
        result = handler(**payload)
        if inspect.isawaitable(result):
            result = await result
        return result

    # -----------------------------------------------------------------------
    # Service accessors
    # -----------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self.ctx.session

    @property
    def settings_manager(self) -> SettingsManager:
        return self._settings_manager

    @property
    def chat_service(self) -> ChatService:
        """Get the chat service instance."""
        return self._chat_service

    @property
    def image_service(self) -> ImageGenerationService:
        """Get the image generation service instance."""
        return self._image_service

    @property
    def audio_service(self) -> AudioCaptureService:
        """Get the audio capture service instance."""
        return self._audio_service

    @property
    def speech_service(self) -> SpeechPlaybackService:
        """Get the speech playback service instance."""
        return self._speech_service

    @property
    def provider(self) -> ProxyProvider:
        return self._provider

    # -----------------------------------------------------------------------
    # Sessions
    # -----------------------------------------------------------------------

    def _restore_session(self) -> Session:
        """Resume the current session, or start a new one."""
        session = self._session_repo.load_current()
        if session is not None:
            self._event_bus.publish(Event(
                type=EventType.SESSION_LOADED,
                data={'session_id': session.id, 'turn_count': len(session)},
                source='controller'
            ))
            return session
        session = self._chat_service.create_session()
        self._persist(session)
        return session

    def _persist(self, session: Session) -> bool:
        try:
            self._chat_service.save_session(session)
            return True
        except OSError as e:
            self._notify(f"Could not save session: {e}", blocking=True)
            return False

    def new_session(self, system_prompt: Optional[str] = None) -> Session:
        """Start and persist a new session, making it current."""
        self._speech_service.stop()
        session = self._chat_service.create_session(system_prompt=system_prompt)
        self._persist(session)
        self.ctx.session = session
        self.ctx.pending_input = ""
        return session

    def load_session(self, session_id: str) -> bool:
        """Switch to a stored session. Returns True if it was found."""
        session = self._chat_service.load_session(session_id)
        if session is None:
            self._notify(f"Session not found: {session_id}")
            return False
        self._speech_service.stop()
        self.ctx.session = session
        return True

    def save_session(self) -> bool:
        """Persist the current session."""
        return self._persist(self.ctx.session)

    def delete_session(self, session_id: Optional[str] = None) -> bool:
        """
        Delete a session (the current one by default).

        Deleting the current session starts a new one.
        """
        session_id = session_id or self.ctx.session.id
        deleted = self._chat_service.delete_session(session_id)
        if deleted and session_id == self.ctx.session.id:
            self.new_session()
        return deleted

    def list_sessions(self) -> List[Dict[str, Any]]:
        """List stored sessions, newest first."""
        return self._chat_service.list_sessions()

    # -----------------------------------------------------------------------
    # Conversation
    # -----------------------------------------------------------------------

    async def send_message(self, text: str) -> Optional[str]:
        return await self._chat_service.send_message(self.ctx, text)

    def update_input(self, text: str) -> None:
        self.ctx.pending_input = text or ""
        self._event_bus.publish(Event(
            type=EventType.INPUT_CHANGED,
            data={'text': self.ctx.pending_input},
            source='controller'
        ))

    async def submit_input(self) -> Optional[str]:
        """Send the pending input, clearing it once the message is accepted."""
        text = self.ctx.pending_input
        if not text.strip():
            return None
        if self._chat_service.is_busy:
            # Rejected by the chat service; the input stays in place.
            return await self._chat_service.send_message(self.ctx, text)
        self.update_input("")
        return await self._chat_service.send_message(self.ctx, text)

    async def generate_image(self, size: Optional[str] = None):
        return await self._image_service.generate_image(self.ctx, size)

    async def toggle_recording(self) -> Optional[str]:
        return await self._audio_service.toggle(self.ctx)

    async def speak_last(self) -> bool:
        """Read the last narration aloud."""
        utterance = self.ctx.session.last_assistant_utterance
        if not utterance.strip():
            self._notify(NO_NARRATION_MESSAGE)
            return False
        return await self._speech_service.speak(utterance)

    def stop_speech(self) -> None:
        self._speech_service.stop()

    # -----------------------------------------------------------------------
    # Settings
    # -----------------------------------------------------------------------

    def _save_settings(self) -> None:
        try:
            self._settings_manager.save()
        except OSError as e:
            self._notify(f"Could not save settings: {e}", blocking=True)

    def _on_settings_changed(self, event: Event) -> None:
        key = event.data.get('key')
        if key == 'PROXY_URL':
            self._provider.configure(base_url=event.data.get('value') or '')
        elif key == 'REQUEST_TIMEOUT':
            self._provider.configure(timeout=event.data.get('value'))
        elif key in ('TTS_PROVIDER', 'TTS_URL'):
            self._speech_service.reconfigure()

    async def set_proxy_url(self, url: str) -> HealthStatus:
        """Store the proxy base URL and probe it."""
        self._settings_manager.set('PROXY_URL', (url or '').strip().rstrip('/'))
        self._save_settings()
        return await self.check_health()

    def set_model(self, model: str) -> None:
        """Use a model for this session and as the default for new ones."""
        model = (model or '').strip()
        if not model:
            raise ValueError("Model must not be empty")
        self._settings_manager.set('MODEL', model)
        self._save_settings()
        self.ctx.session.set_model(model)
        self._persist(self.ctx.session)

    def set_system_prompt(self, prompt: str) -> None:
        """Replace the system turn of the current session and the default prompt."""
        self._settings_manager.set('SYSTEM_PROMPT', prompt)
        self._save_settings()
        self.ctx.session.replace_system_turn(self._settings_manager.get('SYSTEM_PROMPT'))
        self._persist(self.ctx.session)

    def set_tts_provider(self, provider: str) -> None:
        """
        Select the speech provider ('local' or 'remote').

        Raises
        ------
        ValueError
            If the provider label is not recognized.
        """
        label = (provider or '').strip().lower()
        label = LEGACY_TTS_PROVIDERS.get(label, label)
        if label not in ('local', 'remote'):
            raise ValueError(f"Unknown TTS provider: {provider}")
        self._settings_manager.set('TTS_PROVIDER', label)
        self._save_settings()

    def set_tts_url(self, url: str) -> None:
        self._settings_manager.set('TTS_URL', (url or '').strip())
        self._save_settings()

    def set_auto_speak(self, enabled: bool) -> None:
        self._settings_manager.set('TTS_ENABLED', enabled)
        self._save_settings()

    def set_image_size(self, size: str) -> str:
        """Store the image size, mapped onto the supported sizes."""
        size = sanitize_image_size(size)
        self._settings_manager.set('IMAGE_SIZE', size)
        self._save_settings()
        return size

    async def check_health(self) -> HealthStatus:
        """Probe the proxy and publish the result."""
        status = await self._provider.check_health()
        self._event_bus.publish(Event(
            type=EventType.HEALTH_CHECKED,
            data={'ok': status.ok, 'detail': status.detail, 'latency_ms': status.latency_ms},
            source='controller'
        ))
        return status

    async def aclose(self) -> None:
        """Stop audio and release the HTTP client."""
        self._speech_service.stop()
        self._event_bus.unsubscribe(EventType.SETTINGS_CHANGED, self._on_settings_changed)
        await self._provider.aclose()
