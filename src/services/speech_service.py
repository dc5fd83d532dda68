"""
Speech playback for GMChat.

Narration is spoken either by an offline engine (pyttsx3) or by a remote
text-to-speech endpoint whose audio is played through sounddevice. Only one
playback is ever active: starting a new one stops the previous one first.
"""

import asyncio
import io
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Optional

import numpy as np
import pyttsx3
import sounddevice as sd
import soundfile as sf

from proxy_provider import ProxyProvider
from repositories.settings_repository import LEGACY_TTS_PROVIDERS
from events import EventBus, EventType, Event
from utils import is_debug_enabled, clean_display_text


class TTSProviderKind(Enum):
    """Where speech is synthesized."""
    LOCAL = "local"
    REMOTE = "remote"


def select_speech_provider(settings: Any) -> TTSProviderKind:
    """
    Pick the speech provider from configuration.

    Parameters
    ----------
    settings : Mapping-like
        Anything with ``get(key, default)``; only TTS_PROVIDER is read.
    """
    label = str(settings.get('TTS_PROVIDER', 'local') or '').strip().lower()
    label = LEGACY_TTS_PROVIDERS.get(label, label)
    if label == TTSProviderKind.REMOTE.value:
        return TTSProviderKind.REMOTE
    return TTSProviderKind.LOCAL


class SpeechProvider(ABC):
    """Capability interface shared by the speech providers."""

    kind: TTSProviderKind

    @abstractmethod
    async def speak(self, text: str) -> None:
        """Speak text, returning when playback ends or is stopped."""
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop current speech. Safe to call when nothing is playing."""
        pass


class LocalSpeechProvider(SpeechProvider):
    """Offline synthesis through pyttsx3; the engine loop runs in a worker thread."""

    kind = TTSProviderKind.LOCAL

    def __init__(self, engine_factory: Optional[Callable[[], Any]] = None):
        self._engine_factory = engine_factory or pyttsx3.init
        self._engine = None
        self._running: Optional[asyncio.Future] = None
        self._generation = 0

    def _get_engine(self):
        if self._engine is None:
            self._engine = self._engine_factory()
        return self._engine

    async def speak(self, text: str) -> None:
        engine = self._get_engine()
        self._generation += 1
        generation = self._generation
        self.stop()

        previous = self._running
        if previous is not None and not previous.done():
            await asyncio.wait({previous})

        # A newer utterance arrived while the engine was winding down.
        if generation != self._generation:
            return

        engine.say(text)
        current = asyncio.ensure_future(asyncio.to_thread(engine.runAndWait))
        self._running = current
        try:
            await current
        finally:
            if self._running is current:
                self._running = None

    def stop(self) -> None:
        if self._engine is None:
            return
        try:
            self._engine.stop()
        except Exception as e:
            print(f"[LocalSpeech] Error stopping engine: {e}")


class PlaybackHandle:
    """
    One decoded clip handed to the audio device.

    ``release`` stops the sound and is effective exactly once; later calls
    are no-ops and release failures are only logged.
    """

    def __init__(self, data: np.ndarray, samplerate: int, player: Any = None):
        self.data = data
        self.samplerate = samplerate
        self._player = player or sd
        self.released = False

    def play(self) -> None:
        self._player.play(self.data, self.samplerate)

    async def wait(self) -> None:
        await asyncio.to_thread(self._player.wait)

    def release(self) -> bool:
        """Stop and release the clip. Returns False if already released."""
        if self.released:
            return False
        self.released = True
        try:
            self._player.stop()
        except Exception as e:
            print(f"[PlaybackHandle] Error releasing playback: {e}")
        return True


class RemoteSpeechProvider(SpeechProvider):
    """Posts text to a TTS endpoint and plays the returned audio."""

    kind = TTSProviderKind.REMOTE

    def __init__(self, provider: ProxyProvider, tts_url: str, player: Any = None):
        self._provider = provider
        self.tts_url = tts_url
        self._player = player
        self._handle: Optional[PlaybackHandle] = None

    @property
    def handle(self) -> Optional[PlaybackHandle]:
        """The clip currently playing, if any."""
        return self._handle

    async def speak(self, text: str) -> None:
        audio = await self._provider.synthesize_speech(self.tts_url, text)
        data, samplerate = sf.read(io.BytesIO(audio), dtype='float32')

        # Anything started while the audio was being fetched is superseded.
        self.stop()
        handle = PlaybackHandle(data, samplerate, self._player)
        self._handle = handle
        try:
            handle.play()
            await handle.wait()
        finally:
            handle.release()
            if self._handle is handle:
                self._handle = None

    def stop(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.release()


class SpeechPlaybackService:
    """
    Service that speaks narration through the configured provider.

    The provider is chosen once from settings and rebuilt by ``reconfigure``.
    """

    def __init__(
        self,
        settings_manager,
        provider: ProxyProvider,
        event_bus: Optional[EventBus] = None,
        engine_factory: Optional[Callable[[], Any]] = None,
        player: Any = None,
    ):
        self._settings_manager = settings_manager
        self._proxy = provider
        self._event_bus = event_bus
        self._engine_factory = engine_factory
        self._player = player
        self._speaker: Optional[SpeechProvider] = None
        self._debug = is_debug_enabled()
        self.reconfigure()

    def _log(self, msg: str) -> None:
        """Log debug message if debugging is enabled."""
        if self._debug:
            print(f"[SpeechService] {msg}")

    def _emit(self, event_type: EventType, **data) -> None:
        """Emit an event if event bus is configured."""
        if self._event_bus:
            self._event_bus.publish(Event(type=event_type, data=data, source='speech_service'))

    @property
    def kind(self) -> TTSProviderKind:
        return self._speaker.kind

    @property
    def speaker(self) -> SpeechProvider:
        return self._speaker

    def reconfigure(self) -> None:
        """Rebuild the provider from current settings, stopping the old one."""
        kind = select_speech_provider(self._settings_manager)
        if self._speaker is not None:
            self._speaker.stop()

        if kind is TTSProviderKind.REMOTE:
            self._speaker = RemoteSpeechProvider(
                self._proxy,
                self._settings_manager.get('TTS_URL', ''),
                player=self._player,
            )
        else:
            self._speaker = LocalSpeechProvider(self._engine_factory)
        self._log(f"Speech provider: {kind.value}")

    async def speak(self, text: str) -> bool:
        """
        Speak text, replacing whatever is playing.

        Returns
        -------
        bool
            True if playback ran to completion or was stopped, False on error.
        """
        text = clean_display_text(text)
        if not text:
            return False

        speaker = self._speaker
        self.stop()
        self._emit(EventType.PLAYBACK_STARTED, provider=speaker.kind.value)
        try:
            await speaker.speak(text)
            return True
        except Exception as e:
            print(f"Speech playback error: {e}")
            self._emit(EventType.NOTIFICATION, message=f"Speech failed: {e}", blocking=True)
            return False
        finally:
            self._emit(EventType.PLAYBACK_STOPPED, provider=speaker.kind.value)

    def stop(self) -> None:
        """Stop any current speech. Idempotent."""
        if self._speaker is not None:
            self._speaker.stop()
