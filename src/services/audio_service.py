"""
Audio capture service: record from the microphone and transcribe via the proxy.
"""

import asyncio
import io
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

import numpy as np
import sounddevice as sd
import soundfile as sf

from config import RECORDING_FORMATS
from conversation import SessionContext
from proxy_provider import ProxyProvider
from events import EventBus, EventType, Event
from utils import is_debug_enabled


class RecordingStatus(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"


@dataclass
class RecordingState:
    """Capture state; chunks are appended from the PortAudio callback thread."""
    status: RecordingStatus = RecordingStatus.IDLE
    chunks: List[np.ndarray] = field(default_factory=list)
    samplerate: Optional[int] = None


def encode_recording(
    chunks: List[np.ndarray],
    samplerate: int,
    recording_format: str = "WAV",
) -> Tuple[bytes, str, str]:
    """
    Package recorded blocks into a single audio file in memory.

    Parameters
    ----------
    chunks : List[np.ndarray]
        Blocks as delivered by the input stream, in order.
    samplerate : int
        Sample rate of the recording.
    recording_format : str
        One of RECORDING_FORMATS; unknown formats fall back to WAV.

    Returns
    -------
    Tuple[bytes, str, str]
        (payload, filename, mime_type), with the filename extension and MIME
        type matching the encoding actually written.
    """
    fmt = (recording_format or "WAV").upper()
    if fmt not in RECORDING_FORMATS:
        fmt = "WAV"
    extension, mime_type = RECORDING_FORMATS[fmt]

    recording = np.concatenate(chunks, axis=0)
    if len(recording.shape) == 1:
        recording = recording.reshape(-1, 1)

    buffer = io.BytesIO()
    sf.write(buffer, recording, samplerate, format=fmt)
    return buffer.getvalue(), f"recording.{extension}", mime_type


class AudioCaptureService:
    """
    Push-to-talk recorder.

    ``Idle -start-> Recording -stop-> Transcribing -> Idle``. The microphone
    stream is owned by this service from ``start`` until ``stop`` and is
    always closed on the way out.
    """

    def __init__(
        self,
        provider: ProxyProvider,
        settings_manager=None,
        event_bus: Optional[EventBus] = None,
        stream_factory: Optional[Callable[..., Any]] = None,
        device_query: Optional[Callable[..., Any]] = None,
    ):
        """
        Parameters
        ----------
        provider : ProxyProvider
            Used for the transcription request.
        settings_manager : Optional[SettingsManager]
            Source of MICROPHONE and RECORDING_FORMAT.
        event_bus : Optional[EventBus]
            Event bus for publishing events.
        stream_factory, device_query : Optional[Callable]
            Replacements for ``sounddevice.InputStream`` and
            ``sounddevice.query_devices``.
        """
        self._provider = provider
        self._settings_manager = settings_manager
        self._event_bus = event_bus
        self._stream_factory = stream_factory or sd.InputStream
        self._query_devices = device_query or sd.query_devices
        self._stream = None
        self.state = RecordingState()
        self._debug = is_debug_enabled()

    def _log(self, msg: str) -> None:
        """Log debug message if debugging is enabled."""
        if self._debug:
            print(f"[AudioCapture] {msg}")

    def _emit(self, event_type: EventType, **data) -> None:
        """Emit an event if event bus is configured."""
        if self._event_bus:
            self._event_bus.publish(Event(type=event_type, data=data, source='audio_service'))

    def _setting(self, key: str, default: Any) -> Any:
        if self._settings_manager is None:
            return default
        return self._settings_manager.get(key, default)

    @property
    def status(self) -> RecordingStatus:
        return self.state.status

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def _audio_callback(self, indata, frames, time, status):
        if status:
            self._log(f"Status: {status}")
        self.state.chunks.append(indata.copy())

    def _open_stream(self, microphone: Optional[str]):
        device_info = self._query_devices(microphone, 'input')
        samplerate = int(device_info['default_samplerate'])
        self.state.chunks = []
        self.state.samplerate = samplerate

        stream = self._stream_factory(
            device=microphone,
            channels=1,
            samplerate=samplerate,
            callback=self._audio_callback,
            dtype=np.float32,
        )
        try:
            stream.start()
        except Exception:
            self._release_stream(stream)
            raise
        return stream

    def _release_stream(self, stream) -> None:
        try:
            stream.stop()
        finally:
            stream.close()

    async def start(self) -> bool:
        """
        Open the microphone and begin recording.

        Returns
        -------
        bool
            True if recording started. On a device error the service stays
            idle and a blocking notification is emitted.
        """
        if self.state.status is not RecordingStatus.IDLE:
            return False

        microphone = self._setting('MICROPHONE', 'default') or None
        if microphone == 'default':
            microphone = None

        try:
            self._stream = await asyncio.to_thread(self._open_stream, microphone)
        except Exception as e:
            print(f"Error opening microphone: {e}")
            self._stream = None
            self.state.chunks = []
            self._emit(EventType.NOTIFICATION, message=f"Microphone unavailable: {e}", blocking=True)
            return False

        self.state.status = RecordingStatus.RECORDING
        self._emit(EventType.RECORDING_STARTED, microphone=str(microphone or 'default'))
        self._log(f"Recording started at {self.state.samplerate} Hz")
        return True

    async def stop(self, ctx: SessionContext) -> Optional[str]:
        """
        Stop recording, transcribe and append the text to the pending input.

        Returns
        -------
        Optional[str]
            The transcribed text, or None if nothing was transcribed.
        """
        if self.state.status is not RecordingStatus.RECORDING:
            return None

        stream, self._stream = self._stream, None
        self.state.status = RecordingStatus.TRANSCRIBING
        try:
            await asyncio.to_thread(self._release_stream, stream)
        except Exception as e:
            print(f"Error stopping microphone: {e}")
        self._emit(EventType.RECORDING_STOPPED)

        chunks, self.state.chunks = self.state.chunks, []
        try:
            if not chunks:
                self._log("No audio captured")
                return None
            payload, filename, mime_type = encode_recording(
                chunks,
                self.state.samplerate,
                self._setting('RECORDING_FORMAT', 'WAV'),
            )
            text = await self._provider.transcribe_audio(payload, filename, mime_type)
        except Exception as e:
            print(f"Transcription error: {e}")
            self._emit(EventType.NOTIFICATION, message=f"Transcription failed: {e}", blocking=False)
            return None
        finally:
            self.state.status = RecordingStatus.IDLE

        text = text.strip()
        if not text:
            return None
        ctx.pending_input = f"{ctx.pending_input} {text}" if ctx.pending_input else text
        self._emit(EventType.TRANSCRIPTION_COMPLETE, text=text[:100])
        self._emit(EventType.INPUT_CHANGED, text=ctx.pending_input)
        return text

    async def toggle(self, ctx: SessionContext) -> Optional[str]:
        """Start when idle, stop and transcribe when recording."""
        if self.state.status is RecordingStatus.IDLE:
            await self.start()
            return None
        if self.state.status is RecordingStatus.RECORDING:
            return await self.stop(ctx)
        self._log("Transcription in progress; toggle ignored")
        return None
