"""
Service layer for GMChat.

This package provides service classes that encapsulate session logic and
coordinate between repositories, the proxy provider and the audio devices.
"""

from .chat_service import ChatService
from .image_service import ImageGenerationService, build_image_prompt, sanitize_image_size
from .audio_service import AudioCaptureService, RecordingStatus
from .speech_service import SpeechPlaybackService, TTSProviderKind, select_speech_provider

__all__ = [
    'ChatService',
    'ImageGenerationService',
    'build_image_prompt',
    'sanitize_image_size',
    'AudioCaptureService',
    'RecordingStatus',
    'SpeechPlaybackService',
    'TTSProviderKind',
    'select_speech_provider',
]
