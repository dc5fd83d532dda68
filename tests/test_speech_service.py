"""Tests for speech provider selection and playback."""

import asyncio
import io
import json
import os
import sys
import threading

import httpx
import numpy as np
import soundfile as sf

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from services import SpeechPlaybackService, TTSProviderKind, select_speech_provider
from services.speech_service import PlaybackHandle, LocalSpeechProvider, RemoteSpeechProvider
from proxy_provider import ProxyProvider
from events import EventBus, EventType


def wav_bytes(frames=800, rate=8000):
    buffer = io.BytesIO()
    sf.write(buffer, np.zeros((frames, 1), dtype=np.float32), rate, format="WAV")
    return buffer.getvalue()


class FakePlayer:
    """Stands in for the sounddevice play/wait/stop functions."""

    def __init__(self, block=False, fail_stop=False):
        self.block = block
        self.fail_stop = fail_stop
        self.playing = False
        self.overlaps = 0
        self.plays = []
        self.stop_calls = 0
        self._done = threading.Event()

    def play(self, data, samplerate):
        if self.playing:
            self.overlaps += 1
        self.playing = True
        self._done = threading.Event()
        self.plays.append((len(data), samplerate))

    def wait(self):
        if self.block:
            self._done.wait(timeout=5)

    def stop(self):
        self.stop_calls += 1
        self.playing = False
        self._done.set()
        if self.fail_stop:
            raise RuntimeError("device gone")


class FakeEngine:
    def __init__(self):
        self.calls = []

    def say(self, text):
        self.calls.append(("say", text))

    def runAndWait(self):
        self.calls.append(("run",))

    def stop(self):
        self.calls.append(("stop",))


class BlockingEngine:
    """Engine whose run loop lasts until stop() is called."""

    def __init__(self):
        self.said = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()
        self._release = threading.Event()

    def say(self, text):
        self.said.append(text)

    def runAndWait(self):
        release = self._release
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        release.wait(timeout=5)
        with self._lock:
            self.active -= 1

    def stop(self):
        self._release.set()
        self._release = threading.Event()


def make_remote_service(player, handler=None, bus=None):
    requests = []

    def default_handler(request):
        requests.append(json.loads(request.content))
        return httpx.Response(200, content=wav_bytes())

    provider = ProxyProvider("http://proxy.test", transport=httpx.MockTransport(handler or default_handler))
    settings = {"TTS_PROVIDER": "remote", "TTS_URL": "http://tts.test/speak"}
    service = SpeechPlaybackService(settings, provider, event_bus=bus, player=player)
    return service, requests


class TestSelectSpeechProvider:
    def test_labels(self):
        assert select_speech_provider({"TTS_PROVIDER": "local"}) is TTSProviderKind.LOCAL
        assert select_speech_provider({"TTS_PROVIDER": "remote"}) is TTSProviderKind.REMOTE
        assert select_speech_provider({"TTS_PROVIDER": " Remote "}) is TTSProviderKind.REMOTE

    def test_legacy_labels(self):
        assert select_speech_provider({"TTS_PROVIDER": "webspeech"}) is TTSProviderKind.LOCAL
        assert select_speech_provider({"TTS_PROVIDER": "custom"}) is TTSProviderKind.REMOTE

    def test_unknown_defaults_to_local(self):
        assert select_speech_provider({}) is TTSProviderKind.LOCAL
        assert select_speech_provider({"TTS_PROVIDER": "bogus"}) is TTSProviderKind.LOCAL


class TestPlaybackHandle:
    def test_release_exactly_once(self):
        player = FakePlayer()
        handle = PlaybackHandle(np.zeros(10), 8000, player)

        assert handle.release() is True
        assert handle.release() is False
        assert player.stop_calls == 1

    def test_release_failure_swallowed(self):
        handle = PlaybackHandle(np.zeros(10), 8000, FakePlayer(fail_stop=True))
        assert handle.release() is True
        assert handle.released


class TestRemotePlayback:
    def test_plays_and_releases_on_completion(self):
        player = FakePlayer()
        bus = EventBus()
        events = []
        bus.subscribe(EventType.PLAYBACK_STARTED, events.append)
        bus.subscribe(EventType.PLAYBACK_STOPPED, events.append)
        service, requests = make_remote_service(player, bus=bus)

        assert service.kind is TTSProviderKind.REMOTE
        assert asyncio.run(service.speak("The *dragon* wakes.")) is True

        assert requests == [{"text": "The dragon wakes."}]
        assert player.plays == [(800, 8000)]
        assert player.stop_calls == 1
        assert service.speaker.handle is None
        assert [e.type for e in events] == [EventType.PLAYBACK_STARTED, EventType.PLAYBACK_STOPPED]

    def test_new_playback_supersedes_old(self):
        player = FakePlayer(block=True)
        service, _ = make_remote_service(player)

        async def scenario():
            first = asyncio.ensure_future(service.speak("first"))
            while not player.plays:
                await asyncio.sleep(0.01)
            first_handle = service.speaker.handle

            second = asyncio.ensure_future(service.speak("second"))
            while len(player.plays) < 2:
                await asyncio.sleep(0.01)
            second_handle = service.speaker.handle

            service.stop()
            results = await asyncio.gather(first, second)
            return results, first_handle, second_handle

        results, first_handle, second_handle = asyncio.run(scenario())

        assert results == [True, True]
        assert player.overlaps == 0
        assert first_handle is not second_handle
        assert first_handle.released and second_handle.released
        assert player.stop_calls == 2
        assert service.speaker.handle is None

    def test_stop_is_idempotent(self):
        player = FakePlayer()
        service, _ = make_remote_service(player)

        service.stop()
        service.stop()

        assert player.stop_calls == 0

    def test_synthesis_failure_notifies(self):
        bus = EventBus()
        notes = []
        bus.subscribe(EventType.NOTIFICATION, notes.append)
        player = FakePlayer()
        service, _ = make_remote_service(
            player, handler=lambda r: httpx.Response(503, text="tts offline"), bus=bus)

        assert asyncio.run(service.speak("Hello")) is False
        assert player.plays == []
        assert "tts offline" in notes[0].data["message"]

    def test_undecodable_audio_notifies(self):
        bus = EventBus()
        notes = []
        bus.subscribe(EventType.NOTIFICATION, notes.append)
        player = FakePlayer()
        service, _ = make_remote_service(
            player, handler=lambda r: httpx.Response(200, content=b"not audio"), bus=bus)

        assert asyncio.run(service.speak("Hello")) is False
        assert player.plays == []
        assert notes

    def test_blank_text_not_spoken(self):
        player = FakePlayer()
        service, requests = make_remote_service(player)

        assert asyncio.run(service.speak("   ")) is False
        assert requests == []


class TestLocalPlayback:
    def test_cancels_then_speaks(self):
        engine = FakeEngine()
        service = SpeechPlaybackService({"TTS_PROVIDER": "local"}, ProxyProvider(""),
                                        engine_factory=lambda: engine)

        assert service.kind is TTSProviderKind.LOCAL
        assert asyncio.run(service.speak("Welcome back.")) is True
        assert engine.calls == [("stop",), ("say", "Welcome back."), ("run",)]

    def test_engine_failure_notifies(self):
        bus = EventBus()
        notes = []
        bus.subscribe(EventType.NOTIFICATION, notes.append)

        def broken_engine():
            raise RuntimeError("no speech driver")

        service = SpeechPlaybackService({"TTS_PROVIDER": "local"}, ProxyProvider(""),
                                        event_bus=bus, engine_factory=broken_engine)

        assert asyncio.run(service.speak("Hello")) is False
        assert notes[0].data["blocking"] is True
        assert "no speech driver" in notes[0].data["message"]

    def test_stop_before_engine_exists(self):
        LocalSpeechProvider(engine_factory=FakeEngine).stop()

    def test_overlapping_requests_keep_only_newest(self):
        engine = BlockingEngine()
        speaker = LocalSpeechProvider(engine_factory=lambda: engine)

        async def scenario():
            first = asyncio.ensure_future(speaker.speak("A"))
            while engine.active == 0:
                await asyncio.sleep(0.01)

            second = asyncio.ensure_future(speaker.speak("B"))
            third = asyncio.ensure_future(speaker.speak("C"))
            while "C" not in engine.said or engine.active == 0:
                await asyncio.sleep(0.01)

            speaker.stop()
            await asyncio.gather(first, second, third)

        asyncio.run(scenario())

        assert engine.said == ["A", "C"]
        assert engine.max_active == 1


def test_reconfigure_switches_provider():
    settings = {"TTS_PROVIDER": "local", "TTS_URL": ""}
    engine = FakeEngine()
    service = SpeechPlaybackService(settings, ProxyProvider(""), engine_factory=lambda: engine)
    asyncio.run(service.speak("warm up"))

    settings["TTS_PROVIDER"] = "remote"
    settings["TTS_URL"] = "http://tts.test"
    service.reconfigure()

    assert isinstance(service.speaker, RemoteSpeechProvider)
    assert service.speaker.tts_url == "http://tts.test"
    assert engine.calls[-1] == ("stop",)
