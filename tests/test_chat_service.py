"""Tests for ChatService: session lifecycle and message dispatch."""

import asyncio
import json
import os
import sys

import httpx

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from repositories import SessionRepository, SettingsRepository
from services import ChatService
from settings import SettingsManager
from proxy_provider import ProxyProvider
from conversation import SessionContext
from events import EventBus, EventType


def sse(*deltas, done=True):
    body = "".join(
        "data: " + json.dumps({"choices": [{"delta": {"content": d}}]}) + "\n" for d in deltas
    )
    if done:
        body += "data: [DONE]\n"
    return body.encode("utf-8")


class FakeSpeech:
    def __init__(self):
        self.spoken = []

    async def speak(self, text):
        self.spoken.append(text)
        return True


class SlowSpeech:
    """Playback that lasts until the test releases it."""

    def __init__(self):
        self.spoken = []
        self.started = None
        self.finish = None

    def prepare(self):
        self.started = asyncio.Event()
        self.finish = asyncio.Event()

    async def speak(self, text):
        self.spoken.append(text)
        self.started.set()
        await self.finish.wait()
        return True


def make_service(tmp_path, handler, base_url="http://proxy.test", settings=None, speech=None):
    bus = EventBus()
    events = []
    for event_type in EventType:
        bus.subscribe(event_type, events.append)
    repo = SessionRepository(sessions_dir=str(tmp_path / "sessions"))
    provider = ProxyProvider(base_url, transport=httpx.MockTransport(handler))
    service = ChatService(repo, provider, settings_manager=settings, event_bus=bus,
                          speech_service=speech)
    return service, repo, events


def of_type(events, event_type):
    return [e for e in events if e.type == event_type]


class TestSessionLifecycle:
    def test_create_session_uses_settings(self, tmp_path):
        settings = SettingsManager(SettingsRepository(str(tmp_path / "settings.cfg")))
        settings.set("SYSTEM_PROMPT", "Run a heist.")
        settings.set("MODEL", "gm-large")
        service, _, events = make_service(tmp_path, lambda r: httpx.Response(200), settings=settings)

        session = service.create_session()

        assert session.turns[0].content == "Run a heist."
        assert session.model == "gm-large"
        assert of_type(events, EventType.SESSION_CREATED)

    def test_save_derives_title_and_sets_current(self, tmp_path):
        service, repo, _ = make_service(tmp_path, lambda r: httpx.Response(200))
        session = service.create_session()
        session.add_turn("user", "We sail at dawn\nwith the tide")

        service.save_session(session)

        assert session.title == "We sail at dawn"
        assert repo.get_current_id() == session.id
        assert repo.get(session.id).title == "We sail at dawn"

    def test_load_list_delete(self, tmp_path):
        service, repo, events = make_service(tmp_path, lambda r: httpx.Response(200))
        first = service.create_session()
        service.save_session(first)
        second = service.create_session()
        service.save_session(second)

        assert service.load_session(first.id).id == first.id
        assert repo.get_current_id() == first.id
        assert {s["session_id"] for s in service.list_sessions()} == {first.id, second.id}

        assert service.delete_session(first.id) is True
        assert service.load_session(first.id) is None
        assert of_type(events, EventType.SESSION_DELETED)


class TestSendMessage:
    def test_successful_stream_commits_reply(self, tmp_path):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200, content=sse("Hi", " there"))

        service, repo, events = make_service(tmp_path, handler)
        session = service.create_session()
        ctx = SessionContext(session)

        reply = asyncio.run(service.send_message(ctx, "  Hello GM  "))

        assert reply == "Hi there"
        assert [(t.role, t.content) for t in session.turns[1:]] == [
            ("user", "Hello GM"),
            ("assistant", "Hi there"),
        ]
        assert session.last_assistant_utterance == "Hi there"

        stored = repo.get(session.id)
        assert [t.content for t in stored.turns] == [t.content for t in session.turns]
        assert stored.last_assistant_utterance == "Hi there"

        assert requests[0]["model"] == session.model
        assert requests[0]["messages"][-1] == {"role": "user", "content": "Hello GM"}
        assert requests[0]["messages"][0]["role"] == "system"

        streamed = [e.data["content"] for e in of_type(events, EventType.MESSAGE_STREAMING)]
        assert streamed == ["Hi", "Hi there"]
        received = of_type(events, EventType.MESSAGE_RECEIVED)
        assert len(received) == 1 and received[0].data["is_error"] is False
        assert events[-1].type == EventType.SCROLL_REQUESTED

    def test_http_error_renders_error_turn(self, tmp_path):
        service, repo, events = make_service(
            tmp_path, lambda r: httpx.Response(500, text="server error"))
        session = service.create_session()
        ctx = SessionContext(session)

        reply = asyncio.run(service.send_message(ctx, "Hello"))

        assert reply is None
        errors = [e for e in of_type(events, EventType.MESSAGE_RECEIVED) if e.data["is_error"]]
        assert len(errors) == 1
        assert errors[0].data["role"] == "assistant"
        assert "500" in errors[0].data["content"]
        assert "server error" in errors[0].data["content"]

        assert [t.role for t in session.turns] == ["system", "user"]
        assert session.last_assistant_utterance == ""
        assert [t.role for t in repo.get(session.id).turns] == ["system", "user"]
        assert len(of_type(events, EventType.SCROLL_REQUESTED)) == 1

    def test_error_without_body(self, tmp_path):
        service, _, events = make_service(tmp_path, lambda r: httpx.Response(502))
        ctx = SessionContext(service.create_session())

        asyncio.run(service.send_message(ctx, "Hello"))

        content = of_type(events, EventType.MESSAGE_RECEIVED)[0].data["content"]
        assert content == "⚠️ HTTP 502: No response body"

    def test_error_body_truncated(self, tmp_path):
        service, _, events = make_service(tmp_path, lambda r: httpx.Response(400, text="e" * 2000))
        ctx = SessionContext(service.create_session())

        asyncio.run(service.send_message(ctx, "Hello"))

        content = of_type(events, EventType.MESSAGE_RECEIVED)[0].data["content"]
        assert content == "⚠️ HTTP 400: " + "e" * 500

    def test_transport_error_rendered_and_finalized(self, tmp_path):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        service, repo, events = make_service(tmp_path, handler)
        session = service.create_session()
        ctx = SessionContext(session)

        reply = asyncio.run(service.send_message(ctx, "Hello"))

        assert reply is None
        error = of_type(events, EventType.MESSAGE_RECEIVED)[0]
        assert error.data["is_error"] is True
        assert "connection refused" in error.data["content"]
        assert [t.role for t in repo.get(session.id).turns] == ["system", "user"]
        assert events[-1].type == EventType.SCROLL_REQUESTED
        assert service.is_busy is False

    def test_stream_cut_short_commits_partial_reply(self, tmp_path):
        async def body():
            yield sse("The door creaks", done=False)
            raise httpx.ReadError("connection reset")

        service, repo, events = make_service(tmp_path, lambda r: httpx.Response(200, content=body()))
        session = service.create_session()
        ctx = SessionContext(session)

        reply = asyncio.run(service.send_message(ctx, "Open it"))

        assert reply == "The door creaks"
        assert session.turns[-1].content == "The door creaks"
        assert repo.get(session.id).last_assistant_utterance == "The door creaks"
        assert any(e.data["is_error"] for e in of_type(events, EventType.MESSAGE_RECEIVED))

    def test_stream_without_sentinel_commits(self, tmp_path):
        service, _, _ = make_service(
            tmp_path, lambda r: httpx.Response(200, content=sse("Fin", done=False)))
        session = service.create_session()

        reply = asyncio.run(service.send_message(SessionContext(session), "Hi"))

        assert reply == "Fin"
        assert session.turns[-1].role == "assistant"

    def test_blank_message_is_ignored(self, tmp_path):
        calls = []
        service, _, events = make_service(tmp_path, lambda r: calls.append(r) or httpx.Response(200))
        session = service.create_session()

        assert asyncio.run(service.send_message(SessionContext(session), "   ")) is None
        assert calls == []
        assert len(session) == 1
        assert events == of_type(events, EventType.SESSION_CREATED)

    def test_missing_proxy_url_rendered(self, tmp_path):
        service, _, events = make_service(tmp_path, lambda r: httpx.Response(200), base_url="")
        session = service.create_session()

        asyncio.run(service.send_message(SessionContext(session), "Hi"))

        error = of_type(events, EventType.MESSAGE_RECEIVED)[0]
        assert error.data["is_error"] and "Proxy URL is not set" in error.data["content"]
        assert [t.role for t in session.turns] == ["system", "user"]

    def test_second_message_rejected_while_streaming(self, tmp_path):
        async def scenario():
            gate = asyncio.Event()

            async def handler(request):
                await gate.wait()
                return httpx.Response(200, content=sse("First reply"))

            service, _, events = make_service(tmp_path, handler)
            session = service.create_session()
            ctx = SessionContext(session)

            first = asyncio.ensure_future(service.send_message(ctx, "one"))
            await asyncio.sleep(0)
            assert service.is_busy

            second = await service.send_message(ctx, "two")
            gate.set()
            return await first, second, session, events

        first, second, session, events = asyncio.run(scenario())

        assert first == "First reply"
        assert second is None
        assert [t.content for t in session.turns if t.role == "user"] == ["one"]
        assert len(of_type(events, EventType.NOTIFICATION)) == 1

    def test_auto_speak(self, tmp_path):
        settings = SettingsManager(SettingsRepository(str(tmp_path / "settings.cfg")))
        settings.set("TTS_ENABLED", True)
        speech = FakeSpeech()
        service, _, _ = make_service(
            tmp_path, lambda r: httpx.Response(200, content=sse("Roll for initiative.")),
            settings=settings, speech=speech)

        async def scenario():
            reply = await service.send_message(SessionContext(service.create_session()), "Attack")
            await service.speech_task
            return reply

        assert asyncio.run(scenario()) == "Roll for initiative."
        assert speech.spoken == ["Roll for initiative."]
        assert service.speech_task is None

    def test_auto_speak_runs_after_dispatch_finishes(self, tmp_path):
        settings = SettingsManager(SettingsRepository(str(tmp_path / "settings.cfg")))
        settings.set("TTS_ENABLED", True)
        speech = SlowSpeech()
        service, _, events = make_service(
            tmp_path, lambda r: httpx.Response(200, content=sse("Roll.")),
            settings=settings, speech=speech)
        ctx = SessionContext(service.create_session())

        async def scenario():
            speech.prepare()
            first = await service.send_message(ctx, "one")
            await speech.started.wait()
            busy_while_speaking = service.is_busy
            scrolls = len(of_type(events, EventType.SCROLL_REQUESTED))
            second = await service.send_message(ctx, "two")
            speech.finish.set()
            await asyncio.sleep(0.01)
            return first, second, busy_while_speaking, scrolls

        first, second, busy_while_speaking, scrolls = asyncio.run(scenario())

        assert first == "Roll."
        assert second == "Roll."
        assert busy_while_speaking is False
        assert scrolls == 1
        assert [t.content for t in ctx.session.turns if t.role == "user"] == ["one", "two"]
        assert not of_type(events, EventType.NOTIFICATION)

    def test_auto_speak_failure_reported(self, tmp_path):
        class BrokenSpeech:
            async def speak(self, text):
                raise RuntimeError("no audio device")

        settings = SettingsManager(SettingsRepository(str(tmp_path / "settings.cfg")))
        settings.set("TTS_ENABLED", True)
        service, _, events = make_service(
            tmp_path, lambda r: httpx.Response(200, content=sse("Roll.")),
            settings=settings, speech=BrokenSpeech())

        async def scenario():
            await service.send_message(SessionContext(service.create_session()), "one")
            await asyncio.gather(service.speech_task, return_exceptions=True)

        asyncio.run(scenario())

        errors = of_type(events, EventType.ERROR_OCCURRED)
        assert errors[-1].data["error"] == "no audio device"

    def test_no_auto_speak_when_disabled(self, tmp_path):
        speech = FakeSpeech()
        service, _, _ = make_service(
            tmp_path, lambda r: httpx.Response(200, content=sse("Quiet.")), speech=speech)

        asyncio.run(service.send_message(SessionContext(service.create_session()), "Hi"))

        assert speech.spoken == []

    def test_context_window_limits_request(self, tmp_path):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200, content=sse("ok"))

        settings = SettingsManager(SettingsRepository(str(tmp_path / "settings.cfg")))
        settings.set("CONTEXT_MAX_TOKENS", 10)
        service, _, _ = make_service(tmp_path, handler, settings=settings)
        session = service.create_session()
        session.add_turn("user", "x" * 300)
        session.add_turn("assistant", "y" * 300)

        asyncio.run(service.send_message(SessionContext(session), "abc"))

        messages = requests[0]["messages"]
        assert [m["role"] for m in messages] == ["system", "user"]
        assert messages[1]["content"] == "abc"

    def test_zero_token_budget_is_respected(self, tmp_path):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200, content=sse("ok"))

        settings = SettingsManager(SettingsRepository(str(tmp_path / "settings.cfg")))
        settings.set("CONTEXT_MAX_TOKENS", 0)
        service, _, _ = make_service(tmp_path, handler, settings=settings)

        asyncio.run(service.send_message(SessionContext(service.create_session()), "abc"))

        assert [m["role"] for m in requests[0]["messages"]] == ["system"]

    def test_closed_stream_rendered_as_error(self, tmp_path):
        async def body():
            yield sse("The bridge", done=False)
            raise httpx.StreamClosed()

        service, _, events = make_service(tmp_path, lambda r: httpx.Response(200, content=body()))
        session = service.create_session()

        reply = asyncio.run(service.send_message(SessionContext(session), "Cross"))

        assert reply == "The bridge"
        assert session.turns[-1].content == "The bridge"
        errors = [e for e in of_type(events, EventType.MESSAGE_RECEIVED) if e.data["is_error"]]
        assert errors and errors[0].data["content"].startswith("⚠️ Request failed:")
        assert events[-1].type == EventType.SCROLL_REQUESTED
        assert service.is_busy is False
