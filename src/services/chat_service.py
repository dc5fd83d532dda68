"""
Chat service for managing session lifecycle and message dispatch.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set

import httpx

from repositories import SessionRepository
from conversation import Session, SessionContext
from context_window import messages_for_request
from stream_parser import StreamIngestionParser
from proxy_provider import ProxyProvider, describe_http_error
from config import DEFAULT_SYSTEM_PROMPT, SETTINGS_CONFIG
from events import EventBus, EventType, Event
from utils import is_debug_enabled

ERROR_MARKER = "⚠️"


class ChatService:
    """
    Service for managing campaign sessions.

    Coordinates the session repository and the proxy provider to handle the
    session lifecycle (create, load, save, delete, list) and the dispatch of
    each user message through to a committed, persisted reply.
    """

    def __init__(
        self,
        session_repo: SessionRepository,
        provider: ProxyProvider,
        settings_manager=None,
        event_bus: Optional[EventBus] = None,
        speech_service=None,
    ):
        """
        Initialize the chat service.

        Parameters
        ----------
        session_repo : SessionRepository
            Repository for session persistence.
        provider : ProxyProvider
            HTTP client for the proxy.
        settings_manager : Optional[SettingsManager]
            Source of model, prompt, context limits and the auto-speak toggle.
        event_bus : Optional[EventBus]
            Event bus for publishing events.
        speech_service : Optional[SpeechPlaybackService]
            Used to speak committed replies when auto-speak is on.
        """
        self._session_repo = session_repo
        self._provider = provider
        self._settings_manager = settings_manager
        self._event_bus = event_bus
        self._speech_service = speech_service
        self._in_flight = False
        self._speech_task: Optional[asyncio.Task] = None
        self._speech_tasks: Set[asyncio.Task] = set()
        self._debug = is_debug_enabled()

    def _log(self, msg: str) -> None:
        """Log debug message if debugging is enabled."""
        if self._debug:
            print(f"[ChatService] {msg}")

    def _emit(self, event_type: EventType, **data) -> None:
        """Emit an event if event bus is configured."""
        if self._event_bus:
            self._event_bus.publish(Event(type=event_type, data=data, source='chat_service'))

    def _setting(self, key: str) -> Any:
        default = SETTINGS_CONFIG[key]['default']
        if self._settings_manager is None:
            return default
        value = self._settings_manager.get(key, default)
        return default if value is None else value

    @property
    def is_busy(self) -> bool:
        """True while a reply is being streamed."""
        return self._in_flight

    @property
    def speech_task(self) -> Optional[asyncio.Task]:
        """The auto-speak playback started by the last reply, if any."""
        return self._speech_task

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    def create_session(
        self,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Session:
        """
        Create a new session.

        Parameters
        ----------
        system_prompt : Optional[str]
            Prompt for the system turn. If None, uses SYSTEM_PROMPT from settings.
        model : Optional[str]
            Model identifier. If None, uses MODEL from settings.

        Returns
        -------
        Session
            The new, not yet persisted, session.
        """
        if system_prompt is None:
            system_prompt = self._setting('SYSTEM_PROMPT') or DEFAULT_SYSTEM_PROMPT
        if model is None:
            model = self._setting('MODEL')

        session = Session.create(system_prompt, model)
        self._emit(EventType.SESSION_CREATED, session_id=session.id, system_prompt=system_prompt)
        return session

    def load_session(self, session_id: str) -> Optional[Session]:
        """
        Load a session by ID and make it the current one.

        Returns
        -------
        Optional[Session]
            The session if found, None otherwise.
        """
        session = self._session_repo.get(session_id)
        if session:
            self._session_repo.set_current_id(session.id)
            self._emit(EventType.SESSION_LOADED, session_id=session.id, turn_count=len(session))
        return session

    def save_session(self, session: Session) -> str:
        """
        Persist a session and record it as the current one.

        The title is derived from the first user turn while it is still the
        default placeholder.

        Returns
        -------
        str
            The session id.

        Raises
        ------
        OSError
            If the session file cannot be written.
        """
        session.derive_title()
        self._session_repo.save(session)
        self._session_repo.set_current_id(session.id)
        self._emit(EventType.SESSION_SAVED, session_id=session.id, title=session.title,
                   turn_count=len(session))
        return session.id

    def delete_session(self, session_id: str) -> bool:
        """
        Delete a session.

        Returns
        -------
        bool
            True if deleted successfully, False otherwise.
        """
        result = self._session_repo.delete(session_id)
        if result:
            self._emit(EventType.SESSION_DELETED, session_id=session_id)
        return result

    def list_sessions(self) -> List[Dict[str, Any]]:
        """List stored sessions as metadata dictionaries, newest first."""
        return [meta.to_dict() for meta in self._session_repo.list_all()]

    def _persist(self, session: Session) -> bool:
        try:
            self.save_session(session)
            return True
        except OSError as e:
            self._emit(EventType.ERROR_OCCURRED, error=str(e), context='save_session')
            return False

    # -------------------------------------------------------------------------
    # Message dispatch
    # -------------------------------------------------------------------------

    def _render_error(self, session: Session, message: str) -> None:
        """Show an assistant-role error turn without touching the session log."""
        self._emit(
            EventType.MESSAGE_RECEIVED,
            session_id=session.id,
            role='assistant',
            content=f"{ERROR_MARKER} {message}",
            is_error=True,
        )

    async def send_message(self, ctx: SessionContext, text: str) -> Optional[str]:
        """
        Send a user message and stream the reply into the session.

        The user turn is appended and persisted before the request goes out.
        The reply is committed to the session by the stream parser. With
        auto-speak on, playback is started in the background and is not
        awaited; see ``speech_task``. Failures are rendered as an inline
        error turn. A scroll request is emitted on every exit path.

        Parameters
        ----------
        ctx : SessionContext
            Holds the session the message belongs to.
        text : str
            The message; surrounding whitespace is stripped.

        Returns
        -------
        Optional[str]
            The committed reply, or None if nothing was committed.
        """
        text = (text or "").strip()
        if not text:
            return None

        if self._in_flight:
            self._emit(EventType.NOTIFICATION,
                       message="The Game Master is still replying. Wait for the reply to finish.",
                       blocking=False)
            return None

        self._in_flight = True
        session = ctx.session
        committed: List[str] = []

        def on_delta(fragment: str, text_so_far: str) -> None:
            self._emit(EventType.MESSAGE_STREAMING, session_id=session.id,
                       fragment=fragment, content=text_so_far)

        def on_commit(reply: str) -> None:
            session.add_turn('assistant', reply)
            session.set_last_assistant_utterance(reply)
            self._persist(session)
            committed.append(reply)
            self._emit(EventType.MESSAGE_RECEIVED, session_id=session.id,
                       role='assistant', content=reply, is_error=False)

        try:
            session.add_turn('user', text)
            self._persist(session)
            self._emit(EventType.MESSAGE_SENT, session_id=session.id, content=text)

            messages = messages_for_request(
                session.turns,
                max_tokens=self._setting('CONTEXT_MAX_TOKENS'),
                max_turns=self._setting('CONTEXT_MAX_TURNS'),
            )
            self._log(f"Dispatching {len(messages)} of {len(session)} turns")

            async with self._provider.stream_chat(session.model, messages) as response:
                # 204 carries no body to stream
                if not response.is_success or response.status_code == 204:
                    body = await response.aread()
                    self._render_error(
                        session,
                        describe_http_error(response.status_code,
                                            body.decode('utf-8', errors='replace')),
                    )
                    return None

                parser = StreamIngestionParser(on_delta=on_delta, on_commit=on_commit)
                await parser.consume(response.aiter_bytes())

            reply = committed[0] if committed else None
            if reply and self._setting('TTS_ENABLED') and self._speech_service is not None:
                self._start_speech(reply)
            return reply

        except (httpx.HTTPError, httpx.StreamError) as e:
            print(f"[ChatService] Request failed: {e}")
            self._render_error(session, f"Request failed: {e}")
            return committed[0] if committed else None
        except ValueError as e:
            print(f"[ChatService] Cannot send message: {e}")
            self._render_error(session, str(e))
            return None
        finally:
            self._in_flight = False
            self._emit(EventType.SCROLL_REQUESTED, session_id=session.id)

    def _start_speech(self, reply: str) -> None:
        """Speak a committed reply without holding up the dispatcher."""
        task = asyncio.create_task(self._speech_service.speak(reply))
        task.add_done_callback(self._on_speech_done)
        self._speech_tasks.add(task)
        self._speech_task = task

    def _on_speech_done(self, task: asyncio.Task) -> None:
        self._speech_tasks.discard(task)
        if task is self._speech_task:
            self._speech_task = None
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            print(f"[ChatService] Auto-speak failed: {error}")
            self._emit(EventType.ERROR_OCCURRED, error=str(error), context='auto_speak')
