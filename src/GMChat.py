#!/usr/bin/env python3
"""
GMChat terminal front end.

Plain lines are sent to the Game Master; lines starting with '/' are commands
(see /help). Everything shown on screen arrives through the event bus.
"""

import asyncio
import shlex

from controller import SessionController, Intent
from events import EventType, get_event_bus

HELP_TEXT = """Commands:
  /new                 start a new campaign
  /list                list saved campaigns
  /load <id>           switch to a saved campaign
  /save                save the current campaign
  /delete [id]         delete a campaign (current by default)
  /image [size]        illustrate the last narration
  /rec                 start or stop voice input
  /send                send the pending (transcribed) input
  /speak               read the last narration aloud
  /stop                stop speech
  /proxy <url>         set the proxy URL
  /model <name>        set the model
  /system <prompt>     replace the system prompt
  /tts local|remote    choose the speech provider
  /ttsurl <url>        set the remote TTS endpoint
  /autospeak on|off    speak each reply automatically
  /size <WxH>          set the default image size
  /health              check the proxy
  /quit                exit"""

# Playback started from the prompt; referenced until it finishes.
_background_tasks = set()


def run_in_background(coro):
    """Start a coroutine without blocking the prompt."""
    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


class TerminalView:
    """Prints bus events to stdout."""

    def __init__(self, event_bus):
        self._streaming = False
        event_bus.subscribe(EventType.MESSAGE_STREAMING, self._on_streaming)
        event_bus.subscribe(EventType.MESSAGE_RECEIVED, self._on_received)
        event_bus.subscribe(EventType.NOTIFICATION, self._on_notification)
        event_bus.subscribe(EventType.IMAGE_GENERATED, self._on_image)
        event_bus.subscribe(EventType.HEALTH_CHECKED, self._on_health)
        event_bus.subscribe(EventType.INPUT_CHANGED, self._on_input)
        event_bus.subscribe(EventType.SESSION_LOADED, self._on_session)
        event_bus.subscribe(EventType.RECORDING_STARTED, self._on_recording)

    def _on_streaming(self, event):
        if not self._streaming:
            print("GM: ", end="", flush=True)
            self._streaming = True
        print(event.data.get('fragment', ''), end="", flush=True)

    def _on_received(self, event):
        if event.data.get('is_error'):
            if self._streaming:
                print()
                self._streaming = False
            print(f"GM: {event.data.get('content', '')}")
            return
        if self._streaming:
            print()
        else:
            print(f"GM: {event.data.get('content', '')}")
        self._streaming = False

    def _on_notification(self, event):
        prefix = "!!" if event.data.get('blocking') else "--"
        print(f"{prefix} {event.data.get('message', '')}")

    def _on_image(self, event):
        print(f"-- Image saved to {event.data.get('image_path')}")

    def _on_health(self, event):
        detail = event.data.get('detail', '')
        if event.data.get('ok'):
            detail = f"{detail} ({event.data.get('latency_ms', 0):.0f} ms)"
        print(f"-- Proxy: {detail}")

    def _on_input(self, event):
        text = event.data.get('text', '')
        if text:
            print(f"-- Pending input: {text}  (/send to submit)")

    def _on_session(self, event):
        print(f"-- Session {event.data.get('session_id')} ({event.data.get('turn_count')} turns)")

    def _on_recording(self, event):
        print("-- Recording... /rec again to stop")


async def handle_command(controller: SessionController, line: str) -> bool:
    """Run one command line. Returns False when the user asked to quit."""
    try:
        parts = shlex.split(line[1:])
    except ValueError:
        parts = line[1:].split()
    if not parts:
        return True
    command, args = parts[0].lower(), parts[1:]
    rest = " ".join(args)

    if command in ('quit', 'exit'):
        return False
    if command == 'help':
        print(HELP_TEXT)
    elif command == 'new':
        session = await controller.dispatch(Intent.NEW_SESSION)
        print(f"-- New campaign {session.id}")
    elif command == 'list':
        for meta in await controller.dispatch(Intent.LIST_SESSIONS):
            marker = "*" if meta['session_id'] == controller.session.id else " "
            print(f"{marker} {meta['session_id']}  {meta['title']}  ({meta['updated_at']})")
    elif command == 'load' and args:
        await controller.dispatch(Intent.LOAD_SESSION, session_id=args[0])
    elif command == 'save':
        await controller.dispatch(Intent.SAVE_SESSION)
    elif command == 'delete':
        await controller.dispatch(Intent.DELETE_SESSION, session_id=args[0] if args else None)
    elif command == 'image':
        await controller.dispatch(Intent.GENERATE_IMAGE, size=args[0] if args else None)
    elif command == 'rec':
        await controller.dispatch(Intent.TOGGLE_RECORDING)
    elif command == 'send':
        await controller.dispatch(Intent.SUBMIT_INPUT)
    elif command == 'speak':
        run_in_background(controller.dispatch(Intent.SPEAK_LAST))
    elif command == 'stop':
        await controller.dispatch(Intent.STOP_SPEECH)
    elif command == 'proxy' and args:
        await controller.dispatch(Intent.SET_PROXY_URL, url=args[0])
    elif command == 'model' and args:
        await controller.dispatch(Intent.SET_MODEL, model=args[0])
    elif command == 'system' and rest:
        await controller.dispatch(Intent.SET_SYSTEM_PROMPT, prompt=rest)
    elif command == 'tts' and args:
        await controller.dispatch(Intent.SET_TTS_PROVIDER, provider=args[0])
    elif command == 'ttsurl' and args:
        await controller.dispatch(Intent.SET_TTS_URL, url=args[0])
    elif command == 'autospeak' and args:
        await controller.dispatch(Intent.SET_AUTO_SPEAK, enabled=args[0].lower() in ('on', 'true', '1', 'yes'))
    elif command == 'size' and args:
        size = await controller.dispatch(Intent.SET_IMAGE_SIZE, size=rest)
        print(f"-- Image size: {size}")
    elif command == 'health':
        await controller.dispatch(Intent.CHECK_HEALTH)
    else:
        print(f"Unknown command: /{command}. Type /help for a list.")
    return True


async def run() -> None:
    event_bus = get_event_bus()
    TerminalView(event_bus)
    controller = SessionController(event_bus=event_bus)
    print(f"GMChat - campaign '{controller.session.title}'. Type /help for commands.")
    await controller.dispatch(Intent.CHECK_HEALTH)

    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            line = line.strip()
            if not line:
                continue
            try:
                if line.startswith('/'):
                    if not await handle_command(controller, line):
                        break
                else:
                    await controller.dispatch(Intent.SEND_MESSAGE, text=line)
            except ValueError as e:
                print(f"!! {e}")
    finally:
        await controller.aclose()


def main():
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
