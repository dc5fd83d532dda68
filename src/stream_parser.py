"""
stream_parser.py – Incremental parser for streamed chat replies.

The proxy answers POST /chat with newline-delimited frames:

    data: {"choices": [{"delta": {"content": "Hi"}}]}
    data: [DONE]

Bytes arrive in arbitrary chunks, so the parser keeps a stateful UTF-8 decoder
(multi-byte characters may straddle chunks) and a line buffer holding the last
incomplete line.
"""

import codecs
import json
from typing import Any, AsyncIterable, Callable, List, Optional

from utils import is_debug_enabled

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def extract_delta(frame: Any) -> Optional[str]:
    """
    Pull the content fragment out of one decoded frame.

    Understands the OpenAI-compatible shape ``choices[0].delta.content`` and
    falls back to a top-level ``content`` or ``delta`` string.
    """
    if not isinstance(frame, dict):
        return None

    choices = frame.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, dict):
            delta = first.get("delta")
            if isinstance(delta, dict):
                content = delta.get("content")
                if isinstance(content, str):
                    return content
        return None

    for key in ("content", "delta"):
        value = frame.get(key)
        if isinstance(value, str):
            return value
    return None


class StreamIngestionParser:
    """
    Rebuilds an assistant reply from a chunked response body.

    Parameters
    ----------
    on_delta : Optional[Callable[[str, str], None]]
        Called after every appended fragment with (fragment, text_so_far).
    on_commit : Optional[Callable[[str], None]]
        Called exactly once with the final text, either when the completion
        sentinel arrives or when the stream is finalized without one.
    """

    def __init__(
        self,
        on_delta: Optional[Callable[[str, str], None]] = None,
        on_commit: Optional[Callable[[str], None]] = None,
    ):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._parts: List[str] = []
        self._on_delta = on_delta
        self._on_commit = on_commit
        self.done = False
        self.committed = False
        self.skipped_frames = 0
        self._debug = is_debug_enabled()

    def _log(self, msg: str) -> None:
        """Log debug message if debugging is enabled."""
        if self._debug:
            print(f"[StreamParser] {msg}")

    @property
    def text(self) -> str:
        """The reply accumulated so far."""
        return "".join(self._parts)

    def feed(self, chunk: bytes) -> bool:
        """
        Consume one chunk of the response body.

        Returns
        -------
        bool
            True once the completion sentinel has been seen; later chunks are
            ignored.
        """
        if self.done:
            return True

        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        for line in lines:
            self._process_line(line)
            if self.done:
                break
        return self.done

    def finish(self) -> str:
        """
        Finalize the stream.

        Flushes the decoder, processes a trailing unterminated line and commits
        whatever text accumulated if the sentinel never arrived. Safe to call
        more than once.
        """
        if not self.done:
            self._buffer += self._decoder.decode(b"", final=True)
            tail, self._buffer = self._buffer, ""
            if tail:
                self._process_line(tail)
        if not self.done:
            self.done = True
            if self._parts:
                self._log("Stream ended without completion sentinel; committing partial reply")
                self._commit()
        return self.text

    async def consume(self, chunks: AsyncIterable[bytes]) -> str:
        """
        Feed every chunk of an async byte stream in arrival order.

        The stream is finalized on every exit path, including transport errors
        (which are re-raised after the partial reply has been committed).
        """
        try:
            async for chunk in chunks:
                if self.feed(chunk):
                    break
        finally:
            self.finish()
        return self.text

    def _process_line(self, line: str) -> None:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return

        payload = line[len(DATA_PREFIX):].strip()
        if payload == DONE_SENTINEL:
            self.done = True
            self._commit()
            return
        if not payload:
            return

        try:
            frame = json.loads(payload)
        except json.JSONDecodeError as e:
            self.skipped_frames += 1
            print(f"[StreamParser] Skipping malformed frame: {e}")
            return

        fragment = extract_delta(frame)
        if not fragment:
            return

        self._parts.append(fragment)
        if self._on_delta:
            self._on_delta(fragment, self.text)

    def _commit(self) -> None:
        if self.committed:
            return
        self.committed = True
        if self._on_commit:
            self._on_commit(self.text)
