"""
Proxy provider for GMChat.

Talks to the campaign proxy over HTTP:
- POST /chat   - streamed chat completion
- POST /image  - scene image generation
- POST /stt    - speech transcription
- GET  /health - liveness probe
and to an optional standalone text-to-speech endpoint.
"""

import base64
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from config import ERROR_BODY_MAX_LENGTH
from utils import is_debug_enabled, truncate_text


@dataclass
class HealthStatus:
    """Result of a proxy liveness probe."""
    ok: bool
    detail: str
    latency_ms: float = 0.0


def describe_http_error(status_code: int, body: str) -> str:
    """Format a failed response the way it is shown to the user."""
    body = truncate_text(body.strip(), ERROR_BODY_MAX_LENGTH) if body else ""
    return f"HTTP {status_code}: {body or 'No response body'}"


class ProxyProvider:
    """
    Async HTTP client for the proxy endpoints.

    A single ``httpx.AsyncClient`` is created lazily and reused; changing the
    base URL or timeout with ``configure`` keeps the client.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or "").strip().rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._debug = is_debug_enabled()

    def _log(self, msg: str) -> None:
        """Log debug message if debugging is enabled."""
        if self._debug:
            print(f"[ProxyProvider] {msg}")

    def configure(self, base_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        """Update the proxy base URL and/or request timeout."""
        if base_url is not None:
            self.base_url = base_url.strip().rstrip("/")
        if timeout is not None and timeout != self.timeout:
            self.timeout = timeout
            if self._client is not None:
                self._client.timeout = self._make_timeout()
        self._log(f"Configured base_url={self.base_url!r} timeout={self.timeout}")

    def _make_timeout(self) -> httpx.Timeout:
        # Streams may pause between frames for as long as the model needs.
        return httpx.Timeout(self.timeout, read=None)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._make_timeout(),
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    def _url(self, path: str) -> str:
        if not self.base_url:
            raise ValueError("Proxy URL is not set")
        return f"{self.base_url}{path}"

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    def stream_chat(self, model: str, messages: List[Dict[str, Any]]):
        """
        Open a streamed chat request.

        Returns an async context manager yielding the ``httpx.Response``; the
        caller checks the status and reads the body chunk by chunk.
        """
        url = self._url("/chat")
        self._log(f"Chat request: model={model}, messages={len(messages)}")
        return self.client.stream(
            "POST",
            url,
            json={"model": model, "messages": messages},
            headers={"Accept": "text/event-stream"},
        )

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    async def generate_image(self, prompt: str, size: str) -> bytes:
        """
        Generate a scene image.

        Returns
        -------
        bytes
            The encoded image, decoded from base64 or downloaded from the
            returned URL.

        Raises
        ------
        RuntimeError
            If the proxy answers with an error or without image data.
        """
        resp = await self.client.post(self._url("/image"), json={"prompt": prompt, "size": size})
        if not resp.is_success:
            raise RuntimeError(describe_http_error(resp.status_code, resp.text))

        try:
            data = resp.json()
        except ValueError as e:
            raise RuntimeError(f"Invalid image response: {e}") from e

        item = data
        if isinstance(data, dict) and isinstance(data.get("data"), list) and data["data"]:
            item = data["data"][0]
        if not isinstance(item, dict):
            raise RuntimeError("No image data.")

        b64 = item.get("b64_json")
        if b64:
            try:
                return base64.b64decode(b64)
            except ValueError as e:
                raise RuntimeError(f"Invalid image data: {e}") from e

        image_url = item.get("url")
        if image_url:
            self._log(f"Downloading image from {image_url}")
            download = await self.client.get(image_url)
            if not download.is_success:
                raise RuntimeError(describe_http_error(download.status_code, download.text))
            return download.content

        raise RuntimeError("No image data.")

    # -------------------------------------------------------------------------
    # Speech
    # -------------------------------------------------------------------------

    async def transcribe_audio(self, audio: bytes, filename: str, mime_type: str) -> str:
        """
        Transcribe a recorded clip.

        Raises
        ------
        RuntimeError
            If the proxy answers with an error or an unexpected payload.
        """
        files = {"file": (filename, audio, mime_type)}
        resp = await self.client.post(self._url("/stt"), files=files)
        if not resp.is_success:
            raise RuntimeError(describe_http_error(resp.status_code, resp.text))
        try:
            data = resp.json()
        except ValueError as e:
            raise RuntimeError(f"Invalid transcription response: {e}") from e
        text = data.get("text") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise RuntimeError("Transcription response has no text")
        return text

    async def synthesize_speech(self, tts_url: str, text: str) -> bytes:
        """
        Post text to a standalone TTS endpoint and return the audio bytes.

        Raises
        ------
        RuntimeError
            If no URL is configured, the endpoint fails or returns no audio.
        """
        if not tts_url:
            raise RuntimeError("TTS URL is not set")
        resp = await self.client.post(tts_url, json={"text": text})
        if not resp.is_success:
            raise RuntimeError(describe_http_error(resp.status_code, resp.text))
        if not resp.content:
            raise RuntimeError("TTS endpoint returned no audio")
        return resp.content

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def check_health(self) -> HealthStatus:
        """Probe GET /health; any 2xx means reachable."""
        if not self.base_url:
            return HealthStatus(ok=False, detail="Set proxy URL")

        start = time.time()
        try:
            resp = await self.client.get(
                self._url("/health"),
                headers={"Cache-Control": "no-store"},
            )
        except httpx.HTTPError as e:
            self._log(f"Health check failed: {e}")
            return HealthStatus(ok=False, detail="Offline")

        latency_ms = (time.time() - start) * 1000
        if resp.is_success:
            return HealthStatus(ok=True, detail="Connected", latency_ms=latency_ms)
        return HealthStatus(ok=False, detail="Unavailable", latency_ms=latency_ms)
