"""
HTTP clients for the OpenJournal backend proxy.

Each client posts to one ``/api/*`` route and decodes the reply into either
the expected field or one of two failures:

- UpstreamError: non-2xx status; message taken from the ``error`` field or
  a body snippet. A 404 means the backend is not running.
- MalformedResponseError: 2xx with an unparseable body or a missing/empty
  field.

Connection-level problems surface as TransportError.
"""

import asyncio
import base64
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import aiohttp
import structlog

from openjournal.errors import MalformedResponseError, TransportError, UpstreamError

logger = structlog.get_logger(__name__)

NOT_FOUND_HINT = "Backend API not found (404). Is the backend running? Start it with 'openjournal serve'."


@dataclass(frozen=True)
class Voice:
    voice_id: str
    name: str


def _snippet(text: str, limit: int = 80) -> str:
    return " ".join((text or "").split())[:limit]


def decode_backend_response(
    status: int,
    body_text: str,
    field: str,
    endpoint: str,
    allow_empty: bool = False,
) -> Dict[str, Any]:
    """Decode a backend reply; return the parsed payload when ``field`` is a non-empty string."""
    data: Dict[str, Any] = {}
    if body_text.strip():
        try:
            parsed = json.loads(body_text)
        except ValueError:
            if status == 404:
                raise UpstreamError(NOT_FOUND_HINT, status=status)
            if 200 <= status < 300:
                raise MalformedResponseError(f"Invalid response from {endpoint}")
            raise UpstreamError(f"Server error ({status}): {_snippet(body_text)}", status=status)
        if isinstance(parsed, dict):
            data = parsed
        elif 200 <= status < 300:
            raise MalformedResponseError(f"Invalid response from {endpoint}")

    error = data.get("error") if isinstance(data.get("error"), str) else None
    if not 200 <= status < 300:
        if status == 404 and not error:
            raise UpstreamError(NOT_FOUND_HINT, status=status)
        raise UpstreamError(error or f"{endpoint} failed ({status})", status=status)

    value = data.get(field)
    if not isinstance(value, str) or (not value and not allow_empty):
        raise MalformedResponseError(error or f"No {field} in response from {endpoint}")
    return data


class BackendClient:
    """Shared session handling for all backend route clients."""

    endpoint: str = ""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_sec: float = 60.0,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout_sec = timeout_sec
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def url(self) -> str:
        return f"{self._base_url}{self.endpoint}"

    async def _ensure_session(self) -> None:
        if self._session and not self._session.closed:
            return
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _fetch(self, method: str, payload: Optional[Dict[str, Any]] = None) -> Tuple[int, str]:
        await self._ensure_session()
        started_at = time.perf_counter()
        try:
            async with self._session.request(
                method,
                self.url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self._timeout_sec),
            ) as resp:
                status = resp.status
                body_text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Backend request failed", endpoint=self.endpoint, error=str(e))
            raise TransportError(f"Could not reach backend at {self._base_url}: {e}") from e

        latency_ms = round((time.perf_counter() - started_at) * 1000.0, 2)
        if status >= 400:
            logger.warning(
                "Backend returned error status",
                endpoint=self.endpoint,
                status=status,
                body_preview=_snippet(body_text, 200),
            )
        else:
            logger.debug("Backend response received", endpoint=self.endpoint, status=status, latency_ms=latency_ms)
        return status, body_text

    async def _request(
        self,
        method: str,
        field: str,
        payload: Optional[Dict[str, Any]] = None,
        allow_empty: bool = False,
    ) -> Dict[str, Any]:
        status, body_text = await self._fetch(method, payload)
        return decode_backend_response(status, body_text, field, self.endpoint, allow_empty=allow_empty)


class DialogueClient(BackendClient):
    endpoint = "/api/interviewer"

    async def next_question(self, system_prompt: str, messages: Sequence[Dict[str, str]]) -> str:
        data = await self._request(
            "POST",
            "question",
            {"systemPrompt": system_prompt, "messages": list(messages)},
        )
        if data.get("finish_reason") == "length":
            logger.warning("Assistant reply truncated by token limit", endpoint=self.endpoint)
        return data["question"]


class SpeechSynthesisClient(BackendClient):
    endpoint = "/api/voice"

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> Tuple[bytes, str]:
        payload: Dict[str, Any] = {"text": text}
        if voice_id:
            payload["voiceId"] = voice_id
        data = await self._request("POST", "audio", payload)
        try:
            audio = base64.b64decode(data["audio"], validate=True)
        except ValueError as e:
            raise MalformedResponseError(f"Invalid audio payload from {self.endpoint}") from e
        fmt = data.get("format") if isinstance(data.get("format"), str) else "mp3"
        return audio, fmt


class ScribeTokenClient(BackendClient):
    endpoint = "/api/scribe-token"

    async def fetch_token(self) -> str:
        data = await self._request("GET", "token")
        return data["token"]


class VoicesClient(BackendClient):
    endpoint = "/api/voices"

    async def list_voices(self) -> List[Voice]:
        status, body_text = await self._fetch("GET")
        if status == 404:
            raise UpstreamError(NOT_FOUND_HINT, status=status)
        try:
            data = json.loads(body_text or "{}")
        except ValueError as e:
            raise MalformedResponseError(f"Invalid response from {self.endpoint}") from e
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Invalid response from {self.endpoint}")
        if status >= 400:
            raise UpstreamError(data.get("error") or f"{self.endpoint} failed ({status})", status=status)
        voices = data.get("voices")
        if not isinstance(voices, list):
            raise MalformedResponseError(f"No voices in response from {self.endpoint}")
        return [
            Voice(voice_id=str(v["voice_id"]), name=str(v.get("name") or v["voice_id"]))
            for v in voices
            if isinstance(v, dict) and v.get("voice_id")
        ]


class ReformatClient(BackendClient):
    endpoint = "/api/reformat"

    async def reformat(self, messages: Sequence[Dict[str, str]]) -> str:
        data = await self._request("POST", "text", {"messages": list(messages)})
        return data["text"]


class BatchTranscriptionClient(BackendClient):
    endpoint = "/api/transcribe"

    async def transcribe(self, wav_bytes: bytes, fmt: str = "wav") -> str:
        payload = {"audio": base64.b64encode(wav_bytes).decode("ascii"), "format": fmt}
        data = await self._request("POST", "text", payload, allow_empty=True)
        return data["text"]


class BackendClients:
    """The route clients a voice session needs, sharing one configuration."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_sec: float = 60.0,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        kwargs = {"timeout_sec": timeout_sec, "session_factory": session_factory}
        self.dialogue = DialogueClient(base_url, **kwargs)
        self.synthesis = SpeechSynthesisClient(base_url, **kwargs)
        self.tokens = ScribeTokenClient(base_url, **kwargs)

    async def close(self) -> None:
        for client in (self.dialogue, self.synthesis, self.tokens):
            await client.close()
