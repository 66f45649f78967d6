"""
Upstream API access for the backend proxy.

OpenRouter chat completions (interviewer, reformat) and the ElevenLabs
speech endpoints (synthesis, batch transcription, voices, realtime tokens).
Long-lived credentials stay in this process; the voice client only ever sees
single-use realtime tokens.
"""

import json
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
import structlog
from prometheus_client import Counter, Histogram

from openjournal.config.models import ServerConfig
from openjournal.config.security import ELEVENLABS_KEY_ENV, OPENROUTER_KEY_ENV
from openjournal.errors import ConfigurationError, MalformedResponseError, UpstreamError

logger = structlog.get_logger(__name__)

_UPSTREAM_REQUESTS_TOTAL = Counter(
    "openjournal_upstream_requests_total",
    "Requests forwarded to upstream APIs",
    labelnames=("endpoint", "outcome"),
)
_UPSTREAM_LATENCY_SECONDS = Histogram(
    "openjournal_upstream_latency_seconds",
    "Upstream request latency",
    labelnames=("endpoint",),
)


def extract_error_message(data: Any, raw_text: str, default: str, limit: int = 200) -> str:
    """Best human-readable message from an upstream error payload.

    Tries ``error.message``, ``error``, ``detail.message``, ``detail``,
    ``message``, then a raw body snippet, then ``default``.
    """
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str) and error:
            return error
        detail = data.get("detail")
        if isinstance(detail, dict) and isinstance(detail.get("message"), str):
            return detail["message"]
        if isinstance(detail, str) and detail:
            return detail
        if isinstance(data.get("message"), str) and data["message"]:
            return data["message"]
    if raw_text and raw_text.strip():
        return raw_text[:limit]
    return default


def _parse_json(raw_text: str) -> Any:
    if not raw_text.strip():
        return {}
    try:
        return json.loads(raw_text)
    except ValueError:
        return None


def completion_text(data: Any) -> Tuple[str, Optional[str]]:
    """Pull the assistant text and finish_reason out of a chat completion."""
    choices = data.get("choices") if isinstance(data, dict) else None
    choice = choices[0] if isinstance(choices, list) and choices else {}
    if not isinstance(choice, dict):
        choice = {}
    finish_reason = choice.get("finish_reason")
    message = choice.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None

    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        text = "".join(
            block["text"] for block in content
            if isinstance(block, dict) and isinstance(block.get("text"), str)
        )
    else:
        raise MalformedResponseError("No content generated")

    if not text.strip():
        raise MalformedResponseError("No content generated")
    return text.strip(), finish_reason if isinstance(finish_reason, str) else None


class UpstreamClient:
    """httpx-based access to OpenRouter and ElevenLabs."""

    def __init__(self, config: ServerConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._client = httpx.AsyncClient(timeout=config.request_timeout_sec, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    def require_openrouter_key(self) -> str:
        if not self.config.openrouter_api_key:
            raise ConfigurationError(f"{OPENROUTER_KEY_ENV} is not configured")
        return self.config.openrouter_api_key

    def require_elevenlabs_key(self) -> str:
        if not self.config.elevenlabs_api_key:
            raise ConfigurationError(f"{ELEVENLABS_KEY_ENV} is not configured")
        return self.config.elevenlabs_api_key

    async def _send(self, endpoint: str, method: str, url: str, **kwargs) -> httpx.Response:
        started_at = time.perf_counter()
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            _UPSTREAM_REQUESTS_TOTAL.labels(endpoint=endpoint, outcome="timeout").inc()
            logger.error("Upstream request timed out", endpoint=endpoint)
            raise UpstreamError(f"{endpoint} upstream request timed out") from e
        except httpx.HTTPError as e:
            _UPSTREAM_REQUESTS_TOTAL.labels(endpoint=endpoint, outcome="transport_error").inc()
            logger.error("Upstream request failed", endpoint=endpoint, error=str(e))
            raise UpstreamError(str(e) or f"{endpoint} upstream request failed") from e

        _UPSTREAM_LATENCY_SECONDS.labels(endpoint=endpoint).observe(time.perf_counter() - started_at)
        outcome = "success" if response.is_success else "error"
        _UPSTREAM_REQUESTS_TOTAL.labels(endpoint=endpoint, outcome=outcome).inc()
        if not response.is_success:
            logger.warning(
                "Upstream returned error status",
                endpoint=endpoint,
                status=response.status_code,
                body_preview=response.text[:200],
            )
        return response

    def _raise_for_status(self, response: httpx.Response, default: str, limit: int = 200) -> Any:
        data = _parse_json(response.text)
        if not response.is_success:
            raise UpstreamError(
                extract_error_message(data, response.text, default, limit=limit),
                status=response.status_code,
            )
        return data

    # ------------------------------------------------------------------
    # OpenRouter
    # ------------------------------------------------------------------

    async def chat_completion(
        self,
        endpoint: str,
        model: str,
        messages: Sequence[Dict[str, str]],
        max_tokens: Optional[int] = None,
    ) -> Tuple[str, Optional[str]]:
        api_key = self.require_openrouter_key()
        payload: Dict[str, Any] = {"model": model, "messages": list(messages)}
        if max_tokens:
            payload["max_tokens"] = max_tokens
        response = await self._send(
            endpoint,
            "POST",
            self.config.openrouter_url,
            json=payload,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        )
        data = self._raise_for_status(response, f"OpenRouter request failed ({response.status_code})")
        if data is None:
            raise MalformedResponseError("No content generated")
        return completion_text(data)

    # ------------------------------------------------------------------
    # ElevenLabs
    # ------------------------------------------------------------------

    async def text_to_speech(self, text: str, voice_id: str) -> bytes:
        api_key = self.require_elevenlabs_key()
        response = await self._send(
            "voice",
            "POST",
            f"{self.config.elevenlabs_base_url}/text-to-speech/{voice_id}",
            json={
                "text": text,
                "model_id": self.config.tts_model,
                "output_format": self.config.tts_output_format,
            },
            headers={"xi-api-key": api_key, "Content-Type": "application/json", "Accept": "audio/mpeg"},
        )
        if not response.is_success:
            self._raise_for_status(response, f"ElevenLabs request failed ({response.status_code})")
        return response.content

    async def speech_to_text(self, audio: bytes) -> str:
        api_key = self.require_elevenlabs_key()
        response = await self._send(
            "transcribe",
            "POST",
            f"{self.config.elevenlabs_base_url}/speech-to-text",
            data={"model_id": self.config.stt_model},
            files={"file": ("audio.wav", audio, "audio/wav")},
            headers={"xi-api-key": api_key},
        )
        data = self._raise_for_status(response, f"ElevenLabs STT failed ({response.status_code})", limit=300)
        text = data.get("text") if isinstance(data, dict) else None
        return str(text).strip() if text is not None else ""

    async def realtime_token(self) -> str:
        api_key = self.require_elevenlabs_key()
        response = await self._send(
            "scribe-token",
            "POST",
            f"{self.config.elevenlabs_base_url}/single-use-token/realtime_scribe",
            headers={"xi-api-key": api_key, "Content-Type": "application/json"},
        )
        data = self._raise_for_status(response, f"ElevenLabs token failed ({response.status_code})")
        token = data.get("token") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            raise MalformedResponseError("No token in response")
        return token

    async def list_voices(self) -> Optional[List[Dict[str, Any]]]:
        """Account voices, or None when the key is missing or the call fails."""
        api_key = self.config.elevenlabs_api_key
        if not api_key:
            return None
        try:
            response = await self._send(
                "voices",
                "GET",
                f"{self.config.elevenlabs_base_url}/voices",
                headers={"xi-api-key": api_key},
            )
        except UpstreamError:
            return None
        if not response.is_success:
            return None
        data = _parse_json(response.text)
        voices = data.get("voices") if isinstance(data, dict) else None
        return voices if isinstance(voices, list) else None
