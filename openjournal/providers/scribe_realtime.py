"""
ElevenLabs Scribe realtime speech-to-text channel.

One WebSocket per listening period:
    wss://api.elevenlabs.io/v1/speech-to-text/realtime?token=...&model_id=...

Outbound frames:
    {"message_type": "input_audio_chunk", "audio_base_64": ..., "sample_rate": 16000, "commit": false}

Inbound messages (``message_type``):
    partial_transcript     -> {"type": "partial_transcript", "text"}
    committed_transcript   -> {"type": "committed_transcript", "text"}
    error / auth_error / quota_exceeded -> {"type": "channel_error", "kind", "message"}

Anything unparseable or unknown is dropped. A socket-level failure is
reported once as {"type": "channel_failed", "message"}; the channel never
reconnects on its own.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import numpy as np
import structlog
import websockets
import websockets.exceptions

from openjournal.audio.codec import encode_samples_to_base64, encode_silence_to_base64
from openjournal.config.models import ScribeConfig
from openjournal.errors import TransportError

logger = structlog.get_logger(__name__)

CHANNEL_FAILED_MESSAGE = "Live transcription connection failed"
DEFAULT_ERROR_MESSAGE = "Transcription error"

ERROR_MESSAGE_TYPES = ("error", "auth_error", "quota_exceeded")

EventCallback = Callable[[Dict[str, Any]], Awaitable[None]]


def build_realtime_url(config: ScribeConfig, token: str, manual_mode: bool) -> str:
    params = {
        "token": token,
        "model_id": config.model_id,
        "commit_strategy": "manual" if manual_mode else "vad",
        "audio_format": config.audio_format,
        "language_code": config.language_code,
    }
    if not manual_mode:
        params["vad_silence_threshold_secs"] = f"{config.vad.silence_threshold_secs:.1f}"
        params["vad_threshold"] = f"{config.vad.threshold:g}"
        params["min_speech_duration_ms"] = str(config.vad.min_speech_duration_ms)
    return f"{config.ws_url}?{urlencode(params)}"


def parse_channel_message(raw: Any) -> Optional[Dict[str, Any]]:
    """Map one inbound frame to a channel event dict, or None to drop it."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None

    msg_type = data.get("message_type")
    text = data.get("text")
    if msg_type in ("partial_transcript", "committed_transcript"):
        if not isinstance(text, str):
            return None
        return {"type": msg_type, "text": text}
    if msg_type in ERROR_MESSAGE_TYPES:
        error = data.get("error")
        message = error if isinstance(error, str) and error else DEFAULT_ERROR_MESSAGE
        return {"type": "channel_error", "kind": msg_type, "message": message}
    return None


class ScribeRealtimeChannel:
    """Streaming transcription connection for one listening period."""

    def __init__(
        self,
        config: ScribeConfig,
        *,
        manual_mode: bool,
        on_event: EventCallback,
        connect: Optional[Callable[..., Any]] = None,
    ):
        self.config = config
        self.manual_mode = manual_mode
        self.on_event = on_event
        self._connect = connect or websockets.connect
        self._ws = None
        self._receive_task: Optional[asyncio.Task] = None
        self._closing = False
        self._failed = False
        self.chunks_sent = 0

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closing and not self._failed

    async def open(self, token: str) -> None:
        url = build_realtime_url(self.config, token, self.manual_mode)
        logger.info(
            "Connecting realtime transcription",
            commit_strategy="manual" if self.manual_mode else "vad",
            model_id=self.config.model_id,
        )
        try:
            self._ws = await asyncio.wait_for(
                self._connect(url, max_size=4 * 1024 * 1024, ping_interval=20, ping_timeout=20, close_timeout=5),
                timeout=self.config.connect_timeout_sec,
            )
        except asyncio.TimeoutError as e:
            logger.error("Realtime transcription connect timeout", timeout_sec=self.config.connect_timeout_sec)
            raise TransportError(CHANNEL_FAILED_MESSAGE) from e
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error("Realtime transcription connect failed", error=str(e))
            raise TransportError(CHANNEL_FAILED_MESSAGE) from e

        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.debug("Realtime transcription connected")

    async def _receive_loop(self) -> None:
        try:
            async for raw in self._ws:
                if self._closing:
                    break
                event = parse_channel_message(raw)
                if event is None:
                    logger.debug("Dropped realtime message", preview=str(raw)[:80])
                    continue
                await self.on_event(event)
        except websockets.exceptions.ConnectionClosedOK:
            logger.info("Realtime transcription closed by server")
        except websockets.exceptions.ConnectionClosed as e:
            if not self._closing:
                logger.warning("Realtime transcription connection lost", error=str(e))
                await self._report_failure()
        except asyncio.CancelledError:
            logger.debug("Realtime receive loop cancelled")
            raise
        except OSError as e:
            if not self._closing:
                logger.error("Realtime receive loop error", error=str(e))
                await self._report_failure()

    async def _report_failure(self) -> None:
        if self._failed:
            return
        self._failed = True
        await self.on_event({"type": "channel_failed", "message": CHANNEL_FAILED_MESSAGE})

    async def _send_frame(self, audio_b64: str, commit: bool) -> None:
        if not self.is_open:
            return
        frame = {
            "message_type": "input_audio_chunk",
            "audio_base_64": audio_b64,
            "sample_rate": self.config.sample_rate_hz,
            "commit": commit,
        }
        try:
            await self._ws.send(json.dumps(frame))
            self.chunks_sent += 1
        except websockets.exceptions.ConnectionClosed as e:
            if not self._closing:
                logger.warning("Realtime send failed; connection closed", error=str(e))
                await self._report_failure()

    async def send_audio(self, samples: np.ndarray, source_rate: int) -> None:
        """Resample to the channel rate and send one audio chunk."""
        audio_b64 = encode_samples_to_base64(samples, source_rate, self.config.sample_rate_hz)
        await self._send_frame(audio_b64, commit=False)

    async def send_silence_commit(self, sample_count: int) -> None:
        """Send a silent chunk flagged ``commit`` to flush server-side buffered audio."""
        await self._send_frame(encode_silence_to_base64(sample_count), commit=True)
        logger.debug("Manual commit flush sent", samples=sample_count)

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True

        task, self._receive_task = self._receive_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await asyncio.wait_for(task, timeout=2.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.debug("Realtime close error", error=str(e))
        logger.debug("Realtime transcription closed", chunks_sent=self.chunks_sent)
