"""
Core data models for the OpenJournal voice session.

The Session is owned by the SessionOrchestrator and only mutated from its
actor task. AudioResourceSet groups the handles of one listening period so
they can be released together.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import asyncio
import itertools
import time
import uuid

import structlog

logger = structlog.get_logger(__name__)


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Speaker(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


# Wire role used by the backend proxy ("ai" rather than "assistant")
_WIRE_ROLES = {Speaker.USER: "user", Speaker.ASSISTANT: "ai"}
_SPEAKERS_BY_ROLE = {"user": Speaker.USER, "ai": Speaker.ASSISTANT, "assistant": Speaker.ASSISTANT}


@dataclass(frozen=True)
class TranscriptEntry:
    """One immutable line of the conversation."""
    speaker: Speaker
    text: str

    @property
    def role(self) -> str:
        return _WIRE_ROLES[self.speaker]

    def to_wire(self) -> Dict[str, str]:
        return {"role": self.role, "text": self.text}

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "TranscriptEntry":
        role = str(data.get("role", "")).lower()
        if role not in _SPEAKERS_BY_ROLE:
            raise ValueError(f"unknown transcript role: {role!r}")
        return cls(speaker=_SPEAKERS_BY_ROLE[role], text=str(data.get("text", "")))


_listen_ids = itertools.count(1)


def next_listen_id() -> int:
    return next(_listen_ids)


@dataclass
class AudioResourceSet:
    """Live handles for one listening period: microphone, audio pump, channel.

    ``release`` is idempotent and never raises.
    """
    listen_id: int = field(default_factory=next_listen_id)
    microphone: Any = None
    channel: Any = None
    open_task: Optional[asyncio.Task] = None
    pump_task: Optional[asyncio.Task] = None
    audio_queue: Optional[asyncio.Queue] = None
    channel_open: bool = False
    released: bool = False

    async def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.channel_open = False

        for attr in ("open_task", "pump_task"):
            task = getattr(self, attr)
            setattr(self, attr, None)
            if task is None or task.done() or task is asyncio.current_task():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("Listening task ended with error", listen_id=self.listen_id, task=attr, exc_info=True)

        mic, self.microphone = self.microphone, None
        if mic is not None:
            try:
                mic.close()
            except Exception:
                logger.debug("Microphone close failed", listen_id=self.listen_id, exc_info=True)

        channel, self.channel = self.channel, None
        if channel is not None:
            try:
                await channel.close()
            except Exception:
                logger.debug("Channel close failed", listen_id=self.listen_id, exc_info=True)

        self.audio_queue = None
        logger.debug("Audio resources released", listen_id=self.listen_id)


@dataclass
class Session:
    """Complete state for one voice journaling session."""
    # Core identifiers
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    epoch: int = 0

    # Configuration fixed at connect time
    manual_mode: bool = False
    voice_id: str = ""
    system_prompt: str = ""

    # Observable state
    status: SessionStatus = SessionStatus.DISCONNECTED
    transcript: List[TranscriptEntry] = field(default_factory=list)
    interim_text: str = ""
    error_message: Optional[str] = None

    # Turn-cycle flags
    is_processing_turn: bool = False
    is_listening: bool = False
    is_ai_speaking: bool = False

    # Owned resources
    resources: Optional[AudioResourceSet] = None
    listen_timer: Optional[asyncio.TimerHandle] = None
    channel_retries: int = 0

    # Latency instrumentation (monotonic seconds)
    turn_started_ts: float = 0.0
    created_at: float = field(default_factory=time.time)

    def append(self, speaker: Speaker, text: str) -> TranscriptEntry:
        entry = TranscriptEntry(speaker=speaker, text=text)
        self.transcript.append(entry)
        return entry

    def transcript_wire(self) -> List[Dict[str, str]]:
        return [entry.to_wire() for entry in self.transcript]

    def cancel_listen_timer(self) -> None:
        timer, self.listen_timer = self.listen_timer, None
        if timer is not None:
            timer.cancel()

    def reset_flags(self) -> None:
        self.is_processing_turn = False
        self.is_listening = False
        self.is_ai_speaking = False
        self.interim_text = ""


UpdateCallback = Callable[[Dict[str, Any]], Any]
