"""
Shared fakes and fixtures.

The fakes stand in for the microphone, realtime channel, playback context
and backend route clients so the session orchestrator can be driven
deterministically on one event loop.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from openjournal.audio.devices import MIC_UNAVAILABLE_MESSAGE
from openjournal.config.models import AppConfig, SessionConfig
from openjournal.core.journal import JournalStore
from openjournal.core.orchestrator import SessionOrchestrator
from openjournal.errors import ResourceError, TransportError


class FakeMicrophone:
    sample_rate = 48000

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.on_chunk = None
        self.closed = False

    async def start(self, on_chunk) -> None:
        if self.fail:
            raise ResourceError(MIC_UNAVAILABLE_MESSAGE)
        self.on_chunk = on_chunk

    def push(self, samples) -> None:
        self.on_chunk(samples)

    def close(self) -> None:
        self.closed = True


class FakeChannel:
    def __init__(self, config, *, manual_mode: bool, on_event, fail_open: bool = False):
        self.config = config
        self.manual_mode = manual_mode
        self.on_event = on_event
        self.fail_open = fail_open
        self.token: Optional[str] = None
        self.audio: List[Any] = []
        self.commits: List[int] = []
        self.closed = False
        self.send_error: Optional[BaseException] = None

    async def open(self, token: str) -> None:
        if self.fail_open:
            raise TransportError("Live transcription connection failed")
        self.token = token

    async def send_audio(self, samples, source_rate: int) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.audio.append((samples, source_rate))

    async def send_silence_commit(self, sample_count: int) -> None:
        self.commits.append(sample_count)

    async def close(self) -> None:
        self.closed = True

    async def emit(self, event: Dict[str, Any]) -> None:
        await self.on_event(event)

    async def partial(self, text: str) -> None:
        await self.emit({"type": "partial_transcript", "text": text})

    async def committed(self, text: str) -> None:
        await self.emit({"type": "committed_transcript", "text": text})

    async def error(self, kind: str, message: str) -> None:
        await self.emit({"type": "channel_error", "kind": kind, "message": message})


class FakePlayback:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.gate: Optional[asyncio.Event] = None
        self.played: List[bytes] = []
        self.ended_at: List[float] = []
        self.stops = 0
        self.closed = False

    async def play(self, audio: bytes, fmt: str = "mp3") -> None:
        self.played.append(audio)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise ResourceError("no audio output")
        self.ended_at.append(asyncio.get_running_loop().time())

    def stop(self) -> None:
        self.stops += 1

    def close(self) -> None:
        self.closed = True


class FakeDialogue:
    def __init__(self):
        self.calls: List[Any] = []
        self.replies: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[Exception] = None

    async def next_question(self, system_prompt, messages):
        self.calls.append((system_prompt, list(messages)))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.replies.pop(0) if self.replies else "Tell me more."


class FakeSynthesis:
    def __init__(self):
        self.calls: List[Any] = []
        self.error: Optional[Exception] = None

    async def synthesize(self, text, voice_id=None):
        self.calls.append((text, voice_id))
        if self.error is not None:
            raise self.error
        return b"mp3:" + text.encode(), "mp3"


class FakeTokens:
    def __init__(self):
        self.calls = 0
        self.error: Optional[Exception] = None

    async def fetch_token(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return f"token-{self.calls}"


class FakeBackend:
    def __init__(self):
        self.dialogue = FakeDialogue()
        self.synthesis = FakeSynthesis()
        self.tokens = FakeTokens()


class SessionHarness:
    """An orchestrator wired to fakes, recording every update it emits."""

    def __init__(self, tmp_path, mic_fail: bool = False, playback_fail: bool = False, **session_overrides):
        settings = {"post_speech_delay_ms": 10, "manual_commit_timeout_ms": 50}
        settings.update(session_overrides)
        self.config = AppConfig(session=SessionConfig(**settings))
        self.backend = FakeBackend()
        self.playback = FakePlayback(fail=playback_fail)
        self.journal = JournalStore(str(tmp_path / "journal.db"))
        self.microphones: List[FakeMicrophone] = []
        self.channels: List[FakeChannel] = []
        self.updates: List[Dict[str, Any]] = []
        self.update_times: List[float] = []
        self.mic_fail = mic_fail
        self.channel_fail_open = False

        self.orch = SessionOrchestrator(
            self.config,
            self.backend,
            microphone_factory=self._make_microphone,
            playback_factory=lambda: self.playback,
            journal=self.journal,
            channel_factory=self._make_channel,
            on_update=self._record,
        )

    def _make_microphone(self):
        mic = FakeMicrophone(fail=self.mic_fail)
        self.microphones.append(mic)
        return mic

    def _make_channel(self, config, *, manual_mode, on_event):
        channel = FakeChannel(config, manual_mode=manual_mode, on_event=on_event, fail_open=self.channel_fail_open)
        self.channels.append(channel)
        return channel

    async def _record(self, update):
        self.updates.append(update)
        self.update_times.append(asyncio.get_running_loop().time())

    @property
    def session(self):
        return self.orch.session

    @property
    def channel(self) -> FakeChannel:
        return self.channels[-1]

    def statuses(self) -> List[str]:
        return [u["status"] for u in self.updates if u["type"] == "status"]

    def transcript(self) -> List[Dict[str, str]]:
        return self.session.transcript_wire() if self.session else []

    async def connect_and_listen(self) -> FakeChannel:
        await self.orch.connect()
        deadline = asyncio.get_running_loop().time() + 2.0
        while self.session is None or not self.session.is_listening:
            assert asyncio.get_running_loop().time() < deadline, "listening never started"
            await asyncio.sleep(0.005)
        return self.channel


@pytest.fixture
def harness(tmp_path):
    return SessionHarness(tmp_path)


@pytest.fixture
def make_harness(tmp_path):
    def _make(**kwargs):
        return SessionHarness(tmp_path, **kwargs)
    return _make
