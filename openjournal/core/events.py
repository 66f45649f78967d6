"""
Typed events processed by the SessionOrchestrator actor.

Every event carries the session epoch it was produced under; events from a
stale epoch (after disconnect) are dropped. Events produced by a listening
period also carry its ``listen_id`` so messages from a released Audio
Resource Set are ignored.
"""

from dataclasses import dataclass, field
from typing import Optional
import asyncio


@dataclass(frozen=True)
class Event:
    epoch: int


@dataclass(frozen=True)
class ListenRequested(Event):
    pass


@dataclass(frozen=True)
class ListeningOpened(Event):
    listen_id: int


@dataclass(frozen=True)
class ListeningFailed(Event):
    listen_id: int
    message: str


@dataclass(frozen=True)
class PartialTranscript(Event):
    listen_id: int
    text: str


@dataclass(frozen=True)
class CommittedTranscript(Event):
    listen_id: int
    text: str


@dataclass(frozen=True)
class ChannelError(Event):
    """error / auth_error / quota_exceeded reported by the realtime service."""
    listen_id: int
    kind: str
    message: str


@dataclass(frozen=True)
class ChannelFailed(Event):
    """Socket-level failure of the realtime connection."""
    listen_id: int
    message: str


@dataclass(frozen=True)
class UserCommitRequested(Event):
    pass


@dataclass(frozen=True)
class ManualCommitTimeout(Event):
    commit_id: int


@dataclass(frozen=True)
class DialogueResponse(Event):
    text: str


@dataclass(frozen=True)
class DialogueFailed(Event):
    message: str


@dataclass(frozen=True)
class SpeakRequested(Event):
    text: str


@dataclass(frozen=True)
class SynthesisResponse(Event):
    utterance_id: int
    audio: bytes = field(repr=False)
    format: str = "mp3"


@dataclass(frozen=True)
class SynthesisFailed(Event):
    utterance_id: int
    message: str


@dataclass(frozen=True)
class PlaybackEnded(Event):
    utterance_id: int
    error: Optional[str] = None


@dataclass(frozen=True)
class Disconnect(Event):
    done: Optional[asyncio.Future] = field(default=None, compare=False, repr=False)
