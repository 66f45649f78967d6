"""
SessionOrchestrator - the voice journaling turn cycle.

    connect -> greeting -> [cooldown -> listen -> commit -> dialogue -> synthesis -> playback]* -> disconnect

All session state is mutated by one actor task that drains a queue of typed
events. Network calls, device opens and playback run in spawned tasks that
post their results back as events tagged with the session epoch, so a late
reply after disconnect is dropped rather than applied to a stale session.

Guards:
- ``is_processing_turn`` spans finalize -> end of playback (or failure); a
  second finalize while it is set is a no-op.
- Committed transcripts arriving while ``is_ai_speaking`` are discarded so
  the assistant never answers its own voice.
- A listening period is fully released before the next one starts.
"""

import asyncio
import inspect
import time
from functools import partial
from typing import Any, Callable, Dict, Optional, Set

import structlog
from prometheus_client import Counter, Gauge, Histogram

from openjournal.config.models import AppConfig
from openjournal.core.commit_policy import CommitPolicy, create_commit_policy
from openjournal.core.events import (
    ChannelError,
    ChannelFailed,
    CommittedTranscript,
    DialogueFailed,
    DialogueResponse,
    Disconnect,
    Event,
    ListenRequested,
    ListeningFailed,
    ListeningOpened,
    ManualCommitTimeout,
    PartialTranscript,
    PlaybackEnded,
    SpeakRequested,
    SynthesisFailed,
    SynthesisResponse,
    UserCommitRequested,
)
from openjournal.core.journal import JournalEntry, JournalStore
from openjournal.core.models import (
    AudioResourceSet,
    Session,
    SessionStatus,
    Speaker,
    UpdateCallback,
)
from openjournal.errors import OpenJournalError
from openjournal.logging_config import set_correlation_id
from openjournal.providers.scribe_realtime import CHANNEL_FAILED_MESSAGE, ScribeRealtimeChannel

logger = structlog.get_logger(__name__)

LISTENING_PLACEHOLDER = "Listening..."
PLAYBACK_FAILED_MESSAGE = "Audio playback failed"
LISTEN_START_FAILED_MESSAGE = "Could not start live transcription"
DIALOGUE_FAILED_MESSAGE = "API error"
SYNTHESIS_FAILED_MESSAGE = "Voice API failed"
# Mic chunks buffered ahead of the realtime socket; older backlog is kept, newer chunks dropped.
AUDIO_QUEUE_MAX_CHUNKS = 256

# Prometheus metrics (module-scope, registered once)
_ACTIVE_SESSIONS = Gauge(
    "openjournal_active_sessions",
    "Voice sessions currently connected",
)
_TURNS_TOTAL = Counter(
    "openjournal_turns_total",
    "User turns finalized",
    labelnames=("strategy",),
)
_SELF_ECHO_DISCARDS_TOTAL = Counter(
    "openjournal_self_echo_discards_total",
    "Committed transcripts discarded because the assistant was speaking",
)
_CHANNEL_RECONNECTS_TOTAL = Counter(
    "openjournal_channel_reconnects_total",
    "Automatic re-listen attempts after a realtime channel error",
)
_TURN_LATENCY_SECONDS = Histogram(
    "openjournal_turn_latency_seconds",
    "Time from user turn finalize to assistant text",
    buckets=(0.25, 0.5, 1.0, 2.0, 4.0, 8.0, 16.0, 32.0),
)


class SessionOrchestrator:
    """Owns one voice session at a time and sequences its turn cycle."""

    def __init__(
        self,
        config: AppConfig,
        backend: Any,
        *,
        microphone_factory: Callable[[], Any],
        playback_factory: Callable[[], Any],
        journal: Optional[JournalStore] = None,
        channel_factory: Optional[Callable[..., Any]] = None,
        on_update: Optional[UpdateCallback] = None,
    ):
        """
        Args:
            config: Application config; ``session`` and ``scribe`` sections are used.
            backend: Object exposing ``dialogue``, ``synthesis`` and ``tokens`` clients.
            microphone_factory: Returns a fresh microphone for each listening period.
            playback_factory: Returns the playback context for one session.
            journal: Where a finished session's transcript is saved.
            channel_factory: Builds the realtime transcription channel.
            on_update: Async (or sync) observer receiving update dicts.
        """
        self.config = config
        self._dialogue = backend.dialogue
        self._synthesis = backend.synthesis
        self._tokens = backend.tokens
        self._microphone_factory = microphone_factory
        self._playback_factory = playback_factory
        self._journal = journal
        self._channel_factory = channel_factory or ScribeRealtimeChannel
        self._on_update = on_update

        self.session: Optional[Session] = None
        self._epoch = 0
        self._queue: Optional[asyncio.Queue] = None
        self._actor: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._disconnecting: Optional[asyncio.Future] = None

        self._policy: CommitPolicy = create_commit_policy(False)
        self._commit_timer: Optional[asyncio.TimerHandle] = None

        self._playback = None
        self._playback_task: Optional[asyncio.Task] = None
        self._utterance_seq = 0
        self._current_utterance: Optional[int] = None

        self._handlers = {
            ListenRequested: self._on_listen_requested,
            ListeningOpened: self._on_listening_opened,
            ListeningFailed: self._on_listening_failed,
            PartialTranscript: self._on_partial_transcript,
            CommittedTranscript: self._on_committed_transcript,
            ChannelError: self._on_channel_error,
            ChannelFailed: self._on_channel_failed,
            UserCommitRequested: self._on_user_commit_requested,
            ManualCommitTimeout: self._on_manual_commit_timeout,
            DialogueResponse: self._on_dialogue_response,
            DialogueFailed: self._on_dialogue_failed,
            SpeakRequested: self._on_speak_requested,
            SynthesisResponse: self._on_synthesis_response,
            SynthesisFailed: self._on_synthesis_failed,
            PlaybackEnded: self._on_playback_ended,
        }

    # ------------------------------------------------------------------
    # Public commands
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._actor is not None and not self._actor.done()

    async def connect(self) -> Session:
        if self.is_active:
            logger.warning("Connect ignored; session already active", session_id=self.session.session_id)
            return self.session

        cfg = self.config.session
        self._epoch += 1
        session = Session(
            epoch=self._epoch,
            manual_mode=cfg.manual_mode,
            voice_id=cfg.voice_id,
            system_prompt=cfg.system_prompt,
        )
        self.session = session
        self._policy = create_commit_policy(cfg.manual_mode)
        self._queue = asyncio.Queue()
        self._disconnecting = None
        set_correlation_id(session.session_id)

        logger.info(
            "Session connecting",
            session_id=session.session_id,
            commit_strategy=self._policy.strategy,
            voice_id=session.voice_id,
        )
        session.status = SessionStatus.CONNECTING
        await self._emit_status()

        try:
            self._playback = self._playback_factory()
        except OpenJournalError as e:
            session.status = SessionStatus.ERROR
            session.error_message = e.message
            await self._emit_status()
            raise
        session.status = SessionStatus.CONNECTED
        _ACTIVE_SESSIONS.inc()
        await self._emit_status()

        self._actor = asyncio.create_task(self._run())
        self.post(SpeakRequested(epoch=session.epoch, text=cfg.greeting))
        return session

    def commit_manual(self) -> None:
        """User signalled "done speaking" (manual strategy only)."""
        if self.session is not None and self.is_active:
            self.post(UserCommitRequested(epoch=self.session.epoch))

    async def disconnect(self) -> Optional[JournalEntry]:
        """Tear everything down; return the saved journal entry, if any."""
        if self._disconnecting is not None:
            await asyncio.shield(self._disconnecting)
            return None
        if not self.is_active or self.session is None:
            return None
        loop = asyncio.get_running_loop()
        done = loop.create_future()
        self._disconnecting = done
        self.post(Disconnect(epoch=self.session.epoch, done=done))
        return await asyncio.shield(done)

    def post(self, event: Event) -> None:
        if self._queue is not None:
            self._queue.put_nowait(event)

    def snapshot(self) -> Dict[str, Any]:
        s = self.session
        if s is None:
            return {"status": SessionStatus.DISCONNECTED.value, "transcript": []}
        return {
            "session_id": s.session_id,
            "status": s.status.value,
            "error": s.error_message,
            "transcript": s.transcript_wire(),
            "interim": s.interim_text,
            "manual_mode": s.manual_mode,
            "listening": s.is_listening,
            "ai_speaking": s.is_ai_speaking,
            "processing_turn": s.is_processing_turn,
        }

    # ------------------------------------------------------------------
    # Actor
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        queue = self._queue
        while True:
            event = await queue.get()
            if isinstance(event, Disconnect):
                try:
                    entry = await self._handle_disconnect()
                except Exception as e:
                    logger.error("Disconnect failed", error=str(e), exc_info=True)
                    entry = None
                if event.done is not None and not event.done.done():
                    event.done.set_result(entry)
                return

            session = self.session
            if session is None or event.epoch != session.epoch:
                logger.debug("Dropped stale event", event=type(event).__name__)
                continue

            handler = self._handlers.get(type(event))
            if handler is None:
                logger.warning("No handler for event", event=type(event).__name__)
                continue
            try:
                await handler(event)
            except Exception as e:
                logger.error("Session event handler failed", event=type(event).__name__, error=str(e), exc_info=True)
                await self._fail(str(e) or type(e).__name__)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Observer updates
    # ------------------------------------------------------------------

    async def _emit(self, update: Dict[str, Any]) -> None:
        if self._on_update is None:
            return
        try:
            result = self._on_update(update)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.error("Session observer failed", update_type=update.get("type"), exc_info=True)

    async def _emit_status(self) -> None:
        s = self.session
        await self._emit({"type": "status", "status": s.status.value, "error": s.error_message})

    async def _emit_transcript(self) -> None:
        await self._emit({"type": "transcript", "transcript": self.session.transcript_wire()})

    async def _emit_interim(self) -> None:
        await self._emit({"type": "interim_transcript", "text": self.session.interim_text})

    async def _emit_speaking(self) -> None:
        s = self.session
        await self._emit({"type": "speaking", "user": s.is_listening, "ai": s.is_ai_speaking})

    # ------------------------------------------------------------------
    # Speaking: synthesis + playback
    # ------------------------------------------------------------------

    def _stop_playback(self) -> None:
        task, self._playback_task = self._playback_task, None
        if task is not None and not task.done():
            task.cancel()
        if self._playback is not None:
            self._playback.stop()

    async def _on_speak_requested(self, event: SpeakRequested) -> None:
        s = self.session
        self._stop_playback()
        self._current_utterance = None

        if not event.text.strip():
            s.is_ai_speaking = False
            s.is_processing_turn = False
            await self._start_listening()
            return

        self._utterance_seq += 1
        utterance_id = self._utterance_seq
        self._current_utterance = utterance_id
        s.is_ai_speaking = True
        s.error_message = None
        await self._emit_speaking()
        logger.info("Assistant speaking", utterance_id=utterance_id, preview=event.text[:80])
        self._spawn(self._synthesize(s.epoch, utterance_id, event.text, s.voice_id))

    async def _synthesize(self, epoch: int, utterance_id: int, text: str, voice_id: str) -> None:
        try:
            audio, fmt = await self._synthesis.synthesize(text, voice_id)
        except OpenJournalError as e:
            logger.error("Speech synthesis failed", utterance_id=utterance_id, error=e.message)
            self.post(SynthesisFailed(epoch=epoch, utterance_id=utterance_id, message=e.message))
            return
        except Exception as e:
            logger.error("Speech synthesis crashed", utterance_id=utterance_id, error=str(e), exc_info=True)
            self.post(SynthesisFailed(epoch=epoch, utterance_id=utterance_id, message=SYNTHESIS_FAILED_MESSAGE))
            return
        self.post(SynthesisResponse(epoch=epoch, utterance_id=utterance_id, audio=audio, format=fmt))

    async def _on_synthesis_response(self, event: SynthesisResponse) -> None:
        if event.utterance_id != self._current_utterance:
            return
        self._playback_task = self._spawn(self._play(event.epoch, event.utterance_id, event.audio, event.format))

    async def _play(self, epoch: int, utterance_id: int, audio: bytes, fmt: str) -> None:
        try:
            await self._playback.play(audio, fmt)
        except OpenJournalError as e:
            logger.warning("Playback failed", utterance_id=utterance_id, error=e.message)
            self.post(PlaybackEnded(epoch=epoch, utterance_id=utterance_id, error=PLAYBACK_FAILED_MESSAGE))
            return
        self.post(PlaybackEnded(epoch=epoch, utterance_id=utterance_id))

    async def _on_synthesis_failed(self, event: SynthesisFailed) -> None:
        if event.utterance_id != self._current_utterance:
            return
        self._current_utterance = None
        await self._fail(event.message)

    async def _on_playback_ended(self, event: PlaybackEnded) -> None:
        if event.utterance_id != self._current_utterance:
            return
        s = self.session
        self._current_utterance = None
        self._playback_task = None
        s.is_ai_speaking = False
        s.is_processing_turn = False
        if event.error:
            s.error_message = event.error
            await self._emit_status()
        await self._emit_speaking()

        delay = self.config.session.post_speech_delay_ms / 1000.0
        loop = asyncio.get_running_loop()
        s.cancel_listen_timer()
        s.listen_timer = loop.call_later(delay, self.post, ListenRequested(epoch=s.epoch))
        logger.debug("Listening scheduled", delay_ms=self.config.session.post_speech_delay_ms)

    # ------------------------------------------------------------------
    # Listening periods
    # ------------------------------------------------------------------

    async def _on_listen_requested(self, event: ListenRequested) -> None:
        self.session.listen_timer = None
        await self._start_listening()

    async def _start_listening(self) -> None:
        s = self.session
        if s.status != SessionStatus.CONNECTED:
            return
        if s.is_processing_turn or s.is_listening or s.resources is not None:
            return
        resources = AudioResourceSet()
        s.resources = resources
        resources.open_task = self._spawn(self._open_listening(s.epoch, resources))

    async def _open_listening(self, epoch: int, resources: AudioResourceSet) -> None:
        listen_id = resources.listen_id
        try:
            mic = self._microphone_factory()
            resources.microphone = mic
            queue: asyncio.Queue = asyncio.Queue(maxsize=AUDIO_QUEUE_MAX_CHUNKS)
            resources.audio_queue = queue
            await mic.start(partial(self._enqueue_audio, queue, listen_id))

            token = await self._tokens.fetch_token()

            channel = self._channel_factory(
                self.config.scribe,
                manual_mode=self.session.manual_mode,
                on_event=partial(self._on_channel_event, epoch, listen_id),
            )
            resources.channel = channel
            await channel.open(token)
        except OpenJournalError as e:
            self.post(ListeningFailed(epoch=epoch, listen_id=listen_id, message=e.message or LISTEN_START_FAILED_MESSAGE))
            return
        except Exception as e:
            logger.error("Listening start crashed", listen_id=listen_id, error=str(e), exc_info=True)
            self.post(ListeningFailed(epoch=epoch, listen_id=listen_id, message=LISTEN_START_FAILED_MESSAGE))
            return

        resources.pump_task = asyncio.create_task(self._pump_audio(queue, mic, channel))
        resources.pump_task.add_done_callback(partial(self._on_pump_done, epoch, listen_id))
        self.post(ListeningOpened(epoch=epoch, listen_id=listen_id))

    def _enqueue_audio(self, queue: asyncio.Queue, listen_id: int, chunk) -> None:
        try:
            queue.put_nowait(chunk)
        except asyncio.QueueFull:
            logger.debug("Audio queue full, dropping chunk", listen_id=listen_id)

    async def _pump_audio(self, queue: asyncio.Queue, mic, channel) -> None:
        while True:
            chunk = await queue.get()
            await channel.send_audio(chunk, mic.sample_rate)

    def _on_pump_done(self, epoch: int, listen_id: int, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        error = task.exception()
        logger.error("Audio pump stopped", listen_id=listen_id, error=str(error), exc_info=error)
        self.post(ChannelFailed(epoch=epoch, listen_id=listen_id, message=CHANNEL_FAILED_MESSAGE))

    async def _on_channel_event(self, epoch: int, listen_id: int, event: Dict[str, Any]) -> None:
        kind = event.get("type")
        if kind == "partial_transcript":
            self.post(PartialTranscript(epoch=epoch, listen_id=listen_id, text=event["text"]))
        elif kind == "committed_transcript":
            self.post(CommittedTranscript(epoch=epoch, listen_id=listen_id, text=event["text"]))
        elif kind == "channel_error":
            self.post(ChannelError(epoch=epoch, listen_id=listen_id, kind=event["kind"], message=event["message"]))
        elif kind == "channel_failed":
            self.post(ChannelFailed(epoch=epoch, listen_id=listen_id, message=event["message"]))

    def _is_current(self, listen_id: int) -> bool:
        res = self.session.resources
        return res is not None and res.listen_id == listen_id and not res.released

    async def _on_listening_opened(self, event: ListeningOpened) -> None:
        if not self._is_current(event.listen_id):
            return
        s = self.session
        s.resources.channel_open = True
        s.is_listening = True
        self._policy.reset()
        if s.error_message is not None:
            s.error_message = None
            await self._emit_status()
        s.interim_text = LISTENING_PLACEHOLDER
        await self._emit_interim()
        await self._emit_speaking()
        logger.info("Listening", listen_id=event.listen_id, commit_strategy=self._policy.strategy)

    async def _on_listening_failed(self, event: ListeningFailed) -> None:
        if not self._is_current(event.listen_id):
            return
        logger.error("Listening failed to start", listen_id=event.listen_id, error=event.message)
        await self._fail(event.message)

    async def _teardown_listening(self) -> None:
        s = self.session
        self._cancel_commit_timer()
        res, s.resources = s.resources, None
        was_listening = s.is_listening
        s.is_listening = False
        if res is not None:
            await res.release()
        if was_listening:
            await self._emit_speaking()

    def _cancel_commit_timer(self) -> None:
        timer, self._commit_timer = self._commit_timer, None
        if timer is not None:
            timer.cancel()

    # ------------------------------------------------------------------
    # Transcripts and commits
    # ------------------------------------------------------------------

    async def _on_partial_transcript(self, event: PartialTranscript) -> None:
        if not self._is_current(event.listen_id):
            return
        self.session.interim_text = self._policy.interim_for_partial(event.text)
        await self._emit_interim()

    async def _on_committed_transcript(self, event: CommittedTranscript) -> None:
        if not self._is_current(event.listen_id):
            return
        s = self.session
        text = event.text.strip()
        if not text:
            return
        if s.is_ai_speaking:
            _SELF_ECHO_DISCARDS_TOTAL.inc()
            logger.info("Committed transcript ignored while assistant speaking", preview=text[:50])
            return

        final = self._policy.on_committed(text)
        if final is None:
            if self._policy.is_manual:
                s.interim_text = self._policy.buffered_text
                await self._emit_interim()
                logger.debug("Buffered manual fragment", fragments=len(self._policy.buffer))
            return
        await self._finalize_turn(final)

    async def _on_user_commit_requested(self, event: UserCommitRequested) -> None:
        s = self.session
        res = s.resources
        if not self._policy.is_manual:
            return
        if res is None or not res.channel_open or not s.is_listening:
            return
        if s.is_ai_speaking or s.is_processing_turn:
            return
        commit_id = self._policy.request_commit()
        if commit_id is None:
            logger.debug("Commit already pending")
            return

        await res.channel.send_silence_commit(self.config.session.commit_silence_samples)
        delay = self.config.session.manual_commit_timeout_ms / 1000.0
        loop = asyncio.get_running_loop()
        self._commit_timer = loop.call_later(
            delay, self.post, ManualCommitTimeout(epoch=s.epoch, commit_id=commit_id)
        )
        logger.info("Manual commit requested", buffered=len(self._policy.buffer))

    async def _on_manual_commit_timeout(self, event: ManualCommitTimeout) -> None:
        self._commit_timer = None
        final = self._policy.on_timeout(event.commit_id)
        if final is None:
            logger.debug("Manual commit expired with nothing buffered")
            return
        if self.session.is_ai_speaking:
            _SELF_ECHO_DISCARDS_TOTAL.inc()
            return
        await self._finalize_turn(final)

    async def _finalize_turn(self, text: str) -> None:
        s = self.session
        if s.is_processing_turn or s.is_ai_speaking or s.status != SessionStatus.CONNECTED:
            logger.debug("Finalize ignored", processing=s.is_processing_turn, ai_speaking=s.is_ai_speaking)
            return
        s.is_processing_turn = True
        s.turn_started_ts = time.monotonic()
        self._policy.reset()
        await self._teardown_listening()

        s.append(Speaker.USER, text)
        s.interim_text = ""
        s.channel_retries = 0
        _TURNS_TOTAL.labels(strategy=self._policy.strategy).inc()
        await self._emit_transcript()
        await self._emit_interim()
        logger.info("User turn finalized", preview=text[:80], turns=len(s.transcript))

        self._spawn(self._request_dialogue(s.epoch, s.system_prompt, s.transcript_wire()))

    # ------------------------------------------------------------------
    # Dialogue
    # ------------------------------------------------------------------

    async def _request_dialogue(self, epoch: int, system_prompt: str, messages) -> None:
        try:
            question = await self._dialogue.next_question(system_prompt, messages)
        except OpenJournalError as e:
            logger.error("Dialogue request failed", error=e.message)
            self.post(DialogueFailed(epoch=epoch, message=e.message))
            return
        except Exception as e:
            logger.error("Dialogue request crashed", error=str(e), exc_info=True)
            self.post(DialogueFailed(epoch=epoch, message=DIALOGUE_FAILED_MESSAGE))
            return
        self.post(DialogueResponse(epoch=epoch, text=question))

    async def _on_dialogue_response(self, event: DialogueResponse) -> None:
        s = self.session
        if not s.is_processing_turn:
            return
        if s.turn_started_ts:
            _TURN_LATENCY_SECONDS.observe(time.monotonic() - s.turn_started_ts)
        s.append(Speaker.ASSISTANT, event.text)
        await self._emit_transcript()
        await self._on_speak_requested(SpeakRequested(epoch=event.epoch, text=event.text))

    async def _on_dialogue_failed(self, event: DialogueFailed) -> None:
        if not self.session.is_processing_turn:
            return
        await self._fail(event.message)

    # ------------------------------------------------------------------
    # Channel failures
    # ------------------------------------------------------------------

    async def _on_channel_error(self, event: ChannelError) -> None:
        if not self._is_current(event.listen_id):
            return
        s = self.session
        logger.warning("Realtime channel reported error", kind=event.kind, error=event.message)
        s.error_message = event.message
        await self._emit_status()
        await self._teardown_listening()

        if s.channel_retries >= self.config.session.max_channel_retries:
            await self._fail(event.message)
            return
        s.channel_retries += 1
        _CHANNEL_RECONNECTS_TOTAL.inc()
        await self._start_listening()

    async def _on_channel_failed(self, event: ChannelFailed) -> None:
        if not self._is_current(event.listen_id):
            return
        await self._fail(event.message)

    async def _fail(self, message: str) -> None:
        """Surface a failure: status error, exclusivity released, no auto-resume."""
        s = self.session
        if s is None:
            return
        s.cancel_listen_timer()
        self._stop_playback()
        self._current_utterance = None
        await self._teardown_listening()
        s.is_processing_turn = False
        s.is_ai_speaking = False
        s.interim_text = ""
        s.status = SessionStatus.ERROR
        s.error_message = message
        logger.error("Session error", error=message)
        await self._emit_status()
        await self._emit_speaking()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _handle_disconnect(self) -> Optional[JournalEntry]:
        s = self.session
        if s is None:
            return None
        logger.info("Session disconnecting", session_id=s.session_id, turns=len(s.transcript))

        s.cancel_listen_timer()
        self._cancel_commit_timer()
        self._stop_playback()
        self._current_utterance = None
        self._epoch += 1

        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self._teardown_listening()
        playback, self._playback = self._playback, None
        if playback is not None:
            playback.close()

        s.reset_flags()
        self._policy.reset()
        s.status = SessionStatus.DISCONNECTED
        s.error_message = None
        await self._emit_status()
        await self._emit_speaking()
        _ACTIVE_SESSIONS.dec()

        entry = None
        if s.transcript and self._journal is not None:
            try:
                entry = await self._journal.save_transcript(list(s.transcript))
            except Exception as e:
                logger.error("Failed to save journal entry", error=str(e), exc_info=True)
        self.session = None
        self._queue = None
        logger.info("Session disconnected", session_id=s.session_id, saved_entry=entry.id if entry else None)
        return entry
