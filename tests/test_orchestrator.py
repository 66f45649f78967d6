"""
Tests for the SessionOrchestrator turn cycle.

Everything below the orchestrator is faked (see conftest.py); timers are
real but shortened except where the delay itself is under test.
"""

import asyncio

import pytest

from openjournal.core.events import DialogueResponse, SpeakRequested
from openjournal.core.orchestrator import LISTENING_PLACEHOLDER, PLAYBACK_FAILED_MESSAGE
from openjournal.errors import ResourceError, UpstreamError
from openjournal.providers.scribe_realtime import CHANNEL_FAILED_MESSAGE


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.2fs" % timeout)
        await asyncio.sleep(interval)


async def settle(seconds: float = 0.05) -> None:
    await asyncio.sleep(seconds)


class TestConnect:
    @pytest.mark.asyncio
    async def test_greeting_is_spoken_but_not_recorded(self, harness):
        await harness.orch.connect()
        await wait_until(lambda: harness.playback.played)

        greeting = harness.config.session.greeting
        assert harness.backend.synthesis.calls[0] == (greeting, harness.config.session.voice_id)
        assert harness.statuses()[:2] == ["connecting", "connected"]
        assert harness.transcript() == []

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_listening_starts_after_greeting(self, harness):
        channel = await harness.connect_and_listen()

        assert channel.token == "token-1"
        assert channel.manual_mode is False
        assert harness.session.interim_text == LISTENING_PLACEHOLDER
        assert harness.orch.snapshot()["listening"] is True

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_microphone_audio_is_forwarded(self, harness):
        channel = await harness.connect_and_listen()

        harness.microphones[-1].push([0.1, 0.2])
        await wait_until(lambda: channel.audio)
        assert channel.audio[0] == ([0.1, 0.2], 48000)

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_playback_context_failure_raises(self, harness):
        def broken():
            raise ResourceError("no audio output")

        harness.orch._playback_factory = broken
        with pytest.raises(ResourceError):
            await harness.orch.connect()
        assert harness.statuses()[-1] == "error"
        assert harness.orch.is_active is False


class TestTurnCycle:
    @pytest.mark.asyncio
    async def test_end_to_end_vad_turn(self, make_harness):
        h = make_harness(post_speech_delay_ms=700)
        h.backend.dialogue.replies = ["What made it hard?"]
        channel = await h.connect_and_listen()

        await channel.committed("I had a hard day")
        await wait_until(lambda: len(h.transcript()) == 2)

        prompt, messages = h.backend.dialogue.calls[0]
        assert prompt == h.config.session.system_prompt
        assert messages == [{"role": "user", "text": "I had a hard day"}]
        assert h.transcript()[1] == {"role": "ai", "text": "What made it hard?"}
        assert [c[0] for c in h.backend.synthesis.calls][-1] == "What made it hard?"

        await wait_until(lambda: len(h.playback.ended_at) == 2)
        ended = h.playback.ended_at[-1]
        await wait_until(lambda: h.session.is_listening, timeout=3.0)

        resumed = [
            t for t, u in zip(h.update_times, h.updates)
            if u["type"] == "speaking" and u["user"] and t >= ended
        ]
        assert resumed and resumed[0] - ended >= 0.69
        assert len(h.channels) == 2
        assert h.channels[0].closed is True

        await h.orch.disconnect()

    @pytest.mark.asyncio
    async def test_only_one_turn_in_flight(self, harness):
        gate = asyncio.Event()
        harness.backend.dialogue.gate = gate
        channel = await harness.connect_and_listen()

        await channel.committed("first thought")
        await channel.committed("second thought")
        await wait_until(lambda: harness.backend.dialogue.calls)
        await settle()

        assert len(harness.backend.dialogue.calls) == 1
        assert harness.transcript() == [{"role": "user", "text": "first thought"}]
        assert harness.session.is_processing_turn is True
        assert harness.session.is_listening is False

        gate.set()
        await wait_until(lambda: len(harness.backend.synthesis.calls) == 2)
        await settle()
        assert len(harness.backend.dialogue.calls) == 1
        assert len(harness.backend.synthesis.calls) == 2

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_committed_text_while_assistant_speaks_is_discarded(self, harness):
        channel = await harness.connect_and_listen()
        harness.playback.gate = asyncio.Event()

        harness.orch.post(SpeakRequested(epoch=harness.session.epoch, text="One moment."))
        await wait_until(lambda: harness.session.is_ai_speaking)
        await channel.committed("One moment.")
        await settle()

        assert harness.transcript() == []
        assert harness.backend.dialogue.calls == []
        assert harness.session.is_processing_turn is False

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_partial_transcript_updates_interim(self, harness):
        channel = await harness.connect_and_listen()

        await channel.partial("I went for")
        await wait_until(lambda: harness.session.interim_text == "I went for")
        assert harness.updates[-1] == {"type": "interim_transcript", "text": "I went for"}

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_unknown_channel_event_changes_nothing(self, harness):
        channel = await harness.connect_and_listen()
        before = harness.orch.snapshot()

        await channel.emit({"type": "session_started"})
        await channel.committed("   ")
        await settle()

        assert harness.orch.snapshot() == before

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_empty_reply_resumes_listening(self, harness):
        harness.backend.dialogue.replies = ["   "]
        channel = await harness.connect_and_listen()

        await channel.committed("hello")
        await wait_until(lambda: len(harness.channels) == 2 and harness.session.is_listening)
        assert len(harness.backend.synthesis.calls) == 1

        await harness.orch.disconnect()


class TestManualCommit:
    @pytest.mark.asyncio
    async def test_fragments_buffer_until_timeout(self, make_harness):
        h = make_harness(manual_mode=True, manual_commit_timeout_ms=1500)
        channel = await h.connect_and_listen()
        assert channel.manual_mode is True

        await channel.committed("I felt okay")
        await wait_until(lambda: h.session.interim_text == "I felt okay")
        assert h.transcript() == []

        h.orch.commit_manual()
        await wait_until(lambda: channel.commits)
        assert channel.commits == [h.config.session.commit_silence_samples]

        await asyncio.sleep(0.5)
        assert h.transcript() == []

        await wait_until(lambda: h.transcript(), timeout=2.0)
        assert h.transcript()[0] == {"role": "user", "text": "I felt okay"}

        await h.orch.disconnect()

    @pytest.mark.asyncio
    async def test_fragment_after_commit_finalizes_immediately(self, make_harness):
        h = make_harness(manual_mode=True, manual_commit_timeout_ms=5000)
        channel = await h.connect_and_listen()

        await channel.committed("part one")
        await wait_until(lambda: h.session.interim_text == "part one")
        h.orch.commit_manual()
        await wait_until(lambda: channel.commits)
        await channel.committed("part two")

        await wait_until(lambda: h.transcript(), timeout=1.0)
        assert h.transcript()[0]["text"] == "part one part two"

        await h.orch.disconnect()

    @pytest.mark.asyncio
    async def test_timeout_with_empty_buffer_keeps_listening(self, make_harness):
        h = make_harness(manual_mode=True)
        channel = await h.connect_and_listen()

        h.orch.commit_manual()
        await wait_until(lambda: channel.commits)
        await settle(0.15)

        assert h.transcript() == []
        assert h.session.is_listening is True
        assert h.orch._policy.pending is False
        assert channel.closed is False
        assert h.backend.dialogue.calls == []

        await h.orch.disconnect()

    @pytest.mark.asyncio
    async def test_second_commit_request_is_ignored(self, make_harness):
        h = make_harness(manual_mode=True, manual_commit_timeout_ms=5000)
        channel = await h.connect_and_listen()

        h.orch.commit_manual()
        h.orch.commit_manual()
        await wait_until(lambda: channel.commits)
        await settle()
        assert len(channel.commits) == 1

        await h.orch.disconnect()

    @pytest.mark.asyncio
    async def test_commit_request_ignored_in_vad_mode(self, harness):
        channel = await harness.connect_and_listen()

        harness.orch.commit_manual()
        await settle()
        assert channel.commits == []

        await harness.orch.disconnect()


class TestFailures:
    @pytest.mark.asyncio
    async def test_channel_error_relistens_once_then_fails(self, harness):
        channel = await harness.connect_and_listen()

        await channel.error("auth_error", "Token expired")
        await wait_until(lambda: len(harness.channels) == 2 and harness.session.is_listening)
        assert channel.closed is True
        assert harness.session.status.value == "connected"
        assert harness.backend.tokens.calls == 2

        await harness.channel.error("auth_error", "Token expired")
        await wait_until(lambda: harness.session.status.value == "error")
        await settle()

        assert len(harness.channels) == 2
        assert harness.session.error_message == "Token expired"
        assert harness.session.is_listening is False

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_events_from_released_channel_are_ignored(self, harness):
        first = await harness.connect_and_listen()

        await first.error("error", "hiccup")
        await wait_until(lambda: len(harness.channels) == 2 and harness.session.is_listening)
        await first.committed("stale words")
        await settle()

        assert harness.transcript() == []

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_socket_failure_sets_error(self, harness):
        channel = await harness.connect_and_listen()

        await channel.emit({"type": "channel_failed", "message": "Live transcription connection lost"})
        await wait_until(lambda: harness.session.status.value == "error")
        assert harness.session.error_message == "Live transcription connection lost"
        assert channel.closed is True

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_token_failure_sets_error(self, harness):
        harness.backend.tokens.error = UpstreamError("ELEVENLABS_API_KEY is not configured")
        await harness.orch.connect()

        await wait_until(lambda: harness.session.status.value == "error")
        assert harness.session.error_message == "ELEVENLABS_API_KEY is not configured"
        assert harness.microphones[0].closed is True

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_microphone_failure_sets_error(self, make_harness):
        h = make_harness(mic_fail=True)
        await h.orch.connect()

        await wait_until(lambda: h.session.status.value == "error")
        assert "Microphone" in h.session.error_message
        assert h.channels == []

        await h.orch.disconnect()

    @pytest.mark.asyncio
    async def test_dialogue_failure_sets_error_without_resuming(self, harness):
        harness.backend.dialogue.error = UpstreamError("OpenRouter request failed (502)")
        channel = await harness.connect_and_listen()

        await channel.committed("hello there")
        await wait_until(lambda: harness.session.status.value == "error")
        await settle(0.1)

        assert harness.session.error_message == "OpenRouter request failed (502)"
        assert harness.session.is_processing_turn is False
        assert len(harness.channels) == 1
        assert harness.transcript() == [{"role": "user", "text": "hello there"}]

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_synthesis_failure_sets_error(self, harness):
        harness.backend.synthesis.error = UpstreamError("Voice API failed")
        await harness.orch.connect()

        await wait_until(lambda: harness.session.status.value == "error")
        await settle(0.05)
        assert harness.session.error_message == "Voice API failed"
        assert harness.session.is_ai_speaking is False
        assert harness.channels == []

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_playback_failure_continues_the_loop(self, make_harness):
        h = make_harness(playback_fail=True)
        await h.orch.connect()

        await wait_until(lambda: h.session is not None and h.session.is_listening)
        errors = [u["error"] for u in h.updates if u["type"] == "status"]
        assert PLAYBACK_FAILED_MESSAGE in errors
        assert h.session.status.value == "connected"
        assert h.session.error_message is None

        await h.orch.disconnect()

    @pytest.mark.asyncio
    async def test_audio_send_crash_sets_error(self, harness):
        channel = await harness.connect_and_listen()
        channel.send_error = RuntimeError("socket buffer exploded")

        harness.microphones[-1].push([0.1, 0.2])
        await wait_until(lambda: harness.session.status.value == "error")
        assert harness.session.error_message == CHANNEL_FAILED_MESSAGE
        assert harness.session.is_listening is False
        assert channel.closed is True

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_audio_backlog_drops_newest_chunks(self, harness):
        queue = asyncio.Queue(maxsize=2)
        for chunk in ("a", "b", "c"):
            harness.orch._enqueue_audio(queue, 1, chunk)

        assert queue.qsize() == 2
        assert [queue.get_nowait(), queue.get_nowait()] == ["a", "b"]


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_saves_one_entry(self, harness):
        harness.backend.dialogue.replies = ["Why was it good?"]
        channel = await harness.connect_and_listen()
        await channel.committed("Today was good")
        await wait_until(lambda: len(harness.transcript()) == 2)

        entry = await harness.orch.disconnect()

        assert entry is not None
        assert entry.full_transcript == [
            {"role": "user", "text": "Today was good"},
            {"role": "ai", "text": "Why was it good?"},
        ]
        assert entry.preview == "Today was good Why was it good?"
        stored = await harness.journal.list()
        assert [e.id for e in stored] == [entry.id]
        assert harness.orch.session is None
        assert harness.playback.closed is True
        assert channel.closed is True
        assert harness.statuses()[-1] == "disconnected"

    @pytest.mark.asyncio
    async def test_double_disconnect_saves_once(self, harness):
        channel = await harness.connect_and_listen()
        await channel.committed("only line")
        await wait_until(lambda: harness.transcript())

        first, second = await asyncio.gather(harness.orch.disconnect(), harness.orch.disconnect())
        third = await harness.orch.disconnect()

        assert first is not None
        assert second is None
        assert third is None
        assert len(await harness.journal.list()) == 1

    @pytest.mark.asyncio
    async def test_disconnect_without_session(self, harness):
        assert await harness.orch.disconnect() is None
        assert await harness.journal.list() == []

    @pytest.mark.asyncio
    async def test_empty_session_saves_nothing(self, harness):
        await harness.connect_and_listen()

        assert await harness.orch.disconnect() is None
        assert await harness.journal.list() == []

    @pytest.mark.asyncio
    async def test_late_reply_from_old_session_is_dropped(self, harness):
        await harness.connect_and_listen()
        old_epoch = harness.session.epoch
        await harness.orch.disconnect()

        await harness.connect_and_listen()
        harness.session.is_processing_turn = True
        harness.orch.post(DialogueResponse(epoch=old_epoch, text="stale question"))
        await settle()

        assert harness.transcript() == []
        assert "stale question" not in [c[0] for c in harness.backend.synthesis.calls]
        harness.session.is_processing_turn = False

        await harness.orch.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_dialogue(self, harness):
        harness.backend.dialogue.gate = asyncio.Event()
        channel = await harness.connect_and_listen()
        await channel.committed("thinking out loud")
        await wait_until(lambda: harness.backend.dialogue.calls)

        entry = await harness.orch.disconnect()
        harness.backend.dialogue.gate.set()
        await settle()

        assert entry.full_transcript == [{"role": "user", "text": "thinking out loud"}]
        assert harness.orch.session is None
        assert len(harness.backend.synthesis.calls) == 1

    @pytest.mark.asyncio
    async def test_disconnect_during_reply_playback_stops_it(self, harness):
        channel = await harness.connect_and_listen()
        harness.playback.gate = asyncio.Event()
        await channel.committed("A long day")
        await wait_until(lambda: len(harness.playback.played) == 2)
        assert harness.session.is_ai_speaking is True
        stops_before = harness.playback.stops

        entry = await harness.orch.disconnect()
        assert harness.playback.stops > stops_before
        assert harness.playback.closed is True

        harness.playback.gate.set()
        await settle(0.1)

        assert len(harness.playback.ended_at) == 1
        assert len(harness.channels) == 1
        assert len(harness.microphones) == 1
        assert harness.orch.session is None
        assert entry.full_transcript == [
            {"role": "user", "text": "A long day"},
            {"role": "ai", "text": "Tell me more."},
        ]

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_manual_commit(self, make_harness):
        h = make_harness(manual_mode=True, manual_commit_timeout_ms=200)
        channel = await h.connect_and_listen()

        await channel.committed("half a thought")
        await wait_until(lambda: h.session.interim_text == "half a thought")
        h.orch.commit_manual()
        await wait_until(lambda: channel.commits)

        entry = await h.orch.disconnect()
        await settle(0.4)

        assert entry is None
        assert h.backend.dialogue.calls == []
        assert await h.journal.list() == []
        assert h.orch.session is None
        assert h.orch._commit_timer is None
