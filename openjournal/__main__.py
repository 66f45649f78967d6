"""
OpenJournal command line.

    openjournal serve                  run the backend proxy
    openjournal session [--manual]     start a voice journaling session
    openjournal journal list|show|export|delete|clear|reformat
    openjournal voices                 list selectable voices
    openjournal transcribe FILE.wav    one-shot batch transcription
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from dotenv import load_dotenv

from openjournal.audio.codec import decode_wav_to_float, encode_audio_buffer_to_wav
from openjournal.audio.devices import SoundDeviceMicrophone, SoundDevicePlayback
from openjournal.config.models import AppConfig, load_config, validate_config
from openjournal.core.journal import JournalEntry, JournalStore
from openjournal.core.orchestrator import SessionOrchestrator
from openjournal.errors import OpenJournalError
from openjournal.logging_config import configure_logging
from openjournal.providers.backend import (
    BackendClients,
    BatchTranscriptionClient,
    ReformatClient,
    VoicesClient,
)

logger = structlog.get_logger(__name__)


def _print(text: str = "") -> None:
    sys.stdout.write(text + "\n")
    sys.stdout.flush()


# ----------------------------------------------------------------------
# session
# ----------------------------------------------------------------------

class ConsoleView:
    """Renders orchestrator updates to the terminal."""

    def __init__(self):
        self._printed = 0
        self._last_interim = ""

    def __call__(self, update: Dict[str, Any]) -> None:
        kind = update.get("type")
        if kind == "status":
            line = f"[{update['status']}]"
            if update.get("error"):
                line += f" {update['error']}"
            _print(line)
        elif kind == "transcript":
            entries = update.get("transcript", [])
            for entry in entries[self._printed:]:
                prefix = "You" if entry["role"] == "user" else "AI"
                _print(f"{prefix}: {entry['text']}")
            self._printed = len(entries)
        elif kind == "interim_transcript":
            text = update.get("text", "")
            if text and text != self._last_interim:
                _print(f"  ... {text}")
            self._last_interim = text


def _on_stdin_line(orchestrator: SessionOrchestrator, shutdown: asyncio.Event) -> None:
    line = sys.stdin.readline()
    if not line or line.strip().lower() in ("q", "quit", "exit"):
        shutdown.set()
        return
    orchestrator.commit_manual()


async def run_session(config: AppConfig) -> int:
    errors, warnings = validate_config(config)
    for warning in warnings:
        logger.warning("Configuration warning", detail=warning)
    if errors:
        for error in errors:
            logger.error("Configuration error", detail=error)
        return 2

    backend = BackendClients(config.backend.base_url, timeout_sec=config.backend.request_timeout_sec)
    journal = JournalStore(config.journal.db_path)
    audio = config.audio
    orchestrator = SessionOrchestrator(
        config,
        backend,
        microphone_factory=lambda: SoundDeviceMicrophone(block_size=audio.block_size, device=audio.input_device),
        playback_factory=lambda: SoundDevicePlayback(fallback_player=audio.fallback_player, device=audio.output_device),
        journal=journal,
        on_update=ConsoleView(),
    )

    try:
        await orchestrator.connect()
    except OpenJournalError as e:
        _print(f"Could not start session: {e.message}")
        await backend.close()
        return 1

    hint = "Press Enter when done speaking, q to finish." if config.session.manual_mode else "Type q to finish."
    _print(hint)

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)
    loop.add_reader(sys.stdin, _on_stdin_line, orchestrator, shutdown)
    try:
        await shutdown.wait()
    finally:
        loop.remove_reader(sys.stdin)
        entry = await orchestrator.disconnect()
        await backend.close()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    if entry is not None:
        _print(f"Saved journal entry {entry.id} ({entry.display_date})")
    return 0


# ----------------------------------------------------------------------
# journal
# ----------------------------------------------------------------------

async def _require_entry(store: JournalStore, entry_id: str) -> Optional[JournalEntry]:
    entry = await store.get(entry_id)
    if entry is None:
        _print(f"No journal entry with id {entry_id}")
    return entry


async def run_journal(config: AppConfig, args: argparse.Namespace) -> int:
    store = JournalStore(config.journal.db_path)
    action = args.journal_command

    if action == "list":
        entries = await store.list()
        if not entries:
            _print("No journal entries yet.")
        for entry in entries:
            _print(f"{entry.id}  {entry.display_date:<14}  {entry.preview}")
        return 0

    if action == "clear":
        await store.clear()
        _print("Journal cleared.")
        return 0

    if action == "delete":
        removed = await store.delete(args.entry_id)
        _print("Deleted." if removed else f"No journal entry with id {args.entry_id}")
        return 0 if removed else 1

    entry = await _require_entry(store, args.entry_id)
    if entry is None:
        return 1

    if action == "show":
        _print(entry.export_text())
        return 0

    if action == "export":
        out = Path(args.out or entry.export_filename)
        out.write_text(entry.export_text(), encoding="utf-8")
        _print(f"Wrote {out}")
        return 0

    if action == "reformat":
        client = ReformatClient(config.backend.base_url, timeout_sec=config.backend.request_timeout_sec)
        try:
            text = await client.reformat(entry.full_transcript)
        finally:
            await client.close()
        if args.out or args.save:
            out = Path(args.out or entry.reformatted_filename)
            out.write_text(text, encoding="utf-8")
            _print(f"Wrote {out}")
        else:
            _print(text)
        return 0

    return 2


# ----------------------------------------------------------------------
# voices / transcribe
# ----------------------------------------------------------------------

async def run_voices(config: AppConfig) -> int:
    client = VoicesClient(config.backend.base_url, timeout_sec=config.backend.request_timeout_sec)
    try:
        voices = await client.list_voices()
    finally:
        await client.close()
    for voice in voices:
        marker = "*" if voice.voice_id == config.session.voice_id else " "
        _print(f"{marker} {voice.voice_id}  {voice.name}")
    return 0


async def run_transcribe(config: AppConfig, path: str) -> int:
    samples, rate = decode_wav_to_float(Path(path).read_bytes())
    wav = encode_audio_buffer_to_wav(samples, rate)
    client = BatchTranscriptionClient(config.backend.base_url, timeout_sec=config.backend.request_timeout_sec)
    try:
        text = await client.transcribe(wav)
    finally:
        await client.close()
    _print(text)
    return 0


# ----------------------------------------------------------------------
# entry point
# ----------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="openjournal", description="Voice journaling with an AI interviewer")
    parser.add_argument("--config", default="config/openjournal.yaml", help="Path to YAML config")
    parser.add_argument("--log-level", default=None, help="Override logging.level from config")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the backend proxy")

    session = sub.add_parser("session", help="Start a voice journaling session")
    session.add_argument("--manual", action="store_true", help="Commit turns by pressing Enter")
    session.add_argument("--voice", help="Synthesis voice id")
    session.add_argument("--prompt", help="Interviewer system prompt")

    journal = sub.add_parser("journal", help="Manage saved journal entries")
    jsub = journal.add_subparsers(dest="journal_command", required=True)
    jsub.add_parser("list", help="List entries, newest first")
    jsub.add_parser("clear", help="Delete every entry")
    for name, help_text in (("show", "Print one entry"), ("delete", "Delete one entry")):
        p = jsub.add_parser(name, help=help_text)
        p.add_argument("entry_id")
    export = jsub.add_parser("export", help="Write one entry as plain text")
    export.add_argument("entry_id")
    export.add_argument("--out", help="Output file (default Journal_Entry_<date>.txt)")
    reformat = jsub.add_parser("reformat", help="Rewrite one entry as a diary entry")
    reformat.add_argument("entry_id")
    reformat.add_argument("--out", help="Write to file instead of stdout")
    reformat.add_argument("--save", action="store_true", help="Write to Journal_Entry_Reformatted_<date>.txt")

    sub.add_parser("voices", help="List selectable voices")

    transcribe = sub.add_parser("transcribe", help="Transcribe a WAV file")
    transcribe.add_argument("file")
    return parser


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    if args.command != "session":
        return config
    session = config.session
    if args.manual:
        session.manual_mode = True
    if args.voice:
        session.voice_id = args.voice
    if args.prompt:
        session.system_prompt = args.prompt
    return config


async def _dispatch(config: AppConfig, args: argparse.Namespace) -> int:
    if args.command == "session":
        return await run_session(config)
    if args.command == "journal":
        return await run_journal(config, args)
    if args.command == "voices":
        return await run_voices(config)
    if args.command == "transcribe":
        return await run_transcribe(config, args.file)
    return 2


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    config = _apply_overrides(load_config(args.config), args)
    configure_logging(
        log_level=(args.log_level or config.logging.level).upper(),
        log_format=config.logging.format,
        log_file=config.logging.file,
    )

    if args.command == "serve":
        from openjournal.server.main import run_server
        try:
            run_server(config)
        except OpenJournalError as e:
            _print(f"Error: {e.message}")
            return 2
        return 0

    try:
        return asyncio.run(_dispatch(config, args))
    except OpenJournalError as e:
        _print(f"Error: {e.message}")
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
