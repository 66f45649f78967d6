"""
Journal persistence layer.

Saved sessions live as one JSON list (most recent first) under a single key
of a small SQLite key-value table. Corrupt or missing data loads as an empty
list; the store never raises to callers on read.
"""

import asyncio
import json
import os
import random
import sqlite3
import string
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import structlog

from openjournal.core.models import TranscriptEntry

logger = structlog.get_logger(__name__)

STORAGE_KEY = "openjournal-history"
PREVIEW_MAX_LEN = 100

_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_entry_id(now_ms: Optional[int] = None) -> str:
    """``entry-<epoch ms>-<7 base36 chars>``."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"entry-{now_ms}-{suffix}"


def transcript_preview(messages: Sequence[Dict[str, str]], max_len: int = PREVIEW_MAX_LEN) -> str:
    text = " ".join(m.get("text", "") for m in messages)
    if len(text) <= max_len:
        return text
    return text[:max_len].strip() + "…"


def format_entry_date(iso_date: str) -> str:
    """``OCT 18, 2026`` style display date; the raw value if unparseable."""
    try:
        d = datetime.fromisoformat(iso_date.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return iso_date
    return f"{d.strftime('%b').upper()} {d.day}, {d.year}"


@dataclass
class JournalEntry:
    """One saved session."""
    id: str
    date: str
    preview: str
    full_transcript: List[Dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_transcript(cls, transcript: Sequence[TranscriptEntry]) -> "JournalEntry":
        messages = [entry.to_wire() for entry in transcript]
        now = datetime.now(timezone.utc)
        return cls(
            id=generate_entry_id(int(now.timestamp() * 1000)),
            date=now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            preview=transcript_preview(messages),
            full_transcript=messages,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the stored JSON shape."""
        return {
            "id": self.id,
            "date": self.date,
            "preview": self.preview,
            "fullTranscript": list(self.full_transcript),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JournalEntry":
        transcript = data.get("fullTranscript")
        if not isinstance(transcript, list):
            transcript = []
        return cls(
            id=str(data["id"]),
            date=str(data.get("date", "")),
            preview=str(data.get("preview", "")),
            full_transcript=[m for m in transcript if isinstance(m, dict)],
        )

    @property
    def display_date(self) -> str:
        return format_entry_date(self.date)

    @property
    def export_filename(self) -> str:
        return f"Journal_Entry_{self.date[:10]}.txt"

    @property
    def reformatted_filename(self) -> str:
        return f"Journal_Entry_Reformatted_{self.date[:10]}.txt"

    def export_text(self) -> str:
        """Plain-text export: display date, blank line, one line per message."""
        lines = [self.display_date, ""]
        for msg in self.full_transcript:
            prefix = "You" if msg.get("role") == "user" else "AI"
            lines.append(f"{prefix}: {msg.get('text', '')}")
        return "\n".join(lines)


class JournalStore:
    """SQLite-backed key-value journal storage."""

    _CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS kv_store (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize journal store.

        Args:
            db_path: Path to SQLite database file. Defaults to data/journal.db
        """
        self._db_path = db_path or os.getenv("OPENJOURNAL_JOURNAL_DB", "data/journal.db")
        self._lock = threading.RLock()
        self._init_db()

    @property
    def db_path(self) -> str:
        return self._db_path

    def _init_db(self) -> None:
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            Path(db_dir).mkdir(parents=True, exist_ok=True)
        with self._lock:
            conn = sqlite3.connect(self._db_path)
            try:
                conn.execute(self._CREATE_TABLE_SQL)
                conn.commit()
            finally:
                conn.close()
        logger.debug("Journal database initialized", db_path=self._db_path)

    def _read_sync(self) -> List[JournalEntry]:
        with self._lock:
            conn = sqlite3.connect(self._db_path)
            try:
                row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (STORAGE_KEY,)).fetchone()
            except sqlite3.Error as e:
                logger.warning("Failed to read journal history", error=str(e))
                return []
            finally:
                conn.close()
        if not row:
            return []
        try:
            parsed = json.loads(row[0])
        except (TypeError, ValueError):
            logger.warning("Journal history is corrupt; treating as empty", db_path=self._db_path)
            return []
        if not isinstance(parsed, list):
            return []
        entries = []
        for item in parsed:
            try:
                entries.append(JournalEntry.from_dict(item))
            except (KeyError, TypeError, AttributeError):
                logger.debug("Skipping malformed journal entry")
        return entries

    def _write_sync(self, entries: List[JournalEntry]) -> None:
        payload = json.dumps([e.to_dict() for e in entries], ensure_ascii=False)
        with self._lock:
            conn = sqlite3.connect(self._db_path)
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)",
                    (STORAGE_KEY, payload),
                )
                conn.commit()
            finally:
                conn.close()

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def list(self) -> List[JournalEntry]:
        """All entries, most recent first."""
        return await self._run(self._read_sync)

    async def get(self, entry_id: str) -> Optional[JournalEntry]:
        for entry in await self.list():
            if entry.id == entry_id:
                return entry
        return None

    async def save_transcript(self, transcript: Sequence[TranscriptEntry]) -> Optional[JournalEntry]:
        """Prepend a new entry for ``transcript``; None when it is empty."""
        if not transcript:
            return None
        entry = JournalEntry.from_transcript(transcript)

        def _save_sync():
            with self._lock:
                self._write_sync([entry] + self._read_sync())

        await self._run(_save_sync)
        logger.info("Journal entry saved", entry_id=entry.id, messages=len(entry.full_transcript))
        return entry

    async def delete(self, entry_id: str) -> bool:
        def _delete_sync():
            with self._lock:
                entries = self._read_sync()
                kept = [e for e in entries if e.id != entry_id]
                if len(kept) == len(entries):
                    return False
                self._write_sync(kept)
                return True

        deleted = await self._run(_delete_sync)
        if deleted:
            logger.info("Journal entry deleted", entry_id=entry_id)
        return deleted

    async def clear(self) -> None:
        await self._run(self._write_sync, [])
        logger.info("Journal history cleared")
