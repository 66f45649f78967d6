"""
Turn commit policies.

Decide when committed transcript fragments become a finalized user turn.
The policies hold no I/O: the orchestrator owns sockets, timers and the
self-echo guard, and feeds fragments / commit requests / timeouts in here.

- VAD: the realtime service detects end of speech; every committed fragment
  is final immediately.
- Manual: fragments are buffered until the user asks to commit. A commit
  request arms a pending flag (the orchestrator sends a flush chunk and
  starts a deadline timer). The next fragment, or the deadline, finalizes
  whatever is buffered. An empty buffer at the deadline finalizes nothing.
"""

from abc import ABC, abstractmethod
from typing import List, Optional


class CommitPolicy(ABC):
    """Common interface for both commit strategies."""

    strategy: str = ""

    @property
    def is_manual(self) -> bool:
        return self.strategy == "manual"

    @abstractmethod
    def on_committed(self, text: str) -> Optional[str]:
        """Feed one committed fragment; return the finalized turn text, if any."""

    def interim_for_partial(self, partial: str) -> str:
        return partial

    def request_commit(self) -> Optional[int]:
        """Arm a pending commit; return its id, or None when not applicable."""
        return None

    def on_timeout(self, commit_id: int) -> Optional[str]:
        return None

    @property
    def pending(self) -> bool:
        return False

    def reset(self) -> None:
        pass


class VadCommitPolicy(CommitPolicy):
    strategy = "vad"

    def on_committed(self, text: str) -> Optional[str]:
        text = (text or "").strip()
        return text or None


class ManualCommitPolicy(CommitPolicy):
    strategy = "manual"

    def __init__(self) -> None:
        self.buffer: List[str] = []
        self._pending = False
        self._commit_id = 0

    @property
    def pending(self) -> bool:
        return self._pending

    @property
    def buffered_text(self) -> str:
        return " ".join(self.buffer)

    def on_committed(self, text: str) -> Optional[str]:
        text = (text or "").strip()
        if not text:
            return None
        self.buffer.append(text)
        if self._pending:
            return self._finalize()
        return None

    def interim_for_partial(self, partial: str) -> str:
        if self.buffer:
            return f"{self.buffered_text} {partial}"
        return partial

    def request_commit(self) -> Optional[int]:
        # A second request while one is in flight is ignored
        if self._pending:
            return None
        self._pending = True
        self._commit_id += 1
        return self._commit_id

    def on_timeout(self, commit_id: int) -> Optional[str]:
        if not self._pending or commit_id != self._commit_id:
            return None
        if self.buffer:
            return self._finalize()
        self._pending = False
        return None

    def reset(self) -> None:
        self.buffer.clear()
        self._pending = False

    def _finalize(self) -> str:
        text = self.buffered_text
        self.buffer.clear()
        self._pending = False
        return text


def create_commit_policy(manual_mode: bool) -> CommitPolicy:
    return ManualCommitPolicy() if manual_mode else VadCommitPolicy()
