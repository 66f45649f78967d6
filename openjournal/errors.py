"""
Error taxonomy shared by the voice client and the backend proxy.

Configuration errors are fatal to a request and never retried. Validation
errors are rejected immediately. Upstream and malformed-response errors are
surfaced to the user without automatic retry. Transport errors on the
realtime channel get one automatic re-listen from the orchestrator.
Resource errors (microphone, audio output) end the current session.
"""

from typing import Optional


class OpenJournalError(Exception):
    """Base class for all OpenJournal errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(OpenJournalError):
    """A required credential or setting is missing."""


class InvalidRequestError(OpenJournalError):
    """Client input is malformed or missing required fields."""


class UpstreamError(OpenJournalError):
    """A remote service answered with a non-2xx status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    def __str__(self) -> str:
        return self.message


class MalformedResponseError(OpenJournalError):
    """A remote service answered 2xx but the body is unusable."""


class TransportError(OpenJournalError):
    """The realtime transcription channel failed at the socket level."""


class ResourceError(OpenJournalError):
    """A local audio device could not be opened."""
