"""OpenJournal: voice journaling client and backend proxy."""

__version__ = "0.1.0"
