"""Exceptions raised by the intelligence layer."""
from __future__ import annotations

from typing import Any


class IntelligenceError(Exception):
    """Base class for every error surfaced by the intelligence layer."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SourceUnavailable(IntelligenceError):
    """A record-store read, dossier read or dossier rebuild failed (or timed out)."""


class InvalidSection(IntelligenceError):
    """The requested section name is not one of the twelve known sections."""


class RebuildConflict(IntelligenceError):
    """Another writer persisted a dossier version for the same company first."""
