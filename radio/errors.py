"""Exception types raised by the playback engine."""
from __future__ import annotations

from enum import Enum, auto


class RadioError(Exception):
    """Base class for every playback engine failure."""


class ResolutionError(RadioError):
    """The media resolver could not produce a stream. Retryable."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(message)
        self.url = url
        self.message = message


class ConnectionFailure(RadioError):
    """Voice output could not be established. Never retried automatically."""


class EmptyPoolReason(Enum):
    NO_LISTENERS = auto()
    EMPTY_LIBRARY = auto()
    ALL_FAILED = auto()


class EmptyPoolError(RadioError):
    """No candidates are available for radio or discovery selection."""

    def __init__(self, reason: EmptyPoolReason, message: str = "") -> None:
        super().__init__(message or reason.name.lower())
        self.reason = reason


class MalformedTrackError(RadioError):
    """A track violates the Track contract (e.g. it has no url)."""
