"""Exception taxonomy for the music subsystem."""

from __future__ import annotations

from typing import Optional

__all__ = [
    "MusicError",
    "TransientExternalError",
    "LavalinkUnavailable",
    "RecommendationUnavailable",
    "StoreUnavailable",
    "StaleStateError",
    "MissingResourceError",
    "TrackLoadFailure",
]


class MusicError(RuntimeError):
    """Base class for playback engine errors."""


class TransientExternalError(MusicError):
    """An external service timed out or is unreachable; a later trigger retries."""


class LavalinkUnavailable(TransientExternalError):
    """Raised when the Lavalink node is not ready."""


class RecommendationUnavailable(TransientExternalError):
    """Raised when the recommendation service cannot be reached."""


class StoreUnavailable(TransientExternalError):
    """Raised when a state store could not persist a value."""


class StaleStateError(MusicError):
    """A playback snapshot is older than the staleness threshold."""


class MissingResourceError(MusicError):
    """A guild, voice channel or queue needed for recovery no longer exists."""


class TrackLoadFailure(MusicError):
    """Raised when a track fails to load."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.__cause__ = cause
        self.cause = cause

    @property
    def is_retryable(self) -> bool:
        if not self.cause:
            return False
        text = f"{type(self.cause).__name__}:{self.cause}".lower()
        indicators = ("429", "quota", "throttle", "age", "signature", "extractor")
        return any(token in text for token in indicators)
