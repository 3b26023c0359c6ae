"""Per-guild playback engine: controller, snapshots and crash recovery."""

from .audio_backend import EFFECT_PRESETS, LavalinkAudioBackend, LavalinkVoiceSession, TrackHandle
from .autoplay import AutoplayService
from .controller import PlaybackController
from .embeds import EmbedFactory, QueuePaginator
from .errors import (
    LavalinkUnavailable,
    MissingResourceError,
    MusicError,
    RecommendationUnavailable,
    StaleStateError,
    StoreUnavailable,
    TrackLoadFailure,
    TransientExternalError,
)
from .logging_config import configure_json_logging
from .metrics import PlaybackMetrics
from .queue import MusicQueue, QueueEntry
from .recommendations import LastFmRecommender
from .recovery import NextcordGuildDirectory, RecoveryCoordinator, RecoveryOutcome
from .registry import PlayerRegistry
from .search import TrackResolver
from .snapshotter import StateSnapshotter
from .state import PlaybackSnapshot, PlayerSettings, RepeatMode
from .stores import MusicStores, open_stores

__all__ = [
    "EFFECT_PRESETS",
    "LavalinkAudioBackend",
    "LavalinkVoiceSession",
    "TrackHandle",
    "AutoplayService",
    "PlaybackController",
    "EmbedFactory",
    "QueuePaginator",
    "LavalinkUnavailable",
    "MissingResourceError",
    "MusicError",
    "RecommendationUnavailable",
    "StaleStateError",
    "StoreUnavailable",
    "TrackLoadFailure",
    "TransientExternalError",
    "configure_json_logging",
    "PlaybackMetrics",
    "MusicQueue",
    "QueueEntry",
    "LastFmRecommender",
    "NextcordGuildDirectory",
    "RecoveryCoordinator",
    "RecoveryOutcome",
    "PlayerRegistry",
    "TrackResolver",
    "StateSnapshotter",
    "PlaybackSnapshot",
    "PlayerSettings",
    "RepeatMode",
    "MusicStores",
    "open_stores",
]
