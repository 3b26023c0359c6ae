"""Per-guild player settings and playback snapshots."""

from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .queue import QueueEntry

__all__ = ["RepeatMode", "PlayerSettings", "PlaybackSnapshot", "NowPlaying", "utcnow"]


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class RepeatMode(str, Enum):
    NONE = "none"
    TRACK = "track"
    QUEUE = "queue"

    @classmethod
    def parse(cls, value: Any) -> "RepeatMode":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for mode in cls:
            if text in (mode.value, mode.name.lower()):
                return mode
        raise ValueError(f"Unknown repeat mode: {value!r}")

    @property
    def emoji(self) -> str:
        return {RepeatMode.NONE: "", RepeatMode.TRACK: "🔂", RepeatMode.QUEUE: "🔁"}[self]


@dataclass
class PlayerSettings:
    """Durable per-guild playback configuration."""

    music_channel_id: Optional[int] = None
    dj_role_id: Optional[int] = None
    volume: int = 100
    repeat_mode: RepeatMode = RepeatMode.NONE
    autoplay_count: int = 0
    vote_skip_enabled: bool = False
    vote_skip_threshold: int = 50

    def __post_init__(self) -> None:
        self.volume = max(0, min(100, int(self.volume)))
        self.repeat_mode = RepeatMode.parse(self.repeat_mode)
        self.autoplay_count = max(0, int(self.autoplay_count))
        self.vote_skip_threshold = max(1, min(100, int(self.vote_skip_threshold)))

    def to_json(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["repeat_mode"] = self.repeat_mode.value
        return payload

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "PlayerSettings":
        known = {key: payload[key] for key in cls.__dataclass_fields__ if key in payload}
        return cls(**known)


@dataclass(frozen=True)
class PlaybackSnapshot:
    """Live playback state of one guild, persisted for crash recovery."""

    guild_id: int
    voice_channel_id: int
    position: int
    is_playing: bool
    is_paused: bool
    volume: int
    repeat_mode: RepeatMode
    autoplay_count: int
    last_update_time: dt.datetime = field(default_factory=utcnow)

    def age(self, now: Optional[dt.datetime] = None) -> dt.timedelta:
        return (now or utcnow()) - self.last_update_time

    def is_stale(self, threshold: dt.timedelta, now: Optional[dt.datetime] = None) -> bool:
        return self.age(now) > threshold

    def to_json(self) -> Dict[str, Any]:
        return {
            "guild_id": self.guild_id,
            "voice_channel_id": self.voice_channel_id,
            "position": self.position,
            "is_playing": self.is_playing,
            "is_paused": self.is_paused,
            "volume": self.volume,
            "repeat_mode": self.repeat_mode.value,
            "autoplay_count": self.autoplay_count,
            "last_update_time": self.last_update_time.isoformat(),
        }

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "PlaybackSnapshot":
        updated = dt.datetime.fromisoformat(str(payload["last_update_time"]))
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=dt.timezone.utc)
        return cls(
            guild_id=int(payload["guild_id"]),
            voice_channel_id=int(payload["voice_channel_id"]),
            position=int(payload.get("position") or 0),
            is_playing=bool(payload.get("is_playing")),
            is_paused=bool(payload.get("is_paused")),
            volume=int(payload.get("volume", 100)),
            repeat_mode=RepeatMode.parse(payload.get("repeat_mode") or "none"),
            autoplay_count=int(payload.get("autoplay_count") or 0),
            last_update_time=updated,
        )


@dataclass(frozen=True)
class NowPlaying:
    """Read-only view of the current track for embeds and commands."""

    entry: QueueEntry
    position: int
    is_paused: bool
    track_number: int
    queue_length: int
    volume: int
    repeat_mode: RepeatMode
    autoplay_count: int
    effects: List[str] = field(default_factory=list)
