"""Lavalink audio backend using Mafic."""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from encore.config import get_lavalink_connection_info

from .errors import LavalinkUnavailable, TrackLoadFailure

os.environ.setdefault("MAFIC_LIBRARY", "nextcord")
os.environ.setdefault("MAFIC_IGNORE_LIBRARY_CHECK", "1")

# mafic is imported lazily so the queue/state modules stay importable in
# environments without a Lavalink client.
mafic = None

__all__ = [
    "TrackHandle",
    "LavalinkAudioBackend",
    "LavalinkVoiceSession",
    "EFFECT_PRESETS",
]


def _default_logger() -> logging.Logger:
    return logging.getLogger("encore.music.lavalink")


def _require_mafic():
    global mafic
    if mafic is None:
        try:
            import mafic as _mafic
        except Exception as exc:  # pragma: no cover - import error surface
            raise RuntimeError(
                "mafic library is required for Lavalink audio backend"
            ) from exc
        mafic = _mafic
    return mafic


@dataclass(slots=True)
class TrackHandle:
    """Light-weight wrapper around a Lavalink track."""

    track: Any
    title: str
    author: str
    duration: int
    uri: Optional[str]
    source: str
    encoded: Optional[str] = None

    @classmethod
    def from_mafic(cls, track: Any) -> "TrackHandle":
        info = getattr(track, "info", None) or {}

        title = getattr(track, "title", None) or info.get("title") or "Unknown title"
        author = (
            getattr(track, "author", None) or info.get("author") or "Unknown creator"
        )
        duration = (
            getattr(track, "length", None)
            or info.get("length")
            or info.get("duration")
            or 0
        )
        uri = getattr(track, "uri", None) or info.get("uri")
        source = getattr(track, "source", None) or info.get("sourceName") or "unknown"
        encoded = getattr(track, "id", None) or info.get("encoded")

        return cls(
            track=track,
            title=str(title),
            author=str(author),
            duration=int(duration),
            uri=uri,
            source=str(source),
            encoded=str(encoded) if encoded else None,
        )

    @property
    def playable(self) -> Any:
        """Object accepted by ``mafic.Player.play``: the track or its encoding."""

        return self.track if self.track is not None else self.encoded

    def to_json(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "author": self.author,
            "duration": self.duration,
            "uri": self.uri,
            "source": self.source,
            "encoded": self.encoded,
        }

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "TrackHandle":
        return cls(
            track=None,
            title=str(payload.get("title") or "Unknown title"),
            author=str(payload.get("author") or "Unknown creator"),
            duration=int(payload.get("duration") or 0),
            uri=payload.get("uri"),
            source=str(payload.get("source") or "unknown"),
            encoded=payload.get("encoded"),
        )


def _build_effect(name: str):
    lib = _require_mafic()
    if name == "bass":
        bands = [lib.EQBand(band=index, gain=gain) for index, gain in enumerate((0.25, 0.2, 0.15, 0.1, 0.05))]
        return lib.Filter(equalizer=lib.Equalizer(bands))
    if name == "nightcore":
        return lib.Filter(timescale=lib.Timescale(speed=1.2, pitch=1.2, rate=1.0))
    if name == "vaporwave":
        return lib.Filter(timescale=lib.Timescale(speed=0.85, pitch=0.8, rate=1.0))
    if name == "karaoke":
        return lib.Filter(
            karaoke=lib.Karaoke(level=1.0, mono_level=1.0, filter_band=220.0, filter_width=100.0)
        )
    if name == "tremolo":
        return lib.Filter(tremolo=lib.Tremolo(frequency=2.0, depth=0.5))
    if name == "vibrato":
        return lib.Filter(vibrato=lib.Vibrato(frequency=2.0, depth=0.5))
    if name == "8d":
        return lib.Filter(rotation=lib.Rotation(rotation_hz=0.2))
    raise ValueError(f"Unknown effect preset: {name}")


# Preset name -> label shown in the now playing embed.
EFFECT_PRESETS: Dict[str, str] = {
    "bass": "🎵 Bass",
    "nightcore": "⚡ Nightcore",
    "vaporwave": "🌊 Vaporwave",
    "karaoke": "🎤 Karaoke",
    "tremolo": "〰️ Tremolo",
    "vibrato": "📳 Vibrato",
    "8d": "🎧 8D",
}


class LavalinkVoiceSession:
    """A joined voice channel: thin async facade over a ``mafic.Player``."""

    def __init__(self, player: Any, *, logger: Optional[logging.Logger] = None) -> None:
        self.player = player
        self.logger = logger or _default_logger()
        self._effects: List[str] = []

    @property
    def guild_id(self) -> int:
        return self.player.guild.id

    @property
    def channel_id(self) -> Optional[int]:
        channel = getattr(self.player, "channel", None)
        return getattr(channel, "id", None)

    @property
    def position(self) -> int:
        return int(getattr(self.player, "position", None) or 0)

    @property
    def is_playing(self) -> bool:
        return self.player.current is not None and not self.player.paused

    @property
    def is_paused(self) -> bool:
        return self.player.current is not None and bool(self.player.paused)

    @property
    def connected(self) -> bool:
        return bool(getattr(self.player, "connected", True))

    async def play(self, handle: TrackHandle) -> None:
        """Start ``handle``.

        Only a rejection of the track itself raises :class:`TrackLoadFailure`.
        A dropped voice connection or an unreachable node raises
        :class:`LavalinkUnavailable` so the queue is left untouched.
        """

        playable = handle.playable
        if playable is None:
            raise TrackLoadFailure(f"Track {handle.title!r} has no playable payload")
        if not self.connected:
            raise LavalinkUnavailable(f"Voice connection lost before playing {handle.title!r}")
        lib = _require_mafic()
        try:
            await self.player.play(playable)
        except (lib.TrackLoadException, lib.HTTPBadRequest, lib.HTTPNotFound) as exc:
            raise TrackLoadFailure(f"Lavalink refused {handle.title!r}", cause=exc) from exc
        except Exception as exc:
            raise LavalinkUnavailable(
                f"Lavalink could not start {handle.title!r}: {type(exc).__name__}: {exc}"
            ) from exc

    async def pause(self) -> None:
        await self.player.pause(True)

    async def resume(self) -> None:
        await self.player.resume()

    async def seek(self, position: int) -> None:
        await self.player.seek(max(0, int(position)))

    async def set_volume(self, volume: int) -> None:
        await self.player.set_volume(int(volume))

    async def stop(self) -> None:
        await self.player.stop()

    async def disconnect(self) -> None:
        await self.player.disconnect(force=True)

    async def apply_effect(self, name: str) -> None:
        if name in self._effects:
            return
        await self.player.add_filter(_build_effect(name), label=name, fast_apply=True)
        self._effects.append(name)

    async def clear_effect(self, name: str) -> None:
        if name not in self._effects:
            return
        await self.player.remove_filter(name, fast_apply=True)
        self._effects.remove(name)

    def active_effects(self) -> List[str]:
        return [EFFECT_PRESETS.get(name, name) for name in self._effects]


class LavalinkAudioBackend:
    """Helper for managing a Mafic node, voice sessions and track lookups."""

    def __init__(
        self,
        bot,
        *,
        logger: Optional[logging.Logger] = None,
        identifier: str = "primary",
    ) -> None:
        self.bot = bot
        self.logger = logger or _default_logger()
        self.identifier = identifier
        self._ready = asyncio.Event()
        lib = _require_mafic()
        self._pool = lib.NodePool(bot)
        self._node: Optional[Any] = None
        self._lock = asyncio.Lock()
        self._sessions: Dict[int, LavalinkVoiceSession] = {}

    # ------------------------------------------------------------------
    # Setup & lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Create the Lavalink node if it does not already exist."""

        async with self._lock:
            if self._node is not None:
                return

            host, port, password, secure = get_lavalink_connection_info()
            session_id = os.getenv("LAVALINK_SESSION", "encore")

            self.logger.info(
                "Connecting to Lavalink", extra={"host": host, "port": port, "secure": secure}
            )

            create_params = inspect.signature(self._pool.create_node).parameters
            node_kwargs = dict(
                host=host,
                port=port,
                label=self.identifier,
                password=password,
                secure=secure,
            )
            if "session_id" in create_params:
                node_kwargs["session_id"] = session_id

            self._node = await self._pool.create_node(**node_kwargs)
            self._ready.set()

    async def wait_ready(self, timeout: float = 10.0) -> bool:
        try:
            await self.connect()
        except Exception as exc:
            self.logger.error("Lavalink connection failed", exc_info=exc)
            return False
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        for session in list(self._sessions.values()):
            try:
                await session.disconnect()
            except Exception as exc:
                self.logger.debug("Voice disconnect failed during close", exc_info=exc)
        self._sessions.clear()
        if self._node:
            try:
                await self._node.disconnect()
            except Exception as exc:
                self.logger.debug("Lavalink node disconnect failed", exc_info=exc)
        self._node = None
        self._ready.clear()

    # ------------------------------------------------------------------
    # Voice sessions
    # ------------------------------------------------------------------
    def session(self, guild_id: int) -> Optional[LavalinkVoiceSession]:
        return self._sessions.get(guild_id)

    async def join(self, channel) -> LavalinkVoiceSession:
        """Join ``channel`` unless the guild is already connected there."""

        if not await self.wait_ready():
            raise LavalinkUnavailable("Lavalink node is not ready")
        lib = _require_mafic()
        guild = channel.guild
        voice = guild.voice_client
        if voice is not None and not isinstance(voice, lib.Player):
            await voice.disconnect(force=True)
            voice = None

        if voice is not None and getattr(voice, "channel", None) != channel:
            try:
                await voice.move_to(channel)
            except Exception as exc:
                self.logger.warning(
                    "Moving voice connection failed, reconnecting",
                    extra={"guild_id": guild.id, "channel_id": channel.id, "error": str(exc)},
                )
                await voice.disconnect(force=True)
                voice = None

        if voice is None:
            voice = await channel.connect(cls=lib.Player)

        session = self._sessions.get(guild.id)
        if session is None or session.player is not voice:
            session = LavalinkVoiceSession(voice, logger=self.logger)
            self._sessions[guild.id] = session
        return session

    async def leave(self, guild_id: int) -> None:
        session = self._sessions.pop(guild_id, None)
        if session is not None:
            await session.disconnect()

    # ------------------------------------------------------------------
    # Track lookups
    # ------------------------------------------------------------------
    async def resolve_tracks(
        self,
        query: str,
        *,
        prefer_search: bool = True,
    ) -> List[TrackHandle]:
        """Resolve a Lavalink track list from a query or URL."""

        if self._node is None:
            raise LavalinkUnavailable("Lavalink node is not ready")
        lib = _require_mafic()

        search_type = os.getenv("LAVALINK_SEARCH_TYPE", "ytsearch").strip() or "ytsearch"
        if not prefer_search and not query.startswith("http"):
            raise TrackLoadFailure(f"Direct lookups need a URL, got {query!r}")

        tracks: Iterable[Any]
        try:
            fetch_result = await self._node.fetch_tracks(query, search_type=search_type)
        except Exception as exc:  # pragma: no cover - network errors
            raise TrackLoadFailure("Failed to communicate with Lavalink", cause=exc) from exc

        if isinstance(fetch_result, lib.Playlist):
            tracks = fetch_result.tracks
            detail = f"load_type=PLAYLIST name={fetch_result.name!s}"
        elif fetch_result is None:
            tracks = []
            detail = "load_type=NO_MATCHES"
        else:
            tracks = fetch_result
            detail = "load_type=TRACKS"

        if not tracks:
            raise TrackLoadFailure(f"No tracks returned ({detail})")

        return [TrackHandle.from_mafic(track) for track in tracks]
