"""Resolve free-text queries to playable tracks: Lavalink first, yt-dlp fallback."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import yt_dlp

from encore.config import Config

from .audio_backend import LavalinkAudioBackend, TrackHandle
from .errors import LavalinkUnavailable, TrackLoadFailure

__all__ = ["TrackResolver"]

_KNOWN_YTDLP_PREFIXES = (
    "ytsearch:",
    "ytsearch1:",
    "ytsearch5:",
    "scsearch:",
)


def _normalise_query(query: str) -> str:
    stripped = query.strip()
    lower = stripped.lower()
    if lower.startswith(("http://", "https://")):
        return stripped
    if any(lower.startswith(prefix) for prefix in _KNOWN_YTDLP_PREFIXES):
        return stripped
    return f"ytsearch:{stripped}"


class TrackResolver:
    """Search collaborator used by the play command and by autoplay."""

    def __init__(
        self,
        backend: LavalinkAudioBackend,
        *,
        logger: Optional[logging.Logger] = None,
        attempts: int = 3,
    ) -> None:
        self.backend = backend
        self.logger = logger or logging.getLogger("encore.music.search")
        self.attempts = attempts

    async def resolve(self, query: str) -> Optional[TrackHandle]:
        """Return the best match for ``query`` or ``None`` when nothing loads."""

        try:
            return await self.resolve_strict(query)
        except (TrackLoadFailure, LavalinkUnavailable) as exc:
            self.logger.info("Query did not resolve", extra={"query": query, "error": str(exc)})
            return None

    async def resolve_strict(self, query: str) -> TrackHandle:
        """Like :meth:`resolve` but raises :class:`TrackLoadFailure` with the reason."""

        try:
            return await self._resolve_lavalink(query)
        except TrackLoadFailure as lavalink_exc:
            self.logger.warning(
                "Lavalink resolution failed, attempting yt-dlp fallback",
                extra={"query": query, "error": str(lavalink_exc)},
            )
            try:
                return await self._resolve_fallback(query, base_error=lavalink_exc)
            except TrackLoadFailure as fallback_exc:
                raise TrackLoadFailure(
                    f"Both Lavalink and yt-dlp failed: {fallback_exc}",
                    cause=lavalink_exc,
                ) from fallback_exc

    async def _resolve_lavalink(self, query: str) -> TrackHandle:
        attempt = 0
        delay = 0.5
        while True:
            try:
                tracks = await self.backend.resolve_tracks(
                    query, prefer_search=not query.startswith("http")
                )
            except TrackLoadFailure as exc:
                attempt += 1
                if not exc.is_retryable or attempt >= self.attempts:
                    raise
                await asyncio.sleep(delay)
                delay *= 2
                continue
            return tracks[0]

    async def _resolve_fallback(
        self, query: str, *, base_error: TrackLoadFailure
    ) -> TrackHandle:
        info = await self._extract_with_yt_dlp(query, base_error=base_error)
        candidates = []
        for key in ("webpage_url", "original_url", "url"):
            value = info.get(key)
            if isinstance(value, str) and value and value not in candidates:
                candidates.append(value)
        if not candidates:
            raise TrackLoadFailure("yt-dlp did not yield a usable stream", cause=base_error)

        last_error: Optional[TrackLoadFailure] = None
        for candidate in candidates:
            try:
                tracks = await self.backend.resolve_tracks(candidate, prefer_search=False)
            except TrackLoadFailure as exc:
                last_error = exc
                self.logger.debug(
                    "Fallback candidate failed",
                    extra={"candidate": candidate, "error": str(exc)},
                )
                continue
            self.logger.info(
                "Resolved fallback stream",
                extra={"query": query, "selected_source": candidate},
            )
            return tracks[0]
        raise TrackLoadFailure("Fallback stream failed to load", cause=last_error or base_error)

    async def _extract_with_yt_dlp(
        self, query: str, *, base_error: TrackLoadFailure
    ) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "quiet": True,
            "format": "bestaudio/best",
            "noplaylist": True,
            "skip_download": True,
        }
        if Config.YT_COOKIES_FILE:
            options["cookiefile"] = Config.YT_COOKIES_FILE
        target = _normalise_query(query)

        def _do_extract() -> Dict[str, Any]:
            with yt_dlp.YoutubeDL(options) as ydl:
                return ydl.extract_info(target, download=False)

        try:
            info = await asyncio.to_thread(_do_extract)
        except Exception as exc:  # pragma: no cover - network/yt-dlp errors
            raise TrackLoadFailure("yt-dlp extraction failed", cause=exc) from exc

        if info and "entries" in info:
            entries = info.get("entries") or []
            if not entries:
                raise TrackLoadFailure("yt-dlp returned no entries", cause=base_error)
            info = entries[0]
        return info or {}
