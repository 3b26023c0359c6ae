"""Queue refill from recommendations once playback reaches the last entry."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from .audio_backend import TrackHandle
from .queue import QueueEntry
from .recommendations import Candidate

__all__ = ["AutoplayService", "extract_track_info", "filter_candidates"]

_BRACKETED = re.compile(r"\[[^\]]*\]")
_PARENTHESISED = re.compile(r"\([^)]*\)")


class Recommender(Protocol):
    async def search(self, query: str, *, limit: int = 20) -> List[Candidate]: ...


class Resolver(Protocol):
    async def resolve(self, query: str) -> Optional[TrackHandle]: ...


def extract_track_info(full_title: str, author: str) -> Tuple[str, str]:
    """Best-effort ``(artist, title)`` split of a free-text video title.

    "Artist - Song (Official Video) [4K]" becomes ("Artist", "Song"). Titles
    without a dash keep the reported author as artist. Featuring credits and
    already clean titles can come out wrong; callers retry with the title alone.
    """

    artist = (author or "").strip()
    title = full_title or ""
    head, separator, tail = title.partition(" - ")
    if separator and head.strip() and tail.strip():
        artist = head.strip()
        title = tail
    cleaned = _PARENTHESISED.sub(" ", _BRACKETED.sub(" ", title))
    cleaned = " ".join(cleaned.split())
    return artist, cleaned or " ".join(title.split())


def filter_candidates(
    candidates: Iterable[Candidate], queued_titles: Set[str]
) -> List[Candidate]:
    """Drop candidates already queued (case-insensitive) and repeated candidates."""

    seen: Set[Tuple[str, str]] = set()
    survivors: List[Candidate] = []
    for candidate in candidates:
        title = candidate.title.strip().lower()
        artist = candidate.artist.strip().lower()
        forms = {title, f"{title} - {artist}", f"{artist} - {title}"}
        if forms & queued_titles:
            continue
        if (title, artist) in seen:
            continue
        seen.add((title, artist))
        survivors.append(candidate)
    return survivors


class AutoplayService:
    """Find up to ``count`` new tracks related to the last queued entry.

    Every failure on this path is logged and turned into an empty result so
    playback never waits on, or breaks because of, the recommendation service.
    Cancellation is the only exception that propagates.
    """

    def __init__(
        self,
        recommender: Recommender,
        resolver: Resolver,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.recommender = recommender
        self.resolver = resolver
        self.logger = logger or logging.getLogger("encore.music.autoplay")

    async def recommend(
        self, entries: Sequence[QueueEntry], count: int
    ) -> List[TrackHandle]:
        if count <= 0 or not entries:
            return []
        seed = max(entries, key=lambda entry: entry.index)
        artist, title = extract_track_info(seed.handle.title, seed.handle.author)
        context = {"seed_title": seed.handle.title, "artist": artist, "title": title}
        try:
            candidates = await self._candidates(artist, title, limit=count * 2)
            if not candidates:
                self.logger.info("Autoplay found no recommendations", extra=context)
                return []

            queued = {entry.handle.title.strip().lower() for entry in entries}
            handles: List[TrackHandle] = []
            for candidate in filter_candidates(candidates, queued):
                if len(handles) >= count:
                    break
                handle = await self.resolver.resolve(candidate.query)
                if handle is None:
                    self.logger.debug(
                        "Could not load autoplay candidate",
                        extra=dict(context, candidate=candidate.query),
                    )
                    continue
                resolved_title = handle.title.strip().lower()
                if resolved_title in queued:
                    continue
                queued.add(resolved_title)
                handles.append(handle)
            self.logger.info(
                "Autoplay resolved %s of %s candidates",
                len(handles),
                len(candidates),
                extra=context,
            )
            return handles
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.warning("Autoplay lookup failed", extra=dict(context, error=str(exc)))
            return []

    async def _candidates(self, artist: str, title: str, *, limit: int) -> List[Candidate]:
        seeded = f"{artist} {title}".strip()
        candidates = await self.recommender.search(seeded, limit=limit)
        if not candidates and title and title != seeded:
            candidates = await self.recommender.search(title, limit=limit)
        return candidates
