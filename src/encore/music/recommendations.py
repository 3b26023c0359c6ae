"""Last.fm backed recommendation lookups for autoplay."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
from cachetools import TTLCache

from .errors import RecommendationUnavailable

__all__ = ["Candidate", "LastFmRecommender"]

LASTFM_API_URL = "https://ws.audioscrobbler.com/2.0/"
# Last.fm error 6: "Track not found" / invalid parameters for an unknown track.
_NOT_FOUND_ERRORS = {6}


@dataclass(frozen=True)
class Candidate:
    """A recommended track that still has to be resolved to something playable."""

    title: str
    artist: str

    @property
    def query(self) -> str:
        return f"{self.title} {self.artist}".strip()


def _as_list(value: Any) -> List[Any]:
    # Last.fm collapses single-item lists into a bare object.
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return [value]
    return []


def _artist_name(raw: Any) -> str:
    if isinstance(raw, dict):
        return str(raw.get("name") or raw.get("#text") or "").strip()
    return str(raw or "").strip()


class LastFmRecommender:
    """``search(query)`` finds the best matching track, then its similar tracks."""

    def __init__(
        self,
        api_key: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
        cache_ttl: int = 3600,
        cache_size: int = 256,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logger or logging.getLogger("encore.music.recommendations")
        self._session = session
        self._owns_session = session is None
        self._cache: TTLCache = TTLCache(maxsize=cache_size, ttl=cache_ttl)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def search(self, query: str, *, limit: int = 20) -> List[Candidate]:
        """Return tracks similar to the best match for ``query``."""

        if not self.configured:
            raise RecommendationUnavailable("LASTFM_API_KEY is not configured")
        key = (" ".join(query.lower().split()), limit)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        seed = await self._best_match(query)
        if seed is None:
            result: List[Candidate] = []
        else:
            result = await self._similar(seed, limit=limit)
            self.logger.debug(
                "Last.fm similar tracks",
                extra={"query": query, "seed_title": seed.title, "seed_artist": seed.artist, "count": len(result)},
            )
        self._cache[key] = tuple(result)
        return result

    async def _best_match(self, query: str) -> Optional[Candidate]:
        data = await self._request({"method": "track.search", "track": query, "limit": "1"})
        matches = _as_list(((data.get("results") or {}).get("trackmatches") or {}).get("track"))
        for match in matches:
            title = str(match.get("name") or "").strip()
            artist = _artist_name(match.get("artist"))
            if title and artist:
                return Candidate(title=title, artist=artist)
        return None

    async def _similar(self, seed: Candidate, *, limit: int) -> List[Candidate]:
        data = await self._request(
            {
                "method": "track.getsimilar",
                "track": seed.title,
                "artist": seed.artist,
                "limit": str(limit),
                "autocorrect": "1",
            }
        )
        candidates: List[Candidate] = []
        for item in _as_list((data.get("similartracks") or {}).get("track")):
            title = str(item.get("name") or "").strip()
            artist = _artist_name(item.get("artist"))
            if title:
                candidates.append(Candidate(title=title, artist=artist))
        return candidates

    async def _request(self, params: Dict[str, str]) -> Dict[str, Any]:
        payload = dict(params, api_key=self.api_key, format="json")
        session = await self._get_session()
        try:
            async with session.get(LASTFM_API_URL, params=payload) as response:
                if response.status != 200:
                    text = await response.text()
                    raise RecommendationUnavailable(
                        f"Last.fm HTTP {response.status}: {text[:200]}"
                    )
                data = await response.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise RecommendationUnavailable("Last.fm request timed out") from exc
        except aiohttp.ClientError as exc:
            raise RecommendationUnavailable(f"Last.fm network error: {exc}") from exc

        if not isinstance(data, dict):
            raise RecommendationUnavailable("Last.fm returned a non-object payload")
        if "error" in data:
            code = data.get("error")
            if code in _NOT_FOUND_ERRORS:
                return {}
            raise RecommendationUnavailable(f"Last.fm error {code}: {data.get('message')}")
        return data
