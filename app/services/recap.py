"""Spoiler-safe episode recaps from an ordered chain of sources.

Sources are tried in priority order: TVMaze's episode summary, an
allow-listed fan wiki, then a search-grounded Gemini recap. Every raw text
must survive the sanitizer before it is cached or returned; a source whose
sanitization fails counts as having produced nothing.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable

from pydantic import ValidationError

from ..models import CachedRecap, RecapResult, RecapSource
from ..store import RECAP_CACHE_PREFIX, KeyValueStore
from ..utils import slugify
from .fandom import FandomClient
from .gemini import GeminiClient
from .tvmaze import TVMazeClient

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60
PRIMARY_NAMESPACE = "primary-metadata"
FALLBACK_NAMESPACE = "fallback"


def recap_cache_key(namespace: str, show_key: str | int, season: int, episode: int) -> str:
    return f"{RECAP_CACHE_PREFIX}{namespace}:{show_key}:s{season}e{episode}"


class RecapCache:
    """TTL cache of sanitized recaps kept in the shared store."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._ttl_ms = ttl_seconds * 1000
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def get(self, key: str) -> CachedRecap | None:
        raw = await self._store.get(key)
        if raw is None:
            return None
        try:
            cached = CachedRecap.model_validate(raw)
        except ValidationError:
            logger.info("Dropping corrupt recap cache entry %s", key)
            await self._store.delete(key)
            return None
        if self._now_ms() - cached.cached_at > self._ttl_ms:
            await self._store.delete(key)
            return None
        return cached

    async def put(self, key: str, summary: str, source: RecapSource) -> CachedRecap:
        cached = CachedRecap(summary=summary, source=source, cached_at=self._now_ms())
        await self._store.set(key, cached.to_payload())
        return cached


RawFetcher = Callable[[], Awaitable["str | None"]]


class RecapResolver:
    """Resolve a recap for ``(show, season, episode)`` or report that none exists."""

    def __init__(
        self,
        cache: RecapCache,
        *,
        tvmaze: TVMazeClient | None = None,
        fandom: FandomClient | None = None,
        gemini: GeminiClient | None = None,
    ):
        self._cache = cache
        self._tvmaze = tvmaze
        self._fandom = fandom
        self._gemini = gemini

    async def resolve(
        self,
        show_title: str,
        show_id: int | None,
        season: int | str,
        episode: int | str,
    ) -> RecapResult:
        try:
            season_number = int(season)
            episode_number = int(episode)
        except (TypeError, ValueError):
            logger.info("Cannot resolve recap without numeric season/episode: %r/%r", season, episode)
            return RecapResult.empty()

        if show_id and self._tvmaze is not None:
            key = recap_cache_key(PRIMARY_NAMESPACE, show_id, season_number, episode_number)
            result = await self._from_source(
                key,
                RecapSource.PRIMARY_METADATA,
                lambda: self._tvmaze.episode_summary(show_id, season_number, episode_number),
                season_number,
                episode_number,
            )
            if result is not None:
                return result

        title = (show_title or "").strip()
        if not title:
            return RecapResult.empty()
        fallback_key = recap_cache_key(FALLBACK_NAMESPACE, slugify(title), season_number, episode_number)
        cached = await self._cached(fallback_key)
        if cached is not None:
            return cached

        if self._fandom is not None and self._fandom.supports(title, season_number):
            result = await self._from_source(
                fallback_key,
                RecapSource.WIKI,
                lambda: self._fandom.fetch_episode_text(title, season_number, episode_number),
                season_number,
                episode_number,
                check_cache=False,
            )
            if result is not None:
                return result

        if self._gemini is not None and self._gemini.configured:
            result = await self._from_source(
                fallback_key,
                RecapSource.WEB_SEARCH,
                lambda: self._gemini.web_recap(title, season_number, episode_number),
                season_number,
                episode_number,
                check_cache=False,
            )
            if result is not None:
                return result

        return RecapResult.empty()

    @staticmethod
    def manual(text: str) -> RecapResult:
        """User-authored recap: trusted, not sanitized and not cached."""

        summary = (text or "").strip()
        if not summary:
            return RecapResult.empty()
        return RecapResult(summary=summary, source=RecapSource.MANUAL)

    async def _cached(self, key: str) -> RecapResult | None:
        try:
            cached = await self._cache.get(key)
        except Exception:
            logger.warning("Recap cache read failed for %s", key, exc_info=True)
            return None
        if cached is None:
            return None
        return RecapResult(summary=cached.summary, source=cached.source)

    async def _from_source(
        self,
        key: str,
        source: RecapSource,
        fetch: RawFetcher,
        season: int,
        episode: int,
        *,
        check_cache: bool = True,
    ) -> RecapResult | None:
        if check_cache:
            cached = await self._cached(key)
            if cached is not None:
                return cached
        try:
            raw = await fetch()
        except Exception as exc:
            logger.warning("Recap source %s failed: %s", source.value, exc)
            return None
        if not raw or not raw.strip():
            return None

        summary = await self._sanitize(raw, season, episode, source)
        if summary is None:
            return None
        try:
            await self._cache.put(key, summary, source)
        except Exception:
            logger.warning("Recap cache write failed for %s", key, exc_info=True)
        return RecapResult(summary=summary, source=source)

    async def _sanitize(self, raw: str, season: int, episode: int, source: RecapSource) -> str | None:
        if self._gemini is None or not self._gemini.configured:
            logger.info("Sanitizer unavailable; discarding %s recap", source.value)
            return None
        try:
            cleaned = await self._gemini.sanitize(raw, season, episode)
        except Exception as exc:
            logger.warning("Sanitizing %s recap failed: %s", source.value, exc)
            return None
        cleaned = cleaned.strip()
        return cleaned or None
