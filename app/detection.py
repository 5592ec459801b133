"""Show and episode detection from page metadata, URL and title.

No single platform signal is reliable, so detection runs an ordered list of
strategies. Each returns an optional :class:`Detection`; the first one with a
non-empty title wins and later strategies are not consulted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Callable, Iterable
from urllib.parse import unquote, urlparse

from .messaging import REDETECT_SHOW_INFO, Message, MessageBus
from .models import EpisodeInfo, ShowInfo, show_identity_key
from .page import MutationRecord, Observation, PageDocument
from .store import SHOW_INFO_KEY, KeyValueStore
from .subtitles import detect_platform
from .utils import deslugify, normalize_line

logger = logging.getLogger(__name__)

EPISODE_PATTERNS: tuple[tuple[re.Pattern[str], bool], ...] = (
    (re.compile(r"\bS(\d{1,3})\s*[:.]?\s*E(\d{1,4})\b", re.IGNORECASE), True),
    (re.compile(r"\bSeason\s+(\d{1,3})\s*,?\s*Episode\s+(\d{1,4})\b", re.IGNORECASE), True),
    (re.compile(r"\bEpisode\s+(\d{1,4})\b", re.IGNORECASE), False),
    (re.compile(r"\bEp\.?\s*(\d{1,4})\b", re.IGNORECASE), False),
)

TITLE_SEPARATORS_RE = re.compile(r"\s+[-|–—:]\s+")
EPISODE_MARKER_RE = re.compile(
    r"\b(S\d{1,3}\s*[:.]?\s*E\d{1,4}|Season\s+\d+|Episode\s+\d+|Ep\.?\s*\d+)\b",
    re.IGNORECASE,
)
LEADING_WATCH_RE = re.compile(r"^(watch|stream)\s+", re.IGNORECASE)
PLATFORM_WORDS = ("netflix", "crunchyroll")
GENERIC_TITLES = frozenset(
    {"home", "browse", "search", "my list", "watchlist", "new & popular", "simulcasts", "videos"}
)
SERIES_PATH_MARKERS = frozenset({"series", "show", "shows"})


@dataclass(slots=True)
class Detection:
    title: str
    episode: EpisodeInfo | None = None


Strategy = Callable[[PageDocument], "Detection | None"]


def extract_episode_info(*texts: str) -> EpisodeInfo | None:
    """Apply the episode patterns in order; the first pattern that matches any text wins."""

    candidates = [text for text in texts if text]
    for pattern, has_season in EPISODE_PATTERNS:
        for text in candidates:
            match = pattern.search(text)
            if not match:
                continue
            if has_season:
                season, episode = match.group(1), match.group(2)
            else:
                season, episode = "1", match.group(1)
            return EpisodeInfo(season=str(int(season)), episode=str(int(episode)))
    return None


def _url_text(url: str) -> str:
    path = unquote(urlparse(url).path or "")
    return re.sub(r"[-_/]+", " ", path)


def _iter_json_ld(page: PageDocument) -> Iterable[dict[str, Any]]:
    for script in page.select('script[type="application/ld+json"]'):
        try:
            data = json.loads(script.string or script.get_text() or "")
        except (TypeError, ValueError):
            continue
        stack: list[Any] = [data]
        while stack:
            item = stack.pop(0)
            if isinstance(item, list):
                stack.extend(item)
            elif isinstance(item, dict):
                graph = item.get("@graph")
                if isinstance(graph, list):
                    stack.extend(graph)
                yield item


def _types(item: dict[str, Any]) -> set[str]:
    raw = item.get("@type")
    if isinstance(raw, str):
        return {raw}
    if isinstance(raw, list):
        return {str(value) for value in raw}
    return set()


def _name(value: Any) -> str:
    if isinstance(value, dict):
        return normalize_line(value.get("name"))
    if isinstance(value, str):
        return normalize_line(value)
    return ""


def _number(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("seasonNumber") or value.get("episodeNumber")
    if value is None:
        return ""
    match = re.search(r"\d+", str(value))
    return str(int(match.group(0))) if match else ""


def from_structured_data(page: PageDocument) -> Detection | None:
    for item in _iter_json_ld(page):
        types = _types(item)
        if "TVEpisode" in types:
            title = _name(item.get("partOfSeries")) or _name(item.get("partOfTVSeries"))
            if not title:
                continue
            season = _number(item.get("partOfSeason"))
            episode = _number(item.get("episodeNumber"))
            info = EpisodeInfo(season=season or "1", episode=episode) if episode else None
            return Detection(title=title, episode=info)
        if types & {"TVSeries", "TVSeason"}:
            title = _name(item.get("partOfSeries")) if "TVSeason" in types else _name(item)
            if title:
                return Detection(title=title)
    return None


def _slug_from_url(url: str) -> str:
    segments = [segment for segment in unquote(urlparse(url).path or "").split("/") if segment]
    for index, segment in enumerate(segments):
        if segment.lower() not in SERIES_PATH_MARKERS:
            continue
        remainder = segments[index + 1 :]
        # Crunchyroll: /series/<id>/<slug>; other sites: /show/<slug>.
        if len(remainder) >= 2:
            return remainder[1]
        if remainder and not re.fullmatch(r"[A-Z0-9]{6,}|\d+", remainder[0]):
            return remainder[0]
    return ""


def from_canonical_url(page: PageDocument) -> Detection | None:
    slug = _slug_from_url(page.link_href("canonical") or page.url)
    title = deslugify(slug)
    return Detection(title=title) if title else None


def from_alternate_url(page: PageDocument) -> Detection | None:
    href = page.meta_content("og:url") or page.link_href("alternate")
    title = deslugify(_slug_from_url(href)) if href else ""
    return Detection(title=title) if title else None


def decompose_title(raw_title: str) -> str:
    """Pull the show name out of titles like ``Show - S1E4 - Name - Watch on Crunchyroll``."""

    text = normalize_line(raw_title)
    if not text:
        return ""
    for segment in TITLE_SEPARATORS_RE.split(text):
        segment = LEADING_WATCH_RE.sub("", segment.strip())
        lowered = segment.casefold()
        if not segment or lowered in GENERIC_TITLES:
            continue
        if any(word in lowered for word in PLATFORM_WORDS):
            continue
        cleaned = normalize_line(EPISODE_MARKER_RE.sub("", segment)).strip(" ,-")
        if not cleaned or cleaned.casefold() in GENERIC_TITLES:
            continue
        return cleaned
    return ""


def from_page_title(page: PageDocument) -> Detection | None:
    title = decompose_title(page.title)
    return Detection(title=title) if title else None


def from_social_title(page: PageDocument) -> Detection | None:
    title = decompose_title(page.meta_content("twitter:title", "og:title"))
    return Detection(title=title) if title else None


STRATEGIES: tuple[Strategy, ...] = (
    from_structured_data,
    from_canonical_url,
    from_alternate_url,
    from_page_title,
    from_social_title,
)


def detect_show_info(page: PageDocument, strategies: Iterable[Strategy] = STRATEGIES) -> ShowInfo:
    """Run the strategy chain; never raises."""

    platform = detect_platform(page.hostname)
    detection: Detection | None = None
    for strategy in strategies:
        try:
            detection = strategy(page)
        except Exception:
            logger.debug("Strategy %s failed", getattr(strategy, "__name__", strategy), exc_info=True)
            detection = None
        if detection is not None and detection.title:
            break
    if detection is None or not detection.title:
        return ShowInfo.cleared(platform=platform, url=page.url)

    episode = detection.episode
    if episode is None:
        try:
            episode = extract_episode_info(
                page.title,
                page.meta_content("og:title", "twitter:title"),
                _url_text(page.url),
            )
        except Exception:
            logger.debug("Episode extraction failed", exc_info=True)
            episode = None
    return ShowInfo(platform=platform, show_title=detection.title, episode_info=episode, url=page.url)


class ShowInfoDetector:
    """Re-runs detection on load, debounced mutations and URL changes."""

    def __init__(
        self,
        page: PageDocument,
        store: KeyValueStore,
        bus: MessageBus | None = None,
        *,
        debounce: float = 0.5,
        url_poll_interval: float = 2.0,
    ):
        self._page = page
        self._store = store
        self._bus = bus
        self._debounce = debounce
        self._url_poll_interval = url_poll_interval
        self._last_written_key: str | None = None
        self._last_url = page.url
        self._observation: Observation | None = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._pending: set[asyncio.Task[None]] = set()
        self.last_result: ShowInfo | None = None

    async def start(self) -> None:
        self._observation = self._page.observe(None, self._on_mutation)
        if self._bus is not None:
            self._unsubscribe = self._bus.subscribe(REDETECT_SHOW_INFO, self._on_redetect)
        self._poll_task = asyncio.create_task(self._poll_url())
        await self.run(force=True)

    async def stop(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._observation is not None:
            self._observation.disconnect()
            self._observation = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._poll_task is not None:
            self._poll_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None

    async def run(self, *, force: bool = False) -> ShowInfo:
        """Detect and write the result; an empty result is written as the cleared marker."""

        info = detect_show_info(self._page)
        self.last_result = info
        key = show_identity_key(info)
        if not force and key == self._last_written_key:
            return info
        try:
            await self._store.set(SHOW_INFO_KEY, info.to_payload())
            self._last_written_key = key
        except Exception:
            logger.debug("Show info write failed", exc_info=True)
        return info

    async def flush(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _on_mutation(self, _: list[MutationRecord]) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._debounce_handle = loop.call_later(self._debounce, self._schedule_run)

    def _schedule_run(self) -> None:
        self._debounce_handle = None
        task = asyncio.get_running_loop().create_task(self.run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _on_redetect(self, message: Message) -> None:
        if message.tab_id is not None and message.tab_id != self._page.tab_id:
            return
        await self.run(force=True)

    async def _poll_url(self) -> None:
        while True:
            await asyncio.sleep(self._url_poll_interval)
            if self._page.url == self._last_url:
                continue
            self._last_url = self._page.url
            try:
                await self.run()
            except Exception:  # pragma: no cover - detection never raises
                logger.exception("URL-change detection failed")
