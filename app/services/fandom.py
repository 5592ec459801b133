"""Episode recaps scraped from allow-listed fan wikis."""

from __future__ import annotations

import logging
from typing import Iterable, Mapping

import httpx
from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; SpoilerShield/1.0)"
SECTION_TITLES = ("summary", "plot")
CONTENT_TAGS = frozenset({"p", "ul", "ol"})


def episode_urls(base_url: str, episode: int) -> list[str]:
    """Page URLs to try, in order: ``Episode_4``, ``Episode_04``, ``Episode_004``."""

    base = base_url.rstrip("/")
    urls: list[str] = []
    for width in (1, 2, 3):
        url = f"{base}/Episode_{episode:0{width}d}"
        if url not in urls:
            urls.append(url)
    return urls


def _section_text(heading: Tag) -> str:
    parts: list[str] = []
    for sibling in heading.find_next_siblings():
        if sibling.name == "h2":
            break
        if sibling.name in CONTENT_TAGS:
            text = sibling.get_text(" ", strip=True)
            if text:
                parts.append(text)
    return "\n\n".join(parts).strip()


def extract_sections(html: str, titles: Iterable[str] = SECTION_TITLES) -> dict[str, str]:
    """Return the text under each wanted ``<h2>`` heading, keyed by lower-cased title."""

    soup = BeautifulSoup(html or "", "html.parser")
    wanted = [title.lower() for title in titles]
    sections: dict[str, str] = {}
    for heading in soup.find_all("h2"):
        title = heading.get_text(" ", strip=True).lower()
        if title not in wanted or title in sections:
            continue
        text = _section_text(heading)
        if text:
            sections[title] = text
    return sections


class FandomClient:
    """Fetches episode pages for the shows on the wiki allow-list."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        allowlist: Mapping[str, str],
        *,
        seasons: Iterable[int] = (1,),
    ):
        self._client = http_client
        self._allowlist = {title.casefold(): url for title, url in allowlist.items()}
        self._seasons = frozenset(seasons)

    def supports(self, show_title: str, season: int) -> bool:
        return show_title.strip().casefold() in self._allowlist and season in self._seasons

    async def fetch_episode_text(self, show_title: str, season: int, episode: int) -> str | None:
        """Return the combined Summary/Plot text for an episode, or ``None``."""

        if episode < 1 or not self.supports(show_title, season):
            return None
        base_url = self._allowlist[show_title.strip().casefold()]
        for url in episode_urls(base_url, episode):
            html = await self._fetch_page(url)
            if html is None:
                continue
            sections = extract_sections(html)
            combined = "\n\n".join(
                sections[title] for title in SECTION_TITLES if sections.get(title)
            )
            if combined:
                return combined
            logger.info("No Summary or Plot section on %s", url)
            return None
        return None

    async def _fetch_page(self, url: str) -> str | None:
        try:
            response = await self._client.get(url, headers={"User-Agent": USER_AGENT})
        except httpx.HTTPError as exc:
            logger.warning("Wiki fetch failed for %s: %s", url, exc)
            return None
        if response.status_code >= 400:
            if response.status_code != 404:
                logger.warning("Wiki fetch for %s returned HTTP %s", url, response.status_code)
            return None
        return response.text
