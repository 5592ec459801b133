"""Utilities for resolving show identities and episode summaries from TVMaze."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from ..errors import ProviderError
from ..utils import slugify, strip_html

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ShowMatch:
    """Normalized view of a TVMaze search result."""

    show_id: int
    canonical_name: str


class TVMazeClient:
    """Client responsible for searching TVMaze and reading episode summaries."""

    def __init__(self, http_client: httpx.AsyncClient):
        self._client = http_client

    async def search(self, title: str) -> list[ShowMatch]:
        """Return matches for ``title`` in TVMaze relevance order."""

        normalized_title = (title or "").strip()
        if not normalized_title:
            return []
        response = await self._client.get("/search/shows", params={"q": normalized_title})
        if response.status_code >= 400:
            raise ProviderError("TVMaze", response.status_code, response.text)
        data = response.json()
        if not isinstance(data, list):
            return []

        matches: list[ShowMatch] = []
        for entry in data:
            show = entry.get("show") if isinstance(entry, dict) else None
            if not isinstance(show, dict) or show.get("id") is None:
                continue
            try:
                show_id = int(show["id"])
            except (TypeError, ValueError):
                continue
            matches.append(
                ShowMatch(show_id=show_id, canonical_name=str(show.get("name") or normalized_title))
            )
        return matches

    async def lookup_show(self, title: str) -> ShowMatch | None:
        """Return the best identity for ``title``.

        An exact slug match wins; otherwise TVMaze's top-ranked result is used.
        """

        matches = await self.search(title)
        if not matches:
            return None
        target = slugify(title)
        for match in matches:
            if slugify(match.canonical_name) == target:
                return match
        return matches[0]

    async def episode_summary(self, show_id: int, season: int | str, episode: int | str) -> str | None:
        """Return the plain-text summary for an episode, or ``None`` when TVMaze has none."""

        response = await self._client.get(
            f"/shows/{show_id}/episodebynumber",
            params={"season": season, "number": episode},
        )
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ProviderError("TVMaze", response.status_code, response.text)
        payload: Any = response.json()
        summary = payload.get("summary") if isinstance(payload, dict) else None
        if not isinstance(summary, str):
            return None
        text = strip_html(summary)
        return text or None
