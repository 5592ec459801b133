"""Tests for the recap source chain and its cache."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from app.config import Settings
from app.models import RecapSource
from app.services.fandom import FandomClient
from app.services.gemini import NO_RECAP_SENTINEL, GeminiClient
from app.services.recap import (
    FALLBACK_NAMESPACE,
    PRIMARY_NAMESPACE,
    RecapCache,
    RecapResolver,
    recap_cache_key,
)
from app.services.tvmaze import TVMazeClient
from app.store import RECAP_CACHE_PREFIX, MemoryKeyValueStore

WIKI = "https://jujutsu-kaisen.fandom.com/wiki"
WIKI_HTML = "<h2>Summary</h2><p>Yuji meets Megumi at school.</p>"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def candidate(text: str) -> dict[str, Any]:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


class FakeUpstreams:
    """One mock transport standing in for TVMaze, the wiki and Gemini."""

    def __init__(
        self,
        *,
        tvmaze_summary: str | None = "<p>Raw primary recap.</p>",
        wiki_html: str | None = WIKI_HTML,
        sanitize: Callable[[str], httpx.Response] | None = None,
        web_reply: str = "Searched recap.",
    ):
        self.tvmaze_summary = tvmaze_summary
        self.wiki_html = wiki_html
        self.sanitize = sanitize or (lambda raw: httpx.Response(200, json=candidate(f"SAFE[{raw}]")))
        self.web_reply = web_reply
        self.calls: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host == "api.tvmaze.com":
            self.calls.append("tvmaze")
            if self.tvmaze_summary is None:
                return httpx.Response(404)
            return httpx.Response(200, json={"summary": self.tvmaze_summary})
        if host.endswith("fandom.com"):
            self.calls.append("wiki")
            if self.wiki_html is None:
                return httpx.Response(404)
            return httpx.Response(200, text=self.wiki_html)
        body = json.loads(request.content)
        if body.get("tools"):
            self.calls.append("web")
            return httpx.Response(200, json=candidate(self.web_reply))
        self.calls.append("sanitize")
        prompt = body["contents"][0]["parts"][0]["text"]
        raw = prompt.split("RAW EPISODE SUMMARY:\n", 1)[1].split("\n\nUSER'S PROGRESS", 1)[0]
        return self.sanitize(raw)


def build_resolver(
    upstreams: FakeUpstreams,
    store: MemoryKeyValueStore,
    *,
    api_key: str | None = "key",
    with_wiki: bool = True,
) -> RecapResolver:
    transport = httpx.MockTransport(upstreams.handler)
    http_client = httpx.AsyncClient(transport=transport)
    tvmaze_client = httpx.AsyncClient(transport=transport, base_url="https://api.tvmaze.com")
    settings = Settings(_env_file=None, GEMINI_API_KEY=api_key)
    gemini_client = httpx.AsyncClient(
        transport=transport, base_url="https://generativelanguage.googleapis.com/v1beta"
    )
    cache = RecapCache(store, ttl_seconds=60)
    resolver = RecapResolver(
        cache,
        tvmaze=TVMazeClient(tvmaze_client),
        fandom=FandomClient(http_client, {"jujutsu kaisen": WIKI}) if with_wiki else None,
        gemini=GeminiClient(settings, gemini_client),
    )
    return resolver


def test_cache_key_format() -> None:
    assert recap_cache_key(PRIMARY_NAMESPACE, 40748, 1, 4) == "episodeRecapCache:primary-metadata:40748:s1e4"
    assert recap_cache_key(FALLBACK_NAMESPACE, "jujutsu-kaisen", 1, 4) == "episodeRecapCache:fallback:jujutsu-kaisen:s1e4"


@pytest.mark.anyio("asyncio")
async def test_primary_source_is_sanitized_then_cached() -> None:
    upstreams = FakeUpstreams()
    store = MemoryKeyValueStore()
    resolver = build_resolver(upstreams, store)

    first = await resolver.resolve("Jujutsu Kaisen", 40748, "1", "4")
    second = await resolver.resolve("Jujutsu Kaisen", 40748, 1, 4)

    assert first.summary == "SAFE[Raw primary recap.]"
    assert first.source is RecapSource.PRIMARY_METADATA
    assert second == first
    assert upstreams.calls == ["tvmaze", "sanitize"]
    cached = store.snapshot()[recap_cache_key(PRIMARY_NAMESPACE, 40748, 1, 4)]
    assert cached["summary"] == "SAFE[Raw primary recap.]"
    assert cached["source"] == "primary-metadata"


@pytest.mark.anyio("asyncio")
async def test_failed_sanitization_caches_nothing_and_falls_through() -> None:
    upstreams = FakeUpstreams(sanitize=lambda raw: httpx.Response(500, text="boom"))
    store = MemoryKeyValueStore()
    resolver = build_resolver(upstreams, store)

    result = await resolver.resolve("Jujutsu Kaisen", 40748, 1, 4)

    assert result.summary is None and result.source is None
    assert upstreams.calls == ["tvmaze", "sanitize", "wiki", "sanitize", "web", "sanitize"]
    assert await store.keys(RECAP_CACHE_PREFIX) == []


@pytest.mark.anyio("asyncio")
async def test_without_gemini_no_recap_is_returned() -> None:
    upstreams = FakeUpstreams()
    store = MemoryKeyValueStore()
    resolver = build_resolver(upstreams, store, api_key=None)

    result = await resolver.resolve("Jujutsu Kaisen", 40748, 1, 4)

    assert result.summary is None
    assert "sanitize" not in upstreams.calls
    assert await store.keys(RECAP_CACHE_PREFIX) == []


@pytest.mark.anyio("asyncio")
async def test_wiki_used_when_primary_has_no_summary() -> None:
    upstreams = FakeUpstreams(tvmaze_summary=None)
    store = MemoryKeyValueStore()
    resolver = build_resolver(upstreams, store)

    result = await resolver.resolve("Jujutsu Kaisen", 40748, 1, 4)
    again = await resolver.resolve("Jujutsu Kaisen", 40748, 1, 4)

    assert result.source is RecapSource.WIKI
    assert result.summary == "SAFE[Yuji meets Megumi at school.]"
    assert again == result
    assert upstreams.calls == ["tvmaze", "wiki", "sanitize", "tvmaze"]
    assert recap_cache_key(FALLBACK_NAMESPACE, "jujutsu-kaisen", 1, 4) in store.snapshot()


@pytest.mark.anyio("asyncio")
async def test_web_search_used_for_shows_outside_the_allowlist() -> None:
    upstreams = FakeUpstreams(tvmaze_summary=None)
    store = MemoryKeyValueStore()
    resolver = build_resolver(upstreams, store)

    result = await resolver.resolve("Frieren", None, 1, 3)

    assert result.source is RecapSource.WEB_SEARCH
    assert result.summary == "SAFE[Searched recap.]"
    assert upstreams.calls == ["web", "sanitize"]


@pytest.mark.anyio("asyncio")
async def test_web_search_sentinel_means_no_recap() -> None:
    upstreams = FakeUpstreams(web_reply=NO_RECAP_SENTINEL)
    store = MemoryKeyValueStore()
    resolver = build_resolver(upstreams, store, with_wiki=False)

    result = await resolver.resolve("Frieren", None, 1, 3)

    assert result.summary is None
    assert upstreams.calls == ["web"]


@pytest.mark.anyio("asyncio")
async def test_non_numeric_episode_resolves_to_empty() -> None:
    upstreams = FakeUpstreams()
    resolver = build_resolver(upstreams, MemoryKeyValueStore())

    result = await resolver.resolve("Frieren", 1, "", "3")

    assert result.summary is None
    assert upstreams.calls == []


def test_manual_recap_is_trusted_as_is() -> None:
    result = RecapResolver.manual("  My own notes.  ")

    assert result.summary == "My own notes."
    assert result.source is RecapSource.MANUAL
    assert RecapResolver.manual("   ").summary is None


@pytest.mark.anyio("asyncio")
async def test_cache_expires_after_ttl_and_drops_corrupt_entries() -> None:
    now = [1_000.0]
    store = MemoryKeyValueStore({"episodeRecapCache:fallback:bad:s1e1": {"summary": 5}})
    cache = RecapCache(store, ttl_seconds=60, clock=lambda: now[0])
    key = recap_cache_key(FALLBACK_NAMESPACE, "frieren", 1, 1)

    await cache.put(key, "Recap", RecapSource.WIKI)
    now[0] += 59
    assert (await cache.get(key)).summary == "Recap"
    now[0] += 2
    assert await cache.get(key) is None
    assert key not in store.snapshot()

    assert await cache.get("episodeRecapCache:fallback:bad:s1e1") is None
    assert store.snapshot() == {}
