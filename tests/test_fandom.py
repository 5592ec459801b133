"""Tests for the fan-wiki recap scraper."""

from __future__ import annotations

import httpx
import pytest

from app.services.fandom import FandomClient, episode_urls, extract_sections

WIKI = "https://jujutsu-kaisen.fandom.com/wiki"

EPISODE_HTML = """
<html><body>
<h2>Overview</h2><p>Ignored intro.</p>
<h2><span class="mw-headline">Summary</span></h2>
<p>Yuji meets Megumi.</p>
<div class="ad">Advert</div>
<ul><li>Megumi asks for the finger.</li></ul>
<h2>Plot</h2>
<p>Yuji eats the finger.</p>
<h2>Characters</h2><p>Not wanted.</p>
</body></html>
"""


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def test_episode_urls_try_padded_variants() -> None:
    assert episode_urls(WIKI + "/", 4) == [
        f"{WIKI}/Episode_4",
        f"{WIKI}/Episode_04",
        f"{WIKI}/Episode_004",
    ]
    assert episode_urls(WIKI, 123) == [f"{WIKI}/Episode_123"]


def test_extract_sections_reads_until_next_heading() -> None:
    sections = extract_sections(EPISODE_HTML)

    assert sections == {
        "summary": "Yuji meets Megumi.\n\nMegumi asks for the finger.",
        "plot": "Yuji eats the finger.",
    }


def test_supports_respects_allowlist_and_seasons() -> None:
    client = FandomClient(httpx.AsyncClient(), {"Jujutsu Kaisen": WIKI}, seasons=(1,))

    assert client.supports(" jujutsu kaisen ", 1)
    assert not client.supports("Jujutsu Kaisen", 2)
    assert not client.supports("Frieren", 1)


@pytest.mark.anyio("asyncio")
async def test_fetch_tries_next_url_after_missing_page() -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        assert request.headers["User-Agent"].startswith("Mozilla/5.0")
        if request.url.path.endswith("/Episode_04"):
            return httpx.Response(200, text=EPISODE_HTML)
        return httpx.Response(404, text="missing")

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as http_client:
        client = FandomClient(http_client, {"jujutsu kaisen": WIKI})
        text = await client.fetch_episode_text("Jujutsu Kaisen", 1, 4)

    assert requested == [f"{WIKI}/Episode_4", f"{WIKI}/Episode_04"]
    assert text == "Yuji meets Megumi.\n\nMegumi asks for the finger.\n\nYuji eats the finger."


@pytest.mark.anyio("asyncio")
async def test_fetch_returns_none_when_nothing_usable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/Episode_5"):
            return httpx.Response(200, text="<h2>Trivia</h2><p>Nothing.</p>")
        return httpx.Response(500)

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as http_client:
        client = FandomClient(http_client, {"jujutsu kaisen": WIKI})
        assert await client.fetch_episode_text("Jujutsu Kaisen", 1, 5) is None
        assert await client.fetch_episode_text("Jujutsu Kaisen", 1, 6) is None
        assert await client.fetch_episode_text("Jujutsu Kaisen", 2, 1) is None
