"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest

from app.config import DEFAULT_WIKI_ALLOWLIST, Settings


def test_defaults_match_documented_values() -> None:
    settings = Settings(_env_file=None)

    assert settings.caption_buffer_lines == 40
    assert settings.max_sessions == 10
    assert settings.recap_cache_ttl_seconds == 7 * 24 * 60 * 60
    assert settings.no_show_timeout_seconds == 2.0
    assert settings.redetect_timeout_seconds == 3.0
    assert settings.wiki_allowlist == DEFAULT_WIKI_ALLOWLIST
    assert settings.wiki_seasons == (1,)


def test_wiki_allowlist_parses_pairs_case_insensitively() -> None:
    settings = Settings(
        _env_file=None,
        WIKI_ALLOWLIST="Jujutsu  Kaisen=https://jujutsu-kaisen.fandom.com/wiki/, Frieren=https://frieren.fandom.com/wiki",
    )

    assert settings.wiki_allowlist == {
        "jujutsu kaisen": "https://jujutsu-kaisen.fandom.com/wiki",
        "frieren": "https://frieren.fandom.com/wiki",
    }


def test_wiki_allowlist_rejects_malformed_entries() -> None:
    with pytest.raises(ValueError, match="title=url"):
        Settings(_env_file=None, WIKI_ALLOWLIST="no-equals-sign")


def test_wiki_seasons_accepts_comma_separated_values() -> None:
    settings = Settings(_env_file=None, WIKI_SEASONS="2, 1,2")

    assert settings.wiki_seasons == (1, 2)


def test_gemini_configured_follows_api_key() -> None:
    assert not Settings(_env_file=None).gemini_configured
    assert Settings(_env_file=None, GEMINI_API_KEY="key").gemini_configured


def test_wiki_allowlist_and_seasons_parse_from_environment(monkeypatch) -> None:
    monkeypatch.setenv(
        "WIKI_ALLOWLIST", "Jujutsu Kaisen=https://jujutsu-kaisen.fandom.com/wiki/"
    )
    monkeypatch.setenv("WIKI_SEASONS", "1,2")

    settings = Settings(_env_file=None)

    assert settings.wiki_allowlist == {
        "jujutsu kaisen": "https://jujutsu-kaisen.fandom.com/wiki"
    }
    assert settings.wiki_seasons == (1, 2)


def test_single_wiki_season_parses_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("WIKI_SEASONS", "3")

    assert Settings(_env_file=None).wiki_seasons == (3,)


def test_malformed_wiki_allowlist_in_environment_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("WIKI_ALLOWLIST", "no-equals-sign")

    with pytest.raises(ValueError, match="title=url"):
        Settings(_env_file=None)
