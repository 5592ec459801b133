"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal, Mapping

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_WIKI_ALLOWLIST: dict[str, str] = {
    "jujutsu kaisen": "https://jujutsu-kaisen.fandom.com/wiki",
}


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="SpoilerShield", alias="APP_NAME")
    server_host: str = Field(default="127.0.0.1", alias="HOST")
    server_port: int = Field(default=8080, alias="PORT")

    tvmaze_api_url: HttpUrl = Field(
        default="https://api.tvmaze.com", alias="TVMAZE_API_URL"
    )
    gemini_api_url: HttpUrl = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        alias="GEMINI_API_URL",
    )
    gemini_api_key: str | None = Field(default=None, alias="GEMINI_API_KEY")
    gemini_model: str = Field(default="gemini-2.0-flash", alias="GEMINI_MODEL")
    gemini_search_model: str = Field(
        default="gemini-2.0-flash", alias="GEMINI_SEARCH_MODEL"
    )

    # Env values arrive as "title=url,..." and "1,2"; the validators below parse them.
    wiki_allowlist: Annotated[dict[str, str], NoDecode] = Field(
        default_factory=lambda: dict(DEFAULT_WIKI_ALLOWLIST),
        alias="WIKI_ALLOWLIST",
    )
    wiki_seasons: Annotated[tuple[int, ...], NoDecode] = Field(
        default=(1,), alias="WIKI_SEASONS"
    )

    caption_buffer_lines: int = Field(
        default=40, alias="CAPTION_BUFFER_LINES", ge=1, le=1_000
    )
    max_sessions: int = Field(default=10, alias="MAX_SESSIONS", ge=1, le=500)
    recap_cache_ttl_seconds: int = Field(
        default=7 * 24 * 60 * 60, alias="RECAP_CACHE_TTL", ge=60
    )

    no_show_timeout_seconds: float = Field(
        default=2.0, alias="NO_SHOW_TIMEOUT", gt=0
    )
    redetect_timeout_seconds: float = Field(
        default=3.0, alias="REDETECT_TIMEOUT", gt=0
    )
    show_info_poll_seconds: float = Field(
        default=3.0, alias="SHOW_INFO_POLL_SECONDS", gt=0
    )
    rescan_debounce_seconds: float = Field(
        default=0.75, alias="RESCAN_DEBOUNCE", ge=0
    )
    detect_debounce_seconds: float = Field(
        default=0.5, alias="DETECT_DEBOUNCE", ge=0
    )
    url_poll_seconds: float = Field(default=2.0, alias="URL_POLL_SECONDS", gt=0)

    audit_answers: bool = Field(default=False, alias="AUDIT_ANSWERS")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./spoilershield.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("wiki_allowlist", mode="before")
    @classmethod
    def _parse_wiki_allowlist(cls, value: object) -> dict[str, str]:
        """Normalise ``title=url`` pairs into a lowercase title map."""

        if value is None or value == "":
            return dict(DEFAULT_WIKI_ALLOWLIST)
        if isinstance(value, str):
            pairs: list[tuple[str, str]] = []
            for part in value.split(","):
                if not part.strip():
                    continue
                if "=" not in part:
                    raise ValueError("WIKI_ALLOWLIST entries must look like title=url")
                title, url = part.split("=", 1)
                pairs.append((title, url))
        elif isinstance(value, Mapping):
            pairs = [(str(key), str(url)) for key, url in value.items()]
        else:
            raise TypeError("WIKI_ALLOWLIST must be a string or mapping")

        cleaned: dict[str, str] = {}
        for title, url in pairs:
            key = " ".join(title.split()).casefold()
            base = url.strip().rstrip("/")
            if key and base:
                cleaned[key] = base
        return cleaned

    @field_validator("wiki_seasons", mode="before")
    @classmethod
    def _parse_wiki_seasons(cls, value: object) -> tuple[int, ...]:
        if value is None or value == "":
            return (1,)
        if isinstance(value, str):
            raw_values: Iterable[object] = value.split(",")
        elif isinstance(value, Iterable):
            raw_values = value
        elif isinstance(value, int):
            raw_values = [value]
        else:
            raise TypeError("WIKI_SEASONS must be a string or iterable of integers")
        seasons = sorted({int(str(part).strip()) for part in raw_values if str(part).strip()})
        return tuple(seasons) or (1,)

    @property
    def gemini_configured(self) -> bool:
        return bool(self.gemini_api_key)

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", populate_by_name=True
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
