"""Pydantic models describing captured context, sessions and recaps."""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .utils import slugify

Platform = Literal["netflix", "crunchyroll", "other"]
ResponseStyle = Literal["quick", "explain", "lore"]
RefinementOption = Literal["shorter", "detail", "examples", "terms"]


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def epoch_ms() -> int:
    return int(time.time() * 1000)


class _CamelModel(BaseModel):
    """Base model persisted with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict[str, object]:
        return self.model_dump(by_alias=True, mode="json")


class EpisodeInfo(_CamelModel):
    season: str
    episode: str

    @field_validator("season", "episode", mode="before")
    @classmethod
    def _coerce_number(cls, value: object) -> str:
        if value is None:
            return ""
        return str(value).strip()

    def label(self) -> str:
        return f"S{self.season}E{self.episode}"


class ContextRecord(_CamelModel):
    """Snapshot of the rolling caption buffer for one page."""

    platform: Platform = "other"
    url: str = ""
    title: str = ""
    updated_at: str = Field(
        default_factory=utcnow_iso,
        validation_alias=AliasChoices("updatedAt", "updated_at", "capturedAt"),
    )
    lines: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("lines", "buffer"),
    )
    context_text: str = ""

    def is_empty(self) -> bool:
        return not (self.context_text or self.lines)


class ShowInfo(_CamelModel):
    """Result of a single show-info detection pass."""

    platform: Platform = "other"
    show_title: str = ""
    episode_info: EpisodeInfo | None = None
    url: str = ""
    detected_at: str = Field(default_factory=utcnow_iso)

    @classmethod
    def cleared(cls, *, platform: Platform = "other", url: str = "") -> "ShowInfo":
        """Explicit marker meaning "this page is not a show page"."""

        return cls(platform=platform, show_title="", url=url)

    @property
    def is_empty(self) -> bool:
        return not self.show_title.strip()

    @property
    def has_episode(self) -> bool:
        return bool(
            self.episode_info
            and self.episode_info.season
            and self.episode_info.episode
        )

    def identity_key(self) -> str:
        season = self.episode_info.season if self.episode_info else ""
        episode = self.episode_info.episode if self.episode_info else ""
        return f"{self.show_title}|{self.platform}|{season}|{episode}"


def show_identity_key(info: ShowInfo | None) -> str:
    """Dedup key used by the relay and the panel; ``none`` when nothing is known."""

    if info is None or info.is_empty:
        return "none"
    return info.identity_key()


def make_session_id(
    show_id: int | str | None, show_title: str, season: str, episode: str
) -> str:
    """Deterministic session identifier for a show/episode pair."""

    base = str(show_id) if show_id else slugify(show_title)
    return f"{base}-s{season}e{episode}"


class SessionMeta(_CamelModel):
    session_id: str
    show_id: int | None = None
    show_title: str
    platform: str = "other"
    season: str = ""
    episode: str = ""
    context: str = ""
    last_message_at: int = Field(default_factory=epoch_ms)
    message_count: int = 0
    # Sessions written before the confirmation flag existed count as confirmed.
    confirmed: bool = True


class ChatMessage(_CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: Literal["user", "assistant"]
    content: str
    timestamp: str = Field(default_factory=utcnow_iso)
    style: ResponseStyle | None = None
    is_error: bool = False


class RecapSource(str, Enum):
    PRIMARY_METADATA = "primary-metadata"
    WIKI = "wiki"
    WEB_SEARCH = "web-search"
    MANUAL = "manual"


class CachedRecap(_CamelModel):
    summary: str
    source: RecapSource
    cached_at: int = Field(default_factory=epoch_ms)


class RecapResult(BaseModel):
    summary: str | None = None
    source: RecapSource | None = None
    error: str | None = None

    @classmethod
    def empty(cls, error: str | None = None) -> "RecapResult":
        return cls(summary=None, source=None, error=error)


class InitPhase(str, Enum):
    DETECTING = "detecting"
    RESOLVING = "resolving"
    READY = "ready"
    NEEDS_EPISODE = "needs-episode"
    NO_SHOW = "no-show"
    ERROR = "error"
