"""Wiring of the capture, relay, session and recap components for one panel."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, Field

from .config import Settings
from .detection import ShowInfoDetector
from .init_flow import InitFlow, ShowLookup
from .messaging import MessageBus
from .models import ContextRecord
from .page import PageDocument
from .relay import CrossContextRelay, PanelLink, parse_context
from .services.chat import ChatService
from .services.fandom import FandomClient
from .services.gemini import GeminiClient
from .services.recap import RecapCache, RecapResolver
from .services.tvmaze import TVMazeClient
from .sessions import SessionStore
from .store import CONTEXT_KEY, KeyValueStore
from .subtitles import SubtitleObserver

logger = logging.getLogger(__name__)


class PageMutation(BaseModel):
    """A forwarded DOM change: new text for a node or a new subtree."""

    kind: Literal["text", "html"] = "text"
    selector: str = Field(min_length=1)
    value: str = ""


@dataclass
class TabCapture:
    page: PageDocument
    observer: SubtitleObserver
    detector: ShowInfoDetector


class Companion:
    """Owns every long-lived component and the per-tab capture pipelines."""

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        *,
        tvmaze: TVMazeClient,
        gemini: GeminiClient,
        fandom: FandomClient | None = None,
        lookup: ShowLookup | None = None,
    ):
        self._settings = settings
        self.store = store
        self.bus = MessageBus()
        self.relay = CrossContextRelay(store, self.bus)
        self.sessions = SessionStore(store, max_sessions=settings.max_sessions)
        self.recaps = RecapResolver(
            RecapCache(store, ttl_seconds=settings.recap_cache_ttl_seconds),
            tvmaze=tvmaze,
            fandom=fandom,
            gemini=gemini,
        )
        self.link = PanelLink(self.bus, refresh_interval=settings.show_info_poll_seconds)
        self.init_flow = InitFlow(
            self.sessions,
            lookup or tvmaze,
            self.recaps,
            self.link,
            no_show_timeout=settings.no_show_timeout_seconds,
            redetect_timeout=settings.redetect_timeout_seconds,
        )
        self.chat = ChatService(self.sessions, gemini, audit_answers=settings.audit_answers)
        self.tabs: dict[int, TabCapture] = {}

    async def start(self) -> None:
        self.relay.start()
        await self.init_flow.start()

    async def stop(self) -> None:
        for tab_id in list(self.tabs):
            await self.close_tab(tab_id)
        await self.init_flow.stop()
        self.relay.stop()
        await self.bus.drain()

    async def load_page(self, tab_id: int, html: str, url: str) -> TabCapture:
        """Mount a page snapshot for ``tab_id``, creating its pipeline on first sight."""

        self.relay.active_tab_id = tab_id
        capture = self.tabs.get(tab_id)
        if capture is None:
            page = PageDocument(html, url, tab_id=tab_id)
            capture = TabCapture(
                page=page,
                observer=SubtitleObserver(
                    page,
                    self.store,
                    self.bus,
                    buffer_lines=self._settings.caption_buffer_lines,
                    rescan_delay=self._settings.rescan_debounce_seconds,
                ),
                detector=ShowInfoDetector(
                    page,
                    self.store,
                    self.bus,
                    debounce=self._settings.detect_debounce_seconds,
                    url_poll_interval=self._settings.url_poll_seconds,
                ),
            )
            self.tabs[tab_id] = capture
            capture.observer.start()
            await capture.detector.start()
            logger.info("Attached capture to tab %s (%s)", tab_id, page.hostname)
            return capture

        capture.page.load(html, url)
        capture.observer.reset_observers()
        await capture.detector.run()
        return capture

    async def apply_mutations(self, tab_id: int, mutations: list[PageMutation]) -> int:
        capture = self.tabs.get(tab_id)
        if capture is None:
            raise KeyError(tab_id)
        applied = 0
        for mutation in mutations:
            try:
                if mutation.kind == "html":
                    changed = capture.page.replace_children(mutation.selector, mutation.value)
                else:
                    changed = capture.page.set_text(mutation.selector, mutation.value)
            except ValueError:
                logger.debug("Ignoring mutation with invalid selector %s", mutation.selector)
                continue
            applied += int(changed)
        await capture.observer.flush()
        return applied

    async def close_tab(self, tab_id: int) -> None:
        capture = self.tabs.pop(tab_id, None)
        if capture is None:
            return
        capture.observer.stop()
        await capture.detector.stop()

    async def current_context(self) -> ContextRecord | None:
        return parse_context(await self.store.get(CONTEXT_KEY))

    async def state(self) -> dict[str, Any]:
        snapshot = self.init_flow.snapshot()
        active = await self.sessions.active_session()
        context = await self.current_context()
        snapshot["activeSession"] = (
            {
                "meta": active.meta.to_payload(),
                "messages": [message.to_payload() for message in active.messages],
            }
            if active
            else None
        )
        if active is not None:
            recap = self.init_flow.recap_results.get(active.meta.session_id)
            snapshot["recap"] = recap.model_dump(mode="json") if recap else None
        else:
            snapshot["recap"] = None
        snapshot["context"] = context.to_payload() if context else None
        return snapshot
