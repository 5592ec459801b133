"""Cross-context relay between the page-side capture and the panel.

The page writes whole records into the shared store. The relay turns store
changes into ``SHOW_INFO``/``CONTEXT`` broadcasts, answers pull requests from
the panel and replays the last known state when the panel announces that it
is ready. Nothing here assumes that messages arrive, or arrive in order.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from .messaging import (
    CONTEXT,
    CONTEXT_UPDATE,
    GET_CONTEXT,
    PANEL_READY,
    REDETECT_SHOW_INFO,
    REQUEST_CONTEXT,
    REQUEST_REDETECT,
    REQUEST_SHOW_INFO,
    SHOW_INFO,
    Message,
    MessageBus,
)
from .models import ContextRecord, ShowInfo, show_identity_key
from .store import CONTEXT_KEY, SHOW_INFO_KEY, KeyValueStore, StoreChange, tab_context_key

logger = logging.getLogger(__name__)

UNKNOWN_KEY = "unknown"


def parse_show_info(value: Any) -> ShowInfo | None:
    if not isinstance(value, dict):
        return None
    try:
        return ShowInfo.model_validate(value)
    except ValidationError:
        logger.debug("Ignoring malformed show info: %s", value)
        return None


def parse_context(value: Any) -> ContextRecord | None:
    if not isinstance(value, dict):
        return None
    try:
        record = ContextRecord.model_validate(value)
    except ValidationError:
        logger.debug("Ignoring malformed context record")
        return None
    if not record.context_text and record.lines:
        record.context_text = " ".join(record.lines)
    return record


class CrossContextRelay:
    """Background-side bridge from the shared store to the panel."""

    def __init__(self, store: KeyValueStore, bus: MessageBus):
        self._store = store
        self._bus = bus
        self._last_sent_show_key: str | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self.active_tab_id: int | None = None

    def start(self) -> None:
        self._unsubscribers = [
            self._store.subscribe(self._on_store_change),
            self._bus.subscribe(CONTEXT_UPDATE, self._on_context_update),
            self._bus.subscribe(REQUEST_SHOW_INFO, self._on_request_show_info),
            self._bus.subscribe(REQUEST_CONTEXT, self._on_request_context),
            self._bus.subscribe(REQUEST_REDETECT, self._on_request_redetect),
            self._bus.subscribe(PANEL_READY, self._on_panel_ready),
        ]

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def send_show_info(self, *, force: bool = False) -> bool:
        """Post the stored show info unless it matches what was last sent."""

        try:
            raw = await self._store.get(SHOW_INFO_KEY)
        except Exception:
            logger.warning("Reading show info failed", exc_info=True)
            return False
        info = parse_show_info(raw)
        key = UNKNOWN_KEY if info is None else show_identity_key(info)
        if not force and key == self._last_sent_show_key:
            return False
        self._last_sent_show_key = key
        logger.info(
            "Show info changed, posting to panel: title=%r platform=%s episode=%s",
            info.show_title if info else None,
            info.platform if info else None,
            info.episode_info.label() if info and info.episode_info else None,
        )
        self._bus.post(
            Message(type=SHOW_INFO, payload=info.to_payload() if info is not None else None)
        )
        return True

    async def send_context(self) -> ContextRecord | None:
        record = await self._read_context()
        self._bus.post(Message(type=CONTEXT, payload=record.to_payload() if record else None))
        return record

    async def _read_context(self) -> ContextRecord | None:
        try:
            record = parse_context(await self._store.get(CONTEXT_KEY))
        except Exception:
            logger.warning("Reading context failed", exc_info=True)
            record = None
        if record is not None and not record.is_empty():
            return record

        recovered = await self._fetch_live_context()
        if recovered is None and self.active_tab_id is not None:
            try:
                recovered = parse_context(await self._store.get(tab_context_key(self.active_tab_id)))
            except Exception:
                logger.debug("Per-tab context read failed", exc_info=True)
        if recovered is None or recovered.is_empty():
            return record
        try:
            await self._store.set(CONTEXT_KEY, recovered.to_payload())
        except Exception:
            logger.debug("Context write-back failed", exc_info=True)
        return recovered

    async def _fetch_live_context(self) -> ContextRecord | None:
        try:
            response = await self._bus.request(Message(type=GET_CONTEXT, tab_id=self.active_tab_id))
        except LookupError:
            return None
        except Exception:
            logger.debug("GET_CONTEXT failed", exc_info=True)
            return None
        if isinstance(response, dict) and response.get("ok"):
            return parse_context(response.get("record"))
        return None

    async def _on_store_change(self, change: StoreChange) -> None:
        if change.key == SHOW_INFO_KEY:
            self._last_sent_show_key = None
            await self.send_show_info()
        elif change.key == CONTEXT_KEY and parse_context(change.new_value) is not None:
            self._bus.post(Message(type=CONTEXT, payload=change.new_value))

    async def _on_context_update(self, message: Message) -> None:
        if message.tab_id is None:
            return
        payload = message.payload if isinstance(message.payload, dict) else {}
        record = payload.get("record")
        if not isinstance(record, dict):
            return
        self.active_tab_id = message.tab_id
        try:
            await self._store.set(tab_context_key(message.tab_id), record)
        except Exception:
            logger.debug("Per-tab context write failed", exc_info=True)

    async def _on_request_show_info(self, _: Message) -> None:
        await self.send_show_info()

    async def _on_request_context(self, _: Message) -> None:
        await self.send_context()

    async def _on_request_redetect(self, _: Message) -> None:
        logger.info("Re-detect requested")
        if not self._bus.post(Message(type=REDETECT_SHOW_INFO, tab_id=self.active_tab_id)):
            logger.info("Page detector not attached; replaying stored show info only")
        await self.send_show_info(force=True)

    async def _on_panel_ready(self, _: Message) -> None:
        await self.send_show_info(force=True)
        await self.send_context()


ShowInfoHandler = Callable[[ShowInfo], Awaitable[None]]
ContextHandler = Callable[[ContextRecord | None], Awaitable[None]]


class PanelLink:
    """Panel-side consumer of relay broadcasts.

    Redundant deliveries are suppressed by identity key so that periodic
    refreshes do not re-trigger downstream lookups. A ``None`` payload means
    "nothing known yet" and is ignored; an empty show title is delivered
    because it is an explicit reset.
    """

    def __init__(self, bus: MessageBus, *, refresh_interval: float = 3.0):
        self._bus = bus
        self._refresh_interval = refresh_interval
        self._on_show_info: ShowInfoHandler | None = None
        self._on_context: ContextHandler | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._refresh_task: asyncio.Task[None] | None = None
        self.last_key: str | None = None
        self.latest_context: ContextRecord | None = None

    def connect(
        self,
        on_show_info: ShowInfoHandler,
        on_context: ContextHandler | None = None,
        *,
        periodic_refresh: bool = True,
    ) -> None:
        self._on_show_info = on_show_info
        self._on_context = on_context
        self._unsubscribers = [
            self._bus.subscribe(SHOW_INFO, self._handle_show_info),
            self._bus.subscribe(CONTEXT, self._handle_context),
        ]
        self._bus.post(Message(type=PANEL_READY))
        if periodic_refresh and self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def disconnect(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None

    def reset_dedup(self) -> None:
        self.last_key = None

    def request_show_info(self) -> None:
        self._bus.post(Message(type=REQUEST_SHOW_INFO))

    def request_context(self) -> None:
        self._bus.post(Message(type=REQUEST_CONTEXT))

    def request_redetect(self) -> None:
        self.reset_dedup()
        self._bus.post(Message(type=REQUEST_REDETECT))

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_interval)
            self.request_show_info()

    async def _handle_show_info(self, message: Message) -> None:
        info = parse_show_info(message.payload)
        if info is None:
            return
        key = show_identity_key(info)
        if key == self.last_key:
            return
        self.last_key = key
        if self._on_show_info is not None:
            await self._on_show_info(info)

    async def _handle_context(self, message: Message) -> None:
        self.latest_context = parse_context(message.payload)
        if self._on_context is not None:
            await self._on_context(self.latest_context)
