"""Rolling caption capture for the watched page."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Iterable

from bs4 import Tag

from .messaging import CONTEXT_UPDATE, GET_CONTEXT, Message, MessageBus
from .models import ContextRecord, Platform
from .page import MutationRecord, Observation, PageDocument, element_area, unique_nodes, visible_text
from .store import CONTEXT_KEY, KeyValueStore
from .utils import clamp_tail, normalize_line

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_LINES = 40
RECENT_WINDOW = 6
MAX_ELEMENT_AREA = 300_000
MAX_CONTEXT_CHARS = 2_000

PLATFORM_SELECTORS: dict[str, tuple[str, ...]] = {
    "netflix": (
        ".player-timedtext-text-container",
        ".player-timedtext",
        '[data-uia*="timedtext" i]',
        '[data-uia*="subtitle" i]',
        '[data-uia*="caption" i]',
    ),
    "crunchyroll": (
        "#velocity-canvas-subtitles",
        '[data-testid*="subtitle" i]',
        '[class*="vjs-text-track" i]',
        ".libassjs-canvas-parent",
    ),
}

GENERIC_SELECTORS: tuple[str, ...] = (
    '[class*="subtitle" i]',
    '[class*="caption" i]',
    "[aria-live]",
    '[role="alert"]',
    '[role="status"]',
)


def detect_platform(hostname: str) -> Platform:
    host = (hostname or "").lower()
    if host == "netflix.com" or host.endswith(".netflix.com"):
        return "netflix"
    if host == "crunchyroll.com" or host.endswith(".crunchyroll.com"):
        return "crunchyroll"
    return "other"


def selectors_for(platform: str) -> tuple[str, ...]:
    return PLATFORM_SELECTORS.get(platform, ()) + GENERIC_SELECTORS


def extract_lines(node: Tag) -> list[str]:
    """Split an element's visible text into distinct normalised lines."""

    lines: list[str] = []
    for part in visible_text(node).split("\n"):
        line = normalize_line(part)
        if line and line not in lines:
            lines.append(line)
    return lines


class CaptionBuffer:
    """Bounded FIFO of distinct caption lines.

    A line is rejected when it equals the previous entry or appears anywhere
    in the last ``recent_window`` entries; players that redraw both subtitle
    rows on every tick would otherwise flood the buffer.
    """

    def __init__(self, max_lines: int = DEFAULT_BUFFER_LINES, recent_window: int = RECENT_WINDOW):
        if max_lines < 1:
            raise ValueError("max_lines must be positive")
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._recent_window = recent_window
        self.last_line = ""
        self.updated_at: str | None = None

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def max_lines(self) -> int:
        return self._lines.maxlen or 0

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    def add(self, text: str) -> bool:
        line = normalize_line(text)
        if not line:
            return False
        if self._lines and self._lines[-1] == line:
            return False
        recent = list(self._lines)[-self._recent_window :]
        if line in recent:
            return False
        self._lines.append(line)
        self.last_line = line
        self.updated_at = datetime.now(timezone.utc).isoformat()
        return True

    def extend(self, lines: Iterable[str]) -> int:
        return sum(1 for line in lines if self.add(line))


class SubtitleObserver:
    """Watches caption containers on a page and publishes the rolling buffer."""

    def __init__(
        self,
        page: PageDocument,
        store: KeyValueStore,
        bus: MessageBus | None = None,
        *,
        buffer_lines: int = DEFAULT_BUFFER_LINES,
        rescan_delay: float = 0.75,
        max_element_area: float = MAX_ELEMENT_AREA,
    ):
        self._page = page
        self._store = store
        self._bus = bus
        self._rescan_delay = rescan_delay
        self._max_element_area = max_element_area
        self.buffer = CaptionBuffer(buffer_lines)
        self._element_observations: list[Observation] = []
        self._document_observation: Observation | None = None
        self._rescan_handle: asyncio.TimerHandle | None = None
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def platform(self) -> Platform:
        return detect_platform(self._page.hostname)

    @property
    def observed_count(self) -> int:
        return len(self._element_observations)

    def start(self) -> None:
        try:
            self._document_observation = self._page.observe(None, self._on_document_mutation)
        except Exception:
            logger.debug("Could not attach document watcher", exc_info=True)
        if self._bus is not None:
            self._bus.register_responder(GET_CONTEXT, self._answer_get_context)
        self.reset_observers()

    def stop(self) -> None:
        if self._rescan_handle is not None:
            self._rescan_handle.cancel()
            self._rescan_handle = None
        if self._document_observation is not None:
            self._document_observation.disconnect()
            self._document_observation = None
        for observation in self._element_observations:
            observation.disconnect()
        self._element_observations = []
        if self._bus is not None:
            self._bus.unregister_responder(GET_CONTEXT, self._answer_get_context)

    def pick_subtitle_elements(self) -> list[Tag]:
        groups: list[list[Tag]] = []
        for selector in selectors_for(self.platform):
            try:
                groups.append(self._page.select(selector))
            except ValueError:
                logger.debug("Skipping selector %s", selector)
        candidates: list[Tag] = []
        for node in unique_nodes(groups):
            area = element_area(node)
            if area is not None and area >= self._max_element_area:
                continue
            candidates.append(node)
        return candidates

    def reset_observers(self) -> None:
        """Drop every element observation and attach fresh ones to current candidates."""

        for observation in self._element_observations:
            observation.disconnect()
        self._element_observations = []
        for node in self.pick_subtitle_elements():
            try:
                observation = self._page.observe(
                    node, lambda records, target=node: self._on_element_mutation(target)
                )
            except Exception:
                logger.debug("Could not observe caption node", exc_info=True)
                continue
            self._element_observations.append(observation)

    def build_record(self) -> ContextRecord:
        lines = self.buffer.lines
        return ContextRecord(
            platform=self.platform,
            url=self._page.url,
            title=self._page_title(),
            updated_at=self.buffer.updated_at or datetime.now(timezone.utc).isoformat(),
            lines=lines,
            context_text=clamp_tail(" ".join(lines), MAX_CONTEXT_CHARS),
        )

    async def flush(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _page_title(self) -> str:
        return normalize_line(self._page.meta_content("og:title") or self._page.title)

    def _on_element_mutation(self, node: Tag) -> None:
        lines = extract_lines(node)
        if not lines:
            return
        if self.buffer.extend(lines):
            self._publish()

    def _on_document_mutation(self, records: list[MutationRecord]) -> None:
        if not any(record.kind == "childList" for record in records):
            return
        if self._rescan_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.reset_observers()
            return
        self._rescan_handle = loop.call_later(self._rescan_delay, self._run_rescan)

    def _run_rescan(self) -> None:
        self._rescan_handle = None
        self.reset_observers()

    def _publish(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No event loop; caption update not published")
            return
        task = loop.create_task(self._write_record(self.build_record()))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_record(self, record: ContextRecord) -> None:
        payload = record.to_payload()
        try:
            await self._store.set(CONTEXT_KEY, payload)
        except Exception:
            logger.debug("Context write failed", exc_info=True)
        if self._bus is None:
            return
        try:
            self._bus.post(
                Message(type=CONTEXT_UPDATE, payload={"record": payload}, tab_id=self._page.tab_id)
            )
        except Exception:
            logger.debug("Context update message failed", exc_info=True)

    async def _answer_get_context(self, _: Message) -> dict[str, object]:
        return {"ok": True, "record": self.build_record().to_payload()}
