"""Panel start-up flow: from "what is on screen?" to an active session.

The flow is an explicit state machine over :class:`InitPhase`. Every phase
change goes through :meth:`InitFlow.transition`, which consults
``TRANSITIONS`` and raises :class:`InvalidTransitionError` for anything not
listed there.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Protocol

from .errors import InvalidTransitionError, LookupFailedError
from .models import ChatMessage, InitPhase, RecapResult, ShowInfo
from .relay import PanelLink
from .services.recap import RecapResolver
from .services.tvmaze import ShowMatch
from .sessions import SessionStore

logger = logging.getLogger(__name__)

TRANSITIONS: dict[InitPhase, frozenset[InitPhase]] = {
    InitPhase.DETECTING: frozenset({InitPhase.RESOLVING, InitPhase.NO_SHOW, InitPhase.ERROR}),
    InitPhase.RESOLVING: frozenset(
        {
            InitPhase.READY,
            InitPhase.NEEDS_EPISODE,
            InitPhase.NO_SHOW,
            InitPhase.ERROR,
            InitPhase.RESOLVING,
        }
    ),
    InitPhase.NEEDS_EPISODE: frozenset(
        {
            InitPhase.READY,
            InitPhase.RESOLVING,
            InitPhase.NO_SHOW,
            InitPhase.DETECTING,
            InitPhase.ERROR,
        }
    ),
    InitPhase.READY: frozenset(
        {
            InitPhase.READY,
            InitPhase.RESOLVING,
            InitPhase.NO_SHOW,
            InitPhase.DETECTING,
            InitPhase.ERROR,
        }
    ),
    InitPhase.NO_SHOW: frozenset(
        {InitPhase.RESOLVING, InitPhase.DETECTING, InitPhase.READY, InitPhase.ERROR}
    ),
    InitPhase.ERROR: frozenset({InitPhase.DETECTING, InitPhase.RESOLVING, InitPhase.READY}),
}


class ShowLookup(Protocol):
    async def lookup_show(self, title: str) -> ShowMatch | None: ...


@dataclass(slots=True)
class ResolvedEpisode:
    season: str
    episode: str
    session_id: str


@dataclass
class ImportOffer:
    """One-click offer to carry the previous episode's chat into the new session."""

    source_session_id: str
    target_session_id: str
    source_episode: str
    target_episode: str

    @property
    def label(self) -> str:
        return f"Import E{self.source_episode} chat"

    @property
    def marker(self) -> str:
        return f"[Imported from E{self.source_episode}]"

    def to_payload(self) -> dict[str, str]:
        return {
            "sourceSessionId": self.source_session_id,
            "targetSessionId": self.target_session_id,
            "label": self.label,
            "description": f"Import your E{self.source_episode} conversation into this session?",
            "title": f"Now watching Episode {self.target_episode}",
        }


class InitFlow:
    def __init__(
        self,
        sessions: SessionStore,
        lookup: ShowLookup,
        recaps: RecapResolver | None = None,
        link: PanelLink | None = None,
        *,
        no_show_timeout: float = 2.0,
        redetect_timeout: float = 3.0,
    ):
        self._sessions = sessions
        self._lookup = lookup
        self._recaps = recaps
        self._link = link
        self._no_show_timeout = no_show_timeout
        self._redetect_timeout = redetect_timeout
        self._phase = InitPhase.DETECTING
        self._generation = 0
        self._has_received_show_info = False
        self._timer: asyncio.TimerHandle | None = None
        self._prev_episode: ResolvedEpisode | None = None
        self._recap_requested: set[str] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self.detected: ShowInfo | None = None
        self.import_offer: ImportOffer | None = None
        self.last_error: Exception | None = None
        self.recap_results: dict[str, RecapResult] = {}

    @property
    def phase(self) -> InitPhase:
        return self._phase

    @property
    def recap_loading(self) -> set[str]:
        return {sid for sid in self._recap_requested if sid not in self.recap_results}

    def transition(self, target: InitPhase) -> None:
        if target not in TRANSITIONS[self._phase]:
            error = InvalidTransitionError(self._phase.value, target.value)
            logger.warning("%s", error)
            raise error
        if target is not self._phase:
            logger.info("Init phase %s -> %s", self._phase.value, target.value)
        self._phase = target

    def _try_transition(self, target: InitPhase) -> bool:
        try:
            self.transition(target)
        except InvalidTransitionError:
            return False
        return True

    async def start(self) -> None:
        if self._link is not None:
            self._link.connect(self.on_show_info)
        self._arm_timer(self._no_show_timeout)

    async def stop(self) -> None:
        self._cancel_timer()
        if self._link is not None:
            await self._link.disconnect()
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with suppress(asyncio.CancelledError):
                await task

    async def wait_for_background(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def on_show_info(self, info: ShowInfo) -> None:
        """Handle one delivered detection; an empty title is the explicit reset."""

        if info.is_empty:
            self._handle_reset()
            return

        self._has_received_show_info = True
        self._cancel_timer()
        self.detected = info
        if not self._try_transition(InitPhase.RESOLVING):
            return
        self._generation += 1
        await self._resolve(info, self._generation)

    def _handle_reset(self) -> None:
        self._has_received_show_info = False
        self._generation += 1
        self._cancel_timer()
        self.detected = None
        if self._phase is InitPhase.NO_SHOW:
            return
        if not self._try_transition(InitPhase.NO_SHOW):
            logger.info("Ignoring empty detection while %s", self._phase.value)

    async def _resolve(self, info: ShowInfo, generation: int) -> None:
        try:
            match = await self._lookup.lookup_show(info.show_title)
        except Exception as exc:
            if generation != self._generation:
                return
            error = LookupFailedError(f"Show lookup failed for {info.show_title!r}")
            error.__cause__ = exc
            self.last_error = error
            logger.exception("Show lookup failed for %r", info.show_title)
            self._try_transition(InitPhase.ERROR)
            return
        if generation != self._generation:
            logger.info("Discarding stale lookup for %r", info.show_title)
            return

        show_id = match.show_id if match else None
        title = match.canonical_name if match else info.show_title
        has_episode = info.has_episode
        if match is None and not has_episode:
            # A title with no catalogue hit and no episode is most likely a browse page.
            self._try_transition(InitPhase.NO_SHOW)
            return

        season = info.episode_info.season if info.episode_info else ""
        episode = info.episode_info.episode if info.episode_info else ""
        session_id = await self._sessions.load_or_create_session(
            title, show_id, info.platform, season, episode
        )
        if generation != self._generation:
            return

        if not has_episode:
            self._prev_episode = None
            self._try_transition(InitPhase.NEEDS_EPISODE)
            return

        previous = self._prev_episode
        if (
            previous is not None
            and previous.session_id != session_id
            and (previous.season, previous.episode) != (season, episode)
        ):
            self.import_offer = ImportOffer(
                source_session_id=previous.session_id,
                target_session_id=session_id,
                source_episode=previous.episode,
                target_episode=episode,
            )
            logger.info("Offering import from %s into %s", previous.session_id, session_id)
        self._prev_episode = ResolvedEpisode(season=season, episode=episode, session_id=session_id)
        await self._maybe_fetch_recap(session_id, show_id, title, season, episode)
        self._try_transition(InitPhase.READY)

    async def confirm_manual_setup(
        self,
        show_title: str,
        show_id: int | None,
        platform: str,
        season: str,
        episode: str,
    ) -> str:
        """User-confirmed show and episode; always ends in ``ready``."""

        self._has_received_show_info = True
        self._cancel_timer()
        self._generation += 1
        if self._phase is not InitPhase.RESOLVING:
            self.transition(InitPhase.RESOLVING)
        session_id = await self._sessions.load_or_create_session(
            show_title, show_id, platform, season, episode
        )
        if season and episode:
            await self._maybe_fetch_recap(session_id, show_id, show_title, season, episode)
        self._prev_episode = ResolvedEpisode(season=season, episode=episode, session_id=session_id)
        self.transition(InitPhase.READY)
        return session_id

    def request_redetect(self) -> None:
        """Forget what was detected, ask the page to detect again and re-arm the timeout."""

        if self._phase is not InitPhase.DETECTING:
            self.transition(InitPhase.DETECTING)
        self._has_received_show_info = False
        self._generation += 1
        if self._link is not None:
            self._link.request_redetect()
        self._arm_timer(self._redetect_timeout)

    async def accept_import(self) -> int:
        """Copy the offered log into the target session; return the number of imported messages."""

        offer = self.import_offer
        if offer is None:
            return 0
        self.import_offer = None
        old_messages = await self._sessions.get_messages(offer.source_session_id)
        if not old_messages:
            return 0
        current = await self._sessions.get_messages(offer.target_session_id)
        marker = ChatMessage(role="assistant", content=offer.marker)
        await self._sessions.set_messages(offer.target_session_id, [*old_messages, marker, *current])
        await self._sessions.sync_message_count(offer.target_session_id)
        return len(old_messages)

    def dismiss_import(self) -> None:
        self.import_offer = None

    async def _maybe_fetch_recap(
        self,
        session_id: str,
        show_id: int | None,
        show_title: str,
        season: str,
        episode: str,
    ) -> None:
        if self._recaps is None or not show_id or session_id in self._recap_requested:
            return
        meta = await self._sessions.get_session(session_id)
        if meta is None or meta.context.strip():
            return
        self._recap_requested.add(session_id)
        task = asyncio.create_task(
            self._fetch_recap(session_id, show_id, show_title, season, episode)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fetch_recap(
        self, session_id: str, show_id: int, show_title: str, season: str, episode: str
    ) -> None:
        if self._recaps is None:
            return
        try:
            result = await self._recaps.resolve(show_title, show_id, season, episode)
        except Exception:
            logger.exception("Recap fetch failed for %s", session_id)
            result = RecapResult.empty(error="Failed to fetch recap")
        self.recap_results[session_id] = result
        if not result.summary:
            return
        if await self._sessions.fill_empty_context(session_id, result.summary):
            logger.info("Applied %s recap to %s", result.source.value if result.source else "?", session_id)
        else:
            logger.info("Discarded recap for %s: session gone or context already set", session_id)

    def _arm_timer(self, delay: float) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._on_timeout)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self) -> None:
        self._timer = None
        if self._has_received_show_info or self._phase is not InitPhase.DETECTING:
            return
        logger.info("No show info within timeout")
        self._try_transition(InitPhase.NO_SHOW)

    def snapshot(self) -> dict[str, Any]:
        return {
            "phase": self._phase.value,
            "detected": self.detected.to_payload() if self.detected else None,
            "importOffer": self.import_offer.to_payload() if self.import_offer else None,
            "recapLoading": sorted(self.recap_loading),
            "error": str(self.last_error) if self._phase is InitPhase.ERROR and self.last_error else None,
        }
