from __future__ import annotations

import asyncio

import pytest

from app.errors import InvalidTransitionError, LookupFailedError
from app.init_flow import TRANSITIONS, InitFlow
from app.models import ChatMessage, EpisodeInfo, InitPhase, RecapResult, RecapSource, ShowInfo
from app.services.tvmaze import ShowMatch
from app.sessions import SessionStore
from app.store import MemoryKeyValueStore

JJK = ShowMatch(show_id=40748, canonical_name="Jujutsu Kaisen")


class FakeLookup:
    def __init__(self, matches: dict[str, ShowMatch] | None = None, error: Exception | None = None):
        self.matches = matches if matches is not None else {"Jujutsu Kaisen": JJK}
        self.error = error
        self.gate: asyncio.Event | None = None
        self.calls: list[str] = []

    async def lookup_show(self, title: str) -> ShowMatch | None:
        self.calls.append(title)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.matches.get(title)


class FakeRecaps:
    def __init__(self, summary: str | None = "Safe recap."):
        self.summary = summary
        self.gate: asyncio.Event | None = None
        self.calls: list[tuple] = []

    async def resolve(self, show_title, show_id, season, episode) -> RecapResult:
        self.calls.append((show_title, show_id, season, episode))
        if self.gate is not None:
            await self.gate.wait()
        if self.summary is None:
            return RecapResult.empty()
        return RecapResult(summary=self.summary, source=RecapSource.PRIMARY_METADATA)


def _info(title: str = "Jujutsu Kaisen", episode: str | None = "4") -> ShowInfo:
    return ShowInfo(
        platform="crunchyroll",
        show_title=title,
        episode_info=EpisodeInfo(season="1", episode=episode) if episode else None,
    )


def _flow(lookup=None, recaps=None, **kwargs) -> tuple[InitFlow, SessionStore]:
    sessions = SessionStore(MemoryKeyValueStore())
    return InitFlow(sessions, lookup or FakeLookup(), recaps, **kwargs), sessions


def test_every_phase_has_transitions():
    assert set(TRANSITIONS) == set(InitPhase)
    assert InitPhase.DETECTING not in TRANSITIONS[InitPhase.RESOLVING]


def test_invalid_transition_raises():
    flow, _ = _flow()

    with pytest.raises(InvalidTransitionError) as excinfo:
        flow.transition(InitPhase.NEEDS_EPISODE)

    assert excinfo.value.current == "detecting"
    assert flow.phase is InitPhase.DETECTING


def test_detected_episode_becomes_ready_with_recap_fetched_once():
    recaps = FakeRecaps()

    async def runner():
        flow, sessions = _flow(recaps=recaps)
        await flow.on_show_info(_info())
        phase = flow.phase
        assert flow.recap_loading == {"40748-s1e4"}
        await flow.wait_for_background()
        await flow.on_show_info(_info())
        await flow.wait_for_background()
        return phase, flow, await sessions.get_session("40748-s1e4"), await sessions.active_session_id()

    phase, flow, meta, active = asyncio.run(runner())

    assert phase is InitPhase.READY
    assert flow.phase is InitPhase.READY
    assert active == "40748-s1e4"
    assert meta.context == "Safe recap."
    assert meta.confirmed is False
    assert recaps.calls == [("Jujutsu Kaisen", 40748, "1", "4")]
    assert flow.recap_results["40748-s1e4"].source is RecapSource.PRIMARY_METADATA
    assert flow.snapshot()["recapLoading"] == []


def test_recap_never_overwrites_context_set_meanwhile():
    recaps = FakeRecaps()

    async def runner() -> str:
        recaps.gate = asyncio.Event()
        flow, sessions = _flow(recaps=recaps)
        await flow.on_show_info(_info())
        await sessions.update_context("My manual notes")
        recaps.gate.set()
        await flow.wait_for_background()
        return (await sessions.get_session("40748-s1e4")).context

    assert asyncio.run(runner()) == "My manual notes"


def test_no_recap_without_show_id():
    recaps = FakeRecaps()

    async def runner() -> tuple[InitPhase, str | None]:
        flow, sessions = _flow(lookup=FakeLookup(matches={}), recaps=recaps)
        await flow.on_show_info(_info("Obscure Show"))
        await flow.wait_for_background()
        return flow.phase, await sessions.active_session_id()

    phase, active = asyncio.run(runner())

    assert phase is InitPhase.READY
    assert active == "obscure-show-s1e4"
    assert recaps.calls == []


def test_title_without_episode_needs_episode_then_manual_setup():
    async def runner():
        flow, sessions = _flow()
        await flow.on_show_info(_info(episode=None))
        needs = flow.phase
        session_id = await flow.confirm_manual_setup("Jujutsu Kaisen", 40748, "crunchyroll", "1", "7")
        return needs, flow.phase, session_id, await sessions.active_session_id()

    needs, phase, session_id, active = asyncio.run(runner())

    assert needs is InitPhase.NEEDS_EPISODE
    assert phase is InitPhase.READY
    assert session_id == active == "40748-s1e7"


def test_unknown_title_without_episode_is_no_show():
    async def runner():
        flow, sessions = _flow(lookup=FakeLookup(matches={}))
        await flow.on_show_info(_info("Browse", episode=None))
        return flow.phase, await sessions.sessions()

    phase, sessions = asyncio.run(runner())

    assert phase is InitPhase.NO_SHOW
    assert sessions == []


def test_empty_detection_resets_to_no_show_but_keeps_active_session():
    async def runner():
        flow, sessions = _flow()
        await flow.on_show_info(_info())
        await flow.on_show_info(ShowInfo.cleared(platform="crunchyroll"))
        await flow.on_show_info(ShowInfo.cleared(platform="crunchyroll"))
        return flow, await sessions.active_session_id()

    flow, active = asyncio.run(runner())

    assert flow.phase is InitPhase.NO_SHOW
    assert flow.detected is None
    assert active == "40748-s1e4"


def test_lookup_failure_moves_to_error_and_redetect_recovers():
    async def runner():
        flow, _ = _flow(lookup=FakeLookup(error=RuntimeError("network down")), redetect_timeout=60)
        await flow.on_show_info(_info())
        snapshot = flow.snapshot()
        error = flow.last_error
        await flow.on_show_info(ShowInfo.cleared())
        still = flow.phase
        flow.request_redetect()
        phase = flow.phase
        await flow.stop()
        return snapshot, error, still, phase

    snapshot, error, still, phase = asyncio.run(runner())

    assert snapshot["phase"] == "error"
    assert snapshot["error"] == "Show lookup failed for 'Jujutsu Kaisen'"
    assert isinstance(error, LookupFailedError)
    assert isinstance(error.__cause__, RuntimeError)
    assert still is InitPhase.ERROR
    assert phase is InitPhase.DETECTING


def test_stale_lookup_is_discarded_after_reset():
    lookup = FakeLookup()

    async def runner():
        lookup.gate = asyncio.Event()
        flow, sessions = _flow(lookup=lookup)
        pending = asyncio.create_task(flow.on_show_info(_info()))
        await asyncio.sleep(0)
        resolving = flow.phase
        await flow.on_show_info(ShowInfo.cleared())
        lookup.gate.set()
        await pending
        return resolving, flow.phase, await sessions.sessions()

    resolving, phase, sessions = asyncio.run(runner())

    assert resolving is InitPhase.RESOLVING
    assert phase is InitPhase.NO_SHOW
    assert sessions == []


def test_redetect_is_rejected_while_resolving():
    lookup = FakeLookup()

    async def runner():
        lookup.gate = asyncio.Event()
        flow, _ = _flow(lookup=lookup)
        pending = asyncio.create_task(flow.on_show_info(_info()))
        await asyncio.sleep(0)
        with pytest.raises(InvalidTransitionError):
            flow.request_redetect()
        lookup.gate.set()
        await pending
        return flow.phase

    assert asyncio.run(runner()) is InitPhase.READY


def test_next_episode_offers_chat_import():
    async def runner():
        flow, sessions = _flow()
        await flow.on_show_info(_info(episode="4"))
        await sessions.append_messages(
            "40748-s1e4",
            ChatMessage(role="user", content="Who is Sukuna?"),
            ChatMessage(role="assistant", content="The King of Curses."),
        )
        await flow.on_show_info(_info(episode="5"))
        offer = flow.import_offer
        payload = offer.to_payload()
        await sessions.append_messages("40748-s1e5", ChatMessage(role="user", content="And Gojo?"))
        imported = await flow.accept_import()
        messages = await sessions.get_messages("40748-s1e5")
        return payload, imported, messages, await sessions.get_session("40748-s1e5"), flow.import_offer

    payload, imported, messages, meta, leftover = asyncio.run(runner())

    assert payload["label"] == "Import E4 chat"
    assert payload["sourceSessionId"] == "40748-s1e4"
    assert payload["targetSessionId"] == "40748-s1e5"
    assert imported == 2
    assert [m.content for m in messages] == [
        "Who is Sukuna?",
        "The King of Curses.",
        "[Imported from E4]",
        "And Gojo?",
    ]
    assert meta.message_count == 4
    assert meta.confirmed is True
    assert leftover is None


def test_same_episode_again_makes_no_offer():
    async def runner():
        flow, _ = _flow()
        await flow.on_show_info(_info(episode="4"))
        await flow.on_show_info(_info(episode="4"))
        return flow.import_offer

    assert asyncio.run(runner()) is None


def test_timeout_without_show_info_goes_to_no_show():
    async def runner():
        flow, _ = _flow(no_show_timeout=0.01, redetect_timeout=0.01)
        await flow.start()
        await asyncio.sleep(0.05)
        timed_out = flow.phase
        flow.request_redetect()
        detecting = flow.phase
        await asyncio.sleep(0.05)
        await flow.stop()
        return timed_out, detecting, flow.phase

    timed_out, detecting, after = asyncio.run(runner())

    assert timed_out is InitPhase.NO_SHOW
    assert detecting is InitPhase.DETECTING
    assert after is InitPhase.NO_SHOW


def test_show_info_before_timeout_cancels_it():
    async def runner():
        flow, _ = _flow(no_show_timeout=0.01)
        await flow.start()
        await flow.on_show_info(_info())
        await asyncio.sleep(0.05)
        await flow.stop()
        return flow.phase

    assert asyncio.run(runner()) is InitPhase.READY


def test_empty_detection_clears_needs_episode():
    async def runner():
        flow, _ = _flow()
        await flow.on_show_info(_info(episode=None))
        needs = flow.phase
        await flow.on_show_info(ShowInfo.cleared())
        return needs, flow.phase

    needs, phase = asyncio.run(runner())

    assert needs is InitPhase.NEEDS_EPISODE
    assert phase is InitPhase.NO_SHOW
