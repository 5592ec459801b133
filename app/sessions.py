"""Persistent per-episode conversation sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from pydantic import ValidationError

from .models import ChatMessage, SessionMeta, epoch_ms, make_session_id
from .store import (
    ACTIVE_SESSION_KEY,
    LEGACY_CHAT_KEY,
    SESSIONS_KEY,
    KeyValueStore,
    messages_key,
)

logger = logging.getLogger(__name__)

MAX_SESSIONS = 10
LEGACY_SESSION_ID = "legacy-session"


@dataclass
class ActiveSession:
    meta: SessionMeta
    messages: list[ChatMessage] = field(default_factory=list)


def _parse_sessions(raw: Any) -> list[SessionMeta]:
    sessions: list[SessionMeta] = []
    if not isinstance(raw, list):
        return sessions
    for item in raw:
        try:
            sessions.append(SessionMeta.model_validate(item))
        except ValidationError:
            logger.warning("Dropping malformed session entry: %s", item)
    return sessions


def _parse_messages(raw: Any) -> list[ChatMessage]:
    messages: list[ChatMessage] = []
    if not isinstance(raw, list):
        return messages
    for item in raw:
        try:
            messages.append(ChatMessage.model_validate(item))
        except ValidationError:
            logger.debug("Dropping malformed chat message")
    return messages


class SessionStore:
    """Session list, active pointer and message logs kept in a key-value store.

    The session list is ordered most-recently-touched first. Creating a
    session beyond ``max_sessions`` evicts the tail together with its message
    log. Auto-created sessions start unconfirmed and only show up in
    :meth:`confirmed_sessions` once :meth:`sync_message_count` has seen the
    user engage with them.
    """

    def __init__(self, store: KeyValueStore, *, max_sessions: int = MAX_SESSIONS):
        if max_sessions < 1:
            raise ValueError("max_sessions must be positive")
        self._store = store
        self._max_sessions = max_sessions
        self._lock = asyncio.Lock()

    @property
    def max_sessions(self) -> int:
        return self._max_sessions

    async def sessions(self) -> list[SessionMeta]:
        raw = await self._store.get(SESSIONS_KEY)
        if raw is None:
            return await self._migrate_legacy_chat()
        return _parse_sessions(raw)

    async def confirmed_sessions(self) -> list[SessionMeta]:
        return [session for session in await self.sessions() if session.confirmed]

    async def get_session(self, session_id: str) -> SessionMeta | None:
        for session in await self.sessions():
            if session.session_id == session_id:
                return session
        return None

    async def active_session_id(self) -> str | None:
        value = await self._store.get(ACTIVE_SESSION_KEY)
        return str(value) if value else None

    async def active_session(self) -> ActiveSession | None:
        session_id = await self.active_session_id()
        if not session_id:
            return None
        meta = await self.get_session(session_id)
        if meta is None:
            return None
        return ActiveSession(meta=meta, messages=await self.get_messages(session_id))

    async def load_or_create_session(
        self,
        show_title: str,
        show_id: int | None,
        platform: str,
        season: str,
        episode: str,
        context: str = "",
    ) -> str:
        """Return the deterministic session id, creating the session if needed, and activate it."""

        session_id = make_session_id(show_id, show_title, season, episode)
        async with self._lock:
            sessions = await self.sessions()
            existing = next((s for s in sessions if s.session_id == session_id), None)
            if existing is not None:
                existing.last_message_at = epoch_ms()
                sessions = [existing] + [s for s in sessions if s is not existing]
            else:
                created = SessionMeta(
                    session_id=session_id,
                    show_id=show_id,
                    show_title=show_title,
                    platform=platform,
                    season=season,
                    episode=episode,
                    context=context or "",
                    last_message_at=epoch_ms(),
                    message_count=0,
                    confirmed=False,
                )
                sessions = [created, *sessions]
                logger.info("Created session %s for %r", session_id, show_title)
                overflow = sessions[self._max_sessions :]
                if overflow:
                    sessions = sessions[: self._max_sessions]
                    for evicted in overflow:
                        logger.info("Evicting session %s", evicted.session_id)
                        await self._store.delete(messages_key(evicted.session_id))
            await self._write_sessions(sessions)
            await self._store.set(ACTIVE_SESSION_KEY, session_id)
        return session_id

    async def switch_session(self, session_id: str) -> bool:
        """Activate an existing session; unknown ids leave the pointer untouched."""

        async with self._lock:
            sessions = await self.sessions()
            target = next((s for s in sessions if s.session_id == session_id), None)
            if target is None:
                logger.warning("Refusing to switch to unknown session %s", session_id)
                return False
            await self._store.set(ACTIVE_SESSION_KEY, session_id)
            target.last_message_at = epoch_ms()
            await self._write_sessions([target] + [s for s in sessions if s is not target])
            return True

    async def delete_session(self, session_id: str) -> str | None:
        """Delete a session; return the id that is active afterwards."""

        async with self._lock:
            await self._store.delete(messages_key(session_id))
            remaining = [s for s in await self.sessions() if s.session_id != session_id]
            await self._write_sessions(remaining)
            active = await self.active_session_id()
            if active != session_id:
                return active
            next_id = remaining[0].session_id if remaining else None
            if next_id:
                await self._store.set(ACTIVE_SESSION_KEY, next_id)
            else:
                await self._store.delete(ACTIVE_SESSION_KEY)
            return next_id

    async def update_context(self, context: str, *, session_id: str | None = None) -> bool:
        """Replace the context of the active session (or ``session_id``)."""

        async with self._lock:
            target_id = session_id or await self.active_session_id()
            if not target_id:
                return False
            return await self._update(target_id, context=context)

    async def fill_empty_context(self, session_id: str, context: str) -> bool:
        """Set context only if ``session_id`` still exists and its context is still empty."""

        async with self._lock:
            session = await self.get_session(session_id)
            if session is None or session.context.strip():
                return False
            return await self._update(session_id, context=context)

    async def update_episode(self, season: str, episode: str) -> bool:
        async with self._lock:
            target_id = await self.active_session_id()
            if not target_id:
                return False
            return await self._update(target_id, season=season, episode=episode)

    async def sync_message_count(self, session_id: str) -> SessionMeta | None:
        """Recount the persisted log and mark the session confirmed."""

        async with self._lock:
            count = len(await self.get_messages(session_id))
            sessions = await self.sessions()
            for session in sessions:
                if session.session_id == session_id:
                    session.message_count = count
                    session.last_message_at = epoch_ms()
                    session.confirmed = True
                    await self._write_sessions(sessions)
                    return session
        return None

    async def get_messages(self, session_id: str) -> list[ChatMessage]:
        return _parse_messages(await self._store.get(messages_key(session_id)))

    async def set_messages(self, session_id: str, messages: Iterable[ChatMessage]) -> None:
        await self._store.set(
            messages_key(session_id), [message.to_payload() for message in messages]
        )

    async def append_messages(self, session_id: str, *messages: ChatMessage) -> list[ChatMessage]:
        log = await self.get_messages(session_id)
        log.extend(messages)
        await self.set_messages(session_id, log)
        return log

    async def _update(self, session_id: str, **changes: Any) -> bool:
        sessions = await self.sessions()
        for session in sessions:
            if session.session_id == session_id:
                for name, value in changes.items():
                    setattr(session, name, value)
                await self._write_sessions(sessions)
                return True
        return False

    async def _write_sessions(self, sessions: list[SessionMeta]) -> None:
        await self._store.set(SESSIONS_KEY, [session.to_payload() for session in sessions])

    async def _migrate_legacy_chat(self) -> list[SessionMeta]:
        legacy = await self._store.get(LEGACY_CHAT_KEY)
        if not isinstance(legacy, list) or not legacy:
            return []
        logger.info("Migrating %d legacy chat messages", len(legacy))
        session = SessionMeta(
            session_id=LEGACY_SESSION_ID,
            show_title="Previous conversation",
            platform="other",
            message_count=len(legacy),
        )
        await self._store.set(messages_key(LEGACY_SESSION_ID), legacy)
        await self._write_sessions([session])
        await self._store.delete(LEGACY_CHAT_KEY)
        return [session]
