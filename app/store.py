"""Shared key-value store used as the single cross-context source of truth.

Writers always replace whole records. Readers must treat the store as
eventually consistent: a value read here may already be superseded by a
newer page state that has not been written yet.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db_models import KeyValueEntry

logger = logging.getLogger(__name__)

SESSIONS_KEY = "sessions"
ACTIVE_SESSION_KEY = "activeSessionId"
MESSAGES_PREFIX = "messages:"
LEGACY_CHAT_KEY = "chat"
SHOW_INFO_KEY = "show-info:current"
CONTEXT_KEY = "context:current"
TAB_CONTEXT_PREFIX = "context:"
RECAP_CACHE_PREFIX = "episodeRecapCache:"


def messages_key(session_id: str) -> str:
    return f"{MESSAGES_PREFIX}{session_id}"


def tab_context_key(tab_id: int | str) -> str:
    return f"{TAB_CONTEXT_PREFIX}{tab_id}"


@dataclass(slots=True)
class StoreChange:
    """A single key change delivered to store subscribers."""

    key: str
    old_value: Any
    new_value: Any


ChangeListener = Callable[[StoreChange], Awaitable[None]]


class KeyValueStore(ABC):
    """Async JSON key-value store with change subscriptions."""

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register ``listener`` for change events and return an unsubscribe hook."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def get(self, key: str, default: Any = None) -> Any:
        value = await self._read(key)
        if value is None:
            return default
        return value

    async def set(self, key: str, value: Any) -> None:
        old_value = await self._read(key)
        await self._write(key, value)
        await self._notify(StoreChange(key=key, old_value=old_value, new_value=value))

    async def delete(self, key: str) -> None:
        old_value = await self._read(key)
        if old_value is None:
            return
        await self._remove(key)
        await self._notify(StoreChange(key=key, old_value=old_value, new_value=None))

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(await self._keys(prefix))

    async def _notify(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                await listener(change)
            except Exception:  # pragma: no cover - listener bugs must not break writers
                logger.exception("Store listener failed for key %s", change.key)

    @abstractmethod
    async def _read(self, key: str) -> Any: ...

    @abstractmethod
    async def _write(self, key: str, value: Any) -> None: ...

    @abstractmethod
    async def _remove(self, key: str) -> None: ...

    @abstractmethod
    async def _keys(self, prefix: str) -> list[str]: ...


class MemoryKeyValueStore(KeyValueStore):
    """In-process store used by tests and ephemeral runs."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        super().__init__()
        self._data: dict[str, Any] = copy.deepcopy(initial or {})

    async def _read(self, key: str) -> Any:
        return copy.deepcopy(self._data.get(key))

    async def _write(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def _remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def _keys(self, prefix: str) -> list[str]:
        return [key for key in self._data if key.startswith(prefix)]

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)


class SqlKeyValueStore(KeyValueStore):
    """Store persisted in the ``kv_entries`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        super().__init__()
        self._session_factory = session_factory

    async def _read(self, key: str) -> Any:
        async with self._session_factory() as session:
            entry = await session.get(KeyValueEntry, key)
            return entry.value if entry is not None else None

    async def _write(self, key: str, value: Any) -> None:
        namespace = key.split(":", 1)[0] if ":" in key else ""
        async with self._session_factory() as session:
            entry = await session.get(KeyValueEntry, key)
            if entry is None:
                session.add(KeyValueEntry(key=key, namespace=namespace, value=value))
            else:
                entry.value = value
                entry.updated_at = datetime.utcnow()
            await session.commit()

    async def _remove(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))
            await session.commit()

    async def _keys(self, prefix: str) -> list[str]:
        async with self._session_factory() as session:
            stmt = select(KeyValueEntry.key)
            if prefix:
                stmt = stmt.where(KeyValueEntry.key.startswith(prefix, autoescape=True))
            result = await session.execute(stmt)
            return [row[0] for row in result.all()]
