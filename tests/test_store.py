from __future__ import annotations

import asyncio

import pytest

from app.database import Database
from app.store import (
    CONTEXT_KEY,
    MemoryKeyValueStore,
    SqlKeyValueStore,
    StoreChange,
    messages_key,
    tab_context_key,
)


def test_key_helpers() -> None:
    assert messages_key("abc-s1e2") == "messages:abc-s1e2"
    assert tab_context_key(7) == "context:7"


def test_memory_store_notifies_listeners_with_old_and_new_values() -> None:
    async def _run() -> list[StoreChange]:
        store = MemoryKeyValueStore({"a": 1})
        changes: list[StoreChange] = []

        async def _listener(change: StoreChange) -> None:
            changes.append(change)

        unsubscribe = store.subscribe(_listener)
        await store.set("a", 2)
        await store.delete("a")
        await store.delete("a")
        unsubscribe()
        await store.set("b", 3)
        return changes

    changes = asyncio.run(_run())

    assert [(c.key, c.old_value, c.new_value) for c in changes] == [
        ("a", 1, 2),
        ("a", 2, None),
    ]


def test_memory_store_returns_copies() -> None:
    async def _run() -> tuple[object, object]:
        store = MemoryKeyValueStore()
        value = {"lines": ["one"]}
        await store.set(CONTEXT_KEY, value)
        value["lines"].append("two")
        first = await store.get(CONTEXT_KEY)
        first["lines"].append("three")
        return first, await store.get(CONTEXT_KEY)

    mutated, stored = asyncio.run(_run())

    assert mutated == {"lines": ["one", "three"]}
    assert stored == {"lines": ["one"]}


def test_memory_store_get_default_and_prefix_keys() -> None:
    async def _run() -> tuple[object, list[str]]:
        store = MemoryKeyValueStore({"context:1": {}, "context:current": {}, "sessions": []})
        return await store.get("missing", "fallback"), await store.keys("context:")

    default, keys = asyncio.run(_run())

    assert default == "fallback"
    assert keys == ["context:1", "context:current"]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio("asyncio")
async def test_sql_store_round_trip(tmp_path) -> None:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    await database.create_all()
    store = SqlKeyValueStore(database.session_factory)
    seen: list[str] = []

    async def _listener(change: StoreChange) -> None:
        seen.append(change.key)

    store.subscribe(_listener)
    try:
        await store.set("messages:abc-s1e1", [{"role": "user", "content": "hi"}])
        await store.set("messages:abc-s1e1", [])
        await store.set("messages_raw", {"x": 1})
        assert await store.get("messages:abc-s1e1") == []
        assert await store.keys("messages:") == ["messages:abc-s1e1"]

        await store.delete("messages:abc-s1e1")
        assert await store.get("messages:abc-s1e1") is None
    finally:
        await database.dispose()

    assert seen == ["messages:abc-s1e1", "messages:abc-s1e1", "messages_raw", "messages:abc-s1e1"]
