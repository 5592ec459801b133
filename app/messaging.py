"""Fire-and-forget broadcast channel between the page, relay and panel.

Delivery mirrors browser extension messaging: a message posted while nobody
is subscribed to its type is dropped, handlers run as independent tasks so
there is no ordering guarantee between them, and nothing is acknowledged.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

CONTEXT_UPDATE = "CONTEXT_UPDATE"
GET_CONTEXT = "GET_CONTEXT"
REDETECT_SHOW_INFO = "REDETECT_SHOW_INFO"
SHOW_INFO = "SHOW_INFO"
CONTEXT = "CONTEXT"
REQUEST_SHOW_INFO = "REQUEST_SHOW_INFO"
REQUEST_CONTEXT = "REQUEST_CONTEXT"
REQUEST_REDETECT = "REQUEST_REDETECT"
PANEL_READY = "PANEL_READY"


@dataclass(frozen=True)
class Message:
    type: str
    payload: Any = None
    tab_id: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Handler = Callable[[Message], Awaitable[None]]
Responder = Callable[[Message], Awaitable[Any]]


class MessageBus:
    """Broadcast bus with optional single request/response handlers."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = {}
        self._responders: dict[str, list[Responder]] = {}
        self._pending: set[asyncio.Task[None]] = set()

    def subscribe(self, message_type: str, handler: Handler) -> Callable[[], None]:
        handlers = self._subscribers.setdefault(message_type, [])
        handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def post(self, message: Message) -> int:
        """Schedule delivery to every current subscriber; return how many."""

        handlers = list(self._subscribers.get(message.type, ()))
        if not handlers:
            logger.debug("Dropping %s: no listener attached", message.type)
            return 0
        loop = asyncio.get_running_loop()
        for handler in handlers:
            task = loop.create_task(self._deliver(handler, message))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return len(handlers)

    async def _deliver(self, handler: Handler, message: Message) -> None:
        try:
            await handler(message)
        except Exception:
            logger.exception("Handler for %s failed", message.type)

    def register_responder(self, message_type: str, responder: Responder) -> None:
        """Attach ``responder``; the most recently registered one answers requests."""

        self._responders.setdefault(message_type, []).append(responder)

    def unregister_responder(self, message_type: str, responder: Responder) -> None:
        """Detach ``responder`` only; other responders for the type stay registered."""

        responders = self._responders.get(message_type)
        if not responders or responder not in responders:
            return
        responders.remove(responder)
        if not responders:
            del self._responders[message_type]

    async def request(self, message: Message) -> Any:
        """Ask the registered responder; raise ``LookupError`` when none listens."""

        responders = self._responders.get(message.type)
        if not responders:
            raise LookupError(f"No receiver for {message.type}")
        return await responders[-1](message)

    async def drain(self) -> None:
        """Wait until every scheduled delivery, including cascades, has finished."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
