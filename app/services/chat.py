"""Spoiler-safe question answering for the active session."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import httpx

from ..errors import ChatServiceError, ProviderError
from ..models import ChatMessage, RefinementOption, ResponseStyle, SessionMeta
from ..sessions import SessionStore
from .gemini import GeminiClient

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Failed to get response"

REFINEMENT_PROMPTS: dict[str, str] = {
    "shorter": 'Make this shorter: "{answer}"',
    "detail": 'Add more detail to: "{answer}"',
    "examples": 'Add examples to explain: "{answer}"',
    "terms": 'Define any terms in: "{answer}"',
}


def episode_label(meta: SessionMeta) -> str:
    if meta.show_title and meta.season and meta.episode:
        return f"{meta.show_title} - Season {meta.season}, Episode {meta.episode}"
    return meta.show_title or "Unknown show"


class ChatService:
    """Streams answers into the active session's message log.

    Partial answers are persisted chunk by chunk so that a stream that dies
    half-way leaves what was already received in the log, followed by an
    inline error message.
    """

    def __init__(self, sessions: SessionStore, gemini: GeminiClient, *, audit_answers: bool = False):
        self._sessions = sessions
        self._gemini = gemini
        self._audit_answers = audit_answers

    async def stream_reply(self, question: str, style: ResponseStyle = "quick") -> AsyncIterator[str]:
        question = (question or "").strip()
        if not question:
            raise ChatServiceError("Please enter a question.")
        active = await self._sessions.active_session()
        if active is None:
            raise ChatServiceError("No active session. Confirm what you're watching first.")
        meta = active.meta
        session_id = meta.session_id

        await self._sessions.append_messages(
            session_id, ChatMessage(role="user", content=question, style=style)
        )
        assistant = ChatMessage(role="assistant", content="", style=style)
        # An audited answer is held back until the audit has rewritten it.
        audit = self._audit_answers and bool(meta.context.strip())
        error_text: str | None = None
        try:
            async for chunk in self._gemini.stream_answer(
                question, meta.context, style, episode_label(meta)
            ):
                assistant.content += chunk
                if not audit:
                    await self._save(session_id, assistant)
                    yield chunk
        except ChatServiceError as exc:
            error_text = str(exc)
        except (ProviderError, httpx.HTTPError) as exc:
            logger.warning("Chat stream failed for %s: %s", session_id, exc)
            error_text = GENERIC_FAILURE_MESSAGE

        if audit and assistant.content:
            audited = await self._gemini.audit(assistant.content, meta.context, meta.season, meta.episode)
            if audited and audited != assistant.content:
                logger.info("Audit rewrote answer for %s", session_id)
                assistant.content = audited
            await self._save(session_id, assistant)
            yield assistant.content

        if error_text is not None:
            await self._sessions.append_messages(
                session_id,
                ChatMessage(role="assistant", content=error_text, style=style, is_error=True),
            )
            yield f"\n\n{error_text}" if assistant.content else error_text

        await self._sessions.sync_message_count(session_id)

    async def send_message(self, question: str, style: ResponseStyle = "quick") -> list[ChatMessage]:
        async for _ in self.stream_reply(question, style):
            pass
        active = await self._sessions.active_session()
        return active.messages if active else []

    async def refine_last_answer(self, option: RefinementOption) -> list[ChatMessage]:
        """Re-ask for the last answer in a different shape."""

        template = REFINEMENT_PROMPTS.get(option)
        if template is None:
            raise ValueError(f"Unknown refinement {option!r}")
        active = await self._sessions.active_session()
        if active is None:
            return []
        last_answer = next(
            (m for m in reversed(active.messages) if m.role == "assistant" and not m.is_error),
            None,
        )
        has_question = any(m.role == "user" for m in active.messages)
        if last_answer is None or not has_question:
            return active.messages
        return await self.send_message(
            template.format(answer=last_answer.content), last_answer.style or "quick"
        )

    async def report_spoiler(
        self,
        *,
        question: str,
        answer: str,
        context: str = "",
        show_title: str = "",
        season: str = "",
        episode: str = "",
    ) -> dict[str, Any]:
        report = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "showTitle": show_title,
            "season": season,
            "episode": episode,
            "question": (question or "")[:100],
            "answerLength": len(answer or ""),
            "contextLength": len(context or ""),
        }
        logger.warning("[SPOILER REPORT] %s", report)
        return {"success": True, "logged": True}

    async def _save(self, session_id: str, message: ChatMessage) -> None:
        log = await self._sessions.get_messages(session_id)
        for index, existing in enumerate(log):
            if existing.id == message.id:
                log[index] = message.model_copy()
                break
        else:
            log.append(message.model_copy())
        await self._sessions.set_messages(session_id, log)
