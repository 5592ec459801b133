"""Integration helpers for the Gemini generative language API."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx

from ..config import Settings
from ..errors import ChatServiceError, ProviderError
from ..models import ResponseStyle

logger = logging.getLogger(__name__)

NO_RECAP_SENTINEL = "NO_RECAP_FOUND"
FORWARD_LOOKING_CUES = (
    "later revealed",
    "foreshadow",
    "will become",
    "eventually",
    "later in the series",
    "in the manga",
)

RATE_LIMIT_MESSAGE = "Gemini rate limit exceeded (free tier: 15 req/min). Please wait a moment."
UNAVAILABLE_MESSAGE = "The answer service is unavailable right now. Please try again shortly."

SANITIZE_SYSTEM_PROMPT = (
    "You are a spoiler safety sanitizer. Clean episode summaries to remove hindsight "
    "and future references. Return only the cleaned text."
)

SANITIZE_TEMPLATE = """
You are a spoiler safety sanitizer. Clean this episode summary to remove any hindsight or future references.

RAW EPISODE SUMMARY:
{raw_text}

USER'S PROGRESS: Season {season}, Episode {episode}

INSTRUCTIONS:
Remove or rewrite any sentence that:
- References events beyond this episode
- Implies future revelations ("later revealed", "foreshadows", "will become")
- Uses hindsight language ("eventually", "over time", "as the series progresses")
- Mentions outcomes not shown yet
- References manga-only content ("In the manga...", "Later in the series...")

Preserve only what a viewer would reasonably know immediately after watching this episode.

OUTPUT: Return ONLY the cleaned summary text. No explanations, no meta-commentary.
"""

WEB_RECAP_TEMPLATE = """
Search for and write a factual episode recap for: {show_title}, Season {season}, Episode {episode}.

Requirements:
- Include ONLY what happens in Season {season} Episode {episode} specifically.
- Do NOT include any information from later episodes or seasons.
- Do NOT include spoilers, foreshadowing, or forward references to future events.
- Do NOT include phrases like "later revealed", "foreshadows", "will become", "eventually".
- Be concise and factual: 100 to 200 words maximum.
- Write in past tense, summarizing the episode's main plot points.

If you cannot find reliable information about this specific episode, respond with exactly: {sentinel}
"""

AUDIT_SYSTEM_PROMPT = (
    "You are a spoiler safety auditor. Review answers and remove any information beyond "
    "the provided context. Return only the safe answer."
)

AUDIT_TEMPLATE = """
You are a spoiler safety auditor. Review this answer for ANY information beyond the provided context.

EPISODE CONTEXT:
{context}

USER'S PROGRESS: Season {season}, Episode {episode}

DRAFT ANSWER:
{answer}

Check if the answer:
- Mentions events not in the context
- References future episodes/seasons
- Uses knowledge that would only be known later
- Contains foreshadowing or hints

If ANY issue found, rewrite to remove spoilers. If answer is safe, return it unchanged.

OUTPUT: Only the final safe answer, no explanations.
"""

CHAT_SYSTEM_PROMPT = """
You are SpoilerShield, a spoiler-safe Q&A assistant for TV shows and anime. Think of yourself as a
smart friend watching the show with the user: helpful, confident and playful.

SPOILER SAFETY RULES:
1. The user has confirmed the episode they are watching. Never reference events, reveals or plot points
   from later episodes or seasons.
2. Do not foreshadow or hint at future events in any way.

Classify every question before answering:
- SAFE_BASICS (the default): names, roles, abilities and concepts introduced up to the confirmed
  episode. Answer confidently and briefly.
- AMBIGUOUS: unclear scene references such as "why did he do that?". Ask ONE short, friendly
  follow-up question.
- SPOILER_RISK: answers that need deaths, betrayals, twists or secret identities from later episodes.
  Refuse playfully without revealing what kind of secret exists.
"""

CHAT_TEMPLATE = """
USER'S CONFIRMED PROGRESS: {episode_label}

{context_block}

Current response style: {style_upper}
{style_instruction}

USER'S QUESTION:
{question}
"""

STYLE_INSTRUCTIONS: dict[str, str] = {
    "quick": "Respond in 1-2 sentences. Be direct and concise.",
    "explain": "Provide a clear explanation in 2-4 sentences with helpful context.",
    "lore": "Focus on world-building and background information in 2-4 sentences, staying spoiler-safe.",
}


def has_forward_looking_cue(text: str) -> bool:
    lowered = text.casefold()
    return any(cue in lowered for cue in FORWARD_LOOKING_CUES)


def _extract_text(payload: Any) -> str:
    try:
        parts = payload["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        return ""
    if not isinstance(parts, list):
        return ""
    return "".join(str(part.get("text") or "") for part in parts if isinstance(part, dict))


def chat_error_message(status: int) -> str:
    if status == 429:
        return RATE_LIMIT_MESSAGE
    if status == 402 or status >= 500:
        return UNAVAILABLE_MESSAGE
    return f"Gemini API error (HTTP {status})"


class GeminiClient:
    """Client responsible for talking to Gemini's generateContent endpoints."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    @property
    def configured(self) -> bool:
        return bool(self._settings.gemini_api_key)

    def _headers(self) -> dict[str, str]:
        api_key = self._settings.gemini_api_key
        if not api_key:
            raise ProviderError("Gemini", None, "GEMINI_API_KEY is not configured")
        # The key must travel in a header; special characters corrupt it as a query parameter.
        return {"x-goog-api-key": api_key, "Content-Type": "application/json"}

    @staticmethod
    def _body(
        user_message: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        generation_config: dict[str, Any] = {}
        if temperature is not None:
            generation_config["temperature"] = temperature
        if max_output_tokens is not None:
            generation_config["maxOutputTokens"] = max_output_tokens
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": user_message}]}],
            "generationConfig": generation_config,
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        if tools:
            body["tools"] = tools
        return body

    async def generate(
        self,
        user_message: str,
        *,
        system_prompt: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> str:
        """Run a non-streaming call and return the stripped text of the first candidate."""

        resolved_model = model or self._settings.gemini_model
        response = await self._client.post(
            f"/models/{resolved_model}:generateContent",
            json=self._body(
                user_message,
                system_prompt=system_prompt,
                temperature=temperature,
                max_output_tokens=max_output_tokens,
                tools=tools,
            ),
            headers=self._headers(),
        )
        if response.status_code >= 400:
            logger.warning("Gemini %s call failed: %s", resolved_model, response.status_code)
            raise ProviderError("Gemini", response.status_code, response.text)
        return _extract_text(response.json()).strip()

    async def sanitize(self, raw_text: str, season: int | str, episode: int | str) -> str:
        """Strip hindsight from ``raw_text``; an empty result raises ``ProviderError``."""

        if not raw_text.strip():
            raise ValueError("raw_text is required")
        prompt = SANITIZE_TEMPLATE.format(
            raw_text=raw_text, season=season or 1, episode=episode or 1
        ).strip()
        cleaned = await self.generate(
            prompt,
            system_prompt=SANITIZE_SYSTEM_PROMPT,
            temperature=0.3,
            max_output_tokens=2000,
        )
        if not cleaned:
            raise ProviderError("Gemini", None, "Sanitization returned empty result")
        return cleaned

    async def web_recap(self, show_title: str, season: int | str, episode: int | str) -> str | None:
        """Search-grounded recap of exactly one episode; ``None`` when nothing usable came back."""

        prompt = WEB_RECAP_TEMPLATE.format(
            show_title=show_title, season=season, episode=episode, sentinel=NO_RECAP_SENTINEL
        ).strip()
        recap = await self.generate(
            prompt,
            model=self._settings.gemini_search_model,
            temperature=0.2,
            max_output_tokens=512,
            tools=[{"googleSearch": {}}],
        )
        if not recap or recap == NO_RECAP_SENTINEL:
            return None
        if has_forward_looking_cue(recap):
            logger.info("Rejected web recap for %s S%sE%s: forward-looking language", show_title, season, episode)
            return None
        return recap

    async def audit(self, answer: str, context: str, season: int | str, episode: int | str) -> str:
        """Rewrite ``answer`` against ``context``; any failure returns the original answer."""

        if not answer.strip() or not context.strip():
            return answer
        prompt = AUDIT_TEMPLATE.format(
            context=context, season=season or 1, episode=episode or 1, answer=answer
        ).strip()
        try:
            audited = await self.generate(
                prompt,
                system_prompt=AUDIT_SYSTEM_PROMPT,
                temperature=0.2,
                max_output_tokens=1000,
            )
        except (ProviderError, httpx.HTTPError) as exc:
            logger.warning("Answer audit unavailable: %s", exc)
            return answer
        return audited or answer

    async def stream_answer(
        self,
        question: str,
        context: str,
        style: ResponseStyle,
        episode_label: str,
    ) -> AsyncIterator[str]:
        """Yield answer text chunks from the SSE endpoint.

        Non-2xx responses raise :class:`ChatServiceError` carrying the message
        shown to the user.
        """

        trimmed_context = context.strip()
        if trimmed_context:
            context_block = (
                "EPISODE CONTEXT (helpful reference, use for episode-specific details):\n"
                f'"""\n{trimmed_context}\n"""'
            )
        else:
            context_block = (
                "[No episode summary available: rely on general show knowledge up to "
                f"{episode_label}. Be extra conservative about SPOILER_RISK.]"
            )
        prompt = CHAT_TEMPLATE.format(
            episode_label=episode_label,
            context_block=context_block,
            style_upper=style.upper(),
            style_instruction=STYLE_INSTRUCTIONS.get(style, STYLE_INSTRUCTIONS["quick"]),
            question=question,
        ).strip()
        try:
            headers = self._headers()
        except ProviderError as exc:
            raise ChatServiceError(UNAVAILABLE_MESSAGE) from exc

        async with self._client.stream(
            "POST",
            f"/models/{self._settings.gemini_model}:streamGenerateContent",
            params={"alt": "sse"},
            json=self._body(prompt, system_prompt=CHAT_SYSTEM_PROMPT.strip()),
            headers=headers,
        ) as response:
            if response.status_code >= 400:
                detail = (await response.aread()).decode("utf-8", "replace")
                logger.warning("Gemini chat failed (HTTP %s): %s", response.status_code, detail[:300])
                raise ChatServiceError(
                    chat_error_message(response.status_code), status=response.status_code
                )
            async for line in response.aiter_lines():
                line = line.strip()
                if not line.startswith("data:"):
                    continue
                data = line[len("data:") :].strip()
                if not data or data == "[DONE]":
                    continue
                try:
                    payload = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed SSE frame")
                    continue
                chunk = _extract_text(payload)
                if chunk:
                    yield chunk
