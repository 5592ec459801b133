"""Entry point for the FastAPI-powered SpoilerShield companion."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .companion import Companion, PageMutation
from .config import settings
from .database import Database
from .errors import ChatServiceError, InvalidTransitionError
from .models import RefinementOption, ResponseStyle
from .services.fandom import FandomClient
from .services.gemini import GeminiClient
from .services.tvmaze import TVMazeClient
from .store import SqlKeyValueStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


class PageSnapshot(BaseModel):
    url: str
    html: str = ""


class MutationBatch(BaseModel):
    mutations: list[PageMutation] = Field(default_factory=list)


class SetupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    show_title: str = Field(min_length=1, alias="showTitle")
    show_id: int | None = Field(default=None, alias="showId")
    platform: str = "other"
    season: str
    episode: str


class ManualRecapRequest(BaseModel):
    text: str = Field(min_length=1)


class ChatRequest(BaseModel):
    question: str = ""
    style: ResponseStyle = "quick"
    refine: RefinementOption | None = None


class SpoilerReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str = ""
    answer: str = ""
    context: str = ""
    show_title: str = Field(default="", alias="showTitle")
    season: str = ""
    episode: str = ""


class ImportDecision(BaseModel):
    accept: bool = True


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    tvmaze_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tvmaze_api_url),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )
    gemini_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.gemini_api_url),
            timeout=httpx.Timeout(60.0, connect=10.0),
        )
    )
    wiki_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0), follow_redirects=True)
    )
    database = Database(settings.database_url)
    await database.create_all()

    companion = Companion(
        settings,
        SqlKeyValueStore(database.session_factory),
        tvmaze=TVMazeClient(tvmaze_http_client),
        gemini=GeminiClient(settings, gemini_http_client),
        fandom=FandomClient(
            wiki_http_client, settings.wiki_allowlist, seasons=settings.wiki_seasons
        ),
    )
    if not settings.gemini_configured:
        logger.warning("GEMINI_API_KEY is not set; recaps and chat answers are disabled")

    app.state.companion = companion
    app.state.database = database
    await companion.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await companion.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Spoiler-safe episode companion for Netflix and Crunchyroll",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_companion(app: FastAPI) -> Companion:
    companion = getattr(app.state, "companion", None)
    if not isinstance(companion, Companion):
        raise RuntimeError("Companion not initialised")
    return companion


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/api/page/{tab_id}")
    async def load_page(tab_id: int, snapshot: PageSnapshot) -> dict[str, Any]:
        companion = get_companion(fastapi_app)
        capture = await companion.load_page(tab_id, snapshot.html, snapshot.url)
        info = capture.detector.last_result
        return {
            "tabId": tab_id,
            "platform": capture.observer.platform,
            "observedElements": capture.observer.observed_count,
            "showInfo": info.to_payload() if info else None,
        }

    @fastapi_app.post("/api/page/{tab_id}/mutations")
    async def page_mutations(tab_id: int, batch: MutationBatch) -> dict[str, Any]:
        companion = get_companion(fastapi_app)
        try:
            applied = await companion.apply_mutations(tab_id, batch.mutations)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Unknown tab; post a page snapshot first") from exc
        capture = companion.tabs[tab_id]
        return {"applied": applied, "bufferedLines": len(capture.observer.buffer)}

    @fastapi_app.delete("/api/page/{tab_id}")
    async def close_page(tab_id: int) -> dict[str, bool]:
        await get_companion(fastapi_app).close_tab(tab_id)
        return {"ok": True}

    @fastapi_app.get("/api/state")
    async def state() -> dict[str, Any]:
        return await get_companion(fastapi_app).state()

    @fastapi_app.post("/api/redetect")
    async def redetect() -> dict[str, Any]:
        companion = get_companion(fastapi_app)
        try:
            companion.init_flow.request_redetect()
        except InvalidTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return companion.init_flow.snapshot()

    @fastapi_app.post("/api/setup")
    async def manual_setup(payload: SetupRequest) -> dict[str, Any]:
        companion = get_companion(fastapi_app)
        try:
            session_id = await companion.init_flow.confirm_manual_setup(
                payload.show_title,
                payload.show_id,
                payload.platform,
                payload.season,
                payload.episode,
            )
        except InvalidTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"sessionId": session_id, **companion.init_flow.snapshot()}

    @fastapi_app.get("/api/sessions")
    async def list_sessions() -> dict[str, Any]:
        sessions = get_companion(fastapi_app).sessions
        return {
            "activeSessionId": await sessions.active_session_id(),
            "sessions": [meta.to_payload() for meta in await sessions.confirmed_sessions()],
        }

    @fastapi_app.post("/api/sessions/{session_id}/switch")
    async def switch_session(session_id: str) -> dict[str, Any]:
        sessions = get_companion(fastapi_app).sessions
        if not await sessions.switch_session(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return {"activeSessionId": session_id}

    @fastapi_app.delete("/api/sessions/{session_id}")
    async def delete_session(session_id: str) -> dict[str, Any]:
        sessions = get_companion(fastapi_app).sessions
        active = await sessions.delete_session(session_id)
        return {"activeSessionId": active}

    @fastapi_app.post("/api/import/accept")
    async def import_offer(decision: ImportDecision) -> dict[str, Any]:
        flow = get_companion(fastapi_app).init_flow
        if flow.import_offer is None:
            raise HTTPException(status_code=404, detail="No import offer pending")
        if not decision.accept:
            flow.dismiss_import()
            return {"imported": 0}
        return {"imported": await flow.accept_import()}

    @fastapi_app.post("/api/recap/manual")
    async def manual_recap(payload: ManualRecapRequest) -> dict[str, Any]:
        companion = get_companion(fastapi_app)
        result = companion.recaps.manual(payload.text)
        if not result.summary or not await companion.sessions.update_context(result.summary):
            raise HTTPException(status_code=409, detail="No active session")
        return result.model_dump(mode="json")

    @fastapi_app.post("/api/chat")
    async def chat(payload: ChatRequest) -> StreamingResponse:
        service = get_companion(fastapi_app).chat
        if payload.refine is not None:
            try:
                messages = await service.refine_last_answer(payload.refine)
            except ChatServiceError as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
            text = messages[-1].content if messages else ""

            async def _single() -> Any:
                yield text

            return StreamingResponse(_single(), media_type="text/plain; charset=utf-8")

        stream = service.stream_reply(payload.question, payload.style)
        try:
            first = await stream.__anext__()
        except StopAsyncIteration:
            first = ""
        except ChatServiceError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

        async def _body() -> Any:
            yield first
            async for chunk in stream:
                yield chunk

        return StreamingResponse(_body(), media_type="text/plain; charset=utf-8")

    @fastapi_app.post("/api/report")
    async def report(payload: SpoilerReport) -> dict[str, Any]:
        service = get_companion(fastapi_app).chat
        return await service.report_spoiler(
            question=payload.question,
            answer=payload.answer,
            context=payload.context,
            show_title=payload.show_title,
            season=payload.season,
            episode=payload.episode,
        )


app = create_app()
