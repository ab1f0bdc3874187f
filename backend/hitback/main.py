import asyncio
import sys
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from .catalog import TrackCatalog
from .db import settings
from .game import SessionStore
from .schemas import BetIn, CheckAnswerIn, CreateSessionIn, NextRoundIn, OperationResult, RevealIn

logger.remove()
logger.add(sys.stderr, level=settings.LOG_LEVEL)

store = SessionStore(TrackCatalog.from_file(settings.CATALOG_PATH))

STATUS_BY_CODE = {
    "VALIDATION_ERROR": 400,
    "INVALID_TOKEN": 400,
    "NOT_FOUND": 404,
    "STATE_ERROR": 409,
    "INTERNAL_ERROR": 500,
}


async def _cleanup_loop():
    while True:
        await asyncio.sleep(settings.CLEANUP_INTERVAL_SECONDS)
        await store.cleanup_old_sessions()


@asynccontextmanager
async def lifespan(_: FastAPI):
    task = asyncio.create_task(_cleanup_loop())
    try:
        yield
    finally:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


app = FastAPI(title="HitBack Trivia API", lifespan=lifespan)

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
origin_regex = settings.CORS_ORIGIN_REGEX or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def respond(result: OperationResult, success_status: int = 200) -> JSONResponse:
    status = success_status if result.success else STATUS_BY_CODE.get(result.error.code, 400)
    return JSONResponse(status_code=status, content=result.model_dump(mode="json"))


@app.post("/api/game/session")
async def create_session(payload: CreateSessionIn):
    return respond(await store.create_session(payload), success_status=201)


@app.get("/api/game/sessions")
async def list_sessions():
    return respond(await store.get_all_sessions())


@app.get("/api/game/session/{session_id}")
async def get_session(session_id: str):
    return respond(await store.get_status(session_id))


@app.delete("/api/game/session/{session_id}")
async def delete_session(session_id: str):
    return respond(await store.delete_session(session_id))


@app.post("/api/game/session/{session_id}/start")
async def start(session_id: str):
    return respond(await store.start_game(session_id))


@app.post("/api/game/session/{session_id}/pause")
async def pause(session_id: str):
    return respond(await store.pause_game(session_id))


@app.post("/api/game/session/{session_id}/round")
async def next_round(session_id: str, payload: NextRoundIn | None = None):
    forced = payload.force_question_type if payload else None
    return respond(await store.next_round(session_id, forced))


@app.post("/api/game/session/{session_id}/bet")
async def bet(session_id: str, payload: BetIn):
    return respond(await store.place_bet(session_id, payload.player_id, payload.token_value))


@app.post("/api/game/session/{session_id}/reveal")
async def reveal(session_id: str, payload: RevealIn | None = None):
    winner_id = payload.winner_id if payload else None
    return respond(await store.reveal_answer(session_id, winner_id))


@app.post("/api/game/session/{session_id}/check")
async def check(session_id: str, payload: CheckAnswerIn):
    return respond(await store.check_answer(session_id, payload.answer))


@app.get("/api/game/session/{session_id}/events")
async def list_events(session_id: str, after: int | None = None, limit: int = 200):
    events = await store.events.list(session_id, after=after, limit=limit)
    latest_seq = events[-1]["seq"] if events else after
    return {"events": events, "latest_seq": latest_seq}


@app.get("/api/tracks/stats")
async def track_stats(genre: str = "ANY", decade: str = "ANY", difficulty: str = "ANY"):
    return respond(await store.catalog_stats(genre=genre, decade=decade, difficulty=difficulty))


@app.post("/api/tracks/reload")
async def reload_tracks():
    return respond(await store.reload_catalog())


@app.get("/api/game/health")
async def health():
    return {"ok": True, "tracks": len(store.catalog)}
