from __future__ import annotations

import asyncio
import contextlib
import functools
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from .audio import DeezerResolver, Resolver, resolve_audio
from .catalog import TrackCatalog
from .db import InMemoryCollection, Settings, db, settings as default_settings
from .errors import GameError, NotFoundError, StateError, ValidationError
from .events import EventStore, event_store
from . import ledger
from .models import AnswerRecord, Question, Round, RoundQuestion, RoundTrack, Session, SessionConfig
from .questions import QUESTION_TYPES, QuestionGenerator, validate_answer
from .schemas import CreateSessionIn, ErrorOut, OperationResult, PublicSessionOut, SessionSummaryOut
from .scoring import check_winner, reveal, scoreboard
from .selector import RoundFilters, TrackSelector
from .utils import new_session_id, now_iso, now_ts, sort_leaderboard


def operation(fn: Callable[..., Awaitable[Dict[str, Any]]]):
    """Run a store operation and wrap its outcome in an ``OperationResult``.

    Callers never need a try/except around gameplay calls: expected failures
    come back as ``success=False`` with an error code, anything else is
    logged and reported as ``INTERNAL_ERROR``.
    """

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs) -> OperationResult:
        try:
            data = await fn(self, *args, **kwargs)
        except GameError as exc:
            logger.info(f"{fn.__name__} rejected [{exc.code}]: {exc.message}")
            return OperationResult(success=False, error=ErrorOut(**exc.to_dict()))
        except Exception:
            logger.exception(f"{fn.__name__} failed unexpectedly")
            return OperationResult(
                success=False,
                error=ErrorOut(code="INTERNAL_ERROR", message="Unexpected error, please retry"),
            )
        return OperationResult(success=True, data=data)

    return wrapper


class SessionStore:
    def __init__(
        self,
        catalog: TrackCatalog,
        resolver: Optional[Resolver] = None,
        *,
        rng: Optional[random.Random] = None,
        config: Settings = default_settings,
        collection: Optional[InMemoryCollection] = None,
        events: Optional[EventStore] = None,
    ):
        self.catalog = catalog
        self.resolver = resolver or DeezerResolver()
        self.settings = config
        self.selector = TrackSelector(catalog, rng)
        self.questions = QuestionGenerator(rng)
        self.sessions = collection if collection is not None else db.sessions
        self.events = events or event_store
        self.locks: Dict[str, asyncio.Lock] = {}

    @contextlib.asynccontextmanager
    async def _lock(self, session_id: str):
        lock = self.locks.setdefault(session_id, asyncio.Lock())
        try:
            async with lock:
                yield
        except NotFoundError:
            # unknown ids must not leave a lock behind
            if not await self.sessions.find_one({"id": session_id}):
                self._forget(session_id, lock)
            raise

    def _forget(self, session_id: str, lock: asyncio.Lock) -> None:
        if self.locks.get(session_id) is lock:
            del self.locks[session_id]

    async def _load(self, session_id: str) -> Session:
        doc = await self.sessions.find_one({"id": session_id})
        if not doc:
            raise NotFoundError(f"Session {session_id} not found")
        return Session.model_validate(doc)

    async def _save(self, s: Session):
        s.last_activity_ts = now_ts()
        await self.sessions.update_one(
            {"id": s.id},
            {"$set": s.model_dump()},
            upsert=True,
        )

    # -- lifecycle ---------------------------------------------------------

    @operation
    async def create_session(self, payload: CreateSessionIn) -> Dict[str, Any]:
        names = [n.strip() for n in payload.players]
        if not names:
            raise ValidationError("At least one player is required")
        if len(names) > self.settings.MAX_PLAYERS:
            raise ValidationError(f"At most {self.settings.MAX_PLAYERS} players are allowed")
        if any(not n for n in names):
            raise ValidationError("Player names cannot be blank")

        tokens = self.settings.initial_tokens
        session_id = new_session_id()
        while await self.sessions.find_one({"id": session_id}):
            session_id = new_session_id()

        s = Session(
            id=session_id,
            config=SessionConfig(
                genres=payload.genres,
                decades=payload.decades,
                difficulty=payload.difficulty,
                target_score=payload.target_score,
                time_limit_seconds=payload.time_limit_seconds,
            ),
            players=[ledger.initial_player(i, name, tokens) for i, name in enumerate(names)],
        )
        await self._save(s)
        await self.events.reset(s.id)

        logger.info(f"Session {s.id} created with {len(s.players)} players, tokens {tokens}")
        return {"session": PublicSessionOut.from_session(s).model_dump()}

    @operation
    async def start_game(self, session_id: str) -> Dict[str, Any]:
        async with self._lock(session_id):
            s = await self._load(session_id)
            if s.status == "playing":
                raise StateError("Game is already in progress")
            if s.status == "finished":
                raise StateError("Game has already finished")

            s.status = "playing"
            s.started_at = s.started_at or now_iso()
            await self._save(s)
            await self.events.append(s.id, "game_started")

            logger.info(f"Session {s.id} playing")
            return {"session": PublicSessionOut.from_session(s).model_dump()}

    @operation
    async def pause_game(self, session_id: str) -> Dict[str, Any]:
        async with self._lock(session_id):
            s = await self._load(session_id)
            if s.status != "playing":
                raise StateError(f"Cannot pause a game that is {s.status}")
            if s.current_round is not None:
                raise StateError("Reveal the current round before pausing")

            s.status = "paused"
            await self._save(s)
            await self.events.append(s.id, "game_paused")
            return {"session": PublicSessionOut.from_session(s).model_dump()}

    @operation
    async def next_round(self, session_id: str, force_question_type: Optional[str] = None) -> Dict[str, Any]:
        if force_question_type is not None and force_question_type not in QUESTION_TYPES:
            raise ValidationError(f"Unknown question type '{force_question_type}'")

        # held across the audio lookup so two calls can't both read used_track_ids
        async with self._lock(session_id):
            s = await self._load(session_id)
            if s.status != "playing":
                raise StateError(f"Game is not in progress ({s.status})")

            winner = check_winner(s)
            if winner is not None:
                s.status = "finished"
                await self._save(s)
                return {
                    "game_over": True,
                    "game_winner": winner.model_dump(),
                    "session": PublicSessionOut.from_session(s).model_dump(),
                }

            if s.current_round is not None:
                # closed like a reveal with no winner; bets stay spent
                logger.warning(f"Session {s.id}: round {s.current_round.round_number} skipped without a reveal")
                reveal(s, None)

            filters = RoundFilters.from_config(s.config, self.selector.rng)
            selection = self.selector.pick(s.used_track_ids, filters)
            track = selection.track

            audio = await resolve_audio(
                self.resolver, track.title, track.artist, self.settings.AUDIO_TIMEOUT_SECONDS
            )
            question = self.questions.generate(track, force_question_type)

            s.round += 1
            s.current_round = Round(
                round_number=s.round,
                track=RoundTrack(id=track.id, genre=track.genre, decade=track.decade, audio=audio),
                question=RoundQuestion(
                    type=question.type,
                    text=question.text,
                    points=question.points,
                    hints=question.hints,
                    is_challenge=question.is_challenge,
                    challenge_type=question.challenge_type,
                ),
                answer=AnswerRecord(
                    correct=question.answer,
                    acceptable_answers=question.acceptable_answers,
                    track_title=track.title,
                    track_artist=track.artist,
                ),
            )
            await self._save(s)

            public = PublicSessionOut.from_session(s).current_round
            await self.events.append(s.id, "round_started", round=public.model_dump())

            logger.info(
                f"Session {s.id} round {s.round}: track {track.id}, "
                f"{question.type} for {question.points} pts ({selection.tier} pool)"
            )
            return {
                "game_over": False,
                "round": public.model_dump(),
                "moderator": s.current_round.answer.model_dump(),
                "selection": {"tier": selection.tier, "wrapped": selection.wrapped},
            }

    @operation
    async def place_bet(self, session_id: str, player_id: str, token_value: int) -> Dict[str, Any]:
        async with self._lock(session_id):
            s = await self._load(session_id)
            player = ledger.place_bet(s, player_id, token_value)
            await self._save(s)
            await self.events.append(s.id, "bet_placed", player_id=player.id, token_value=token_value)

            logger.info(f"Session {s.id}: {player.name} bets +{token_value}, left {player.available_tokens}")
            return {
                "bet": {"player_id": player.id, "token_value": token_value},
                "available_tokens": list(player.available_tokens),
            }

    @operation
    async def reveal_answer(self, session_id: str, winner_id: Optional[str] = None) -> Dict[str, Any]:
        async with self._lock(session_id):
            s = await self._load(session_id)
            outcome = reveal(s, winner_id)
            await self._save(s)

            results = {
                "round_number": outcome.round_number,
                "correct_answer": outcome.correct_answer,
                "track": {"title": outcome.track_title, "artist": outcome.track_artist},
                "winner": (
                    {"id": outcome.winner.id, "name": outcome.winner.name, "new_score": outcome.winner.score}
                    if outcome.winner else None
                ),
                "base_points": outcome.base_points,
                "token_bonus": outcome.token_bonus,
                "points_awarded": outcome.award,
                "bets": outcome.bets,
            }
            players = scoreboard(s.players)
            await self.events.append(s.id, "round_revealed", results=results, players=players)

            game_winner = None
            if outcome.game_winner is not None:
                game_winner = {
                    "id": outcome.game_winner.id,
                    "name": outcome.game_winner.name,
                    "score": outcome.game_winner.score,
                }
                await self.events.append(s.id, "game_over", game_winner=game_winner)
                logger.info(f"Session {s.id} finished, winner {outcome.game_winner.name}")

            return {
                "results": results,
                "players": players,
                "leaderboard": sort_leaderboard(players),
                "game_over": game_winner is not None,
                "game_winner": game_winner,
            }

    @operation
    async def check_answer(self, session_id: str, answer: str) -> Dict[str, Any]:
        s = await self._load(session_id)
        r = s.current_round
        if r is None:
            raise StateError("No active round to check against")

        question = Question(
            type=r.question.type,
            text=r.question.text,
            answer=r.answer.correct,
            acceptable_answers=r.answer.acceptable_answers,
            points=r.question.points,
        )
        check = validate_answer(answer, question)
        return {"correct": check.correct, "exact_match": check.exact_match, "user_answer": check.user_answer}

    # -- projections -------------------------------------------------------

    @operation
    async def get_status(self, session_id: str) -> Dict[str, Any]:
        s = await self._load(session_id)
        return {"session": PublicSessionOut.from_session(s).model_dump()}

    @operation
    async def get_all_sessions(self) -> Dict[str, Any]:
        summaries: List[dict] = []
        async for doc in self.sessions.find({}).sort("created_at", 1):
            s = Session.model_validate(doc)
            summaries.append(
                SessionSummaryOut(
                    id=s.id,
                    status=s.status,
                    players=len(s.players),
                    round=s.round,
                    created_at=s.created_at,
                ).model_dump()
            )
        return {"sessions": summaries}

    # -- removal -----------------------------------------------------------

    @operation
    async def delete_session(self, session_id: str) -> Dict[str, Any]:
        async with self._lock(session_id):
            deleted = await self.sessions.delete_one({"id": session_id})
            if not deleted:
                raise NotFoundError(f"Session {session_id} not found")
            await self.events.drop(session_id)
        self.locks.pop(session_id, None)
        logger.info(f"Session {session_id} deleted")
        return {"deleted": session_id}

    @operation
    async def cleanup_old_sessions(self, max_age_seconds: Optional[int] = None) -> Dict[str, Any]:
        max_age = self.settings.SESSION_MAX_AGE_SECONDS if max_age_seconds is None else max_age_seconds
        cutoff = now_ts() - max_age

        stale = [doc["id"] async for doc in self.sessions.find({"last_activity_ts": {"$lt": cutoff}})]
        cleaned = 0
        for session_id in stale:
            async with self._lock(session_id):
                doc = await self.sessions.find_one({"id": session_id})
                if doc and doc["last_activity_ts"] >= cutoff:
                    # touched while we waited for its lock
                    continue
                if doc:
                    await self.sessions.delete_one({"id": session_id})
                    await self.events.drop(session_id)
                    cleaned += 1
            self.locks.pop(session_id, None)

        if cleaned:
            logger.info(f"Cleaned up {cleaned} inactive sessions")
        return {"cleaned": cleaned}

    # -- catalog -----------------------------------------------------------

    @operation
    async def reload_catalog(self) -> Dict[str, Any]:
        self.catalog.reload()
        known = self.catalog.ids()

        session_ids = [doc["id"] async for doc in self.sessions.find({})]
        for session_id in session_ids:
            try:
                async with self._lock(session_id):
                    s = await self._load(session_id)
                    pruned = [tid for tid in s.used_track_ids if tid in known]
                    if len(pruned) != len(s.used_track_ids):
                        s.used_track_ids = pruned
                        await self._save(s)
            except NotFoundError:
                continue  # deleted while we waited for its lock

        return {"tracks": len(self.catalog), "sessions": len(session_ids)}

    @operation
    async def catalog_stats(self, genre: str = "ANY", decade: str = "ANY", difficulty: str = "ANY") -> Dict[str, Any]:
        return self.catalog.pool_stats(genre=genre, decade=decade, difficulty=difficulty)
