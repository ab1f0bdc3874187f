from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from .models import ANY, HistoryEntry, Player, RoundQuestion, RoundTrack, Session


class CreateSessionIn(BaseModel):
    players: List[str]
    genres: List[str] = Field(default_factory=lambda: [ANY])
    decades: List[str] = Field(default_factory=lambda: [ANY])
    difficulty: str = ANY
    target_score: int = Field(default=15, gt=0)
    time_limit_seconds: int = Field(default=1200, gt=0)


class NextRoundIn(BaseModel):
    force_question_type: Optional[str] = None


class BetIn(BaseModel):
    player_id: str
    token_value: int


class RevealIn(BaseModel):
    winner_id: Optional[str] = None


class CheckAnswerIn(BaseModel):
    answer: str


class ErrorOut(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class OperationResult(BaseModel):
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[ErrorOut] = None


class PublicRoundOut(BaseModel):
    number: int
    track: RoundTrack
    question: RoundQuestion
    bets: Dict[str, int]
    started_at: str


class PublicSessionOut(BaseModel):
    id: str
    status: str
    config: Dict[str, Any]
    players: List[Player]
    round: int
    current_round: Optional[PublicRoundOut]
    history: List[HistoryEntry]
    created_at: str
    started_at: Optional[str]

    @classmethod
    def from_session(cls, s: Session) -> "PublicSessionOut":
        r = s.current_round
        return cls(
            id=s.id,
            status=s.status,
            config=s.config.model_dump(),
            players=s.players,
            round=s.round,
            current_round=PublicRoundOut(
                number=r.round_number,
                track=r.track,
                question=r.question,
                bets=r.bets,
                started_at=r.started_at,
            ) if r else None,
            history=s.history,
            created_at=s.created_at,
            started_at=s.started_at,
        )


class SessionSummaryOut(BaseModel):
    id: str
    status: str
    players: int
    round: int
    created_at: str
