from typing import Dict, List, Optional, Literal
from pydantic import BaseModel, Field

from .utils import now_iso, now_ts

QuestionType = Literal["song", "artist", "decade", "year", "lyrics", "challenge"]
SessionStatus = Literal["created", "playing", "paused", "finished"]

ANY = "ANY"


class LyricsContent(BaseModel):
    fragment: Optional[str] = None
    answer: Optional[str] = None


class ChallengeContent(BaseModel):
    text: Optional[str] = None
    type: Optional[str] = None


class Track(BaseModel):
    id: str
    title: str
    artist: str
    album: Optional[str] = None
    year: Optional[int] = None
    genre: Optional[str] = None
    decade: Optional[str] = None
    difficulty: Optional[str] = None
    duration_ms: Optional[int] = Field(default=None, alias="durationMs")
    lyrics: Optional[LyricsContent] = None
    challenge: Optional[ChallengeContent] = None

    model_config = {"populate_by_name": True}


class AudioInfo(BaseModel):
    preview_url: str
    duration_seconds: Optional[int] = None
    cover_art_url: Optional[str] = None
    source_link: Optional[str] = None
    source: str = "deezer"


class SessionConfig(BaseModel):
    genres: List[str] = Field(default_factory=lambda: [ANY])
    decades: List[str] = Field(default_factory=lambda: [ANY])
    difficulty: str = ANY
    target_score: int = 15
    time_limit_seconds: int = 1200


class PlayerStats(BaseModel):
    correct_answers: int = 0
    wrong_answers: int = 0
    tokens_used: List[int] = Field(default_factory=list)


class Player(BaseModel):
    id: str
    name: str
    score: int = 0
    available_tokens: List[int] = Field(default_factory=list)
    stats: PlayerStats = Field(default_factory=PlayerStats)


class Question(BaseModel):
    type: QuestionType
    text: str
    answer: str
    acceptable_answers: List[str] = Field(default_factory=list)
    hints: List[str] = Field(default_factory=list)
    points: int
    is_challenge: bool = False
    challenge_type: Optional[str] = None


class RoundTrack(BaseModel):
    # title and artist are the answer; they live on AnswerRecord only
    id: str
    genre: Optional[str] = None
    decade: Optional[str] = None
    audio: Optional[AudioInfo] = None


class RoundQuestion(BaseModel):
    type: QuestionType
    text: str
    points: int
    hints: List[str] = Field(default_factory=list)
    is_challenge: bool = False
    challenge_type: Optional[str] = None


class AnswerRecord(BaseModel):
    correct: str
    acceptable_answers: List[str] = Field(default_factory=list)
    track_title: str
    track_artist: str


class Round(BaseModel):
    round_number: int
    track: RoundTrack
    question: RoundQuestion
    answer: AnswerRecord
    bets: Dict[str, int] = Field(default_factory=dict)
    status: Literal["open"] = "open"
    started_at: str = Field(default_factory=now_iso)


class HistoryEntry(BaseModel):
    round_number: int
    track_id: str
    question_type: QuestionType
    winner_id: Optional[str] = None
    award: int = 0
    timestamp: str = Field(default_factory=now_iso)


# States: created -> playing <-> paused, playing -> finished
class Session(BaseModel):
    id: str
    status: SessionStatus = "created"
    config: SessionConfig = Field(default_factory=SessionConfig)
    players: List[Player] = Field(default_factory=list)
    round: int = 0
    used_track_ids: List[str] = Field(default_factory=list)
    current_round: Optional[Round] = None
    history: List[HistoryEntry] = Field(default_factory=list)
    created_at: str = Field(default_factory=now_iso)
    started_at: Optional[str] = None
    last_activity_ts: float = Field(default_factory=now_ts)

    def player(self, player_id: str) -> Optional[Player]:
        return next((p for p in self.players if p.id == player_id), None)
