from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .errors import NotFoundError, StateError
from .models import HistoryEntry, Player, Session


@dataclass
class RevealOutcome:
    round_number: int
    correct_answer: str
    track_title: str
    track_artist: str
    base_points: int
    winner: Optional[Player] = None
    token_bonus: int = 0
    award: int = 0
    bets: dict = field(default_factory=dict)
    game_winner: Optional[Player] = None


def check_winner(session: Session) -> Optional[Player]:
    # simultaneous crossings go to the first player in seating order
    for player in session.players:
        if player.score >= session.config.target_score:
            return player
    return None


def reveal(session: Session, winner_id: Optional[str]) -> RevealOutcome:
    round_ = session.current_round
    if round_ is None:
        raise StateError("No active round to reveal")

    winner = None
    if winner_id is not None:
        winner = session.player(winner_id)
        if winner is None:
            raise NotFoundError(f"Player {winner_id} not found")

    outcome = RevealOutcome(
        round_number=round_.round_number,
        correct_answer=round_.answer.correct,
        track_title=round_.answer.track_title,
        track_artist=round_.answer.track_artist,
        base_points=round_.question.points,
        bets=dict(round_.bets),
    )

    if winner is not None:
        outcome.token_bonus = round_.bets.get(winner.id, 0)
        outcome.award = outcome.base_points + outcome.token_bonus
        winner.score += outcome.award
        winner.stats.correct_answers += 1
        outcome.winner = winner

    for player in session.players:
        if player.id in round_.bets and player is not winner:
            player.stats.wrong_answers += 1

    session.history.append(
        HistoryEntry(
            round_number=round_.round_number,
            track_id=round_.track.id,
            question_type=round_.question.type,
            winner_id=winner.id if winner else None,
            award=outcome.award,
        )
    )
    session.current_round = None

    game_winner = check_winner(session)
    if game_winner is not None:
        session.status = "finished"
        outcome.game_winner = game_winner
    return outcome


def scoreboard(players: List[Player]) -> List[dict]:
    return [
        {
            "id": p.id,
            "name": p.name,
            "score": p.score,
            "available_tokens": list(p.available_tokens),
        }
        for p in players
    ]
