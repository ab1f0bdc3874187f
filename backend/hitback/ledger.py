from __future__ import annotations

from typing import List

from .errors import InvalidTokenError, NotFoundError, StateError
from .models import Player, Session


def initial_player(index: int, name: str, tokens: List[int]) -> Player:
    return Player(id=f"player_{index + 1}", name=name, available_tokens=list(tokens))


def place_bet(session: Session, player_id: str, token_value: int) -> Player:
    """Spend ``token_value`` on the open round.

    Tokens are gone for good once spent, whatever the round outcome. All
    checks run before anything is touched so a rejected bet leaves the
    session unchanged.
    """
    round_ = session.current_round
    if round_ is None:
        raise StateError("No active round to bet on")

    player = session.player(player_id)
    if player is None:
        raise NotFoundError(f"Player {player_id} not found")

    if player_id in round_.bets:
        raise InvalidTokenError(
            f"{player.name} already bet +{round_.bets[player_id]} this round",
            {"available_tokens": list(player.available_tokens)},
        )

    if token_value not in player.available_tokens:
        raise InvalidTokenError(
            f"Token +{token_value} is not available",
            {"available_tokens": list(player.available_tokens)},
        )

    player.available_tokens = [t for t in player.available_tokens if t != token_value]
    player.stats.tokens_used.append(token_value)
    round_.bets[player_id] = token_value
    return player
