"""Track selection with per-session anti-repetition.

Selection narrows the unused part of the catalog by difficulty, genre and
decade. When the filters leave nothing, it relaxes them tier by tier so a
round can always be dealt:

    filtered -> difficulty only -> genre only -> any unused -> whole catalog

Only an empty catalog stops the game.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence

from loguru import logger

from .errors import NotFoundError
from .models import ANY, SessionConfig, Track

if TYPE_CHECKING:
    from .catalog import TrackCatalog


def matches(value: Optional[str], wanted: Optional[str]) -> bool:
    if not wanted or wanted.upper() == ANY:
        return True
    return (value or "").lower() == wanted.lower()


@dataclass(frozen=True)
class RoundFilters:
    genre: str = ANY
    decade: str = ANY
    difficulty: str = ANY

    @classmethod
    def from_config(cls, config: SessionConfig, rng: random.Random) -> "RoundFilters":
        return cls(
            genre=_draw(config.genres, rng),
            decade=_draw(config.decades, rng),
            difficulty=config.difficulty or ANY,
        )


def _draw(options: Sequence[str], rng: random.Random) -> str:
    if not options or any(o.upper() == ANY for o in options):
        return ANY
    return rng.choice(list(options))


@dataclass
class Selection:
    track: Track
    tier: str
    wrapped: bool


class TrackSelector:
    def __init__(self, catalog: "TrackCatalog", rng: Optional[random.Random] = None):
        self.catalog = catalog
        self.rng = rng or random.Random()

    def pick(self, used_track_ids: List[str], filters: RoundFilters) -> Selection:
        """Choose a track and record it in ``used_track_ids`` (mutated in place)."""
        tracks = self.catalog.all()
        if not tracks:
            raise NotFoundError("Track catalog is empty")

        used = set(used_track_ids)
        unused = [t for t in tracks if t.id not in used]
        wrapped = False
        if not unused:
            logger.info(f"All {len(tracks)} tracks used, wrapping exclusions")
            used_track_ids.clear()
            unused = list(tracks)
            wrapped = True

        tiers: List[tuple[str, Callable[[Track], bool]]] = [
            ("filtered", lambda t: matches(t.difficulty, filters.difficulty)
                and matches(t.genre, filters.genre)
                and matches(t.decade, filters.decade)),
            ("difficulty", lambda t: matches(t.difficulty, filters.difficulty)),
            ("genre", lambda t: matches(t.genre, filters.genre)),
            ("unused", lambda t: True),
        ]

        for tier, keep in tiers:
            pool = [t for t in unused if keep(t)]
            if pool:
                break
        else:
            tier, pool = "catalog", tracks

        if tier != "filtered":
            logger.warning(f"No track for {filters}, fell back to '{tier}' pool ({len(pool)} tracks)")

        track = self.rng.choice(pool)
        used_track_ids.append(track.id)
        logger.debug(f"Selected track {track.id} ({track.genre}, {track.decade}, {track.difficulty})")
        return Selection(track=track, tier=tier, wrapped=wrapped)
