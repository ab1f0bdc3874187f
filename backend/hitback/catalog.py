from __future__ import annotations

import json
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from loguru import logger

from .errors import ValidationError
from .models import Track
from .selector import matches


class TrackCatalog:
    """Read-only track records shared by every session."""

    def __init__(self, tracks: Iterable[Track] = (), path: Optional[str] = None):
        self.path = path
        self._tracks: List[Track] = list(tracks)
        self._by_id: Dict[str, Track] = {t.id: t for t in self._tracks}

    @classmethod
    def from_file(cls, path: str) -> "TrackCatalog":
        catalog = cls(path=path)
        catalog.reload()
        return catalog

    def reload(self) -> None:
        if not self.path:
            raise ValidationError("Catalog has no source file to reload from")

        raw = json.loads(Path(self.path).read_text(encoding="utf-8"))
        # accept either a bare list or {"tracks": [...]}
        if isinstance(raw, dict):
            raw = raw.get("tracks")
        if not isinstance(raw, list):
            raise ValidationError(f"Invalid catalog format in {self.path}")

        self._tracks = [Track.model_validate(item) for item in raw]
        self._by_id = {t.id: t for t in self._tracks}
        logger.info(f"Loaded {len(self._tracks)} tracks from {self.path}")

    def __len__(self) -> int:
        return len(self._tracks)

    def all(self) -> List[Track]:
        return list(self._tracks)

    def ids(self) -> set[str]:
        return set(self._by_id)

    def pool_stats(self, genre: str = "ANY", decade: str = "ANY", difficulty: str = "ANY") -> dict:
        pool = [
            t for t in self._tracks
            if matches(t.difficulty, difficulty) and matches(t.genre, genre) and matches(t.decade, decade)
        ]
        return {
            "total": len(pool),
            "by_genre": _group_by(pool, "genre"),
            "by_decade": _group_by(pool, "decade"),
            "by_difficulty": _group_by(pool, "difficulty"),
        }


def _group_by(tracks: List[Track], key: str) -> Dict[str, int]:
    return dict(Counter(getattr(t, key) or "UNDEFINED" for t in tracks))
