import secrets
import string
import time
import unicodedata
from datetime import datetime, timezone

_ID_ALPHABET = string.ascii_lowercase + string.digits


def now_ts() -> float:
    return time.time()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_session_id() -> str:
    return "game_" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def normalize_answer(text: str) -> str:
    """Lowercase, trim and drop diacritics: ``" México "`` -> ``"mexico"``."""
    return strip_accents((text or "").lower().strip())


def sort_leaderboard(players: list[dict]) -> list[dict]:
    return sorted(players, key=lambda p: (-p.get("score", 0), p["name"].lower()))
