"""Question generation and answer checking.

Auto types (song, artist, decade, year) are derived from the track itself.
Stored types (lyrics, challenge) need content authored on the track and fall
back to an auto type when it is missing.
"""

from __future__ import annotations

import bisect
import itertools
import random
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from loguru import logger

from .models import Question, Track
from .utils import normalize_answer

AUTO_TYPES = ["song", "artist", "decade", "year"]
STORED_TYPES = ["lyrics", "challenge"]
QUESTION_TYPES = AUTO_TYPES + STORED_TYPES

BASE_POINTS: Dict[str, int] = {
    "song": 1,
    "artist": 2,
    "decade": 2,
    "year": 3,
    "lyrics": 3,
    "challenge": 5,
}

TYPE_WEIGHTS: Dict[str, int] = {
    "song": 25,
    "artist": 30,
    "decade": 20,
    "year": 10,
    "lyrics": 10,
    "challenge": 5,
}

DIFFICULTY_MULTIPLIERS: Dict[str, float] = {
    "easy": 1,
    "medium": 1.5,
    "hard": 2,
    "expert": 3,
}

_COLLAB_SPLIT = re.compile(r"\s+(?:feat\.?|ft\.?|featuring|&|and|with|y)\s+", re.IGNORECASE)
_TRAILING_PARENS = re.compile(r"\s*\([^)]*\)\s*$")


@dataclass
class AnswerCheck:
    correct: bool
    exact_match: bool
    user_answer: str
    correct_answer: str


def scaled_points(question_type: str, difficulty: Optional[str]) -> int:
    multiplier = DIFFICULTY_MULTIPLIERS.get((difficulty or "").lower(), 1)
    # halves round up: medium song (1.5) is worth 2
    return int(BASE_POINTS[question_type] * multiplier + 0.5)


def acceptable_answers(answer: Optional[str]) -> List[str]:
    if not answer:
        return []

    variants: List[str] = []

    def add(value: str):
        value = value.strip()
        if value and value not in variants:
            variants.append(value)

    lowered = answer.lower().strip()
    for base in (lowered, normalize_answer(answer)):
        add(base)

        primary = _COLLAB_SPLIT.split(base, maxsplit=1)[0]
        if primary != base:
            add(primary)

        if base.startswith("the "):
            add(base[4:])

        without_parens = _TRAILING_PARENS.sub("", base)
        if without_parens != base:
            add(without_parens)

    return variants


def decade_answers(decade: Optional[str]) -> List[str]:
    if not decade:
        return []
    full = decade.lower().strip()
    year = full.rstrip("s")
    short = year[-2:]
    return list(dict.fromkeys([full, year, f"{short}s", short]))


def validate_answer(user_input: Optional[str], question: Question) -> AnswerCheck:
    """Lenient match: exact, or substring either way against any accepted variant.

    Short inputs can match by accident ("a" is inside most titles); moderators
    confirm the winner anyway, so the looseness is kept.
    """
    normalized = normalize_answer(user_input or "")
    if not normalized:
        return AnswerCheck(False, False, normalized, question.answer)

    exact = normalized == normalize_answer(question.answer)
    accepted = any(
        normalized == candidate or normalized in candidate or candidate in normalized
        for candidate in (normalize_answer(a) for a in question.acceptable_answers)
        if candidate
    )
    return AnswerCheck(exact or accepted, exact, normalized, question.answer)


class QuestionGenerator:
    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def available_types(self, track: Track) -> List[str]:
        available = list(AUTO_TYPES)
        if track.lyrics and track.lyrics.fragment and track.lyrics.answer:
            available.append("lyrics")
        if track.challenge and track.challenge.text:
            available.append("challenge")
        return available

    def random_type(self, track: Track) -> str:
        available = self.available_types(track)
        cumulative = list(itertools.accumulate(TYPE_WEIGHTS[t] for t in available))
        draw = self.rng.random() * cumulative[-1]
        return available[bisect.bisect_right(cumulative, draw)]

    def generate(self, track: Track, question_type: Optional[str] = None) -> Question:
        question_type = question_type or self.random_type(track)
        builder = getattr(self, f"_{question_type}_question", None)
        if question_type not in QUESTION_TYPES or builder is None:
            logger.warning(f"Unknown question type '{question_type}', using 'song'")
            builder = self._song_question
        return builder(track)

    def _song_question(self, track: Track) -> Question:
        return Question(
            type="song",
            text="What is the name of this song?",
            answer=track.title,
            acceptable_answers=acceptable_answers(track.title),
            hints=_song_hints(track),
            points=scaled_points("song", track.difficulty),
        )

    def _artist_question(self, track: Track) -> Question:
        return Question(
            type="artist",
            text="Who performs this song?",
            answer=track.artist,
            acceptable_answers=acceptable_answers(track.artist),
            hints=_artist_hints(track),
            points=scaled_points("artist", track.difficulty),
        )

    def _decade_question(self, track: Track) -> Question:
        if not track.decade:
            logger.warning(f"Track {track.id} has no decade, asking for the song instead")
            return self._song_question(track)
        return Question(
            type="decade",
            text="Which decade is this song from?",
            answer=track.decade,
            acceptable_answers=decade_answers(track.decade),
            hints=_decade_hints(track),
            points=scaled_points("decade", track.difficulty),
        )

    def _year_question(self, track: Track) -> Question:
        if track.year is None:
            logger.warning(f"Track {track.id} has no year, asking for the decade instead")
            return self._decade_question(track)
        return Question(
            type="year",
            text="What year was this song released?",
            answer=str(track.year),
            acceptable_answers=[str(track.year)],
            hints=_year_hints(track),
            points=scaled_points("year", track.difficulty),
        )

    def _lyrics_question(self, track: Track) -> Question:
        if not (track.lyrics and track.lyrics.fragment and track.lyrics.answer):
            logger.warning(f"Track {track.id} has no lyrics, asking for the artist instead")
            return self._artist_question(track)
        return Question(
            type="lyrics",
            text=f'Finish the lyric: "{track.lyrics.fragment}..."',
            answer=track.lyrics.answer,
            acceptable_answers=acceptable_answers(track.lyrics.answer),
            hints=["Listen closely to the words"],
            points=scaled_points("lyrics", track.difficulty),
        )

    def _challenge_question(self, track: Track) -> Question:
        if not (track.challenge and track.challenge.text):
            logger.warning(f"Track {track.id} has no challenge, asking for the song instead")
            return self._song_question(track)
        return Question(
            type="challenge",
            text=track.challenge.text,
            answer="Challenge completed",
            acceptable_answers=["completed", "done"],
            hints=["Show us what you've got!"],
            points=scaled_points("challenge", track.difficulty),
            is_challenge=True,
            challenge_type=track.challenge.type or "perform",
        )


def _song_hints(track: Track) -> List[str]:
    hints = []
    if track.artist:
        hints.append(f"Artist: {track.artist.split(' ')[0]}...")
    if track.album:
        hints.append(f"From the album: {track.album}")
    if track.genre:
        hints.append(f"Genre: {track.genre}")
    return hints or ["Listen carefully"]


def _artist_hints(track: Track) -> List[str]:
    hints = []
    if track.decade:
        hints.append(f"Era: {track.decade}")
    if track.genre:
        hints.append(f"Genre: {track.genre}")
    if track.title:
        hints.append(f"Song: {track.title[:3]}...")
    return hints or ["Recognise the voice"]


def _decade_hints(track: Track) -> List[str]:
    hints = []
    if track.year:
        hints.append(f"Close to {track.year // 10 * 10}")
    if track.genre:
        hints.append(f"Style: {track.genre}")
    return hints or ["Think about the sound"]


def _year_hints(track: Track) -> List[str]:
    hints = []
    if track.decade:
        hints.append(f"Decade: {track.decade}")
    if track.year:
        hints.append(f"Between {track.year - 2} and {track.year + 2}")
    return hints or ["Think about the era"]
