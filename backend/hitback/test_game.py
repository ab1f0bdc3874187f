from __future__ import annotations

import asyncio
import json
import random
from unittest import IsolatedAsyncioTestCase, mock

from backend.hitback.catalog import TrackCatalog
from backend.hitback.db import InMemoryCollection, Settings
from backend.hitback.events import EventStore
from backend.hitback.game import SessionStore
from backend.hitback.models import AudioInfo, Track
from backend.hitback.schemas import CreateSessionIn


def _catalog(n: int = 4) -> TrackCatalog:
    return TrackCatalog(
        Track(
            id=f"{i:03d}",
            title=f"Secret Song {i}",
            artist=f"Hidden Artist {i}",
            year=1980 + i,
            genre="POP",
            decade="1980s",
            difficulty="EASY",
        )
        for i in range(1, n + 1)
    )


class _Resolver:
    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.delay = delay
        self.fail = fail
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, title: str, artist: str):
        self.calls.append((title, artist))
        await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("preview service down")
        return AudioInfo(preview_url=f"https://cdn.example/{title}.mp3", duration_seconds=30)


class SessionStoreTests(IsolatedAsyncioTestCase):
    def make_store(self, catalog: TrackCatalog | None = None, resolver=None, **settings) -> SessionStore:
        return SessionStore(
            catalog if catalog is not None else _catalog(),
            resolver or _Resolver(),
            rng=random.Random(11),
            config=Settings(**{"AUDIO_TIMEOUT_SECONDS": 0.5, **settings}),
            collection=InMemoryCollection(),
            events=EventStore(InMemoryCollection(), InMemoryCollection()),
        )

    async def asyncSetUp(self):
        self.store = self.make_store()

    async def start(self, store: SessionStore, players=("A", "B"), **config) -> str:
        created = await store.create_session(CreateSessionIn(players=list(players), **config))
        self.assertTrue(created.success, created.error)
        session_id = created.data["session"]["id"]
        self.assertTrue((await store.start_game(session_id)).success)
        return session_id

    # -- creation and state machine ----------------------------------------

    async def test_create_session_gives_every_player_the_same_tokens(self):
        result = await self.store.create_session(CreateSessionIn(players=["Ana", "Bob", "Cat"]))

        self.assertTrue(result.success)
        session = result.data["session"]
        self.assertEqual(session["status"], "created")
        self.assertEqual(session["round"], 0)
        self.assertEqual([p["id"] for p in session["players"]], ["player_1", "player_2", "player_3"])
        self.assertTrue(all(p["available_tokens"] == [1, 2, 3] for p in session["players"]))

    async def test_create_session_validates_players(self):
        for players in ([], ["A", "  "], [f"P{i}" for i in range(9)]):
            result = await self.store.create_session(CreateSessionIn(players=players))
            self.assertFalse(result.success)
            self.assertEqual(result.error.code, "VALIDATION_ERROR")

    async def test_start_pause_resume(self):
        session_id = await self.start(self.store)

        again = await self.store.start_game(session_id)
        self.assertFalse(again.success)
        self.assertEqual(again.error.code, "STATE_ERROR")

        self.assertTrue((await self.store.pause_game(session_id)).success)
        resumed = await self.store.start_game(session_id)
        self.assertEqual(resumed.data["session"]["status"], "playing")

    async def test_cannot_pause_with_open_round(self):
        session_id = await self.start(self.store)
        await self.store.next_round(session_id)
        result = await self.store.pause_game(session_id)
        self.assertEqual(result.error.code, "STATE_ERROR")

    async def test_next_round_requires_playing(self):
        created = await self.store.create_session(CreateSessionIn(players=["A"]))
        result = await self.store.next_round(created.data["session"]["id"])
        self.assertEqual(result.error.code, "STATE_ERROR")

    async def test_unknown_session(self):
        for result in (
            await self.store.get_status("game_nope"),
            await self.store.start_game("game_nope"),
            await self.store.place_bet("game_nope", "player_1", 1),
            await self.store.delete_session("game_nope"),
        ):
            self.assertFalse(result.success)
            self.assertEqual(result.error.code, "NOT_FOUND")

    async def test_unknown_session_ids_leave_no_locks(self):
        session_id = await self.start(self.store)
        for i in range(50):
            await self.store.place_bet(f"game_bogus{i}", "player_1", 1)
            await self.store.next_round(f"game_gone{i}")
            await self.store.delete_session(f"game_gone{i}")

        # a NOT_FOUND raised for an existing session keeps its lock
        await self.store.next_round(session_id)
        await self.store.reveal_answer(session_id, "player_9")

        self.assertEqual(list(self.store.locks), [session_id])

    async def test_unknown_forced_type_is_rejected(self):
        session_id = await self.start(self.store)
        result = await self.store.next_round(session_id, "karaoke")
        self.assertEqual(result.error.code, "VALIDATION_ERROR")

    # -- rounds ------------------------------------------------------------

    async def test_round_payload_hides_the_answer(self):
        session_id = await self.start(self.store)
        result = await self.store.next_round(session_id, "song")

        self.assertTrue(result.success)
        title = result.data["moderator"]["track_title"]
        self.assertTrue(title.startswith("Secret Song"))
        self.assertEqual(result.data["moderator"]["correct"], title)

        public = json.dumps(result.data["round"])
        status = json.dumps((await self.store.get_status(session_id)).data)
        events = json.dumps(await self.store.events.list(session_id))
        for blob in (public, status, events):
            self.assertNotIn("Secret Song", blob)
            self.assertNotIn("Hidden Artist", blob)
            self.assertNotIn("acceptable_answers", blob)

    async def test_round_numbers_increase_after_reveal(self):
        session_id = await self.start(self.store)
        first = await self.store.next_round(session_id)
        await self.store.reveal_answer(session_id, None)

        status = (await self.store.get_status(session_id)).data["session"]
        self.assertIsNone(status["current_round"])

        second = await self.store.next_round(session_id)
        self.assertEqual(second.data["round"]["number"], first.data["round"]["number"] + 1)

    async def test_audio_is_attached_to_public_round(self):
        session_id = await self.start(self.store)
        result = await self.store.next_round(session_id)
        self.assertTrue(result.data["round"]["track"]["audio"]["preview_url"].endswith(".mp3"))

    async def test_audio_timeout_does_not_block_round(self):
        store = self.make_store(resolver=_Resolver(delay=1.0), AUDIO_TIMEOUT_SECONDS=0.05)
        session_id = await self.start(store)
        result = await store.next_round(session_id)
        self.assertTrue(result.success)
        self.assertIsNone(result.data["round"]["track"]["audio"])

    async def test_audio_failure_does_not_block_round(self):
        store = self.make_store(resolver=_Resolver(fail=True))
        session_id = await self.start(store)
        result = await store.next_round(session_id)
        self.assertTrue(result.success)
        self.assertIsNone(result.data["round"]["track"]["audio"])

    async def test_catalog_exhaustion_wraps(self):
        store = self.make_store(catalog=_catalog(3))
        session_id = await self.start(store, target_score=100)

        seen = []
        for _ in range(3):
            result = await store.next_round(session_id)
            self.assertFalse(result.data["selection"]["wrapped"])
            seen.append(result.data["round"]["track"]["id"])
            await store.reveal_answer(session_id, None)
        self.assertEqual(sorted(seen), ["001", "002", "003"])

        fourth = await store.next_round(session_id)
        self.assertTrue(fourth.success)
        self.assertTrue(fourth.data["selection"]["wrapped"])

    async def test_next_round_over_an_open_round_skips_it(self):
        store = self.make_store(catalog=_catalog(2))
        session_id = await self.start(store)

        self.assertTrue((await store.next_round(session_id)).success)
        await store.place_bet(session_id, "player_1", 3)
        for _ in range(2):
            self.assertTrue((await store.next_round(session_id)).success)

        session = (await store.get_status(session_id)).data["session"]
        self.assertEqual(session["round"], 3)
        self.assertEqual([h["round_number"] for h in session["history"]], [1, 2])
        self.assertTrue(all(h["winner_id"] is None for h in session["history"]))

        bettor, other = session["players"]
        self.assertEqual(bettor["available_tokens"], [1, 2])
        self.assertEqual(bettor["stats"]["wrong_answers"], 1)
        self.assertEqual(other["stats"]["wrong_answers"], 0)

    async def test_empty_catalog_fails_round(self):
        store = self.make_store(catalog=TrackCatalog([]))
        session_id = await self.start(store)
        result = await store.next_round(session_id)
        self.assertEqual(result.error.code, "NOT_FOUND")
        status = (await store.get_status(session_id)).data["session"]
        self.assertEqual(status["round"], 0)

    async def test_check_answer_against_open_round(self):
        session_id = await self.start(self.store)
        await self.store.next_round(session_id, "artist")

        hit = await self.store.check_answer(session_id, "hidden artist")
        miss = await self.store.check_answer(session_id, "somebody else")

        self.assertTrue(hit.data["correct"])
        self.assertFalse(miss.data["correct"])
        self.assertNotIn("correct_answer", hit.data)

    # -- betting and scoring -----------------------------------------------

    async def test_two_player_scenario(self):
        session_id = await self.start(self.store, players=("A", "B"), target_score=3)

        round_one = await self.store.next_round(session_id, "song")
        self.assertEqual(round_one.data["round"]["question"]["points"], 1)
        bet = await self.store.place_bet(session_id, "player_1", 1)
        self.assertEqual(bet.data["available_tokens"], [2, 3])
        revealed = await self.store.reveal_answer(session_id, "player_1")

        a = revealed.data["players"][0]
        self.assertEqual((a["score"], a["available_tokens"]), (2, [2, 3]))
        self.assertFalse(revealed.data["game_over"])

        round_two = await self.store.next_round(session_id, "artist")
        self.assertEqual(round_two.data["round"]["number"], 2)
        self.assertEqual(round_two.data["round"]["question"]["points"], 2)
        await self.store.place_bet(session_id, "player_1", 2)
        revealed = await self.store.reveal_answer(session_id, "player_1")

        self.assertEqual(revealed.data["results"]["points_awarded"], 4)
        self.assertEqual(revealed.data["players"][0]["score"], 6)
        self.assertTrue(revealed.data["game_over"])
        self.assertEqual(revealed.data["game_winner"]["id"], "player_1")
        self.assertEqual(revealed.data["game_winner"]["name"], "A")

        status = (await self.store.get_status(session_id)).data["session"]
        self.assertEqual(status["status"], "finished")
        self.assertEqual((await self.store.next_round(session_id)).error.code, "STATE_ERROR")

    async def test_failed_bet_returns_current_tokens(self):
        session_id = await self.start(self.store)
        await self.store.next_round(session_id)
        await self.store.place_bet(session_id, "player_2", 3)
        await self.store.reveal_answer(session_id, None)
        await self.store.next_round(session_id)

        result = await self.store.place_bet(session_id, "player_2", 3)

        self.assertFalse(result.success)
        self.assertEqual(result.error.code, "INVALID_TOKEN")
        self.assertEqual(result.error.details["available_tokens"], [1, 2])
        status = (await self.store.get_status(session_id)).data["session"]
        self.assertEqual(status["current_round"]["bets"], {})

    async def test_bet_without_round(self):
        session_id = await self.start(self.store)
        result = await self.store.place_bet(session_id, "player_1", 1)
        self.assertEqual(result.error.code, "STATE_ERROR")

    async def test_reveal_without_winner_returns_scoreboard(self):
        session_id = await self.start(self.store, players=("A", "B", "C"))
        await self.store.next_round(session_id)
        await self.store.place_bet(session_id, "player_3", 2)

        result = await self.store.reveal_answer(session_id, None)

        self.assertTrue(result.success)
        self.assertEqual(len(result.data["players"]), 3)
        self.assertEqual([p["score"] for p in result.data["players"]], [0, 0, 0])
        self.assertEqual(result.data["players"][2]["available_tokens"], [1, 3])
        self.assertIsNone(result.data["results"]["winner"])
        history = (await self.store.get_status(session_id)).data["session"]["history"]
        self.assertEqual(len(history), 1)

    # -- concurrency -------------------------------------------------------

    async def test_concurrent_next_round_calls_are_serialised(self):
        store = self.make_store(catalog=_catalog(6), resolver=_Resolver(delay=0.05))
        session_id = await self.start(store)

        first, second = await asyncio.gather(store.next_round(session_id), store.next_round(session_id))

        self.assertTrue(first.success and second.success)
        numbers = sorted([first.data["round"]["number"], second.data["round"]["number"]])
        self.assertEqual(numbers, [1, 2])
        self.assertNotEqual(first.data["round"]["track"]["id"], second.data["round"]["track"]["id"])

    async def test_bet_racing_a_reveal_is_never_lost(self):
        store = self.make_store(resolver=_Resolver(delay=0.05))
        session_id = await self.start(store)
        await store.next_round(session_id)

        bet, revealed = await asyncio.gather(
            store.place_bet(session_id, "player_1", 3),
            store.reveal_answer(session_id, "player_1"),
        )

        # the bet lands first under the session lock, so the reveal sees it
        self.assertTrue(bet.success)
        self.assertEqual(revealed.data["results"]["token_bonus"], 3)

    async def test_sessions_do_not_share_used_tracks(self):
        store = self.make_store(catalog=_catalog(2))
        one = await self.start(store)
        two = await self.start(store)

        await store.next_round(one)
        await store.reveal_answer(one, None)
        await store.next_round(one)
        result = await store.next_round(two)

        self.assertFalse(result.data["selection"]["wrapped"])

    # -- unexpected errors, listing and cleanup ----------------------------

    async def test_unexpected_error_becomes_structured_result(self):
        session_id = await self.start(self.store)
        with mock.patch.object(self.store.questions, "generate", side_effect=KeyError("boom")):
            result = await self.store.next_round(session_id)
        self.assertFalse(result.success)
        self.assertEqual(result.error.code, "INTERNAL_ERROR")

    async def test_get_all_sessions_and_delete(self):
        first = await self.start(self.store)
        await self.store.create_session(CreateSessionIn(players=["Solo"]))

        listed = (await self.store.get_all_sessions()).data["sessions"]
        self.assertEqual(len(listed), 2)
        self.assertNotIn("current_round", listed[0])

        self.assertTrue((await self.store.delete_session(first)).success)
        self.assertEqual(len((await self.store.get_all_sessions()).data["sessions"]), 1)
        self.assertEqual((await self.store.get_status(first)).error.code, "NOT_FOUND")

    async def test_cleanup_removes_inactive_sessions(self):
        old = await self.start(self.store)
        fresh = await self.start(self.store)
        doc = await self.store.sessions.find_one({"id": old})
        await self.store.sessions.update_one({"id": old}, {"$set": {"last_activity_ts": doc["last_activity_ts"] - 10_000}})

        result = await self.store.cleanup_old_sessions(max_age_seconds=7200)

        self.assertEqual(result.data["cleaned"], 1)
        self.assertEqual((await self.store.get_status(old)).error.code, "NOT_FOUND")
        self.assertTrue((await self.store.get_status(fresh)).success)

    async def test_cleanup_spares_a_session_touched_while_waiting(self):
        store = self.make_store(resolver=_Resolver(delay=0.2))
        session_id = await self.start(store)
        doc = await store.sessions.find_one({"id": session_id})
        await store.sessions.update_one({"id": session_id}, {"$set": {"last_activity_ts": doc["last_activity_ts"] - 10_000}})

        round_task = asyncio.create_task(store.next_round(session_id))
        await asyncio.sleep(0.05)
        cleaned = await store.cleanup_old_sessions(max_age_seconds=7200)

        self.assertTrue((await round_task).success)
        self.assertEqual(cleaned.data["cleaned"], 0)
        status = await store.get_status(session_id)
        self.assertTrue(status.success)
        self.assertEqual(status.data["session"]["round"], 1)

    async def test_reload_catalog_prunes_stale_ids(self):
        session_id = await self.start(self.store)
        await self.store.sessions.update_one({"id": session_id}, {"$set": {"used_track_ids": ["001", "gone"]}})

        with mock.patch.object(self.store.catalog, "reload"):
            result = await self.store.reload_catalog()

        self.assertTrue(result.success)
        doc = await self.store.sessions.find_one({"id": session_id})
        self.assertEqual(doc["used_track_ids"], ["001"])

    async def test_events_follow_the_round(self):
        session_id = await self.start(self.store)
        await self.store.next_round(session_id)
        await self.store.place_bet(session_id, "player_1", 1)
        await self.store.reveal_answer(session_id, "player_2")

        events = await self.store.events.list(session_id)
        self.assertEqual(
            [e["type"] for e in events],
            ["session_reset", "game_started", "round_started", "bet_placed", "round_revealed"],
        )
        later = await self.store.events.list(session_id, after=events[2]["seq"])
        self.assertEqual([e["type"] for e in later], ["bet_placed", "round_revealed"])
