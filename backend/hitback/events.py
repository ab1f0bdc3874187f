from __future__ import annotations

from typing import Any, List

from pymongo import ReturnDocument

from .db import db
from .utils import now_ts


class EventStore:
    """Per-session event feed; clients poll it by sequence number.

    Payloads are public: round answers only appear in ``round_revealed``.
    """

    def __init__(self, counters_collection=None, events_collection=None):
        self.counters_collection = counters_collection or db.session_event_counters
        self.events_collection = events_collection or db.session_events

    async def append(self, session_id: str, event_type: str, **payload: Any) -> int:
        counter_doc = await self.counters_collection.find_one_and_update(
            {"_id": session_id},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        seq = int(counter_doc["seq"])

        await self.events_collection.insert_one(
            {
                "session_id": session_id,
                "seq": seq,
                "timestamp": now_ts(),
                "type": event_type,
                "payload": payload,
            }
        )
        return seq

    async def list(self, session_id: str, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        query: dict[str, Any] = {"session_id": session_id}
        if after is not None:
            query["seq"] = {"$gt": after}

        cursor = (
            self.events_collection.find(query)
            .sort("seq", 1)
            .limit(limit)
        )
        return [
            {
                "seq": doc["seq"],
                "timestamp": doc["timestamp"],
                "type": doc["type"],
                "payload": doc.get("payload", {}),
            }
            async for doc in cursor
        ]

    async def reset(self, session_id: str) -> None:
        """Drop a session's events; the counter survives so sequence numbers never repeat."""
        await self.events_collection.delete_many({"session_id": session_id})
        await self.append(session_id, "session_reset")

    async def drop(self, session_id: str) -> None:
        await self.events_collection.delete_many({"session_id": session_id})
        await self.counters_collection.delete_one({"_id": session_id})


event_store = EventStore()
