from __future__ import annotations

import asyncio
import copy
import operator
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import ReturnDocument


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None
    CATALOG_PATH: str = str(Path(__file__).resolve().parents[2] / "data" / "tracks.json")
    AUDIO_API_URL: str = "https://api.deezer.com"
    AUDIO_TIMEOUT_SECONDS: float = 4.0
    MAX_PLAYERS: int = 8
    INITIAL_TOKENS: str = "1,2,3"
    SESSION_MAX_AGE_SECONDS: int = 2 * 60 * 60
    CLEANUP_INTERVAL_SECONDS: int = 10 * 60
    LOG_LEVEL: str = "INFO"

    @property
    def initial_tokens(self) -> List[int]:
        return sorted({int(t) for t in self.INITIAL_TOKENS.split(",") if t.strip()})


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

_QUERY_OPERATORS = {"$gt": operator.gt, "$lt": operator.lt}


class InMemoryCursor:
    """Async cursor over a query; ``sort`` and ``limit`` apply when iteration starts."""

    def __init__(self, collection: "InMemoryCollection", query: Dict[str, Any]):
        self._collection = collection
        self._query = query or {}
        self._order: Optional[tuple[str, int]] = None
        self._limit: Optional[int] = None
        self._docs: Optional[List[Dict[str, Any]]] = None

    def sort(self, key: str, direction: int):
        self._order = (key, direction)
        return self

    def limit(self, limit: int):
        self._limit = limit
        return self

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._docs is None:
            docs = await self._collection._find_all(self._query)
            if self._order is not None:
                key, direction = self._order
                docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
            self._docs = docs[: self._limit] if self._limit is not None else docs
        if not self._docs:
            raise StopAsyncIteration
        return self._docs.pop(0)


class InMemoryCollection:
    """Mongo-shaped document store; every read and write works on deep copies."""

    def __init__(self):
        self._docs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def _find_all(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if self._matches(doc, query)]

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for doc in self._docs:
                if self._matches(doc, query):
                    return copy.deepcopy(doc)
        return None

    def find(self, query: Dict[str, Any]):
        return InMemoryCursor(self, query)

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        await self.find_one_and_update(query, update, upsert=upsert)

    async def insert_one(self, document: Dict[str, Any]):
        async with self._lock:
            self._docs.append(copy.deepcopy(document))

    async def delete_one(self, query: Dict[str, Any]) -> int:
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    del self._docs[idx]
                    return 1
        return 0

    async def delete_many(self, query: Dict[str, Any]) -> int:
        async with self._lock:
            before = len(self._docs)
            self._docs = [doc for doc in self._docs if not self._matches(doc, query)]
            return before - len(self._docs)

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        *,
        upsert: bool = False,
        return_document: ReturnDocument = ReturnDocument.AFTER,
    ) -> Optional[Dict[str, Any]]:
        # only the post-update document is ever asked for (event counters)
        if return_document != ReturnDocument.AFTER:
            raise ValueError("Only ReturnDocument.AFTER is supported")

        async with self._lock:
            target = next((doc for doc in self._docs if self._matches(doc, query)), None)
            if target is None:
                if not upsert:
                    return None
                target = copy.deepcopy(query)
                self._docs.append(target)
            self._apply_update(target, update)
            return copy.deepcopy(target)

    def _apply_update(self, doc: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        for op, payload in update.items():
            if op == "$set":
                for key, value in payload.items():
                    doc[key] = copy.deepcopy(value)
            elif op == "$inc":
                for key, value in payload.items():
                    current = doc.get(key, 0)
                    doc[key] = current + value
            else:  # pragma: no cover - only the above operators are used today
                raise ValueError(f"Unsupported update operator: {op}")
        return doc

    def _matches(self, doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        for key, expected in (query or {}).items():
            actual = doc.get(key)
            if not isinstance(expected, dict):
                if actual != expected:
                    return False
                continue
            for op, bound in expected.items():
                compare = _QUERY_OPERATORS.get(op)
                if compare is None:
                    raise ValueError(f"Unsupported query operator: {op}")
                if actual is None or not compare(actual, bound):
                    return False
        return True


class InMemoryDatabase:
    def __init__(self):
        self.sessions = InMemoryCollection()
        self.session_event_counters = InMemoryCollection()
        self.session_events = InMemoryCollection()


db: Any = InMemoryDatabase()
