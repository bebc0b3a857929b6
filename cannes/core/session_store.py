"""Transient storage for comparison sessions.

Sessions are plain JSON documents keyed by user id. A user can hold at most
one; ``create`` is atomic so two concurrent starts cannot both succeed.
Abandoned sessions expire after ``session_ttl_seconds`` of inactivity.
"""

import asyncio
import json
import logging
import time
from typing import Any

import redis.asyncio as redis

from cannes.config import get_settings
from cannes.core.errors import SessionConflict, SessionNotFound

logger = logging.getLogger(__name__)
settings = get_settings()


def session_key(user_id: str) -> str:
    return f"ranking:session:{user_id}"


class RedisSessionStore:
    """Async Redis session store (SET NX/XX with expiry)."""

    def __init__(self, url: str | None = None, ttl: int | None = None):
        self.url = url or settings.redis_url
        self.ttl = ttl or settings.session_ttl_seconds
        self._redis: redis.Redis | None = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()

    async def create(self, user_id: str, payload: dict[str, Any]) -> None:
        """Store a new session; fails if the user already has one."""
        client = await self._get_redis()
        created = await client.set(session_key(user_id), json.dumps(payload), nx=True, ex=self.ttl)
        if not created:
            raise SessionConflict(user_id)

    async def get(self, user_id: str) -> dict[str, Any] | None:
        client = await self._get_redis()
        value = await client.get(session_key(user_id))
        if value:
            return json.loads(value)
        return None

    async def save(self, user_id: str, payload: dict[str, Any]) -> None:
        """Overwrite an existing session and refresh its TTL."""
        client = await self._get_redis()
        updated = await client.set(session_key(user_id), json.dumps(payload), xx=True, ex=self.ttl)
        if not updated:
            raise SessionNotFound(user_id)

    async def delete(self, user_id: str) -> bool:
        client = await self._get_redis()
        return await client.delete(session_key(user_id)) > 0


class MemorySessionStore:
    """In-process session store with the same contract as RedisSessionStore.

    Suitable for a single worker process and for tests.
    """

    def __init__(self, ttl: int | None = None):
        self.ttl = ttl or settings.session_ttl_seconds
        self._sessions: dict[str, tuple[float, str]] = {}
        self._lock = asyncio.Lock()

    async def close(self):
        self._sessions.clear()

    def _live(self, user_id: str) -> str | None:
        item = self._sessions.get(user_id)
        if item is None:
            return None
        expires_at, value = item
        if expires_at <= time.monotonic():
            del self._sessions[user_id]
            return None
        return value

    async def create(self, user_id: str, payload: dict[str, Any]) -> None:
        async with self._lock:
            if self._live(user_id) is not None:
                raise SessionConflict(user_id)
            self._sessions[user_id] = (time.monotonic() + self.ttl, json.dumps(payload))

    async def get(self, user_id: str) -> dict[str, Any] | None:
        async with self._lock:
            value = self._live(user_id)
        return json.loads(value) if value else None

    async def save(self, user_id: str, payload: dict[str, Any]) -> None:
        async with self._lock:
            if self._live(user_id) is None:
                raise SessionNotFound(user_id)
            self._sessions[user_id] = (time.monotonic() + self.ttl, json.dumps(payload))

    async def delete(self, user_id: str) -> bool:
        async with self._lock:
            return self._sessions.pop(user_id, None) is not None


SessionStore = RedisSessionStore | MemorySessionStore

# Singleton store instance
_store: SessionStore | None = None


def get_session_store() -> SessionStore:
    """Get the singleton session store for the configured backend."""
    global _store
    if _store is None:
        if settings.session_backend == "memory":
            logger.info("Using in-memory comparison session store")
            _store = MemorySessionStore()
        else:
            _store = RedisSessionStore()
    return _store
