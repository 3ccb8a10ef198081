"""
OIDC Session Store

Short-lived server-side state for the two-leg external login, keyed by the
browser's session id. Values are JSON-serialized with a TTL.
"""

import json
import logging
import time
from typing import Any, Protocol

import redis.asyncio as aioredis

from registry_auth.config import Settings

logger = logging.getLogger(__name__)

SESSION_COOKIE = "oidc_session"
OIDC_STATE_KEY = "oidc"


def session_key(session_id: str, key: str) -> str:
    """Store key for one entry of a browser session."""
    return f"session:{session_id}:{key}"


class SessionStore(Protocol):
    async def get(self, session_id: str, key: str) -> Any | None: ...

    async def set(self, session_id: str, key: str, value: Any, ttl: int) -> None: ...

    async def destroy(self, session_id: str, key: str) -> None: ...


class RedisSessionStore:
    """Redis-backed store shared by every worker process."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        # Lazy-initialized connection pool
        self._redis: aioredis.Redis | None = None

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
            )
        return self._redis

    async def get(self, session_id: str, key: str) -> Any | None:
        r = await self._get_redis()
        data = await r.get(session_key(session_id, key))
        if data:
            return json.loads(data)
        return None

    async def set(self, session_id: str, key: str, value: Any, ttl: int) -> None:
        r = await self._get_redis()
        await r.set(session_key(session_id, key), json.dumps(value, default=str), ex=ttl)

    async def destroy(self, session_id: str, key: str) -> None:
        r = await self._get_redis()
        await r.delete(session_key(session_id, key))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class MemorySessionStore:
    """In-process store for single-worker deployments and tests."""

    def __init__(self):
        self._entries: dict[str, tuple[float, str]] = {}

    async def get(self, session_id: str, key: str) -> Any | None:
        entry = self._entries.get(session_key(session_id, key))
        if entry is None:
            return None
        expires_at, data = entry
        if time.monotonic() >= expires_at:
            self._entries.pop(session_key(session_id, key), None)
            return None
        return json.loads(data)

    async def set(self, session_id: str, key: str, value: Any, ttl: int) -> None:
        now = time.monotonic()
        self._sweep(now)
        self._entries[session_key(session_id, key)] = (
            now + ttl,
            json.dumps(value, default=str),
        )

    async def destroy(self, session_id: str, key: str) -> None:
        self._entries.pop(session_key(session_id, key), None)

    async def close(self) -> None:
        self._entries.clear()

    def _sweep(self, now: float) -> None:
        # Abandoned sign-ins never reach get or destroy
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]


def create_session_store(settings: Settings) -> RedisSessionStore | MemorySessionStore:
    if settings.session_backend == "memory":
        logger.info("Using in-memory OIDC session store")
        return MemorySessionStore()
    logger.info("Using Redis OIDC session store")
    return RedisSessionStore(settings.redis_url)
