"""Fans tracking frames out to WebSocket subscribers and Redis pub/sub."""

import asyncio
import logging

import orjson
import redis.asyncio as aioredis

from matatu_tracker.config import settings

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "tracking:"
STATE_KEY_PREFIX = "tracking:state:"
STATE_TTL_SECONDS = 3600


class Broadcaster:
    """Publishes per-session frames; Redis is optional, local queues always work."""

    def __init__(self) -> None:
        self._redis: aioredis.Redis | None = None
        self._subscribers: dict[str, set[asyncio.Queue]] = {}

    async def connect(self) -> None:
        self._redis = aioredis.from_url(settings.redis_url, decode_responses=False)

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()

    async def publish(self, session_id: str, frame: dict) -> None:
        """Publish one frame to Redis and to this session's local subscribers."""
        payload = orjson.dumps({"type": "frame", "frame": frame})

        if self._redis:
            try:
                # Latest frame for late subscribers
                await self._redis.set(STATE_KEY_PREFIX + session_id, payload, ex=STATE_TTL_SECONDS)
                await self._redis.publish(CHANNEL_PREFIX + session_id, payload)
            except Exception:
                logger.exception("Failed to publish frame to Redis")

        queues = self._subscribers.get(session_id, set())
        dead = set()
        for q in queues:
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                dead.add(q)
        queues -= dead

    async def forget(self, session_id: str) -> None:
        """Drop stored state for a closed session and wake its subscribers."""
        if self._redis:
            try:
                await self._redis.delete(STATE_KEY_PREFIX + session_id)
            except Exception:
                logger.exception("Failed to delete session state from Redis")
        closed = orjson.dumps({"type": "closed", "session_id": session_id})
        for q in self._subscribers.pop(session_id, set()):
            try:
                q.put_nowait(closed)
            except asyncio.QueueFull:
                pass

    def subscribe(self, session_id: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=10)
        self._subscribers.setdefault(session_id, set()).add(q)
        return q

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def unsubscribe(self, session_id: str, q: asyncio.Queue) -> None:
        queues = self._subscribers.get(session_id)
        if queues is not None:
            queues.discard(q)
            if not queues:
                del self._subscribers[session_id]
