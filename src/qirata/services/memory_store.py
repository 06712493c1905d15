"""Storage backends for per-session conversation memory.

``InMemoryMemoryStore`` keeps snapshots in a process-local dict and is the
default for a single worker. ``RedisMemoryStore`` keeps them in Redis so that
several workers can share sessions; expiry is left to Redis TTLs.
"""

import asyncio
import logging
import time
from typing import Any, Dict

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..models import MemorySnapshot, MessagePair
from .redis import RedisCrudService, get_redis_crud_service

logger = logging.getLogger(__name__)

MEMORY_KEY_PREFIX = "memory:"


def _snapshot_to_dict(snapshot: MemorySnapshot) -> Dict[str, Any]:
    """Serialize a MemorySnapshot to a JSON-serializable dict."""
    return {
        "recent_messages": [
            {"user_message": m.user_message, "ai_response": m.ai_response}
            for m in snapshot.recent_messages
        ],
        "rolling_summary": snapshot.rolling_summary,
        "total_message_count": snapshot.total_message_count,
    }


def _dict_to_snapshot(data: Dict[str, Any]) -> MemorySnapshot:
    """Build a MemorySnapshot from a dict (e.g. from Redis)."""
    return MemorySnapshot(
        recent_messages=[
            MessagePair(
                user_message=m.get("user_message", ""),
                ai_response=m.get("ai_response", ""),
            )
            for m in data.get("recent_messages", [])
        ],
        rolling_summary=data.get("rolling_summary"),
        total_message_count=int(data.get("total_message_count", 0)),
    )


class MemoryStore:
    """Keyed snapshot storage with one asyncio lock per session."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, session_id: str) -> asyncio.Lock:
        if session_id not in self._locks:
            self._locks[session_id] = asyncio.Lock()
        return self._locks[session_id]

    def _drop_lock(self, session_id: str) -> None:
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            self._locks.pop(session_id, None)

    async def init(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def get(self, session_id: str) -> MemorySnapshot | None:
        raise NotImplementedError

    async def put(self, session_id: str, snapshot: MemorySnapshot) -> None:
        raise NotImplementedError

    async def delete(self, session_id: str) -> bool:
        raise NotImplementedError

    async def sweep_inactive(self, max_idle_seconds: float) -> int:
        raise NotImplementedError


class InMemoryMemoryStore(MemoryStore):
    def __init__(self) -> None:
        super().__init__()
        self._snapshots: Dict[str, MemorySnapshot] = {}
        self._last_activity: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._snapshots)

    async def get(self, session_id: str) -> MemorySnapshot | None:
        snapshot = self._snapshots.get(session_id)
        if snapshot is not None:
            self._last_activity[session_id] = time.monotonic()
        return snapshot

    async def put(self, session_id: str, snapshot: MemorySnapshot) -> None:
        self._snapshots[session_id] = snapshot
        self._last_activity[session_id] = time.monotonic()

    async def delete(self, session_id: str) -> bool:
        existed = self._snapshots.pop(session_id, None) is not None
        self._last_activity.pop(session_id, None)
        self._drop_lock(session_id)
        return existed

    async def sweep_inactive(self, max_idle_seconds: float) -> int:
        """Remove sessions idle for longer than max_idle_seconds. Returns the count removed."""
        cutoff = time.monotonic() - max_idle_seconds
        stale = [sid for sid, seen in self._last_activity.items() if seen < cutoff]
        removed = 0
        for session_id in stale:
            if self.lock(session_id).locked():
                continue
            await self.delete(session_id)
            removed += 1
        if removed:
            logger.info("Swept %d inactive session memories", removed)
        return removed


class RedisMemoryStore(MemoryStore):
    """Snapshots stored as JSON under ``memory:<session_id>`` with a TTL."""

    def __init__(self, redis_crud: RedisCrudService, ttl_seconds: int) -> None:
        super().__init__()
        self._redis = redis_crud
        self._ttl = ttl_seconds

    def _key(self, session_id: str) -> str:
        return f"{MEMORY_KEY_PREFIX}{session_id}"

    async def init(self) -> None:
        await self._redis.connect()

    async def close(self) -> None:
        await self._redis.close()

    async def get(self, session_id: str) -> MemorySnapshot | None:
        data = await self._redis.get_json(self._key(session_id))
        if data is None:
            return None
        try:
            return _dict_to_snapshot(data)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("Invalid memory data for %s: %s", session_id, e)
            return None

    async def put(self, session_id: str, snapshot: MemorySnapshot) -> None:
        ok = await self._redis.set_json(
            self._key(session_id), _snapshot_to_dict(snapshot), ttl_seconds=self._ttl
        )
        if not ok:
            logger.warning("Memory for session %s was not persisted to Redis", session_id)

    async def delete(self, session_id: str) -> bool:
        self._drop_lock(session_id)
        return await self._redis.delete(self._key(session_id))

    async def sweep_inactive(self, max_idle_seconds: float) -> int:
        # Redis expires idle keys on its own; only local locks need pruning.
        for session_id in list(self._locks):
            self._drop_lock(session_id)
        return 0


async def build_memory_store(ttl_seconds: int) -> MemoryStore:
    """Return a Redis-backed store when Redis is configured and reachable, else in-memory."""
    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        return InMemoryMemoryStore()
    try:
        await redis_crud.connect()
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        logger.warning("Redis unavailable, falling back to in-memory session memory: %s", e)
        return InMemoryMemoryStore()
    return RedisMemoryStore(redis_crud=redis_crud, ttl_seconds=ttl_seconds)
