"""
Session Cache - holds the single authoritative refresh token per user.

Every operation is a single round trip against the backing store and atomic
per key. Redis is used when REDIS_URL is set; otherwise an in-process store
with the same contract is used (single worker deployments and tests).
"""

import logging
import threading
import time
from typing import Dict, Optional, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from errors import UpstreamError

logger = logging.getLogger(__name__)

# Compare-and-swap: replace the stored token only if it still equals the presented one
_ROTATE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
    return 1
end
return 0
"""


def refresh_key(user_id) -> str:
    return f"refresh_token:{user_id}"


class RedisSessionCache:
    """Session cache backed by Redis (SET EX / GET / DEL / Lua CAS)."""

    def __init__(self, client: Redis):
        self.client = client
        self._rotate = client.register_script(_ROTATE_SCRIPT)

    async def put(self, user_id, refresh_token: str, ttl_seconds: int) -> None:
        try:
            await self.client.set(refresh_key(user_id), refresh_token, ex=ttl_seconds)
        except RedisError as e:
            logger.error(f"Session cache put failed for user {user_id}: {e}")
            raise UpstreamError("Session store unavailable")

    async def get(self, user_id) -> Optional[str]:
        try:
            return await self.client.get(refresh_key(user_id))
        except RedisError as e:
            logger.error(f"Session cache get failed for user {user_id}: {e}")
            raise UpstreamError("Session store unavailable")

    async def remove(self, user_id) -> None:
        try:
            await self.client.delete(refresh_key(user_id))
        except RedisError as e:
            logger.error(f"Session cache remove failed for user {user_id}: {e}")
            raise UpstreamError("Session store unavailable")

    async def rotate(self, user_id, expected: str, new_token: str, ttl_seconds: int) -> bool:
        try:
            swapped = await self._rotate(keys=[refresh_key(user_id)], args=[expected, new_token, ttl_seconds])
        except RedisError as e:
            logger.error(f"Session cache rotate failed for user {user_id}: {e}")
            raise UpstreamError("Session store unavailable")
        return bool(swapped)


class InMemorySessionCache:
    """In-process session cache: key -> (token, expires_at monotonic)."""

    def __init__(self):
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        token, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._entries[key]
            return None
        return token

    async def put(self, user_id, refresh_token: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[refresh_key(user_id)] = (refresh_token, time.monotonic() + ttl_seconds)

    async def get(self, user_id) -> Optional[str]:
        with self._lock:
            return self._live(refresh_key(user_id))

    async def remove(self, user_id) -> None:
        with self._lock:
            self._entries.pop(refresh_key(user_id), None)

    async def rotate(self, user_id, expected: str, new_token: str, ttl_seconds: int) -> bool:
        key = refresh_key(user_id)
        with self._lock:
            if self._live(key) != expected:
                return False
            self._entries[key] = (new_token, time.monotonic() + ttl_seconds)
            return True
