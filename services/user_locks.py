"""
Per-user mutual exclusion for subscription writes.

Every ledger + snapshot update for a user runs inside hold(user_id), so two
concurrent webhook deliveries (or a webhook and a user cancel) for the same
user never interleave.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

from errors import UpstreamError

logger = logging.getLogger(__name__)


def lock_key(user_id) -> str:
    return f"user_lock:{user_id}"


class InMemoryUserLocks:
    """asyncio.Lock per user id, dropped once nobody holds or waits on it."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id) -> AsyncIterator[None]:
        key = lock_key(user_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                logger.error(f"Timed out waiting for lock on user {user_id}")
                raise UpstreamError("Subscription update already in progress")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)


class RedisUserLocks:
    """Redis lock per user id, shared by every worker process."""

    def __init__(self, client: Redis, timeout_seconds: float):
        self.client = client
        self.timeout_seconds = timeout_seconds

    @asynccontextmanager
    async def hold(self, user_id) -> AsyncIterator[None]:
        lock = self.client.lock(
            lock_key(user_id),
            timeout=self.timeout_seconds * 3,
            blocking_timeout=self.timeout_seconds,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            logger.error(f"User lock unavailable for {user_id}: {e}")
            raise UpstreamError("Lock store unavailable")
        if not acquired:
            logger.error(f"Timed out waiting for lock on user {user_id}")
            raise UpstreamError("Subscription update already in progress")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # lock expired while held; the write itself already committed or rolled back
                logger.warning(f"User lock for {user_id} expired before release: {e}")
