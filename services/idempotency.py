"""
Webhook idempotency markers: provider event reference -> first-seen timestamp.

claim() is a single atomic check-and-insert so two concurrent deliveries of
the same event can never both pass.
"""
import logging
import threading
import time
from typing import Dict, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from errors import UpstreamError
from utils.shared_utils import utcnow

logger = logging.getLogger(__name__)


def marker_key(reference: str) -> str:
    return f"webhook_event:{reference}"


class RedisIdempotencyStore:
    """Idempotency markers in Redis using SET NX EX."""

    def __init__(self, client: Redis, ttl_seconds: int):
        self.client = client
        self.ttl_seconds = ttl_seconds

    async def claim(self, reference: str) -> bool:
        """Return True if this call inserted the marker, False if it already existed."""
        try:
            inserted = await self.client.set(
                marker_key(reference), utcnow().isoformat(), nx=True, ex=self.ttl_seconds
            )
        except RedisError as e:
            logger.error(f"Idempotency claim failed for {reference}: {e}")
            raise UpstreamError("Idempotency store unavailable")
        return bool(inserted)

    async def release(self, reference: str) -> None:
        """Drop a marker so a redelivery of a failed event is processed again."""
        try:
            await self.client.delete(marker_key(reference))
        except RedisError as e:
            logger.error(f"Idempotency release failed for {reference}: {e}")


class InMemoryIdempotencyStore:
    """In-process idempotency markers with TTL."""

    def __init__(self, ttl_seconds: int):
        self.ttl_seconds = ttl_seconds
        self._markers: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    async def claim(self, reference: str) -> bool:
        key = marker_key(reference)
        now = time.monotonic()
        with self._lock:
            for stale in [k for k, (_, expires) in self._markers.items() if expires <= now]:
                del self._markers[stale]
            if key in self._markers:
                return False
            self._markers[key] = (utcnow().isoformat(), now + self.ttl_seconds)
            return True

    async def release(self, reference: str) -> None:
        with self._lock:
            self._markers.pop(marker_key(reference), None)
