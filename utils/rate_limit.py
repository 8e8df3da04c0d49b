import json
from time import time
from typing import Dict, Iterable, Optional, Tuple
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from redis.exceptions import RedisError
import logging

from utils.responses import error_response

logger = logging.getLogger(__name__)

# Credential endpoints guarded against brute force
AUTH_LIMITED_PATHS = (
    "/api/v1/auth/login",
    "/api/v1/auth/register",
    "/api/v1/auth/forgot-password",
)


class RateLimiterMiddleware(BaseHTTPMiddleware):
    """
    Distributed rate limiter using Redis (with fallback to in-memory).
    Uses Token Bucket Algorithm, applied only to the configured paths.
    Default: 5 attempts per 15 minutes per IP.
    """

    def __init__(self, app, attempts: int = 5, window_seconds: float = 900.0,
                 paths: Iterable[str] = AUTH_LIMITED_PATHS):
        super().__init__(app)
        self.capacity = attempts
        self.refill_time_window = float(window_seconds)
        self.paths = tuple(paths)
        # Fallback: in-memory storage (key -> (tokens, last_refill_ts))
        self._buckets: Dict[str, Tuple[float, float]] = {}

    def _get_client_ip(self, request: Request) -> str:
        xff = request.headers.get("x-forwarded-for")
        if xff:
            # Take first IP in the list
            return xff.split(",")[0].strip()
        client = request.client
        return client.host if client else "unknown"

    def _get_redis_key(self, ip: str, path: str) -> str:
        """Generate Redis key for rate limiting"""
        return f"rate_limit:{path}:{ip}"

    def _refill(self, tokens: float, last_refill: float, now: float) -> float:
        elapsed = max(0.0, now - last_refill)
        refill = (elapsed / self.refill_time_window) * self.capacity
        return min(self.capacity, tokens + refill)

    async def _check_rate_limit_redis(self, client, ip: str, path: str) -> Optional[bool]:
        """
        Check rate limit using Redis.
        Returns True if allowed, False if limited, None if Redis failed.
        """
        try:
            key = self._get_redis_key(ip, path)
            now = time()

            bucket_data = await client.get(key)
            if bucket_data:
                # Parse stored data: {"tokens": float, "last_refill": float}
                data = json.loads(bucket_data)
                tokens = float(data.get("tokens", 0))
                last_refill = float(data.get("last_refill", now))
            else:
                # New bucket, start with full capacity
                tokens = float(self.capacity)
                last_refill = now

            tokens = self._refill(tokens, last_refill, now)
            if tokens < 1.0:
                return False

            bucket_data = json.dumps({"tokens": tokens - 1.0, "last_refill": now})
            await client.setex(key, int(self.refill_time_window) + 10, bucket_data)
            return True

        except (RedisError, ValueError) as e:
            logger.warning(f"Redis rate limit check failed: {e}. Falling back to in-memory.")
            return None

    def _check_rate_limit_memory(self, ip: str, path: str) -> bool:
        now = time()
        key = f"{path}:{ip}"
        tokens, last_refill = self._buckets.get(key, (self.capacity, now))
        tokens = self._refill(tokens, last_refill, now)

        if tokens < 1.0:
            return False

        # Consume a token and store
        self._buckets[key] = (tokens - 1.0, now)
        return True

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if request.method != "POST" or path not in self.paths:
            return await call_next(request)

        ip = self._get_client_ip(request)
        services = getattr(request.app.state, "services", None)
        redis_client = services.redis if services is not None else None

        allowed = None
        if redis_client is not None:
            allowed = await self._check_rate_limit_redis(redis_client, ip, path)
        if allowed is None:
            allowed = self._check_rate_limit_memory(ip, path)

        if not allowed:
            logger.warning(f"Rate limit exceeded for {ip} on {path}")
            return error_response(
                "rate_limited",
                status=429,
                message="Too many attempts. Please try again later.",
            )

        return await call_next(request)
