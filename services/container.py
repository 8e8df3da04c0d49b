"""
Component wiring. Everything is built once at startup and hung on
app.state.services; request handlers reach it through dependencies.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from redis.asyncio import Redis, from_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from auth_utils import TokenIssuer
from config import Settings
from database import create_engine_for_url, create_session_factory
from services.auth_service import AuthService
from services.idempotency import InMemoryIdempotencyStore, RedisIdempotencyStore
from services.notification_service import NotificationService
from services.payment_gateway import PaystackClient
from services.session_cache import InMemorySessionCache, RedisSessionCache
from services.subscription_service import SubscriptionService
from services.user_locks import InMemoryUserLocks, RedisUserLocks
from services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    config: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker
    redis: Optional[Redis]
    issuer: TokenIssuer
    session_cache: object
    idempotency: object
    locks: object
    gateway: PaystackClient
    notifier: NotificationService
    auth: AuthService
    subscriptions: SubscriptionService
    webhooks: WebhookProcessor

    async def close(self) -> None:
        await self.notifier.drain()
        await self.gateway.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        await self.engine.dispose()


def build_services(config: Settings, engine: Optional[AsyncEngine] = None,
                   redis_client: Optional[Redis] = None,
                   http_client: Optional[httpx.AsyncClient] = None,
                   notifier: Optional[NotificationService] = None) -> AppServices:
    """
    Construct every component. Redis-backed cache, idempotency store and
    locks are used when a Redis client is given or REDIS_URL is set; the
    in-process versions otherwise.
    """
    engine = engine or create_engine_for_url(config.database_url)
    session_factory = create_session_factory(engine)

    if redis_client is None and config.redis_url:
        redis_client = from_url(config.redis_url, decode_responses=True)

    idempotency_ttl = config.webhook_idempotency_ttl_hours * 3600
    if redis_client is not None:
        logger.info("Using Redis for sessions, webhook idempotency and user locks")
        session_cache = RedisSessionCache(redis_client)
        idempotency = RedisIdempotencyStore(redis_client, idempotency_ttl)
        locks = RedisUserLocks(redis_client, config.user_lock_timeout_seconds)
    else:
        logger.warning("REDIS_URL not set. Using in-process session cache, idempotency store and locks.")
        session_cache = InMemorySessionCache()
        idempotency = InMemoryIdempotencyStore(idempotency_ttl)
        locks = InMemoryUserLocks(config.user_lock_timeout_seconds)

    issuer = TokenIssuer(config)
    gateway = PaystackClient(config, http_client=http_client)
    notifier = notifier or NotificationService(config.client_url)
    auth = AuthService(config, issuer, session_cache, notifier)
    subscriptions = SubscriptionService(config, session_factory, locks, gateway, notifier)
    webhooks = WebhookProcessor(config, idempotency, subscriptions, session_factory)

    return AppServices(
        config=config,
        engine=engine,
        session_factory=session_factory,
        redis=redis_client,
        issuer=issuer,
        session_cache=session_cache,
        idempotency=idempotency,
        locks=locks,
        gateway=gateway,
        notifier=notifier,
        auth=auth,
        subscriptions=subscriptions,
        webhooks=webhooks,
    )
