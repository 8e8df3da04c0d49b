"""
Pytest configuration and fixtures for testing
"""
import json
import re
from datetime import timedelta

import jwt
import pytest
from fastapi.testclient import TestClient

from auth_utils import ACCESS_TOKEN, ALGORITHM, REFRESH_TOKEN, hash_password
from config import Settings
from crud.user import UserRepository
from database import create_engine_for_url, init_db
from services.container import build_services
from services.notification_service import NotificationService
from services.webhook_processor import compute_signature
from utils.shared_utils import utcnow

TEST_ACCESS_SECRET = "test-access-secret-0123456789abcdef0123456789"
TEST_REFRESH_SECRET = "test-refresh-secret-0123456789abcdef012345678"
TEST_PAYSTACK_SECRET = "sk_test_5f2b9c1d7e8a4b3c9d0e1f2a3b4c5d6e"
TEST_PASSWORD = "Jollof#2024"


class RecordingEmailSender:
    """Email transport that keeps every message for assertions."""

    def __init__(self):
        self.sent = []

    async def send(self, to, subject, body):
        self.sent.append({"to": to, "subject": subject, "body": body})

    def token_from(self, path_segment):
        """Pull the one-time token out of the last link sent for the given path."""
        for message in reversed(self.sent):
            match = re.search(rf"/{path_segment}/([0-9a-f]+)", message["body"])
            if match:
                return match.group(1)
        return None


def build_test_settings(database_url, **overrides) -> Settings:
    values = {
        "jwt_access_secret": TEST_ACCESS_SECRET,
        "jwt_refresh_secret": TEST_REFRESH_SECRET,
        "paystack_secret_key": TEST_PAYSTACK_SECRET,
        "paystack_plan_monthly": "PLN_monthly",
        "paystack_plan_yearly": "PLN_yearly",
        "database_url": database_url,
        "redis_url": None,
        "auth_rate_limit_attempts": 1000,
        "client_url": "http://localhost:5173",
        "user_lock_timeout_seconds": 5.0,
    }
    values.update(overrides)
    return Settings(**values)


def paystack_body(event, **data) -> bytes:
    return json.dumps({"event": event, "data": data}).encode()


def sign(body: bytes, secret: str = TEST_PAYSTACK_SECRET) -> str:
    return compute_signature(body, secret)


@pytest.fixture
def config(tmp_path):
    """Settings pointing at a throwaway SQLite file for this test."""
    return build_test_settings(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
async def services(config, email_sender):
    """
    Fully wired services with in-process cache, idempotency store and locks.

    Tables are created before the test runs and the engine is disposed after.
    """
    app_services = build_services(
        config,
        engine=create_engine_for_url(config.database_url),
        notifier=NotificationService(config.client_url, email_sender=email_sender),
    )
    await init_db(app_services.engine)
    yield app_services
    await app_services.close()


@pytest.fixture
async def db(services):
    async with services.session_factory() as session:
        yield session


@pytest.fixture
def make_user(services):
    """Factory creating a persisted user with a known password."""

    async def _make(email="ama.mensah@example.com", password=TEST_PASSWORD, **fields):
        async with services.session_factory() as session:
            users = UserRepository(session)
            user = await users.create_user({
                "name": fields.pop("name", "Ama Mensah"),
                "email": email,
                "hashed_password": hash_password(password),
                **fields,
            })
            await session.commit()
            return user

    return _make


@pytest.fixture
def client(config, email_sender):
    """FastAPI TestClient running the full app against the test database"""
    from main import create_app

    app_services = build_services(
        config,
        engine=create_engine_for_url(config.database_url),
        notifier=NotificationService(config.client_url, email_sender=email_sender),
    )
    with TestClient(create_app(app_services)) as test_client:
        yield test_client


@pytest.fixture
def expired_token():
    """Factory for tokens signed with the test secrets but already past expiry."""
    secrets_by_kind = {ACCESS_TOKEN: TEST_ACCESS_SECRET, REFRESH_TOKEN: TEST_REFRESH_SECRET}

    def _make(user, kind=ACCESS_TOKEN, expired_seconds_ago=1):
        now = utcnow()
        payload = {
            "id": user.id,
            "email": getattr(user, "email", None),
            "role": getattr(user, "role", None),
            "type": kind,
            "iat": now - timedelta(seconds=expired_seconds_ago + 60),
            "exp": now - timedelta(seconds=expired_seconds_ago),
        }
        return jwt.encode(payload, secrets_by_kind[kind], algorithm=ALGORITHM)

    return _make
