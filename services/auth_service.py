"""
Auth Service - register, login, refresh, logout, email verification and
password reset on top of the credential store, token issuer and session cache.
"""

import hmac
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from auth_utils import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    TokenIssuer,
    generate_one_time_token,
    hash_password,
    hash_token,
    verify_password,
)
from config import Settings
from crud.user import UserRepository
from database_models import User
from errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from services.notification_service import NotificationService
from utils.security_utils import validate_password_strength
from utils.shared_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str

    def as_dict(self) -> dict:
        return {"accessToken": self.access_token, "refreshToken": self.refresh_token}


class AuthService:
    """
    Stateless access tokens, single-slot stateful refresh tokens.

    Each successful login overwrites the user's refresh slot, so an earlier
    refresh token stops working as soon as a newer one is issued.
    """

    def __init__(self, config: Settings, issuer: TokenIssuer, session_cache,
                 notifier: NotificationService):
        self.config = config
        self.issuer = issuer
        self.session_cache = session_cache
        self.notifier = notifier

    @property
    def _refresh_ttl_seconds(self) -> int:
        return int(self.issuer.refresh_ttl.total_seconds())

    async def _start_session(self, user: User) -> TokenPair:
        pair = TokenPair(
            access_token=self.issuer.issue_access_token(user),
            refresh_token=self.issuer.issue_refresh_token(user),
        )
        await self.session_cache.put(user.id, pair.refresh_token, self._refresh_ttl_seconds)
        return pair

    async def register(self, db: AsyncSession, name: str, email: str, password: str,
                       phone: Optional[str] = None) -> Tuple[User, TokenPair]:
        validate_password_strength(password, self.config.password_min_length)

        users = UserRepository(db)
        if await users.get_user_by_email_or_phone(email, phone):
            raise ConflictError("User already exists")

        user = await users.create_user({
            "name": name,
            "email": email,
            "phone": phone,
            "hashed_password": hash_password(password),
        })

        verify_token, verify_hash, verify_expires = generate_one_time_token(
            timedelta(hours=self.config.email_verification_ttl_hours)
        )
        await users.update_user(user, {
            "email_verification_token": verify_hash,
            "email_verification_expire": verify_expires,
        })
        await db.commit()

        tokens = await self._start_session(user)
        self.notifier.send_welcome_email(user, verify_token)
        logger.info(f"User {user.id} registered")
        return user, tokens

    async def login(self, db: AsyncSession, password: str, email: Optional[str] = None,
                    phone: Optional[str] = None) -> Tuple[User, TokenPair]:
        if (not email and not phone) or not password:
            raise ValidationError("Please provide email/phone and password")

        users = UserRepository(db)
        user = await users.get_user_by_email_or_phone(email, phone)

        # verify_password runs a dummy hash for unknown users so both failures cost the same
        password_ok = verify_password(password, user.hashed_password if user else None)
        if user is None or not password_ok:
            logger.info("Login failed: invalid credentials")
            raise AuthenticationError("Invalid credentials")

        if not user.is_active:
            raise AuthenticationError("User account is deactivated")

        await users.update_user(user, {"last_active": utcnow()})
        await db.commit()

        tokens = await self._start_session(user)
        logger.info(f"User {user.id} logged in")
        return user, tokens

    async def refresh(self, db: AsyncSession, refresh_token: str) -> dict:
        """
        Exchange a refresh token for a new access token.

        The presented token must equal the one in the session cache. With
        rotation on, the slot is swapped for a new refresh token atomically and
        the presented one is dead afterwards.
        """
        if not refresh_token:
            raise ValidationError("Refresh token is required")

        payload = self.issuer.verify(refresh_token, REFRESH_TOKEN)
        user_id = payload["id"]

        user = await UserRepository(db).get_user_by_id(user_id)
        if user is None or not user.is_active:
            raise AuthenticationError("Invalid refresh token")

        result = {}
        if self.config.refresh_token_rotation:
            new_refresh = self.issuer.issue_refresh_token(user)
            swapped = await self.session_cache.rotate(
                user_id, refresh_token, new_refresh, self._refresh_ttl_seconds
            )
            if not swapped:
                logger.warning(f"Refresh rejected for user {user_id}: token not current")
                raise AuthenticationError("Invalid refresh token")
            result["refreshToken"] = new_refresh
        else:
            stored = await self.session_cache.get(user_id)
            if stored is None or not hmac.compare_digest(stored.encode(), refresh_token.encode()):
                logger.warning(f"Refresh rejected for user {user_id}: token not current")
                raise AuthenticationError("Invalid refresh token")

        result["accessToken"] = self.issuer.issue_access_token(user)
        return result

    async def logout(self, user_id: int) -> None:
        await self.session_cache.remove(user_id)
        logger.info(f"User {user_id} logged out")

    async def authenticate(self, db: AsyncSession, access_token: Optional[str]) -> User:
        """Resolve the user behind an access token (stateless verify + active check)."""
        if not access_token:
            raise AuthenticationError("Not authorized to access this route")

        payload = self.issuer.verify(access_token, ACCESS_TOKEN)
        users = UserRepository(db)
        user = await users.get_user_by_id(payload["id"])
        if user is None:
            raise AuthenticationError("User not found")
        if not user.is_active:
            raise AuthenticationError("User account is deactivated")

        await users.update_user(user, {"last_active": utcnow()})
        # release the write before handlers open their own transactions
        await db.commit()
        return user

    async def verify_email(self, db: AsyncSession, token: str) -> User:
        users = UserRepository(db)
        user = await users.get_user_by_verification_token(hash_token(token))
        if user is None:
            raise ValidationError("Invalid or expired verification token")

        await users.update_user(user, {
            "email_verified": True,
            "email_verification_token": None,
            "email_verification_expire": None,
        })
        await db.commit()
        logger.info(f"User {user.id} verified email")
        return user

    async def forgot_password(self, db: AsyncSession, email: str) -> None:
        if not email:
            raise ValidationError("Email is required")
        users = UserRepository(db)
        user = await users.get_user_by_email(email)
        if user is None:
            raise NotFoundError("User not found")

        reset_token, reset_hash, reset_expires = generate_one_time_token(
            timedelta(minutes=self.config.password_reset_ttl_minutes)
        )
        await users.update_user(user, {
            "password_reset_token": reset_hash,
            "password_reset_expire": reset_expires,
        })
        await db.commit()
        self.notifier.send_password_reset_email(user, reset_token)

    async def reset_password(self, db: AsyncSession, token: str, password: str) -> None:
        validate_password_strength(password, self.config.password_min_length)

        users = UserRepository(db)
        user = await users.get_user_by_reset_token(hash_token(token))
        if user is None:
            raise ValidationError("Invalid or expired reset token")

        await users.update_user(user, {
            "hashed_password": hash_password(password),
            "password_reset_token": None,
            "password_reset_expire": None,
        })
        await db.commit()
        # existing refresh session was obtained with the old password
        await self.session_cache.remove(user.id)
        logger.info(f"User {user.id} reset password")
