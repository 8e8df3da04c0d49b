"""
Authentication utilities: password hashing, one-time tokens and JWT token management
"""

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Optional, Tuple

import jwt
from passlib.context import CryptContext

from config import Settings, settings
from errors import InvalidSignatureError, TokenExpiredError
from utils.shared_utils import utcnow

# JWT configuration
ALGORITHM = "HS256"

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


def build_password_context(rounds: int) -> CryptContext:
    """Password hashing context; rounds is the argon2 time cost."""
    return CryptContext(
        schemes=["argon2"],
        deprecated="auto",
        argon2__rounds=rounds,
    )


# Password hashing context
pwd_context = build_password_context(settings.password_hash_rounds)


def hash_password(password: str) -> str:
    """Hash a password using argon2"""
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """
    Verify a password against its hash.

    A missing hash still pays for one verification so that unknown users
    and wrong passwords take the same time.
    """
    if not password_hash:
        pwd_context.dummy_verify()
        return False
    return pwd_context.verify(password, password_hash)


def hash_token(token: str) -> str:
    """One-way hash for verification/reset tokens; only this is stored."""
    return hashlib.sha256(token.encode()).hexdigest()


def generate_one_time_token(ttl: timedelta, now: Optional[datetime] = None) -> Tuple[str, str, datetime]:
    """
    Create a random one-time token.

    Returns (cleartext, hashed, expires_at). The cleartext goes to the user
    once; the hash and expiry are persisted.
    """
    cleartext = secrets.token_hex(20)
    issued_at = now or utcnow()
    return cleartext, hash_token(cleartext), issued_at + ttl


class TokenIssuer:
    """
    Mints and verifies access/refresh JWTs.

    Verification is purely cryptographic plus expiry; no store lookup happens
    here. Refresh tokens are checked against the session cache by the caller.
    """

    def __init__(self, config: Settings = settings):
        self.config = config

    def _secret_for(self, kind: str) -> str:
        secret = self.config.jwt_access_secret if kind == ACCESS_TOKEN else self.config.jwt_refresh_secret
        if not secret:
            env_name = "JWT_ACCESS_SECRET" if kind == ACCESS_TOKEN else "JWT_REFRESH_SECRET"
            raise ValueError(f"{env_name} is not set. Cannot handle {kind} tokens.")
        return secret

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.config.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.config.refresh_token_ttl_days)

    def issue_access_token(self, user) -> str:
        """Create an access token embedding id, email and role"""
        now = utcnow()
        payload = {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "type": ACCESS_TOKEN,
            "iat": now,
            "exp": now + self.access_ttl,
        }
        return jwt.encode(payload, self._secret_for(ACCESS_TOKEN), algorithm=ALGORITHM)

    def issue_refresh_token(self, user) -> str:
        """Create a refresh token embedding only the user id"""
        now = utcnow()
        payload = {
            "id": user.id,
            "type": REFRESH_TOKEN,
            # two logins within the same second must still yield distinct tokens
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + self.refresh_ttl,
        }
        return jwt.encode(payload, self._secret_for(REFRESH_TOKEN), algorithm=ALGORITHM)

    def verify(self, token: str, kind: str) -> dict:
        """
        Decode a token of the given kind.

        Raises:
            TokenExpiredError: signature valid but token past its expiry
            InvalidSignatureError: bad signature, malformed token, or wrong kind
        """
        if not token:
            raise InvalidSignatureError("Missing token")
        try:
            payload = jwt.decode(token, self._secret_for(kind), algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError("Token has expired")
        except jwt.InvalidTokenError:
            raise InvalidSignatureError("Invalid token")

        if payload.get("type") != kind or "id" not in payload:
            raise InvalidSignatureError("Invalid token payload")
        return payload
