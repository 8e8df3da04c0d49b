"""
Security tests for the credential and token primitives.

Tests cover:
- Password strength validation
- Password hashing and verification
- JWT issuing, verification, expiry and tampering
- One-time verification/reset tokens
"""
from datetime import timedelta
from types import SimpleNamespace

import jwt
import pytest

from auth_utils import (
    ACCESS_TOKEN,
    ALGORITHM,
    REFRESH_TOKEN,
    TokenIssuer,
    generate_one_time_token,
    hash_password,
    hash_token,
    verify_password,
)
from errors import InvalidSignatureError, TokenExpiredError, ValidationError
from tests.conftest import TEST_ACCESS_SECRET, TEST_REFRESH_SECRET, build_test_settings
from utils.security_utils import validate_password_strength
from utils.shared_utils import utcnow


@pytest.fixture
def issuer():
    return TokenIssuer(build_test_settings("sqlite+aiosqlite:///unused.db"))


@pytest.fixture
def user():
    return SimpleNamespace(id=42, email="kofi@example.com", role="chef")


class TestPasswordStrength:

    def test_strong_password_passes(self):
        validate_password_strength("Kelewele#9")

    @pytest.mark.parametrize("password", [
        "",
        "Sh0rt!",
        "alllowercase1!",
        "ALLUPPERCASE1!",
        "NoDigitsHere!",
        "NoSpecials123",
    ])
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(ValidationError):
            validate_password_strength(password)

    def test_min_length_is_configurable(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_password_strength("Abcdef1!", min_length=12)
        assert "12" in exc_info.value.message


class TestPasswordHashing:

    def test_hash_is_not_plaintext_and_verifies(self):
        hashed = hash_password("Waakye$2024")
        assert hashed != "Waakye$2024"
        assert hashed.startswith("$argon2")
        assert verify_password("Waakye$2024", hashed) is True
        assert verify_password("waakye$2024", hashed) is False

    def test_missing_hash_never_verifies(self):
        assert verify_password("anything", None) is False

    def test_same_password_hashes_differently(self):
        assert hash_password("Banku&Tilapia1") != hash_password("Banku&Tilapia1")


class TestTokenIssuer:

    def test_access_token_round_trip(self, issuer, user):
        token = issuer.issue_access_token(user)
        payload = issuer.verify(token, ACCESS_TOKEN)
        assert payload["id"] == 42
        assert payload["email"] == "kofi@example.com"
        assert payload["role"] == "chef"
        assert payload["type"] == ACCESS_TOKEN

    def test_refresh_token_carries_only_identity(self, issuer, user):
        payload = issuer.verify(issuer.issue_refresh_token(user), REFRESH_TOKEN)
        assert payload["id"] == 42
        assert "email" not in payload
        assert "role" not in payload

    def test_refresh_tokens_are_unique_within_a_second(self, issuer, user):
        assert issuer.issue_refresh_token(user) != issuer.issue_refresh_token(user)

    def test_access_and_refresh_secrets_are_not_interchangeable(self, issuer, user):
        with pytest.raises(InvalidSignatureError):
            issuer.verify(issuer.issue_access_token(user), REFRESH_TOKEN)
        with pytest.raises(InvalidSignatureError):
            issuer.verify(issuer.issue_refresh_token(user), ACCESS_TOKEN)

    def test_token_kind_is_enforced_even_with_matching_secret(self, user):
        shared = build_test_settings(
            "sqlite+aiosqlite:///unused.db",
            jwt_access_secret=TEST_ACCESS_SECRET,
            jwt_refresh_secret=TEST_ACCESS_SECRET,
        )
        issuer = TokenIssuer(shared)
        with pytest.raises(InvalidSignatureError):
            issuer.verify(issuer.issue_refresh_token(user), ACCESS_TOKEN)

    def test_expired_token_raises_token_expired(self, issuer, user, expired_token):
        token = expired_token(user, ACCESS_TOKEN)
        with pytest.raises(TokenExpiredError):
            issuer.verify(token, ACCESS_TOKEN)

    def test_expired_refresh_token_raises_token_expired(self, issuer, user, expired_token):
        token = expired_token(user, REFRESH_TOKEN, expired_seconds_ago=3600)
        with pytest.raises(TokenExpiredError):
            issuer.verify(token, REFRESH_TOKEN)

    def test_tampered_token_raises_invalid_signature(self, issuer, user):
        token = issuer.issue_access_token(user)
        header, payload, signature = token.split(".")
        flipped = ("A" if signature[0] != "A" else "B") + signature[1:]
        with pytest.raises(InvalidSignatureError):
            issuer.verify(f"{header}.{payload}.{flipped}", ACCESS_TOKEN)

    def test_token_signed_with_other_secret_rejected(self, issuer):
        now = utcnow()
        forged = jwt.encode(
            {"id": 1, "type": ACCESS_TOKEN, "iat": now, "exp": now + timedelta(minutes=5)},
            "someone-elses-secret-0123456789abcdef",
            algorithm=ALGORITHM,
        )
        with pytest.raises(InvalidSignatureError):
            issuer.verify(forged, ACCESS_TOKEN)

    def test_garbage_and_empty_tokens_rejected(self, issuer):
        with pytest.raises(InvalidSignatureError):
            issuer.verify("not-a-jwt", ACCESS_TOKEN)
        with pytest.raises(InvalidSignatureError):
            issuer.verify("", ACCESS_TOKEN)

    def test_missing_secret_fails_loudly(self, user):
        issuer = TokenIssuer(build_test_settings(
            "sqlite+aiosqlite:///unused.db", jwt_access_secret=None
        ))
        with pytest.raises(ValueError) as exc_info:
            issuer.issue_access_token(user)
        assert "JWT_ACCESS_SECRET" in str(exc_info.value)
        # the refresh side is configured independently
        assert issuer.issue_refresh_token(user)

    def test_ttls_follow_configuration(self, user):
        config = build_test_settings(
            "sqlite+aiosqlite:///unused.db",
            access_token_ttl_minutes=5,
            refresh_token_ttl_days=7,
        )
        issuer = TokenIssuer(config)
        access = jwt.decode(issuer.issue_access_token(user), TEST_ACCESS_SECRET, algorithms=[ALGORITHM])
        refresh = jwt.decode(issuer.issue_refresh_token(user), TEST_REFRESH_SECRET, algorithms=[ALGORITHM])
        assert access["exp"] - access["iat"] == 5 * 60
        assert refresh["exp"] - refresh["iat"] == 7 * 24 * 3600


class TestOneTimeTokens:

    def test_only_hash_is_meant_for_storage(self):
        cleartext, hashed, expires = generate_one_time_token(timedelta(minutes=10))
        assert len(cleartext) == 40
        assert hashed == hash_token(cleartext)
        assert hashed != cleartext
        assert expires > utcnow()

    def test_expiry_is_relative_to_issue_time(self):
        issued = utcnow()
        _, _, expires = generate_one_time_token(timedelta(hours=24), now=issued)
        assert expires - issued == timedelta(hours=24)
