"""
Authentication routes and dependencies
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import ROLE_ADMIN, SUBSCRIPTION_PREMIUM
from database import get_db
from database_models import User
from errors import AuthenticationError, AuthorizationError
from models.user import public_user
from services.container import AppServices
from utils.responses import success_response

logger = logging.getLogger(__name__)

# Create auth router
auth_router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


# Request models
class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    password: str


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(alias="refreshToken")


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    password: str


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip() or None
    return None


# Dependency for protected routes
async def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db),
    services: AppServices = Depends(get_services),
) -> User:
    """
    Resolve the authenticated user from the Bearer access token.
    Verification is stateless: signature and expiry only, then an active check.
    """
    return await services.auth.authenticate(db, _bearer_token(authorization))


async def get_optional_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db),
    services: AppServices = Depends(get_services),
) -> Optional[User]:
    """Like get_current_user, but an absent or bad token means anonymous."""
    token = _bearer_token(authorization)
    if not token:
        return None
    try:
        return await services.auth.authenticate(db, token)
    except AuthenticationError as e:
        logger.debug(f"Optional auth degraded to anonymous: {e.message}")
        return None


def require_role(*roles: str):
    """Dependency factory: 403 unless the user has one of the given roles."""

    async def _check(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise AuthorizationError(f"User role {user.role} is not authorized to access this route")
        return user

    return _check


def require_subscription(level: str = SUBSCRIPTION_PREMIUM):
    """Dependency factory: 403 unless the subscription is at the given level (admins pass)."""

    async def _check(user: User = Depends(get_current_user)) -> User:
        if user.subscription_status != level and user.role != ROLE_ADMIN:
            raise AuthorizationError(f"This feature requires a {level} subscription")
        return user

    return _check


@auth_router.post("/register")
async def register(
    request: RegisterRequest,
    db: AsyncSession = Depends(get_db),
    services: AppServices = Depends(get_services),
):
    """Create a new user account and start a session"""
    user, tokens = await services.auth.register(
        db, name=request.name, email=request.email, password=request.password, phone=request.phone
    )
    return success_response(
        data={
            "user": public_user(user, services.config.media_base_url),
            "tokens": tokens.as_dict(),
        },
        message="Registration successful. Please verify your email.",
        status=201,
    )


@auth_router.post("/login")
async def login(
    request: LoginRequest,
    db: AsyncSession = Depends(get_db),
    services: AppServices = Depends(get_services),
):
    """Login with email or phone and get a token pair"""
    user, tokens = await services.auth.login(
        db, password=request.password, email=request.email, phone=request.phone
    )
    return success_response(
        data={
            "user": public_user(user, services.config.media_base_url),
            "tokens": tokens.as_dict(),
        }
    )


@auth_router.post("/refresh")
async def refresh(
    request: RefreshRequest,
    db: AsyncSession = Depends(get_db),
    services: AppServices = Depends(get_services),
):
    """Exchange the current refresh token for a new access token"""
    tokens = await services.auth.refresh(db, request.refresh_token)
    return success_response(data=tokens)


@auth_router.post("/logout")
async def logout(
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    """Revoke the refresh session; outstanding access tokens expire naturally"""
    await services.auth.logout(user.id)
    return success_response(message="Logged out successfully")


@auth_router.get("/me")
async def me(
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    return success_response(data={"user": public_user(user, services.config.media_base_url)})


@auth_router.get("/verify-email/{token}")
async def verify_email(
    token: str,
    db: AsyncSession = Depends(get_db),
    services: AppServices = Depends(get_services),
):
    await services.auth.verify_email(db, token)
    return success_response(message="Email verified successfully")


@auth_router.post("/forgot-password")
async def forgot_password(
    request: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_db),
    services: AppServices = Depends(get_services),
):
    await services.auth.forgot_password(db, request.email)
    return success_response(message="Password reset email sent")


@auth_router.post("/reset-password/{token}")
async def reset_password(
    token: str,
    request: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db),
    services: AppServices = Depends(get_services),
):
    await services.auth.reset_password(db, token, request.password)
    return success_response(message="Password reset successful")
