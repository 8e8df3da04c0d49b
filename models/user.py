from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class SubscriptionSnapshot(BaseModel):
    status: str = "free"
    plan: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    auto_renew: bool = True


class UserPublic(BaseModel):
    id: int
    name: str
    email: str
    phone: Optional[str] = None
    role: str = "user"
    avatar: Optional[str] = None
    email_verified: bool = False
    subscription: SubscriptionSnapshot


def avatar_url(user, media_base_url: Optional[str]) -> Optional[str]:
    """Full avatar URL, computed at read time from the stored relative path."""
    if not user.avatar:
        return None
    if not media_base_url:
        return user.avatar
    return f"{media_base_url.rstrip('/')}/{user.avatar.lstrip('/')}"


def subscription_snapshot(user) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        status=user.subscription_status,
        plan=user.subscription_plan,
        start_date=user.subscription_start_date,
        end_date=user.subscription_end_date,
        payment_method=user.subscription_payment_method,
        auto_renew=user.subscription_auto_renew,
    )


def public_user(user, media_base_url: Optional[str] = None) -> dict:
    """Serializable view of a user; never includes credential fields."""
    return UserPublic(
        id=user.id,
        name=user.name,
        email=user.email,
        phone=user.phone,
        role=user.role,
        avatar=avatar_url(user, media_base_url),
        email_verified=user.email_verified,
        subscription=subscription_snapshot(user),
    ).model_dump(mode="json")
