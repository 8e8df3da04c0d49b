from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String

from config import ROLE_USER, SUBSCRIPTION_FREE
from database import Base
from utils.shared_utils import utcnow


class User(Base):
    """
    User credential record with the denormalized subscription snapshot.

    subscription_status is written only by the subscription state machine.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    phone = Column(String, unique=True, nullable=True, index=True)
    hashed_password = Column(String, nullable=False)
    role = Column(String, default=ROLE_USER, nullable=False)
    avatar = Column(String, nullable=True)

    # Subscription snapshot
    subscription_status = Column(String, default=SUBSCRIPTION_FREE, nullable=False, index=True)
    subscription_plan = Column(String, nullable=True)
    subscription_start_date = Column(DateTime, nullable=True)
    subscription_end_date = Column(DateTime, nullable=True)
    subscription_payment_method = Column(String, nullable=True)
    subscription_auto_renew = Column(Boolean, default=True, nullable=False)
    provider_customer_code = Column(String, nullable=True, index=True)

    email_verified = Column(Boolean, default=False, nullable=False)
    email_verification_token = Column(String, nullable=True, index=True)
    email_verification_expire = Column(DateTime, nullable=True)
    password_reset_token = Column(String, nullable=True, index=True)
    password_reset_expire = Column(DateTime, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    last_active = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Subscription(Base):
    """
    Subscription ledger record. One current record per user, retired records
    stay for audit. last_event_at is the ordering watermark for webhooks.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_code = Column(String, nullable=True)
    plan_interval = Column(String, nullable=True)
    subscription_code = Column(String, nullable=True, index=True)
    email_token = Column(String, nullable=True)
    status = Column(String, nullable=False)
    # minor units (pesewas), as reported by the gateway
    amount = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=True)
    start_date = Column(DateTime, nullable=True)
    next_payment_date = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    last_event_at = Column(DateTime, nullable=True)
    is_current = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
