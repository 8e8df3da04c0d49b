"""
Subscription Service - applies state machine transitions to the ledger and
the user snapshot, and runs the user-initiated subscribe / cancel flows.

Writes for a user happen under that user's lock and inside one database
transaction, so ledger and snapshot are updated together or not at all.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Settings
from crud.subscription import SubscriptionRepository
from crud.user import UserRepository
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from services.notification_service import NotificationService
from services.payment_gateway import PaystackClient
from services.subscription_machine import (
    ContractTerms,
    SubscriptionEvent,
    SubscriptionStatus,
    Transition,
    apply_transition,
    plan_transition,
    refresh_terms,
)
from utils.shared_utils import utcnow

logger = logging.getLogger(__name__)

PLAN_MONTHLY = "monthly"
PLAN_YEARLY = "yearly"

# Events about one gateway subscription; they only apply to the contract carrying that code
CONTRACT_SCOPED_EVENTS = (SubscriptionEvent.SUBSCRIPTION_DISABLED, SubscriptionEvent.PAYMENT_FAILED)


class Outcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    STALE = "stale"
    IGNORED = "ignored"


@dataclass
class ApplyResult:
    outcome: Outcome
    user_id: Optional[int] = None
    transition: Optional[Transition] = None


class SubscriptionService:

    def __init__(self, config: Settings, session_factory: async_sessionmaker, locks,
                 gateway: PaystackClient, notifier: NotificationService):
        self.config = config
        self.session_factory = session_factory
        self.locks = locks
        self.gateway = gateway
        self.notifier = notifier

    async def apply_event(self, user_id: int, event: SubscriptionEvent, occurred_at: datetime,
                          terms: Optional[ContractTerms] = None,
                          customer_code: Optional[str] = None) -> ApplyResult:
        """Apply one event for one user under the per-user lock."""
        async with self.locks.hold(user_id):
            return await self._apply(user_id, event, occurred_at, terms, customer_code)

    async def _apply(self, user_id: int, event: SubscriptionEvent, occurred_at: datetime,
                     terms: Optional[ContractTerms] = None,
                     customer_code: Optional[str] = None) -> ApplyResult:
        # Caller must hold self.locks for user_id
        async with self.session_factory() as session:
            async with session.begin():
                user = await UserRepository(session).get_user_by_id(user_id)
                if user is None:
                    raise NotFoundError("User not found")

                ledger_repo = SubscriptionRepository(session)
                ledger = await ledger_repo.get_current_for_user(user_id)

                if ledger is not None and ledger.last_event_at is not None and occurred_at < ledger.last_event_at:
                    logger.warning(
                        f"Dropping stale {event.value} for user {user_id}: "
                        f"event at {occurred_at.isoformat()} precedes {ledger.last_event_at.isoformat()}"
                    )
                    return ApplyResult(outcome=Outcome.STALE, user_id=user_id)

                event_code = terms.subscription_code if terms is not None else None
                if (event in CONTRACT_SCOPED_EVENTS and event_code and ledger is not None
                        and ledger.subscription_code and ledger.subscription_code != event_code):
                    logger.warning(
                        f"Dropping {event.value} for user {user_id}: {event_code} is not the "
                        f"current subscription {ledger.subscription_code}"
                    )
                    return ApplyResult(outcome=Outcome.STALE, user_id=user_id)

                if customer_code and not user.provider_customer_code:
                    user.provider_customer_code = customer_code

                transition = plan_transition(user.subscription_status, event)
                if transition.applied:
                    if transition.opens_new_contract or ledger is None:
                        await ledger_repo.retire_current(user_id)
                        ledger = await ledger_repo.create({
                            "user_id": user_id,
                            "status": transition.current.value,
                            "is_current": True,
                        })
                    apply_transition(user, ledger, transition, occurred_at, terms)
                    outcome = Outcome.APPLIED
                else:
                    apply_transition(user, ledger, transition, occurred_at, terms)
                    if ledger is not None and terms is not None and event == SubscriptionEvent.CHARGE_SUCCESS:
                        refresh_terms(user, ledger, terms, occurred_at)
                    outcome = Outcome.NOOP

        if transition.changed:
            self.notifier.send_subscription_email(user, transition.current.value)
            if transition.current == SubscriptionStatus.PAST_DUE:
                self.notifier.send_sms(
                    user.phone,
                    "Ghana Recipes: your subscription payment failed. "
                    "Update your payment method to keep premium access.",
                )
        return ApplyResult(outcome=outcome, user_id=user_id, transition=transition)

    async def start_checkout(self, user, plan: str) -> dict:
        """
        Open a gateway checkout for a subscription plan. Status does not change
        here; the gateway's charge webhook activates the subscription.
        """
        plan_codes = {
            PLAN_MONTHLY: self.config.paystack_plan_monthly,
            PLAN_YEARLY: self.config.paystack_plan_yearly,
        }
        if plan not in plan_codes:
            raise ValidationError("Plan must be 'monthly' or 'yearly'")
        plan_code = plan_codes[plan]
        if not plan_code:
            raise ValidationError(f"The {plan} plan is not available")
        if user.subscription_status == SubscriptionStatus.PREMIUM.value:
            raise ConflictError("You already have an active subscription")

        if not user.provider_customer_code:
            customer = await self.gateway.get_or_create_customer(user)
            await self._remember_customer(user.id, customer.get("customer_code"))

        checkout = await self.gateway.initialize_transaction(
            email=user.email,
            amount_minor=self.config.subscription_price_monthly_minor if plan == PLAN_MONTHLY
            else self.config.subscription_price_yearly_minor,
            plan_code=plan_code,
            metadata={"user_id": user.id, "subscription": True, "plan": plan},
        )
        logger.info(f"Checkout initialized for user {user.id} ({plan}): {checkout.get('reference')}")
        return {
            "authorization_url": checkout.get("authorization_url"),
            "access_code": checkout.get("access_code"),
            "reference": checkout.get("reference"),
        }

    async def _remember_customer(self, user_id: int, customer_code: Optional[str]) -> None:
        if not customer_code:
            return
        async with self.session_factory() as session:
            async with session.begin():
                user = await UserRepository(session).get_user_by_id(user_id)
                if user is not None and not user.provider_customer_code:
                    user.provider_customer_code = customer_code

    async def verify_payment(self, user, reference: str) -> dict:
        """
        Report a checkout's outcome from the gateway. Read-only: the charge
        webhook is what activates the subscription.
        """
        if not reference:
            raise ValidationError("Payment reference is required")
        transaction = await self.gateway.verify_transaction(reference)
        metadata = transaction.get("metadata")
        owner = metadata.get("user_id") if isinstance(metadata, dict) else None
        if owner is not None and str(owner) != str(user.id):
            raise AuthorizationError("This payment belongs to another account")
        return {
            "reference": transaction.get("reference", reference),
            "status": transaction.get("status"),
            "amount": transaction.get("amount"),
            "currency": transaction.get("currency"),
            "paid_at": transaction.get("paid_at") or transaction.get("paidAt"),
        }

    async def cancel(self, user_id: int) -> ApplyResult:
        """
        User-initiated cancel: disable on the gateway, then transition locally.
        A gateway failure leaves local state untouched.
        """
        async with self.locks.hold(user_id):
            async with self.session_factory() as session:
                ledger = await SubscriptionRepository(session).get_current_for_user(user_id)
            active = (SubscriptionStatus.PREMIUM.value, SubscriptionStatus.PAST_DUE.value)
            if ledger is None or ledger.status not in active:
                raise NotFoundError("No active subscription found")
            if not ledger.subscription_code or not ledger.email_token:
                raise ConflictError("Subscription is still being set up, please try again shortly")

            await self.gateway.disable_subscription(ledger.subscription_code, ledger.email_token)
            return await self._apply(user_id, SubscriptionEvent.USER_CANCELLED, utcnow())

    async def expire_grace_periods(self, now: Optional[datetime] = None) -> int:
        """Cancel past-due subscriptions whose grace period has run out."""
        now = now or utcnow()
        grace = timedelta(days=self.config.subscription_grace_period_days)
        async with self.session_factory() as session:
            overdue = await SubscriptionRepository(session).list_current_with_status(
                SubscriptionStatus.PAST_DUE.value
            )
        expired = 0
        for ledger in overdue:
            due = ledger.next_payment_date or ledger.last_event_at
            if due is None or due + grace > now:
                continue
            result = await self.apply_event(ledger.user_id, SubscriptionEvent.GRACE_EXPIRED, now)
            if result.outcome == Outcome.APPLIED:
                expired += 1
        if expired:
            logger.info(f"Grace period expired for {expired} subscription(s)")
        return expired

    async def get_subscription(self, user_id: int) -> Optional[dict]:
        async with self.session_factory() as session:
            ledger = await SubscriptionRepository(session).get_current_for_user(user_id)
        return _ledger_view(ledger) if ledger is not None else None

    async def get_history(self, user_id: int) -> List[dict]:
        """Every contract the user has held, newest first."""
        async with self.session_factory() as session:
            ledgers = await SubscriptionRepository(session).list_for_user(user_id)
        return [_ledger_view(ledger) for ledger in ledgers]


def _ledger_view(ledger) -> dict:
    return {
        "id": ledger.id,
        "plan": ledger.plan_interval,
        "plan_code": ledger.plan_code,
        "subscription_code": ledger.subscription_code,
        "status": ledger.status,
        "amount": ledger.amount,
        "currency": ledger.currency,
        "start_date": ledger.start_date.isoformat() if ledger.start_date else None,
        "next_payment_date": ledger.next_payment_date.isoformat() if ledger.next_payment_date else None,
        "cancelled_at": ledger.cancelled_at.isoformat() if ledger.cancelled_at else None,
    }
