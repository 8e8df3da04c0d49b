"""
Subscription state machine.

The transition table is the only authority on subscription status. Every
writer of User.subscription_status and Subscription.status goes through
apply_transition(); pairs missing from the table are logged no-ops.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from config import (
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_FREE,
    SUBSCRIPTION_PAST_DUE,
    SUBSCRIPTION_PREMIUM,
)

logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    FREE = SUBSCRIPTION_FREE
    PREMIUM = SUBSCRIPTION_PREMIUM
    PAST_DUE = SUBSCRIPTION_PAST_DUE
    CANCELLED = SUBSCRIPTION_CANCELLED


class SubscriptionEvent(str, Enum):
    CHARGE_SUCCESS = "charge_success"
    SUBSCRIPTION_DISABLED = "subscription_disabled"
    USER_CANCELLED = "user_cancelled"
    PAYMENT_FAILED = "payment_failed"
    GRACE_EXPIRED = "grace_expired"


S = SubscriptionStatus
E = SubscriptionEvent

TRANSITIONS = {
    (S.FREE, E.CHARGE_SUCCESS): S.PREMIUM,
    (S.PREMIUM, E.SUBSCRIPTION_DISABLED): S.CANCELLED,
    (S.PREMIUM, E.USER_CANCELLED): S.CANCELLED,
    (S.PREMIUM, E.PAYMENT_FAILED): S.PAST_DUE,
    (S.PAST_DUE, E.CHARGE_SUCCESS): S.PREMIUM,
    (S.PAST_DUE, E.SUBSCRIPTION_DISABLED): S.CANCELLED,
    (S.PAST_DUE, E.USER_CANCELLED): S.CANCELLED,
    (S.PAST_DUE, E.GRACE_EXPIRED): S.CANCELLED,
    (S.CANCELLED, E.CHARGE_SUCCESS): S.PREMIUM,
}

# Transitions out of these states start a new contract, so a fresh ledger record is opened
_OPENS_NEW_CONTRACT = {S.FREE, S.CANCELLED}


@dataclass
class ContractTerms:
    """Provider-side contract details carried by an event."""
    plan_code: Optional[str] = None
    plan_interval: Optional[str] = None
    subscription_code: Optional[str] = None
    email_token: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    next_payment_date: Optional[datetime] = None


@dataclass
class Transition:
    previous: SubscriptionStatus
    current: SubscriptionStatus
    event: SubscriptionEvent
    applied: bool
    opens_new_contract: bool = False

    @property
    def changed(self) -> bool:
        return self.previous != self.current


def next_status(current: SubscriptionStatus, event: SubscriptionEvent) -> Optional[SubscriptionStatus]:
    """Target state for (current, event), or None when the pair is not a transition."""
    return TRANSITIONS.get((SubscriptionStatus(current), SubscriptionEvent(event)))


def plan_transition(current, event) -> Transition:
    """Decide a transition without touching any record."""
    current = SubscriptionStatus(current)
    event = SubscriptionEvent(event)
    target = next_status(current, event)
    if target is None:
        return Transition(previous=current, current=current, event=event, applied=False)
    return Transition(
        previous=current,
        current=target,
        event=event,
        applied=True,
        opens_new_contract=current in _OPENS_NEW_CONTRACT and target == S.PREMIUM,
    )


def apply_transition(user, ledger, transition: Transition, occurred_at: datetime,
                     terms: Optional[ContractTerms] = None) -> None:
    """
    Write a planned transition onto the user snapshot and its ledger record.

    The caller owns the transaction and the per-user lock; this only mutates
    the two objects in memory. A no-op transition changes nothing.
    """
    if not transition.applied:
        logger.info(
            f"Subscription no-op for user {user.id}: "
            f"{transition.previous.value} + {transition.event.value}"
        )
        return

    status = transition.current
    terms = terms or ContractTerms()

    user.subscription_status = status.value
    ledger.status = status.value
    ledger.last_event_at = occurred_at

    if status == S.PREMIUM:
        _merge_terms(ledger, terms)
        if transition.opens_new_contract or ledger.start_date is None:
            ledger.start_date = occurred_at
        user.subscription_plan = ledger.plan_interval
        user.subscription_start_date = ledger.start_date
        user.subscription_end_date = ledger.next_payment_date
        user.subscription_payment_method = "paystack"
        user.subscription_auto_renew = True
    elif status == S.CANCELLED:
        ledger.cancelled_at = occurred_at
        user.subscription_auto_renew = False
        user.subscription_end_date = ledger.next_payment_date or occurred_at

    logger.info(
        f"Subscription transition for user {user.id}: "
        f"{transition.previous.value} -> {status.value} ({transition.event.value})"
    )


def refresh_terms(user, ledger, terms: ContractTerms, occurred_at: datetime) -> None:
    """
    Record newer contract terms (renewal date, subscription code) that arrive
    on an event which does not change status.
    """
    _merge_terms(ledger, terms)
    ledger.last_event_at = occurred_at
    if user.subscription_status == S.PREMIUM.value:
        user.subscription_plan = ledger.plan_interval
        user.subscription_end_date = ledger.next_payment_date


def _merge_terms(ledger, terms: ContractTerms) -> None:
    for field in ("plan_code", "plan_interval", "subscription_code", "email_token",
                  "amount", "currency", "next_payment_date"):
        value = getattr(terms, field)
        if value is not None:
            setattr(ledger, field, value)
