"""
Webhook Processor - entry point for Paystack callbacks.

Pipeline for every delivery:
    1. HMAC-SHA512 over the raw body, constant-time compare (before parsing)
    2. atomic idempotency claim on the event reference
    3. ordering signal extraction (stale events are dropped downstream)
    4. user resolution and state machine dispatch under the per-user lock
Unknown event types are acknowledged and logged so the gateway does not
retry them forever.
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Settings
from crud.subscription import SubscriptionRepository
from crud.user import UserRepository
from errors import IdempotentNoop, SignatureError, ValidationError
from services.subscription_machine import ContractTerms, SubscriptionEvent
from services.subscription_service import ApplyResult, Outcome, SubscriptionService
from utils.shared_utils import parse_provider_datetime, utcnow

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"

# Payload fields consulted, in order, for the event's ordering timestamp
ORDERING_FIELDS = {
    "charge.success": ("paid_at", "paidAt", "transaction_date", "created_at", "createdAt"),
    "subscription.create": ("updatedAt", "updated_at", "createdAt", "created_at"),
    # createdAt on a disabled subscription is the original creation time, not the disable time
    "subscription.disable": ("updatedAt", "updated_at"),
    "subscription.not_renew": ("updatedAt", "updated_at"),
    "invoice.payment_failed": ("updatedAt", "updated_at", "paid_at", "createdAt", "created_at"),
}

PLAN_INTERVALS = {"monthly": "monthly", "annually": "yearly", "yearly": "yearly"}


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()


def _as_dict(value: Any) -> Dict[str, Any]:
    """Paystack sends metadata either as an object or as a JSON string."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = json.loads(value)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def ordering_signal(event_type: str, data: dict) -> Optional[datetime]:
    for field in ORDERING_FIELDS.get(event_type, ("updatedAt", "updated_at", "createdAt", "created_at")):
        parsed = parse_provider_datetime(data.get(field))
        if parsed is not None:
            return parsed
    return None


def event_reference(event_type: str, data: dict, raw_body: bytes) -> str:
    """Stable dedup key for a delivery: provider reference, else a body digest."""
    reference = data.get("reference") or data.get("invoice_code")
    if not reference:
        subscription_code = _subscription_code(data)
        stamp = data.get("updatedAt") or data.get("updated_at")
        if subscription_code and stamp:
            reference = f"{subscription_code}:{stamp}"
    if not reference:
        reference = hashlib.sha256(raw_body).hexdigest()
    return f"{event_type}:{reference}"


def _subscription_code(data: dict) -> Optional[str]:
    return data.get("subscription_code") or _as_dict(data.get("subscription")).get("subscription_code")


def extract_terms(data: dict) -> ContractTerms:
    plan = _as_dict(data.get("plan"))
    subscription = _as_dict(data.get("subscription"))
    metadata = _as_dict(data.get("metadata"))
    interval = plan.get("interval") or metadata.get("plan")
    return ContractTerms(
        plan_code=plan.get("plan_code"),
        plan_interval=PLAN_INTERVALS.get(interval) if interval else None,
        subscription_code=_subscription_code(data),
        email_token=data.get("email_token") or subscription.get("email_token"),
        amount=data.get("amount") if isinstance(data.get("amount"), int) else plan.get("amount"),
        currency=data.get("currency") or plan.get("currency"),
        next_payment_date=parse_provider_datetime(
            data.get("next_payment_date") or subscription.get("next_payment_date")
        ),
    )


def map_event(event_type: str, data: dict) -> Optional[SubscriptionEvent]:
    """Translate a Paystack event into a state machine event, or None if not modelled."""
    if event_type == "charge.success":
        metadata = _as_dict(data.get("metadata"))
        if metadata.get("subscription") or _as_dict(data.get("plan")).get("plan_code"):
            return SubscriptionEvent.CHARGE_SUCCESS
        return None
    if event_type == "subscription.create":
        return SubscriptionEvent.CHARGE_SUCCESS
    if event_type in ("subscription.disable", "subscription.not_renew"):
        return SubscriptionEvent.SUBSCRIPTION_DISABLED
    if event_type == "invoice.payment_failed":
        return SubscriptionEvent.PAYMENT_FAILED
    return None


class WebhookProcessor:

    def __init__(self, config: Settings, idempotency, subscriptions: SubscriptionService,
                 session_factory: async_sessionmaker):
        self.config = config
        self.idempotency = idempotency
        self.subscriptions = subscriptions
        self.session_factory = session_factory

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        """Verify the Paystack HMAC-SHA512 signature over the exact raw body."""
        if not self.config.paystack_secret_key:
            logger.error("PAYSTACK_SECRET_KEY is not set. Rejecting webhook.")
            raise SignatureError("Webhook secret not configured")
        if not signature:
            logger.warning("Webhook rejected: missing signature header")
            raise SignatureError("Missing webhook signature")

        expected = compute_signature(raw_body, self.config.paystack_secret_key)
        if not hmac.compare_digest(expected.encode(), signature.strip().lower().encode()):
            logger.warning(f"Webhook rejected: invalid signature {signature[:8]}...")
            raise SignatureError("Invalid webhook signature")

    async def handle(self, raw_body: bytes, signature: Optional[str]) -> ApplyResult:
        """
        Verify, deduplicate and apply one webhook delivery.

        Raises:
            SignatureError: signature missing or wrong; nothing was parsed
            ValidationError: signed body is not a Paystack event envelope
            IdempotentNoop: this event reference was already processed
        """
        self.verify_signature(raw_body, signature)

        try:
            envelope = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Invalid JSON payload")
        if not isinstance(envelope, dict) or not isinstance(envelope.get("event"), str):
            raise ValidationError("Webhook payload has no event type")

        event_type = envelope["event"]
        data = envelope.get("data") if isinstance(envelope.get("data"), dict) else {}
        reference = event_reference(event_type, data, raw_body)

        if not await self.idempotency.claim(reference):
            logger.info(f"Duplicate webhook {reference} acknowledged without reprocessing")
            raise IdempotentNoop("Event already processed")

        try:
            result = await self._dispatch(event_type, data)
        except Exception:
            await self.idempotency.release(reference)
            raise

        logger.info(f"Webhook {reference} processed: {result.outcome.value}")
        return result

    async def _dispatch(self, event_type: str, data: dict) -> ApplyResult:
        event = map_event(event_type, data)
        if event is None:
            logger.info(f"Unhandled webhook event: {event_type}")
            return ApplyResult(outcome=Outcome.IGNORED)

        user_id = await self._resolve_user_id(data)
        if user_id is None:
            logger.warning(f"No user found for {event_type} webhook")
            return ApplyResult(outcome=Outcome.IGNORED)

        occurred_at = ordering_signal(event_type, data)
        if occurred_at is None:
            logger.info(f"{event_type} carries no timestamp; ordering by receipt time")
            occurred_at = utcnow()

        customer_code = _as_dict(data.get("customer")).get("customer_code")
        return await self.subscriptions.apply_event(
            user_id, event, occurred_at, extract_terms(data), customer_code=customer_code
        )

    async def _resolve_user_id(self, data: dict) -> Optional[int]:
        """
        Target user, in order: checkout metadata, stored customer code,
        ledger subscription code, customer email.
        """
        metadata = _as_dict(data.get("metadata"))
        customer = _as_dict(data.get("customer"))
        subscription_code = _subscription_code(data)

        async with self.session_factory() as session:
            users = UserRepository(session)
            raw_id = metadata.get("user_id")
            if raw_id is not None:
                try:
                    user = await users.get_user_by_id(int(raw_id))
                except (TypeError, ValueError):
                    user = None
                if user is not None:
                    return user.id

            if customer.get("customer_code"):
                user = await users.get_user_by_customer_code(customer["customer_code"])
                if user is not None:
                    return user.id

            if subscription_code:
                ledger = await SubscriptionRepository(session).get_by_subscription_code(subscription_code)
                if ledger is not None:
                    return ledger.user_id

            if customer.get("email"):
                user = await users.get_user_by_email(customer["email"])
                if user is not None:
                    return user.id
        return None
