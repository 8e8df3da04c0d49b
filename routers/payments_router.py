"""
Payments Router - Paystack checkout, subscription management and webhook
Webhook is defined FIRST; it authenticates by signature, not by user token
"""

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from auth import get_current_user, get_services
from database_models import User
from errors import IdempotentNoop
from services.container import AppServices
from services.webhook_processor import SIGNATURE_HEADER
from utils.responses import success_response
from utils.shared_utils import log_endpoint_event

logger = logging.getLogger(__name__)

payments_router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


class SubscribeRequest(BaseModel):
    plan: str


# WEBHOOK ENDPOINT - signature gated, no user auth
@payments_router.post("/webhook")
async def paystack_webhook(
    request: Request,
    services: AppServices = Depends(get_services),
):
    """
    Handle Paystack webhook events.

    The signature is checked over the raw body before anything is parsed;
    a bad signature is a 400. Redeliveries of an already processed event are
    acknowledged with 200 and change nothing. A processing failure surfaces
    as an error so the gateway retries.
    """
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        result = await services.webhooks.handle(payload, signature)
    except IdempotentNoop as e:
        return success_response(data={"received": True, "duplicate": True}, message=e.message)

    return success_response(
        data={"received": True, "outcome": result.outcome.value},
        message="Webhook processed",
    )


@payments_router.post("/subscribe")
async def subscribe(
    request: SubscribeRequest,
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    """Start a checkout for the monthly or yearly plan"""
    checkout = await services.subscriptions.start_checkout(user, request.plan)
    log_endpoint_event("/payments/subscribe", user.id, "success", {"plan": request.plan, "reference": checkout.get("reference")})
    return success_response(data=checkout, message="Checkout initialized")


@payments_router.post("/cancel")
async def cancel_subscription(
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    await services.subscriptions.cancel(user.id)
    log_endpoint_event("/payments/cancel", user.id, "success")
    return success_response(message="Subscription cancelled successfully")


@payments_router.get("/verify/{reference}")
async def verify_payment(
    reference: str,
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    data = await services.subscriptions.verify_payment(user, reference)
    return success_response(data=data)


@payments_router.get("/subscription")
async def get_subscription(
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    """Current contract, the user's snapshot status and past contracts"""
    subscription = await services.subscriptions.get_subscription(user.id)
    history = await services.subscriptions.get_history(user.id)
    return success_response(
        data={
            "status": user.subscription_status,
            "subscription": subscription,
            "history": history,
        }
    )
