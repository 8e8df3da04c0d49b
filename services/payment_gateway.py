"""
Payment Gateway Client - outbound Paystack REST calls.

Every call carries a bounded timeout and is attempted exactly once; retry and
backoff belong to the caller. Transport and gateway failures surface as
UpstreamError, never as success.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from config import Settings
from errors import UpstreamError

logger = logging.getLogger(__name__)

PAYMENT_CHANNELS = ["card", "mobile_money", "bank"]


class PaystackClient:
    """Async wrapper for Paystack operations."""

    def __init__(self, config: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.http = http_client or httpx.AsyncClient(
            base_url=config.paystack_base_url,
            timeout=httpx.Timeout(config.paystack_timeout_seconds),
        )

    def _headers(self) -> Dict[str, str]:
        if not self.config.paystack_secret_key:
            raise UpstreamError("PAYSTACK_SECRET_KEY is not set. Payment gateway unavailable.")
        return {
            "Authorization": f"Bearer {self.config.paystack_secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, endpoint: str, data: Optional[dict] = None,
                       allow_not_found: bool = False) -> Optional[Dict[str, Any]]:
        try:
            response = await self.http.request(method, endpoint, headers=self._headers(), json=data)
        except httpx.TimeoutException as e:
            logger.error(f"Paystack {method} {endpoint} timed out: {e}")
            raise UpstreamError("Payment gateway timed out")
        except httpx.HTTPError as e:
            logger.error(f"Paystack {method} {endpoint} failed: {e}")
            raise UpstreamError("Payment gateway unreachable")

        if allow_not_found and response.status_code == 404:
            return None

        if response.status_code >= 400:
            logger.error(f"Paystack {method} {endpoint} returned {response.status_code}: {response.text[:200]}")
            raise UpstreamError(f"Payment gateway error ({response.status_code})")

        try:
            payload = response.json()
        except ValueError:
            logger.error(f"Paystack {method} {endpoint} returned non-JSON body")
            raise UpstreamError("Invalid payment gateway response")

        if not isinstance(payload, dict) or not payload.get("status"):
            message = payload.get("message") if isinstance(payload, dict) else None
            logger.error(f"Paystack {method} {endpoint} rejected request: {message}")
            raise UpstreamError(message or "Payment gateway rejected the request")
        return payload.get("data") or {}

    async def initialize_transaction(self, email: str, amount_minor: int, metadata: dict,
                                     plan_code: Optional[str] = None) -> Dict[str, Any]:
        """
        Start a checkout. Returns the gateway's authorization_url, access_code
        and reference.
        """
        data = {
            "email": email,
            "amount": amount_minor,
            "currency": self.config.paystack_currency,
            "metadata": {
                **metadata,
                "custom_fields": [
                    {"display_name": "Platform", "variable_name": "platform", "value": "Ghana Recipes"}
                ],
            },
            "channels": PAYMENT_CHANNELS,
            "callback_url": f"{self.config.client_url}/payment/callback",
        }
        if plan_code:
            data["plan"] = plan_code
        return await self._request("POST", "/transaction/initialize", data)

    async def verify_transaction(self, reference: str) -> Dict[str, Any]:
        return await self._request("GET", f"/transaction/verify/{reference}")

    async def fetch_customer(self, email: str) -> Optional[Dict[str, Any]]:
        return await self._request("GET", f"/customer/{email}", allow_not_found=True)

    async def create_customer(self, email: str, name: str, phone: Optional[str] = None) -> Dict[str, Any]:
        first_name, _, last_name = (name or "").partition(" ")
        data = {"email": email, "first_name": first_name, "last_name": last_name}
        if phone:
            data["phone"] = phone
        return await self._request("POST", "/customer", data)

    async def get_or_create_customer(self, user) -> Dict[str, Any]:
        customer = await self.fetch_customer(user.email)
        if customer:
            return customer
        return await self.create_customer(user.email, user.name, user.phone)

    async def disable_subscription(self, code: str, token: str) -> Dict[str, Any]:
        """Cancel a subscription on the gateway side."""
        return await self._request("POST", "/subscription/disable", {"code": code, "token": token})

    async def aclose(self) -> None:
        await self.http.aclose()
