"""
Notification Service - fire-and-forget email and SMS after auth and
subscription events. Delivery failures are logged and never propagate back
into the operation that triggered them.
"""

import asyncio
import logging
import re
from typing import Optional, Set

logger = logging.getLogger(__name__)


def format_phone_number(phone: str) -> str:
    """Normalize a Ghana phone number to E.164 (+233...)."""
    cleaned = re.sub(r'\D', '', phone)
    if not cleaned.startswith("233"):
        cleaned = "233" + (cleaned[1:] if cleaned.startswith("0") else cleaned)
    return "+" + cleaned


class LogEmailSender:
    """Email transport that only records the send; swap for a real provider."""

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info(f"Email queued to {to}: {subject}")


class LogSmsSender:
    async def send(self, to: str, message: str) -> None:
        logger.info(f"SMS queued to {to}")


class NotificationService:
    """
    Schedules sends as background tasks and keeps a reference to each until
    it finishes.
    """

    def __init__(self, client_url: str, email_sender=None, sms_sender=None):
        self.client_url = client_url.rstrip("/")
        self.email_sender = email_sender or LogEmailSender()
        self.sms_sender = sms_sender or LogSmsSender()
        self._pending: Set[asyncio.Task] = set()

    def _dispatch(self, coro, description: str) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)

        def _done(t: asyncio.Task):
            self._pending.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(f"Notification failed ({description}): {exc}")

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for in-flight sends; used at shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def send_welcome_email(self, user, verification_token: str) -> None:
        link = f"{self.client_url}/verify-email/{verification_token}"
        body = f"Welcome to Ghana Recipes, {user.name}! Verify your email: {link}"
        self._dispatch(self.email_sender.send(user.email, "Welcome to Ghana Recipes", body), "welcome")

    def send_password_reset_email(self, user, reset_token: str) -> None:
        link = f"{self.client_url}/reset-password/{reset_token}"
        body = f"Reset your password within the next few minutes: {link}"
        self._dispatch(self.email_sender.send(user.email, "Password reset request", body), "password_reset")

    def send_subscription_email(self, user, status: str) -> None:
        subjects = {
            "premium": "Your premium subscription is active",
            "cancelled": "Your subscription has been cancelled",
            "past_due": "We could not process your subscription payment",
        }
        subject = subjects.get(status)
        if subject is None:
            return
        self._dispatch(self.email_sender.send(user.email, subject, subject), f"subscription_{status}")

    def send_sms(self, phone: Optional[str], message: str) -> None:
        if not phone:
            return
        self._dispatch(self.sms_sender.send(format_phone_number(phone), message), "sms")
