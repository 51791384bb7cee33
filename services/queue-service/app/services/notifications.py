"""
Best-effort SMS / WhatsApp notifications.

Queue operations never send messages themselves. They return the messages
they want delivered as ``Notification`` objects, and the API layer hands them
to ``dispatch_notifications`` after the transaction has committed (as a
FastAPI background task). Dispatchers log failures and report them through
their return value; they never raise, so a failed SMS can never undo a join.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional

import httpx
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from app.core.config import Settings
from app.core.errors import CollaboratorFailure
from app.core.phone import mask_phone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    phone: str
    message: str


class NotificationDispatcher(ABC):
    channel = "base"

    def send(self, phone: str, message: str) -> bool:
        try:
            self._deliver(phone, message)
        except CollaboratorFailure as exc:
            logger.error("%s notification to %s failed: %s", self.channel, mask_phone(phone), exc)
            return False
        logger.info("%s notification sent to %s", self.channel, mask_phone(phone))
        return True

    def close(self) -> None:
        pass

    @abstractmethod
    def _deliver(self, phone: str, message: str) -> None:
        """Send one message, raising ``CollaboratorFailure`` when it cannot be delivered."""


class LogDispatcher(NotificationDispatcher):
    """Writes messages to the log instead of delivering them."""

    channel = "log"

    def _deliver(self, phone: str, message: str) -> None:
        logger.info("Notification for %s: %s", mask_phone(phone), message)


class AfricasTalkingSmsDispatcher(NotificationDispatcher):
    channel = "sms"

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.client = client or httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS)

    def close(self) -> None:
        self.client.close()

    def _deliver(self, phone: str, message: str) -> None:
        if not self.settings.AT_API_KEY:
            raise CollaboratorFailure("Africa's Talking API key not configured")

        payload = {
            "username": self.settings.AT_USERNAME,
            "to": phone,
            "message": message,
        }
        if self.settings.AT_SHORTCODE:
            payload["from"] = self.settings.AT_SHORTCODE

        try:
            response = self.client.post(
                f"{self.settings.AT_API_URL}/messaging",
                data=payload,
                headers={"apiKey": self.settings.AT_API_KEY, "Accept": "application/json"},
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            raise CollaboratorFailure(f"SMS gateway returned {exc.response.status_code}") from exc
        except httpx.RequestError as exc:
            raise CollaboratorFailure(f"SMS gateway unreachable: {exc}") from exc
        except ValueError as exc:
            raise CollaboratorFailure("SMS gateway returned a malformed response") from exc

        recipients = body.get("SMSMessageData", {}).get("Recipients", [])
        if recipients and recipients[0].get("status") not in ("Success", "Sent", "Submitted"):
            raise CollaboratorFailure(f"SMS rejected: {recipients[0].get('status')}")


class TwilioWhatsAppDispatcher(NotificationDispatcher):
    channel = "whatsapp"

    def __init__(self, settings: Settings, client: Optional[Client] = None):
        self.settings = settings
        self.client = client
        if self.client is None and settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN:
            self.client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)

    def _deliver(self, phone: str, message: str) -> None:
        if self.client is None or not self.settings.TWILIO_WHATSAPP_NUMBER:
            raise CollaboratorFailure("Twilio WhatsApp is not configured")

        sender = self.settings.TWILIO_WHATSAPP_NUMBER
        if not sender.startswith("whatsapp:"):
            sender = f"whatsapp:{sender}"

        try:
            self.client.messages.create(body=message, from_=sender, to=f"whatsapp:{phone}")
        except TwilioException as exc:
            raise CollaboratorFailure(f"WhatsApp send failed: {exc}") from exc


def build_dispatcher(settings: Settings) -> NotificationDispatcher:
    channel = settings.NOTIFICATION_CHANNEL.lower()
    if channel == "sms":
        return AfricasTalkingSmsDispatcher(settings)
    if channel == "whatsapp":
        return TwilioWhatsAppDispatcher(settings)
    return LogDispatcher()


def dispatch_notifications(dispatcher: NotificationDispatcher, notifications: Iterable[Notification]) -> int:
    """Deliver an outbox of notifications. Returns how many were delivered."""
    delivered = 0
    for notification in notifications:
        try:
            if dispatcher.send(notification.phone, notification.message):
                delivered += 1
        except Exception:
            # Runs after the response is sent; nothing upstream can handle it
            logger.exception("Unexpected error dispatching notification to %s", mask_phone(notification.phone))
    return delivered
