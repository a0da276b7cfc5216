from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, List, Dict
import uuid
import logging
import httpx
from voyaj.config import get_settings
from voyaj.store.records import utcnow

logger = logging.getLogger(__name__)

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"


@dataclass
class Notification:
    """One outbound SMS attempt."""
    id: str
    recipient: str
    body: str
    timestamp: datetime
    delivered: bool = False
    error: Optional[str] = None


class NotificationHistory:
    """Bounded in-memory log of outbound messages, newest last."""

    def __init__(self, max_notifications: int = 200):
        self._notifications: List[Notification] = []
        self._max_notifications = max_notifications

    def add(self, notification: Notification):
        self._notifications.append(notification)
        if len(self._notifications) > self._max_notifications:
            self._notifications.pop(0)

    def all(self) -> List[Notification]:
        return list(self._notifications)

    def for_recipient(self, recipient: str) -> List[Notification]:
        return [n for n in self._notifications if n.recipient == recipient]

    def get_recent(self, limit: int = 50) -> List[Dict]:
        recent = self._notifications[-limit:] if limit else self._notifications
        return [asdict(n) for n in reversed(recent)]

    def clear(self):
        self._notifications.clear()


class Notifier(ABC):
    """
    Outbound delivery. Fire-and-forget: send() reports success but never
    raises, and nothing upstream retries.
    """

    def __init__(self):
        self.history = NotificationHistory()

    @abstractmethod
    async def _deliver(self, recipient: str, body: str):
        pass

    async def send(self, recipient: str, body: str) -> bool:
        notification = Notification(
            id=str(uuid.uuid4()),
            recipient=recipient,
            body=body,
            timestamp=utcnow(),
        )
        try:
            await self._deliver(recipient, body)
            notification.delivered = True
        except Exception as e:
            notification.error = str(e)
            logger.error(f"❌ Failed to send SMS to {recipient}: {e}")
        self.history.add(notification)
        return notification.delivered

    async def close(self):
        pass


class InMemoryNotifier(Notifier):
    """Records messages instead of sending them. Used in dev and tests."""

    async def _deliver(self, recipient: str, body: str):
        logger.info(f"📱 [to {recipient}] {body}")

    def messages_for(self, recipient: str) -> List[str]:
        return [n.body for n in self.history.for_recipient(recipient)]

    @property
    def sent(self) -> List[Notification]:
        return self.history.all()


class TwilioNotifier(Notifier):
    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
    ):
        super().__init__()
        settings = get_settings()
        self.account_sid = account_sid or settings.twilio_account_sid
        self.auth_token = auth_token or settings.twilio_auth_token
        self.from_number = from_number or settings.twilio_phone_number
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=10.0,
                auth=(self.account_sid, self.auth_token),
            )
        return self._http_client

    async def close(self):
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _deliver(self, recipient: str, body: str):
        client = await self._get_client()
        response = await client.post(
            f"{TWILIO_API_URL}/Accounts/{self.account_sid}/Messages.json",
            data={"To": recipient, "From": self.from_number, "Body": body},
        )
        response.raise_for_status()
        logger.info(f"📤 SMS sent to {recipient} ({response.json().get('sid', '?')})")


_global_notifier: Optional[Notifier] = None


def get_global_notifier() -> Notifier:
    global _global_notifier
    if _global_notifier is None:
        settings = get_settings()
        if settings.twilio_account_sid and settings.twilio_auth_token:
            _global_notifier = TwilioNotifier()
        else:
            logger.info("Twilio not configured; outbound SMS will only be logged")
            _global_notifier = InMemoryNotifier()
    return _global_notifier


async def shutdown_notifier():
    """Close the global notifier's HTTP client."""
    global _global_notifier
    if _global_notifier is not None:
        await _global_notifier.close()
        _global_notifier = None
