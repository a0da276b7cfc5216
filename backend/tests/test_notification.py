"""Tests for outbound SMS delivery."""
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from voyaj.services.notification import InMemoryNotifier, NotificationHistory, TwilioNotifier, Notification
from voyaj.store.records import utcnow


class TestInMemoryNotifier:
    @pytest.mark.asyncio
    async def test_records_messages_per_recipient(self):
        notifier = InMemoryNotifier()

        assert await notifier.send("+15550000001", "hello") is True
        await notifier.send("+15550000002", "hi")

        assert notifier.messages_for("+15550000001") == ["hello"]
        assert len(notifier.sent) == 2


class TestNotificationHistory:
    def test_bounded(self):
        history = NotificationHistory(max_notifications=2)
        for i in range(3):
            history.add(Notification(id=str(i), recipient="+1", body=f"m{i}", timestamp=utcnow()))

        assert [n.body for n in history.all()] == ["m1", "m2"]


class TestTwilioNotifier:
    @pytest.mark.asyncio
    async def test_posts_message(self):
        notifier = TwilioNotifier(account_sid="AC1", auth_token="secret", from_number="+15551112222")
        response = MagicMock()
        response.raise_for_status = MagicMock()
        response.json.return_value = {"sid": "SM1"}
        client = MagicMock()
        client.post = AsyncMock(return_value=response)
        notifier._http_client = client

        assert await notifier.send("+15550000001", "hello") is True

        url = client.post.await_args.args[0]
        assert url.endswith("/Accounts/AC1/Messages.json")
        assert client.post.await_args.kwargs["data"] == {
            "To": "+15550000001", "From": "+15551112222", "Body": "hello",
        }

    @pytest.mark.asyncio
    async def test_delivery_failure_is_reported_not_raised(self):
        notifier = TwilioNotifier(account_sid="AC1", auth_token="secret", from_number="+15551112222")
        client = MagicMock()
        client.post = AsyncMock(side_effect=httpx.ConnectError("no route"))
        notifier._http_client = client

        assert await notifier.send("+15550000001", "hello") is False
        assert notifier.history.all()[0].error == "no route"
