"""Tests for push notifications."""

from unittest.mock import MagicMock, patch

import pytest
import requests
from sqlalchemy import create_engine

from feed_pipeline import db_engine
from feed_pipeline.models import Item, PushSubscription
from feed_pipeline.orm_models import Base
from notifications.push import (
    PushPayload,
    PushStatus,
    TelegramPushTransport,
    build_new_stories_payload,
    send_new_stories_notification,
)


@pytest.fixture
def temp_db():
    """Create a temporary in-memory database for testing."""
    test_engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(test_engine)
    db_engine.set_engine(test_engine)
    yield test_engine
    db_engine.reset_engine()


def _item(title, item_id=1):
    return Item(account_id="acct", feed_id=1, url=f"https://example.com/{item_id}",
                canonical_url=f"https://example.com/{item_id}", title=title, published_at=0, id=item_id)


def _http_response(status_code, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


class TestPayload:
    def test_single_and_plural(self):
        assert build_new_stories_payload([_item("Only")]).title == "1 new story"

        payload = build_new_stories_payload([_item("First", 1), _item("Second", 2)])
        assert payload.title == "2 new stories"
        assert payload.body == "Top: First"
        assert payload.url == "https://example.com/1"


class TestTelegramPushTransport:
    """Tests for TelegramPushTransport.send (requests mocked)."""

    subscription = PushSubscription(account_id="acct", chat_id="123", id=1)
    payload = PushPayload(title="2 new stories", body="Top: First", url="https://example.com/1")

    def test_success(self):
        transport = TelegramPushTransport("TOKEN")
        with patch("notifications.push.requests.post", return_value=_http_response(200)) as mock_post:
            assert transport.send(self.subscription, self.payload) == PushStatus.SUCCESS

        assert mock_post.call_args.args[0] == "https://api.telegram.org/botTOKEN/sendMessage"
        body = mock_post.call_args.kwargs["json"]
        assert body["chat_id"] == "123"
        assert body["text"] == "2 new stories\nTop: First\nhttps://example.com/1"

    @pytest.mark.parametrize("status_code,text", [(403, "Forbidden: bot was blocked"), (400, "Bad Request: chat not found")])
    def test_expired(self, status_code, text):
        transport = TelegramPushTransport("TOKEN")
        with patch("notifications.push.requests.post", return_value=_http_response(status_code, text)):
            assert transport.send(self.subscription, self.payload) == PushStatus.EXPIRED

    def test_errors(self):
        transport = TelegramPushTransport("TOKEN")
        with patch("notifications.push.requests.post", return_value=_http_response(500, "oops")):
            assert transport.send(self.subscription, self.payload) == PushStatus.ERROR
        with patch("notifications.push.requests.post", side_effect=requests.Timeout("slow")):
            assert transport.send(self.subscription, self.payload) == PushStatus.ERROR


class TestSendNewStoriesNotification:
    """Tests for fan-out to subscriptions."""

    def test_expired_subscriptions_removed(self, temp_db):
        from feed_pipeline.database import add_push_subscription, get_push_subscriptions

        add_push_subscription("acct", "alive")
        add_push_subscription("acct", "gone")
        transport = MagicMock()
        transport.send.side_effect = lambda sub, payload: (
            PushStatus.SUCCESS if sub.chat_id == "alive" else PushStatus.EXPIRED
        )

        summary = send_new_stories_notification("acct", [_item("Story")], transport)

        assert (summary.sent, summary.failed, summary.expired) == (1, 1, 1)
        assert [s.chat_id for s in get_push_subscriptions("acct")] == ["alive"]

    def test_duplicate_subscription(self, temp_db):
        from feed_pipeline.database import add_push_subscription

        assert add_push_subscription("acct", "chat") > 0
        assert add_push_subscription("acct", "chat") == 0

    def test_nothing_to_send(self, temp_db):
        transport = MagicMock()

        summary = send_new_stories_notification("acct", [], transport)

        assert summary.sent == 0
        transport.send.assert_not_called()
