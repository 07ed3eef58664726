"""
Push notifications for newly ingested stories.

The default transport posts to the Telegram Bot API. Subscriptions whose
chat is gone (bot blocked, chat deleted) are reported as expired and
removed.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import requests

from feed_pipeline.database import delete_push_subscription, get_push_subscriptions
from feed_pipeline.models import Item, PushSubscription
from util.logging_util import log_push_sent, setup_logger

logger = setup_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


class PushStatus(Enum):
    SUCCESS = "success"
    EXPIRED = "expired"
    ERROR = "error"


@dataclass
class PushPayload:
    title: str
    body: str
    url: Optional[str] = None


@dataclass
class PushSummary:
    sent: int = 0
    failed: int = 0
    expired: int = 0


class PushTransport(ABC):
    @abstractmethod
    def send(self, subscription: PushSubscription, payload: PushPayload) -> PushStatus:
        ...


class TelegramPushTransport(PushTransport):
    """Sends notifications as Telegram bot messages."""

    def __init__(self, bot_token: str, timeout: float = 10.0):
        self.api_url = f"{TELEGRAM_API_BASE}/bot{bot_token}"
        self.timeout = timeout

    def send(self, subscription: PushSubscription, payload: PushPayload) -> PushStatus:
        text = f"{payload.title}\n{payload.body}"
        if payload.url:
            text = f"{text}\n{payload.url}"

        try:
            response = requests.post(
                f"{self.api_url}/sendMessage",
                json={"chat_id": subscription.chat_id, "text": text},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Push to chat {subscription.chat_id} failed: {e}")
            return PushStatus.ERROR

        if response.status_code == 200:
            log_push_sent(logger, subscription.chat_id, text)
            return PushStatus.SUCCESS
        if response.status_code in (403, 404, 410):
            return PushStatus.EXPIRED
        if response.status_code == 400 and "chat not found" in response.text.lower():
            return PushStatus.EXPIRED

        logger.error(f"Push to chat {subscription.chat_id} returned HTTP {response.status_code}: {response.text[:200]}")
        return PushStatus.ERROR


def build_new_stories_payload(new_items: List[Item]) -> PushPayload:
    count = len(new_items)
    noun = "story" if count == 1 else "stories"
    top = new_items[0]
    return PushPayload(title=f"{count} new {noun}", body=f"Top: {top.title}", url=top.url)


def send_new_stories_notification(
    account_id: str, new_items: List[Item], transport: Optional[PushTransport]
) -> PushSummary:
    """Notify every subscription of the account about new items.

    Expired subscriptions are deleted.
    """
    summary = PushSummary()
    if transport is None or not new_items:
        return summary

    payload = build_new_stories_payload(new_items)
    for subscription in get_push_subscriptions(account_id):
        status = transport.send(subscription, payload)
        if status == PushStatus.SUCCESS:
            summary.sent += 1
            continue
        summary.failed += 1
        if status == PushStatus.EXPIRED:
            summary.expired += 1
            logger.info(f"Removing expired push subscription {subscription.id} for {account_id}")
            delete_push_subscription(subscription.id)

    logger.info(f"Push for {account_id}: {summary.sent} sent, {summary.failed} failed")
    return summary
