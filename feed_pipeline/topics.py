"""
Feed topic classification and topic drift detection.

A new feed is classified once from a sample of its items; the proposed
topics wait for the user's approval. Drift detection re-samples a
classified feed and proposes new topics when its coverage has moved away
from the approved ones.
"""

import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from sqlalchemy import func, select

from feed_pipeline.ai_usage import is_over_budget, log_ai_usage
from feed_pipeline.constants import (
    DRIFT_SAMPLE_SIZE,
    DRIFT_THRESHOLD,
    MAX_TOPIC_LENGTH,
    MAX_TOPICS_PER_FEED,
    PROMPTS_DIR,
    TOPIC_SAMPLE_SIZE,
)
from feed_pipeline.database import get_recent_items_for_feed
from feed_pipeline.db_engine import get_session
from feed_pipeline.models import ClassificationStatus, Feed, FeedTopic, FeedTopicStatus, Item
from feed_pipeline.orm_models import FeedORM, FeedTopicORM, TopicORM, feed_topic_orm_to_dataclass
from llm.llm_util import get_llm_response, parse_json_response, sanitize_for_prompt
from llm.provider import AiProvider
from util.logging_util import setup_logger

logger = setup_logger(__name__)

CLASSIFY_TOPICS_TEMPLATE = PROMPTS_DIR / "classify_topics.jinja2"

TOPIC_SYSTEM_PROMPT = "You categorize news feeds by topic. Respond with valid JSON only."
TOPIC_MAX_TOKENS = 200
TOPIC_TEMPERATURE = 0.2


@dataclass
class DriftResult:
    drifted: bool
    ratio: float
    suggested: List[str] = field(default_factory=list)
    new_topics: List[str] = field(default_factory=list)


def parse_topic_response(text: str) -> List[Tuple[str, float]]:
    """Parse {"topics": [{"topic", "confidence"}]} into at most three (name, confidence) pairs."""
    result = parse_json_response(text)
    if result is None:
        return []

    topics: List[Tuple[str, float]] = []
    seen = set()
    for entry in result.get("topics", []) or []:
        if not isinstance(entry, dict) or not isinstance(entry.get("topic"), str):
            continue
        name = entry["topic"].strip()
        if not name or len(name) > MAX_TOPIC_LENGTH or name.lower() in seen:
            continue
        try:
            confidence = max(0.0, min(1.0, float(entry.get("confidence", 0.5))))
        except (TypeError, ValueError):
            confidence = 0.5
        seen.add(name.lower())
        topics.append((name, confidence))
    return topics[:MAX_TOPICS_PER_FEED]


def get_topic_names(account_id: str) -> List[str]:
    with get_session() as session:
        stmt = select(TopicORM.name).where(TopicORM.account_id == account_id).order_by(TopicORM.name)
        return list(session.execute(stmt).scalars().all())


def get_feed_topics(feed_id: int, status: Optional[FeedTopicStatus] = None) -> List[FeedTopic]:
    with get_session() as session:
        stmt = select(FeedTopicORM).where(FeedTopicORM.feed_id == feed_id)
        if status is not None:
            stmt = stmt.where(FeedTopicORM.status == status.value)
        stmt = stmt.order_by(FeedTopicORM.confidence.desc(), FeedTopicORM.id.asc())
        return [feed_topic_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def get_approved_topic_names(feed_id: int) -> List[str]:
    with get_session() as session:
        stmt = (
            select(TopicORM.name)
            .join(FeedTopicORM, FeedTopicORM.topic_id == TopicORM.id)
            .where(
                FeedTopicORM.feed_id == feed_id,
                FeedTopicORM.status == FeedTopicStatus.APPROVED.value,
            )
        )
        return list(session.execute(stmt).scalars().all())


def set_feed_topic_status(feed_topic_id: int, status: FeedTopicStatus):
    with get_session() as session:
        orm = session.get(FeedTopicORM, feed_topic_id)
        if orm is not None:
            orm.status = status.value


def propose_topics(
    account_id: str, feed_id: int, topics: List[Tuple[str, float]], now: int
) -> List[str]:
    """Create topics (case-insensitively reused) and pending feed proposals.

    Returns the names of topics newly proposed for the feed.
    """
    proposed = []
    with get_session() as session:
        for name, confidence in topics:
            topic = session.execute(
                select(TopicORM).where(
                    TopicORM.account_id == account_id,
                    func.lower(TopicORM.name) == name.lower(),
                )
            ).scalars().first()
            if topic is None:
                topic = TopicORM(account_id=account_id, name=name)
                session.add(topic)
                session.flush()

            existing = session.execute(
                select(FeedTopicORM).where(
                    FeedTopicORM.feed_id == feed_id,
                    FeedTopicORM.topic_id == topic.id,
                )
            ).scalar_one_or_none()
            if existing is not None:
                continue
            session.add(FeedTopicORM(
                account_id=account_id,
                feed_id=feed_id,
                topic_id=topic.id,
                status=FeedTopicStatus.PENDING.value,
                confidence=confidence,
                proposed_at=now,
            ))
            proposed.append(topic.name)
    return proposed


def _suggest_topics(
    provider: AiProvider, account_id: str, feed: Feed, items: List[Item]
) -> Optional[List[Tuple[str, float]]]:
    response = get_llm_response(
        provider,
        CLASSIFY_TOPICS_TEMPLATE,
        {
            "feed_title": sanitize_for_prompt(feed.title, 100),
            "items": [
                {"title": sanitize_for_prompt(item.title, 200), "summary": sanitize_for_prompt(item.summary, 200)}
                for item in items
            ],
            "existing_topics": [sanitize_for_prompt(name, MAX_TOPIC_LENGTH) for name in get_topic_names(account_id)],
        },
        system_prompt=TOPIC_SYSTEM_PROMPT,
        max_tokens=TOPIC_MAX_TOKENS,
        temperature=TOPIC_TEMPERATURE,
    )
    if response.is_error:
        logger.warning(f"Topic classification for feed {feed.id} failed: {response.text}")
        return None
    log_ai_usage(account_id, response, "topics")
    return parse_topic_response(response.text)


def classify_feed_topics(
    account_id: str, feed: Feed, provider: Optional[AiProvider], now: Optional[int] = None
) -> List[str]:
    """Classify a feed once, while it is pending classification.

    Returns the proposed topic names. The feed is marked classified only
    when the model produced a usable answer.
    """
    if provider is None or feed.classification_status != ClassificationStatus.PENDING:
        return []
    if is_over_budget(account_id):
        return []
    items = get_recent_items_for_feed(feed.id, TOPIC_SAMPLE_SIZE)
    if not items:
        return []

    now = now or int(time.time())
    suggestions = _suggest_topics(provider, account_id, feed, items)
    if suggestions is None:
        return []

    proposed = propose_topics(account_id, feed.id, suggestions, now)
    with get_session() as session:
        orm = session.get(FeedORM, feed.id)
        if orm is not None:
            orm.classification_status = ClassificationStatus.CLASSIFIED.value
            orm.classified_at = now
    feed.classification_status = ClassificationStatus.CLASSIFIED
    feed.classified_at = now

    logger.info(f"Classified feed {feed.id} with topics {proposed}")
    return proposed


def detect_topic_drift(
    account_id: str, feed: Feed, provider: Optional[AiProvider], now: Optional[int] = None
) -> Optional[DriftResult]:
    """Compare a fresh classification with the feed's approved topics.

    Drift means more than DRIFT_THRESHOLD of the suggested topics are not
    approved; the new ones are then proposed for review. Every completed
    check moves the feed's classified_at forward. Returns None when no
    classification could be made.
    """
    if provider is None or feed.classification_status == ClassificationStatus.PENDING:
        return None
    items = get_recent_items_for_feed(feed.id, DRIFT_SAMPLE_SIZE)
    if not items:
        return None

    suggestions = _suggest_topics(provider, account_id, feed, items)
    if not suggestions:
        return None

    now = now or int(time.time())
    approved = {name.lower() for name in get_approved_topic_names(feed.id)}
    suggested = [name for name, _ in suggestions]
    new = [(name, confidence) for name, confidence in suggestions if name.lower() not in approved]
    ratio = len(new) / len(suggestions)
    result = DriftResult(drifted=ratio > DRIFT_THRESHOLD, ratio=ratio, suggested=suggested)

    if result.drifted:
        result.new_topics = propose_topics(account_id, feed.id, new, now)
        logger.info(f"Topic drift on feed {feed.id} ({ratio:.0%}): proposed {result.new_topics}")

    with get_session() as session:
        orm = session.get(FeedORM, feed.id)
        if orm is not None:
            orm.classified_at = now
    feed.classified_at = now
    return result
