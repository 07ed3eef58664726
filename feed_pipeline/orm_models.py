"""
SQLAlchemy ORM models for the feed pipeline.

These models are internal to the database layer. The public interface
uses the dataclass models from models.py.
"""

import json
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from feed_pipeline.models import (
    AccountSettings,
    AiMode,
    ClassificationStatus,
    Cluster,
    Digest,
    DigestEntry,
    Feed,
    FeedTopic,
    FeedTopicStatus,
    FeedWeight,
    FilterEvent,
    FilterMatchType,
    FilterMode,
    FilterOutcome,
    FilterRule,
    FilterTarget,
    Folder,
    Item,
    Job,
    JobStatus,
    PushSubscription,
    Topic,
)


class JSONEncodedList(TypeDecorator):
    """Represents a list as a JSON-encoded string."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[List], dialect) -> Optional[str]:
        if value is None or value == []:
            return None
        return json.dumps(value)

    def process_result_value(self, value: Optional[str], dialect) -> List:
        if value is None:
            return []
        return json.loads(value)


class JSONEncodedDict(TypeDecorator):
    """Represents a dict as a JSON-encoded string."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[dict], dialect) -> Optional[str]:
        if value is None or value == {}:
            return None
        return json.dumps(value)

    def process_result_value(self, value: Optional[str], dialect) -> dict:
        if value is None:
            return {}
        return json.loads(value)


class Base(DeclarativeBase):
    pass


class FolderORM(Base):
    """SQLAlchemy model for folders table."""

    __tablename__ = "folders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "name", name="uq_folders_account_name"),
    )


class FeedORM(Base):
    """SQLAlchemy model for feeds table."""

    __tablename__ = "feeds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    folder_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    weight: Mapped[str] = mapped_column(String(16), nullable=False, default="neutral")
    etag: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_modified: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_polled_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    classification_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending_classification"
    )
    classified_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    circuit_open_until: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    muted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    backfill_since: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "url", name="uq_feeds_account_url"),
        Index("idx_feeds_last_polled", "account_id", "last_polled_at"),
    )


class ItemORM(Base):
    """SQLAlchemy model for items table."""

    __tablename__ = "items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    feed_id: Mapped[int] = mapped_column(Integer, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    canonical_url: Mapped[str] = mapped_column(Text, nullable=False)
    guid: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    author: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    published_at: Mapped[int] = mapped_column(Integer, nullable=False)
    hero_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extracted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extracted_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    ai_focus_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ai_relevant_label: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    ai_suggested_tags: Mapped[List[str]] = mapped_column(JSONEncodedList, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index(
            "uq_items_feed_guid",
            "account_id",
            "feed_id",
            "guid",
            unique=True,
            sqlite_where=text("guid IS NOT NULL"),
            postgresql_where=text("guid IS NOT NULL"),
        ),
        Index(
            "uq_items_feed_url_published",
            "account_id",
            "feed_id",
            "canonical_url",
            "published_at",
            unique=True,
            sqlite_where=text("guid IS NULL"),
            postgresql_where=text("guid IS NULL"),
        ),
        Index("idx_items_published_at", "account_id", "published_at"),
    )


class ClusterORM(Base):
    """SQLAlchemy model for clusters table."""

    __tablename__ = "clusters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rep_item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    folder_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    topic_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    size: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_clusters_updated_at", "account_id", "updated_at"),
    )


class ClusterMemberORM(Base):
    """SQLAlchemy model for cluster_members table."""

    __tablename__ = "cluster_members"

    cluster_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    added_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("item_id", name="uq_cluster_members_item"),
    )


class ReadStateORM(Base):
    """SQLAlchemy model for read_states table."""

    __tablename__ = "read_states"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    cluster_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    read_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    saved_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class FilterRuleORM(Base):
    """SQLAlchemy model for filter_rules table."""

    __tablename__ = "filter_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    pattern: Mapped[str] = mapped_column(Text, nullable=False)
    target: Mapped[str] = mapped_column(String(16), nullable=False, default="keyword")
    match_type: Mapped[str] = mapped_column(String(16), nullable=False, default="phrase")
    mode: Mapped[str] = mapped_column(String(16), nullable=False, default="mute")
    breakout_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    feed_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    folder_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class FilterEventORM(Base):
    """SQLAlchemy model for filter_events table."""

    __tablename__ = "filter_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[int] = mapped_column(Integer, nullable=False)
    cluster_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_filter_events_cluster", "account_id", "cluster_id"),
    )


class UsageCounterORM(Base):
    """SQLAlchemy model for daily_usage table."""

    __tablename__ = "daily_usage"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    usage_date: Mapped[str] = mapped_column(String(10), primary_key=True)
    items_ingested: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class DigestORM(Base):
    """SQLAlchemy model for digests table."""

    __tablename__ = "digests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    start_at: Mapped[int] = mapped_column(Integer, nullable=False)
    end_at: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    entries: Mapped[List[dict]] = mapped_column(JSONEncodedList, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_digests_created_at", "account_id", "created_at"),
    )


class TopicORM(Base):
    """SQLAlchemy model for topics table."""

    __tablename__ = "topics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "name", name="uq_topics_account_name"),
    )


class FeedTopicORM(Base):
    """SQLAlchemy model for feed_topics table."""

    __tablename__ = "feed_topics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    feed_id: Mapped[int] = mapped_column(Integer, nullable=False)
    topic_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    proposed_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("feed_id", "topic_id", name="uq_feed_topics_feed_topic"),
    )


class AccountSettingsORM(Base):
    """SQLAlchemy model for account_settings table."""

    __tablename__ = "account_settings"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    plan_id: Mapped[str] = mapped_column(String(16), nullable=False, default="free")
    ai_mode: Mapped[str] = mapped_column(String(32), nullable=False, default="off")
    ai_scoring_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    monthly_ai_cap_usd: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_active_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_digest_end_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class AiUsageORM(Base):
    """SQLAlchemy model for ai_usage table."""

    __tablename__ = "ai_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    model: Mapped[str] = mapped_column(Text, nullable=False)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    feature: Mapped[str] = mapped_column(String(32), nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_ai_usage_created_at", "account_id", "created_at"),
    )


class PushSubscriptionORM(Base):
    """SQLAlchemy model for push_subscriptions table."""

    __tablename__ = "push_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    chat_id: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "chat_id", name="uq_push_subscriptions_chat"),
    )


class EventORM(Base):
    """SQLAlchemy model for events table (append-only worker audit log)."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    entity_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payload: Mapped[dict] = mapped_column(JSONEncodedDict, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)


class JobORM(Base):
    """SQLAlchemy model for jobs table."""

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONEncodedDict, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    run_after: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    singleton_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    locked_until: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_jobs_status_run_after", "status", "run_after"),
    )


class ScheduleStateORM(Base):
    """SQLAlchemy model for schedule_state table (last enqueue per recurring job)."""

    __tablename__ = "schedule_state"

    job_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_enqueued_at: Mapped[int] = mapped_column(Integer, nullable=False)


# Conversion functions between ORM and dataclass models


def folder_orm_to_dataclass(orm: FolderORM) -> Folder:
    return Folder(account_id=orm.account_id, name=orm.name, id=orm.id)


def feed_orm_to_dataclass(orm: FeedORM) -> Feed:
    """Convert a FeedORM to a Feed dataclass."""
    return Feed(
        id=orm.id,
        account_id=orm.account_id,
        url=orm.url,
        title=orm.title,
        folder_id=orm.folder_id,
        weight=FeedWeight(orm.weight),
        etag=orm.etag,
        last_modified=orm.last_modified,
        last_polled_at=orm.last_polled_at,
        classification_status=ClassificationStatus(orm.classification_status),
        classified_at=orm.classified_at,
        consecutive_failures=orm.consecutive_failures,
        circuit_open_until=orm.circuit_open_until,
        last_failure_reason=orm.last_failure_reason,
        muted=bool(orm.muted),
        backfill_since=orm.backfill_since,
        created_at=orm.created_at,
    )


def feed_dataclass_to_orm(feed: Feed, created_at: int) -> FeedORM:
    """Convert a Feed dataclass to a FeedORM (for inserts)."""
    return FeedORM(
        account_id=feed.account_id,
        url=feed.url,
        title=feed.title,
        folder_id=feed.folder_id,
        weight=feed.weight.value,
        etag=feed.etag,
        last_modified=feed.last_modified,
        last_polled_at=feed.last_polled_at,
        classification_status=feed.classification_status.value,
        classified_at=feed.classified_at,
        consecutive_failures=feed.consecutive_failures,
        circuit_open_until=feed.circuit_open_until,
        last_failure_reason=feed.last_failure_reason,
        muted=feed.muted,
        backfill_since=feed.backfill_since,
        created_at=created_at,
    )


def item_orm_to_dataclass(orm: ItemORM) -> Item:
    """Convert an ItemORM to an Item dataclass."""
    return Item(
        id=orm.id,
        account_id=orm.account_id,
        feed_id=orm.feed_id,
        url=orm.url,
        canonical_url=orm.canonical_url,
        guid=orm.guid,
        title=orm.title,
        summary=orm.summary,
        author=orm.author,
        published_at=orm.published_at,
        hero_image_url=orm.hero_image_url,
        extracted_text=orm.extracted_text,
        extracted_at=orm.extracted_at,
        ai_focus_score=orm.ai_focus_score,
        ai_relevant_label=orm.ai_relevant_label,
        ai_suggested_tags=orm.ai_suggested_tags or [],
        created_at=orm.created_at,
    )


def cluster_orm_to_dataclass(orm: ClusterORM) -> Cluster:
    return Cluster(
        id=orm.id,
        account_id=orm.account_id,
        rep_item_id=orm.rep_item_id,
        folder_id=orm.folder_id,
        topic_id=orm.topic_id,
        size=orm.size,
        created_at=orm.created_at,
        updated_at=orm.updated_at,
    )


def filter_rule_orm_to_dataclass(orm: FilterRuleORM) -> FilterRule:
    """Convert a FilterRuleORM to a FilterRule dataclass."""
    return FilterRule(
        id=orm.id,
        account_id=orm.account_id,
        pattern=orm.pattern,
        target=FilterTarget(orm.target),
        match_type=FilterMatchType(orm.match_type),
        mode=FilterMode(orm.mode),
        breakout_enabled=bool(orm.breakout_enabled),
        feed_id=orm.feed_id,
        folder_id=orm.folder_id,
        position=orm.position,
    )


def filter_rule_dataclass_to_orm(rule: FilterRule) -> FilterRuleORM:
    return FilterRuleORM(
        account_id=rule.account_id,
        pattern=rule.pattern,
        target=rule.target.value,
        match_type=rule.match_type.value,
        mode=rule.mode.value,
        breakout_enabled=rule.breakout_enabled,
        feed_id=rule.feed_id,
        folder_id=rule.folder_id,
        position=rule.position,
    )


def filter_event_orm_to_dataclass(orm: FilterEventORM) -> FilterEvent:
    return FilterEvent(
        id=orm.id,
        account_id=orm.account_id,
        rule_id=orm.rule_id,
        cluster_id=orm.cluster_id,
        action=FilterOutcome(orm.action),
        reason=orm.reason,
        created_at=orm.created_at,
    )


def digest_orm_to_dataclass(orm: DigestORM) -> Digest:
    """Convert a DigestORM to a Digest dataclass."""
    return Digest(
        id=orm.id,
        account_id=orm.account_id,
        start_at=orm.start_at,
        end_at=orm.end_at,
        title=orm.title,
        body=orm.body,
        entries=[DigestEntry(**entry) for entry in (orm.entries or [])],
        created_at=orm.created_at,
    )


def topic_orm_to_dataclass(orm: TopicORM) -> Topic:
    return Topic(id=orm.id, account_id=orm.account_id, name=orm.name)


def feed_topic_orm_to_dataclass(orm: FeedTopicORM) -> FeedTopic:
    return FeedTopic(
        id=orm.id,
        account_id=orm.account_id,
        feed_id=orm.feed_id,
        topic_id=orm.topic_id,
        status=FeedTopicStatus(orm.status),
        confidence=orm.confidence,
        proposed_at=orm.proposed_at,
    )


def settings_orm_to_dataclass(orm: AccountSettingsORM) -> AccountSettings:
    return AccountSettings(
        account_id=orm.account_id,
        plan_id=orm.plan_id,
        ai_mode=AiMode(orm.ai_mode),
        ai_scoring_enabled=bool(orm.ai_scoring_enabled),
        monthly_ai_cap_usd=orm.monthly_ai_cap_usd,
        last_active_at=orm.last_active_at,
    )


def push_subscription_orm_to_dataclass(orm: PushSubscriptionORM) -> PushSubscription:
    return PushSubscription(
        id=orm.id,
        account_id=orm.account_id,
        chat_id=orm.chat_id,
        created_at=orm.created_at,
    )


def job_orm_to_dataclass(orm: JobORM) -> Job:
    """Convert a JobORM to a Job dataclass."""
    return Job(
        id=orm.id,
        name=orm.name,
        payload=orm.payload or {},
        status=JobStatus(orm.status),
        attempts=orm.attempts,
        max_attempts=orm.max_attempts,
        run_after=orm.run_after,
        last_error=orm.last_error,
        singleton_key=orm.singleton_key,
        locked_until=orm.locked_until,
        created_at=orm.created_at,
        updated_at=orm.updated_at,
    )
