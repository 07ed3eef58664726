"""
Database operations for the feed pipeline.

Uses SQLAlchemy ORM for database access. The public API uses dataclass models
from models.py, with conversion to/from ORM models handled internally.
Stage-specific queries (upsert, clustering, budgets) live beside their stages.
"""

import time
from typing import Dict, List, Optional, Set

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from feed_pipeline.db_engine import get_engine, get_session
from feed_pipeline.models import (
    AccountSettings,
    ClassificationStatus,
    Cluster,
    Feed,
    FilterEvent,
    FilterRule,
    Folder,
    Item,
    PushSubscription,
)
from feed_pipeline.orm_models import (
    AccountSettingsORM,
    Base,
    ClusterMemberORM,
    ClusterORM,
    EventORM,
    FeedORM,
    FilterEventORM,
    FilterRuleORM,
    FolderORM,
    ItemORM,
    PushSubscriptionORM,
    ReadStateORM,
    cluster_orm_to_dataclass,
    feed_dataclass_to_orm,
    feed_orm_to_dataclass,
    filter_event_orm_to_dataclass,
    filter_rule_dataclass_to_orm,
    filter_rule_orm_to_dataclass,
    folder_orm_to_dataclass,
    item_orm_to_dataclass,
    push_subscription_orm_to_dataclass,
    settings_orm_to_dataclass,
)
from util.logging_util import setup_logger

logger = setup_logger(__name__)

DEFAULT_FOLDERS = [
    "Tech",
    "Gaming",
    "Security",
    "Business",
    "Politics",
    "Sports",
    "Design",
    "Local",
    "World",
    "Other",
]


def init_db():
    """Initialize the database schema."""
    engine = get_engine()
    Base.metadata.create_all(engine)


# Folders


def ensure_default_folders(account_id: str) -> Dict[str, int]:
    """Create any missing default folders and return a name -> id map."""
    with get_session() as session:
        stmt = select(FolderORM).where(FolderORM.account_id == account_id)
        existing = {orm.name: orm for orm in session.execute(stmt).scalars().all()}
        for name in DEFAULT_FOLDERS:
            if name not in existing:
                orm = FolderORM(account_id=account_id, name=name)
                session.add(orm)
                existing[name] = orm
        session.flush()
        return {name: orm.id for name, orm in existing.items()}


def get_folders(account_id: str) -> List[Folder]:
    with get_session() as session:
        stmt = (
            select(FolderORM)
            .where(FolderORM.account_id == account_id)
            .order_by(FolderORM.id.asc())
        )
        return [folder_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


# Feeds


def add_feed(feed: Feed) -> int:
    """Insert a new feed.

    Returns the feed id.
    """
    created_at = feed.created_at or int(time.time())
    orm = feed_dataclass_to_orm(feed, created_at)

    with get_session() as session:
        session.add(orm)
        session.flush()
        return orm.id


def get_feed(feed_id: int) -> Optional[Feed]:
    """Get a feed by its database ID."""
    with get_session() as session:
        orm = session.get(FeedORM, feed_id)
        if orm is None:
            return None
        return feed_orm_to_dataclass(orm)


def update_feed_poll_state(
    feed_id: int,
    polled_at: int,
    etag: Optional[str],
    last_modified: Optional[str],
    title: Optional[str] = None,
):
    """Record a completed poll and its cache validators."""
    with get_session() as session:
        orm = session.get(FeedORM, feed_id)
        if orm is None:
            return
        orm.last_polled_at = polled_at
        orm.etag = etag
        orm.last_modified = last_modified
        if title and not orm.title:
            orm.title = title


def set_feed_muted(feed_id: int, muted: bool):
    with get_session() as session:
        orm = session.get(FeedORM, feed_id)
        if orm is not None:
            orm.muted = muted


def fetch_due_feeds(account_id: str, now: int, limit: int = 100) -> List[Feed]:
    """Get feeds eligible for polling, least recently polled first.

    Feeds with an open circuit or that are muted are excluded.
    """
    with get_session() as session:
        stmt = (
            select(FeedORM)
            .where(
                FeedORM.account_id == account_id,
                FeedORM.muted.is_(False),
                (FeedORM.circuit_open_until.is_(None)) | (FeedORM.circuit_open_until <= now),
            )
            .order_by(
                FeedORM.last_polled_at.is_(None).desc(),
                FeedORM.last_polled_at.asc(),
                FeedORM.id.asc(),
            )
            .limit(limit)
        )
        orms = session.execute(stmt).scalars().all()
        return [feed_orm_to_dataclass(orm) for orm in orms]


def fetch_feeds_due_for_drift_check(account_id: str, checked_before: int, limit: int = 100) -> List[Feed]:
    """Get classified, unmuted feeds whose topics were last checked before checked_before."""
    with get_session() as session:
        stmt = (
            select(FeedORM)
            .where(
                FeedORM.account_id == account_id,
                FeedORM.muted.is_(False),
                FeedORM.classification_status == ClassificationStatus.CLASSIFIED.value,
                FeedORM.classified_at <= checked_before,
            )
            .order_by(FeedORM.classified_at.asc(), FeedORM.id.asc())
            .limit(limit)
        )
        return [feed_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def get_account_ids() -> List[str]:
    """Get every account that owns at least one feed."""
    with get_session() as session:
        stmt = select(FeedORM.account_id).distinct().order_by(FeedORM.account_id)
        return list(session.execute(stmt).scalars().all())


# Items


def get_item(item_id: int) -> Optional[Item]:
    with get_session() as session:
        orm = session.get(ItemORM, item_id)
        if orm is None:
            return None
        return item_orm_to_dataclass(orm)


def get_items_by_ids(item_ids: List[int]) -> List[Item]:
    if not item_ids:
        return []
    with get_session() as session:
        stmt = select(ItemORM).where(ItemORM.id.in_(item_ids)).order_by(ItemORM.id.asc())
        return [item_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def get_recent_items_for_feed(feed_id: int, limit: int) -> List[Item]:
    """Get the most recently published items of a feed."""
    with get_session() as session:
        stmt = (
            select(ItemORM)
            .where(ItemORM.feed_id == feed_id)
            .order_by(ItemORM.published_at.desc(), ItemORM.id.desc())
            .limit(limit)
        )
        return [item_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def update_item_hero_image(item_id: int, hero_image_url: str):
    """Set the hero image of an item if it has none yet."""
    with get_session() as session:
        orm = session.get(ItemORM, item_id)
        if orm is not None and not orm.hero_image_url:
            orm.hero_image_url = hero_image_url


def update_item_summary(item_id: int, summary: str):
    with get_session() as session:
        orm = session.get(ItemORM, item_id)
        if orm is not None:
            orm.summary = summary


def update_item_extracted_text(item_id: int, extracted_text: str, extracted_at: int):
    with get_session() as session:
        orm = session.get(ItemORM, item_id)
        if orm is not None:
            orm.extracted_text = extracted_text
            orm.extracted_at = extracted_at


def update_item_relevance(item_id: int, focus_score: float, label: str, tags: List[str]):
    with get_session() as session:
        orm = session.get(ItemORM, item_id)
        if orm is not None:
            orm.ai_focus_score = focus_score
            orm.ai_relevant_label = label
            orm.ai_suggested_tags = tags


# Clusters


def get_cluster(cluster_id: int) -> Optional[Cluster]:
    with get_session() as session:
        orm = session.get(ClusterORM, cluster_id)
        if orm is None:
            return None
        return cluster_orm_to_dataclass(orm)


def get_clusters(account_id: str) -> List[Cluster]:
    with get_session() as session:
        stmt = (
            select(ClusterORM)
            .where(ClusterORM.account_id == account_id)
            .order_by(ClusterORM.id.asc())
        )
        return [cluster_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def get_cluster_member_ids(cluster_id: int) -> List[int]:
    with get_session() as session:
        stmt = (
            select(ClusterMemberORM.item_id)
            .where(ClusterMemberORM.cluster_id == cluster_id)
            .order_by(ClusterMemberORM.item_id.asc())
        )
        return list(session.execute(stmt).scalars().all())


def get_unclustered_item_ids(item_ids: List[int]) -> Set[int]:
    """Ids from item_ids that are not a member of any cluster."""
    if not item_ids:
        return set()
    with get_session() as session:
        clustered = set(session.execute(
            select(ClusterMemberORM.item_id).where(ClusterMemberORM.item_id.in_(item_ids))
        ).scalars().all())
    return set(item_ids) - clustered


def mark_cluster_read(account_id: str, cluster_id: int, read_at: Optional[int] = None):
    """Mark a cluster as read for an account."""
    read_at = read_at or int(time.time())
    with get_session() as session:
        orm = session.get(ReadStateORM, (account_id, cluster_id))
        if orm is None:
            session.add(ReadStateORM(account_id=account_id, cluster_id=cluster_id, read_at=read_at))
        else:
            orm.read_at = read_at


# Filters


def add_filter_rule(rule: FilterRule) -> int:
    """Insert a filter rule.

    Returns the rule id.
    """
    orm = filter_rule_dataclass_to_orm(rule)
    with get_session() as session:
        session.add(orm)
        session.flush()
        return orm.id


def get_filter_rules(account_id: str) -> List[FilterRule]:
    """Get an account's filter rules in declared order."""
    with get_session() as session:
        stmt = (
            select(FilterRuleORM)
            .where(FilterRuleORM.account_id == account_id)
            .order_by(FilterRuleORM.position.asc(), FilterRuleORM.id.asc())
        )
        orms = session.execute(stmt).scalars().all()
        return [filter_rule_orm_to_dataclass(orm) for orm in orms]


def get_filter_events(account_id: str, cluster_id: Optional[int] = None) -> List[FilterEvent]:
    with get_session() as session:
        stmt = select(FilterEventORM).where(FilterEventORM.account_id == account_id)
        if cluster_id is not None:
            stmt = stmt.where(FilterEventORM.cluster_id == cluster_id)
        stmt = stmt.order_by(FilterEventORM.id.asc())
        return [filter_event_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


# Account settings


def get_account_settings(account_id: str) -> AccountSettings:
    """Get an account's settings, falling back to defaults when none are stored."""
    with get_session() as session:
        orm = session.get(AccountSettingsORM, account_id)
        if orm is None:
            return AccountSettings(account_id=account_id)
        return settings_orm_to_dataclass(orm)


def save_account_settings(settings: AccountSettings):
    with get_session() as session:
        orm = session.get(AccountSettingsORM, settings.account_id)
        if orm is None:
            orm = AccountSettingsORM(account_id=settings.account_id)
            session.add(orm)
        orm.plan_id = settings.plan_id
        orm.ai_mode = settings.ai_mode.value
        orm.ai_scoring_enabled = settings.ai_scoring_enabled
        orm.monthly_ai_cap_usd = settings.monthly_ai_cap_usd
        orm.last_active_at = settings.last_active_at


# Push subscriptions


def add_push_subscription(account_id: str, chat_id: str) -> int:
    """Subscribe a chat to new-story notifications.

    Returns the subscription id. If the subscription already exists, returns 0.
    """
    with get_session() as session:
        stmt = select(PushSubscriptionORM).where(
            PushSubscriptionORM.account_id == account_id,
            PushSubscriptionORM.chat_id == chat_id,
        )
        if session.execute(stmt).scalar_one_or_none() is not None:
            return 0
        orm = PushSubscriptionORM(account_id=account_id, chat_id=chat_id, created_at=int(time.time()))
        session.add(orm)
        session.flush()
        return orm.id


def get_push_subscriptions(account_id: str) -> List[PushSubscription]:
    with get_session() as session:
        stmt = (
            select(PushSubscriptionORM)
            .where(PushSubscriptionORM.account_id == account_id)
            .order_by(PushSubscriptionORM.id.asc())
        )
        orms = session.execute(stmt).scalars().all()
        return [push_subscription_orm_to_dataclass(orm) for orm in orms]


def delete_push_subscription(subscription_id: int):
    with get_session() as session:
        session.execute(delete(PushSubscriptionORM).where(PushSubscriptionORM.id == subscription_id))


# Worker events


def record_event(
    account_id: str,
    event_type: str,
    idempotency_key: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    payload: Optional[dict] = None,
) -> bool:
    """Append a worker event. Returns False if the key was already recorded.

    Event recording never interrupts the pipeline: store errors are logged.
    """
    orm = EventORM(
        account_id=account_id,
        idempotency_key=idempotency_key,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        created_at=int(time.time()),
    )
    try:
        with get_session() as session:
            session.add(orm)
        return True
    except IntegrityError:
        logger.debug(f"Event {idempotency_key} already recorded")
        return False
    except Exception as e:
        logger.warning(f"Failed to record event {event_type} for {entity_type}:{entity_id}: {e}")
        return False


def get_events(account_id: str, event_type: Optional[str] = None) -> List[dict]:
    with get_session() as session:
        stmt = select(EventORM).where(EventORM.account_id == account_id)
        if event_type is not None:
            stmt = stmt.where(EventORM.event_type == event_type)
        stmt = stmt.order_by(EventORM.id.asc())
        return [
            {
                "event_type": orm.event_type,
                "entity_type": orm.entity_type,
                "entity_id": orm.entity_id,
                "payload": orm.payload or {},
                "created_at": orm.created_at,
            }
            for orm in session.execute(stmt).scalars().all()
        ]
