"""
Data models for the feed ingestion pipeline.

These dataclasses are the public interface of the store. Pipeline stages
exchange them and never touch ORM rows directly.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class FeedWeight(Enum):
    PREFER = "prefer"
    NEUTRAL = "neutral"
    DEPRIORITIZE = "deprioritize"


class ClassificationStatus(Enum):
    PENDING = "pending_classification"
    CLASSIFIED = "classified"
    APPROVED = "approved"


class FilterTarget(Enum):
    KEYWORD = "keyword"
    AUTHOR = "author"
    DOMAIN = "domain"
    URL_PATTERN = "url_pattern"


class FilterMatchType(Enum):
    PHRASE = "phrase"
    REGEX = "regex"


class FilterMode(Enum):
    MUTE = "mute"
    BLOCK = "block"
    KEEP = "keep"


class FilterOutcome(Enum):
    PENDING = "pending"
    PASS = "pass"
    HIDDEN = "hidden"
    BREAKOUT_SHOWN = "breakout_shown"


class FeedTopicStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AiMode(Enum):
    OFF = "off"
    SUMMARIES_DIGEST = "summaries_digest"
    FULL = "full"


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Folder:
    account_id: str
    name: str
    id: Optional[int] = None


@dataclass
class Feed:
    """A subscribed feed and its polling / circuit-breaker state."""
    account_id: str
    url: str
    id: Optional[int] = None
    title: Optional[str] = None
    folder_id: Optional[int] = None
    weight: FeedWeight = FeedWeight.NEUTRAL
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    last_polled_at: Optional[int] = None
    classification_status: ClassificationStatus = ClassificationStatus.PENDING
    classified_at: Optional[int] = None
    consecutive_failures: int = 0
    circuit_open_until: Optional[int] = None
    last_failure_reason: Optional[str] = None
    muted: bool = False
    backfill_since: Optional[int] = None
    created_at: int = 0


@dataclass
class ParsedItem:
    """A single entry parsed out of a feed body, before storage."""
    url: str
    title: str
    published_at: int
    guid: Optional[str] = None
    summary: Optional[str] = None
    author: Optional[str] = None
    hero_image_url: Optional[str] = None


@dataclass
class PollResult:
    not_modified: bool
    items: List[ParsedItem] = field(default_factory=list)
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    feed_title: Optional[str] = None
    format: Optional[str] = None


@dataclass
class Item:
    """A stored feed item."""
    account_id: str
    feed_id: int
    url: str
    canonical_url: str
    title: str
    published_at: int
    id: Optional[int] = None
    guid: Optional[str] = None
    summary: Optional[str] = None
    author: Optional[str] = None
    hero_image_url: Optional[str] = None
    extracted_text: Optional[str] = None
    extracted_at: Optional[int] = None
    ai_focus_score: Optional[float] = None
    ai_relevant_label: Optional[str] = None
    ai_suggested_tags: List[str] = field(default_factory=list)
    created_at: int = 0


@dataclass
class UpsertedItem:
    item: Item
    is_new: bool


@dataclass
class FailedUpsert:
    parsed: ParsedItem
    canonical_url: str
    error: str


@dataclass
class UpsertResult:
    succeeded: List[UpsertedItem] = field(default_factory=list)
    failed: List[FailedUpsert] = field(default_factory=list)

    @property
    def new_items(self) -> List[Item]:
        return [u.item for u in self.succeeded if u.is_new]


@dataclass
class Cluster:
    """A group of near-duplicate items describing one story."""
    account_id: str
    rep_item_id: int
    size: int = 1
    id: Optional[int] = None
    folder_id: Optional[int] = None
    topic_id: Optional[int] = None
    created_at: int = 0
    updated_at: int = 0


@dataclass
class AssignmentResult:
    item_clusters: dict = field(default_factory=dict)
    created_cluster_ids: List[int] = field(default_factory=list)
    joined_cluster_ids: List[int] = field(default_factory=list)


@dataclass
class FilterRule:
    account_id: str
    pattern: str
    target: FilterTarget = FilterTarget.KEYWORD
    match_type: FilterMatchType = FilterMatchType.PHRASE
    mode: FilterMode = FilterMode.MUTE
    breakout_enabled: bool = True
    id: Optional[int] = None
    feed_id: Optional[int] = None
    folder_id: Optional[int] = None
    position: int = 0


@dataclass
class FilterResult:
    item_id: int
    outcome: FilterOutcome
    rule_id: Optional[int] = None
    mode: Optional[FilterMode] = None
    reason: Optional[str] = None


@dataclass
class FilterEvent:
    account_id: str
    rule_id: int
    cluster_id: int
    action: FilterOutcome
    reason: Optional[str] = None
    created_at: int = 0
    id: Optional[int] = None


@dataclass
class DigestEntry:
    cluster_id: int
    headline: str
    url: str
    one_liner: str
    size: int
    section: str


@dataclass
class Digest:
    account_id: str
    start_at: int
    end_at: int
    title: str
    body: str
    entries: List[DigestEntry] = field(default_factory=list)
    id: Optional[int] = None
    created_at: int = 0


@dataclass
class Topic:
    account_id: str
    name: str
    id: Optional[int] = None


@dataclass
class FeedTopic:
    account_id: str
    feed_id: int
    topic_id: int
    status: FeedTopicStatus = FeedTopicStatus.PENDING
    confidence: float = 0.0
    proposed_at: int = 0
    id: Optional[int] = None


@dataclass
class AccountSettings:
    account_id: str
    plan_id: str = "free"
    ai_mode: AiMode = AiMode.OFF
    ai_scoring_enabled: bool = False
    monthly_ai_cap_usd: Optional[float] = None
    last_active_at: Optional[int] = None


@dataclass
class PipelineEntitlements:
    plan_id: str
    max_items_per_day: Optional[int]
    min_poll_minutes: int


@dataclass
class AiUsage:
    account_id: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    estimated_cost_usd: float
    feature: str
    duration_ms: int = 0
    created_at: int = 0
    id: Optional[int] = None


@dataclass
class PushSubscription:
    account_id: str
    chat_id: str
    id: Optional[int] = None
    created_at: int = 0


@dataclass
class Job:
    """A unit of durable background work."""
    name: str
    payload: dict = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    run_after: int = 0
    id: Optional[int] = None
    last_error: Optional[str] = None
    singleton_key: Optional[str] = None
    locked_until: Optional[int] = None
    created_at: int = 0
    updated_at: int = 0
