"""
Per-feed ingestion pipeline.

poll -> upsert -> pre-filter -> cluster -> enrich -> post-filter -> digest -> push

A feed with an open circuit is skipped without polling. Items a failed
run stored but never clustered are picked up by the next run, and the
feed's cache validators only advance once the mandatory stages are done.

Mandatory stages (poll, upsert, clustering, filtering) raise and let the
job runner retry; the wrapper records the failure on the feed's circuit
breaker first. Optional stages (full text, topics, enrichment, scoring,
digest, push) report a StageResult and never abort the run.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from feed_pipeline.circuit_breaker import record_feed_failure, record_feed_success
from feed_pipeline.clustering import assign_clusters
from feed_pipeline.config import Settings
from feed_pipeline.database import (
    get_account_settings,
    get_filter_rules,
    get_unclustered_item_ids,
    record_event,
    update_feed_poll_state,
)
from feed_pipeline.digest import maybe_generate_digest
from feed_pipeline.enrichment import enrich_hero_images, generate_ai_summaries
from feed_pipeline.entitlements import (
    get_pipeline_entitlements,
    increment_daily_ingestion_usage,
    is_poll_allowed,
    release_daily_ingestion_budget,
    reserve_daily_ingestion_budget,
)
from feed_pipeline.errors import FeedFetchError, FeedParseError, FeedUrlValidationError
from feed_pipeline.filters import post_cluster_filter, pre_filter, should_cluster
from feed_pipeline.fulltext import extract_fulltext_for_items
from feed_pipeline.models import (
    AccountSettings,
    ClassificationStatus,
    Feed,
    FilterOutcome,
    FilterResult,
    Item,
)
from feed_pipeline.poll_feed import poll_feed
from feed_pipeline.relevance import score_items_relevance
from feed_pipeline.topics import classify_feed_topics
from feed_pipeline.upsert import upsert_items
from llm.provider import AiProvider
from notifications.push import PushTransport, send_new_stories_notification
from util.logging_util import log_stage_result, setup_logger

logger = setup_logger(__name__)

OK = "ok"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class StageResult:
    """Outcome of an optional stage."""
    status: str
    detail: Optional[str] = None
    value: Any = None

    @classmethod
    def ok(cls, value: Any = None, detail: Optional[str] = None) -> "StageResult":
        return cls(OK, detail, value)

    @classmethod
    def skipped(cls, reason: str) -> "StageResult":
        return cls(SKIPPED, reason)

    @classmethod
    def failed(cls, error: str) -> "StageResult":
        return cls(FAILED, error)


@dataclass
class PipelineContext:
    """Everything one pipeline run needs, passed explicitly."""
    account_id: str
    feed: Feed
    settings: Settings = field(default_factory=Settings)
    account_settings: Optional[AccountSettings] = None
    provider: Optional[AiProvider] = None
    push_transport: Optional[PushTransport] = None
    now: Optional[int] = None


@dataclass
class PipelineRunResult:
    feed_id: int
    skipped_reason: Optional[str] = None
    not_modified: bool = False
    parsed_count: int = 0
    admitted_count: int = 0
    new_item_ids: List[int] = field(default_factory=list)
    recovered_item_ids: List[int] = field(default_factory=list)
    failed_upserts: int = 0
    item_clusters: Dict[int, int] = field(default_factory=dict)
    filter_results: Dict[int, FilterResult] = field(default_factory=dict)
    cluster_outcomes: Dict[int, FilterResult] = field(default_factory=dict)
    stages: Dict[str, StageResult] = field(default_factory=dict)


def classify_failure(error: Exception) -> str:
    """Failure stage recorded on feed_parse_failure events."""
    if isinstance(error, FeedUrlValidationError):
        return "url_validation"
    if isinstance(error, FeedParseError):
        return "parse"
    if isinstance(error, FeedFetchError) and error.status_code is not None:
        return "http"
    return "network_or_unknown"


def _run_stage(
    result: PipelineRunResult, name: str, feed_id: int, fn: Callable[[], StageResult]
) -> StageResult:
    try:
        stage = fn()
    except Exception as e:
        logger.exception(f"Optional stage {name} raised for feed {feed_id}")
        stage = StageResult.failed(str(e))
    result.stages[name] = stage
    log_stage_result(logger, feed_id, name, stage.status, stage.detail)
    return stage


def _visible_new_items(
    new_items: List[Item], result: PipelineRunResult
) -> List[Item]:
    visible = []
    for item in new_items:
        cluster_outcome = result.cluster_outcomes.get(result.item_clusters.get(item.id))
        if cluster_outcome is not None and cluster_outcome.outcome == FilterOutcome.BREAKOUT_SHOWN:
            visible.append(item)
            continue
        pre = result.filter_results.get(item.id)
        if pre is not None and pre.outcome != FilterOutcome.PASS:
            continue
        if cluster_outcome is not None and cluster_outcome.outcome == FilterOutcome.HIDDEN:
            continue
        visible.append(item)
    return visible


def _run_pipeline(ctx: PipelineContext, now: int) -> PipelineRunResult:
    feed = ctx.feed
    account_id = ctx.account_id
    settings = ctx.settings
    account_settings = ctx.account_settings or get_account_settings(account_id)
    result = PipelineRunResult(feed_id=feed.id)

    if feed.circuit_open_until is not None and feed.circuit_open_until > now:
        result.skipped_reason = "circuit_open"
        return result

    entitlements = get_pipeline_entitlements(account_id)
    if not is_poll_allowed(feed.last_polled_at, entitlements.min_poll_minutes, now):
        result.skipped_reason = "poll_interval"
        return result

    poll = poll_feed(feed, timeout=settings.timeouts.poll, now=now)

    def save_poll_state():
        update_feed_poll_state(feed.id, now, poll.etag, poll.last_modified, poll.feed_title)
        feed.last_polled_at = now
        feed.etag = poll.etag
        feed.last_modified = poll.last_modified

    if poll.not_modified:
        save_poll_state()
        result.not_modified = True
        return result

    parsed = poll.items
    if feed.backfill_since is not None:
        parsed = [p for p in parsed if p.published_at >= feed.backfill_since]
    result.parsed_count = len(parsed)
    if not parsed:
        save_poll_state()
        return result

    limit = entitlements.max_items_per_day
    granted = len(parsed)
    if limit is not None:
        granted = reserve_daily_ingestion_budget(account_id, limit, len(parsed), now)
        if granted == 0:
            save_poll_state()
            result.skipped_reason = "daily_budget_exhausted"
            return result
        if granted < len(parsed):
            logger.info(f"Daily budget admits {granted} of {len(parsed)} items for feed {feed.id}")
        parsed = parsed[:granted]
    result.admitted_count = len(parsed)

    try:
        upserted = upsert_items(account_id, feed.id, parsed, now)
    except Exception:
        if limit is not None:
            release_daily_ingestion_budget(account_id, granted, now)
        raise

    new_items = upserted.new_items
    result.failed_upserts = len(upserted.failed)
    result.new_item_ids = [item.id for item in new_items]
    if limit is not None:
        release_daily_ingestion_budget(account_id, granted - len(new_items), now)
    else:
        increment_daily_ingestion_usage(account_id, len(new_items), now)

    # Items stored by an earlier run that failed before clustering them
    rules = get_filter_rules(account_id)
    folders = {feed.id: feed.folder_id}
    existing = [u.item for u in upserted.succeeded if not u.is_new]
    unclustered_ids = get_unclustered_item_ids([item.id for item in existing])
    stranded = [item for item in existing if item.id in unclustered_ids]
    stranded_results = pre_filter(rules, stranded, folders)
    recovered = [item for item in stranded if should_cluster(stranded_results[item.id])]
    result.recovered_item_ids = [item.id for item in recovered]
    if recovered:
        logger.info(f"Recovering {len(recovered)} unclustered items for feed {feed.id}")

    fresh = new_items + recovered
    if not fresh:
        save_poll_state()
        return result

    def fulltext_stage() -> StageResult:
        if not settings.worker.fulltext_enabled:
            return StageResult.skipped("disabled")
        stored = extract_fulltext_for_items(fresh, settings.timeouts.fulltext, now)
        return StageResult.ok(stored, f"{stored}/{len(fresh)} extracted")

    def topics_stage() -> StageResult:
        if feed.classification_status != ClassificationStatus.PENDING:
            return StageResult.skipped("already classified")
        if ctx.provider is None:
            return StageResult.skipped("no provider")
        proposed = classify_feed_topics(account_id, feed, ctx.provider, now)
        return StageResult.ok(proposed, f"proposed {proposed}")

    _run_stage(result, "fulltext", feed.id, fulltext_stage)
    _run_stage(result, "topics", feed.id, topics_stage)

    result.filter_results = pre_filter(rules, fresh, folders)
    to_cluster = [item for item in fresh if should_cluster(result.filter_results[item.id])]

    assignment = assign_clusters(account_id, to_cluster, settings.clustering, now)
    result.item_clusters = assignment.item_clusters

    def enrich_stage() -> StageResult:
        images = enrich_hero_images(fresh, settings.timeouts.og_image)
        summaries = generate_ai_summaries(account_id, fresh, ctx.provider, account_settings)
        return StageResult.ok(images + summaries, f"{images} images, {summaries} summaries")

    def score_stage() -> StageResult:
        if not account_settings.ai_scoring_enabled:
            return StageResult.skipped("scoring disabled")
        if ctx.provider is None:
            return StageResult.skipped("no provider")
        scored = score_items_relevance(account_id, fresh, ctx.provider, account_settings)
        return StageResult.ok(scored, f"{scored} scored")

    _run_stage(result, "enrich", feed.id, enrich_stage)
    _run_stage(result, "score", feed.id, score_stage)

    cluster_ids = sorted(set(assignment.item_clusters.values()))
    result.cluster_outcomes = post_cluster_filter(account_id, cluster_ids, now)
    # Validators are only advanced once every item of this poll is clustered
    save_poll_state()

    def digest_stage() -> StageResult:
        digest = maybe_generate_digest(account_id, now, ctx.provider, account_settings, settings.digest)
        if digest is None:
            return StageResult.skipped("no trigger")
        return StageResult.ok(digest.id, f"digest {digest.id}")

    def push_stage() -> StageResult:
        if ctx.push_transport is None:
            return StageResult.skipped("no transport")
        visible = _visible_new_items(fresh, result)
        if not visible:
            return StageResult.skipped("nothing visible")
        summary = send_new_stories_notification(account_id, visible, ctx.push_transport)
        return StageResult.ok(summary, f"{summary.sent} sent, {summary.failed} failed")

    _run_stage(result, "digest", feed.id, digest_stage)
    _run_stage(result, "push", feed.id, push_stage)
    return result


def run_feed_pipeline(ctx: PipelineContext) -> PipelineRunResult:
    """Run the pipeline for one feed and update its circuit breaker.

    Mandatory-stage errors are recorded and re-raised.
    """
    now = ctx.now or int(time.time())
    feed = ctx.feed
    try:
        result = _run_pipeline(ctx, now)
    except Exception as e:
        failure_stage = classify_failure(e)
        logger.error(f"Pipeline failed for feed {feed.id} at {failure_stage}: {e}")
        record_feed_failure(ctx.account_id, feed.id, str(e), now)
        record_event(
            ctx.account_id,
            "feed_parse_failure",
            f"feed_parse_failure:{feed.id}:{now}",
            entity_type="feed",
            entity_id=feed.id,
            payload={"stage": failure_stage, "error": str(e)[:500]},
        )
        raise

    if result.skipped_reason in ("circuit_open", "poll_interval"):
        return result

    record_feed_success(ctx.account_id, feed.id)
    record_event(
        ctx.account_id,
        "feed_parse_success",
        f"feed_parse_success:{feed.id}:{now}",
        entity_type="feed",
        entity_id=feed.id,
        payload={
            "not_modified": result.not_modified,
            "parsed": result.parsed_count,
            "new": len(result.new_item_ids),
            "recovered": len(result.recovered_item_ids),
        },
    )
    logger.info(
        f"Feed {feed.id}: {result.parsed_count} parsed, {result.admitted_count} admitted, "
        f"{len(result.new_item_ids)} new, {len(set(result.item_clusters.values()))} clusters touched"
    )
    return result
