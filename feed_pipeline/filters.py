"""
Filter rule evaluation with a breakout escape hatch.

Pre-filtering runs on freshly ingested items: scoped keep rules are
default-deny, then the first matching mute or block rule wins. Post-cluster
filtering re-checks each cluster's representative and lets muted stories
break out when they look important.
"""

import re
import time
from typing import Dict, List, Optional

from sqlalchemy import select

from feed_pipeline.canonicalize import extract_domain
from feed_pipeline.constants import (
    BREAKOUT_CLUSTER_SIZE,
    MAX_REGEX_INPUT_LENGTH,
    MAX_REGEX_LENGTH,
    SEVERITY_KEYWORDS,
)
from feed_pipeline.database import get_filter_rules
from feed_pipeline.db_engine import get_session
from feed_pipeline.models import (
    FeedWeight,
    FilterMatchType,
    FilterMode,
    FilterOutcome,
    FilterResult,
    FilterRule,
    FilterTarget,
    Item,
)
from feed_pipeline.orm_models import (
    ClusterORM,
    FeedORM,
    FilterEventORM,
    ItemORM,
    item_orm_to_dataclass,
)
from util.logging_util import setup_logger

logger = setup_logger(__name__)

SEVERITY_PATTERN = re.compile(
    r"\b(" + "|".join(re.escape(keyword) for keyword in SEVERITY_KEYWORDS) + r")\b",
    re.IGNORECASE,
)


def match_text_for(rule: FilterRule, item: Item) -> str:
    """The part of the item a rule's target looks at."""
    if rule.target == FilterTarget.AUTHOR:
        return item.author or ""
    if rule.target == FilterTarget.DOMAIN:
        return extract_domain(item.url)
    if rule.target == FilterTarget.URL_PATTERN:
        return item.url or ""
    return f"{item.title or ''} {item.summary or ''}"


def _regex_matches(pattern: str, text: str) -> bool:
    if len(pattern) > MAX_REGEX_LENGTH:
        return False
    try:
        compiled = re.compile(pattern, re.IGNORECASE)
    except re.error:
        return False
    return compiled.search(text[:MAX_REGEX_INPUT_LENGTH]) is not None


def rule_matches(rule: FilterRule, item: Item) -> bool:
    text = match_text_for(rule, item)
    if not text or not rule.pattern:
        return False
    if rule.match_type == FilterMatchType.REGEX:
        return _regex_matches(rule.pattern, text)
    return rule.pattern.lower() in text.lower()


def rule_in_scope(rule: FilterRule, item: Item, folder_id: Optional[int]) -> bool:
    if rule.feed_id is not None and rule.feed_id != item.feed_id:
        return False
    if rule.folder_id is not None and rule.folder_id != folder_id:
        return False
    return True


def evaluate_item(rules: List[FilterRule], item: Item, folder_id: Optional[int] = None) -> FilterResult:
    """Decide the pre-cluster outcome of one item. Rules must be in declared order."""
    scoped = [rule for rule in rules if rule_in_scope(rule, item, folder_id)]

    keep_rules = [rule for rule in scoped if rule.mode == FilterMode.KEEP]
    if keep_rules and not any(rule_matches(rule, item) for rule in keep_rules):
        return FilterResult(
            item_id=item.id,
            outcome=FilterOutcome.HIDDEN,
            rule_id=keep_rules[0].id,
            mode=FilterMode.KEEP,
            reason="not_kept",
        )

    for rule in scoped:
        if rule.mode == FilterMode.KEEP:
            continue
        if rule_matches(rule, item):
            return FilterResult(
                item_id=item.id,
                outcome=FilterOutcome.HIDDEN,
                rule_id=rule.id,
                mode=rule.mode,
                reason="blocked" if rule.mode == FilterMode.BLOCK else "muted",
            )

    return FilterResult(item_id=item.id, outcome=FilterOutcome.PASS)


def pre_filter(
    rules: List[FilterRule], items: List[Item], feed_folders: Optional[Dict[int, Optional[int]]] = None
) -> Dict[int, FilterResult]:
    """Evaluate every item against the account's rules.

    Muted items are hidden provisionally and still cluster; blocked and
    not-kept items are final.
    """
    feed_folders = feed_folders or {}
    results = {item.id: evaluate_item(rules, item, feed_folders.get(item.feed_id)) for item in items}

    hidden = sum(1 for r in results.values() if r.outcome == FilterOutcome.HIDDEN)
    if hidden:
        logger.info(f"Pre-filter hid {hidden} of {len(items)} items")
    return results


def should_cluster(result: FilterResult) -> bool:
    """Muted items still cluster so they can break out later."""
    return result.outcome == FilterOutcome.PASS or result.mode == FilterMode.MUTE


def breakout_reason(item: Item, feed_weight: Optional[str], cluster_size: int) -> Optional[str]:
    """Why a muted story should be shown anyway, or None."""
    match = SEVERITY_PATTERN.search(f"{item.title or ''} {item.summary or ''}")
    if match:
        return f"severity_keyword:{match.group(1).lower()}"
    if feed_weight == FeedWeight.PREFER.value:
        return "high_reputation_source"
    if cluster_size >= BREAKOUT_CLUSTER_SIZE:
        return f"cluster_size:{cluster_size}"
    return None


def decide_cluster(
    rules: List[FilterRule],
    representative: Item,
    folder_id: Optional[int],
    feed_weight: Optional[str],
    cluster_size: int,
) -> FilterResult:
    """Post-cluster decision for one cluster's representative."""
    for rule in rules:
        if rule.mode == FilterMode.KEEP or not rule_in_scope(rule, representative, folder_id):
            continue
        if not rule_matches(rule, representative):
            continue
        if rule.mode == FilterMode.BLOCK:
            return FilterResult(representative.id, FilterOutcome.HIDDEN, rule.id, rule.mode, "blocked")
        if not rule.breakout_enabled:
            return FilterResult(representative.id, FilterOutcome.HIDDEN, rule.id, rule.mode, "muted")
        reason = breakout_reason(representative, feed_weight, cluster_size)
        if reason:
            return FilterResult(representative.id, FilterOutcome.BREAKOUT_SHOWN, rule.id, rule.mode, reason)
        return FilterResult(representative.id, FilterOutcome.HIDDEN, rule.id, rule.mode, "muted")

    return FilterResult(representative.id, FilterOutcome.PASS)


def post_cluster_filter(
    account_id: str, cluster_ids: List[int], now: Optional[int] = None
) -> Dict[int, FilterResult]:
    """Re-evaluate clusters after clustering and record a FilterEvent per decision.

    Returns cluster id -> result. Clusters with no matching mute/block rule
    pass without an event.
    """
    now = now or int(time.time())
    results: Dict[int, FilterResult] = {}
    rules = [rule for rule in get_filter_rules(account_id) if rule.mode != FilterMode.KEEP]
    if not cluster_ids or not rules:
        return results

    with get_session() as session:
        stmt = (
            select(ClusterORM, ItemORM, FeedORM.weight, FeedORM.folder_id)
            .join(ItemORM, ItemORM.id == ClusterORM.rep_item_id)
            .join(FeedORM, FeedORM.id == ItemORM.feed_id, isouter=True)
            .where(ClusterORM.account_id == account_id, ClusterORM.id.in_(set(cluster_ids)))
            .order_by(ClusterORM.id.asc())
        )
        for cluster, rep, weight, folder_id in session.execute(stmt).all():
            result = decide_cluster(rules, item_orm_to_dataclass(rep), folder_id, weight, cluster.size)
            results[cluster.id] = result
            if result.rule_id is None:
                continue
            session.add(FilterEventORM(
                account_id=account_id,
                rule_id=result.rule_id,
                cluster_id=cluster.id,
                action=result.outcome.value,
                reason=result.reason,
                created_at=now,
            ))

    shown = sum(1 for r in results.values() if r.outcome == FilterOutcome.BREAKOUT_SHOWN)
    logger.info(f"Post-cluster filter evaluated {len(results)} clusters, {shown} broke out")
    return results
