"""
Near-duplicate story clustering.

New items are compared against the representatives of recent clusters.
A candidate must be within the simhash Hamming distance limit, and the best
Jaccard similarity at or above the threshold wins. Unmatched items start a
new cluster.
"""

import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from feed_pipeline.config import ClusteringConfig
from feed_pipeline.constants import WEIGHT_RANK
from feed_pipeline.database import ensure_default_folders
from feed_pipeline.db_engine import get_session
from feed_pipeline.features import hamming_distance, jaccard_similarity, simhash, tokenize
from feed_pipeline.folders import classify_item
from feed_pipeline.models import AssignmentResult, FeedTopicStatus, Item
from feed_pipeline.orm_models import (
    ClusterMemberORM,
    ClusterORM,
    FeedORM,
    FeedTopicORM,
    ItemORM,
)
from util.logging_util import setup_logger

logger = setup_logger(__name__)


@dataclass
class _Candidate:
    cluster_id: int
    published_at: int
    tokens: Set[str]
    fingerprint: int
    rep_weight_rank: int


def _weight_rank(weight: Optional[str]) -> int:
    return WEIGHT_RANK.get(weight or "neutral", WEIGHT_RANK["neutral"])


def _load_candidates(
    session: Session, account_id: str, start: int, end: int, limit: int
) -> List[_Candidate]:
    """Clusters whose representative was published inside [start, end]."""
    stmt = (
        select(ClusterORM.id, ItemORM.title, ItemORM.published_at, FeedORM.weight)
        .join(ItemORM, ItemORM.id == ClusterORM.rep_item_id)
        .join(FeedORM, FeedORM.id == ItemORM.feed_id, isouter=True)
        .where(
            ClusterORM.account_id == account_id,
            ItemORM.published_at >= start,
            ItemORM.published_at <= end,
        )
        .order_by(ClusterORM.id.asc())
        .limit(limit)
    )
    candidates = []
    for cluster_id, title, published_at, weight in session.execute(stmt).all():
        candidates.append(_Candidate(
            cluster_id=cluster_id,
            published_at=published_at,
            tokens=set(tokenize(title)),
            fingerprint=simhash(title),
            rep_weight_rank=_weight_rank(weight),
        ))
    return candidates


def _approved_topics_by_feed(session: Session, feed_ids: Set[int]) -> Dict[int, int]:
    """Highest-confidence approved topic for each feed."""
    stmt = (
        select(FeedTopicORM)
        .where(
            FeedTopicORM.feed_id.in_(feed_ids),
            FeedTopicORM.status == FeedTopicStatus.APPROVED.value,
        )
        .order_by(FeedTopicORM.confidence.desc(), FeedTopicORM.id.asc())
    )
    topics: Dict[int, int] = {}
    for orm in session.execute(stmt).scalars().all():
        topics.setdefault(orm.feed_id, orm.topic_id)
    return topics


def _best_match(
    item_tokens: Set[str],
    item_fingerprint: int,
    published_at: int,
    candidates: List[_Candidate],
    config: ClusteringConfig,
) -> Optional[_Candidate]:
    window = config.time_window_hours * 3600
    best: Optional[_Candidate] = None
    best_score = -1.0
    for candidate in candidates:
        if abs(candidate.published_at - published_at) > window:
            continue
        if hamming_distance(item_fingerprint, candidate.fingerprint) > config.simhash_max_distance:
            continue
        score = jaccard_similarity(item_tokens, candidate.tokens)
        if score < config.jaccard_min_similarity:
            continue
        if score > best_score or (score == best_score and candidate.cluster_id < best.cluster_id):
            best = candidate
            best_score = score
    return best


def assign_clusters(
    account_id: str,
    items: List[Item],
    config: Optional[ClusteringConfig] = None,
    now: Optional[int] = None,
) -> AssignmentResult:
    """Assign each unclustered item to an existing or new cluster.

    Runs in a single transaction. Items are processed in (published_at, id)
    order so results are deterministic for a given store state.
    """
    config = config or ClusteringConfig()
    now = now or int(time.time())
    result = AssignmentResult()
    items = [item for item in items if item.id is not None]
    if not items:
        return result

    folder_ids = ensure_default_folders(account_id)
    ordered = sorted(items, key=lambda i: (i.published_at, i.id))
    window = config.time_window_hours * 3600

    with get_session() as session:
        item_ids = [item.id for item in ordered]
        already = set(session.execute(
            select(ClusterMemberORM.item_id).where(ClusterMemberORM.item_id.in_(item_ids))
        ).scalars().all())
        pending = [item for item in ordered if item.id not in already]
        if not pending:
            return result

        feed_ids = {item.feed_id for item in pending}
        feed_weights = dict(session.execute(
            select(FeedORM.id, FeedORM.weight).where(FeedORM.id.in_(feed_ids))
        ).all())
        feed_topics = _approved_topics_by_feed(session, feed_ids)

        candidates = _load_candidates(
            session,
            account_id,
            pending[0].published_at - window,
            pending[-1].published_at + window,
            config.candidate_limit,
        )
        by_cluster = {c.cluster_id: c for c in candidates}

        members: List[ClusterMemberORM] = []
        size_increments: Dict[int, int] = {}
        new_reps: Dict[int, int] = {}

        for item in pending:
            tokens = set(tokenize(item.title))
            fingerprint = simhash(item.title)
            item_rank = _weight_rank(feed_weights.get(item.feed_id))
            match = _best_match(tokens, fingerprint, item.published_at, candidates, config)

            if match is None:
                folder_name = classify_item(item.title, item.summary or "")
                cluster = ClusterORM(
                    account_id=account_id,
                    rep_item_id=item.id,
                    folder_id=folder_ids.get(folder_name),
                    topic_id=feed_topics.get(item.feed_id),
                    size=1,
                    created_at=now,
                    updated_at=now,
                )
                session.add(cluster)
                session.flush()
                candidate = _Candidate(
                    cluster_id=cluster.id,
                    published_at=item.published_at,
                    tokens=tokens,
                    fingerprint=fingerprint,
                    rep_weight_rank=item_rank,
                )
                candidates.append(candidate)
                by_cluster[cluster.id] = candidate
                members.append(ClusterMemberORM(
                    cluster_id=cluster.id, item_id=item.id, account_id=account_id, added_at=now
                ))
                result.item_clusters[item.id] = cluster.id
                result.created_cluster_ids.append(cluster.id)
                continue

            members.append(ClusterMemberORM(
                cluster_id=match.cluster_id, item_id=item.id, account_id=account_id, added_at=now
            ))
            size_increments[match.cluster_id] = size_increments.get(match.cluster_id, 0) + 1
            result.item_clusters[item.id] = match.cluster_id
            if match.cluster_id not in result.created_cluster_ids and match.cluster_id not in result.joined_cluster_ids:
                result.joined_cluster_ids.append(match.cluster_id)

            # Only a strictly better-weighted feed takes over as representative
            if item_rank > match.rep_weight_rank:
                new_reps[match.cluster_id] = item.id
                match.rep_weight_rank = item_rank
                match.tokens = tokens
                match.fingerprint = fingerprint
                match.published_at = item.published_at

        session.add_all(members)
        for cluster_id, increment in size_increments.items():
            values = {"size": ClusterORM.size + increment, "updated_at": now}
            if cluster_id in new_reps:
                values["rep_item_id"] = new_reps[cluster_id]
            session.execute(update(ClusterORM).where(ClusterORM.id == cluster_id).values(**values))

    logger.info(
        f"Clustered {len(result.item_clusters)} items: "
        f"{len(result.created_cluster_ids)} new clusters, {len(result.joined_cluster_ids)} joined"
    )
    return result
