"""
Batch relevance scoring of new items against the account's topics.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import select

from feed_pipeline.ai_usage import is_over_budget, log_ai_usage
from feed_pipeline.constants import (
    DEFAULT_RELEVANCE_LABEL,
    MAX_SUGGESTED_TAGS,
    MAX_TAG_LENGTH,
    PROMPTS_DIR,
    RELEVANCE_BATCH_SIZE,
    RELEVANCE_LABELS,
    RELEVANCE_MAX_TOKENS,
    RELEVANCE_TEMPERATURE,
    TOPIC_LIST_LIMIT,
)
from feed_pipeline.database import update_item_relevance
from feed_pipeline.db_engine import get_session
from feed_pipeline.models import AccountSettings, FeedTopicStatus, Item
from feed_pipeline.orm_models import FeedTopicORM, TopicORM
from llm.llm_util import get_llm_response, parse_json_response, sanitize_for_prompt
from llm.provider import AiProvider
from util.logging_util import setup_logger

logger = setup_logger(__name__)

SCORE_RELEVANCE_TEMPLATE = PROMPTS_DIR / "score_relevance.jinja2"

SCORING_SYSTEM_PROMPT = (
    "You score news articles for relevance to a reader's interests. "
    "Respond with valid JSON only."
)


@dataclass
class RelevanceScore:
    focus_score: float
    label: str
    tags: List[str]


def get_interest_topics(account_id: str, limit: int = TOPIC_LIST_LIMIT) -> List[str]:
    """Topic names the account has approved or not yet reviewed."""
    with get_session() as session:
        stmt = (
            select(TopicORM.name)
            .join(FeedTopicORM, FeedTopicORM.topic_id == TopicORM.id)
            .where(
                TopicORM.account_id == account_id,
                FeedTopicORM.status.in_([FeedTopicStatus.PENDING.value, FeedTopicStatus.APPROVED.value]),
            )
            .distinct()
            .order_by(TopicORM.name)
            .limit(limit)
        )
        return list(session.execute(stmt).scalars().all())


def _clamp(value) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, score))


def _clean_tags(tags) -> List[str]:
    if not isinstance(tags, list):
        return []
    cleaned = []
    for tag in tags:
        if not isinstance(tag, str):
            continue
        tag = tag.strip()
        if tag and len(tag) <= MAX_TAG_LENGTH:
            cleaned.append(tag)
    return cleaned[:MAX_SUGGESTED_TAGS]


def parse_relevance_response(text: str, batch_size: int) -> Dict[int, RelevanceScore]:
    """Parse {"scores": [{"index", "focusScore", "label", "suggestedTags"}]}.

    Entries with an index outside the batch are dropped.
    """
    result = parse_json_response(text)
    if result is None:
        return {}

    scores: Dict[int, RelevanceScore] = {}
    for entry in result.get("scores", []) or []:
        if not isinstance(entry, dict):
            continue
        index = entry.get("index")
        if not isinstance(index, int) or index < 0 or index >= batch_size:
            continue
        label = entry.get("label")
        if label not in RELEVANCE_LABELS:
            label = DEFAULT_RELEVANCE_LABEL
        scores[index] = RelevanceScore(
            focus_score=_clamp(entry.get("focusScore")),
            label=label,
            tags=_clean_tags(entry.get("suggestedTags")),
        )
    return scores


def score_items_relevance(
    account_id: str, items: List[Item], provider: Optional[AiProvider], settings: AccountSettings
) -> int:
    """Score items in batches. Returns the number of items scored.

    Opt-in: does nothing unless the account enabled AI scoring.
    """
    if provider is None or not settings.ai_scoring_enabled or not items:
        return 0

    topics = [sanitize_for_prompt(topic, max_length=50) for topic in get_interest_topics(account_id)]
    scored = 0
    for start in range(0, len(items), RELEVANCE_BATCH_SIZE):
        if is_over_budget(account_id):
            logger.info(f"Stopping relevance scoring for {account_id}: monthly budget reached")
            break
        batch = items[start:start + RELEVANCE_BATCH_SIZE]
        response = get_llm_response(
            provider,
            SCORE_RELEVANCE_TEMPLATE,
            {
                "topics": topics,
                "articles": [
                    {"title": sanitize_for_prompt(item.title), "summary": sanitize_for_prompt(item.summary, 300)}
                    for item in batch
                ],
            },
            system_prompt=SCORING_SYSTEM_PROMPT,
            max_tokens=RELEVANCE_MAX_TOKENS,
            temperature=RELEVANCE_TEMPERATURE,
        )
        if response.is_error:
            logger.warning(f"Relevance scoring batch failed: {response.text}")
            continue
        log_ai_usage(account_id, response, "relevance")

        for index, score in parse_relevance_response(response.text, len(batch)).items():
            item = batch[index]
            update_item_relevance(item.id, score.focus_score, score.label, score.tags)
            item.ai_focus_score = score.focus_score
            item.ai_relevant_label = score.label
            item.ai_suggested_tags = score.tags
            scored += 1
    return scored
