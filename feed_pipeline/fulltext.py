"""
Full-text article extraction with trafilatura.

Failed URLs are remembered per process for a cooldown period so that a
broken article page is not refetched on every poll.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional
from urllib.parse import urlsplit

import requests
import trafilatura
from sqlalchemy import select

from feed_pipeline.constants import (
    FULLTEXT_BACKFILL_FETCH_MULTIPLIER,
    FULLTEXT_BACKFILL_MAX,
    FULLTEXT_CONCURRENCY,
    FULLTEXT_FAILURE_CACHE_MAX,
    FULLTEXT_FAILURE_COOLDOWN_SECONDS,
    FULLTEXT_MAX_HTML_BYTES,
    FULLTEXT_MAX_TEXT_LENGTH,
    FULLTEXT_MIN_TEXT_LENGTH,
    USER_AGENT,
)
from feed_pipeline.database import update_item_extracted_text
from feed_pipeline.db_engine import get_session
from feed_pipeline.errors import FeedUrlValidationError
from feed_pipeline.models import Item
from feed_pipeline.orm_models import ItemORM, item_orm_to_dataclass
from feed_pipeline.url_guard import guarded_get, validate_feed_url
from util.logging_util import setup_logger

logger = setup_logger(__name__)

_failure_cache: Dict[str, int] = {}
_failure_lock = threading.Lock()


def normalize_cache_key(url: str) -> str:
    """scheme://host/path?query with the host lowercased and trailing slashes removed."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    key = f"{parts.scheme}://{(parts.netloc or '').lower()}{parts.path.rstrip('/')}"
    if parts.query:
        key = f"{key}?{parts.query}"
    return key


def is_in_failure_cooldown(url: str, now: Optional[int] = None) -> bool:
    now = now or int(time.time())
    key = normalize_cache_key(url)
    with _failure_lock:
        failed_at = _failure_cache.get(key)
        if failed_at is None:
            return False
        if now - failed_at >= FULLTEXT_FAILURE_COOLDOWN_SECONDS:
            del _failure_cache[key]
            return False
        return True


def record_failure(url: str, now: Optional[int] = None):
    now = now or int(time.time())
    with _failure_lock:
        _failure_cache[normalize_cache_key(url)] = now
        if len(_failure_cache) > FULLTEXT_FAILURE_CACHE_MAX:
            expired = [
                key for key, failed_at in _failure_cache.items()
                if now - failed_at >= FULLTEXT_FAILURE_COOLDOWN_SECONDS
            ]
            for key in expired:
                del _failure_cache[key]
            # Still too big: drop the oldest entries
            overflow = len(_failure_cache) - FULLTEXT_FAILURE_CACHE_MAX
            if overflow > 0:
                for key in sorted(_failure_cache, key=_failure_cache.get)[:overflow]:
                    del _failure_cache[key]


def clear_failure_cache():
    with _failure_lock:
        _failure_cache.clear()


def _download_html(url: str, timeout: float) -> Optional[str]:
    with guarded_get(
        url,
        headers={"User-Agent": USER_AGENT, "Accept": "text/html,application/xhtml+xml"},
        timeout=timeout,
        stream=True,
    ) as response:
        if response.status_code != 200:
            logger.debug(f"Full text fetch of {url} returned HTTP {response.status_code}")
            return None
        content_type = (response.headers.get("Content-Type") or "").lower()
        if content_type and "html" not in content_type:
            logger.debug(f"Skipping non-HTML content ({content_type}) at {url}")
            return None

        chunks = []
        total = 0
        for chunk in response.iter_content(chunk_size=65536):
            if not chunk:
                continue
            chunks.append(chunk)
            total += len(chunk)
            if total > FULLTEXT_MAX_HTML_BYTES:
                logger.debug(f"Page at {url} exceeds {FULLTEXT_MAX_HTML_BYTES} bytes")
                return None
        return b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")


def extract_text(url: str, timeout: float = 20.0, now: Optional[int] = None) -> Optional[str]:
    """Download an article page and extract its main text.

    Returns None (and starts a cooldown for the URL) when the page cannot be
    fetched or yields too little text.
    """
    if is_in_failure_cooldown(url, now):
        return None
    try:
        validate_feed_url(url)
    except FeedUrlValidationError as e:
        logger.debug(f"Not extracting unsafe URL {url}: {e}")
        return None

    try:
        html = _download_html(url, timeout)
    except (requests.RequestException, FeedUrlValidationError) as e:
        logger.debug(f"Full text fetch failed for {url}: {e}")
        html = None

    text = trafilatura.extract(html, url=url) if html else None
    if not text or len(text.strip()) < FULLTEXT_MIN_TEXT_LENGTH:
        record_failure(url, now)
        return None
    return text.strip()[:FULLTEXT_MAX_TEXT_LENGTH]


def extract_fulltext_for_items(items: List[Item], timeout: float = 20.0, now: Optional[int] = None) -> int:
    """Extract and store full text for items that have none. Returns the number stored."""
    now = now or int(time.time())
    targets = [item for item in items if not item.extracted_text]
    if not targets:
        return 0

    with ThreadPoolExecutor(max_workers=FULLTEXT_CONCURRENCY) as pool:
        texts = list(pool.map(lambda item: extract_text(item.url, timeout, now), targets))

    stored = 0
    for item, text in zip(targets, texts):
        if text:
            update_item_extracted_text(item.id, text, now)
            item.extracted_text = text
            item.extracted_at = now
            stored += 1
    logger.info(f"Extracted full text for {stored}/{len(targets)} items")
    return stored


def backfill_missing_fulltext(account_id: str, limit: int = 50, timeout: float = 20.0) -> int:
    """Extract full text for older items that never got any.

    Looks at more candidates than `limit` because many will be in cooldown.
    """
    limit = max(1, min(limit, FULLTEXT_BACKFILL_MAX))
    with get_session() as session:
        stmt = (
            select(ItemORM)
            .where(ItemORM.account_id == account_id, ItemORM.extracted_text.is_(None))
            .order_by(ItemORM.published_at.desc(), ItemORM.id.desc())
            .limit(limit * FULLTEXT_BACKFILL_FETCH_MULTIPLIER)
        )
        candidates = [item_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]

    eligible = [item for item in candidates if not is_in_failure_cooldown(item.url)][:limit]
    return extract_fulltext_for_items(eligible, timeout)
