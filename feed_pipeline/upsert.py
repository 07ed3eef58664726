"""
Idempotent item upsert.

Items with a guid are identified by (account, feed, guid); items without by
(account, feed, canonical_url, published_at). Re-ingesting an item refreshes
its title and summary and fills in a missing hero image.
"""

import time
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from feed_pipeline.canonicalize import canonicalize_url
from feed_pipeline.db_engine import get_session
from feed_pipeline.models import FailedUpsert, ParsedItem, UpsertedItem, UpsertResult
from feed_pipeline.orm_models import ItemORM, item_orm_to_dataclass
from util.logging_util import setup_logger

logger = setup_logger(__name__)


def _apply_update(orm: ItemORM, parsed: ParsedItem):
    orm.title = parsed.title
    orm.summary = parsed.summary
    if not orm.hero_image_url and parsed.hero_image_url:
        orm.hero_image_url = parsed.hero_image_url


def _new_orm(account_id: str, feed_id: int, parsed: ParsedItem, canonical_url: str, created_at: int) -> ItemORM:
    return ItemORM(
        account_id=account_id,
        feed_id=feed_id,
        url=parsed.url or canonical_url,
        canonical_url=canonical_url,
        guid=parsed.guid,
        title=parsed.title,
        summary=parsed.summary,
        author=parsed.author,
        published_at=parsed.published_at,
        hero_image_url=parsed.hero_image_url,
        created_at=created_at,
    )


def _find_existing(
    session: Session, account_id: str, feed_id: int, batch: List[Tuple[ParsedItem, str]], with_guid: bool
) -> Dict[tuple, ItemORM]:
    """Load rows that already exist for a batch, keyed by identity."""
    if with_guid:
        guids = list({parsed.guid for parsed, _ in batch})
        stmt = select(ItemORM).where(
            ItemORM.account_id == account_id,
            ItemORM.feed_id == feed_id,
            ItemORM.guid.in_(guids),
        )
        return {(orm.guid,): orm for orm in session.execute(stmt).scalars().all()}

    urls = list({canonical for _, canonical in batch})
    stmt = select(ItemORM).where(
        ItemORM.account_id == account_id,
        ItemORM.feed_id == feed_id,
        ItemORM.guid.is_(None),
        ItemORM.canonical_url.in_(urls),
    )
    return {(orm.canonical_url, orm.published_at): orm for orm in session.execute(stmt).scalars().all()}


def _identity(parsed: ParsedItem, canonical_url: str, with_guid: bool) -> tuple:
    if with_guid:
        return (parsed.guid,)
    return (canonical_url, parsed.published_at)


def _upsert_batch(
    account_id: str, feed_id: int, batch: List[Tuple[ParsedItem, str]], with_guid: bool, now: int
) -> List[UpsertedItem]:
    """Upsert one identity group in a single transaction."""
    with get_session() as session:
        existing = _find_existing(session, account_id, feed_id, batch, with_guid)
        touched: List[Tuple[ItemORM, bool]] = []
        for parsed, canonical_url in batch:
            key = _identity(parsed, canonical_url, with_guid)
            orm = existing.get(key)
            if orm is not None:
                _apply_update(orm, parsed)
                touched.append((orm, False))
                continue
            orm = _new_orm(account_id, feed_id, parsed, canonical_url, now)
            session.add(orm)
            existing[key] = orm
            touched.append((orm, True))
        session.flush()

        return [UpsertedItem(item=item_orm_to_dataclass(orm), is_new=is_new) for orm, is_new in touched]


def upsert_items(
    account_id: str, feed_id: int, items: List[ParsedItem], now: Optional[int] = None
) -> UpsertResult:
    """Insert or refresh parsed items for a feed.

    Each identity group is written as one batch. If a batch fails, its items
    are retried one by one so that a single bad row does not block the rest.
    """
    now = now or int(time.time())
    result = UpsertResult()
    if not items:
        return result

    with_guid = [(p, canonicalize_url(p.url)) for p in items if p.guid]
    without_guid = [(p, canonicalize_url(p.url)) for p in items if not p.guid]

    for batch, is_guid_batch in ((with_guid, True), (without_guid, False)):
        if not batch:
            continue
        try:
            result.succeeded.extend(_upsert_batch(account_id, feed_id, batch, is_guid_batch, now))
            continue
        except SQLAlchemyError as e:
            logger.warning(
                f"Batch upsert of {len(batch)} items for feed {feed_id} failed, retrying per item: {e}"
            )

        for parsed, canonical_url in batch:
            try:
                result.succeeded.extend(
                    _upsert_batch(account_id, feed_id, [(parsed, canonical_url)], is_guid_batch, now)
                )
            except SQLAlchemyError as e:
                logger.error(f"Failed to upsert item {canonical_url} for feed {feed_id}: {e}")
                result.failed.append(FailedUpsert(parsed=parsed, canonical_url=canonical_url, error=str(e)))

    new_count = len(result.new_items)
    logger.info(
        f"Upserted {len(result.succeeded)} items for feed {feed_id} "
        f"({new_count} new, {len(result.failed)} failed)"
    )
    return result
