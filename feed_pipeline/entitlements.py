"""
Plan entitlements and the per-account daily ingestion budget.

Budget reservations use a compare-and-swap update on the day's counter so
concurrent pipelines for the same account can never admit more items than
the plan allows.
"""

import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError

from feed_pipeline.constants import DEFAULT_PLAN, PLAN_LIMITS
from feed_pipeline.database import get_account_settings
from feed_pipeline.db_engine import get_session
from feed_pipeline.models import PipelineEntitlements
from feed_pipeline.orm_models import UsageCounterORM
from util.logging_util import setup_logger

logger = setup_logger(__name__)

MAX_RESERVE_ATTEMPTS = 20


def normalize_plan_id(plan_id: Optional[str]) -> str:
    if plan_id in PLAN_LIMITS:
        return plan_id
    return DEFAULT_PLAN


def entitlements_for_plan(plan_id: Optional[str]) -> PipelineEntitlements:
    plan_id = normalize_plan_id(plan_id)
    limits = PLAN_LIMITS[plan_id]
    return PipelineEntitlements(
        plan_id=plan_id,
        max_items_per_day=limits["max_items_per_day"],
        min_poll_minutes=limits["min_poll_minutes"],
    )


def get_pipeline_entitlements(account_id: str) -> PipelineEntitlements:
    """Entitlements for an account's current plan. Unknown plans fall back to free."""
    return entitlements_for_plan(get_account_settings(account_id).plan_id)


def is_poll_allowed(last_polled_at: Optional[int], min_poll_minutes: int, now: Optional[int] = None) -> bool:
    if last_polled_at is None:
        return True
    now = now or int(time.time())
    return now - last_polled_at >= min_poll_minutes * 60


def usage_date(now: Optional[int] = None) -> str:
    """UTC calendar day used as the usage counter key."""
    now = now or int(time.time())
    return datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d")


def _ensure_counter_exists(account_id: str, day: str):
    try:
        with get_session() as session:
            if session.get(UsageCounterORM, (account_id, day)) is not None:
                return
            session.add(UsageCounterORM(account_id=account_id, usage_date=day, items_ingested=0))
    except IntegrityError:
        # Another worker created the row first
        logger.debug(f"Usage counter for {account_id} on {day} created concurrently")


def get_daily_usage(account_id: str, now: Optional[int] = None) -> int:
    with get_session() as session:
        orm = session.get(UsageCounterORM, (account_id, usage_date(now)))
        return orm.items_ingested if orm is not None else 0


def reserve_daily_ingestion_budget(
    account_id: str, limit: int, requested: int, now: Optional[int] = None
) -> int:
    """Reserve up to `requested` item slots for today.

    Returns the number granted: max(0, min(requested, limit - used)).
    """
    if requested <= 0:
        return 0
    day = usage_date(now)
    _ensure_counter_exists(account_id, day)

    for _ in range(MAX_RESERVE_ATTEMPTS):
        with get_session() as session:
            used = session.execute(
                select(UsageCounterORM.items_ingested)
                .where(UsageCounterORM.account_id == account_id, UsageCounterORM.usage_date == day)
                .with_for_update()
            ).scalar_one()
            granted = max(0, min(requested, limit - used))
            if granted == 0:
                return 0
            swapped = session.execute(
                update(UsageCounterORM)
                .where(
                    UsageCounterORM.account_id == account_id,
                    UsageCounterORM.usage_date == day,
                    UsageCounterORM.items_ingested == used,
                )
                .values(items_ingested=used + granted)
                .execution_options(synchronize_session=False)
            )
            if swapped.rowcount == 1:
                logger.info(f"Reserved {granted}/{requested} ingestion slots for {account_id} ({used + granted}/{limit})")
                return granted

    logger.warning(f"Could not reserve ingestion budget for {account_id} after {MAX_RESERVE_ATTEMPTS} attempts")
    return 0


def release_daily_ingestion_budget(account_id: str, amount: int, now: Optional[int] = None):
    """Return unused reserved slots. The counter never drops below zero."""
    if amount <= 0:
        return
    day = usage_date(now)
    with get_session() as session:
        session.execute(
            update(UsageCounterORM)
            .where(UsageCounterORM.account_id == account_id, UsageCounterORM.usage_date == day)
            .values(items_ingested=case(
                (UsageCounterORM.items_ingested > amount, UsageCounterORM.items_ingested - amount),
                else_=0,
            ))
            .execution_options(synchronize_session=False)
        )


def increment_daily_ingestion_usage(account_id: str, amount: int, now: Optional[int] = None):
    """Count ingested items for accounts without a daily limit."""
    if amount <= 0:
        return
    day = usage_date(now)
    _ensure_counter_exists(account_id, day)
    with get_session() as session:
        session.execute(
            update(UsageCounterORM)
            .where(UsageCounterORM.account_id == account_id, UsageCounterORM.usage_date == day)
            .values(items_ingested=UsageCounterORM.items_ingested + amount)
            .execution_options(synchronize_session=False)
        )
