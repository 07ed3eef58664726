"""
Per-feed circuit breaker.

Consecutive failures open the circuit for an escalating cooldown; a
successful poll closes it. Feeds with an open circuit are skipped by
fetch_due_feeds.
"""

import time
from typing import Optional

from feed_pipeline.constants import CIRCUIT_COOLDOWN_HOURS, CIRCUIT_MAX_COOLDOWN_HOURS
from feed_pipeline.db_engine import get_session
from feed_pipeline.orm_models import FeedORM
from util.logging_util import setup_logger

logger = setup_logger(__name__)

MAX_FAILURE_REASON_LENGTH = 500


def get_circuit_cooldown_hours(consecutive_failures: int) -> int:
    """0 for up to two failures, then 1, 4, 12 and finally 24 hours."""
    if consecutive_failures <= 2:
        return 0
    return CIRCUIT_COOLDOWN_HOURS.get(consecutive_failures, CIRCUIT_MAX_COOLDOWN_HOURS)


def record_feed_success(account_id: str, feed_id: int):
    with get_session() as session:
        orm = session.get(FeedORM, feed_id)
        if orm is None or orm.account_id != account_id:
            return
        if orm.consecutive_failures:
            logger.info(f"Feed {feed_id} recovered after {orm.consecutive_failures} failures")
        orm.consecutive_failures = 0
        orm.circuit_open_until = None
        orm.last_failure_reason = None


def record_feed_failure(account_id: str, feed_id: int, reason: str, now: Optional[int] = None) -> int:
    """Count a failed poll and open the circuit if the cooldown says so.

    Returns the cooldown in hours (0 when the circuit stays closed).
    """
    now = now or int(time.time())
    with get_session() as session:
        orm = session.get(FeedORM, feed_id)
        if orm is None or orm.account_id != account_id:
            return 0
        orm.consecutive_failures = (orm.consecutive_failures or 0) + 1
        orm.last_failure_reason = (reason or "")[:MAX_FAILURE_REASON_LENGTH]
        hours = get_circuit_cooldown_hours(orm.consecutive_failures)
        if hours > 0:
            orm.circuit_open_until = now + hours * 3600
            logger.warning(
                f"Feed {feed_id} circuit open for {hours}h after "
                f"{orm.consecutive_failures} consecutive failures: {reason}"
            )
        return hours


def reset_circuit_breaker(account_id: str, feed_id: int):
    """Manually close a feed's circuit and clear its failure history."""
    record_feed_success(account_id, feed_id)
