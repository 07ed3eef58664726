"""
Job handlers, the recurring-job scheduler and the worker loop.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from feed_pipeline.config import Settings
from feed_pipeline.database import (
    fetch_due_feeds,
    fetch_feeds_due_for_drift_check,
    get_account_ids,
    get_feed,
)
from feed_pipeline.db_engine import get_session
from feed_pipeline.digest import generate_digest
from feed_pipeline.fulltext import backfill_missing_fulltext
from feed_pipeline.jobs import (
    BACKFILL_FULLTEXT,
    DETECT_TOPIC_DRIFT,
    GENERATE_DIGEST,
    POLL_FEEDS,
    PROCESS_FEED,
    claim_next_job,
    complete_job,
    enqueue,
    fail_job,
)
from feed_pipeline.models import Job
from feed_pipeline.orm_models import ScheduleStateORM
from feed_pipeline.pipeline import PipelineContext, run_feed_pipeline
from feed_pipeline.topics import detect_topic_drift
from llm.provider import AiProvider
from notifications.push import PushTransport
from util.logging_util import setup_logger

logger = setup_logger(__name__)

HOUR_SECONDS = 3600
DAY_SECONDS = 86400


def poll_interval_to_cron(minutes: int) -> str:
    """Cron expression for a poll interval.

    Up to 59 minutes runs every N minutes, whole hours every N hours, and
    anything else falls back to hourly.
    """
    if minutes < 1:
        minutes = 1
    if minutes <= 59:
        return f"*/{minutes} * * * *"
    if minutes % 60 == 0 and minutes // 60 <= 23:
        return f"0 */{minutes // 60} * * *"
    return "0 * * * *"


def cron_interval_seconds(cron: str) -> int:
    """Period of the expressions produced by poll_interval_to_cron."""
    minute, hour = cron.split()[:2]
    if minute.startswith("*/"):
        return int(minute[2:]) * 60
    if hour.startswith("*/"):
        return int(hour[2:]) * 3600
    return 3600


def get_last_enqueued(job_name: str) -> Optional[int]:
    with get_session() as session:
        orm = session.get(ScheduleStateORM, job_name)
        if orm is None:
            return None
        return orm.last_enqueued_at


def mark_enqueued(job_name: str, now: int):
    with get_session() as session:
        orm = session.get(ScheduleStateORM, job_name)
        if orm is None:
            session.add(ScheduleStateORM(job_name=job_name, last_enqueued_at=now))
        else:
            orm.last_enqueued_at = now


def is_interval_due(job_name: str, interval_seconds: int, now: int) -> bool:
    last = get_last_enqueued(job_name)
    if last is None:
        return True
    return now - last >= interval_seconds


def is_daily_due(job_name: str, hour_utc: int, now: int) -> bool:
    """Due once per day, at or after hour_utc."""
    current = datetime.fromtimestamp(now, tz=timezone.utc)
    slot = int(current.replace(hour=hour_utc, minute=0, second=0, microsecond=0).timestamp())
    if now < slot:
        return False
    last = get_last_enqueued(job_name)
    return last is None or last < slot


def schedule_recurring_jobs(settings: Settings, now: Optional[int] = None) -> List[int]:
    """Enqueue recurring jobs whose schedule is due. Returns new job ids."""
    now = now or int(time.time())
    job_ids = []

    poll_cron = poll_interval_to_cron(settings.worker.poll_interval_minutes)
    due = [
        (POLL_FEEDS, is_interval_due(POLL_FEEDS, cron_interval_seconds(poll_cron), now)),
        (GENERATE_DIGEST, is_daily_due(GENERATE_DIGEST, settings.digest.daily_hour_utc, now)),
        (DETECT_TOPIC_DRIFT, is_interval_due(DETECT_TOPIC_DRIFT, DAY_SECONDS, now)),
        (
            BACKFILL_FULLTEXT,
            settings.worker.fulltext_enabled and is_interval_due(BACKFILL_FULLTEXT, HOUR_SECONDS, now),
        ),
    ]
    for job_name, is_due in due:
        if not is_due:
            continue
        job_id = enqueue(job_name, singleton_key=job_name, max_attempts=settings.worker.max_attempts, now=now)
        mark_enqueued(job_name, now)
        if job_id:
            job_ids.append(job_id)

    return job_ids


class Worker:
    """Runs queued jobs on a thread pool."""

    def __init__(
        self,
        settings: Settings,
        provider: Optional[AiProvider] = None,
        push_transport: Optional[PushTransport] = None,
    ):
        self.settings = settings
        self.provider = provider
        self.push_transport = push_transport
        self.handlers: Dict[str, Callable[[Job, int], None]] = {
            POLL_FEEDS: self.handle_poll_feeds,
            PROCESS_FEED: self.handle_process_feed,
            GENERATE_DIGEST: self.handle_generate_digest,
            DETECT_TOPIC_DRIFT: self.handle_detect_topic_drift,
            BACKFILL_FULLTEXT: self.handle_backfill_fulltext,
        }
        self._stop = threading.Event()

    def handle_poll_feeds(self, job: Job, now: int):
        """Fan out one process-feed job per due feed."""
        enqueued = 0
        for account_id in get_account_ids():
            for feed in fetch_due_feeds(account_id, now, self.settings.worker.feed_batch_size):
                job_id = enqueue(
                    PROCESS_FEED,
                    {"account_id": account_id, "feed_id": feed.id},
                    singleton_key=f"{PROCESS_FEED}:{feed.id}",
                    max_attempts=self.settings.worker.max_attempts,
                    now=now,
                )
                if job_id:
                    enqueued += 1
        logger.info(f"Enqueued {enqueued} feeds for processing")

    def handle_process_feed(self, job: Job, now: int):
        feed = get_feed(job.payload["feed_id"])
        if feed is None or feed.account_id != job.payload["account_id"]:
            logger.warning(f"Feed {job.payload.get('feed_id')} no longer exists, dropping job {job.id}")
            return
        run_feed_pipeline(PipelineContext(
            account_id=feed.account_id,
            feed=feed,
            settings=self.settings,
            provider=self.provider,
            push_transport=self.push_transport,
            now=now,
        ))

    def handle_generate_digest(self, job: Job, now: int):
        account_ids = [job.payload["account_id"]] if job.payload.get("account_id") else get_account_ids()
        for account_id in account_ids:
            generate_digest(account_id, now, self.provider, config=self.settings.digest)

    def handle_detect_topic_drift(self, job: Job, now: int):
        """Re-check topics of feeds classified more than topic_drift_days ago."""
        if self.provider is None:
            logger.info("No AI provider, skipping topic drift check")
            return
        checked_before = now - self.settings.worker.topic_drift_days * DAY_SECONDS
        drifted = 0
        for account_id in get_account_ids():
            for feed in fetch_feeds_due_for_drift_check(account_id, checked_before, self.settings.worker.feed_batch_size):
                result = detect_topic_drift(account_id, feed, self.provider, now)
                if result is not None and result.drifted:
                    drifted += 1
        logger.info(f"Topic drift check found {drifted} drifted feeds")

    def handle_backfill_fulltext(self, job: Job, now: int):
        for account_id in get_account_ids():
            backfill_missing_fulltext(
                account_id, self.settings.worker.fulltext_backfill_limit, self.settings.timeouts.fulltext
            )

    def execute(self, job: Job, now: Optional[int] = None) -> bool:
        """Run one claimed job and record its outcome. Returns True on success."""
        now = now or int(time.time())
        handler = self.handlers.get(job.name)
        if handler is None:
            fail_job(job.id, f"No handler for {job.name}", self.settings.worker.retry_delay_seconds, now)
            return False
        try:
            handler(job, now)
        except Exception as e:
            logger.exception(f"Job {job.id} ({job.name}) failed")
            fail_job(job.id, str(e), self.settings.worker.retry_delay_seconds, now)
            return False
        complete_job(job.id, now)
        return True

    def run_once(self, now: Optional[int] = None) -> int:
        """Schedule due jobs, then drain the queue. Returns the number of jobs run."""
        now = now or int(time.time())
        schedule_recurring_jobs(self.settings, now)

        ran = 0
        with ThreadPoolExecutor(max_workers=self.settings.worker.concurrency) as pool:
            while not self._stop.is_set():
                claimed = []
                for _ in range(self.settings.worker.concurrency):
                    job = claim_next_job(now, lease_seconds=self.settings.worker.job_lease_seconds)
                    if job is None:
                        break
                    claimed.append(job)
                if not claimed:
                    break
                list(pool.map(lambda j: self.execute(j, now), claimed))
                ran += len(claimed)
        return ran

    def run_forever(self):
        logger.info("Starting feed worker...")
        while not self._stop.is_set():
            try:
                ran = self.run_once()
            except Exception:
                logger.exception("Error in worker loop")
                ran = 0
            if ran == 0:
                self._stop.wait(self.settings.worker.idle_sleep_seconds)

    def stop(self):
        self._stop.set()
