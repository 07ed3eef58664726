"""
Durable job queue stored in the database.

Workers claim jobs with a compare-and-swap on the status column, so a job
is only ever run by one worker at a time. A claim holds a lease until
locked_until; running jobs whose lease has expired (their worker died) go
back to pending, or to failed once their attempts are used up. Failed jobs
are retried with exponential backoff until max_attempts is reached.
"""

import time
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from feed_pipeline.db_engine import get_session
from feed_pipeline.models import Job, JobStatus
from feed_pipeline.orm_models import JobORM, job_orm_to_dataclass
from util.logging_util import setup_logger

logger = setup_logger(__name__)

POLL_FEEDS = "poll-feeds"
PROCESS_FEED = "process-feed"
GENERATE_DIGEST = "generate-digest"
DETECT_TOPIC_DRIFT = "detect-topic-drift"
BACKFILL_FULLTEXT = "backfill-fulltext"

JOB_NAMES = (POLL_FEEDS, PROCESS_FEED, GENERATE_DIGEST, DETECT_TOPIC_DRIFT, BACKFILL_FULLTEXT)

MAX_CLAIM_ATTEMPTS = 5
DEFAULT_LEASE_SECONDS = 900
LEASE_EXPIRED_ERROR = "lease expired"


def _release_expired_leases(session: Session, now: int, singleton_key: Optional[str] = None) -> int:
    """Return running jobs with an expired lease to the queue."""
    stmt = select(JobORM).where(
        JobORM.status == JobStatus.RUNNING.value,
        JobORM.locked_until.is_not(None),
        JobORM.locked_until < now,
    )
    if singleton_key is not None:
        stmt = stmt.where(JobORM.singleton_key == singleton_key)
    expired = session.execute(stmt).scalars().all()
    for orm in expired:
        orm.locked_until = None
        orm.last_error = LEASE_EXPIRED_ERROR
        orm.updated_at = now
        if orm.attempts >= orm.max_attempts:
            orm.status = JobStatus.FAILED.value
            logger.error(f"Job {orm.id} ({orm.name}) lease expired after {orm.attempts} attempts, giving up")
        else:
            orm.status = JobStatus.PENDING.value
            orm.run_after = now
            logger.warning(f"Job {orm.id} ({orm.name}) lease expired, requeueing")
    if expired:
        session.flush()
    return len(expired)


def enqueue(
    name: str,
    payload: Optional[dict] = None,
    singleton_key: Optional[str] = None,
    max_attempts: int = 3,
    run_after: Optional[int] = None,
    now: Optional[int] = None,
) -> int:
    """Add a job to the queue.

    Returns the job id. If a pending or running job with the same
    singleton_key exists, no job is added and 0 is returned. A running job
    whose lease has expired is requeued or failed first.
    """
    if name not in JOB_NAMES:
        raise ValueError(f"Unknown job name: {name}")
    now = now or int(time.time())

    with get_session() as session:
        if singleton_key is not None:
            _release_expired_leases(session, now, singleton_key)
            existing = session.execute(
                select(JobORM.id).where(
                    JobORM.singleton_key == singleton_key,
                    JobORM.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value]),
                ).limit(1)
            ).scalar_one_or_none()
            if existing is not None:
                return 0

        orm = JobORM(
            name=name,
            payload=payload or {},
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts,
            run_after=run_after if run_after is not None else now,
            singleton_key=singleton_key,
            created_at=now,
            updated_at=now,
        )
        session.add(orm)
        session.flush()
        return orm.id


def claim_next_job(
    now: Optional[int] = None,
    names: Optional[List[str]] = None,
    lease_seconds: int = DEFAULT_LEASE_SECONDS,
) -> Optional[Job]:
    """Atomically take the oldest runnable job, or None if there is none.

    The claim is leased until now + lease_seconds.
    """
    now = now or int(time.time())

    with get_session() as session:
        _release_expired_leases(session, now)

    for _ in range(MAX_CLAIM_ATTEMPTS):
        with get_session() as session:
            stmt = (
                select(JobORM.id)
                .where(JobORM.status == JobStatus.PENDING.value, JobORM.run_after <= now)
                .order_by(JobORM.run_after.asc(), JobORM.id.asc())
                .limit(1)
            )
            if names:
                stmt = stmt.where(JobORM.name.in_(names))
            job_id = session.execute(stmt).scalar_one_or_none()
            if job_id is None:
                return None

            claimed = session.execute(
                update(JobORM)
                .where(JobORM.id == job_id, JobORM.status == JobStatus.PENDING.value)
                .values(
                    status=JobStatus.RUNNING.value,
                    attempts=JobORM.attempts + 1,
                    locked_until=now + lease_seconds,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                # Another worker got there first
                continue
            orm = session.get(JobORM, job_id, populate_existing=True)
            return job_orm_to_dataclass(orm)
    return None


def complete_job(job_id: int, now: Optional[int] = None):
    now = now or int(time.time())
    with get_session() as session:
        orm = session.get(JobORM, job_id)
        if orm is not None:
            orm.status = JobStatus.COMPLETED.value
            orm.last_error = None
            orm.locked_until = None
            orm.updated_at = now


def fail_job(job_id: int, error: str, retry_delay_seconds: int = 60, now: Optional[int] = None) -> bool:
    """Record a failed attempt.

    Returns True if the job will be retried, False if it is now dead.
    """
    now = now or int(time.time())
    with get_session() as session:
        orm = session.get(JobORM, job_id)
        if orm is None:
            return False
        orm.last_error = (error or "")[:1000]
        orm.locked_until = None
        orm.updated_at = now
        if orm.attempts >= orm.max_attempts:
            orm.status = JobStatus.FAILED.value
            logger.error(f"Job {job_id} ({orm.name}) failed permanently after {orm.attempts} attempts: {error}")
            return False
        delay = retry_delay_seconds * 2 ** (orm.attempts - 1)
        orm.status = JobStatus.PENDING.value
        orm.run_after = now + delay
        logger.warning(f"Job {job_id} ({orm.name}) attempt {orm.attempts} failed, retrying in {delay}s: {error}")
        return True


def get_job(job_id: int) -> Optional[Job]:
    with get_session() as session:
        orm = session.get(JobORM, job_id)
        if orm is None:
            return None
        return job_orm_to_dataclass(orm)


def count_jobs(status: Optional[JobStatus] = None, name: Optional[str] = None) -> int:
    with get_session() as session:
        stmt = select(JobORM.id)
        if status is not None:
            stmt = stmt.where(JobORM.status == status.value)
        if name is not None:
            stmt = stmt.where(JobORM.name == name)
        return len(session.execute(stmt).scalars().all())
