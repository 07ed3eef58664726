"""Tests for the database-backed job queue."""

import pytest
from sqlalchemy import create_engine

from feed_pipeline import db_engine
from feed_pipeline.models import JobStatus
from feed_pipeline.orm_models import Base

NOW = 1_714_989_600


@pytest.fixture
def temp_db():
    """Create a temporary in-memory database for testing."""
    test_engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(test_engine)
    db_engine.set_engine(test_engine)
    yield test_engine
    db_engine.reset_engine()


class TestEnqueue:
    def test_unknown_job_name(self, temp_db):
        from feed_pipeline.jobs import enqueue

        with pytest.raises(ValueError):
            enqueue("send-spam")

    def test_singleton_key(self, temp_db):
        """Test that a singleton job is not queued twice while active."""
        from feed_pipeline.jobs import POLL_FEEDS, claim_next_job, complete_job, enqueue

        first = enqueue(POLL_FEEDS, singleton_key="poll", now=NOW)
        assert first > 0
        assert enqueue(POLL_FEEDS, singleton_key="poll", now=NOW) == 0

        job = claim_next_job(NOW)
        assert enqueue(POLL_FEEDS, singleton_key="poll", now=NOW) == 0
        complete_job(job.id, NOW)
        assert enqueue(POLL_FEEDS, singleton_key="poll", now=NOW) > 0


class TestClaim:
    """Tests for claiming jobs."""

    def test_claims_oldest_runnable(self, temp_db):
        from feed_pipeline.jobs import PROCESS_FEED, claim_next_job, enqueue

        later = enqueue(PROCESS_FEED, {"feed_id": 2}, run_after=NOW + 60, now=NOW)
        first = enqueue(PROCESS_FEED, {"feed_id": 1}, now=NOW)

        job = claim_next_job(NOW)

        assert job.id == first
        assert job.status == JobStatus.RUNNING
        assert job.attempts == 1
        assert job.payload == {"feed_id": 1}
        assert claim_next_job(NOW) is None
        assert claim_next_job(NOW + 60).id == later

    def test_filter_by_name(self, temp_db):
        from feed_pipeline.jobs import GENERATE_DIGEST, POLL_FEEDS, claim_next_job, enqueue

        enqueue(POLL_FEEDS, now=NOW)
        digest_id = enqueue(GENERATE_DIGEST, now=NOW)

        assert claim_next_job(NOW, names=[GENERATE_DIGEST]).id == digest_id


class TestLease:
    """Tests for recovering jobs whose worker died mid-run."""

    def test_claim_sets_lease(self, temp_db):
        from feed_pipeline.jobs import PROCESS_FEED, claim_next_job, complete_job, enqueue, get_job

        job_id = enqueue(PROCESS_FEED, now=NOW)
        job = claim_next_job(NOW, lease_seconds=300)

        assert job.locked_until == NOW + 300
        complete_job(job_id, NOW + 10)
        assert get_job(job_id).locked_until is None

    def test_running_job_not_reclaimed_before_lease_expires(self, temp_db):
        from feed_pipeline.jobs import PROCESS_FEED, claim_next_job, enqueue

        enqueue(PROCESS_FEED, now=NOW)
        claim_next_job(NOW, lease_seconds=300)

        assert claim_next_job(NOW + 299) is None

    def test_abandoned_job_reclaimed_after_lease(self, temp_db):
        """Test that a job left running by a dead worker is picked up again."""
        from feed_pipeline.jobs import PROCESS_FEED, claim_next_job, enqueue

        job_id = enqueue(PROCESS_FEED, {"feed_id": 1}, now=NOW)
        claim_next_job(NOW, lease_seconds=300)

        job = claim_next_job(NOW + 301, lease_seconds=300)

        assert job.id == job_id
        assert job.attempts == 2
        assert job.locked_until == NOW + 601
        assert job.last_error == "lease expired"

    def test_abandoned_singleton_does_not_block_forever(self, temp_db):
        """Test that the recurring poll job keeps running after its worker died."""
        from feed_pipeline.jobs import POLL_FEEDS, claim_next_job, enqueue

        job_id = enqueue(POLL_FEEDS, singleton_key=POLL_FEEDS, now=NOW)
        claim_next_job(NOW)
        later = NOW + 30 * 86400

        assert enqueue(POLL_FEEDS, singleton_key=POLL_FEEDS, now=later) == 0
        job = claim_next_job(later)
        assert job is not None
        assert job.id == job_id

    def test_abandoned_job_out_of_attempts_fails(self, temp_db):
        from feed_pipeline.jobs import POLL_FEEDS, claim_next_job, enqueue, get_job

        job_id = enqueue(POLL_FEEDS, singleton_key=POLL_FEEDS, max_attempts=1, now=NOW)
        claim_next_job(NOW, lease_seconds=60)

        new_id = enqueue(POLL_FEEDS, singleton_key=POLL_FEEDS, now=NOW + 61)

        assert new_id > 0
        assert new_id != job_id
        assert get_job(job_id).status == JobStatus.FAILED
        assert claim_next_job(NOW + 61).id == new_id


class TestFailJob:
    """Tests for retry and backoff."""

    def test_backoff_then_dead(self, temp_db):
        from feed_pipeline.jobs import PROCESS_FEED, claim_next_job, enqueue, fail_job, get_job

        job_id = enqueue(PROCESS_FEED, {"feed_id": 1}, max_attempts=3, now=NOW)

        claim_next_job(NOW)
        assert fail_job(job_id, "boom", 60, NOW) is True
        assert get_job(job_id).run_after == NOW + 60

        claim_next_job(NOW + 60)
        assert fail_job(job_id, "boom", 60, NOW + 60) is True
        assert get_job(job_id).run_after == NOW + 60 + 120

        claim_next_job(NOW + 180)
        assert fail_job(job_id, "boom again", 60, NOW + 180) is False

        job = get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 3
        assert job.last_error == "boom again"

    def test_count_jobs(self, temp_db):
        from feed_pipeline.jobs import PROCESS_FEED, claim_next_job, complete_job, count_jobs, enqueue

        enqueue(PROCESS_FEED, now=NOW)
        enqueue(PROCESS_FEED, now=NOW)
        complete_job(claim_next_job(NOW).id, NOW)

        assert count_jobs() == 2
        assert count_jobs(JobStatus.COMPLETED) == 1
        assert count_jobs(JobStatus.PENDING, PROCESS_FEED) == 1
