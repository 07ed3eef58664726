"""Tests for plan entitlements and the daily ingestion budget."""

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine

from feed_pipeline import db_engine
from feed_pipeline.models import AccountSettings
from feed_pipeline.orm_models import Base

NOW = 1_714_989_600  # 2024-05-06 10:00 UTC


@pytest.fixture
def temp_db():
    """Create a temporary in-memory database for testing."""
    test_engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(test_engine)
    db_engine.set_engine(test_engine)
    yield test_engine
    db_engine.reset_engine()


@pytest.fixture
def file_db(tmp_path):
    """A file-backed database that can be shared between threads."""
    test_engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}", connect_args={"timeout": 30})
    Base.metadata.create_all(test_engine)
    db_engine.set_engine(test_engine)
    yield test_engine
    db_engine.reset_engine()
    test_engine.dispose()


class TestEntitlements:
    """Tests for plan lookup."""

    def test_unknown_plan_falls_back_to_free(self):
        from feed_pipeline.entitlements import entitlements_for_plan

        assert entitlements_for_plan("enterprise-legacy").plan_id == "free"
        assert entitlements_for_plan(None).max_items_per_day == 500

    def test_paid_plan_unlimited(self):
        from feed_pipeline.entitlements import entitlements_for_plan

        entitlements = entitlements_for_plan("pro")
        assert entitlements.max_items_per_day is None
        assert entitlements.min_poll_minutes == 10

    def test_account_plan(self, temp_db):
        from feed_pipeline.database import save_account_settings
        from feed_pipeline.entitlements import get_pipeline_entitlements

        assert get_pipeline_entitlements("acct").plan_id == "free"
        save_account_settings(AccountSettings(account_id="acct", plan_id="pro_ai"))
        assert get_pipeline_entitlements("acct").plan_id == "pro_ai"

    def test_poll_interval(self):
        from feed_pipeline.entitlements import is_poll_allowed

        assert is_poll_allowed(None, 60, NOW)
        assert not is_poll_allowed(NOW - 59 * 60, 60, NOW)
        assert is_poll_allowed(NOW - 60 * 60, 60, NOW)

    def test_usage_date_is_utc(self):
        from feed_pipeline.entitlements import usage_date

        assert usage_date(NOW) == "2024-05-06"


class TestDailyBudget:
    """Tests for reserve/release on the daily counter."""

    def test_reserve_truncates_to_remaining(self, temp_db):
        from feed_pipeline.entitlements import get_daily_usage, reserve_daily_ingestion_budget

        assert reserve_daily_ingestion_budget("acct", 10, 7, NOW) == 7
        assert reserve_daily_ingestion_budget("acct", 10, 7, NOW) == 3
        assert reserve_daily_ingestion_budget("acct", 10, 7, NOW) == 0
        assert get_daily_usage("acct", NOW) == 10

    def test_zero_request(self, temp_db):
        from feed_pipeline.entitlements import get_daily_usage, reserve_daily_ingestion_budget

        assert reserve_daily_ingestion_budget("acct", 10, 0, NOW) == 0
        assert get_daily_usage("acct", NOW) == 0

    def test_release_returns_slots(self, temp_db):
        from feed_pipeline.entitlements import (
            get_daily_usage,
            release_daily_ingestion_budget,
            reserve_daily_ingestion_budget,
        )

        reserve_daily_ingestion_budget("acct", 10, 8, NOW)
        release_daily_ingestion_budget("acct", 3, NOW)

        assert get_daily_usage("acct", NOW) == 5

    def test_release_floors_at_zero(self, temp_db):
        from feed_pipeline.entitlements import (
            get_daily_usage,
            release_daily_ingestion_budget,
            reserve_daily_ingestion_budget,
        )

        reserve_daily_ingestion_budget("acct", 10, 2, NOW)
        release_daily_ingestion_budget("acct", 5, NOW)

        assert get_daily_usage("acct", NOW) == 0

    def test_counters_are_per_day(self, temp_db):
        from feed_pipeline.entitlements import get_daily_usage, reserve_daily_ingestion_budget

        reserve_daily_ingestion_budget("acct", 10, 10, NOW)

        assert reserve_daily_ingestion_budget("acct", 10, 4, NOW + 86400) == 4
        assert get_daily_usage("acct", NOW) == 10

    def test_increment_for_unlimited_plans(self, temp_db):
        from feed_pipeline.entitlements import get_daily_usage, increment_daily_ingestion_usage

        increment_daily_ingestion_usage("acct", 4, NOW)
        increment_daily_ingestion_usage("acct", 6, NOW)

        assert get_daily_usage("acct", NOW) == 10

    def test_concurrent_reservations_never_over_admit(self, file_db):
        """Test that parallel reservers together receive exactly the limit."""
        from feed_pipeline.entitlements import get_daily_usage, reserve_daily_ingestion_budget

        with ThreadPoolExecutor(max_workers=8) as pool:
            granted = list(pool.map(lambda _: reserve_daily_ingestion_budget("acct", 50, 7, NOW), range(16)))

        assert sum(granted) <= 50
        assert get_daily_usage("acct", NOW) == sum(granted)
        assert all(0 <= g <= 7 for g in granted)
