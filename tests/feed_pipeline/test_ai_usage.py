"""Tests for AI usage accounting and budgets."""

import pytest
from sqlalchemy import create_engine

from feed_pipeline import db_engine
from feed_pipeline.models import AccountSettings
from feed_pipeline.orm_models import Base
from llm.provider import AiCompletionResponse

NOW = 1_714_989_600  # 2024-05-06 10:00 UTC


@pytest.fixture
def temp_db():
    """Create a temporary in-memory database for testing."""
    test_engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(test_engine)
    db_engine.set_engine(test_engine)
    yield test_engine
    db_engine.reset_engine()


def _response(input_tokens, output_tokens, model="gemini-2.5-flash", provider="gemini"):
    return AiCompletionResponse(
        text="ok", input_tokens=input_tokens, output_tokens=output_tokens,
        model=model, provider=provider, duration_ms=1,
    )


class TestEstimateCost:
    def test_known_models(self):
        from feed_pipeline.ai_usage import estimate_cost_usd

        assert estimate_cost_usd("gemini", "gemini-2.5-flash", 1_000_000, 1_000_000) == pytest.approx(2.80)
        assert estimate_cost_usd("openai", "gpt-4o-mini", 1_000_000, 0) == pytest.approx(0.15)
        assert estimate_cost_usd("openai", "gpt-4o", 0, 1_000_000) == pytest.approx(10.0)

    def test_unknown_and_local_models(self):
        from feed_pipeline.ai_usage import estimate_cost_usd

        assert estimate_cost_usd("other", "mystery-model", 1_000_000, 0) == pytest.approx(0.15)
        assert estimate_cost_usd("ollama", "llama3", 1_000_000, 1_000_000) == 0.0


class TestBudget:
    """Tests for monthly usage and budget checks."""

    def test_month_start(self):
        from feed_pipeline.ai_usage import month_start

        assert month_start(NOW) == 1_714_521_600

    def test_monthly_usage_excludes_previous_month(self, temp_db):
        from feed_pipeline.ai_usage import get_monthly_usage, log_ai_usage

        log_ai_usage("acct", _response(100, 50), "summary", now=NOW)
        log_ai_usage("acct", _response(1000, 1000), "summary", now=NOW - 40 * 86400)

        tokens, cost = get_monthly_usage("acct", NOW)

        assert tokens == 150
        assert cost == pytest.approx((100 * 0.30 + 50 * 2.50) / 1_000_000)

    def test_token_limit(self, temp_db):
        from feed_pipeline.ai_usage import is_over_budget, log_ai_usage

        assert is_over_budget("acct", NOW) is False
        log_ai_usage("acct", _response(9_000, 1_000), "relevance", now=NOW)
        assert is_over_budget("acct", NOW) is True

    def test_usd_cap(self, temp_db):
        from feed_pipeline.ai_usage import is_over_budget, log_ai_usage
        from feed_pipeline.database import save_account_settings

        save_account_settings(AccountSettings(account_id="acct", plan_id="pro_ai", monthly_ai_cap_usd=0.0001))
        log_ai_usage("acct", _response(1_000, 0), "summary", now=NOW)

        assert is_over_budget("acct", NOW) is True
