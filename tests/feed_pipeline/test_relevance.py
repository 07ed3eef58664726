"""Tests for AI relevance scoring."""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine

from feed_pipeline import db_engine
from feed_pipeline.models import AccountSettings, Feed, ParsedItem
from feed_pipeline.orm_models import Base
from llm.provider import AiCompletionResponse


@pytest.fixture
def temp_db():
    """Create a temporary in-memory database for testing."""
    test_engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(test_engine)
    db_engine.set_engine(test_engine)
    yield test_engine
    db_engine.reset_engine()


class TestParseRelevanceResponse:
    """Tests for parse_relevance_response."""

    def test_clamps_and_defaults(self):
        from feed_pipeline.relevance import parse_relevance_response

        scores = parse_relevance_response(
            '{"scores": ['
            '{"index": 0, "focusScore": 1.4, "label": "likely relevant", "suggestedTags": ["ai", "chips"]},'
            '{"index": 1, "focusScore": -2, "label": "must read"},'
            '{"index": 2, "focusScore": "abc", "label": "noise", "suggestedTags": "not a list"}'
            ']}',
            batch_size=3,
        )

        assert scores[0].focus_score == 1.0
        assert scores[0].tags == ["ai", "chips"]
        assert scores[1].focus_score == 0.0
        assert scores[1].label == "explore"
        assert scores[2].focus_score == 0.0
        assert scores[2].tags == []

    def test_out_of_range_index_dropped(self):
        from feed_pipeline.relevance import parse_relevance_response

        scores = parse_relevance_response(
            '{"scores": [{"index": 5, "focusScore": 0.5}, {"index": -1, "focusScore": 0.5}]}', batch_size=2
        )

        assert scores == {}

    def test_tag_limits(self):
        from feed_pipeline.relevance import parse_relevance_response

        scores = parse_relevance_response(
            '{"scores": [{"index": 0, "focusScore": 0.5, "suggestedTags": ["a", "' + "x" * 60 + '", "b", "c", "d"]}]}',
            batch_size=1,
        )

        assert scores[0].tags == ["a", "b", "c"]

    def test_invalid_json(self):
        from feed_pipeline.relevance import parse_relevance_response

        assert parse_relevance_response("I think they are all great", batch_size=2) == {}


class TestScoreItemsRelevance:
    """Tests for score_items_relevance."""

    def test_disabled_by_default(self, temp_db):
        from feed_pipeline.relevance import score_items_relevance

        provider = MagicMock()

        assert score_items_relevance("acct", [MagicMock()], provider, AccountSettings(account_id="acct")) == 0
        provider.complete.assert_not_called()

    def test_stores_scores(self, temp_db):
        from feed_pipeline.database import add_feed, get_item
        from feed_pipeline.relevance import score_items_relevance
        from feed_pipeline.upsert import upsert_items

        feed_id = add_feed(Feed(account_id="acct", url="https://example.com/rss"))
        items = [u.item for u in upsert_items("acct", feed_id, [
            ParsedItem(url="https://example.com/1", title="New GPU launched", published_at=1, guid="1"),
            ParsedItem(url="https://example.com/2", title="Celebrity gossip", published_at=2, guid="2"),
        ]).succeeded]
        provider = MagicMock()
        provider.complete.return_value = AiCompletionResponse(
            text='{"scores": [{"index": 0, "focusScore": 0.9, "label": "likely relevant", "suggestedTags": ["gpu"]},'
                 '{"index": 1, "focusScore": 0.1, "label": "noise"}]}',
            input_tokens=120, output_tokens=40, model="gemini-2.5-flash", provider="gemini", duration_ms=3,
        )
        settings = AccountSettings(account_id="acct", ai_scoring_enabled=True)

        scored = score_items_relevance("acct", items, provider, settings)

        assert scored == 2
        first = get_item(items[0].id)
        assert first.ai_focus_score == 0.9
        assert first.ai_relevant_label == "likely relevant"
        assert first.ai_suggested_tags == ["gpu"]
        assert get_item(items[1].id).ai_relevant_label == "noise"
