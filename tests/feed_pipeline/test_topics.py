"""Tests for feed topic classification and drift detection."""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine

from feed_pipeline import db_engine
from feed_pipeline.models import ClassificationStatus, Feed, FeedTopicStatus, ParsedItem
from feed_pipeline.orm_models import Base
from llm.provider import AiCompletionResponse

NOW = 1_714_989_600


@pytest.fixture
def temp_db():
    """Create a temporary in-memory database for testing."""
    test_engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(test_engine)
    db_engine.set_engine(test_engine)
    yield test_engine
    db_engine.reset_engine()


@pytest.fixture
def feed(temp_db):
    from feed_pipeline.database import add_feed, get_feed
    from feed_pipeline.upsert import upsert_items

    feed_id = add_feed(Feed(account_id="acct", url="https://example.com/rss", title="Security Weekly"))
    upsert_items("acct", feed_id, [
        ParsedItem(url=f"https://example.com/{i}", title=f"Ransomware report {i}", published_at=NOW - i, guid=str(i))
        for i in range(5)
    ])
    return get_feed(feed_id)


def _provider(text):
    provider = MagicMock()
    provider.complete.return_value = AiCompletionResponse(
        text=text, input_tokens=50, output_tokens=10, model="gemini-2.5-flash", provider="gemini", duration_ms=1,
    )
    return provider


class TestParseTopicResponse:
    def test_parses_and_clamps(self):
        from feed_pipeline.topics import parse_topic_response

        topics = parse_topic_response(
            '```json\n{"topics": [{"topic": "Cybersecurity", "confidence": 1.7}, '
            '{"topic": "Privacy", "confidence": "high"}]}\n```'
        )

        assert topics == [("Cybersecurity", 1.0), ("Privacy", 0.5)]

    def test_dedupes_and_limits(self):
        from feed_pipeline.topics import parse_topic_response

        topics = parse_topic_response(
            '{"topics": [{"topic": "A"}, {"topic": "a"}, {"topic": "B"}, {"topic": "C"}, {"topic": "D"}]}'
        )

        assert [name for name, _ in topics] == ["A", "B", "C"]

    def test_drops_invalid(self):
        from feed_pipeline.topics import parse_topic_response

        assert parse_topic_response("not json") == []
        assert parse_topic_response('{"topics": [{"topic": "' + "x" * 51 + '"}, "bare"]}') == []


class TestClassifyFeedTopics:
    """Tests for first-time feed classification."""

    def test_proposes_pending_topics(self, feed):
        from feed_pipeline.database import get_feed
        from feed_pipeline.topics import classify_feed_topics, get_feed_topics

        provider = _provider('{"topics": [{"topic": "Cybersecurity", "confidence": 0.9}]}')

        proposed = classify_feed_topics("acct", feed, provider, NOW)

        assert proposed == ["Cybersecurity"]
        feed_topics = get_feed_topics(feed.id)
        assert len(feed_topics) == 1
        assert feed_topics[0].status == FeedTopicStatus.PENDING
        assert feed_topics[0].confidence == 0.9
        stored = get_feed(feed.id)
        assert stored.classification_status == ClassificationStatus.CLASSIFIED
        assert stored.classified_at == NOW

    def test_reuses_existing_topic_names(self, feed):
        from feed_pipeline.database import add_feed, get_feed
        from feed_pipeline.topics import classify_feed_topics, get_topic_names
        from feed_pipeline.upsert import upsert_items

        classify_feed_topics("acct", feed, _provider('{"topics": [{"topic": "Cybersecurity"}]}'), NOW)
        other_id = add_feed(Feed(account_id="acct", url="https://other.example.com/rss"))
        upsert_items("acct", other_id, [ParsedItem(url="https://other.example.com/1", title="Breach", published_at=NOW)])

        classify_feed_topics("acct", get_feed(other_id), _provider('{"topics": [{"topic": "cybersecurity"}]}'), NOW)

        assert get_topic_names("acct") == ["Cybersecurity"]

    def test_provider_error_leaves_feed_pending(self, feed):
        from feed_pipeline.database import get_feed
        from feed_pipeline.topics import classify_feed_topics

        assert classify_feed_topics("acct", feed, _provider("[gemini error] boom"), NOW) == []
        assert get_feed(feed.id).classification_status == ClassificationStatus.PENDING

    def test_classified_feed_skipped(self, feed):
        from feed_pipeline.topics import classify_feed_topics

        feed.classification_status = ClassificationStatus.CLASSIFIED
        provider = _provider('{"topics": []}')

        assert classify_feed_topics("acct", feed, provider, NOW) == []
        provider.complete.assert_not_called()


class TestDetectTopicDrift:
    """Tests for drift detection on classified feeds."""

    def _approve(self, feed, names):
        from feed_pipeline.topics import get_feed_topics, propose_topics, set_feed_topic_status

        propose_topics("acct", feed.id, [(name, 0.9) for name in names], NOW)
        for feed_topic in get_feed_topics(feed.id):
            set_feed_topic_status(feed_topic.id, FeedTopicStatus.APPROVED)
        feed.classification_status = ClassificationStatus.CLASSIFIED

    def test_no_drift(self, feed):
        from feed_pipeline.topics import detect_topic_drift

        self._approve(feed, ["Cybersecurity", "Privacy"])
        result = detect_topic_drift(
            "acct", feed, _provider('{"topics": [{"topic": "cybersecurity"}, {"topic": "Privacy"}]}'), NOW
        )

        assert result.drifted is False
        assert result.ratio == 0.0
        assert result.new_topics == []

    def test_check_records_time_without_drift(self, feed):
        """Test that a completed check without drift still moves classified_at."""
        from feed_pipeline.database import get_feed
        from feed_pipeline.topics import detect_topic_drift

        self._approve(feed, ["Cybersecurity"])
        detect_topic_drift("acct", feed, _provider('{"topics": [{"topic": "Cybersecurity"}]}'), NOW + 3600)

        assert get_feed(feed.id).classified_at == NOW + 3600

    def test_drift_proposes_new_topics(self, feed):
        from feed_pipeline.topics import detect_topic_drift, get_feed_topics

        self._approve(feed, ["Cybersecurity"])
        result = detect_topic_drift(
            "acct", feed, _provider('{"topics": [{"topic": "Cybersecurity"}, {"topic": "Crypto"}]}'), NOW
        )

        assert result.drifted is True
        assert result.ratio == 0.5
        assert result.new_topics == ["Crypto"]
        assert len(get_feed_topics(feed.id, FeedTopicStatus.PENDING)) == 1

    def test_pending_feed_not_checked(self, feed):
        from feed_pipeline.topics import detect_topic_drift

        assert detect_topic_drift("acct", feed, _provider("{}"), NOW) is None
