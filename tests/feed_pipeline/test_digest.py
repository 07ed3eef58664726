"""Tests for digest triggers, sections and rendering."""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine

from feed_pipeline import db_engine
from feed_pipeline.config import DigestConfig
from feed_pipeline.models import AccountSettings, AiMode, Feed, FeedWeight, ParsedItem
from feed_pipeline.orm_models import Base
from llm.provider import AiCompletionResponse

NOW = 1_714_989_600  # 2024-05-06 10:00 UTC
HOUR = 3600


@pytest.fixture
def temp_db():
    """Create a temporary in-memory database for testing."""
    test_engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(test_engine)
    db_engine.set_engine(test_engine)
    yield test_engine
    db_engine.reset_engine()


def _seed_clusters(titles, weight=FeedWeight.NEUTRAL, url="https://example.com/rss", now=NOW):
    """Ingest and cluster one item per title. Returns cluster ids in title order."""
    from feed_pipeline.clustering import assign_clusters
    from feed_pipeline.database import add_feed
    from feed_pipeline.upsert import upsert_items

    feed_id = add_feed(Feed(account_id="acct", url=url, weight=weight))
    parsed = [
        ParsedItem(url=f"{url}/{i}", title=title, published_at=NOW - HOUR + i, guid=f"{url}-{i}",
                   summary=f"Summary for {title}")
        for i, title in enumerate(titles)
    ]
    items = [u.item for u in upsert_items("acct", feed_id, parsed, now=now).succeeded]
    result = assign_clusters("acct", items, now=now)
    return [result.item_clusters[item.id] for item in items]


def _row(cluster_id, size=1, weight_rank=2, published_at=0):
    return {
        "cluster_id": cluster_id,
        "size": size,
        "headline": f"Story {cluster_id}",
        "url": f"https://example.com/{cluster_id}",
        "summary": None,
        "published_at": published_at,
        "weight_rank": weight_rank,
    }


class TestOneLiner:
    def test_short_text_unchanged(self):
        from feed_pipeline.digest import one_liner

        assert one_liner("A short summary.") == "A short summary."
        assert one_liner(None) == ""

    def test_truncates_with_ellipsis(self):
        from feed_pipeline.digest import one_liner

        text = one_liner("word " * 100)
        assert len(text) <= 120
        assert text.endswith("...")

    def test_strips_html(self):
        from feed_pipeline.digest import one_liner

        assert one_liner("<p>Hello <b>world</b></p>") == "Hello world"


class TestBuildSections:
    """Tests for section assignment."""

    def test_sections_are_disjoint(self):
        from feed_pipeline.digest import BIG_STORIES, QUICK_SCAN, TOP_PICKS, build_sections

        config = DigestConfig(top_picks=2, big_stories=2, quick_scan=2)
        rows = [_row(1), _row(2), _row(3, size=2), _row(4), _row(5, size=5), _row(6), _row(7)]

        entries = build_sections(rows, config)

        by_section = {}
        for entry in entries:
            by_section.setdefault(entry.section, []).append(entry.cluster_id)
        assert by_section[TOP_PICKS] == [1, 2]
        assert by_section[BIG_STORIES] == [5, 3]
        assert by_section[QUICK_SCAN] == [4, 6]
        assert len({e.cluster_id for e in entries}) == len(entries)

    def test_empty(self):
        from feed_pipeline.digest import build_sections

        assert build_sections([], DigestConfig()) == []


class TestRenderMarkdown:
    def test_headings_and_links(self):
        from feed_pipeline.digest import render_markdown
        from feed_pipeline.models import DigestEntry

        body = render_markdown([
            DigestEntry(1, "Big news", "https://example.com/1", "It happened.", 3, "top_picks"),
            DigestEntry(2, "Small news", "https://example.com/2", "Minor.", 1, "quick_scan"),
        ])

        assert "## Top Picks" in body
        assert "- **[Big news](https://example.com/1)** (3 sources)" in body
        assert "## Big Stories" not in body
        assert "- [Small news](https://example.com/2) - Minor." in body


class TestDigestTrigger:
    """Tests for when a digest fires."""

    def test_no_backlog_no_digest(self, temp_db):
        from feed_pipeline.digest import digest_trigger

        assert digest_trigger("acct", NOW) is None

    def test_schedule_when_no_previous_digest(self, temp_db):
        from feed_pipeline.digest import digest_trigger

        _seed_clusters(["Apple unveils new iPhone"])

        assert digest_trigger("acct", NOW) == "schedule"

    def test_backlog_threshold(self, temp_db):
        from feed_pipeline.digest import digest_trigger

        _seed_clusters(["Apple unveils new iPhone", "Central bank raises rates"])

        assert digest_trigger("acct", NOW, DigestConfig(backlog_threshold=2)) == "backlog"

    def test_away_after_recent_digest(self, temp_db):
        from feed_pipeline.digest import digest_trigger, generate_digest

        _seed_clusters(["Apple unveils new iPhone"], now=NOW - 2 * HOUR)
        generate_digest("acct", NOW - HOUR, settings=AccountSettings(account_id="acct"))
        _seed_clusters(["Central bank raises rates"], url="https://other.example.com/rss")

        active = AccountSettings(account_id="acct", last_active_at=NOW - HOUR)
        away = AccountSettings(account_id="acct", last_active_at=NOW - 30 * HOUR)
        assert digest_trigger("acct", NOW, settings=active) is None
        assert digest_trigger("acct", NOW, settings=away) == "away"

    def test_read_clusters_are_not_backlog(self, temp_db):
        from feed_pipeline.database import mark_cluster_read
        from feed_pipeline.digest import count_unread_backlog

        cluster_ids = _seed_clusters(["Apple unveils new iPhone", "Central bank raises rates"])
        mark_cluster_read("acct", cluster_ids[0], NOW)

        assert count_unread_backlog("acct") == 1


class TestGenerateDigest:
    """Tests for generate_digest."""

    def test_stores_markdown_digest(self, temp_db):
        from feed_pipeline.digest import generate_digest, get_latest_digest

        _seed_clusters(["Apple unveils new iPhone", "Central bank raises rates"])

        digest = generate_digest("acct", NOW, settings=AccountSettings(account_id="acct"))

        assert digest is not None
        assert digest.title == "Digest for 2024-05-05 10:00 UTC - 2024-05-06 10:00 UTC"
        assert "## Top Picks" in digest.body
        assert len(digest.entries) == 2
        assert digest.entries[0].section == "top_picks"
        assert get_latest_digest("acct").id == digest.id

    def test_preferred_feed_ranks_first(self, temp_db):
        from feed_pipeline.digest import generate_digest

        _seed_clusters(["Central bank raises rates"])
        preferred = _seed_clusters(["Apple unveils new iPhone"], FeedWeight.PREFER, "https://pref.example.com/rss")

        digest = generate_digest("acct", NOW, settings=AccountSettings(account_id="acct"))

        assert digest.entries[0].cluster_id == preferred[0]

    def test_no_overlapping_digests(self, temp_db):
        from feed_pipeline.digest import generate_digest

        _seed_clusters(["Apple unveils new iPhone"])

        assert generate_digest("acct", NOW, settings=AccountSettings(account_id="acct")) is not None
        assert generate_digest("acct", NOW + HOUR, settings=AccountSettings(account_id="acct")) is None

    def test_ai_narrative(self, temp_db):
        """Test that an AI narrative replaces the bullet list when AI is on."""
        from feed_pipeline.digest import generate_digest

        _seed_clusters(["Apple unveils new iPhone"])
        provider = MagicMock()
        provider.complete.return_value = AiCompletionResponse(
            text="Today Apple launched a phone.", input_tokens=100, output_tokens=20,
            model="gemini-2.5-flash", provider="gemini", duration_ms=5,
        )
        settings = AccountSettings(account_id="acct", ai_mode=AiMode.SUMMARIES_DIGEST)

        digest = generate_digest("acct", NOW, provider, settings)

        assert digest.body == "Today Apple launched a phone."
        provider.complete.assert_called_once()

    def test_ai_failure_falls_back(self, temp_db):
        from feed_pipeline.digest import generate_digest

        _seed_clusters(["Apple unveils new iPhone"])
        provider = MagicMock()
        provider.complete.return_value = AiCompletionResponse(
            text="[gemini error] quota", input_tokens=0, output_tokens=0,
            model="gemini-2.5-flash", provider="gemini", duration_ms=5,
        )
        settings = AccountSettings(account_id="acct", ai_mode=AiMode.FULL)

        digest = generate_digest("acct", NOW, provider, settings)

        assert digest.body.startswith("## Top Picks")

    def test_concurrent_runs_write_one_digest(self, temp_db):
        """Test that a digest written while another run is building is not duplicated."""
        from sqlalchemy import select

        from feed_pipeline.digest import generate_digest
        from feed_pipeline.orm_models import DigestORM

        _seed_clusters(["Apple unveils new iPhone"])
        competing = []

        def complete_while_another_run_finishes(*args, **kwargs):
            competing.append(generate_digest("acct", NOW + 30, settings=AccountSettings(account_id="acct")))
            return AiCompletionResponse(
                text="Today Apple launched a phone.", input_tokens=100, output_tokens=20,
                model="gemini-2.5-flash", provider="gemini", duration_ms=5,
            )

        provider = MagicMock()
        provider.complete.side_effect = complete_while_another_run_finishes
        settings = AccountSettings(account_id="acct", ai_mode=AiMode.SUMMARIES_DIGEST)

        assert generate_digest("acct", NOW, provider, settings) is None

        assert competing[0] is not None
        with db_engine.get_session() as session:
            assert len(session.execute(select(DigestORM.id)).scalars().all()) == 1
