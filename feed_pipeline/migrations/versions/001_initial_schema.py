"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

Creates the feed pipeline schema. Databases created with init_db() already
match it and can be stamped instead:
    alembic stamp 001
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # folders table
    op.create_table(
        "folders",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "name", name="uq_folders_account_name"),
    )

    # feeds table
    op.create_table(
        "feeds",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("folder_id", sa.Integer(), nullable=True),
        sa.Column("weight", sa.String(16), nullable=False, server_default="neutral"),
        sa.Column("etag", sa.Text(), nullable=True),
        sa.Column("last_modified", sa.Text(), nullable=True),
        sa.Column("last_polled_at", sa.Integer(), nullable=True),
        sa.Column("classification_status", sa.String(32), nullable=False, server_default="pending_classification"),
        sa.Column("classified_at", sa.Integer(), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("circuit_open_until", sa.Integer(), nullable=True),
        sa.Column("last_failure_reason", sa.Text(), nullable=True),
        sa.Column("muted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("backfill_since", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "url", name="uq_feeds_account_url"),
    )
    op.create_index("idx_feeds_last_polled", "feeds", ["account_id", "last_polled_at"])

    # items table
    op.create_table(
        "items",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("feed_id", sa.Integer(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("canonical_url", sa.Text(), nullable=False),
        sa.Column("guid", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("author", sa.Text(), nullable=True),
        sa.Column("published_at", sa.Integer(), nullable=False),
        sa.Column("hero_image_url", sa.Text(), nullable=True),
        sa.Column("extracted_text", sa.Text(), nullable=True),
        sa.Column("extracted_at", sa.Integer(), nullable=True),
        sa.Column("ai_focus_score", sa.Float(), nullable=True),
        sa.Column("ai_relevant_label", sa.String(32), nullable=True),
        sa.Column("ai_suggested_tags", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_items_feed_guid",
        "items",
        ["account_id", "feed_id", "guid"],
        unique=True,
        sqlite_where=sa.text("guid IS NOT NULL"),
        postgresql_where=sa.text("guid IS NOT NULL"),
    )
    op.create_index(
        "uq_items_feed_url_published",
        "items",
        ["account_id", "feed_id", "canonical_url", "published_at"],
        unique=True,
        sqlite_where=sa.text("guid IS NULL"),
        postgresql_where=sa.text("guid IS NULL"),
    )
    op.create_index("idx_items_published_at", "items", ["account_id", "published_at"])

    # clusters and membership
    op.create_table(
        "clusters",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("rep_item_id", sa.Integer(), nullable=False),
        sa.Column("folder_id", sa.Integer(), nullable=True),
        sa.Column("topic_id", sa.Integer(), nullable=True),
        sa.Column("size", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_clusters_updated_at", "clusters", ["account_id", "updated_at"])

    op.create_table(
        "cluster_members",
        sa.Column("cluster_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("added_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("cluster_id", "item_id"),
        sa.UniqueConstraint("item_id", name="uq_cluster_members_item"),
    )

    op.create_table(
        "read_states",
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("cluster_id", sa.Integer(), nullable=False),
        sa.Column("read_at", sa.Integer(), nullable=True),
        sa.Column("saved_at", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("account_id", "cluster_id"),
    )

    # filters
    op.create_table(
        "filter_rules",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("pattern", sa.Text(), nullable=False),
        sa.Column("target", sa.String(16), nullable=False, server_default="keyword"),
        sa.Column("match_type", sa.String(16), nullable=False, server_default="phrase"),
        sa.Column("mode", sa.String(16), nullable=False, server_default="mute"),
        sa.Column("breakout_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("feed_id", sa.Integer(), nullable=True),
        sa.Column("folder_id", sa.Integer(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "filter_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("rule_id", sa.Integer(), nullable=False),
        sa.Column("cluster_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(16), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_filter_events_cluster", "filter_events", ["account_id", "cluster_id"])

    # usage and budgets
    op.create_table(
        "daily_usage",
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("usage_date", sa.String(10), nullable=False),
        sa.Column("items_ingested", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("account_id", "usage_date"),
    )

    op.create_table(
        "ai_usage",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("input_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("feature", sa.String(32), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_ai_usage_created_at", "ai_usage", ["account_id", "created_at"])

    op.create_table(
        "account_settings",
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("plan_id", sa.String(16), nullable=False, server_default="free"),
        sa.Column("ai_mode", sa.String(32), nullable=False, server_default="off"),
        sa.Column("ai_scoring_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("monthly_ai_cap_usd", sa.Float(), nullable=True),
        sa.Column("last_active_at", sa.Integer(), nullable=True),
        sa.Column("last_digest_end_at", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("account_id"),
    )

    # digests
    op.create_table(
        "digests",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("start_at", sa.Integer(), nullable=False),
        sa.Column("end_at", sa.Integer(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("entries", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_digests_created_at", "digests", ["account_id", "created_at"])

    # topics
    op.create_table(
        "topics",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "name", name="uq_topics_account_name"),
    )

    op.create_table(
        "feed_topics",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("feed_id", sa.Integer(), nullable=False),
        sa.Column("topic_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("proposed_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("feed_id", "topic_id", name="uq_feed_topics_feed_topic"),
    )

    # notifications
    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("chat_id", sa.Text(), nullable=False),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "chat_id", name="uq_push_subscriptions_chat"),
    )

    # worker bookkeeping
    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("idempotency_key", sa.Text(), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=True),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("payload", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("payload", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("run_after", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("singleton_key", sa.Text(), nullable=True),
        sa.Column("locked_until", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_jobs_status_run_after", "jobs", ["status", "run_after"])

    op.create_table(
        "schedule_state",
        sa.Column("job_name", sa.String(64), nullable=False),
        sa.Column("last_enqueued_at", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("job_name"),
    )


def downgrade() -> None:
    op.drop_table("schedule_state")
    op.drop_index("idx_jobs_status_run_after", table_name="jobs")
    op.drop_table("jobs")
    op.drop_table("events")
    op.drop_table("push_subscriptions")
    op.drop_table("feed_topics")
    op.drop_table("topics")
    op.drop_index("idx_digests_created_at", table_name="digests")
    op.drop_table("digests")
    op.drop_table("account_settings")
    op.drop_index("idx_ai_usage_created_at", table_name="ai_usage")
    op.drop_table("ai_usage")
    op.drop_table("daily_usage")
    op.drop_index("idx_filter_events_cluster", table_name="filter_events")
    op.drop_table("filter_events")
    op.drop_table("filter_rules")
    op.drop_table("read_states")
    op.drop_table("cluster_members")
    op.drop_index("idx_clusters_updated_at", table_name="clusters")
    op.drop_table("clusters")
    op.drop_index("idx_items_published_at", table_name="items")
    op.drop_index("uq_items_feed_url_published", table_name="items")
    op.drop_index("uq_items_feed_guid", table_name="items")
    op.drop_table("items")
    op.drop_index("idx_feeds_last_polled", table_name="feeds")
    op.drop_table("feeds")
    op.drop_table("folders")
