"""
Worker configuration loaded from YAML with environment overrides.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from feed_pipeline import constants


@dataclass
class ClusteringConfig:
    """Near-duplicate clustering thresholds."""
    simhash_max_distance: int = constants.SIMHASH_MAX_DISTANCE
    jaccard_min_similarity: float = constants.JACCARD_MIN_SIMILARITY
    time_window_hours: int = constants.CLUSTER_TIME_WINDOW_HOURS
    candidate_limit: int = constants.CLUSTER_CANDIDATE_LIMIT


@dataclass
class DigestConfig:
    """Digest triggers and section sizes."""
    window_hours: int = constants.DIGEST_WINDOW_HOURS
    backlog_threshold: int = constants.DIGEST_BACKLOG_THRESHOLD
    away_hours: int = constants.DIGEST_AWAY_HOURS
    top_picks: int = constants.DIGEST_TOP_PICKS
    big_stories: int = constants.DIGEST_BIG_STORIES
    quick_scan: int = constants.DIGEST_QUICK_SCAN
    daily_hour_utc: int = 7


@dataclass
class TimeoutConfig:
    """Network timeouts in seconds."""
    poll: float = 30.0
    og_image: float = 10.0
    fulltext: float = 20.0
    push: float = 10.0


@dataclass
class AiConfig:
    """AI provider selection."""
    provider: str = "gemini"
    model: str = "gemini-2.5-flash"
    api_key: str = ""


@dataclass
class WorkerConfig:
    """Job runner and scheduler settings."""
    poll_interval_minutes: int = 10
    feed_batch_size: int = 100
    concurrency: int = 4
    max_attempts: int = 3
    retry_delay_seconds: int = 60
    idle_sleep_seconds: float = 5.0
    job_lease_seconds: int = 900
    fulltext_enabled: bool = True
    fulltext_backfill_limit: int = 50
    topic_drift_days: int = 7


@dataclass
class PushConfig:
    """Push transport settings."""
    telegram_bot_token: str = ""


@dataclass
class Settings:
    """Worker settings."""

    database_url: Optional[str] = None

    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    digest: DigestConfig = field(default_factory=DigestConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    ai: AiConfig = field(default_factory=AiConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    push: PushConfig = field(default_factory=PushConfig)


SECTIONS = ("clustering", "digest", "timeouts", "ai", "worker", "push")


def load_config(config_path: Path = Path("config.yaml")) -> dict:
    """Load configuration from YAML file."""
    if not config_path.exists():
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_settings(config_path: Path = Path("config.yaml")) -> Settings:
    """Get worker settings from YAML config and environment."""
    config = load_config(config_path)
    settings = Settings(database_url=config.get("database_url"))

    for section in SECTIONS:
        for key, value in (config.get(section) or {}).items():
            target = getattr(settings, section)
            if not hasattr(target, key):
                raise ValueError(f"Unknown setting {section}.{key}")
            setattr(target, key, value)

    # Environment wins over the file
    if os.getenv("DATABASE_URL"):
        settings.database_url = os.environ["DATABASE_URL"]
    if os.getenv("GEMINI_API_KEY"):
        settings.ai.api_key = os.environ["GEMINI_API_KEY"]
    if os.getenv("AI_PROVIDER"):
        settings.ai.provider = os.environ["AI_PROVIDER"]
    if os.getenv("TELEGRAM_BOT_TOKEN"):
        settings.push.telegram_bot_token = os.environ["TELEGRAM_BOT_TOKEN"]
    if os.getenv("WORKER_POLL_MINUTES"):
        settings.worker.poll_interval_minutes = int(os.environ["WORKER_POLL_MINUTES"])
    if os.getenv("WORKER_BATCH_SIZE"):
        settings.worker.feed_batch_size = int(os.environ["WORKER_BATCH_SIZE"])

    return settings
