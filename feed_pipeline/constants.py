"""
Constants for the feed ingestion pipeline.
"""

from pathlib import Path

MODULE_ROOT = Path(__file__).parent

PROMPTS_DIR = MODULE_ROOT / "prompts"

DB_NAME = "feed_pipeline.db"

USER_AGENT = "FeedPipeline/1.0"

FEED_ACCEPT_HEADER = (
    "application/rss+xml, application/atom+xml, application/feed+json, "
    "application/json, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5"
)

UNTITLED = "(untitled)"

# Query params that only carry campaign/click tracking
TRACKING_PARAMS = frozenset({
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "utm_id",
    "fbclid",
    "gclid",
    "gclsrc",
    "dclid",
    "msclkid",
    "twclid",
    "igshid",
    "mc_cid",
    "mc_eid",
    "ref",
    "source",
    "s",
    "_hsenc",
    "_hsmi",
})

STOP_WORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "from", "is", "was", "are", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "shall", "can", "this", "that", "these",
    "those", "it", "its", "not", "no", "so", "if", "as",
})

# Clustering
SIMHASH_MAX_DISTANCE = 10
JACCARD_MIN_SIMILARITY = 0.25
CLUSTER_TIME_WINDOW_HOURS = 48
CLUSTER_CANDIDATE_LIMIT = 2000

# Feed weight ranking used for representative selection and digests
WEIGHT_RANK = {
    "prefer": 3,
    "neutral": 2,
    "deprioritize": 1,
}

# Filters
MAX_REGEX_LENGTH = 500
MAX_REGEX_INPUT_LENGTH = 100_000
BREAKOUT_CLUSTER_SIZE = 4

SEVERITY_KEYWORDS = (
    "hack",
    "hacked",
    "breach",
    "breached",
    "0day",
    "zero-day",
    "zeroday",
    "arrest",
    "arrested",
    "indictment",
    "doj",
    "cisa",
    "fbi",
    "state-backed",
    "state-sponsored",
    "nation-state",
    "outage",
    "down",
    "disruption",
    "ransomware",
    "exploit",
    "vulnerability",
    "critical",
    "emergency",
    "recall",
    "leak",
    "leaked",
    "data breach",
)

# Circuit breaker: consecutive failures -> cooldown hours
CIRCUIT_COOLDOWN_HOURS = {
    3: 1,
    4: 4,
    5: 12,
}
CIRCUIT_MAX_COOLDOWN_HOURS = 24

# Plans
DEFAULT_PLAN = "free"
PLAN_LIMITS = {
    "free": {"max_items_per_day": 500, "min_poll_minutes": 60},
    "pro": {"max_items_per_day": None, "min_poll_minutes": 10},
    "pro_ai": {"max_items_per_day": None, "min_poll_minutes": 10},
}

# Monthly AI token allowance per plan
PLAN_AI_TOKEN_LIMITS = {
    "free": 10_000,
    "pro": 100_000,
    "pro_ai": 1_000_000,
}

# USD per million tokens (input, output)
MODEL_COSTS = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "claude-sonnet": (3.00, 15.00),
    "claude-haiku": (0.80, 4.00),
    "gemini-2.5-flash": (0.30, 2.50),
    "gemini-2.5-pro": (1.25, 10.00),
}
DEFAULT_MODEL_COST = MODEL_COSTS["gpt-4o-mini"]

# Enrichment
OG_IMAGE_MAX_BYTES = 50_000
OG_IMAGE_CONCURRENCY = 5
SUMMARY_MAX_TOKENS = 150
SUMMARY_TEMPERATURE = 0.3

# Relevance scoring
RELEVANCE_BATCH_SIZE = 10
RELEVANCE_MAX_TOKENS = 200
RELEVANCE_TEMPERATURE = 0.1
RELEVANCE_LABELS = ("likely relevant", "explore", "noise")
DEFAULT_RELEVANCE_LABEL = "explore"
MAX_SUGGESTED_TAGS = 3
MAX_TAG_LENGTH = 50

# Topics
TOPIC_SAMPLE_SIZE = 20
DRIFT_SAMPLE_SIZE = 30
DRIFT_THRESHOLD = 0.35
MAX_TOPICS_PER_FEED = 3
MAX_TOPIC_LENGTH = 50
TOPIC_LIST_LIMIT = 30

# Full text
FULLTEXT_CONCURRENCY = 3
FULLTEXT_MAX_HTML_BYTES = 2_000_000
FULLTEXT_MIN_TEXT_LENGTH = 200
FULLTEXT_MAX_TEXT_LENGTH = 200_000
FULLTEXT_FAILURE_COOLDOWN_SECONDS = 6 * 60 * 60
FULLTEXT_FAILURE_CACHE_MAX = 5000
FULLTEXT_BACKFILL_MAX = 250
FULLTEXT_BACKFILL_FETCH_MULTIPLIER = 6

# Digest
DIGEST_TOP_PICKS = 5
DIGEST_BIG_STORIES = 5
DIGEST_QUICK_SCAN = 10
DIGEST_WINDOW_HOURS = 24
DIGEST_BACKLOG_THRESHOLD = 50
DIGEST_AWAY_HOURS = 24
DIGEST_ONE_LINER_LENGTH = 120

# Prompt input sanitization
PROMPT_MAX_FIELD_LENGTH = 500
