"""
Keyword-based folder classification for new clusters.
"""

import re

from feed_pipeline.features import tokenize

DEFAULT_FOLDER = "Other"

# Checked in order; the folder with the most keyword hits wins, earlier folders win ties
FOLDER_KEYWORDS = {
    "Security": {
        "security", "hack", "hacked", "hacker", "hackers", "breach", "ransomware",
        "malware", "vulnerability", "exploit", "cve", "phishing", "cisa", "zeroday",
        "encryption", "botnet", "spyware",
    },
    "Gaming": {
        "game", "games", "gaming", "gamer", "xbox", "playstation", "nintendo",
        "steam", "esports", "roblox", "minecraft", "fortnite", "console",
    },
    "Tech": {
        "ai", "software", "apple", "google", "microsoft", "android", "iphone",
        "chip", "chips", "startup", "app", "apps", "linux", "cloud", "openai",
        "programming", "developer", "developers", "browser", "smartphone",
    },
    "Business": {
        "market", "markets", "stock", "stocks", "earnings", "revenue", "economy",
        "ceo", "ipo", "acquisition", "merger", "investors", "bank", "inflation",
        "profit", "shares",
    },
    "Politics": {
        "election", "elections", "senate", "congress", "president", "parliament",
        "government", "minister", "vote", "voters", "campaign", "policy", "law",
        "democrats", "republicans", "court",
    },
    "Sports": {
        "football", "soccer", "basketball", "baseball", "tennis", "nba", "nfl",
        "olympics", "championship", "league", "match", "tournament", "coach",
        "goal", "cup",
    },
    "Design": {
        "design", "designer", "typography", "ux", "ui", "figma", "font",
        "fonts", "branding", "logo", "illustration", "architecture",
    },
    "Local": {
        "city", "county", "council", "mayor", "neighborhood", "local",
        "police", "school", "district", "residents",
    },
    "World": {
        "war", "ukraine", "russia", "china", "israel", "gaza", "eu", "un",
        "nato", "global", "international", "foreign", "embassy", "refugees",
    },
}

_TAG_RE = re.compile(r"<[^>]+>")


def classify_item(title: str, summary: str = "") -> str:
    """Pick a folder name for an item from keyword hits in its text."""
    text = f"{title or ''} {_TAG_RE.sub(' ', summary or '')}"
    tokens = set(tokenize(text))
    if not tokens:
        return DEFAULT_FOLDER

    best_folder = DEFAULT_FOLDER
    best_hits = 0
    for folder, keywords in FOLDER_KEYWORDS.items():
        hits = len(tokens & keywords)
        if hits > best_hits:
            best_folder = folder
            best_hits = hits
    return best_folder
