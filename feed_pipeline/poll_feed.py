"""
Conditional feed fetching and parsing (RSS, Atom, RDF and JSON Feed).
"""

import calendar
import json
import time
from datetime import datetime, timezone
from typing import List, Optional

import feedparser  # type: ignore
import requests
from bs4 import BeautifulSoup

from feed_pipeline.constants import FEED_ACCEPT_HEADER, UNTITLED, USER_AGENT
from feed_pipeline.errors import FeedFetchError, FeedParseError
from feed_pipeline.models import Feed, ParsedItem, PollResult
from feed_pipeline.url_guard import guarded_get, validate_feed_url
from util.logging_util import setup_logger

logger = setup_logger(__name__)

DEFAULT_POLL_TIMEOUT_SECONDS = 30

JSON_FEED_VERSION_PREFIX = "https://jsonfeed.org/version/"


def _first_image_in_html(html: Optional[str]) -> Optional[str]:
    if not html or "<img" not in html:
        return None
    soup = BeautifulSoup(html, "html.parser")
    img = soup.find("img", src=True)
    if img is None:
        return None
    return img["src"]


def _extract_hero_image(entry: dict, summary: Optional[str]) -> Optional[str]:
    """Pick a hero image from media thumbnails, media content, enclosures or the summary."""
    for thumb in entry.get("media_thumbnail", []) or []:
        if thumb.get("url"):
            return thumb["url"]

    media = entry.get("media_content", []) or []
    for content in media:
        content_type = content.get("type", "") or ""
        if content.get("url") and (content_type.startswith("image/") or content.get("medium") == "image"):
            return content["url"]
    for content in media:
        if content.get("url"):
            return content["url"]

    for enclosure in entry.get("enclosures", []) or []:
        if enclosure.get("href") and (enclosure.get("type", "") or "").startswith("image/"):
            return enclosure["href"]

    return _first_image_in_html(summary)


def _entry_published_at(entry: dict, fetched_at: int) -> int:
    for key in ("published_parsed", "updated_parsed", "created_parsed"):
        parsed = entry.get(key)
        if parsed:
            return calendar.timegm(parsed)
    return fetched_at


def _entry_summary(entry: dict) -> Optional[str]:
    summary = entry.get("summary") or entry.get("description")
    if summary:
        return summary
    content = entry.get("content") or []
    if content and content[0].get("value"):
        return content[0]["value"]
    return None


def _entry_author(entry: dict) -> Optional[str]:
    if entry.get("author"):
        return entry["author"]
    authors = entry.get("authors") or []
    names = [a.get("name") for a in authors if isinstance(a, dict) and a.get("name")]
    if names:
        return ", ".join(names)
    return None


def parse_xml_feed(body: bytes, fetched_at: int):
    """Parse an RSS/Atom/RDF body.

    Returns (items, feed_title, format). Raises FeedParseError when the body
    is not a recognizable feed.
    """
    parsed = feedparser.parse(body)
    if parsed.get("bozo") and not parsed.get("entries") and not parsed.get("version"):
        raise FeedParseError(f"Could not parse feed: {parsed.get('bozo_exception')}")
    if not parsed.get("version") and not parsed.get("entries"):
        raise FeedParseError("Response is not a recognizable feed")

    items: List[ParsedItem] = []
    for entry in parsed.entries:
        url = entry.get("link") or entry.get("id")
        if not url:
            continue
        summary = _entry_summary(entry)
        items.append(ParsedItem(
            guid=entry.get("id"),
            url=url,
            title=(entry.get("title") or "").strip() or UNTITLED,
            summary=summary,
            published_at=_entry_published_at(entry, fetched_at),
            author=_entry_author(entry),
            hero_image_url=_extract_hero_image(entry, summary),
        ))

    feed_title = parsed.feed.get("title") if parsed.get("feed") else None
    return items, feed_title, parsed.get("version") or "unknown"


def _parse_iso_datetime(value: Optional[str], fetched_at: int) -> int:
    if not value:
        return fetched_at
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return fetched_at
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def parse_json_feed(data: dict, fetched_at: int):
    """Parse a JSON Feed document.

    Returns (items, feed_title, format).
    """
    items: List[ParsedItem] = []
    for entry in data.get("items", []) or []:
        url = entry.get("url") or entry.get("external_url") or entry.get("id")
        if not url:
            continue
        summary = entry.get("summary") or entry.get("content_text") or entry.get("content_html")
        author = None
        authors = entry.get("authors") or ([entry["author"]] if entry.get("author") else [])
        names = [a.get("name") for a in authors if isinstance(a, dict) and a.get("name")]
        if names:
            author = ", ".join(names)
        image = entry.get("image") or entry.get("banner_image") or _first_image_in_html(
            entry.get("content_html")
        )
        items.append(ParsedItem(
            guid=str(entry["id"]) if entry.get("id") is not None else None,
            url=url,
            title=(entry.get("title") or "").strip() or UNTITLED,
            summary=summary,
            published_at=_parse_iso_datetime(entry.get("date_published") or entry.get("date_modified"), fetched_at),
            author=author,
            hero_image_url=image,
        ))
    return items, data.get("title"), "json"


def _looks_like_json_feed(body: bytes, content_type: str) -> Optional[dict]:
    if "json" not in content_type and not body.lstrip().startswith(b"{"):
        return None
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        if "json" in content_type:
            raise FeedParseError("Response declared JSON but could not be decoded")
        return None
    if not isinstance(data, dict) or not str(data.get("version", "")).startswith(JSON_FEED_VERSION_PREFIX):
        raise FeedParseError("JSON response is not a JSON Feed document")
    return data


def poll_feed(feed: Feed, timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS, now: Optional[int] = None) -> PollResult:
    """Fetch a feed with conditional GET and parse its items.

    A 304 response returns a not-modified result carrying the stored
    validators. Raises FeedUrlValidationError, FeedFetchError or
    FeedParseError; these are mandatory-stage failures.
    """
    validate_feed_url(feed.url)
    fetched_at = now or int(time.time())

    headers = {
        "User-Agent": USER_AGENT,
        "Accept": FEED_ACCEPT_HEADER,
    }
    if feed.etag:
        headers["If-None-Match"] = feed.etag
    if feed.last_modified:
        headers["If-Modified-Since"] = feed.last_modified

    try:
        response = guarded_get(feed.url, headers=headers, timeout=timeout)
    except requests.RequestException as e:
        raise FeedFetchError(f"Request failed: {e}") from e

    if response.status_code == 304:
        logger.info(f"Feed {feed.id} not modified")
        return PollResult(
            not_modified=True,
            etag=feed.etag,
            last_modified=feed.last_modified,
        )
    if response.status_code < 200 or response.status_code >= 300:
        raise FeedFetchError(f"HTTP {response.status_code}", status_code=response.status_code)

    content_type = (response.headers.get("Content-Type") or "").lower()
    body = response.content

    json_data = _looks_like_json_feed(body, content_type)
    if json_data is not None:
        items, feed_title, feed_format = parse_json_feed(json_data, fetched_at)
    else:
        items, feed_title, feed_format = parse_xml_feed(body, fetched_at)

    logger.info(f"Parsed {len(items)} items from feed {feed.id} ({feed_format})")
    return PollResult(
        not_modified=False,
        items=items,
        etag=response.headers.get("ETag"),
        last_modified=response.headers.get("Last-Modified"),
        feed_title=feed_title,
        format=feed_format,
    )
