"""
Item enrichment: hero images from page metadata and AI summaries.

Image scraping needs no AI and runs for every new item without an image.
AI summaries only run for items without a feed summary, when the account
has AI enabled and is inside its monthly budget.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup

from feed_pipeline.ai_usage import is_over_budget, log_ai_usage
from feed_pipeline.constants import (
    OG_IMAGE_CONCURRENCY,
    OG_IMAGE_MAX_BYTES,
    PROMPTS_DIR,
    SUMMARY_MAX_TOKENS,
    SUMMARY_TEMPERATURE,
    USER_AGENT,
)
from feed_pipeline.database import update_item_hero_image, update_item_summary
from feed_pipeline.errors import FeedUrlValidationError
from feed_pipeline.models import AccountSettings, AiMode, Item
from feed_pipeline.url_guard import guarded_get, is_safe_url
from llm.llm_util import get_llm_response, sanitize_for_prompt
from llm.provider import AiProvider
from util.logging_util import setup_logger

logger = setup_logger(__name__)

SUMMARIZE_ITEM_TEMPLATE = PROMPTS_DIR / "summarize_item.jinja2"

SUMMARY_SYSTEM_PROMPT = (
    "You are a concise news summarizer. Write a neutral 1-2 sentence summary "
    "of the article. Do not add opinions or information that is not in the text."
)

IMAGE_META_KEYS = ("og:image", "og:image:url", "twitter:image", "twitter:image:src")


def _read_head(response: requests.Response, max_bytes: int) -> str:
    """Read the response until </head> or max_bytes, whichever comes first."""
    chunks = []
    total = 0
    for chunk in response.iter_content(chunk_size=8192):
        if not chunk:
            continue
        chunks.append(chunk)
        total += len(chunk)
        if total >= max_bytes or b"</head>" in chunk.lower():
            break
    body = b"".join(chunks)[:max_bytes]
    return body.decode(response.encoding or "utf-8", errors="replace")


def extract_image_from_html(html: str, base_url: str) -> Optional[str]:
    """og:image, then twitter:image, from <meta> tags in any attribute order."""
    soup = BeautifulSoup(html, "html.parser")
    found = {}
    for meta in soup.find_all("meta"):
        key = (meta.get("property") or meta.get("name") or "").strip().lower()
        content = (meta.get("content") or "").strip()
        if key in IMAGE_META_KEYS and content and key not in found:
            found[key] = content
    for key in IMAGE_META_KEYS:
        if key in found:
            return urljoin(base_url, found[key])
    return None


def fetch_og_image(url: str, timeout: float = 10.0) -> Optional[str]:
    """Scrape the hero image of an article page. Returns None on any failure."""
    if not is_safe_url(url):
        return None
    try:
        with guarded_get(
            url,
            headers={"User-Agent": USER_AGENT, "Accept": "text/html"},
            timeout=timeout,
            stream=True,
        ) as response:
            if response.status_code != 200:
                return None
            html = _read_head(response, OG_IMAGE_MAX_BYTES)
    except (requests.RequestException, FeedUrlValidationError) as e:
        logger.debug(f"og:image fetch failed for {url}: {e}")
        return None
    return extract_image_from_html(html, url)


def enrich_hero_images(items: List[Item], timeout: float = 10.0) -> int:
    """Fill in missing hero images. Returns how many items got one."""
    targets = [item for item in items if not item.hero_image_url]
    if not targets:
        return 0

    with ThreadPoolExecutor(max_workers=OG_IMAGE_CONCURRENCY) as pool:
        images = list(pool.map(lambda item: fetch_og_image(item.url, timeout), targets))

    updated = 0
    for item, image in zip(targets, images):
        if image:
            update_item_hero_image(item.id, image)
            item.hero_image_url = image
            updated += 1
    logger.info(f"Found hero images for {updated}/{len(targets)} items")
    return updated


def summarize_item(provider: AiProvider, account_id: str, item: Item) -> Optional[str]:
    """Generate a short summary for one item, or None if the provider failed."""
    content = item.extracted_text or item.title
    response = get_llm_response(
        provider,
        SUMMARIZE_ITEM_TEMPLATE,
        {
            "title": sanitize_for_prompt(item.title),
            "source": sanitize_for_prompt(item.author),
            "content": sanitize_for_prompt(content, max_length=4000),
        },
        system_prompt=SUMMARY_SYSTEM_PROMPT,
        max_tokens=SUMMARY_MAX_TOKENS,
        temperature=SUMMARY_TEMPERATURE,
    )
    if response.is_error:
        return None
    log_ai_usage(account_id, response, "summary")
    return response.text.strip() or None


def generate_ai_summaries(
    account_id: str, items: List[Item], provider: Optional[AiProvider], settings: AccountSettings
) -> int:
    """Summarize items that arrived without a summary. Returns how many were written."""
    if provider is None or settings.ai_mode == AiMode.OFF:
        return 0
    targets = [item for item in items if not (item.summary or "").strip()]
    written = 0
    for item in targets:
        if is_over_budget(account_id):
            logger.info(f"Stopping AI summaries for {account_id}: monthly budget reached")
            break
        summary = summarize_item(provider, account_id, item)
        if summary:
            update_item_summary(item.id, summary)
            item.summary = summary
            written += 1
    return written
