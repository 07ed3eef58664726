"""
Digest assembly.

A digest collects the unread story clusters of the last window into three
sections (top picks, big stories, quick scan) and renders them as markdown,
optionally rewritten as an AI narrative.
"""

import time
from dataclasses import asdict
from datetime import datetime, timezone
from typing import List, Optional

from bs4 import BeautifulSoup
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from feed_pipeline.ai_usage import is_over_budget, log_ai_usage
from feed_pipeline.config import DigestConfig
from feed_pipeline.constants import DIGEST_ONE_LINER_LENGTH, PROMPTS_DIR, WEIGHT_RANK
from feed_pipeline.database import get_account_settings
from feed_pipeline.db_engine import get_session
from feed_pipeline.models import AccountSettings, AiMode, Digest, DigestEntry
from feed_pipeline.orm_models import (
    AccountSettingsORM,
    ClusterORM,
    DigestORM,
    FeedORM,
    ItemORM,
    ReadStateORM,
    digest_orm_to_dataclass,
)
from llm.llm_util import get_llm_response, sanitize_for_prompt
from llm.provider import AiProvider
from util.logging_util import setup_logger

logger = setup_logger(__name__)

DIGEST_NARRATIVE_TEMPLATE = PROMPTS_DIR / "digest_narrative.jinja2"
DIGEST_SYSTEM_PROMPT = "You are a news editor writing a concise daily briefing."
DIGEST_MAX_TOKENS = 600
DIGEST_TEMPERATURE = 0.4

TOP_PICKS = "top_picks"
BIG_STORIES = "big_stories"
QUICK_SCAN = "quick_scan"


def one_liner(summary: Optional[str], max_length: int = DIGEST_ONE_LINER_LENGTH) -> str:
    """Plain-text summary cut to max_length characters, ending in "..." when cut."""
    if not summary:
        return ""
    text = BeautifulSoup(summary, "html.parser").get_text(" ", strip=True)
    text = " ".join(text.split())
    if len(text) <= max_length:
        return text
    return text[:max_length - 3].rstrip() + "..."


def _format_time(epoch: int) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def _unread_filter(account_id: str):
    read = (
        select(ReadStateORM.cluster_id)
        .where(ReadStateORM.account_id == account_id, ReadStateORM.read_at.is_not(None))
    )
    return ClusterORM.id.not_in(read)


def count_unread_backlog(account_id: str) -> int:
    with get_session() as session:
        return session.execute(
            select(func.count(ClusterORM.id)).where(
                ClusterORM.account_id == account_id,
                _unread_filter(account_id),
            )
        ).scalar_one()


def get_latest_digest(account_id: str) -> Optional[Digest]:
    with get_session() as session:
        orm = session.execute(
            select(DigestORM)
            .where(DigestORM.account_id == account_id)
            .order_by(DigestORM.created_at.desc(), DigestORM.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        if orm is None:
            return None
        return digest_orm_to_dataclass(orm)


def digest_trigger(
    account_id: str,
    now: Optional[int] = None,
    config: Optional[DigestConfig] = None,
    settings: Optional[AccountSettings] = None,
) -> Optional[str]:
    """Why a digest should be generated now, or None.

    "backlog" when unread clusters reach the threshold, "schedule" when no
    digest was made within the window, "away" when the user has been
    inactive for away_hours. The last two need a non-empty backlog.
    """
    now = now or int(time.time())
    config = config or DigestConfig()
    settings = settings or get_account_settings(account_id)

    backlog = count_unread_backlog(account_id)
    if backlog == 0:
        return None
    if backlog >= config.backlog_threshold:
        return "backlog"

    latest = get_latest_digest(account_id)
    if latest is None or now - latest.created_at >= config.window_hours * 3600:
        return "schedule"

    if settings.last_active_at is not None and now - settings.last_active_at >= config.away_hours * 3600:
        return "away"
    return None


def _ranked_candidates(account_id: str, start: int, end: int):
    with get_session() as session:
        stmt = (
            select(ClusterORM, ItemORM, FeedORM.weight)
            .join(ItemORM, ItemORM.id == ClusterORM.rep_item_id)
            .join(FeedORM, FeedORM.id == ItemORM.feed_id, isouter=True)
            .where(
                ClusterORM.account_id == account_id,
                ClusterORM.updated_at >= start,
                ClusterORM.updated_at <= end,
                _unread_filter(account_id),
            )
        )
        rows = [
            {
                "cluster_id": cluster.id,
                "size": cluster.size,
                "headline": item.title,
                "url": item.url,
                "summary": item.summary,
                "published_at": item.published_at,
                "weight_rank": WEIGHT_RANK.get(weight or "neutral", WEIGHT_RANK["neutral"]),
            }
            for cluster, item, weight in session.execute(stmt).all()
        ]

    rows.sort(key=lambda r: (-r["weight_rank"], -r["size"], -r["published_at"], r["cluster_id"]))
    return rows


def build_sections(rows: List[dict], config: DigestConfig) -> List[DigestEntry]:
    """Split ranked rows into top picks, big stories (multi-source) and quick scan."""
    def entry(row: dict, section: str) -> DigestEntry:
        return DigestEntry(
            cluster_id=row["cluster_id"],
            headline=row["headline"],
            url=row["url"],
            one_liner=one_liner(row["summary"]),
            size=row["size"],
            section=section,
        )

    entries = [entry(row, TOP_PICKS) for row in rows[:config.top_picks]]
    rest = rows[config.top_picks:]

    by_size = sorted(
        (row for row in rest if row["size"] > 1),
        key=lambda r: (-r["size"], -r["published_at"], r["cluster_id"]),
    )
    big = by_size[:config.big_stories]
    entries.extend(entry(row, BIG_STORIES) for row in big)

    used = {row["cluster_id"] for row in big}
    quick = [row for row in rest if row["cluster_id"] not in used][:config.quick_scan]
    entries.extend(entry(row, QUICK_SCAN) for row in quick)
    return entries


def render_markdown(entries: List[DigestEntry]) -> str:
    sections = [
        (TOP_PICKS, "## Top Picks"),
        (BIG_STORIES, "## Big Stories"),
        (QUICK_SCAN, "## Quick Scan"),
    ]
    lines: List[str] = []
    for section, heading in sections:
        section_entries = [e for e in entries if e.section == section]
        if not section_entries:
            continue
        if lines:
            lines.append("")
        lines.append(heading)
        lines.append("")
        for e in section_entries:
            if section == QUICK_SCAN:
                suffix = f" - {e.one_liner}" if e.one_liner else ""
                lines.append(f"- [{e.headline}]({e.url}){suffix}")
            else:
                sources = f" ({e.size} sources)" if e.size > 1 else ""
                lines.append(f"- **[{e.headline}]({e.url})**{sources}")
                if e.one_liner:
                    lines.append(f"  {e.one_liner}")
    return "\n".join(lines)


def _ai_narrative(
    provider: AiProvider, account_id: str, entries: List[DigestEntry], window: str
) -> Optional[str]:
    response = get_llm_response(
        provider,
        DIGEST_NARRATIVE_TEMPLATE,
        {
            "window": window,
            "entries": [
                {
                    "section": e.section,
                    "headline": sanitize_for_prompt(e.headline, 200),
                    "size": e.size,
                    "one_liner": sanitize_for_prompt(e.one_liner, 200),
                }
                for e in entries
            ],
        },
        system_prompt=DIGEST_SYSTEM_PROMPT,
        max_tokens=DIGEST_MAX_TOKENS,
        temperature=DIGEST_TEMPERATURE,
    )
    if response.is_error or not response.text.strip():
        return None
    log_ai_usage(account_id, response, "digest")
    return response.text.strip()


def _ensure_account_row(account_id: str):
    try:
        with get_session() as session:
            if session.get(AccountSettingsORM, account_id) is not None:
                return
            session.add(AccountSettingsORM(account_id=account_id))
    except IntegrityError:
        # Another worker created the row first
        logger.debug(f"Account settings for {account_id} created concurrently")


def generate_digest(
    account_id: str,
    now: Optional[int] = None,
    provider: Optional[AiProvider] = None,
    settings: Optional[AccountSettings] = None,
    config: Optional[DigestConfig] = None,
) -> Optional[Digest]:
    """Build and store a digest for the window ending now.

    Returns None if a digest already covers part of the window or there is
    nothing unread to include. The window is claimed with a compare-and-swap
    on the account's last digest end in the same transaction as the insert,
    so concurrent runs write at most one digest per window.
    """
    now = now or int(time.time())
    config = config or DigestConfig()
    settings = settings or get_account_settings(account_id)
    start = now - config.window_hours * 3600

    with get_session() as session:
        overlapping = session.execute(
            select(DigestORM.id).where(
                DigestORM.account_id == account_id,
                DigestORM.end_at > start,
            ).limit(1)
        ).scalar_one_or_none()
    if overlapping is not None:
        logger.info(f"Digest for {account_id} already exists in this window")
        return None

    entries = build_sections(_ranked_candidates(account_id, start, now), config)
    if not entries:
        return None

    title = f"Digest for {_format_time(start)} - {_format_time(now)}"
    body = render_markdown(entries)
    if provider is not None and settings.ai_mode != AiMode.OFF and not is_over_budget(account_id, now):
        narrative = _ai_narrative(provider, account_id, entries, f"{_format_time(start)} to {_format_time(now)}")
        if narrative:
            body = narrative
        else:
            logger.warning(f"AI digest narrative failed for {account_id}, using bullet list")

    _ensure_account_row(account_id)
    with get_session() as session:
        claimed = session.execute(
            update(AccountSettingsORM)
            .where(
                AccountSettingsORM.account_id == account_id,
                or_(
                    AccountSettingsORM.last_digest_end_at.is_(None),
                    AccountSettingsORM.last_digest_end_at <= start,
                ),
            )
            .values(last_digest_end_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.info(f"Another digest for {account_id} was written in this window")
            return None
        orm = DigestORM(
            account_id=account_id,
            start_at=start,
            end_at=now,
            title=title,
            body=body,
            entries=[asdict(e) for e in entries],
            created_at=now,
        )
        session.add(orm)
        session.flush()
        digest = digest_orm_to_dataclass(orm)

    logger.info(f"Generated digest {digest.id} for {account_id} with {len(entries)} stories")
    return digest


def maybe_generate_digest(
    account_id: str,
    now: Optional[int] = None,
    provider: Optional[AiProvider] = None,
    settings: Optional[AccountSettings] = None,
    config: Optional[DigestConfig] = None,
) -> Optional[Digest]:
    """Generate a digest only when a trigger fires."""
    now = now or int(time.time())
    settings = settings or get_account_settings(account_id)
    trigger = digest_trigger(account_id, now, config, settings)
    if trigger is None:
        return None
    logger.info(f"Digest trigger for {account_id}: {trigger}")
    return generate_digest(account_id, now, provider, settings, config)
