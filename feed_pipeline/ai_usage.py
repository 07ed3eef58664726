"""
AI usage accounting and monthly budget checks.
"""

import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select

from feed_pipeline.constants import (
    DEFAULT_MODEL_COST,
    MODEL_COSTS,
    PLAN_AI_TOKEN_LIMITS,
    PLAN_LIMITS,
)
from feed_pipeline.database import get_account_settings
from feed_pipeline.db_engine import get_session
from feed_pipeline.orm_models import AiUsageORM
from llm.provider import AiCompletionResponse
from util.logging_util import setup_logger

logger = setup_logger(__name__)

LOCAL_PROVIDERS = {"ollama", "local"}


def estimate_cost_usd(provider: str, model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimated cost of a call. Local models are free; unknown models use the cheapest table entry."""
    if provider in LOCAL_PROVIDERS:
        return 0.0
    input_rate, output_rate = DEFAULT_MODEL_COST
    # Longest prefix first so "gpt-4o-mini" is not priced as "gpt-4o"
    for prefix in sorted(MODEL_COSTS, key=len, reverse=True):
        if model.startswith(prefix):
            input_rate, output_rate = MODEL_COSTS[prefix]
            break
    return (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000


def log_ai_usage(account_id: str, response: AiCompletionResponse, feature: str, now: Optional[int] = None) -> float:
    """Record a completed AI call. Returns its estimated cost."""
    cost = estimate_cost_usd(response.provider, response.model, response.input_tokens, response.output_tokens)
    with get_session() as session:
        session.add(AiUsageORM(
            account_id=account_id,
            provider=response.provider,
            model=response.model,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            estimated_cost_usd=cost,
            feature=feature,
            duration_ms=response.duration_ms,
            created_at=now or int(time.time()),
        ))
    return cost


def month_start(now: Optional[int] = None) -> int:
    now = now or int(time.time())
    dt = datetime.fromtimestamp(now, tz=timezone.utc)
    return int(datetime(dt.year, dt.month, 1, tzinfo=timezone.utc).timestamp())


def get_monthly_usage(account_id: str, now: Optional[int] = None):
    """(total tokens, total cost) for the current calendar month."""
    with get_session() as session:
        tokens, cost = session.execute(
            select(
                func.coalesce(func.sum(AiUsageORM.input_tokens + AiUsageORM.output_tokens), 0),
                func.coalesce(func.sum(AiUsageORM.estimated_cost_usd), 0.0),
            ).where(
                AiUsageORM.account_id == account_id,
                AiUsageORM.created_at >= month_start(now),
            )
        ).one()
        return int(tokens), float(cost)


def is_over_budget(account_id: str, now: Optional[int] = None) -> bool:
    """True when the plan's monthly token allowance or the account's USD cap is used up."""
    settings = get_account_settings(account_id)
    plan_id = settings.plan_id if settings.plan_id in PLAN_LIMITS else "free"
    tokens, cost = get_monthly_usage(account_id, now)

    if tokens >= PLAN_AI_TOKEN_LIMITS[plan_id]:
        logger.info(f"Account {account_id} reached its monthly AI token limit ({tokens})")
        return True
    if settings.monthly_ai_cap_usd is not None and cost >= settings.monthly_ai_cap_usd:
        logger.info(f"Account {account_id} reached its monthly AI cap (${cost:.4f})")
        return True
    return False
