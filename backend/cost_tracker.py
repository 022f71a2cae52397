"""
Estimated LLM spend per call and per shop
"""

from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from db_models import Event
from llm_clients import LLMReply, LLMUsage
from monitoring import get_metrics
from utils import utcnow

logger = structlog.get_logger()

API_USAGE_EVENT = "API_USAGE"

# USD per 1K tokens
OPENAI_INPUT_COST = 0.0005
OPENAI_OUTPUT_COST = 0.0015
ANTHROPIC_INPUT_COST = 0.0008
ANTHROPIC_OUTPUT_COST = 0.004

# USD per 1K characters
GEMINI_COST = 0.00025


def calculate_openai_cost(usage: Optional[LLMUsage]) -> float:
    if not usage:
        return 0.0
    input_cost = usage.input_tokens / 1000 * OPENAI_INPUT_COST
    output_cost = usage.output_tokens / 1000 * OPENAI_OUTPUT_COST
    return input_cost + output_cost


def calculate_gemini_cost(characters: int) -> float:
    return characters / 1000 * GEMINI_COST


def calculate_anthropic_cost(usage: Optional[LLMUsage]) -> float:
    if not usage:
        return 0.0
    return (usage.input_tokens / 1000 * ANTHROPIC_INPUT_COST
            + usage.output_tokens / 1000 * ANTHROPIC_OUTPUT_COST)


def estimate_cost(reply: LLMReply) -> float:
    if reply.provider == "openai":
        return calculate_openai_cost(reply.usage)
    if reply.provider == "gemini":
        characters = reply.usage.characters if reply.usage else len(reply.text)
        return calculate_gemini_cost(characters)
    if reply.provider == "anthropic":
        return calculate_anthropic_cost(reply.usage)
    return 0.0


def track_usage(session: Session, shop_id: str, reply: LLMReply, purpose: str) -> Event:
    """Record an API_USAGE event in the caller's transaction"""
    cost = estimate_cost(reply)
    usage = reply.usage or LLMUsage()
    event = Event(
        shop_id=shop_id,
        type=API_USAGE_EVENT,
        data={
            "platform": reply.provider.upper(),
            "model": reply.model,
            "purpose": purpose,
            "tokens": usage.input_tokens + usage.output_tokens,
            "characters": usage.characters,
            "cost": cost,
        }
    )
    session.add(event)
    get_metrics().llm_api_cost.labels(platform=reply.provider).inc(cost)
    return event


def get_monthly_usage(session: Session, shop_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Sum estimated spend for the current calendar month"""
    now = now or utcnow()
    start_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    events = session.execute(
        select(Event).where(
            Event.shop_id == shop_id,
            Event.type == API_USAGE_EVENT,
            Event.created_at >= start_of_month
        )
    ).scalars().all()

    totals = {"OPENAI": 0.0, "GEMINI": 0.0, "ANTHROPIC": 0.0}
    for event in events:
        data = event.data or {}
        platform = data.get("platform")
        if platform in totals:
            totals[platform] += data.get("cost") or 0.0

    return {
        "total_cost": sum(totals.values()),
        "openai_cost": totals["OPENAI"],
        "gemini_cost": totals["GEMINI"],
        "anthropic_cost": totals["ANTHROPIC"],
        "event_count": len(events),
    }
