"""Per-request token accounting and cost estimates for AI calls.

Tracking is best effort: a failure to price or persist a record is logged and
never reaches the caller.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from core.llm_client import LLMUsage
from models import UsageRecord, UsageStatus
from storage import StoryStore

logger = logging.getLogger("novelworld.usage")

# USD per million tokens.
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "claude-sonnet-4-20250514": {"input_per_1m": 3.0, "output_per_1m": 15.0, "cached_input_per_1m": 0.3},
    "claude-opus-4-20250514": {"input_per_1m": 15.0, "output_per_1m": 75.0, "cached_input_per_1m": 1.5},
    "claude-3-5-haiku-20241022": {"input_per_1m": 0.8, "output_per_1m": 4.0, "cached_input_per_1m": 0.08},
    "gpt-4o": {"input_per_1m": 2.5, "output_per_1m": 10.0, "cached_input_per_1m": 1.25},
    "gpt-4o-mini": {"input_per_1m": 0.15, "output_per_1m": 0.6, "cached_input_per_1m": 0.075},
    "default": {"input_per_1m": 3.0, "output_per_1m": 15.0, "cached_input_per_1m": 0.3},
}


def get_model_pricing(model: Optional[str]) -> Dict[str, float]:
    return MODEL_PRICING.get(model or "", MODEL_PRICING["default"])


def calculate_cost(
    model: Optional[str],
    input_tokens: int,
    output_tokens: int,
    cache_creation_input_tokens: int = 0,
    cache_read_input_tokens: int = 0,
) -> Dict[str, float]:
    """Return input, output, savings and total cost in cents, rounded to 4 places.

    ``input_tokens`` is the full prompt size; cache writes are billed at the
    normal input rate and cache reads at the cached rate.
    """
    pricing = get_model_pricing(model)
    regular = max(0, input_tokens - cache_creation_input_tokens - cache_read_input_tokens)

    input_cost = (
        regular * pricing["input_per_1m"]
        + cache_creation_input_tokens * pricing["input_per_1m"]
        + cache_read_input_tokens * pricing["cached_input_per_1m"]
    ) * 100 / 1_000_000
    output_cost = output_tokens * pricing["output_per_1m"] * 100 / 1_000_000
    savings = (
        cache_read_input_tokens * (pricing["input_per_1m"] - pricing["cached_input_per_1m"])
    ) * 100 / 1_000_000

    return {
        "input_cost_cents": round(input_cost, 4),
        "output_cost_cents": round(output_cost, 4),
        "cache_savings_cents": round(savings, 4),
        "total_cost_cents": round(input_cost + output_cost, 4),
    }


def track_ai_usage(
    store: StoryStore,
    *,
    user_id: str,
    endpoint: str,
    model: str,
    usage: Optional[LLMUsage] = None,
    provider: Optional[str] = None,
    project_id: Optional[str] = None,
    book_id: Optional[str] = None,
    scene_id: Optional[str] = None,
    duration_ms: Optional[float] = None,
    status: UsageStatus = UsageStatus.SUCCESS,
    error_message: Optional[str] = None,
) -> Optional[UsageRecord]:
    """Persist one usage row. Returns the record, or None when tracking failed."""
    usage = usage or LLMUsage()
    try:
        costs = calculate_cost(
            model,
            usage.input_tokens,
            usage.output_tokens,
            usage.cache_creation_input_tokens,
            usage.cache_read_input_tokens,
        )
        record = UsageRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            project_id=project_id,
            book_id=book_id,
            scene_id=scene_id,
            endpoint=endpoint,
            provider=provider,
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_creation_input_tokens=usage.cache_creation_input_tokens,
            cache_read_input_tokens=usage.cache_read_input_tokens,
            request_duration_ms=int(duration_ms) if duration_ms is not None else None,
            status=status,
            error_message=error_message,
            **costs,
        )
        store.add_usage_record(record)
    except Exception as exc:
        logger.warning("usage tracking failed user_id=%s endpoint=%s error=%s", user_id, endpoint, exc)
        return None

    if usage.cache_read_input_tokens > 0:
        logger.info(
            "cache hit endpoint=%s model=%s cache_read=%d savings_cents=%.4f",
            endpoint,
            model,
            usage.cache_read_input_tokens,
            record.cache_savings_cents,
        )
    logger.info(
        "usage tracked user_id=%s endpoint=%s model=%s status=%s input_tokens=%d output_tokens=%d cost_cents=%.4f",
        user_id,
        endpoint,
        model,
        record.status.value,
        record.input_tokens,
        record.output_tokens,
        record.total_cost_cents,
    )
    return record


def _empty_summary() -> Dict[str, Any]:
    return {
        "total_requests": 0,
        "total_input_tokens": 0,
        "total_output_tokens": 0,
        "total_cost_usd": 0.0,
        "by_endpoint": {},
        "by_model": {},
    }


def get_user_usage_summary(
    store: StoryStore,
    user_id: str,
    start: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Aggregate successful calls since ``start`` (default: first of this month)."""
    if start is None:
        start = datetime.now().replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    try:
        records = store.list_usage_records(user_id, since=start, status=UsageStatus.SUCCESS.value)
    except Exception as exc:
        logger.warning("usage summary failed user_id=%s error=%s", user_id, exc)
        return _empty_summary()

    summary = _empty_summary()
    total_cents = 0.0
    for record in records:
        tokens = record.input_tokens + record.output_tokens
        summary["total_requests"] += 1
        summary["total_input_tokens"] += record.input_tokens
        summary["total_output_tokens"] += record.output_tokens
        total_cents += record.total_cost_cents
        for bucket_name, key in (("by_endpoint", record.endpoint), ("by_model", record.model)):
            bucket = summary[bucket_name].setdefault(key, {"requests": 0, "tokens": 0, "cost_usd": 0.0})
            bucket["requests"] += 1
            bucket["tokens"] += tokens
            bucket["cost_usd"] = round(bucket["cost_usd"] + record.total_cost_cents / 100, 6)

    summary["total_cost_usd"] = round(total_cents / 100, 6)
    return summary
