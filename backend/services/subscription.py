"""Plan limits and the monthly AI word quota."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from models import Profile, SubscriptionTier
from storage import StoryStore

logger = logging.getLogger("novelworld.subscription")


class TierLimits(BaseModel):
    max_projects: Optional[int] = None
    max_books_per_project: Optional[int] = None
    max_story_nodes: Optional[int] = None
    monthly_word_quota: Optional[int] = None
    export_formats: List[str] = ["txt"]


TIER_LIMITS: Dict[SubscriptionTier, TierLimits] = {
    SubscriptionTier.FREE: TierLimits(
        max_projects=1,
        max_books_per_project=1,
        max_story_nodes=15,
        monthly_word_quota=10_000,
    ),
    SubscriptionTier.PRO: TierLimits(monthly_word_quota=150_000),
}

# USD per month
TIER_PRICING: Dict[SubscriptionTier, int] = {
    SubscriptionTier.FREE: 0,
    SubscriptionTier.PRO: 15,
}

BILLING_PERIOD = timedelta(days=30)


class LimitCheckResult(BaseModel):
    allowed: bool
    current: int
    limit: Optional[int] = None
    message: Optional[str] = None


class WordQuotaStatus(BaseModel):
    allowed: bool
    used: int
    limit: int
    remaining: int
    tier: SubscriptionTier


def get_tier_limits(tier: Optional[SubscriptionTier]) -> TierLimits:
    return TIER_LIMITS.get(tier, TIER_LIMITS[SubscriptionTier.FREE])


def format_limit(value: Optional[int]) -> str:
    return "Unlimited" if value is None else f"{value:,}"


def _tier(store: StoryStore, user_id: str) -> SubscriptionTier:
    return store.ensure_profile(user_id).subscription_tier


def _check(current: int, limit: Optional[int], message: str) -> LimitCheckResult:
    if limit is None:
        return LimitCheckResult(allowed=True, current=current, limit=None)
    allowed = current < limit
    return LimitCheckResult(
        allowed=allowed,
        current=current,
        limit=limit,
        message=None if allowed else message,
    )


def check_project_limit(store: StoryStore, user_id: str) -> LimitCheckResult:
    tier = _tier(store, user_id)
    limit = get_tier_limits(tier).max_projects
    return _check(
        store.count_projects(user_id),
        limit,
        f"You've reached the maximum of {limit} project(s) on the {tier.value} plan. "
        "Upgrade to Pro for unlimited projects.",
    )


def check_book_limit(store: StoryStore, user_id: str, project_id: str) -> LimitCheckResult:
    tier = _tier(store, user_id)
    limit = get_tier_limits(tier).max_books_per_project
    return _check(
        store.count_books(project_id),
        limit,
        f"You've reached the maximum of {limit} book(s) per project on the {tier.value} plan. "
        "Upgrade to Pro for unlimited books.",
    )


def check_node_limit(
    store: StoryStore,
    user_id: str,
    project_id: str,
    adding: int = 1,
) -> LimitCheckResult:
    """``adding`` > 1 checks room for a batch, as universe generation inserts many nodes."""
    tier = _tier(store, user_id)
    limit = get_tier_limits(tier).max_story_nodes
    current = store.count_nodes(project_id)
    result = _check(
        current + max(adding, 1) - 1,
        limit,
        f"You've reached the maximum of {limit} story elements on the {tier.value} plan. "
        "Upgrade to Pro for unlimited story elements.",
    )
    result.current = current
    return result


def _roll_period(store: StoryStore, profile: Profile, now: datetime) -> Profile:
    if profile.billing_period_end is not None and profile.billing_period_end > now:
        return profile
    logger.info("word quota period reset user_id=%s previous_used=%d", profile.id, profile.words_used_this_month)
    return store.update_profile(
        profile.id,
        words_used_this_month=0,
        billing_period_start=now,
        billing_period_end=now + BILLING_PERIOD,
    )


def check_word_quota(store: StoryStore, user_id: str, now: Optional[datetime] = None) -> WordQuotaStatus:
    """Allowed while usage is below the quota; an ended billing period resets usage first."""
    now = now or datetime.now()
    profile = _roll_period(store, store.ensure_profile(user_id), now)
    limit = profile.words_quota or get_tier_limits(profile.subscription_tier).monthly_word_quota or 0
    used = profile.words_used_this_month
    return WordQuotaStatus(
        allowed=used < limit,
        used=used,
        limit=limit,
        remaining=max(0, limit - used),
        tier=profile.subscription_tier,
    )


def increment_word_usage(store: StoryStore, user_id: str, words: int) -> int:
    if words <= 0:
        return store.ensure_profile(user_id).words_used_this_month
    total = store.increment_words_used(user_id, words)
    logger.info("word usage incremented user_id=%s words=%d total=%d", user_id, words, total)
    return total


def get_usage_stats(store: StoryStore, user_id: str) -> Dict[str, Any]:
    profile = store.ensure_profile(user_id)
    limits = get_tier_limits(profile.subscription_tier)
    projects = store.list_projects(user_id)
    return {
        "tier": profile.subscription_tier.value,
        "project_count": len(projects),
        "project_limit": limits.max_projects,
        "node_count": sum(store.count_nodes(project.id) for project in projects),
        "node_limit": limits.max_story_nodes,
        "words_used": profile.words_used_this_month,
        "words_quota": profile.words_quota or limits.monthly_word_quota,
        "billing_period_end": profile.billing_period_end.isoformat() if profile.billing_period_end else None,
    }
