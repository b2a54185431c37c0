"""
Prompt quota enforcement.

Each owner may execute a limited number of prompts per period:

- Paying owners: plan allowance within the subscription's billing period
- Trial owners: trial allowance within the UTC calendar month
- Non-trial owners without a subscription: no allowance

Usage counts distinct (run, prompt) pairs, so a prompt sent to all four
providers in one run consumes one unit. A denied check happens before any
run exists.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from visibility_tracker.config.schema import QuotaSettings
from visibility_tracker.storage import TrackingStore
from visibility_tracker.utils.time import month_bounds, utc_now

logger = logging.getLogger(__name__)


@dataclass
class PromptUsage:
    used: int
    limit: int
    remaining: int
    period_start: datetime
    period_end: datetime


@dataclass
class QuotaDecision:
    """
    Outcome of a quota check.

    Attributes:
        allowed: True if the run may proceed
        usage: Usage snapshot the decision was based on
        reason: Human-readable denial reason (None when allowed)
    """

    allowed: bool
    usage: PromptUsage
    reason: str | None = None


class QuotaGuard:
    """Checks whether an owner may execute a given number of prompts."""

    def __init__(self, store: TrackingStore, settings: QuotaSettings | None = None):
        self.store = store
        self.settings = settings or QuotaSettings()

    async def get_usage(
        self, owner_id: str, is_trial: bool, now: datetime | None = None
    ) -> PromptUsage:
        now = now or utc_now()
        subscription = None if is_trial else await self.store.get_active_subscription(owner_id)

        if subscription is not None:
            period_start = subscription.current_period_start
            period_end = subscription.current_period_end
            limit = self.settings.plans.get(subscription.plan)
            if limit is None:
                logger.warning(
                    f"Unknown plan '{subscription.plan}' for owner {owner_id}; allowance is 0"
                )
                limit = 0
        else:
            period_start, period_end = month_bounds(now)
            limit = self.settings.trial_prompts_per_month if is_trial else 0

        used = await self.store.count_executed_prompts(owner_id, period_start, period_end)
        return PromptUsage(
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            period_start=period_start,
            period_end=period_end,
        )

    async def check_quota(
        self,
        owner_id: str,
        is_trial: bool,
        prompt_count: int,
        now: datetime | None = None,
    ) -> QuotaDecision:
        """
        Decide whether prompt_count more prompts fit in the owner's allowance.

        Example:
            >>> decision = await guard.check_quota("owner-1", False, 10)
            >>> decision.reason
            'Prompt limit reached: 95/100 used. This run needs 10 prompts but only 5 remain.'
        """
        if prompt_count < 0:
            raise ValueError(f"prompt_count cannot be negative, got: {prompt_count}")

        usage = await self.get_usage(owner_id, is_trial, now)

        if usage.limit - usage.used >= prompt_count:
            return QuotaDecision(allowed=True, usage=usage)

        reason = (
            f"Prompt limit reached: {usage.used}/{usage.limit} used. "
            f"This run needs {prompt_count} prompts but only {usage.remaining} remain."
        )
        logger.info(f"Quota denied for owner {owner_id}: {reason}")
        return QuotaDecision(allowed=False, usage=usage, reason=reason)
