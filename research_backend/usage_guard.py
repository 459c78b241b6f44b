# research_backend/usage_guard.py
"""
API usage guard: admission control for the two metered research providers.

Three independent ceilings per provider:
- per-user daily
- per-user monthly
- global (all users) daily

Env vars (read once by UsageLimits.from_env):
- OPENAI_DAILY_LIMIT (default: 10), OPENAI_MONTHLY_LIMIT (100), OPENAI_GLOBAL_DAILY_LIMIT (50)
- GEMINI_DAILY_LIMIT (default: 20), GEMINI_MONTHLY_LIMIT (200), GEMINI_GLOBAL_DAILY_LIMIT (100)

Quota is a cost-control guard, not a security boundary: exhausted quota denies,
but a failing usage store lets the request through.
"""
import os
import logging
import datetime
from dataclasses import dataclass, fields
from typing import Callable, Optional

from research_backend import db as dbmod
from research_backend import monitoring
from research_backend.schemas import Provider, UsageDecision, UsageSummary, ProviderUsage

logger = logging.getLogger("research-backend.usage")

GLOBAL_LIMIT_REASON = "Service temporarily unavailable due to high demand. Please try again later."


@dataclass(frozen=True)
class UsageLimits:
    openai_daily: int = 10
    openai_monthly: int = 100
    openai_global_daily: int = 50
    gemini_daily: int = 20
    gemini_monthly: int = 200
    gemini_global_daily: int = 100

    def __post_init__(self):
        for f in fields(self):
            if getattr(self, f.name) < 0:
                raise ValueError(f"usage limit {f.name} must be >= 0")

    @classmethod
    def from_env(cls) -> "UsageLimits":
        return cls(
            openai_daily=int(os.getenv("OPENAI_DAILY_LIMIT", "10")),
            openai_monthly=int(os.getenv("OPENAI_MONTHLY_LIMIT", "100")),
            openai_global_daily=int(os.getenv("OPENAI_GLOBAL_DAILY_LIMIT", "50")),
            gemini_daily=int(os.getenv("GEMINI_DAILY_LIMIT", "20")),
            gemini_monthly=int(os.getenv("GEMINI_MONTHLY_LIMIT", "200")),
            gemini_global_daily=int(os.getenv("GEMINI_GLOBAL_DAILY_LIMIT", "100")),
        )

    def daily(self, provider: Provider) -> int:
        return getattr(self, f"{provider.value}_daily")

    def monthly(self, provider: Provider) -> int:
        return getattr(self, f"{provider.value}_monthly")

    def global_daily(self, provider: Provider) -> int:
        return getattr(self, f"{provider.value}_global_daily")


def _utc_today() -> datetime.date:
    return datetime.datetime.now(datetime.timezone.utc).date()


class ApiUsageGuard:
    def __init__(self, limits: UsageLimits, today: Optional[Callable[[], datetime.date]] = None):
        self.limits = limits
        self._today = today or _utc_today

    def can_make_request(self, user_id: str, provider: Provider) -> UsageDecision:
        try:
            today = self._today()
            usage = dbmod.touch_usage(user_id, today)

            daily_limit = self.limits.daily(provider)
            if usage[f"{provider.value}_requests_today"] >= daily_limit:
                monitoring.inc_usage_denied(provider.value, "daily")
                return UsageDecision(
                    allowed=False,
                    reason=f"Daily {provider.label} limit reached ({daily_limit} requests). Please try again tomorrow.",
                )

            monthly_limit = self.limits.monthly(provider)
            if usage[f"{provider.value}_requests_month"] >= monthly_limit:
                monitoring.inc_usage_denied(provider.value, "monthly")
                return UsageDecision(
                    allowed=False,
                    reason=(
                        f"Monthly {provider.label} limit reached ({monthly_limit} requests). "
                        "Limit resets at the start of next month."
                    ),
                )

            if dbmod.sum_usage_today(provider, today) >= self.limits.global_daily(provider):
                monitoring.inc_usage_denied(provider.value, "global_daily")
                # no per-user detail: the aggregate is not the user's business
                return UsageDecision(allowed=False, reason=GLOBAL_LIMIT_REASON)

            return UsageDecision(allowed=True)
        except Exception:
            logger.exception("Error checking %s usage", provider.label, extra={"user_id": user_id})
            monitoring.inc_usage_store_error("check")
            return UsageDecision(allowed=True)

    def record_request(self, user_id: str, provider: Provider) -> None:
        today = self._today()
        try:
            dbmod.touch_usage(user_id, today, increment=provider)
        except Exception:
            # a lost usage increment must never abort a successful research call
            logger.exception("Error recording %s usage", provider.label, extra={"user_id": user_id})
            monitoring.inc_usage_store_error("record")

    # Per-provider shorthands
    def can_make_openai_request(self, user_id: str) -> UsageDecision:
        return self.can_make_request(user_id, Provider.OPENAI)

    def can_make_gemini_request(self, user_id: str) -> UsageDecision:
        return self.can_make_request(user_id, Provider.GEMINI)

    def record_openai_request(self, user_id: str) -> None:
        self.record_request(user_id, Provider.OPENAI)

    def record_gemini_request(self, user_id: str) -> None:
        self.record_request(user_id, Provider.GEMINI)

    def get_user_usage(self, user_id: str) -> UsageSummary:
        """Current counters and limits. Counters from an expired period read as zero."""
        usage = dbmod.get_usage(user_id)
        today = self._today()
        last_reset = usage["last_reset_date"] if usage else None

        def _provider(provider: Provider) -> ProviderUsage:
            day_count = month_count = 0
            if usage and last_reset >= today:
                day_count = usage[f"{provider.value}_requests_today"]
            if usage and (last_reset.year, last_reset.month) == (today.year, today.month):
                month_count = usage[f"{provider.value}_requests_month"]
            return ProviderUsage(
                today=day_count,
                month=month_count,
                daily_limit=self.limits.daily(provider),
                monthly_limit=self.limits.monthly(provider),
            )

        return UsageSummary(
            openai=_provider(Provider.OPENAI),
            gemini=_provider(Provider.GEMINI),
            last_reset_date=last_reset,
        )
