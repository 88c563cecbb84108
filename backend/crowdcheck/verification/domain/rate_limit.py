"""Sliding-window rate limiting over an identity's report history."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Sequence

from crowdcheck.verification.domain.config import RateLimitTier
from crowdcheck.verification.domain.models import ReportHistoryEntry

WINDOWS: tuple[tuple[str, int], ...] = (("minute", 60), ("hour", 3600), ("day", 86400))


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int | None = None
    window: str | None = None
    reason: str | None = None
    remaining: dict[str, int] = field(default_factory=dict)


def _limit(tier: RateLimitTier, window: str) -> int:
    return {"minute": tier.per_minute, "hour": tier.per_hour, "day": tier.per_day}[window]


def check_rate_limit(reports: Sequence[ReportHistoryEntry], tier: RateLimitTier, now: datetime) -> RateLimitDecision:
    """Evaluate the tier against trailing windows; never mutates anything.

    The first exhausted window, smallest first, decides ``retry_after``: the
    seconds until its oldest report ages out.
    """

    remaining: dict[str, int] = {}
    for window, seconds in WINDOWS:
        since = now - timedelta(seconds=seconds)
        in_window = [entry.created_at for entry in reports if entry.created_at > since]
        limit = _limit(tier, window)
        if len(in_window) >= limit:
            oldest = min(in_window) if in_window else now
            age = (now - oldest).total_seconds()
            retry_after = max(1, math.ceil(seconds - age))
            return RateLimitDecision(
                allowed=False,
                retry_after=retry_after,
                window=window,
                reason=f"Rate limit exceeded: max {limit} reports per {window}",
            )
        remaining[window] = limit - len(in_window)
    return RateLimitDecision(allowed=True, remaining=remaining)
