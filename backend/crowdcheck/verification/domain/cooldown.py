"""Short-horizon spacing guards between an identity's reports."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

from crowdcheck.verification.domain.config import CooldownConfig
from crowdcheck.verification.domain.geo import distance
from crowdcheck.verification.domain.models import Coordinates, IncidentKind, ReportHistoryEntry

ANY_REPORT = "anyReport"
SAME_KIND = "sameKind"
SAME_LOCATION = "sameLocation"


@dataclass(frozen=True, slots=True)
class CooldownDecision:
    allowed: bool
    cooldown_type: str | None = None
    remaining_ms: int = 0
    reason: str | None = None


def _remaining_ms(last: datetime, spacing_seconds: int, now: datetime) -> int:
    elapsed = (now - last).total_seconds()
    return max(0, int((spacing_seconds - elapsed) * 1000))


def check_cooldown(
    reports: Sequence[ReportHistoryEntry],
    config: CooldownConfig,
    now: datetime,
    *,
    kind: IncidentKind | None = None,
    location: Coordinates | None = None,
) -> CooldownDecision:
    """Run the any / same-kind / same-location checks in order; the first hit wins."""

    since = now - timedelta(seconds=config.lookback_seconds)
    recent = sorted((entry for entry in reports if entry.created_at > since), key=lambda e: e.created_at, reverse=True)
    if not recent:
        return CooldownDecision(allowed=True)

    latest = recent[0]
    remaining = _remaining_ms(latest.created_at, config.any_report_seconds, now)
    if remaining > 0:
        return CooldownDecision(False, ANY_REPORT, remaining, "Please wait before submitting another report")

    if kind is not None:
        same_kind = next((entry for entry in recent if entry.kind == kind), None)
        if same_kind is not None:
            remaining = _remaining_ms(same_kind.created_at, config.same_kind_seconds, now)
            if remaining > 0:
                return CooldownDecision(False, SAME_KIND, remaining, "You recently reported this kind of incident")

    if location is not None:
        for entry in recent:
            if entry.location is None:
                continue
            if distance(location, entry.location) > config.same_location_radius_meters:
                continue
            remaining = _remaining_ms(entry.created_at, config.same_location_seconds, now)
            if remaining > 0:
                return CooldownDecision(False, SAME_LOCATION, remaining, "You recently reported an incident nearby")
            break

    return CooldownDecision(allowed=True)
