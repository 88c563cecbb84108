"""Trust score derivation and the recompute pass."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Sequence

from crowdcheck.verification.domain.config import TrustScoreConfig
from crowdcheck.verification.domain.models import Incident, IncidentStatus, TrustScoreBreakdown
from crowdcheck.verification.domain.pending import IncidentRepository
from crowdcheck.verification.domain.users import UserRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ContributionStats:
    recent: int = 0
    resolved: int = 0
    validated: int = 0
    fake: int = 0

    @property
    def validation_rate(self) -> float:
        return self.validated / self.resolved if self.resolved else 0.0


def collect_stats(incidents: Sequence[Incident]) -> ContributionStats:
    resolved = [incident for incident in incidents if incident.status is IncidentStatus.RESOLVED]
    return ContributionStats(
        recent=len(incidents),
        resolved=len(resolved),
        validated=sum(1 for incident in resolved if not incident.is_fake),
        fake=sum(1 for incident in incidents if incident.is_fake),
    )


def compute_trust_score(reputation: int, stats: ContributionStats, config: TrustScoreConfig | None = None) -> TrustScoreBreakdown:
    cfg = config or TrustScoreConfig()
    base = max(cfg.base_min, min(cfg.base_max, reputation / cfg.base_divisor))
    accuracy = stats.validation_rate * cfg.accuracy_bonus
    high_rep = 0.0
    if reputation >= cfg.high_reputation_threshold:
        scale = min((reputation - cfg.high_reputation_threshold) / 100, 1.0)
        high_rep = base * cfg.high_reputation_bonus * scale
    penalty = stats.fake * cfg.fake_penalty
    final = max(cfg.final_min, min(cfg.final_max, base + accuracy + high_rep - penalty))
    return TrustScoreBreakdown(
        base_score=base,
        accuracy_bonus=accuracy,
        high_rep_bonus=high_rep,
        fake_penalty=penalty,
        final_score=final,
        recent_reports=stats.recent,
        validated_reports=stats.validated,
        fake_reports=stats.fake,
        validation_rate=stats.validation_rate,
    )


class TrustScoreService:
    """Reads contribution history and writes only the derived trust fields."""

    def __init__(self, users: UserRepository, incidents: IncidentRepository, config: TrustScoreConfig | None = None) -> None:
        self._users = users
        self._incidents = incidents
        self._config = config or TrustScoreConfig()

    async def calculate(self, user_id: str, reputation: int, *, now: datetime) -> TrustScoreBreakdown:
        since = now - timedelta(days=self._config.window_days)
        incidents = await self._incidents.list_contributed(user_id, since)
        return compute_trust_score(reputation, collect_stats(incidents), self._config)

    async def recompute_all(self, *, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        contributor_ids = await self._incidents.list_contributor_ids()
        users = await self._users.list_by_ids(contributor_ids)
        updated = 0
        for user in users:
            try:
                breakdown = await self.calculate(user.id, user.reputation, now=now)
                await self._users.set_trust_score(user.id, breakdown, now)
            except Exception:
                logger.exception("trust score update failed", extra={"target_user_id": user.id})
                continue
            updated += 1
        return updated
