"""Merge incoming reports into open candidates or open new ones."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

from crowdcheck.verification.domain.config import AggregationConfig
from crowdcheck.verification.domain.errors import StoreConflict
from crowdcheck.verification.domain.geo import bounding_box, distance
from crowdcheck.verification.domain.models import (
    Coordinates,
    IncidentKind,
    PendingIncident,
    ReporterEntry,
    new_id,
)
from crowdcheck.verification.domain.pending import PendingIncidentRepository
from crowdcheck.verification.domain.scoring import ThresholdResult, ThresholdScorer

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AggregationResult:
    pending: PendingIncident
    result: ThresholdResult
    created: bool


class PendingAggregator:
    def __init__(
        self,
        repository: PendingIncidentRepository,
        scorer: ThresholdScorer,
        config: AggregationConfig | None = None,
        *,
        max_attempts: int = 3,
    ) -> None:
        self._repo = repository
        self._scorer = scorer
        self._config = config or AggregationConfig()
        self._max_attempts = max_attempts

    async def find_match(self, kind: IncidentKind, location: Coordinates, now: datetime) -> PendingIncident | None:
        since = now - timedelta(minutes=self._config.window_minutes)
        box = bounding_box(location, self._config.radius_km)
        candidates: Sequence[PendingIncident] = await self._repo.find_open_near(kind, box, since)
        if not candidates:
            return None
        return min(candidates, key=lambda pending: (distance(location, pending.location), pending.created_at))

    async def submit(
        self,
        reporter: ReporterEntry,
        *,
        kind: IncidentKind,
        location: Coordinates,
        now: datetime,
        description: str | None = None,
        line_ids: Sequence[str] = (),
        delay_minutes: int | None = None,
    ) -> AggregationResult:
        """Attach ``reporter`` to the matching candidate, or open one.

        ``AlreadyReported`` propagates for repeat reporters. A candidate that
        closes between lookup and append is skipped and the lookup retried.
        """

        for _ in range(self._max_attempts):
            match = await self.find_match(kind, location, now)
            if match is None:
                pending = await self._repo.insert(
                    PendingIncident(
                        id=new_id(),
                        kind=kind,
                        location=location,
                        created_at=now,
                        last_report_at=now,
                        expires_at=now + timedelta(hours=self._config.lifetime_hours),
                        reporters=[reporter],
                        description=description,
                        line_ids=tuple(line_ids),
                        delay_minutes=delay_minutes,
                        threshold_required=self._scorer.config.threshold_required,
                    )
                )
                created = True
                logger.info("candidate opened", extra={"pending_incident_id": pending.id, "kind": kind.value})
            else:
                try:
                    pending = await self._repo.append_reporter(match.id, reporter)
                except StoreConflict:
                    logger.info("candidate closed during merge; retrying", extra={"pending_incident_id": match.id})
                    continue
                created = False
                logger.info(
                    "report merged into candidate",
                    extra={"pending_incident_id": pending.id, "total_reports": pending.total_reports},
                )

            result = self._scorer.score(pending.reporter_reputations, required=pending.threshold_required)
            await self._repo.update_score(pending.id, score=result.score, required=result.required)
            pending.threshold_score = result.score
            pending.threshold_required = result.required
            return AggregationResult(pending=pending, result=result, created=created)

        raise StoreConflict("candidate_merge_contended")
