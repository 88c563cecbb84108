"""Exactly-once promotion of candidates and the reward/penalty paths around it."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from crowdcheck.obs import metrics
from crowdcheck.verification.domain.config import ReputationConfig, SegmentConfig, SuspicionConfig
from crowdcheck.verification.domain.errors import InvalidState, StoreConflict
from crowdcheck.verification.domain.geo import determine_segment
from crowdcheck.verification.domain.history import ReportHistoryRepository
from crowdcheck.verification.domain.models import (
    INCIDENT_TITLES,
    Identity,
    Incident,
    IncidentSegment,
    PendingIncident,
    PendingStatus,
    RewardOutcome,
    new_id,
)
from crowdcheck.verification.domain.notifications import NotificationTarget, NotificationTargeting
from crowdcheck.verification.domain.pending import IncidentRepository, PendingIncidentRepository
from crowdcheck.verification.domain.queue import ModeratorQueueRepository
from crowdcheck.verification.domain.reputation import reputation_delta
from crowdcheck.verification.domain.rewards import RewardLedger
from crowdcheck.verification.domain.stops import StopDirectory
from crowdcheck.verification.domain.users import UserRepository

logger = logging.getLogger(__name__)

SYSTEM_REPORTER = "system"
REASON_AUTO = "threshold_met"
REASON_MODERATOR = "moderator_approved"
REASON_FAKE = "fake_report"


@dataclass(slots=True)
class PublishResult:
    incident: Incident
    created: bool
    rewards: list[RewardOutcome] = field(default_factory=list)
    notified: list[NotificationTarget] = field(default_factory=list)
    # reputation each reporter earns from this publication, including increments parked for retry
    credited: dict[str, int] = field(default_factory=dict)

    def reward_for(self, user_id: str) -> int:
        return self.credited.get(user_id, 0)


@dataclass(slots=True)
class ResolveResult:
    incident: Incident
    reputation_changes: list[RewardOutcome] = field(default_factory=list)


class IncidentPublisher:
    def __init__(
        self,
        *,
        pending: PendingIncidentRepository,
        incidents: IncidentRepository,
        users: UserRepository,
        history: ReportHistoryRepository,
        queue: ModeratorQueueRepository,
        ledger: RewardLedger,
        reputation: ReputationConfig | None = None,
        suspicion: SuspicionConfig | None = None,
        segment: SegmentConfig | None = None,
        stops: StopDirectory | None = None,
        notifications: NotificationTargeting | None = None,
    ) -> None:
        self._pending = pending
        self._incidents = incidents
        self._users = users
        self._history = history
        self._queue = queue
        self._ledger = ledger
        self._reputation = reputation or ReputationConfig()
        self._suspicion = suspicion or SuspicionConfig()
        self._segment = segment or SegmentConfig()
        self._stops = stops
        self._notifications = notifications

    async def _infer_segment(self, pending: PendingIncident) -> IncidentSegment | None:
        if self._stops is None:
            return None
        stops = await self._stops.stops_near(pending.location, self._segment.max_stop_distance_meters)
        return determine_segment(
            pending.location,
            stops,
            max_distance=self._segment.max_stop_distance_meters,
            tolerance=self._segment.on_segment_tolerance_meters,
        )

    def _build_incident(self, pending: PendingIncident, reported_by: str, segment: IncidentSegment | None, now: datetime) -> Incident:
        return Incident(
            id=new_id(),
            title=INCIDENT_TITLES[pending.kind],
            kind=pending.kind,
            created_at=now,
            description=pending.description,
            line_ids=tuple(pending.line_ids),
            delay_minutes=pending.delay_minutes,
            reported_by=reported_by,
            reporter_ids=tuple(pending.reporter_ids),
            pending_incident_id=pending.id,
            segment=segment,
        )

    async def publish_incident_from_pending(
        self,
        pending: PendingIncident,
        *,
        moderator: Identity | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> PublishResult:
        """Promote ``pending`` at most once.

        The loser of a concurrent race gets the winner's incident back with
        ``created=False``. It applies no rewards but reports the amounts the
        winner credited, recomputed from the stored claimed snapshot.
        ``StoreConflict`` propagates only when the candidate closed without
        being published.
        """

        now = now or datetime.now(timezone.utc)
        segment = await self._infer_segment(pending)
        incident = self._build_incident(pending, moderator.user_id if moderator else SYSTEM_REPORTER, segment, now)
        status = PendingStatus.APPROVED if moderator else PendingStatus.THRESHOLD_MET
        try:
            claimed = await self._pending.publish(
                pending.id,
                incident,
                status=status,
                now=now,
                moderator_id=moderator.user_id if moderator else None,
                notes=notes,
            )
        except StoreConflict:
            existing = await self._incidents.get_by_pending(pending.id)
            if existing is None:
                raise
            metrics.inc_publish_race_lost()
            logger.info("publish race lost", extra={"pending_incident_id": pending.id, "incident_id": existing.id})
            credited: dict[str, int] = {}
            winner_claim = await self._pending.get(pending.id)
            if winner_claim is not None:
                credited = self.planned_rewards(
                    winner_claim, bonus_multiplier=self._multiplier(winner_claim.status is PendingStatus.APPROVED)
                )
            return PublishResult(incident=existing, created=False, credited=credited)

        path = "moderator" if moderator else "auto"
        metrics.inc_published(path)
        logger.info(
            "candidate published",
            extra={"pending_incident_id": pending.id, "incident_id": incident.id, "path": path},
        )
        if await self._queue.remove(pending.id):
            metrics.set_queue_depth(await self._queue.count())

        published = await self._incidents.get(incident.id) or incident
        credited = self.planned_rewards(claimed, bonus_multiplier=self._multiplier(moderator is not None))
        rewards = await self.reward_reporters(
            claimed,
            credited,
            reason=REASON_MODERATOR if moderator else REASON_AUTO,
            now=now,
        )
        notified = await self._target(published)
        return PublishResult(incident=published, created=True, rewards=rewards, notified=notified, credited=credited)

    def _multiplier(self, moderated: bool) -> float:
        if moderated:
            return self._reputation.moderator_bonus_multiplier
        return self._reputation.auto_bonus_multiplier

    def planned_rewards(self, pending: PendingIncident, *, bonus_multiplier: float) -> dict[str, int]:
        """Per-reporter reward for a claimed candidate; earlier corroboration earns more.

        Computed only from the claimed snapshot so every caller derives the same amounts.
        """

        planned: dict[str, int] = {}
        for entry in pending.reporters:
            age_minutes = max(0.0, (entry.reported_at - pending.created_at).total_seconds() / 60)
            planned[entry.reporter_id] = reputation_delta(
                correct=True,
                current_reputation=entry.reputation,
                notification_age_minutes=age_minutes,
                config=self._reputation,
                multiplier=bonus_multiplier,
            )
        return planned

    async def _target(self, incident: Incident) -> list[NotificationTarget]:
        if self._notifications is None:
            return []
        try:
            return await self._notifications.targets_for(incident)
        except Exception:
            logger.exception("notification targeting failed", extra={"incident_id": incident.id})
            return []

    async def reward_reporters(
        self,
        pending: PendingIncident,
        planned: dict[str, int],
        *,
        reason: str,
        now: datetime | None = None,
    ) -> list[RewardOutcome]:
        outcomes: list[RewardOutcome] = []
        for reporter_id, delta in planned.items():
            outcome = await self._ledger.apply(
                reporter_id, delta, reason=reason, pending_incident_id=pending.id, now=now
            )
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    async def reject_pending_incident(
        self,
        pending_id: str,
        *,
        moderator_id: str,
        reason: str,
        now: datetime | None = None,
    ) -> PendingIncident:
        now = now or datetime.now(timezone.utc)
        try:
            rejected = await self._pending.reject(pending_id, moderator_id=moderator_id, reason=reason, now=now)
        except StoreConflict as exc:
            raise InvalidState("pending_incident_not_pending") from exc
        if await self._queue.remove(pending_id):
            metrics.set_queue_depth(await self._queue.count())
        for reporter_id in rejected.reporter_ids:
            await self._history.add_suspicion(
                reporter_id, self._suspicion.rejection_penalty, max_score=self._suspicion.max_score
            )
        logger.info(
            "candidate rejected",
            extra={"pending_incident_id": pending_id, "moderator_id": moderator_id, "reporters": rejected.total_reports},
        )
        return rejected

    async def resolve_incident(self, incident_id: str, *, is_fake: bool, now: datetime | None = None) -> ResolveResult:
        now = now or datetime.now(timezone.utc)
        try:
            incident = await self._incidents.resolve(incident_id, is_fake=is_fake, now=now)
        except StoreConflict as exc:
            raise InvalidState("incident_already_resolved") from exc
        changes: list[RewardOutcome] = []
        if is_fake:
            for reporter_id in incident.reporter_ids:
                user = await self._users.get(reporter_id)
                if user is None:
                    continue
                delta = reputation_delta(correct=False, current_reputation=user.reputation, config=self._reputation)
                outcome = await self._ledger.apply(
                    reporter_id,
                    delta,
                    reason=REASON_FAKE,
                    pending_incident_id=incident.pending_incident_id or incident.id,
                    now=now,
                )
                if outcome is not None:
                    changes.append(outcome)
        logger.info("incident resolved", extra={"incident_id": incident_id, "is_fake": is_fake})
        return ResolveResult(incident=incident, reputation_changes=changes)
