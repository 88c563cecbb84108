"""Operations exposed by the verification engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Sequence

from crowdcheck.obs import metrics
from crowdcheck.verification.domain.aggregator import PendingAggregator
from crowdcheck.verification.domain.config import VerificationConfig
from crowdcheck.verification.domain.cooldown import check_cooldown
from crowdcheck.verification.domain.errors import (
    AlreadyReported,
    Forbidden,
    InvalidState,
    NotFound,
    OnCooldown,
    RateLimited,
    StoreConflict,
    Unauthenticated,
)
from crowdcheck.verification.domain.history import ReportHistoryRepository, is_suspicious
from crowdcheck.verification.domain.locks import InMemorySubmissionLocks, SubmissionLocks
from crowdcheck.verification.domain.models import (
    Coordinates,
    Identity,
    Incident,
    IncidentKind,
    ModeratorQueueItem,
    PendingIncident,
    PendingStatus,
    ReportHistoryEntry,
    ReporterEntry,
    RewardOutcome,
)
from crowdcheck.verification.domain.notifications import NotificationTargeting
from crowdcheck.verification.domain.pending import IncidentRepository, PendingIncidentRepository
from crowdcheck.verification.domain.publisher import IncidentPublisher, ResolveResult
from crowdcheck.verification.domain.queue import ModeratorQueueRepository, build_queue_item
from crowdcheck.verification.domain.rate_limit import check_rate_limit
from crowdcheck.verification.domain.rewards import FailedRewardRepository, RewardLedger
from crowdcheck.verification.domain.scoring import ThresholdScorer
from crowdcheck.verification.domain.stops import StopDirectory
from crowdcheck.verification.domain.trust import TrustScoreService
from crowdcheck.verification.domain.users import UserRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SubmitReportResult:
    accepted: bool
    pending_incident_id: str
    threshold_progress: int
    was_published: bool
    published_incident_id: str | None
    reputation_gained: int
    reports_needed: int = 0
    reputation_needed: int = 0
    is_close: bool = False


@dataclass(frozen=True, slots=True)
class RateLimitInfo:
    remaining: dict[str, int]
    violations: int
    suspicious_score: int
    is_suspicious: bool


@dataclass(frozen=True, slots=True)
class CanSubmitResult:
    can_submit: bool
    reason: str | None = None
    retry_after: int | None = None
    remaining_ms: int | None = None
    cooldown_type: str | None = None
    rate_limit_info: RateLimitInfo | None = None


@dataclass(frozen=True, slots=True)
class QueueEntry:
    item: ModeratorQueueItem
    pending: PendingIncident


@dataclass(slots=True)
class ApproveResult:
    incident: Incident
    rewarded_users: list[RewardOutcome] = field(default_factory=list)


class VerificationService:
    """Report intake, moderation and maintenance passes over the repositories."""

    def __init__(
        self,
        *,
        history: ReportHistoryRepository,
        pending: PendingIncidentRepository,
        incidents: IncidentRepository,
        users: UserRepository,
        queue: ModeratorQueueRepository,
        failed_rewards: FailedRewardRepository,
        config: VerificationConfig | None = None,
        locks: SubmissionLocks | None = None,
        stops: StopDirectory | None = None,
        notifications: NotificationTargeting | None = None,
    ) -> None:
        self.config = config or VerificationConfig()
        self._history = history
        self._pending = pending
        self._incidents = incidents
        self._users = users
        self._queue = queue
        self._locks = locks or InMemorySubmissionLocks()
        self.scorer = ThresholdScorer(self.config.threshold)
        self.aggregator = PendingAggregator(pending, self.scorer, self.config.aggregation)
        self.ledger = RewardLedger(users, failed_rewards)
        self.publisher = IncidentPublisher(
            pending=pending,
            incidents=incidents,
            users=users,
            history=history,
            queue=queue,
            ledger=self.ledger,
            reputation=self.config.reputation,
            suspicion=self.config.suspicion,
            segment=self.config.segment,
            stops=stops,
            notifications=notifications,
        )
        self.trust = TrustScoreService(users, incidents, self.config.trust)

    @staticmethod
    def _require_identity(identity: Identity | None) -> Identity:
        if identity is None or not identity.user_id:
            raise Unauthenticated()
        return identity

    @staticmethod
    def _require_admin(identity: Identity | None) -> Identity:
        identity = VerificationService._require_identity(identity)
        if not identity.is_admin:
            raise Forbidden("admin_required")
        return identity

    @staticmethod
    def _require_staff(identity: Identity | None) -> Identity:
        identity = VerificationService._require_identity(identity)
        if not identity.is_staff:
            raise Forbidden("moderator_required")
        return identity

    async def submit_report(
        self,
        identity: Identity | None,
        *,
        kind: IncidentKind,
        location: Coordinates,
        description: str | None = None,
        line_ids: Sequence[str] = (),
        delay_minutes: int | None = None,
        now: datetime | None = None,
    ) -> SubmitReportResult:
        identity = self._require_identity(identity)
        now = now or datetime.now(timezone.utc)
        user_id = identity.user_id
        async with self._locks.hold(user_id):
            history = await self._history.get(user_id)
            reports = history.reports if history else []

            limit = check_rate_limit(reports, self.config.tier_for(identity.role), now)
            if not limit.allowed:
                await self._history.record_violation(
                    user_id,
                    penalty=self.config.suspicion.violation_penalty,
                    max_score=self.config.suspicion.max_score,
                )
                metrics.inc_report("rate_limited")
                logger.info("report rate limited", extra={"window": limit.window, "retry_after": limit.retry_after})
                raise RateLimited(limit.retry_after or 1, limit.window or "minute", limit.reason)

            cooldown = check_cooldown(reports, self.config.cooldown, now, kind=kind, location=location)
            if not cooldown.allowed:
                metrics.inc_report("cooldown")
                logger.info(
                    "report on cooldown",
                    extra={"cooldown_type": cooldown.cooldown_type, "remaining_ms": cooldown.remaining_ms},
                )
                raise OnCooldown(cooldown.remaining_ms, cooldown.cooldown_type or "anyReport", cooldown.reason)

            user = await self._users.get_or_create(
                user_id, starting_reputation=self.config.reputation.starting_reputation, role=identity.role
            )
            try:
                aggregation = await self.aggregator.submit(
                    ReporterEntry(reporter_id=user_id, reputation=user.reputation, reported_at=now),
                    kind=kind,
                    location=location,
                    now=now,
                    description=description,
                    line_ids=line_ids,
                    delay_minutes=delay_minutes,
                )
            except AlreadyReported:
                metrics.inc_report("duplicate")
                raise

            await self._history.append(
                user_id,
                ReportHistoryEntry(incident_id=aggregation.pending.id, kind=kind, created_at=now, location=location),
                retain_since=now - timedelta(days=self.config.suspicion.history_retention_days),
            )

            pending = aggregation.pending
            result = aggregation.result
            published_id: str | None = None
            gained = 0
            if result.is_official:
                try:
                    published = await self.publisher.publish_incident_from_pending(pending, now=now)
                except StoreConflict:
                    # closed by a moderator between scoring and publish; the report still counted
                    logger.info("candidate closed before auto-publish", extra={"pending_incident_id": pending.id})
                else:
                    published_id = published.incident.id
                    gained = published.reward_for(user_id)
            elif await self._queue.enqueue_if_absent(build_queue_item(pending, now)):
                metrics.set_queue_depth(await self._queue.count())

        metrics.inc_report("published" if published_id else "accepted")
        return SubmitReportResult(
            accepted=True,
            pending_incident_id=pending.id,
            threshold_progress=result.progress,
            was_published=published_id is not None,
            published_incident_id=published_id,
            reputation_gained=gained,
            reports_needed=result.reports_needed,
            reputation_needed=result.reputation_needed,
            is_close=result.is_close,
        )

    async def can_submit_report(
        self,
        identity: Identity | None,
        *,
        kind: IncidentKind | None = None,
        location: Coordinates | None = None,
        now: datetime | None = None,
    ) -> CanSubmitResult:
        """Same rate and cooldown decisions as ``submit_report`` without recording anything."""

        identity = self._require_identity(identity)
        now = now or datetime.now(timezone.utc)
        history = await self._history.get(identity.user_id)
        reports = history.reports if history else []
        limit = check_rate_limit(reports, self.config.tier_for(identity.role), now)
        info = RateLimitInfo(
            remaining=dict(limit.remaining),
            violations=history.rate_limit_violations if history else 0,
            suspicious_score=history.suspicious_activity_score if history else 0,
            is_suspicious=is_suspicious(history, self.config.suspicion),
        )
        if not limit.allowed:
            return CanSubmitResult(False, reason=limit.reason, retry_after=limit.retry_after, rate_limit_info=info)
        cooldown = check_cooldown(reports, self.config.cooldown, now, kind=kind, location=location)
        if not cooldown.allowed:
            return CanSubmitResult(
                False,
                reason=cooldown.reason,
                remaining_ms=cooldown.remaining_ms,
                cooldown_type=cooldown.cooldown_type,
                rate_limit_info=info,
            )
        return CanSubmitResult(True, rate_limit_info=info)

    async def list_pending_for_user(self, identity: Identity | None) -> list[PendingIncident]:
        identity = self._require_identity(identity)
        return list(await self._pending.list_for_reporter(identity.user_id))

    async def list_moderator_queue(self, identity: Identity | None) -> list[QueueEntry]:
        self._require_staff(identity)
        entries: list[QueueEntry] = []
        for item in await self._queue.list():
            pending = await self._pending.get(item.pending_incident_id)
            if pending is None:
                continue
            entries.append(QueueEntry(item=item, pending=pending))
        return entries

    async def _open_candidate(self, pending_id: str) -> PendingIncident:
        pending = await self._pending.get(pending_id)
        if pending is None:
            raise NotFound("pending_incident_not_found")
        if pending.status is not PendingStatus.PENDING:
            raise InvalidState("pending_incident_not_pending")
        return pending

    async def approve_report(
        self,
        identity: Identity | None,
        pending_incident_id: str,
        *,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> ApproveResult:
        moderator = self._require_admin(identity)
        pending = await self._open_candidate(pending_incident_id)
        try:
            published = await self.publisher.publish_incident_from_pending(pending, moderator=moderator, notes=notes, now=now)
        except StoreConflict as exc:
            raise InvalidState("pending_incident_not_pending") from exc
        metrics.inc_moderator_decision("approve")
        logger.info(
            "moderator approved candidate",
            extra={"pending_incident_id": pending_incident_id, "moderator_id": moderator.user_id, "incident_created": published.created},
        )
        return ApproveResult(incident=published.incident, rewarded_users=list(published.rewards))

    async def reject_report(
        self,
        identity: Identity | None,
        pending_incident_id: str,
        *,
        reason: str,
        now: datetime | None = None,
    ) -> bool:
        moderator = self._require_admin(identity)
        await self._open_candidate(pending_incident_id)
        await self.publisher.reject_pending_incident(
            pending_incident_id, moderator_id=moderator.user_id, reason=reason, now=now
        )
        metrics.inc_moderator_decision("reject")
        return True

    async def flag_user_for_spam(self, identity: Identity | None, user_id: str, *, reason: str) -> int:
        moderator = self._require_admin(identity)
        score = await self._history.flag(
            user_id,
            self.config.suspicion.flag_penalty,
            max_score=self.config.suspicion.max_score,
            notes=reason,
        )
        metrics.inc_moderator_decision("flag")
        logger.info("user flagged for spam", extra={"flagged_user_id": user_id, "moderator_id": moderator.user_id, "score": score})
        return score

    async def resolve_incident(
        self,
        identity: Identity | None,
        incident_id: str,
        *,
        is_fake: bool = False,
        now: datetime | None = None,
    ) -> ResolveResult:
        self._require_staff(identity)
        result = await self.publisher.resolve_incident(incident_id, is_fake=is_fake, now=now)
        metrics.inc_moderator_decision("resolve_fake" if is_fake else "resolve")
        return result

    async def expire_pending(self, *, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        expired = await self._pending.expire(now)
        for pending in expired:
            await self._queue.remove(pending.id)
        if expired:
            metrics.set_queue_depth(await self._queue.count())
            logger.info("candidates expired", extra={"count": len(expired)})
        return len(expired)

    async def recompute_all_trust_scores(self, *, now: datetime | None = None) -> int:
        return await self.trust.recompute_all(now=now)

    async def retry_failed_rewards(self, *, limit: int = 100) -> int:
        return await self.ledger.retry_failed(limit=limit)
