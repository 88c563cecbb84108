"""Decide who hears about a published incident and how loudly."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Iterable, Protocol, Sequence

from crowdcheck.obs import metrics
from crowdcheck.verification.domain.models import (
    ActiveJourney,
    AudienceMember,
    FavoriteConnection,
    Incident,
    IncidentClass,
    NotificationPriority,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class NotificationDecision:
    should_notify: bool
    priority: NotificationPriority
    reason: str


@dataclass(frozen=True, slots=True)
class NotificationTarget:
    user_id: str
    priority: NotificationPriority
    reason: str


def extract_active_journey_line_ids(journey: ActiveJourney | None) -> list[str]:
    if journey is None:
        return []
    return [line_id for line_id in journey.line_ids if line_id is not None]


def extract_favorite_line_ids(favorites: Iterable[FavoriteConnection] | None) -> list[str]:
    """Union of line ids from favourites flagged ``notify_always``, first occurrence wins."""

    seen: dict[str, None] = {}
    for favorite in favorites or ():
        if not favorite.notify_always:
            continue
        for line_id in favorite.line_ids:
            if line_id is not None:
                seen.setdefault(line_id, None)
    return list(seen)


def should_notify(
    incident_line_ids: Sequence[str],
    active_journey_line_ids: Sequence[str] | None,
    favorite_line_ids: Sequence[str] | None,
    incident_class: IncidentClass,
) -> NotificationDecision:
    if not incident_line_ids:
        return NotificationDecision(False, NotificationPriority.LOW, "Incident has no associated lines")

    lines = set(incident_line_ids)
    severe = incident_class is IncidentClass.CLASS_1
    if active_journey_line_ids and lines.intersection(active_journey_line_ids):
        priority = NotificationPriority.CRITICAL if severe else NotificationPriority.HIGH
        return NotificationDecision(True, priority, "Incident affects a line on your active journey")
    if favorite_line_ids and lines.intersection(favorite_line_ids):
        priority = NotificationPriority.HIGH if severe else NotificationPriority.MEDIUM
        return NotificationDecision(True, priority, "Incident affects one of your favourite connections")
    return NotificationDecision(False, NotificationPriority.LOW, "Incident does not affect your lines")


class AudienceRepository(Protocol):
    async def list_candidates(self, line_ids: Sequence[str]) -> Sequence[AudienceMember]:
        """Users whose journey or favourites may touch any of ``line_ids``."""
        ...


class DeliveryCache(Protocol):
    async def mark_if_new(self, incident_id: str, user_id: str, ttl_seconds: int) -> bool:
        ...


class InMemoryAudienceRepository(AudienceRepository):
    def __init__(self, members: Iterable[AudienceMember] = ()) -> None:
        self.members: list[AudienceMember] = list(members)

    async def list_candidates(self, line_ids: Sequence[str]) -> Sequence[AudienceMember]:
        return list(self.members)


class InMemoryDeliveryCache(DeliveryCache):
    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[tuple[str, str], float] = {}

    async def mark_if_new(self, incident_id: str, user_id: str, ttl_seconds: int) -> bool:
        now = self._clock()
        key = (incident_id, user_id)
        expires = self._entries.get(key)
        if expires is not None and expires > now:
            return False
        self._entries[key] = now + ttl_seconds
        return True


class NotificationTargeting:
    """Resolve the per-user decision for every candidate listener of an incident."""

    def __init__(self, audience: AudienceRepository, deliveries: DeliveryCache, *, dedupe_ttl_seconds: int = 3600) -> None:
        self._audience = audience
        self._deliveries = deliveries
        self._ttl = dedupe_ttl_seconds

    async def targets_for(self, incident: Incident) -> list[NotificationTarget]:
        if not incident.line_ids:
            return []
        members = await self._audience.list_candidates(incident.line_ids)
        targets: list[NotificationTarget] = []
        for member in members:
            decision = should_notify(
                incident.line_ids,
                extract_active_journey_line_ids(member.active_journey),
                extract_favorite_line_ids(member.favorites),
                incident.incident_class,
            )
            if not decision.should_notify:
                continue
            if not await self._deliveries.mark_if_new(incident.id, member.user_id, self._ttl):
                continue
            metrics.inc_notification_target(decision.priority.value)
            targets.append(NotificationTarget(member.user_id, decision.priority, decision.reason))
        logger.info("notification targets resolved", extra={"incident_id": incident.id, "targets": len(targets)})
        return targets
