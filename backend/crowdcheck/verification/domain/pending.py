"""Candidate and published-incident storage contracts.

Every mutating call is a single atomic step in the backing store: appends and
publishes are conditional on the candidate's current status, never a
read-modify-write of a cached copy.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Protocol, Sequence

from crowdcheck.verification.domain.errors import AlreadyReported, NotFound, StoreConflict
from crowdcheck.verification.domain.geo import BoundingBox
from crowdcheck.verification.domain.models import (
    PUBLISHABLE_STATUSES,
    Incident,
    IncidentKind,
    IncidentStatus,
    PendingIncident,
    PendingStatus,
    ReporterEntry,
)


class IncidentRepository(Protocol):
    async def get(self, incident_id: str) -> Incident | None:
        ...

    async def get_by_pending(self, pending_incident_id: str) -> Incident | None:
        ...

    async def resolve(self, incident_id: str, *, is_fake: bool, now: datetime) -> Incident:
        """Move PUBLISHED to RESOLVED; raises ``StoreConflict`` when already resolved."""
        ...

    async def list_contributed(self, user_id: str, since: datetime) -> Sequence[Incident]:
        ...

    async def list_contributor_ids(self) -> Sequence[str]:
        ...


class PendingIncidentRepository(Protocol):
    async def get(self, pending_id: str) -> PendingIncident | None:
        ...

    async def find_open_near(self, kind: IncidentKind, box: BoundingBox, since: datetime) -> Sequence[PendingIncident]:
        ...

    async def insert(self, pending: PendingIncident) -> PendingIncident:
        ...

    async def append_reporter(self, pending_id: str, entry: ReporterEntry) -> PendingIncident:
        """Add a reporter while the candidate is PENDING.

        Raises ``AlreadyReported`` for a repeat reporter and ``StoreConflict``
        when the candidate has left PENDING.
        """
        ...

    async def update_score(self, pending_id: str, *, score: float, required: float) -> None:
        """Store a recomputed score while PENDING; a lower score never replaces a higher one."""
        ...

    async def publish(
        self,
        pending_id: str,
        incident: Incident,
        *,
        status: PendingStatus,
        now: datetime,
        moderator_id: str | None = None,
        notes: str | None = None,
    ) -> PendingIncident:
        """Compare-and-set the candidate to ``status`` and insert ``incident``.

        Returns the claimed snapshot. Raises ``StoreConflict`` if another caller
        already published or the candidate is no longer publishable.
        """
        ...

    async def reject(self, pending_id: str, *, moderator_id: str, reason: str, now: datetime) -> PendingIncident:
        ...

    async def list_for_reporter(self, user_id: str) -> Sequence[PendingIncident]:
        ...

    async def expire(self, now: datetime) -> Sequence[PendingIncident]:
        ...


def _copy_pending(pending: PendingIncident) -> PendingIncident:
    return replace(pending, reporters=list(pending.reporters))


class InMemoryIncidentRepository(IncidentRepository):
    def __init__(self) -> None:
        self.incidents: dict[str, Incident] = {}

    def add(self, incident: Incident) -> None:
        self.incidents[incident.id] = replace(incident)

    async def get(self, incident_id: str) -> Incident | None:
        incident = self.incidents.get(incident_id)
        return replace(incident) if incident else None

    async def get_by_pending(self, pending_incident_id: str) -> Incident | None:
        for incident in self.incidents.values():
            if incident.pending_incident_id == pending_incident_id:
                return replace(incident)
        return None

    async def resolve(self, incident_id: str, *, is_fake: bool, now: datetime) -> Incident:
        incident = self.incidents.get(incident_id)
        if incident is None:
            raise NotFound("incident_not_found")
        if incident.status is not IncidentStatus.PUBLISHED:
            raise StoreConflict("incident_already_resolved")
        incident.status = IncidentStatus.RESOLVED
        incident.is_fake = is_fake
        incident.resolved_at = now
        return replace(incident)

    async def list_contributed(self, user_id: str, since: datetime) -> Sequence[Incident]:
        return [
            replace(incident)
            for incident in self.incidents.values()
            if user_id in incident.reporter_ids and incident.created_at >= since
        ]

    async def list_contributor_ids(self) -> Sequence[str]:
        seen: dict[str, None] = {}
        for incident in self.incidents.values():
            for reporter_id in incident.reporter_ids:
                seen.setdefault(reporter_id, None)
        return list(seen)


class InMemoryPendingIncidentRepository(PendingIncidentRepository):
    """Dict-backed store; a lock stands in for the database's row-level atomicity."""

    def __init__(self, incidents: InMemoryIncidentRepository | None = None) -> None:
        self.pending: dict[str, PendingIncident] = {}
        self.incidents = incidents or InMemoryIncidentRepository()
        self._lock = asyncio.Lock()

    def _require(self, pending_id: str) -> PendingIncident:
        pending = self.pending.get(pending_id)
        if pending is None:
            raise NotFound("pending_incident_not_found")
        return pending

    async def get(self, pending_id: str) -> PendingIncident | None:
        pending = self.pending.get(pending_id)
        return _copy_pending(pending) if pending else None

    async def find_open_near(self, kind: IncidentKind, box: BoundingBox, since: datetime) -> Sequence[PendingIncident]:
        return [
            _copy_pending(pending)
            for pending in self.pending.values()
            if pending.status is PendingStatus.PENDING
            and pending.kind == kind
            and pending.created_at >= since
            and box.contains(pending.location)
        ]

    async def insert(self, pending: PendingIncident) -> PendingIncident:
        async with self._lock:
            self.pending[pending.id] = _copy_pending(pending)
        return _copy_pending(pending)

    async def append_reporter(self, pending_id: str, entry: ReporterEntry) -> PendingIncident:
        async with self._lock:
            pending = self._require(pending_id)
            if pending.has_reporter(entry.reporter_id):
                raise AlreadyReported(pending_id)
            if pending.status is not PendingStatus.PENDING:
                raise StoreConflict("pending_incident_closed")
            pending.reporters.append(entry)
            pending.last_report_at = max(pending.last_report_at, entry.reported_at)
            return _copy_pending(pending)

    async def update_score(self, pending_id: str, *, score: float, required: float) -> None:
        async with self._lock:
            pending = self.pending.get(pending_id)
            if pending is None or pending.status is not PendingStatus.PENDING:
                return
            # writers race; the score only grows because reporters are only added
            pending.threshold_score = max(pending.threshold_score, score)
            pending.threshold_required = required

    async def publish(
        self,
        pending_id: str,
        incident: Incident,
        *,
        status: PendingStatus,
        now: datetime,
        moderator_id: str | None = None,
        notes: str | None = None,
    ) -> PendingIncident:
        async with self._lock:
            pending = self._require(pending_id)
            if pending.status not in PUBLISHABLE_STATUSES or pending.published_incident_id is not None:
                raise StoreConflict("pending_incident_already_published")
            pending.status = status
            pending.published_incident_id = incident.id
            pending.threshold_met_at = now
            if moderator_id is not None:
                pending.moderator_id = moderator_id
                pending.moderator_notes = notes
            self.incidents.add(replace(incident, reporter_ids=tuple(pending.reporter_ids)))
            return _copy_pending(pending)

    async def reject(self, pending_id: str, *, moderator_id: str, reason: str, now: datetime) -> PendingIncident:
        async with self._lock:
            pending = self._require(pending_id)
            if pending.status is not PendingStatus.PENDING:
                raise StoreConflict("pending_incident_closed")
            pending.status = PendingStatus.REJECTED
            pending.moderator_id = moderator_id
            pending.moderator_notes = reason
            return _copy_pending(pending)

    async def list_for_reporter(self, user_id: str) -> Sequence[PendingIncident]:
        items = [
            _copy_pending(pending)
            for pending in self.pending.values()
            if pending.status is PendingStatus.PENDING and pending.has_reporter(user_id)
        ]
        items.sort(key=lambda pending: pending.created_at, reverse=True)
        return items

    async def expire(self, now: datetime) -> Sequence[PendingIncident]:
        expired: list[PendingIncident] = []
        async with self._lock:
            for pending in self.pending.values():
                if pending.status is PendingStatus.PENDING and pending.expires_at <= now:
                    pending.status = PendingStatus.EXPIRED
                    expired.append(_copy_pending(pending))
        return expired
