"""Request and response models for the verification routers."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from crowdcheck.verification.domain.models import (
    Incident,
    IncidentKind,
    IncidentSegment,
    PendingIncident,
    RewardOutcome,
)
from crowdcheck.verification.domain.service import CanSubmitResult, QueueEntry, SubmitReportResult


class LocationIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class SubmitReportRequest(BaseModel):
    kind: IncidentKind
    location: LocationIn
    description: Optional[str] = Field(default=None, max_length=2000)
    line_ids: list[str] = Field(default_factory=list, max_length=50)
    delay_minutes: Optional[int] = Field(default=None, ge=0, le=1440)


class SubmitReportResponse(BaseModel):
    accepted: bool
    pending_incident_id: str
    threshold_progress: int
    was_published: bool
    published_incident_id: Optional[str] = None
    reputation_gained: int
    reports_needed: int
    reputation_needed: int
    is_close: bool

    @classmethod
    def from_result(cls, result: SubmitReportResult) -> "SubmitReportResponse":
        return cls(
            accepted=result.accepted,
            pending_incident_id=result.pending_incident_id,
            threshold_progress=result.threshold_progress,
            was_published=result.was_published,
            published_incident_id=result.published_incident_id,
            reputation_gained=result.reputation_gained,
            reports_needed=result.reports_needed,
            reputation_needed=result.reputation_needed,
            is_close=result.is_close,
        )


class RateLimitInfoOut(BaseModel):
    remaining: dict[str, int]
    violations: int
    suspicious_score: int
    is_suspicious: bool


class CanSubmitResponse(BaseModel):
    can_submit: bool
    reason: Optional[str] = None
    retry_after: Optional[int] = None
    remaining_ms: Optional[int] = None
    cooldown_type: Optional[str] = None
    rate_limit_info: Optional[RateLimitInfoOut] = None

    @classmethod
    def from_result(cls, result: CanSubmitResult) -> "CanSubmitResponse":
        info = result.rate_limit_info
        return cls(
            can_submit=result.can_submit,
            reason=result.reason,
            retry_after=result.retry_after,
            remaining_ms=result.remaining_ms,
            cooldown_type=result.cooldown_type,
            rate_limit_info=(
                RateLimitInfoOut(
                    remaining=dict(info.remaining),
                    violations=info.violations,
                    suspicious_score=info.suspicious_score,
                    is_suspicious=info.is_suspicious,
                )
                if info
                else None
            ),
        )


class PendingIncidentOut(BaseModel):
    id: str
    kind: IncidentKind
    status: str
    latitude: float
    longitude: float
    description: Optional[str]
    line_ids: list[str]
    delay_minutes: Optional[int]
    reporter_ids: list[str]
    total_reports: int
    aggregate_reputation: int
    threshold_score: float
    threshold_required: float
    threshold_progress: int
    created_at: datetime
    last_report_at: datetime
    expires_at: datetime

    @classmethod
    def from_model(cls, pending: PendingIncident) -> "PendingIncidentOut":
        return cls(
            id=pending.id,
            kind=pending.kind,
            status=pending.status.value,
            latitude=pending.location.latitude,
            longitude=pending.location.longitude,
            description=pending.description,
            line_ids=list(pending.line_ids),
            delay_minutes=pending.delay_minutes,
            reporter_ids=pending.reporter_ids,
            total_reports=pending.total_reports,
            aggregate_reputation=pending.aggregate_reputation,
            threshold_score=pending.threshold_score,
            threshold_required=pending.threshold_required,
            threshold_progress=pending.threshold_progress,
            created_at=pending.created_at,
            last_report_at=pending.last_report_at,
            expires_at=pending.expires_at,
        )


class QueueEntryOut(BaseModel):
    id: str
    pending_incident_id: str
    priority: str
    reason: str
    created_at: datetime
    pending: PendingIncidentOut

    @classmethod
    def from_entry(cls, entry: QueueEntry) -> "QueueEntryOut":
        return cls(
            id=entry.item.id,
            pending_incident_id=entry.item.pending_incident_id,
            priority=entry.item.priority.value,
            reason=entry.item.reason,
            created_at=entry.item.created_at,
            pending=PendingIncidentOut.from_model(entry.pending),
        )


class SegmentOut(BaseModel):
    start_stop_id: str
    end_stop_id: str
    start_stop_name: str
    end_stop_name: str
    confidence: str
    distance_from_start: float
    distance_from_end: float
    description: str

    @classmethod
    def from_model(cls, segment: IncidentSegment) -> "SegmentOut":
        return cls(
            start_stop_id=segment.start_stop_id,
            end_stop_id=segment.end_stop_id,
            start_stop_name=segment.start_stop_name,
            end_stop_name=segment.end_stop_name,
            confidence=segment.confidence,
            distance_from_start=segment.distance_from_start,
            distance_from_end=segment.distance_from_end,
            description=segment.describe(),
        )


class IncidentOut(BaseModel):
    id: str
    title: str
    kind: IncidentKind
    status: str
    description: Optional[str]
    line_ids: list[str]
    delay_minutes: Optional[int]
    reported_by: Optional[str]
    pending_incident_id: Optional[str]
    is_fake: bool
    segment: Optional[SegmentOut]
    created_at: datetime
    resolved_at: Optional[datetime]

    @classmethod
    def from_model(cls, incident: Incident) -> "IncidentOut":
        return cls(
            id=incident.id,
            title=incident.title,
            kind=incident.kind,
            status=incident.status.value,
            description=incident.description,
            line_ids=list(incident.line_ids),
            delay_minutes=incident.delay_minutes,
            reported_by=incident.reported_by,
            pending_incident_id=incident.pending_incident_id,
            is_fake=incident.is_fake,
            segment=SegmentOut.from_model(incident.segment) if incident.segment else None,
            created_at=incident.created_at,
            resolved_at=incident.resolved_at,
        )


class RewardOut(BaseModel):
    user_id: str
    old_reputation: int
    new_reputation: int
    change: int

    @classmethod
    def from_model(cls, outcome: RewardOutcome) -> "RewardOut":
        return cls(
            user_id=outcome.user_id,
            old_reputation=outcome.old_reputation,
            new_reputation=outcome.new_reputation,
            change=outcome.change,
        )


class ApproveRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=2000)


class ApproveResponse(BaseModel):
    incident: IncidentOut
    rewarded_users: list[RewardOut]


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class RejectResponse(BaseModel):
    success: bool


class FlagUserRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class FlagUserResponse(BaseModel):
    new_suspicious_score: int


class ResolveIncidentRequest(BaseModel):
    is_fake: bool = False


class ResolveIncidentResponse(BaseModel):
    incident: IncidentOut
    reputation_changes: list[RewardOut]
