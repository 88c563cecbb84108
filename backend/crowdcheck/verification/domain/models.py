"""Record shapes shared by the verification engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Sequence
from uuid import uuid4


class IncidentKind(str, Enum):
    INCIDENT = "INCIDENT"
    NETWORK_FAILURE = "NETWORK_FAILURE"
    VEHICLE_FAILURE = "VEHICLE_FAILURE"
    ACCIDENT = "ACCIDENT"
    TRAFFIC_JAM = "TRAFFIC_JAM"
    PLATFORM_CHANGES = "PLATFORM_CHANGES"


class PendingStatus(str, Enum):
    """Lifecycle of an unconfirmed candidate."""

    PENDING = "PENDING"
    THRESHOLD_MET = "THRESHOLD_MET"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


PUBLISHABLE_STATUSES: frozenset[PendingStatus] = frozenset({PendingStatus.PENDING, PendingStatus.THRESHOLD_MET})


class IncidentStatus(str, Enum):
    PUBLISHED = "PUBLISHED"
    RESOLVED = "RESOLVED"


class QueuePriority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {QueuePriority.HIGH: 0, QueuePriority.MEDIUM: 1, QueuePriority.LOW: 2}


class Role(str, Enum):
    USER = "USER"
    MODERATOR = "MODERATOR"
    ADMIN = "ADMIN"


class IncidentClass(str, Enum):
    """Severity class used by notification targeting."""

    CLASS_1 = "CLASS_1"
    CLASS_2 = "CLASS_2"


class NotificationPriority(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


INCIDENT_TITLES: dict[IncidentKind, str] = {
    IncidentKind.ACCIDENT: "Accident",
    IncidentKind.TRAFFIC_JAM: "Traffic jam",
    IncidentKind.INCIDENT: "Other incident",
    IncidentKind.NETWORK_FAILURE: "Network failure",
    IncidentKind.VEHICLE_FAILURE: "Vehicle failure",
    IncidentKind.PLATFORM_CHANGES: "Platform change",
}

_SEVERE_KINDS = frozenset({IncidentKind.ACCIDENT, IncidentKind.VEHICLE_FAILURE})


def priority_for_kind(kind: IncidentKind) -> QueuePriority:
    if kind in _SEVERE_KINDS:
        return QueuePriority.HIGH
    if kind is IncidentKind.TRAFFIC_JAM:
        return QueuePriority.MEDIUM
    return QueuePriority.LOW


def incident_class_for_kind(kind: IncidentKind) -> IncidentClass:
    return IncidentClass.CLASS_1 if kind in _SEVERE_KINDS else IncidentClass.CLASS_2


def new_id() -> str:
    return str(uuid4())


@dataclass(frozen=True, slots=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass(frozen=True, slots=True)
class Identity:
    """Caller identity resolved by the request-handling layer."""

    user_id: str
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @property
    def is_staff(self) -> bool:
        return self.role in (Role.MODERATOR, Role.ADMIN)


@dataclass(frozen=True, slots=True)
class ReportHistoryEntry:
    incident_id: str
    kind: IncidentKind
    created_at: datetime
    location: Coordinates | None = None


@dataclass(slots=True)
class ReportHistory:
    """Per-identity append-only log used for rate limiting and cooldowns."""

    user_id: str
    reports: list[ReportHistoryEntry] = field(default_factory=list)
    rate_limit_violations: int = 0
    suspicious_activity_score: int = 0
    last_report_at: datetime | None = None
    flagged_by_moderator: bool = False
    moderator_notes: str | None = None


@dataclass(frozen=True, slots=True)
class ReporterEntry:
    reporter_id: str
    reputation: int
    reported_at: datetime


@dataclass(slots=True)
class PendingIncident:
    """Unconfirmed candidate aggregating corroborating reports."""

    id: str
    kind: IncidentKind
    location: Coordinates
    created_at: datetime
    last_report_at: datetime
    expires_at: datetime
    status: PendingStatus = PendingStatus.PENDING
    reporters: list[ReporterEntry] = field(default_factory=list)
    description: str | None = None
    line_ids: tuple[str, ...] = ()
    delay_minutes: int | None = None
    threshold_score: float = 0.0
    threshold_required: float = 1.0
    published_incident_id: str | None = None
    moderator_id: str | None = None
    moderator_notes: str | None = None
    threshold_met_at: datetime | None = None

    @property
    def reporter_ids(self) -> list[str]:
        return [entry.reporter_id for entry in self.reporters]

    @property
    def reporter_reputations(self) -> list[int]:
        return [entry.reputation for entry in self.reporters]

    @property
    def total_reports(self) -> int:
        return len(self.reporters)

    @property
    def aggregate_reputation(self) -> int:
        return sum(entry.reputation for entry in self.reporters)

    def has_reporter(self, user_id: str) -> bool:
        return any(entry.reporter_id == user_id for entry in self.reporters)

    @property
    def threshold_progress(self) -> int:
        return round(min(max(self.threshold_score, 0.0), 1.0) * 100)


@dataclass(frozen=True, slots=True)
class Stop:
    id: str
    name: str
    coordinates: Coordinates


@dataclass(frozen=True, slots=True)
class IncidentSegment:
    start_stop_id: str
    end_stop_id: str
    start_stop_name: str
    end_stop_name: str
    confidence: str
    distance_from_start: float
    distance_from_end: float

    def describe(self) -> str:
        return f"Between {self.start_stop_name} and {self.end_stop_name} ({self.confidence.lower()} confidence)"


@dataclass(slots=True)
class Incident:
    """Published fact. Only status, resolution time and the fake flag change after creation."""

    id: str
    title: str
    kind: IncidentKind
    created_at: datetime
    status: IncidentStatus = IncidentStatus.PUBLISHED
    description: str | None = None
    line_ids: tuple[str, ...] = ()
    delay_minutes: int | None = None
    reported_by: str | None = None
    reporter_ids: tuple[str, ...] = ()
    pending_incident_id: str | None = None
    is_fake: bool = False
    segment: IncidentSegment | None = None
    resolved_at: datetime | None = None

    @property
    def incident_class(self) -> IncidentClass:
        return incident_class_for_kind(self.kind)


@dataclass(slots=True)
class ModeratorQueueItem:
    id: str
    pending_incident_id: str
    priority: QueuePriority
    reason: str
    created_at: datetime


@dataclass(frozen=True, slots=True)
class TrustScoreBreakdown:
    base_score: float
    accuracy_bonus: float
    high_rep_bonus: float
    fake_penalty: float
    final_score: float
    recent_reports: int
    validated_reports: int
    fake_reports: int
    validation_rate: float


@dataclass(slots=True)
class UserRecord:
    """External user entity; this service only touches reputation and trust fields."""

    id: str
    reputation: int
    role: Role = Role.USER
    trust_score: float | None = None
    trust_score_breakdown: TrustScoreBreakdown | None = None
    trust_score_updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class RewardOutcome:
    user_id: str
    old_reputation: int
    new_reputation: int
    change: int


@dataclass(slots=True)
class FailedReward:
    """Reputation adjustment that could not be applied and awaits retry."""

    id: str
    user_id: str
    delta: int
    reason: str
    pending_incident_id: str
    created_at: datetime
    attempts: int = 1
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class ActiveJourney:
    line_ids: Sequence[str | None] = ()


@dataclass(frozen=True, slots=True)
class FavoriteConnection:
    line_ids: Sequence[str | None] = ()
    notify_always: bool = False


@dataclass(frozen=True, slots=True)
class AudienceMember:
    """A user whose journey or favourites may intersect an incident."""

    user_id: str
    active_journey: ActiveJourney | None = None
    favorites: Sequence[FavoriteConnection] = ()
