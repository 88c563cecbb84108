"""asyncpg repositories for the verification engine.

Conditional updates carry the status predicate in the WHERE clause and run
inside a transaction holding the candidate row lock, so concurrent writers see
a consistent candidate.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime
from typing import Iterable, Sequence

import asyncpg

from crowdcheck.verification.domain.errors import AlreadyReported, NotFound, StoreConflict
from crowdcheck.verification.domain.geo import BoundingBox, bounding_box, nearest_stops
from crowdcheck.verification.domain.history import ReportHistoryRepository
from crowdcheck.verification.domain.models import (
    ActiveJourney,
    AudienceMember,
    Coordinates,
    FailedReward,
    FavoriteConnection,
    Incident,
    IncidentKind,
    IncidentSegment,
    IncidentStatus,
    ModeratorQueueItem,
    PendingIncident,
    PendingStatus,
    QueuePriority,
    ReportHistory,
    ReportHistoryEntry,
    ReporterEntry,
    RewardOutcome,
    Role,
    Stop,
    TrustScoreBreakdown,
    UserRecord,
)
from crowdcheck.verification.domain.notifications import AudienceRepository
from crowdcheck.verification.domain.pending import IncidentRepository, PendingIncidentRepository
from crowdcheck.verification.domain.queue import ModeratorQueueRepository
from crowdcheck.verification.domain.rewards import FailedRewardRepository
from crowdcheck.verification.domain.stops import StopDirectory
from crowdcheck.verification.domain.users import UserRepository

_PENDING_COLUMNS = """
    id, kind, status, latitude, longitude, description, line_ids, delay_minutes,
    threshold_score, threshold_required, created_at, last_report_at, expires_at,
    published_incident_id, moderator_id, moderator_notes, threshold_met_at
"""

_INCIDENT_COLUMNS = """
    id, title, kind, status, description, line_ids, delay_minutes, reported_by,
    reporter_ids, pending_incident_id, is_fake, segment, created_at, resolved_at
"""


def _row_to_pending(row: asyncpg.Record, reporters: list[ReporterEntry]) -> PendingIncident:
    return PendingIncident(
        id=str(row["id"]),
        kind=IncidentKind(row["kind"]),
        status=PendingStatus(row["status"]),
        location=Coordinates(float(row["latitude"]), float(row["longitude"])),
        description=row["description"],
        line_ids=tuple(row["line_ids"] or ()),
        delay_minutes=row["delay_minutes"],
        threshold_score=float(row["threshold_score"]),
        threshold_required=float(row["threshold_required"]),
        created_at=row["created_at"],
        last_report_at=row["last_report_at"],
        expires_at=row["expires_at"],
        published_incident_id=row["published_incident_id"],
        moderator_id=row["moderator_id"],
        moderator_notes=row["moderator_notes"],
        threshold_met_at=row["threshold_met_at"],
        reporters=reporters,
    )


def _row_to_incident(row: asyncpg.Record) -> Incident:
    segment = None
    if row["segment"] is not None:
        segment = IncidentSegment(**json.loads(row["segment"]))
    return Incident(
        id=str(row["id"]),
        title=str(row["title"]),
        kind=IncidentKind(row["kind"]),
        status=IncidentStatus(row["status"]),
        description=row["description"],
        line_ids=tuple(row["line_ids"] or ()),
        delay_minutes=row["delay_minutes"],
        reported_by=row["reported_by"],
        reporter_ids=tuple(row["reporter_ids"] or ()),
        pending_incident_id=row["pending_incident_id"],
        is_fake=bool(row["is_fake"]),
        segment=segment,
        created_at=row["created_at"],
        resolved_at=row["resolved_at"],
    )


def _row_to_user(row: asyncpg.Record) -> UserRecord:
    breakdown = None
    if row["trust_score_breakdown"] is not None:
        breakdown = TrustScoreBreakdown(**json.loads(row["trust_score_breakdown"]))
    return UserRecord(
        id=str(row["id"]),
        reputation=int(row["reputation"]),
        role=Role(row["role"]),
        trust_score=row["trust_score"],
        trust_score_breakdown=breakdown,
        trust_score_updated_at=row["trust_score_updated_at"],
    )


async def _load_reporters(conn: asyncpg.Connection, pending_ids: Sequence[str]) -> dict[str, list[ReporterEntry]]:
    grouped: dict[str, list[ReporterEntry]] = {pending_id: [] for pending_id in pending_ids}
    if not pending_ids:
        return grouped
    rows = await conn.fetch(
        """
        SELECT pending_incident_id, reporter_id, reputation, reported_at
        FROM vf_pending_reporter
        WHERE pending_incident_id = ANY($1::text[])
        ORDER BY position
        """,
        list(pending_ids),
    )
    for row in rows:
        grouped[row["pending_incident_id"]].append(
            ReporterEntry(reporter_id=row["reporter_id"], reputation=int(row["reputation"]), reported_at=row["reported_at"])
        )
    return grouped


async def _hydrate(conn: asyncpg.Connection, rows: Sequence[asyncpg.Record]) -> list[PendingIncident]:
    reporters = await _load_reporters(conn, [row["id"] for row in rows])
    return [_row_to_pending(row, reporters[row["id"]]) for row in rows]


class PostgresReportHistoryRepository(ReportHistoryRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def _fetch(self, conn: asyncpg.Connection, user_id: str) -> ReportHistory | None:
        row = await conn.fetchrow(
            """
            SELECT user_id, rate_limit_violations, suspicious_activity_score, last_report_at,
                   flagged_by_moderator, moderator_notes
            FROM vf_report_history WHERE user_id = $1
            """,
            user_id,
        )
        if row is None:
            return None
        entries = await conn.fetch(
            """
            SELECT incident_id, kind, latitude, longitude, created_at
            FROM vf_report_history_entry WHERE user_id = $1 ORDER BY created_at
            """,
            user_id,
        )
        return ReportHistory(
            user_id=user_id,
            reports=[
                ReportHistoryEntry(
                    incident_id=entry["incident_id"],
                    kind=IncidentKind(entry["kind"]),
                    created_at=entry["created_at"],
                    location=(
                        Coordinates(entry["latitude"], entry["longitude"])
                        if entry["latitude"] is not None and entry["longitude"] is not None
                        else None
                    ),
                )
                for entry in entries
            ],
            rate_limit_violations=int(row["rate_limit_violations"]),
            suspicious_activity_score=int(row["suspicious_activity_score"]),
            last_report_at=row["last_report_at"],
            flagged_by_moderator=bool(row["flagged_by_moderator"]),
            moderator_notes=row["moderator_notes"],
        )

    async def get(self, user_id: str) -> ReportHistory | None:
        async with self._pool.acquire() as conn:
            return await self._fetch(conn, user_id)

    async def append(self, user_id: str, entry: ReportHistoryEntry, *, retain_since: datetime) -> ReportHistory:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO vf_report_history (user_id, last_report_at) VALUES ($1, $2)
                    ON CONFLICT (user_id) DO UPDATE
                    SET last_report_at = GREATEST(vf_report_history.last_report_at, EXCLUDED.last_report_at)
                    """,
                    user_id,
                    entry.created_at,
                )
                await conn.execute(
                    "DELETE FROM vf_report_history_entry WHERE user_id = $1 AND created_at < $2",
                    user_id,
                    retain_since,
                )
                await conn.execute(
                    """
                    INSERT INTO vf_report_history_entry (user_id, incident_id, kind, latitude, longitude, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    user_id,
                    entry.incident_id,
                    entry.kind.value,
                    entry.location.latitude if entry.location else None,
                    entry.location.longitude if entry.location else None,
                    entry.created_at,
                )
                history = await self._fetch(conn, user_id)
        assert history is not None
        return history

    async def record_violation(self, user_id: str, *, penalty: int, max_score: int) -> ReportHistory:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO vf_report_history (user_id, rate_limit_violations, suspicious_activity_score)
                VALUES ($1, 1, LEAST($3, $2))
                ON CONFLICT (user_id) DO UPDATE
                SET rate_limit_violations = vf_report_history.rate_limit_violations + 1,
                    suspicious_activity_score = LEAST($3, vf_report_history.suspicious_activity_score + $2)
                """,
                user_id,
                penalty,
                max_score,
            )
            history = await self._fetch(conn, user_id)
        assert history is not None
        return history

    async def add_suspicion(self, user_id: str, amount: int, *, max_score: int) -> int:
        value = await self._pool.fetchval(
            """
            INSERT INTO vf_report_history (user_id, suspicious_activity_score) VALUES ($1, LEAST($3, $2))
            ON CONFLICT (user_id) DO UPDATE
            SET suspicious_activity_score = LEAST($3, vf_report_history.suspicious_activity_score + $2)
            RETURNING suspicious_activity_score
            """,
            user_id,
            amount,
            max_score,
        )
        return int(value)

    async def flag(self, user_id: str, amount: int, *, max_score: int, notes: str | None) -> int:
        value = await self._pool.fetchval(
            """
            INSERT INTO vf_report_history (user_id, suspicious_activity_score, flagged_by_moderator, moderator_notes)
            VALUES ($1, LEAST($3, $2), TRUE, $4)
            ON CONFLICT (user_id) DO UPDATE
            SET suspicious_activity_score = LEAST($3, vf_report_history.suspicious_activity_score + $2),
                flagged_by_moderator = TRUE,
                moderator_notes = $4
            RETURNING suspicious_activity_score
            """,
            user_id,
            amount,
            max_score,
            notes,
        )
        return int(value)


class PostgresIncidentRepository(IncidentRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, incident_id: str) -> Incident | None:
        row = await self._pool.fetchrow(f"SELECT {_INCIDENT_COLUMNS} FROM vf_incident WHERE id = $1", incident_id)
        return _row_to_incident(row) if row else None

    async def get_by_pending(self, pending_incident_id: str) -> Incident | None:
        row = await self._pool.fetchrow(
            f"SELECT {_INCIDENT_COLUMNS} FROM vf_incident WHERE pending_incident_id = $1",
            pending_incident_id,
        )
        return _row_to_incident(row) if row else None

    async def resolve(self, incident_id: str, *, is_fake: bool, now: datetime) -> Incident:
        row = await self._pool.fetchrow(
            f"""
            UPDATE vf_incident SET status = 'RESOLVED', is_fake = $2, resolved_at = $3
            WHERE id = $1 AND status = 'PUBLISHED'
            RETURNING {_INCIDENT_COLUMNS}
            """,
            incident_id,
            is_fake,
            now,
        )
        if row is not None:
            return _row_to_incident(row)
        exists = await self._pool.fetchval("SELECT 1 FROM vf_incident WHERE id = $1", incident_id)
        if exists is None:
            raise NotFound("incident_not_found")
        raise StoreConflict("incident_already_resolved")

    async def list_contributed(self, user_id: str, since: datetime) -> Sequence[Incident]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_INCIDENT_COLUMNS} FROM vf_incident
            WHERE $1 = ANY(reporter_ids) AND created_at >= $2
            """,
            user_id,
            since,
        )
        return [_row_to_incident(row) for row in rows]

    async def list_contributor_ids(self) -> Sequence[str]:
        rows = await self._pool.fetch("SELECT DISTINCT unnest(reporter_ids) AS user_id FROM vf_incident")
        return [str(row["user_id"]) for row in rows]


class PostgresPendingIncidentRepository(PendingIncidentRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, pending_id: str) -> PendingIncident | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_PENDING_COLUMNS} FROM vf_pending_incident WHERE id = $1", pending_id)
            if row is None:
                return None
            return (await _hydrate(conn, [row]))[0]

    async def find_open_near(self, kind: IncidentKind, box: BoundingBox, since: datetime) -> Sequence[PendingIncident]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_PENDING_COLUMNS} FROM vf_pending_incident
                WHERE status = 'PENDING' AND kind = $1 AND created_at >= $2
                  AND latitude BETWEEN $3 AND $4 AND longitude BETWEEN $5 AND $6
                ORDER BY created_at
                """,
                kind.value,
                since,
                box.min_latitude,
                box.max_latitude,
                box.min_longitude,
                box.max_longitude,
            )
            return await _hydrate(conn, rows)

    async def insert(self, pending: PendingIncident) -> PendingIncident:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO vf_pending_incident (
                        id, kind, status, latitude, longitude, description, line_ids, delay_minutes,
                        threshold_score, threshold_required, created_at, last_report_at, expires_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                    """,
                    pending.id,
                    pending.kind.value,
                    pending.status.value,
                    pending.location.latitude,
                    pending.location.longitude,
                    pending.description,
                    list(pending.line_ids),
                    pending.delay_minutes,
                    pending.threshold_score,
                    pending.threshold_required,
                    pending.created_at,
                    pending.last_report_at,
                    pending.expires_at,
                )
                await conn.executemany(
                    """
                    INSERT INTO vf_pending_reporter (pending_incident_id, reporter_id, reputation, reported_at)
                    VALUES ($1, $2, $3, $4)
                    """,
                    [(pending.id, entry.reporter_id, entry.reputation, entry.reported_at) for entry in pending.reporters],
                )
        return pending

    async def append_reporter(self, pending_id: str, entry: ReporterEntry) -> PendingIncident:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                status = await conn.fetchval(
                    "SELECT status FROM vf_pending_incident WHERE id = $1 FOR UPDATE", pending_id
                )
                if status is None:
                    raise NotFound("pending_incident_not_found")
                inserted = await conn.fetchval(
                    """
                    INSERT INTO vf_pending_reporter (pending_incident_id, reporter_id, reputation, reported_at)
                    SELECT $1, $2, $3, $4 WHERE $5 = 'PENDING'
                    ON CONFLICT (pending_incident_id, reporter_id) DO NOTHING
                    RETURNING reporter_id
                    """,
                    pending_id,
                    entry.reporter_id,
                    entry.reputation,
                    entry.reported_at,
                    status,
                )
                if inserted is None:
                    duplicate = await conn.fetchval(
                        "SELECT 1 FROM vf_pending_reporter WHERE pending_incident_id = $1 AND reporter_id = $2",
                        pending_id,
                        entry.reporter_id,
                    )
                    if duplicate is not None:
                        raise AlreadyReported(pending_id)
                    raise StoreConflict("pending_incident_closed")
                row = await conn.fetchrow(
                    f"""
                    UPDATE vf_pending_incident SET last_report_at = GREATEST(last_report_at, $2)
                    WHERE id = $1 RETURNING {_PENDING_COLUMNS}
                    """,
                    pending_id,
                    entry.reported_at,
                )
                return (await _hydrate(conn, [row]))[0]

    async def update_score(self, pending_id: str, *, score: float, required: float) -> None:
        await self._pool.execute(
            """
            UPDATE vf_pending_incident
            SET threshold_score = GREATEST(threshold_score, $2), threshold_required = $3
            WHERE id = $1 AND status = 'PENDING'
            """,
            pending_id,
            score,
            required,
        )

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
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    UPDATE vf_pending_incident
                    SET status = $2, published_incident_id = $3, threshold_met_at = $4,
                        moderator_id = COALESCE($5, moderator_id),
                        moderator_notes = COALESCE($6, moderator_notes)
                    WHERE id = $1 AND status IN ('PENDING', 'THRESHOLD_MET') AND published_incident_id IS NULL
                    RETURNING {_PENDING_COLUMNS}
                    """,
                    pending_id,
                    status.value,
                    incident.id,
                    now,
                    moderator_id,
                    notes,
                )
                if row is None:
                    exists = await conn.fetchval("SELECT 1 FROM vf_pending_incident WHERE id = $1", pending_id)
                    if exists is None:
                        raise NotFound("pending_incident_not_found")
                    raise StoreConflict("pending_incident_already_published")
                claimed = (await _hydrate(conn, [row]))[0]
                await conn.execute(
                    """
                    INSERT INTO vf_incident (
                        id, title, kind, status, description, line_ids, delay_minutes, reported_by,
                        reporter_ids, pending_incident_id, is_fake, segment, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13)
                    """,
                    incident.id,
                    incident.title,
                    incident.kind.value,
                    incident.status.value,
                    incident.description,
                    list(incident.line_ids),
                    incident.delay_minutes,
                    incident.reported_by,
                    claimed.reporter_ids,
                    pending_id,
                    incident.is_fake,
                    json.dumps(asdict(incident.segment)) if incident.segment else None,
                    incident.created_at,
                )
        return claimed

    async def reject(self, pending_id: str, *, moderator_id: str, reason: str, now: datetime) -> PendingIncident:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    UPDATE vf_pending_incident SET status = 'REJECTED', moderator_id = $2, moderator_notes = $3
                    WHERE id = $1 AND status = 'PENDING'
                    RETURNING {_PENDING_COLUMNS}
                    """,
                    pending_id,
                    moderator_id,
                    reason,
                )
                if row is None:
                    exists = await conn.fetchval("SELECT 1 FROM vf_pending_incident WHERE id = $1", pending_id)
                    if exists is None:
                        raise NotFound("pending_incident_not_found")
                    raise StoreConflict("pending_incident_closed")
                return (await _hydrate(conn, [row]))[0]

    async def list_for_reporter(self, user_id: str) -> Sequence[PendingIncident]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_PENDING_COLUMNS} FROM vf_pending_incident p
                WHERE p.status = 'PENDING'
                  AND EXISTS (
                      SELECT 1 FROM vf_pending_reporter r
                      WHERE r.pending_incident_id = p.id AND r.reporter_id = $1
                  )
                ORDER BY p.created_at DESC
                """,
                user_id,
            )
            return await _hydrate(conn, rows)

    async def expire(self, now: datetime) -> Sequence[PendingIncident]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                UPDATE vf_pending_incident SET status = 'EXPIRED'
                WHERE status = 'PENDING' AND expires_at <= $1
                RETURNING {_PENDING_COLUMNS}
                """,
                now,
            )
            return await _hydrate(conn, rows)


class PostgresUserRepository(UserRepository):
    _COLUMNS = "id, reputation, role, trust_score, trust_score_breakdown, trust_score_updated_at"

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, user_id: str) -> UserRecord | None:
        row = await self._pool.fetchrow(f"SELECT {self._COLUMNS} FROM vf_users WHERE id = $1", user_id)
        return _row_to_user(row) if row else None

    async def get_or_create(self, user_id: str, *, starting_reputation: int, role: Role = Role.USER) -> UserRecord:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO vf_users (id, reputation, role) VALUES ($1, $2, $3)
            ON CONFLICT (id) DO UPDATE SET id = EXCLUDED.id
            RETURNING {self._COLUMNS}
            """,
            user_id,
            starting_reputation,
            role.value,
        )
        return _row_to_user(row)

    async def increment_reputation(self, user_id: str, delta: int) -> RewardOutcome:
        row = await self._pool.fetchrow(
            """
            WITH previous AS (SELECT reputation FROM vf_users WHERE id = $1 FOR UPDATE)
            UPDATE vf_users u SET reputation = GREATEST(0, u.reputation + $2)
            FROM previous
            WHERE u.id = $1
            RETURNING previous.reputation AS old_reputation, u.reputation AS new_reputation
            """,
            user_id,
            delta,
        )
        if row is None:
            raise NotFound("user_not_found")
        old, new = int(row["old_reputation"]), int(row["new_reputation"])
        return RewardOutcome(user_id=user_id, old_reputation=old, new_reputation=new, change=new - old)

    async def set_trust_score(self, user_id: str, breakdown: TrustScoreBreakdown, updated_at: datetime) -> None:
        await self._pool.execute(
            """
            UPDATE vf_users SET trust_score = $2, trust_score_breakdown = $3::jsonb, trust_score_updated_at = $4
            WHERE id = $1
            """,
            user_id,
            breakdown.final_score,
            json.dumps(asdict(breakdown)),
            updated_at,
        )

    async def list_by_ids(self, user_ids: Iterable[str]) -> Sequence[UserRecord]:
        rows = await self._pool.fetch(
            f"SELECT {self._COLUMNS} FROM vf_users WHERE id = ANY($1::text[]) ORDER BY id",
            list(user_ids),
        )
        return [_row_to_user(row) for row in rows]


class PostgresModeratorQueueRepository(ModeratorQueueRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @staticmethod
    def _row_to_item(row: asyncpg.Record) -> ModeratorQueueItem:
        return ModeratorQueueItem(
            id=str(row["id"]),
            pending_incident_id=str(row["pending_incident_id"]),
            priority=QueuePriority(row["priority"]),
            reason=str(row["reason"]),
            created_at=row["created_at"],
        )

    async def enqueue_if_absent(self, item: ModeratorQueueItem) -> bool:
        inserted = await self._pool.fetchval(
            """
            INSERT INTO vf_moderator_queue (id, pending_incident_id, priority, priority_rank, reason, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (pending_incident_id) DO NOTHING
            RETURNING id
            """,
            item.id,
            item.pending_incident_id,
            item.priority.value,
            item.priority.rank,
            item.reason,
            item.created_at,
        )
        return inserted is not None

    async def list(self) -> Sequence[ModeratorQueueItem]:
        rows = await self._pool.fetch(
            """
            SELECT id, pending_incident_id, priority, reason, created_at
            FROM vf_moderator_queue ORDER BY priority_rank, created_at
            """
        )
        return [self._row_to_item(row) for row in rows]

    async def get(self, pending_incident_id: str) -> ModeratorQueueItem | None:
        row = await self._pool.fetchrow(
            """
            SELECT id, pending_incident_id, priority, reason, created_at
            FROM vf_moderator_queue WHERE pending_incident_id = $1
            """,
            pending_incident_id,
        )
        return self._row_to_item(row) if row else None

    async def remove(self, pending_incident_id: str) -> bool:
        removed = await self._pool.fetchval(
            "DELETE FROM vf_moderator_queue WHERE pending_incident_id = $1 RETURNING id",
            pending_incident_id,
        )
        return removed is not None

    async def count(self) -> int:
        return int(await self._pool.fetchval("SELECT COUNT(*) FROM vf_moderator_queue"))


class PostgresFailedRewardRepository(FailedRewardRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def add(self, failed: FailedReward) -> None:
        await self._pool.execute(
            """
            INSERT INTO vf_failed_reward (id, user_id, delta, reason, pending_incident_id, attempts, last_error, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            failed.id,
            failed.user_id,
            failed.delta,
            failed.reason,
            failed.pending_incident_id,
            failed.attempts,
            failed.last_error,
            failed.created_at,
        )

    async def list_due(self, limit: int = 100) -> Sequence[FailedReward]:
        rows = await self._pool.fetch(
            """
            SELECT id, user_id, delta, reason, pending_incident_id, attempts, last_error, created_at
            FROM vf_failed_reward ORDER BY created_at LIMIT $1
            """,
            limit,
        )
        return [
            FailedReward(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                delta=int(row["delta"]),
                reason=str(row["reason"]),
                pending_incident_id=str(row["pending_incident_id"]),
                attempts=int(row["attempts"]),
                last_error=row["last_error"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def mark_attempt(self, failed_id: str, error: str) -> None:
        await self._pool.execute(
            "UPDATE vf_failed_reward SET attempts = attempts + 1, last_error = $2 WHERE id = $1",
            failed_id,
            error,
        )

    async def delete(self, failed_id: str) -> None:
        await self._pool.execute("DELETE FROM vf_failed_reward WHERE id = $1", failed_id)


class PostgresStopDirectory(StopDirectory):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def stops_near(self, point: Coordinates, max_distance: float) -> Sequence[Stop]:
        box = bounding_box(point, max_distance / 1000)
        rows = await self._pool.fetch(
            """
            SELECT id, name, latitude, longitude FROM vf_stop
            WHERE latitude BETWEEN $1 AND $2 AND longitude BETWEEN $3 AND $4
            """,
            box.min_latitude,
            box.max_latitude,
            box.min_longitude,
            box.max_longitude,
        )
        stops = [Stop(id=str(row["id"]), name=str(row["name"]), coordinates=Coordinates(row["latitude"], row["longitude"])) for row in rows]
        return [match.stop for match in nearest_stops(point, stops, max_distance)]


class PostgresAudienceRepository(AudienceRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def list_candidates(self, line_ids: Sequence[str]) -> Sequence[AudienceMember]:
        lines = list(line_ids)
        journeys = await self._pool.fetch(
            "SELECT user_id, line_ids FROM vf_active_journey WHERE line_ids && $1::text[]",
            lines,
        )
        favorites = await self._pool.fetch(
            """
            SELECT user_id, line_ids, notify_always FROM vf_favorite_connection
            WHERE notify_always AND line_ids && $1::text[]
            """,
            lines,
        )
        journey_by_user = {row["user_id"]: ActiveJourney(line_ids=tuple(row["line_ids"])) for row in journeys}
        favorites_by_user: dict[str, list[FavoriteConnection]] = {}
        for row in favorites:
            favorites_by_user.setdefault(row["user_id"], []).append(
                FavoriteConnection(line_ids=tuple(row["line_ids"]), notify_always=bool(row["notify_always"]))
            )
        user_ids = list(dict.fromkeys([*journey_by_user, *favorites_by_user]))
        return [
            AudienceMember(
                user_id=user_id,
                active_journey=journey_by_user.get(user_id),
                favorites=tuple(favorites_by_user.get(user_id, ())),
            )
            for user_id in user_ids
        ]
