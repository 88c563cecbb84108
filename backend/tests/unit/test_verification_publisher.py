from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from crowdcheck.verification.api.schemas import SegmentOut
from crowdcheck.verification.domain.errors import InvalidState, StoreConflict
from crowdcheck.verification.domain.models import (
    ActiveJourney,
    AudienceMember,
    Coordinates,
    Identity,
    IncidentKind,
    NotificationPriority,
    PendingIncident,
    PendingStatus,
    ReporterEntry,
    Role,
    Stop,
    new_id,
)
from crowdcheck.verification.domain.publisher import SYSTEM_REPORTER

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
POINT = Coordinates(52.0, 21.002)


async def _open_candidate(engine, reporters, *, kind=IncidentKind.ACCIDENT, line_ids=()) -> PendingIncident:
    pending = PendingIncident(
        id=new_id(),
        kind=kind,
        location=POINT,
        created_at=NOW,
        last_report_at=NOW,
        expires_at=NOW + timedelta(hours=24),
        reporters=[ReporterEntry(reporter_id=user_id, reputation=rep, reported_at=NOW + offset) for user_id, rep, offset in reporters],
        line_ids=tuple(line_ids),
    )
    return await engine.pending.insert(pending)


@pytest.mark.asyncio
async def test_concurrent_publish_creates_one_incident(make_engine) -> None:
    engine = make_engine()
    engine.users.seed("u1", 200)
    pending = await _open_candidate(engine, [("u1", 200, timedelta())])

    results = await asyncio.gather(
        *(engine.service.publisher.publish_incident_from_pending(pending, now=NOW) for _ in range(5))
    )

    created = [result for result in results if result.created]
    assert len(created) == 1
    assert len(engine.incidents.incidents) == 1
    assert {result.incident.id for result in results} == {created[0].incident.id}
    assert all(not result.rewards for result in results if not result.created)
    # 10 * 0.8 diminishing * 2.0 early bonus
    assert [result.reward_for("u1") for result in results] == [16] * 5
    assert engine.users.users["u1"].reputation == 216

    stored = engine.pending.pending[pending.id]
    assert stored.status is PendingStatus.THRESHOLD_MET
    assert stored.published_incident_id == created[0].incident.id
    assert created[0].incident.reported_by == SYSTEM_REPORTER
    assert created[0].incident.reporter_ids == ("u1",)


@pytest.mark.asyncio
async def test_later_reporters_earn_smaller_rewards(make_engine) -> None:
    engine = make_engine()
    for user_id in ("u1", "u2", "u3"):
        engine.users.seed(user_id, 34)
    pending = await _open_candidate(
        engine,
        [("u1", 34, timedelta()), ("u2", 34, timedelta(minutes=5)), ("u3", 34, timedelta(minutes=12))],
    )

    result = await engine.service.publisher.publish_incident_from_pending(pending, now=NOW + timedelta(minutes=12))

    assert [result.reward_for(user_id) for user_id in ("u1", "u2", "u3")] == [19, 14, 10]


@pytest.mark.asyncio
async def test_moderator_publish_uses_larger_multiplier(make_engine) -> None:
    engine = make_engine()
    engine.users.seed("u1", 34)
    pending = await _open_candidate(engine, [("u1", 34, timedelta())])
    admin = Identity("admin-1", Role.ADMIN)

    result = await engine.service.publisher.publish_incident_from_pending(pending, moderator=admin, notes="seen it", now=NOW)

    # 10 * 0.966 * 2.0 early bonus * 1.5 = 28.98
    assert result.reward_for("u1") == 29
    assert result.incident.reported_by == "admin-1"
    stored = engine.pending.pending[pending.id]
    assert stored.status is PendingStatus.APPROVED
    assert stored.moderator_notes == "seen it"


@pytest.mark.asyncio
async def test_moderator_multiplier_is_applied_before_rounding(make_engine) -> None:
    engine = make_engine()
    engine.users.seed("u1", 34)
    pending = await _open_candidate(engine, [("u1", 34, timedelta(minutes=5))])

    result = await engine.service.publisher.publish_incident_from_pending(
        pending, moderator=Identity("admin-1", Role.ADMIN), now=NOW + timedelta(minutes=5)
    )

    # 10 * 0.966 * 1.5 early bonus * 1.5 = 21.735; rounding 14.49 first would give 21
    assert result.reward_for("u1") == 22
    assert engine.users.users["u1"].reputation == 56


@pytest.mark.asyncio
async def test_publish_removes_queue_item(make_engine) -> None:
    engine = make_engine()
    engine.users.seed("u1", 20)
    submitted = await engine.service.submit_report(
        Identity("u1"), kind=IncidentKind.TRAFFIC_JAM, location=POINT, now=NOW
    )
    assert submitted.pending_incident_id in engine.queue.items

    pending = await engine.pending.get(submitted.pending_incident_id)
    await engine.service.publisher.publish_incident_from_pending(pending, moderator=Identity("admin", Role.ADMIN), now=NOW)

    assert submitted.pending_incident_id not in engine.queue.items


@pytest.mark.asyncio
async def test_publishing_a_rejected_candidate_fails(make_engine) -> None:
    engine = make_engine()
    engine.users.seed("u1", 200)
    pending = await _open_candidate(engine, [("u1", 200, timedelta())])
    await engine.service.publisher.reject_pending_incident(pending.id, moderator_id="admin", reason="spam", now=NOW)

    with pytest.raises(StoreConflict):
        await engine.service.publisher.publish_incident_from_pending(pending, now=NOW)
    assert not engine.incidents.incidents


@pytest.mark.asyncio
async def test_reject_adds_suspicion_once(make_engine) -> None:
    engine = make_engine()
    engine.users.seed("u1", 34)
    engine.users.seed("u2", 34)
    pending = await _open_candidate(engine, [("u1", 34, timedelta()), ("u2", 34, timedelta(minutes=1))])

    rejected = await engine.service.publisher.reject_pending_incident(pending.id, moderator_id="admin", reason="spam", now=NOW)

    assert rejected.status is PendingStatus.REJECTED
    assert engine.history.histories["u1"].suspicious_activity_score == 10
    assert engine.history.histories["u2"].suspicious_activity_score == 10
    with pytest.raises(InvalidState):
        await engine.service.publisher.reject_pending_incident(pending.id, moderator_id="admin", reason="spam", now=NOW)
    assert engine.history.histories["u1"].suspicious_activity_score == 10


@pytest.mark.asyncio
async def test_failed_reward_is_parked_and_retried(make_engine) -> None:
    engine = make_engine()
    engine.users.seed("u1", 200)
    # "ghost" has no user record yet so the increment fails
    pending = await _open_candidate(engine, [("u1", 200, timedelta()), ("ghost", 200, timedelta())])

    result = await engine.service.publisher.publish_incident_from_pending(pending, now=NOW)

    assert result.created
    assert result.reward_for("u1") == 16
    # credited even though the increment is parked for retry
    assert result.reward_for("ghost") == 16
    assert [outcome.user_id for outcome in result.rewards] == ["u1"]
    parked = list(engine.failed_rewards.items.values())
    assert [(item.user_id, item.delta) for item in parked] == [("ghost", 16)]

    assert await engine.service.retry_failed_rewards() == 0
    assert engine.failed_rewards.items[parked[0].id].attempts == 2

    engine.users.seed("ghost", 200)
    assert await engine.service.retry_failed_rewards() == 1
    assert engine.users.users["ghost"].reputation == 216
    assert not engine.failed_rewards.items


@pytest.mark.asyncio
async def test_published_incident_carries_segment_and_targets(make_engine) -> None:
    engine = make_engine()
    engine.stops.stops.extend(
        [
            Stop("A", "Central", Coordinates(52.0, 21.0)),
            Stop("B", "Museum", Coordinates(52.0, 21.004)),
        ]
    )
    engine.audience.members.append(AudienceMember("rider", active_journey=ActiveJourney(line_ids=["L1"])))
    engine.users.seed("u1", 200)
    pending = await _open_candidate(engine, [("u1", 200, timedelta())], line_ids=["L1"])

    results = await asyncio.gather(
        engine.service.publisher.publish_incident_from_pending(pending, now=NOW),
        engine.service.publisher.publish_incident_from_pending(pending, now=NOW),
    )

    winner = next(result for result in results if result.created)
    assert winner.incident.segment is not None
    assert {winner.incident.segment.start_stop_id, winner.incident.segment.end_stop_id} == {"A", "B"}
    assert winner.incident.segment.confidence == "HIGH"
    description = SegmentOut.from_model(winner.incident.segment).description
    assert description == winner.incident.segment.describe()
    assert description.startswith("Between ")
    assert description.endswith("(high confidence)")
    assert {"Central", "Museum"} <= set(description.replace("(", " ").split())
    assert [(target.user_id, target.priority) for target in winner.notified] == [("rider", NotificationPriority.CRITICAL)]
    loser = next(result for result in results if not result.created)
    assert loser.notified == []


@pytest.mark.asyncio
async def test_resolve_fake_penalises_contributors_once(make_engine) -> None:
    engine = make_engine()
    engine.users.seed("u1", 200)
    pending = await _open_candidate(engine, [("u1", 200, timedelta())])
    published = await engine.service.publisher.publish_incident_from_pending(pending, now=NOW)

    resolved = await engine.service.publisher.resolve_incident(published.incident.id, is_fake=True, now=NOW)

    # -5 * 0.784 * 1.5 rounds to -6
    assert [(change.user_id, change.change) for change in resolved.reputation_changes] == [("u1", -6)]
    assert engine.users.users["u1"].reputation == 210
    with pytest.raises(InvalidState):
        await engine.service.publisher.resolve_incident(published.incident.id, is_fake=True, now=NOW)
    assert engine.users.users["u1"].reputation == 210
