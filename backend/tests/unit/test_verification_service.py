from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from crowdcheck.verification.domain.config import CooldownConfig, VerificationConfig
from crowdcheck.verification.domain.errors import (
    AlreadyReported,
    Forbidden,
    InvalidState,
    OnCooldown,
    RateLimited,
    Unauthenticated,
)
from crowdcheck.verification.domain.models import Coordinates, Identity, IncidentKind, PendingStatus, Role
from crowdcheck.verification.domain.pending import InMemoryPendingIncidentRepository

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
CENTRE = Coordinates(52.2297, 21.0122)
ADMIN = Identity("admin-1", Role.ADMIN)
MODERATOR = Identity("mod-1", Role.MODERATOR)


def _near(index: int) -> Coordinates:
    return Coordinates(CENTRE.latitude + index * 0.0002, CENTRE.longitude)


@pytest.mark.asyncio
async def test_high_reputation_reporter_publishes_alone(make_engine) -> None:
    engine = make_engine()
    engine.users.seed("u1", 200)

    result = await engine.service.submit_report(Identity("u1"), kind=IncidentKind.ACCIDENT, location=CENTRE, now=NOW)

    assert result.accepted
    assert result.was_published
    assert result.threshold_progress == 100
    assert result.reputation_gained == 16
    incident = engine.incidents.incidents[result.published_incident_id]
    assert incident.pending_incident_id == result.pending_incident_id
    assert not engine.queue.items


@pytest.mark.asyncio
async def test_three_newcomers_confirm_together(make_engine) -> None:
    engine = make_engine()

    first = await engine.service.submit_report(Identity("u1"), kind=IncidentKind.ACCIDENT, location=_near(0), now=NOW)
    second = await engine.service.submit_report(
        Identity("u2"), kind=IncidentKind.ACCIDENT, location=_near(1), now=NOW + timedelta(minutes=1)
    )
    assert not first.was_published
    assert first.reports_needed == 2
    assert not second.was_published
    assert second.pending_incident_id == first.pending_incident_id
    assert first.pending_incident_id in engine.queue.items

    third = await engine.service.submit_report(
        Identity("u3"), kind=IncidentKind.ACCIDENT, location=_near(2), now=NOW + timedelta(minutes=2)
    )

    assert third.was_published
    assert third.pending_incident_id == first.pending_incident_id
    assert third.reputation_gained == 17
    assert [engine.users.users[user_id].reputation for user_id in ("u1", "u2", "u3")] == [53, 52, 51]
    assert not engine.queue.items


class RoundTripRepository(InMemoryPendingIncidentRepository):
    """Holds every appender until ``appends_before_writes`` appends have landed.

    Writes with a score below ``slow_below`` take a few extra loop turns, like
    a slower network round trip.
    """

    def __init__(self, incidents=None, *, appends_before_writes: int = 2, slow_below: float = 0.0) -> None:
        super().__init__(incidents)
        self.appends_before_writes = appends_before_writes
        self.slow_below = slow_below
        self.appended = 0
        self.score_writes: list[float] = []
        self._appends_landed = asyncio.Event()

    async def append_reporter(self, pending_id, entry):
        snapshot = await super().append_reporter(pending_id, entry)
        self.appended += 1
        if self.appended >= self.appends_before_writes:
            self._appends_landed.set()
        await self._appends_landed.wait()
        return snapshot

    async def update_score(self, pending_id, *, score, required):
        if score < self.slow_below:
            for _ in range(5):
                await asyncio.sleep(0)
        self.score_writes.append(score)
        await super().update_score(pending_id, score=score, required=required)


@pytest.mark.asyncio
async def test_concurrent_threshold_crossing_publishes_once(make_engine) -> None:
    engine = make_engine(pending_cls=RoundTripRepository)
    engine.users.seed("u2", 100)
    engine.users.seed("u3", 100)
    opened = await engine.service.submit_report(Identity("u1"), kind=IncidentKind.ACCIDENT, location=_near(0), now=NOW)

    later = NOW + timedelta(minutes=1)
    results = await asyncio.gather(
        engine.service.submit_report(Identity("u2"), kind=IncidentKind.ACCIDENT, location=_near(1), now=later),
        engine.service.submit_report(Identity("u3"), kind=IncidentKind.ACCIDENT, location=_near(2), now=later),
    )

    assert engine.pending.appended == 2
    assert all(result.accepted and result.was_published for result in results)
    assert len(engine.incidents.incidents) == 1
    incident = next(iter(engine.incidents.incidents.values()))
    assert {result.published_incident_id for result in results} == {incident.id}
    assert set(incident.reporter_ids) == {"u1", "u2", "u3"}
    assert {result.pending_incident_id for result in results} == {opened.pending_incident_id}
    # 10 * 0.9 * 1.9 for both joiners, whichever of them lost the publish race
    assert [result.reputation_gained for result in results] == [17, 17]
    assert [engine.users.users[user_id].reputation for user_id in ("u2", "u3")] == [117, 117]
    # the opener is rewarded exactly once: 10 * 0.966 * 2.0
    assert engine.users.users["u1"].reputation == 53


class SlowLowScoreRepository(RoundTripRepository):
    def __init__(self, incidents=None) -> None:
        super().__init__(incidents, slow_below=0.6)


@pytest.mark.asyncio
async def test_stale_lower_score_never_overwrites_newer_score(make_engine) -> None:
    engine = make_engine(pending_cls=SlowLowScoreRepository)
    for user_id in ("u1", "u2", "u3"):
        engine.users.seed(user_id, 20)
    opened = await engine.service.submit_report(Identity("u1"), kind=IncidentKind.ACCIDENT, location=_near(0), now=NOW)

    later = NOW + timedelta(minutes=1)
    results = await asyncio.gather(
        engine.service.submit_report(Identity("u2"), kind=IncidentKind.ACCIDENT, location=_near(1), now=later),
        engine.service.submit_report(Identity("u3"), kind=IncidentKind.ACCIDENT, location=_near(2), now=later),
    )

    assert not any(result.was_published for result in results)
    # the two-reporter score (0.507) is written after the three-reporter score (0.76)
    assert engine.pending.score_writes == pytest.approx([0.2533, 0.76, 0.5067], abs=1e-3)
    stored = engine.pending.pending[opened.pending_incident_id]
    assert stored.status is PendingStatus.PENDING
    assert stored.threshold_score == pytest.approx(0.76)
    assert stored.threshold_progress == 76

    listed = await engine.service.list_pending_for_user(Identity("u1"))
    assert [item.threshold_progress for item in listed] == [76]


@pytest.mark.asyncio
async def test_cooldown_rejects_quick_second_report(make_engine) -> None:
    engine = make_engine()
    await engine.service.submit_report(Identity("u1"), kind=IncidentKind.ACCIDENT, location=CENTRE, now=NOW)

    with pytest.raises(OnCooldown) as excinfo:
        await engine.service.submit_report(
            Identity("u1"), kind=IncidentKind.TRAFFIC_JAM, location=CENTRE, now=NOW + timedelta(seconds=30)
        )

    assert excinfo.value.cooldown_type == "anyReport"
    assert excinfo.value.remaining_ms == 30_000
    assert len(engine.history.histories["u1"].reports) == 1
    assert engine.history.histories["u1"].rate_limit_violations == 0


@pytest.mark.asyncio
async def test_rate_limit_records_violation(make_engine) -> None:
    engine = make_engine(
        VerificationConfig(cooldown=CooldownConfig(any_report_seconds=0, same_kind_seconds=0, same_location_seconds=0))
    )
    user = Identity("u1")
    await engine.service.submit_report(user, kind=IncidentKind.ACCIDENT, location=CENTRE, now=NOW)
    await engine.service.submit_report(
        user, kind=IncidentKind.TRAFFIC_JAM, location=CENTRE, now=NOW + timedelta(seconds=10)
    )
    attempt = NOW + timedelta(seconds=20)

    check = await engine.service.can_submit_report(user, now=attempt)
    assert not check.can_submit
    assert check.retry_after == 40
    assert check.rate_limit_info.violations == 0
    assert engine.history.histories["u1"].rate_limit_violations == 0

    with pytest.raises(RateLimited) as excinfo:
        await engine.service.submit_report(user, kind=IncidentKind.NETWORK_FAILURE, location=CENTRE, now=attempt)

    assert excinfo.value.retry_after == 40
    assert excinfo.value.window == "minute"
    history = engine.history.histories["u1"]
    assert history.rate_limit_violations == 1
    assert history.suspicious_activity_score == 5
    assert len(history.reports) == 2


@pytest.mark.asyncio
async def test_can_submit_reports_remaining_quota(make_engine) -> None:
    engine = make_engine()
    fresh = await engine.service.can_submit_report(Identity("u1"), now=NOW)
    assert fresh.can_submit
    assert fresh.rate_limit_info.remaining == {"minute": 2, "hour": 10, "day": 50}
    assert not fresh.rate_limit_info.is_suspicious

    await engine.service.submit_report(Identity("u1"), kind=IncidentKind.ACCIDENT, location=CENTRE, now=NOW)
    check = await engine.service.can_submit_report(
        Identity("u1"), kind=IncidentKind.ACCIDENT, location=CENTRE, now=NOW + timedelta(seconds=90)
    )
    assert not check.can_submit
    assert check.cooldown_type == "sameKind"
    assert check.remaining_ms == 90_000


@pytest.mark.asyncio
async def test_repeat_report_on_same_candidate_is_refused(make_engine) -> None:
    engine = make_engine()
    first = await engine.service.submit_report(Identity("u1"), kind=IncidentKind.ACCIDENT, location=CENTRE, now=NOW)

    with pytest.raises(AlreadyReported) as excinfo:
        await engine.service.submit_report(
            Identity("u1"), kind=IncidentKind.ACCIDENT, location=_near(1), now=NOW + timedelta(minutes=6)
        )

    assert excinfo.value.pending_incident_id == first.pending_incident_id
    assert len(engine.history.histories["u1"].reports) == 1


@pytest.mark.asyncio
async def test_anonymous_callers_are_refused(make_engine) -> None:
    engine = make_engine()
    with pytest.raises(Unauthenticated):
        await engine.service.submit_report(None, kind=IncidentKind.ACCIDENT, location=CENTRE, now=NOW)
    with pytest.raises(Unauthenticated):
        await engine.service.list_moderator_queue(None)


@pytest.mark.asyncio
async def test_queue_is_staff_only(make_engine) -> None:
    engine = make_engine()
    submitted = await engine.service.submit_report(Identity("u1"), kind=IncidentKind.ACCIDENT, location=CENTRE, now=NOW)

    with pytest.raises(Forbidden):
        await engine.service.list_moderator_queue(Identity("u2"))
    entries = await engine.service.list_moderator_queue(MODERATOR)
    assert [entry.pending.id for entry in entries] == [submitted.pending_incident_id]
    assert entries[0].item.reason == "1 reports, threshold: 34%"


@pytest.mark.asyncio
async def test_approve_requires_admin_and_rewards(make_engine) -> None:
    engine = make_engine()
    submitted = await engine.service.submit_report(Identity("u1"), kind=IncidentKind.ACCIDENT, location=CENTRE, now=NOW)

    with pytest.raises(Forbidden):
        await engine.service.approve_report(MODERATOR, submitted.pending_incident_id, now=NOW)

    approved = await engine.service.approve_report(ADMIN, submitted.pending_incident_id, notes="confirmed", now=NOW)

    assert [(outcome.user_id, outcome.change) for outcome in approved.rewarded_users] == [("u1", 29)]
    assert engine.users.users["u1"].reputation == 63
    assert approved.incident.reported_by == "admin-1"
    assert engine.pending.pending[submitted.pending_incident_id].status is PendingStatus.APPROVED
    with pytest.raises(InvalidState):
        await engine.service.approve_report(ADMIN, submitted.pending_incident_id, now=NOW)


@pytest.mark.asyncio
async def test_reject_and_flag(make_engine) -> None:
    engine = make_engine()
    submitted = await engine.service.submit_report(Identity("u1"), kind=IncidentKind.ACCIDENT, location=CENTRE, now=NOW)

    with pytest.raises(Forbidden):
        await engine.service.reject_report(MODERATOR, submitted.pending_incident_id, reason="noise")
    assert await engine.service.reject_report(ADMIN, submitted.pending_incident_id, reason="noise", now=NOW)
    assert engine.history.histories["u1"].suspicious_activity_score == 10
    assert not engine.queue.items

    assert await engine.service.flag_user_for_spam(ADMIN, "u1", reason="bot pattern") == 35
    history = engine.history.histories["u1"]
    assert history.flagged_by_moderator
    assert history.moderator_notes == "bot pattern"


@pytest.mark.asyncio
async def test_suspicion_is_capped(make_engine) -> None:
    engine = make_engine()
    for _ in range(5):
        score = await engine.service.flag_user_for_spam(ADMIN, "u9", reason="spam")
    assert score == 100
    check = await engine.service.can_submit_report(Identity("u9"), now=NOW)
    assert check.rate_limit_info.is_suspicious


@pytest.mark.asyncio
async def test_expiry_closes_stale_candidates(make_engine) -> None:
    engine = make_engine()
    submitted = await engine.service.submit_report(Identity("u1"), kind=IncidentKind.ACCIDENT, location=CENTRE, now=NOW)

    assert await engine.service.expire_pending(now=NOW + timedelta(hours=23)) == 0
    assert await engine.service.expire_pending(now=NOW + timedelta(hours=25)) == 1

    assert engine.pending.pending[submitted.pending_incident_id].status is PendingStatus.EXPIRED
    assert not engine.queue.items
    assert await engine.service.list_pending_for_user(Identity("u1")) == []
    with pytest.raises(InvalidState):
        await engine.service.approve_report(ADMIN, submitted.pending_incident_id, now=NOW + timedelta(hours=25))


@pytest.mark.asyncio
async def test_resolving_fake_incident_penalises_and_updates_trust(make_engine) -> None:
    engine = make_engine()
    engine.users.seed("u1", 200)
    submitted = await engine.service.submit_report(Identity("u1"), kind=IncidentKind.ACCIDENT, location=CENTRE, now=NOW)
    assert engine.users.users["u1"].reputation == 216

    with pytest.raises(Forbidden):
        await engine.service.resolve_incident(Identity("u2"), submitted.published_incident_id, is_fake=True)
    resolved = await engine.service.resolve_incident(MODERATOR, submitted.published_incident_id, is_fake=True, now=NOW)

    assert [(change.user_id, change.change) for change in resolved.reputation_changes] == [("u1", -6)]
    assert engine.users.users["u1"].reputation == 210
    with pytest.raises(InvalidState):
        await engine.service.resolve_incident(MODERATOR, submitted.published_incident_id, is_fake=True, now=NOW)

    assert await engine.service.recompute_all_trust_scores(now=NOW) == 1
    assert engine.users.users["u1"].trust_score == pytest.approx(2.4)


@pytest.mark.asyncio
async def test_pending_list_shows_open_candidates_for_reporter(make_engine) -> None:
    engine = make_engine()
    submitted = await engine.service.submit_report(Identity("u1"), kind=IncidentKind.ACCIDENT, location=CENTRE, now=NOW)

    mine = await engine.service.list_pending_for_user(Identity("u1"))
    assert [pending.id for pending in mine] == [submitted.pending_incident_id]
    assert await engine.service.list_pending_for_user(Identity("u2")) == []
