from __future__ import annotations

from datetime import datetime, timezone

import pytest

from crowdcheck.infra.redis import redis_client
from crowdcheck.verification.domain.models import (
    ActiveJourney,
    AudienceMember,
    FavoriteConnection,
    Incident,
    IncidentClass,
    IncidentKind,
    NotificationPriority,
)
from crowdcheck.verification.domain.notifications import (
    InMemoryAudienceRepository,
    InMemoryDeliveryCache,
    NotificationTargeting,
    extract_active_journey_line_ids,
    extract_favorite_line_ids,
    should_notify,
)
from crowdcheck.verification.infra.redis_store import RedisDeliveryCache

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def test_incident_without_lines_is_never_delivered() -> None:
    decision = should_notify([], ["L1"], ["L1"], IncidentClass.CLASS_1)
    assert not decision.should_notify
    assert decision.priority is NotificationPriority.LOW
    assert decision.reason == "Incident has no associated lines"


@pytest.mark.parametrize(
    ("active", "favorites", "incident_class", "priority"),
    [
        (["L1"], None, IncidentClass.CLASS_1, NotificationPriority.CRITICAL),
        (["L1"], None, IncidentClass.CLASS_2, NotificationPriority.HIGH),
        (None, ["L1"], IncidentClass.CLASS_1, NotificationPriority.HIGH),
        (None, ["L1"], IncidentClass.CLASS_2, NotificationPriority.MEDIUM),
        (["L1"], ["L1"], IncidentClass.CLASS_2, NotificationPriority.HIGH),
    ],
)
def test_priority_matrix(active, favorites, incident_class, priority) -> None:
    decision = should_notify(["L1", "L2"], active, favorites, incident_class)
    assert decision.should_notify
    assert decision.priority is priority


def test_unrelated_lines_are_skipped() -> None:
    decision = should_notify(["L1"], ["L5"], ["L6"], IncidentClass.CLASS_1)
    assert not decision.should_notify
    assert decision.priority is NotificationPriority.LOW


def test_extract_helpers_drop_missing_ids() -> None:
    assert extract_active_journey_line_ids(None) == []
    assert extract_active_journey_line_ids(ActiveJourney(line_ids=["L1", None, "L2"])) == ["L1", "L2"]
    favorites = [
        FavoriteConnection(line_ids=["L3", "L1"], notify_always=True),
        FavoriteConnection(line_ids=["L9"], notify_always=False),
        FavoriteConnection(line_ids=[None, "L1", "L4"], notify_always=True),
    ]
    assert extract_favorite_line_ids(favorites) == ["L3", "L1", "L4"]
    assert extract_favorite_line_ids(None) == []


def _incident(kind: IncidentKind = IncidentKind.TRAFFIC_JAM, line_ids=("L1",)) -> Incident:
    return Incident(id="inc-1", title="Traffic jam", kind=kind, created_at=NOW, line_ids=tuple(line_ids))


@pytest.mark.asyncio
async def test_targeting_resolves_each_listener_once() -> None:
    audience = InMemoryAudienceRepository(
        [
            AudienceMember("rider", active_journey=ActiveJourney(line_ids=["L1"])),
            AudienceMember("fan", favorites=[FavoriteConnection(line_ids=["L1"], notify_always=True)]),
            AudienceMember("quiet", favorites=[FavoriteConnection(line_ids=["L1"], notify_always=False)]),
            AudienceMember("elsewhere", active_journey=ActiveJourney(line_ids=["L7"])),
        ]
    )
    targeting = NotificationTargeting(audience, InMemoryDeliveryCache())

    targets = await targeting.targets_for(_incident())
    assert [(target.user_id, target.priority) for target in targets] == [
        ("rider", NotificationPriority.HIGH),
        ("fan", NotificationPriority.MEDIUM),
    ]
    assert await targeting.targets_for(_incident()) == []


@pytest.mark.asyncio
async def test_targeting_skips_incidents_without_lines() -> None:
    audience = InMemoryAudienceRepository([AudienceMember("rider", active_journey=ActiveJourney(line_ids=["L1"]))])
    targeting = NotificationTargeting(audience, InMemoryDeliveryCache())
    assert await targeting.targets_for(_incident(line_ids=())) == []


@pytest.mark.asyncio
async def test_in_memory_dedupe_expires() -> None:
    clock = [0.0]
    cache = InMemoryDeliveryCache(clock=lambda: clock[0])
    assert await cache.mark_if_new("inc", "u1", 60)
    assert not await cache.mark_if_new("inc", "u1", 60)
    clock[0] = 61.0
    assert await cache.mark_if_new("inc", "u1", 60)


@pytest.mark.asyncio
async def test_redis_dedupe_marks_once(fake_redis) -> None:
    cache = RedisDeliveryCache(redis_client)
    assert await cache.mark_if_new("inc", "u1", 60)
    assert not await cache.mark_if_new("inc", "u1", 60)
    assert await cache.mark_if_new("inc", "u2", 60)
    assert 0 < await fake_redis.ttl("crowdcheck:notified:inc:u1") <= 60
