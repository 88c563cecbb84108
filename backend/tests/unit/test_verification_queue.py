from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from crowdcheck.verification.domain.models import (
    Coordinates,
    IncidentKind,
    ModeratorQueueItem,
    PendingIncident,
    QueuePriority,
    ReporterEntry,
)
from crowdcheck.verification.domain.queue import InMemoryModeratorQueueRepository, build_queue_item, sort_queue

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _item(pending_id: str, priority: QueuePriority, minutes: int) -> ModeratorQueueItem:
    return ModeratorQueueItem(
        id=f"item-{pending_id}",
        pending_incident_id=pending_id,
        priority=priority,
        reason="1 reports, threshold: 25%",
        created_at=NOW + timedelta(minutes=minutes),
    )


def test_sort_orders_by_priority_then_age() -> None:
    items = [
        _item("low", QueuePriority.LOW, 0),
        _item("medium-late", QueuePriority.MEDIUM, 5),
        _item("high", QueuePriority.HIGH, 10),
        _item("medium-early", QueuePriority.MEDIUM, 1),
    ]
    assert [item.pending_incident_id for item in sort_queue(items)] == ["high", "medium-early", "medium-late", "low"]


@pytest.mark.parametrize(
    ("kind", "priority"),
    [
        (IncidentKind.ACCIDENT, QueuePriority.HIGH),
        (IncidentKind.VEHICLE_FAILURE, QueuePriority.HIGH),
        (IncidentKind.TRAFFIC_JAM, QueuePriority.MEDIUM),
        (IncidentKind.NETWORK_FAILURE, QueuePriority.LOW),
        (IncidentKind.PLATFORM_CHANGES, QueuePriority.LOW),
    ],
)
def test_queue_item_priority_follows_kind(kind: IncidentKind, priority: QueuePriority) -> None:
    pending = PendingIncident(
        id="p1",
        kind=kind,
        location=Coordinates(52.0, 21.0),
        created_at=NOW,
        last_report_at=NOW,
        expires_at=NOW + timedelta(hours=24),
        reporters=[ReporterEntry("u1", 20, NOW), ReporterEntry("u2", 20, NOW)],
        threshold_score=0.5067,
    )
    item = build_queue_item(pending, NOW)
    assert item.priority is priority
    assert item.reason == "2 reports, threshold: 51%"


@pytest.mark.asyncio
async def test_enqueue_is_idempotent_per_candidate() -> None:
    queue = InMemoryModeratorQueueRepository()

    assert await queue.enqueue_if_absent(_item("p1", QueuePriority.LOW, 0))
    assert not await queue.enqueue_if_absent(_item("p1", QueuePriority.HIGH, 1))
    assert await queue.count() == 1
    assert (await queue.get("p1")).priority is QueuePriority.LOW

    assert await queue.remove("p1")
    assert not await queue.remove("p1")
    assert await queue.count() == 0


@pytest.mark.asyncio
async def test_listing_is_ordered() -> None:
    queue = InMemoryModeratorQueueRepository()
    await queue.enqueue_if_absent(_item("low", QueuePriority.LOW, 0))
    await queue.enqueue_if_absent(_item("high", QueuePriority.HIGH, 3))

    assert [item.pending_incident_id for item in await queue.list()] == ["high", "low"]
