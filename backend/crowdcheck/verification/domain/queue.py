"""Moderator review worklist."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Protocol, Sequence

from crowdcheck.verification.domain.models import ModeratorQueueItem, PendingIncident, new_id, priority_for_kind


class ModeratorQueueRepository(Protocol):
    async def enqueue_if_absent(self, item: ModeratorQueueItem) -> bool:
        """Insert unless an item already exists for the candidate; returns True when inserted."""
        ...

    async def list(self) -> Sequence[ModeratorQueueItem]:
        ...

    async def get(self, pending_incident_id: str) -> ModeratorQueueItem | None:
        ...

    async def remove(self, pending_incident_id: str) -> bool:
        ...

    async def count(self) -> int:
        ...


def sort_queue(items: Sequence[ModeratorQueueItem]) -> list[ModeratorQueueItem]:
    return sorted(items, key=lambda item: (item.priority.rank, item.created_at))


def build_queue_item(pending: PendingIncident, now: datetime) -> ModeratorQueueItem:
    return ModeratorQueueItem(
        id=new_id(),
        pending_incident_id=pending.id,
        priority=priority_for_kind(pending.kind),
        reason=f"{pending.total_reports} reports, threshold: {pending.threshold_progress}%",
        created_at=now,
    )


class InMemoryModeratorQueueRepository(ModeratorQueueRepository):
    def __init__(self) -> None:
        self.items: dict[str, ModeratorQueueItem] = {}

    async def enqueue_if_absent(self, item: ModeratorQueueItem) -> bool:
        if item.pending_incident_id in self.items:
            return False
        self.items[item.pending_incident_id] = replace(item)
        return True

    async def list(self) -> Sequence[ModeratorQueueItem]:
        return sort_queue([replace(item) for item in self.items.values()])

    async def get(self, pending_incident_id: str) -> ModeratorQueueItem | None:
        item = self.items.get(pending_incident_id)
        return replace(item) if item else None

    async def remove(self, pending_incident_id: str) -> bool:
        return self.items.pop(pending_incident_id, None) is not None

    async def count(self) -> int:
        return len(self.items)
