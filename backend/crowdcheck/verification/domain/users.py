"""User records as seen by the verification engine."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Iterable, Protocol, Sequence

from crowdcheck.verification.domain.models import RewardOutcome, Role, TrustScoreBreakdown, UserRecord


class UserRepository(Protocol):
    async def get(self, user_id: str) -> UserRecord | None:
        ...

    async def get_or_create(self, user_id: str, *, starting_reputation: int, role: Role = Role.USER) -> UserRecord:
        ...

    async def increment_reputation(self, user_id: str, delta: int) -> RewardOutcome:
        """Atomically add ``delta``; the stored value never drops below zero."""
        ...

    async def set_trust_score(self, user_id: str, breakdown: TrustScoreBreakdown, updated_at: datetime) -> None:
        ...

    async def list_by_ids(self, user_ids: Iterable[str]) -> Sequence[UserRecord]:
        ...


class InMemoryUserRepository(UserRepository):
    def __init__(self) -> None:
        self.users: dict[str, UserRecord] = {}

    def seed(self, user_id: str, reputation: int, role: Role = Role.USER) -> UserRecord:
        record = UserRecord(id=user_id, reputation=reputation, role=role)
        self.users[user_id] = record
        return record

    async def get(self, user_id: str) -> UserRecord | None:
        record = self.users.get(user_id)
        return replace(record) if record else None

    async def get_or_create(self, user_id: str, *, starting_reputation: int, role: Role = Role.USER) -> UserRecord:
        record = self.users.get(user_id)
        if record is None:
            record = self.seed(user_id, starting_reputation, role)
        return replace(record)

    async def increment_reputation(self, user_id: str, delta: int) -> RewardOutcome:
        record = self.users.get(user_id)
        if record is None:
            raise KeyError(user_id)
        old = record.reputation
        record.reputation = max(0, old + delta)
        return RewardOutcome(user_id=user_id, old_reputation=old, new_reputation=record.reputation, change=record.reputation - old)

    async def set_trust_score(self, user_id: str, breakdown: TrustScoreBreakdown, updated_at: datetime) -> None:
        record = self.users.get(user_id)
        if record is None:
            return
        record.trust_score = breakdown.final_score
        record.trust_score_breakdown = breakdown
        record.trust_score_updated_at = updated_at

    async def list_by_ids(self, user_ids: Iterable[str]) -> Sequence[UserRecord]:
        return [replace(self.users[user_id]) for user_id in user_ids if user_id in self.users]
