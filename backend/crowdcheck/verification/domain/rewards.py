"""Reputation adjustments with a durable retry trail for failures."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Protocol, Sequence

from crowdcheck.obs import metrics
from crowdcheck.verification.domain.models import FailedReward, RewardOutcome, new_id
from crowdcheck.verification.domain.users import UserRepository

logger = logging.getLogger(__name__)


class FailedRewardRepository(Protocol):
    async def add(self, failed: FailedReward) -> None:
        ...

    async def list_due(self, limit: int = 100) -> Sequence[FailedReward]:
        ...

    async def mark_attempt(self, failed_id: str, error: str) -> None:
        ...

    async def delete(self, failed_id: str) -> None:
        ...


class InMemoryFailedRewardRepository(FailedRewardRepository):
    def __init__(self) -> None:
        self.items: dict[str, FailedReward] = {}

    async def add(self, failed: FailedReward) -> None:
        self.items[failed.id] = replace(failed)

    async def list_due(self, limit: int = 100) -> Sequence[FailedReward]:
        ordered = sorted(self.items.values(), key=lambda item: item.created_at)
        return [replace(item) for item in ordered[:limit]]

    async def mark_attempt(self, failed_id: str, error: str) -> None:
        item = self.items.get(failed_id)
        if item is not None:
            item.attempts += 1
            item.last_error = error

    async def delete(self, failed_id: str) -> None:
        self.items.pop(failed_id, None)


class RewardLedger:
    """Applies reputation deltas one user at a time.

    A failure for one user never aborts the others; it is logged and parked as a
    ``FailedReward`` for the retry job.
    """

    def __init__(self, users: UserRepository, failed: FailedRewardRepository) -> None:
        self._users = users
        self._failed = failed

    async def apply(
        self,
        user_id: str,
        delta: int,
        *,
        reason: str,
        pending_incident_id: str,
        now: datetime | None = None,
    ) -> RewardOutcome | None:
        try:
            outcome = await self._users.increment_reputation(user_id, delta)
        except Exception as exc:
            logger.exception(
                "reputation update failed",
                extra={"target_user_id": user_id, "delta": delta, "reason": reason, "pending_incident_id": pending_incident_id},
            )
            metrics.inc_reward(reason, "failed")
            await self._failed.add(
                FailedReward(
                    id=new_id(),
                    user_id=user_id,
                    delta=delta,
                    reason=reason,
                    pending_incident_id=pending_incident_id,
                    created_at=now or datetime.now(timezone.utc),
                    last_error=str(exc) or exc.__class__.__name__,
                )
            )
            return None
        metrics.inc_reward(reason, "applied")
        logger.info(
            "reputation updated",
            extra={"target_user_id": user_id, "change": outcome.change, "reason": reason, "pending_incident_id": pending_incident_id},
        )
        return outcome

    async def retry_failed(self, *, limit: int = 100) -> int:
        applied = 0
        for item in await self._failed.list_due(limit):
            try:
                await self._users.increment_reputation(item.user_id, item.delta)
            except Exception as exc:
                logger.warning(
                    "reputation retry failed",
                    extra={"failed_reward_id": item.id, "attempts": item.attempts + 1, "error": str(exc)},
                )
                metrics.inc_reward(item.reason, "retry_failed")
                await self._failed.mark_attempt(item.id, str(exc) or exc.__class__.__name__)
                continue
            await self._failed.delete(item.id)
            metrics.inc_reward(item.reason, "retried")
            applied += 1
        return applied
