"""Redis-backed helpers: notification de-duplication and submission locks."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.exceptions import LockError

from crowdcheck.infra.redis import RedisProxy
from crowdcheck.verification.domain.errors import StoreConflict
from crowdcheck.verification.domain.locks import SubmissionLocks
from crowdcheck.verification.domain.notifications import DeliveryCache

logger = logging.getLogger(__name__)


class RedisDeliveryCache(DeliveryCache):
    def __init__(self, redis: RedisProxy, *, prefix: str = "crowdcheck:notified") -> None:
        self._redis = redis
        self._prefix = prefix

    async def mark_if_new(self, incident_id: str, user_id: str, ttl_seconds: int) -> bool:
        key = f"{self._prefix}:{incident_id}:{user_id}"
        return bool(await self._redis.set(key, "1", ex=ttl_seconds, nx=True))


class RedisSubmissionLocks(SubmissionLocks):
    """One lock per identity shared by every API process."""

    def __init__(self, redis: RedisProxy, *, timeout: float = 10.0, prefix: str = "crowdcheck:submit") -> None:
        self._redis = redis
        self._timeout = timeout
        self._prefix = prefix

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._redis.lock(f"{self._prefix}:{user_id}", timeout=self._timeout, blocking_timeout=self._timeout)
        acquired = await lock.acquire()
        if not acquired:
            raise StoreConflict("submission_in_progress")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("submission lock expired before release", extra={"target_user_id": user_id})
