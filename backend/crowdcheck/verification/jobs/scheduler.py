"""APScheduler wrapper for the verification background passes."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from crowdcheck.obs import metrics
from crowdcheck.verification.domain.service import VerificationService
from crowdcheck.verification.jobs import expire_pending, reward_retry, trust_scores

logger = logging.getLogger(__name__)


class GuardedJob:
    """A periodic pass that never overlaps itself.

    A tick that finds the previous pass still in flight is skipped, not queued.
    """

    def __init__(self, name: str, func: Callable[[], Awaitable[int]]) -> None:
        self.name = name
        self._func = func
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def tick(self) -> int | None:
        if self._lock.locked():
            logger.info("job tick skipped; previous pass still running", extra={"job": self.name})
            metrics.record_job_run(self.name, "skipped")
            return None
        async with self._lock:
            started = time.perf_counter()
            try:
                result = await self._func()
            except Exception:
                logger.exception("job pass failed", extra={"job": self.name})
                metrics.record_job_run(self.name, "error", time.perf_counter() - started)
                return None
            metrics.record_job_run(self.name, "ok", time.perf_counter() - started)
            if result:
                logger.info("job pass finished", extra={"job": self.name, "updated": result})
            return result

    async def wait_idle(self) -> None:
        async with self._lock:
            return None


class VerificationScheduler:
    """Owns the interval triggers for trust scores, expiry and reward retries."""

    def __init__(
        self,
        service: VerificationService,
        *,
        trust_interval_seconds: float = 5.0,
        expiry_interval_seconds: float = 60.0,
        reward_retry_interval_seconds: float = 30.0,
    ) -> None:
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._started = False
        self.jobs: dict[str, tuple[GuardedJob, float]] = {
            "trust_scores": (GuardedJob("trust_scores", lambda: trust_scores.run(service)), trust_interval_seconds),
            "expire_pending": (GuardedJob("expire_pending", lambda: expire_pending.run(service)), expiry_interval_seconds),
            "reward_retry": (GuardedJob("reward_retry", lambda: reward_retry.run(service)), reward_retry_interval_seconds),
        }

    def job(self, name: str) -> GuardedJob:
        return self.jobs[name][0]

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        if self._started:
            return
        for name, (job, interval) in self.jobs.items():
            self._scheduler.add_job(
                job.tick,
                trigger=IntervalTrigger(seconds=interval),
                id=name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self._scheduler.start()
        self._started = True
        logger.info("verification scheduler started", extra={"jobs": list(self.jobs)})

    async def shutdown(self) -> None:
        """Stop scheduling new ticks, then let in-flight passes finish."""

        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
        for job, _ in self.jobs.values():
            await job.wait_idle()
        logger.info("verification scheduler stopped")


__all__ = ["GuardedJob", "VerificationScheduler"]
