"""Background job that re-applies parked reputation adjustments."""

from __future__ import annotations

from crowdcheck.verification.domain.service import VerificationService


async def run(service: VerificationService, *, limit: int = 100) -> int:
    return await service.retry_failed_rewards(limit=limit)
