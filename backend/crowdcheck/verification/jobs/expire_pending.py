"""Background job that closes candidates past their lifetime."""

from __future__ import annotations

from datetime import datetime, timezone

from crowdcheck.verification.domain.service import VerificationService


async def run(service: VerificationService, *, now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    return await service.expire_pending(now=now)
