"""Background job that recomputes every contributor's trust score."""

from __future__ import annotations

from datetime import datetime, timezone

from crowdcheck.verification.domain.service import VerificationService


async def run(service: VerificationService, *, now: datetime | None = None) -> int:
    """Run a single recompute pass and return the number of users updated."""

    now = now or datetime.now(timezone.utc)
    return await service.recompute_all_trust_scores(now=now)
