"""Process-wide wiring for the verification engine."""

from __future__ import annotations

import logging
from typing import Optional

import asyncpg

from crowdcheck.infra.redis import RedisProxy, redis_client
from crowdcheck.settings import settings
from crowdcheck.verification.domain.config import VerificationConfig, load_verification_config
from crowdcheck.verification.domain.history import InMemoryReportHistoryRepository
from crowdcheck.verification.domain.locks import InMemorySubmissionLocks
from crowdcheck.verification.domain.notifications import (
    AudienceRepository,
    InMemoryAudienceRepository,
    InMemoryDeliveryCache,
    NotificationTargeting,
)
from crowdcheck.verification.domain.pending import InMemoryIncidentRepository, InMemoryPendingIncidentRepository
from crowdcheck.verification.domain.queue import InMemoryModeratorQueueRepository
from crowdcheck.verification.domain.rewards import InMemoryFailedRewardRepository
from crowdcheck.verification.domain.service import VerificationService
from crowdcheck.verification.domain.stops import StopDirectory
from crowdcheck.verification.domain.users import InMemoryUserRepository

logger = logging.getLogger(__name__)

_config: VerificationConfig = VerificationConfig()
_service: Optional[VerificationService] = None


def build_in_memory_service(
    config: VerificationConfig | None = None,
    *,
    stops: StopDirectory | None = None,
    audience: AudienceRepository | None = None,
) -> VerificationService:
    config = config or VerificationConfig()
    incidents = InMemoryIncidentRepository()
    return VerificationService(
        history=InMemoryReportHistoryRepository(),
        pending=InMemoryPendingIncidentRepository(incidents),
        incidents=incidents,
        users=InMemoryUserRepository(),
        queue=InMemoryModeratorQueueRepository(),
        failed_rewards=InMemoryFailedRewardRepository(),
        config=config,
        locks=InMemorySubmissionLocks(),
        stops=stops,
        notifications=NotificationTargeting(
            audience or InMemoryAudienceRepository(),
            InMemoryDeliveryCache(),
            dedupe_ttl_seconds=settings.notification_dedupe_ttl_seconds,
        ),
    )


def configure(config: VerificationConfig | None = None, *, service: VerificationService | None = None) -> VerificationService:
    """Install in-memory repositories (tests and local development)."""

    global _config, _service
    _config = config or load_verification_config(settings.verification_config_path)
    _service = service or build_in_memory_service(_config)
    return _service


def configure_postgres(
    pool: asyncpg.Pool,
    redis: RedisProxy | None = None,
    config: VerificationConfig | None = None,
) -> VerificationService:
    """Install asyncpg repositories with Redis-backed locks and delivery tracking."""

    from crowdcheck.verification.infra.postgres_repo import (
        PostgresAudienceRepository,
        PostgresFailedRewardRepository,
        PostgresIncidentRepository,
        PostgresModeratorQueueRepository,
        PostgresPendingIncidentRepository,
        PostgresReportHistoryRepository,
        PostgresStopDirectory,
        PostgresUserRepository,
    )
    from crowdcheck.verification.infra.redis_store import RedisDeliveryCache, RedisSubmissionLocks

    global _config, _service
    redis = redis or redis_client
    _config = config or load_verification_config(settings.verification_config_path)
    _service = VerificationService(
        history=PostgresReportHistoryRepository(pool),
        pending=PostgresPendingIncidentRepository(pool),
        incidents=PostgresIncidentRepository(pool),
        users=PostgresUserRepository(pool),
        queue=PostgresModeratorQueueRepository(pool),
        failed_rewards=PostgresFailedRewardRepository(pool),
        config=_config,
        locks=RedisSubmissionLocks(redis, timeout=settings.submission_lock_timeout_seconds),
        stops=PostgresStopDirectory(pool),
        notifications=NotificationTargeting(
            PostgresAudienceRepository(pool),
            RedisDeliveryCache(redis),
            dedupe_ttl_seconds=settings.notification_dedupe_ttl_seconds,
        ),
    )
    logger.info("verification engine wired to postgres")
    return _service


def get_config() -> VerificationConfig:
    return _config


def get_verification_service() -> VerificationService:
    global _service
    if _service is None:
        _service = build_in_memory_service(_config)
    return _service
