import asyncio
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from crowdcheck.infra import postgres
from crowdcheck.main import app
from crowdcheck.settings import settings
from crowdcheck.verification.domain import container
from crowdcheck.verification.domain.config import VerificationConfig
from crowdcheck.verification.domain.history import InMemoryReportHistoryRepository
from crowdcheck.verification.domain.notifications import (
	InMemoryAudienceRepository,
	InMemoryDeliveryCache,
	NotificationTargeting,
)
from crowdcheck.verification.domain.pending import InMemoryIncidentRepository, InMemoryPendingIncidentRepository
from crowdcheck.verification.domain.queue import InMemoryModeratorQueueRepository
from crowdcheck.verification.domain.rewards import InMemoryFailedRewardRepository
from crowdcheck.verification.domain.service import VerificationService
from crowdcheck.verification.domain.stops import InMemoryStopDirectory
from crowdcheck.verification.domain.users import InMemoryUserRepository

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


# Ensure a selector-based event loop policy on Windows to avoid Proactor issues with async IO
if sys.platform == "win32":
	asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


@dataclass
class Engine:
	service: VerificationService
	history: InMemoryReportHistoryRepository
	pending: InMemoryPendingIncidentRepository
	incidents: InMemoryIncidentRepository
	users: InMemoryUserRepository
	queue: InMemoryModeratorQueueRepository
	failed_rewards: InMemoryFailedRewardRepository
	stops: InMemoryStopDirectory
	audience: InMemoryAudienceRepository


def build_engine(config: VerificationConfig | None = None, *, pending_cls=InMemoryPendingIncidentRepository) -> Engine:
	incidents = InMemoryIncidentRepository()
	parts = dict(
		history=InMemoryReportHistoryRepository(),
		pending=pending_cls(incidents),
		incidents=incidents,
		users=InMemoryUserRepository(),
		queue=InMemoryModeratorQueueRepository(),
		failed_rewards=InMemoryFailedRewardRepository(),
	)
	stops = InMemoryStopDirectory()
	audience = InMemoryAudienceRepository()
	service = VerificationService(
		**parts,
		config=config or VerificationConfig(),
		stops=stops,
		notifications=NotificationTargeting(audience, InMemoryDeliveryCache()),
	)
	return Engine(service=service, stops=stops, audience=audience, **parts)


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from crowdcheck.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Dev mode so X-User-Id/X-User-Roles headers authenticate; no background jobs."""
	original_env = settings.environment
	original_store = settings.verification_store
	original_cron = settings.run_cron
	settings.environment = "dev"
	settings.verification_store = "memory"
	settings.run_cron = False
	try:
		yield
	finally:
		settings.environment = original_env
		settings.verification_store = original_store
		settings.run_cron = original_cron


@pytest.fixture
def engine() -> Engine:
	built = build_engine()
	container.configure(VerificationConfig(), service=built.service)
	return built


@pytest_asyncio.fixture
async def api_client(engine):
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client


@pytest.fixture
def make_engine():
	"""Factory for engines with custom tunables."""
	return build_engine


@pytest.fixture
def now() -> datetime:
	return NOW
