"""FastAPI application entrypoint for the crowdcheck backend."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from crowdcheck import obs
from crowdcheck.api import ops
from crowdcheck.api.errors import install_error_handlers
from crowdcheck.infra import postgres
from crowdcheck.infra import redis as redis_infra
from crowdcheck.infra.redis import redis_client
from crowdcheck.settings import settings
from crowdcheck.verification.api import router as verification_router
from crowdcheck.verification.domain import container
from crowdcheck.verification.domain.config import load_verification_config
from crowdcheck.verification.jobs.scheduler import VerificationScheduler

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "verification.yaml"


@asynccontextmanager
async def lifespan(app: FastAPI):
	config = load_verification_config(settings.verification_config_path or DEFAULT_CONFIG_PATH)
	use_postgres = settings.verification_store.lower() == "postgres"
	if use_postgres:
		pool = await postgres.init_pool()
		service = container.configure_postgres(pool, redis_client, config=config)
	else:
		service = container.configure(config)
	app.state.verification_store = "postgres" if use_postgres else "memory"
	logger.info("verification engine ready", extra={"store": app.state.verification_store})

	scheduler: VerificationScheduler | None = None
	if settings.run_cron:
		scheduler = VerificationScheduler(
			service,
			trust_interval_seconds=settings.trust_score_interval_seconds,
			expiry_interval_seconds=settings.pending_expiry_interval_seconds,
			reward_retry_interval_seconds=settings.reward_retry_interval_seconds,
		)
		scheduler.start()
	app.state.verification_scheduler = scheduler
	try:
		yield
	finally:
		if scheduler is not None:
			await scheduler.shutdown()
		if use_postgres:
			await postgres.close_pool()
			await redis_infra.close()


def create_app() -> FastAPI:
	application = FastAPI(title="Crowdcheck Incident Verification", lifespan=lifespan)
	obs.init(application)
	install_error_handlers(application)
	application.include_router(ops.router)
	application.include_router(verification_router)
	return application


app = create_app()
