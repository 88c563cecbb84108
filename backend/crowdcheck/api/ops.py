"""Liveness, readiness and Prometheus scrape endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from crowdcheck.infra import postgres
from crowdcheck.infra import redis as redis_infra

router = APIRouter(prefix="", tags=["ops"])


@router.get("/health/live")
async def health_live() -> dict[str, str]:
	return {"status": "ok"}


@router.get("/health/ready")
async def health_ready(request: Request) -> JSONResponse:
	store = getattr(request.app.state, "verification_store", "memory")
	scheduler = getattr(request.app.state, "verification_scheduler", None)
	checks: dict[str, bool] = {}
	if store == "postgres":
		checks["postgres"] = await postgres.ping()
		checks["redis"] = await redis_infra.ping()
	ready = all(checks.values())
	body = {
		"status": "ok" if ready else "degraded",
		"store": store,
		"checks": checks,
		"scheduler": bool(scheduler and scheduler.started),
	}
	return JSONResponse(status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE, content=body)


@router.get("/metrics")
async def prometheus_metrics() -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
