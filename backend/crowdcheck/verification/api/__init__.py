"""FastAPI routers for the verification engine."""

from __future__ import annotations

from fastapi import APIRouter

from crowdcheck.verification.api import moderation, reports

router = APIRouter(prefix="/api/v1")

router.include_router(reports.router)
router.include_router(moderation.router)

__all__ = ["router"]
