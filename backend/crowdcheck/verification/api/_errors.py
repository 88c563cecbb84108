"""Translate verification errors into HTTP errors."""

from __future__ import annotations

import logging

from fastapi import HTTPException, status

from crowdcheck.verification.domain.errors import AlreadyReported, OnCooldown, RateLimited, VerificationError

logger = logging.getLogger(__name__)


def to_http_error(exc: Exception) -> HTTPException:
    """Translate domain exceptions to FastAPI HTTP errors."""
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, RateLimited):
        return HTTPException(
            status_code=exc.status_code,
            detail={"code": exc.detail, "retry_after": exc.retry_after, "window": exc.window, "message": exc.reason},
            headers={"Retry-After": str(exc.retry_after)},
        )
    if isinstance(exc, OnCooldown):
        retry_seconds = max(1, -(-exc.remaining_ms // 1000))
        return HTTPException(
            status_code=exc.status_code,
            detail={
                "code": exc.detail,
                "remaining_ms": exc.remaining_ms,
                "cooldown_type": exc.cooldown_type,
                "message": exc.reason,
            },
            headers={"Retry-After": str(retry_seconds)},
        )
    if isinstance(exc, AlreadyReported):
        return HTTPException(
            status_code=exc.status_code,
            detail={"code": exc.detail, "pending_incident_id": exc.pending_incident_id},
        )
    if isinstance(exc, VerificationError):
        return HTTPException(status_code=exc.status_code, detail=exc.detail)
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    logger.exception("unhandled verification error", exc_info=exc)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal_error")
