"""Error taxonomy for the verification engine."""

from __future__ import annotations

from fastapi import status


class VerificationError(Exception):
    """Base class for verification errors surfaced to callers."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: str = "verification_error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail


class Unauthenticated(VerificationError):
    status_code = status.HTTP_401_UNAUTHORIZED
    detail = "unauthenticated"


class Forbidden(VerificationError):
    status_code = status.HTTP_403_FORBIDDEN
    detail = "forbidden"


class RateLimited(VerificationError):
    """A rate-limit tier is exhausted; retry after ``retry_after`` seconds."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    detail = "rate_limited"

    def __init__(self, retry_after: int, window: str, reason: str | None = None) -> None:
        super().__init__(self.detail)
        self.retry_after = retry_after
        self.window = window
        self.reason = reason


class OnCooldown(VerificationError):
    """A short-horizon spacing guard tripped; retry after ``remaining_ms``."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    detail = "on_cooldown"

    def __init__(self, remaining_ms: int, cooldown_type: str, reason: str | None = None) -> None:
        super().__init__(self.detail)
        self.remaining_ms = remaining_ms
        self.cooldown_type = cooldown_type
        self.reason = reason


class AlreadyReported(VerificationError):
    status_code = status.HTTP_409_CONFLICT
    detail = "already_reported"

    def __init__(self, pending_incident_id: str) -> None:
        super().__init__(self.detail)
        self.pending_incident_id = pending_incident_id


class NotFound(VerificationError):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "not_found"


class InvalidState(VerificationError):
    status_code = status.HTTP_409_CONFLICT
    detail = "invalid_state"


class StoreConflict(VerificationError):
    """Lost a compare-and-set race; re-fetch before deciding what to do."""

    status_code = status.HTTP_409_CONFLICT
    detail = "store_conflict"
