"""Moderator and admin endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from crowdcheck.verification.api import schemas
from crowdcheck.verification.api._errors import to_http_error
from crowdcheck.verification.api.deps import get_identity
from crowdcheck.verification.domain.container import get_verification_service
from crowdcheck.verification.domain.models import Identity
from crowdcheck.verification.domain.service import VerificationService

router = APIRouter(prefix="/moderation", tags=["verification:moderation"])


@router.get("/queue", response_model=list[schemas.QueueEntryOut])
async def list_queue_endpoint(
    identity: Identity = Depends(get_identity),
    service: VerificationService = Depends(get_verification_service),
) -> list[schemas.QueueEntryOut]:
    try:
        entries = await service.list_moderator_queue(identity)
    except Exception as exc:
        raise to_http_error(exc) from exc
    return [schemas.QueueEntryOut.from_entry(entry) for entry in entries]


@router.post("/pending/{pending_incident_id}/approve", response_model=schemas.ApproveResponse)
async def approve_endpoint(
    pending_incident_id: str,
    payload: schemas.ApproveRequest,
    identity: Identity = Depends(get_identity),
    service: VerificationService = Depends(get_verification_service),
) -> schemas.ApproveResponse:
    try:
        result = await service.approve_report(identity, pending_incident_id, notes=payload.notes)
    except Exception as exc:
        raise to_http_error(exc) from exc
    return schemas.ApproveResponse(
        incident=schemas.IncidentOut.from_model(result.incident),
        rewarded_users=[schemas.RewardOut.from_model(outcome) for outcome in result.rewarded_users],
    )


@router.post("/pending/{pending_incident_id}/reject", response_model=schemas.RejectResponse)
async def reject_endpoint(
    pending_incident_id: str,
    payload: schemas.RejectRequest,
    identity: Identity = Depends(get_identity),
    service: VerificationService = Depends(get_verification_service),
) -> schemas.RejectResponse:
    try:
        success = await service.reject_report(identity, pending_incident_id, reason=payload.reason)
    except Exception as exc:
        raise to_http_error(exc) from exc
    return schemas.RejectResponse(success=success)


@router.post("/users/{user_id}/flag", response_model=schemas.FlagUserResponse)
async def flag_user_endpoint(
    user_id: str,
    payload: schemas.FlagUserRequest,
    identity: Identity = Depends(get_identity),
    service: VerificationService = Depends(get_verification_service),
) -> schemas.FlagUserResponse:
    try:
        score = await service.flag_user_for_spam(identity, user_id, reason=payload.reason)
    except Exception as exc:
        raise to_http_error(exc) from exc
    return schemas.FlagUserResponse(new_suspicious_score=score)


@router.post("/incidents/{incident_id}/resolve", response_model=schemas.ResolveIncidentResponse)
async def resolve_incident_endpoint(
    incident_id: str,
    payload: schemas.ResolveIncidentRequest,
    identity: Identity = Depends(get_identity),
    service: VerificationService = Depends(get_verification_service),
) -> schemas.ResolveIncidentResponse:
    try:
        result = await service.resolve_incident(identity, incident_id, is_fake=payload.is_fake)
    except Exception as exc:
        raise to_http_error(exc) from exc
    return schemas.ResolveIncidentResponse(
        incident=schemas.IncidentOut.from_model(result.incident),
        reputation_changes=[schemas.RewardOut.from_model(outcome) for outcome in result.reputation_changes],
    )
