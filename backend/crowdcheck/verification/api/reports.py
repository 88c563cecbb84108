"""Reporter-facing endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from crowdcheck.verification.api import schemas
from crowdcheck.verification.api._errors import to_http_error
from crowdcheck.verification.api.deps import get_identity
from crowdcheck.verification.domain.container import get_verification_service
from crowdcheck.verification.domain.models import Coordinates, Identity, IncidentKind
from crowdcheck.verification.domain.service import VerificationService

router = APIRouter(prefix="/reports", tags=["verification:reports"])


@router.post("", response_model=schemas.SubmitReportResponse, status_code=status.HTTP_201_CREATED)
async def submit_report_endpoint(
    payload: schemas.SubmitReportRequest,
    identity: Identity = Depends(get_identity),
    service: VerificationService = Depends(get_verification_service),
) -> schemas.SubmitReportResponse:
    try:
        result = await service.submit_report(
            identity,
            kind=payload.kind,
            location=Coordinates(payload.location.latitude, payload.location.longitude),
            description=payload.description,
            line_ids=payload.line_ids,
            delay_minutes=payload.delay_minutes,
        )
    except Exception as exc:
        raise to_http_error(exc) from exc
    return schemas.SubmitReportResponse.from_result(result)


@router.get("/can-submit", response_model=schemas.CanSubmitResponse)
async def can_submit_endpoint(
    kind: Optional[IncidentKind] = Query(default=None),
    latitude: Optional[float] = Query(default=None, ge=-90, le=90),
    longitude: Optional[float] = Query(default=None, ge=-180, le=180),
    identity: Identity = Depends(get_identity),
    service: VerificationService = Depends(get_verification_service),
) -> schemas.CanSubmitResponse:
    location = Coordinates(latitude, longitude) if latitude is not None and longitude is not None else None
    try:
        result = await service.can_submit_report(identity, kind=kind, location=location)
    except Exception as exc:
        raise to_http_error(exc) from exc
    return schemas.CanSubmitResponse.from_result(result)


@router.get("/pending", response_model=list[schemas.PendingIncidentOut])
async def list_my_pending_endpoint(
    identity: Identity = Depends(get_identity),
    service: VerificationService = Depends(get_verification_service),
) -> list[schemas.PendingIncidentOut]:
    try:
        items = await service.list_pending_for_user(identity)
    except Exception as exc:
        raise to_http_error(exc) from exc
    return [schemas.PendingIncidentOut.from_model(item) for item in items]
