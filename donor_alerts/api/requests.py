# donor_alerts/api/requests.py
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from donor_alerts.models.donation_request import DonationRequest, Urgency, utcnow
from donor_alerts.models.result import HandlerResult
from donor_alerts.security.jwt_utils import get_current_user

router = APIRouter(prefix="/requests", tags=["requests"])

ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "invalid_transition": status.HTTP_409_CONFLICT,
}


class CreateRequestIn(BaseModel):
    id: Optional[str] = None
    bloodType: str
    city: str = ""
    urgency: Urgency = Urgency.NORMAL
    units: int = Field(default=1, ge=1)
    potentialDonors: List[str] = Field(default_factory=list)
    expiresAt: Optional[datetime] = None
    expiresInMinutes: int = Field(default=24 * 60, ge=1)


class AcceptIn(BaseModel):
    name: Optional[str] = None


def _unwrap(result: HandlerResult):
    if result.success:
        return result.data
    code = ERROR_STATUS.get(result.error_code, status.HTTP_503_SERVICE_UNAVAILABLE)
    kind = result.error_code if code != status.HTTP_503_SERVICE_UNAVAILABLE else "internal"
    raise HTTPException(status_code=code, detail={"kind": kind, "message": result.error})


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_request(body: CreateRequestIn, request: Request):
    """Creates a donation request for the caller; potential donors get notified."""
    runtime = request.app.state.runtime
    current = get_current_user(request.headers.get("Authorization", ""), runtime.settings)

    now = utcnow()
    donation_request = DonationRequest(
        id=body.id or str(uuid.uuid4()),
        bloodType=body.bloodType,
        city=body.city,
        urgency=body.urgency,
        units=body.units,
        requesterId=current["sub"],
        potentialDonors=body.potentialDonors,
        expiresAt=body.expiresAt or now + timedelta(minutes=body.expiresInMinutes),
        createdAt=now,
    )
    created = _unwrap(await runtime.request_service.create(donation_request))
    return created.model_dump(mode="json")


@router.post("/{request_id}/activate")
async def activate_request(request_id: str, request: Request):
    runtime = request.app.state.runtime
    get_current_user(request.headers.get("Authorization", ""), runtime.settings)
    updated = _unwrap(await runtime.request_service.activate(request_id))
    return updated.model_dump(mode="json")


@router.post("/{request_id}/accept")
async def accept_request(request_id: str, request: Request, body: Optional[AcceptIn] = None):
    """The caller accepts the request as donor; the requester gets notified."""
    runtime = request.app.state.runtime
    current = get_current_user(request.headers.get("Authorization", ""), runtime.settings)
    name = (body.name if body else None) or current.get("name")
    updated = _unwrap(await runtime.request_service.accept(request_id, current["sub"], name))
    return updated.model_dump(mode="json")
