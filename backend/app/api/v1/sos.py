"""
FastAPI routes: requester-side SOS sessions.

    POST /api/v1/sos/trigger                      — raise an alert
    GET  /api/v1/sos/{requester_id}               — live session view
    POST /api/v1/sos/{requester_id}/cancel        — requester withdraws
    POST /api/v1/sos/{requester_id}/resolve       — requester is safe
    POST /api/v1/sos/{requester_id}/false-alarm   — raised by mistake
    POST /api/v1/sos/{requester_id}/location      — push a new fix
    POST /api/v1/sos/{requester_id}/resubscribe   — reopen dropped sync
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from backend.app.alerts.coordinator import DispatchCoordinator, Requester
from backend.app.alerts.models import AlertType, Location
from backend.app.alerts.sessions import SessionRegistry
from backend.app.core.errors import NotFoundError

router = APIRouter(prefix="/api/v1/sos", tags=["sos"])


# ---------------------------------------------------------------------------
# Request / Response Schemas
# ---------------------------------------------------------------------------

class LocationInput(BaseModel):
    latitude: float = Field(..., ge=-90, le=90, examples=[28.6139])
    longitude: float = Field(..., ge=-180, le=180, examples=[77.2090])
    accuracy: Optional[float] = Field(None, ge=0, description="Metres")
    address: Optional[str] = Field(None, examples=["Connaught Place, New Delhi"])

    def to_location(self) -> Location:
        return Location(
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy=self.accuracy,
            address=self.address,
        )


class TriggerRequest(LocationInput):
    """Raise an SOS for a requester."""
    requester_id: str = Field(..., min_length=1, examples=["U-1001"])
    requester_name: str = Field("", examples=["Priya Sharma"])
    requester_phone: str = Field("", examples=["+919810000001"])
    alert_type: str = Field(
        "emergency", examples=["medical"],
        description="medical / emergency / accident / other",
    )
    message: Optional[str] = Field(None, max_length=500)
    contacts_only: bool = Field(False, description="Skip the nearby-helper lookup")
    silent: bool = Field(False, description="No siren / vibration")
    record_audio: bool = Field(False)


class SessionResponse(BaseModel):
    requester_id: str
    state: str
    sync_lost: bool
    alert: Optional[Dict[str, Any]]
    responses: List[Dict[str, Any]]
    nearby_helpers: List[Dict[str, Any]]
    fanout: Optional[Dict[str, Any]]


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

def _registry(request: Request) -> SessionRegistry:
    return request.app.state.services.registry


def _session(request: Request, requester_id: str) -> DispatchCoordinator:
    session = _registry(request).get(requester_id)
    if session is None:
        raise NotFoundError("Session", requester_id=requester_id)
    return session


def _view(session: DispatchCoordinator) -> SessionResponse:
    return SessionResponse(
        requester_id=session.requester.id,
        state=session.state.value,
        sync_lost=session.sync_lost,
        alert=session.alert.to_dict() if session.alert else None,
        responses=[r.to_dict() for r in session.responses],
        nearby_helpers=[h.to_dict() for h in session.nearby_helpers],
        fanout=session.fanout_result.to_dict() if session.fanout_result else None,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/trigger",
    response_model=SessionResponse,
    status_code=201,
    summary="Raise an SOS alert",
    description=(
        "Creates the alert, starts the SMS fan-out to emergency contacts "
        "and the nearby-helper lookup, and keeps the session live until "
        "the alert reaches a terminal status."
    ),
)
async def trigger_sos(body: TriggerRequest, request: Request):
    requester = Requester(
        id=body.requester_id,
        name=body.requester_name,
        phone=body.requester_phone,
    )
    session = await _registry(request).start(
        requester,
        body.to_location(),
        AlertType.parse(body.alert_type),
        body.message,
        contacts_only=body.contacts_only,
        silent=body.silent,
        record_audio=body.record_audio,
    )
    return _view(session)


@router.get("/{requester_id}", response_model=SessionResponse)
async def get_session(requester_id: str, request: Request):
    return _view(_session(request, requester_id))


@router.post("/{requester_id}/cancel", response_model=SessionResponse)
async def cancel_sos(requester_id: str, request: Request):
    session = _session(request, requester_id)
    await session.cancel()
    return _view(session)


@router.post("/{requester_id}/resolve", response_model=SessionResponse)
async def resolve_sos(requester_id: str, request: Request):
    session = _session(request, requester_id)
    await session.resolve()
    return _view(session)


@router.post("/{requester_id}/false-alarm", response_model=SessionResponse)
async def false_alarm(requester_id: str, request: Request):
    session = _session(request, requester_id)
    await session.mark_false_alarm()
    return _view(session)


@router.post("/{requester_id}/location", response_model=SessionResponse)
async def update_location(requester_id: str, body: LocationInput, request: Request):
    session = _session(request, requester_id)
    await session.update_location(body.to_location())
    return _view(session)


@router.post("/{requester_id}/resubscribe", response_model=SessionResponse)
async def resubscribe(requester_id: str, request: Request):
    session = _session(request, requester_id)
    await session.resubscribe()
    return _view(session)
