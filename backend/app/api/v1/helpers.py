"""
FastAPI routes: volunteer helpers.

    GET  /api/v1/helpers/nearby                       — helpers around a point
    POST /api/v1/helpers/{helper_id}/respond          — commit to an alert
    POST /api/v1/helpers/responses/{id}/arrive        — on scene
    POST /api/v1/helpers/responses/{id}/complete      — done
    POST /api/v1/helpers/responses/{id}/cancel        — withdraw
    POST /api/v1/helpers/{helper_id}/status           — go online / offline
    POST /api/v1/helpers/{helper_id}/location         — position refresh
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from backend.app.alerts.helper_matching import clamp_radius, find_nearby_helpers
from backend.app.alerts.models import HelperStatus, Location
from backend.app.alerts.responder import HelperResponseService
from backend.app.spatial.geo_matcher import format_distance, format_eta

router = APIRouter(prefix="/api/v1/helpers", tags=["helpers"])


# ---------------------------------------------------------------------------
# Request / Response Schemas
# ---------------------------------------------------------------------------

class RespondRequest(BaseModel):
    alert_id: str = Field(..., examples=["SOS-3A7B9C1D2E4F"])
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class CompleteRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class StatusRequest(BaseModel):
    status: str = Field(..., examples=["available"], description="offline / available / busy / responding")


class HelperLocationRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)


class NearbyHelpersResponse(BaseModel):
    radius_km: float
    count: int
    helpers: List[Dict[str, Any]]


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

def _responder(request: Request) -> HelperResponseService:
    return request.app.state.services.responder


def _parse_status(value: str) -> HelperStatus:
    try:
        return HelperStatus(value.lower())
    except ValueError:
        valid = [s.value for s in HelperStatus]
        raise HTTPException(
            status_code=400,
            detail=f"Invalid status '{value}'. Must be one of: {valid}",
        )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get(
    "/nearby",
    response_model=NearbyHelpersResponse,
    summary="Available helpers around a point, nearest first",
)
async def nearby_helpers(
    request: Request,
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius_km: Optional[float] = Query(None, gt=0, description="Clamped to 5–20 km"),
    limit: Optional[int] = Query(None, ge=1, le=100),
):
    radius = clamp_radius(radius_km)
    helpers = await find_nearby_helpers(
        request.app.state.services.helper_store,
        Location(latitude, longitude),
        radius,
        limit=limit,
    )
    items = []
    for h in helpers:
        item = h.to_dict()
        item["distance_text"] = format_distance(h.distance_km)
        item["eta_text"] = format_eta(h.eta_minutes)
        items.append(item)
    return NearbyHelpersResponse(radius_km=radius, count=len(items), helpers=items)


@router.post("/{helper_id}/respond", status_code=201)
async def respond(helper_id: str, body: RespondRequest, request: Request):
    location = None
    if body.latitude is not None and body.longitude is not None:
        location = Location(body.latitude, body.longitude)
    response = await _responder(request).respond(helper_id, body.alert_id, location)
    return response.to_dict()


@router.post("/responses/{response_id}/arrive")
async def arrive(response_id: str, request: Request):
    response = await _responder(request).mark_arrived(response_id)
    return response.to_dict()


@router.post("/responses/{response_id}/complete")
async def complete(response_id: str, request: Request, body: Optional[CompleteRequest] = None):
    response = await _responder(request).complete(response_id, body.notes if body else None)
    return response.to_dict()


@router.post("/responses/{response_id}/cancel")
async def cancel(response_id: str, request: Request):
    response = await _responder(request).cancel(response_id)
    return response.to_dict()


@router.post("/{helper_id}/status")
async def set_status(helper_id: str, body: StatusRequest, request: Request):
    helper = await _responder(request).set_helper_status(helper_id, _parse_status(body.status))
    return helper.to_dict()


@router.post("/{helper_id}/location")
async def update_location(helper_id: str, body: HelperLocationRequest, request: Request):
    helper = await _responder(request).update_helper_location(
        helper_id, Location(body.latitude, body.longitude, accuracy=body.accuracy),
    )
    return helper.to_dict()
