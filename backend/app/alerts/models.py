"""
models.py — Shared data structures for the SOS dispatch core.

Defines:
    • Location         — immutable, range-checked coordinate value
    • Alert            — a single SOS request and its lifecycle status
    • EmergencyContact — a requester's personal contact
    • HelperProfile    — a volunteer responder
    • HelperResponse   — a helper's commitment to one alert
    • NearbyHelper     — helper-lookup result with distance / ETA
    • FanoutResult     — aggregate outcome of an SMS fan-out
    • CoordinatorEvent — progress item on a dispatch session's event stream

═══════════════════════════════════════════════════════════════════════════
ALERT LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    PENDING → ACTIVE → HELP_ON_WAY → RESPONDED → RESOLVED
       │        │          │             │
       └────────┴──────────┴─────────────┴──→ CANCELLED | FALSE_ALARM

    RESOLVED, CANCELLED and FALSE_ALARM are terminal: the alert document
    is immutable once it reaches one of them.

═══════════════════════════════════════════════════════════════════════════
OWNERSHIP
═══════════════════════════════════════════════════════════════════════════

The requester owns the alert content. ``status`` and ``responders_count``
are shared with helpers and the remote store, so any copy held in memory
is a cache that must be re-validated on every inbound snapshot.

All timestamps are epoch milliseconds.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.app.core.errors import InvalidCoordinate, PartialFailure


MAX_EMERGENCY_CONTACTS = 5


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertType(str, Enum):
    """Kind of emergency reported by the requester."""
    MEDICAL   = "medical"
    EMERGENCY = "emergency"
    ACCIDENT  = "accident"
    OTHER     = "other"

    @classmethod
    def parse(cls, value: str) -> "AlertType":
        try:
            return cls(value.lower())
        except ValueError:
            return cls.EMERGENCY


class AlertStatus(str, Enum):
    """Alert lifecycle states."""
    PENDING     = "pending"       # written, dispatch not started
    ACTIVE      = "active"        # contacts notified, waiting for helpers
    HELP_ON_WAY = "help_on_way"   # a helper committed
    RESPONDED   = "responded"     # a helper arrived
    RESOLVED    = "resolved"      # requester marked safe
    CANCELLED   = "cancelled"     # requester withdrew
    FALSE_ALARM = "false_alarm"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ALERT_STATUSES


TERMINAL_ALERT_STATUSES = frozenset({
    AlertStatus.RESOLVED,
    AlertStatus.CANCELLED,
    AlertStatus.FALSE_ALARM,
})


class Relationship(str, Enum):
    PARENT    = "parent"
    SPOUSE    = "spouse"
    SIBLING   = "sibling"
    CHILD     = "child"
    FRIEND    = "friend"
    RELATIVE  = "relative"
    COLLEAGUE = "colleague"
    OTHER     = "other"


class HelperStatus(str, Enum):
    OFFLINE    = "offline"
    AVAILABLE  = "available"
    BUSY       = "busy"
    RESPONDING = "responding"


class VerificationStatus(str, Enum):
    NOT_VERIFIED = "not_verified"
    PENDING      = "pending"
    VERIFIED     = "verified"
    REJECTED     = "rejected"


class ResponseStatus(str, Enum):
    """Helper-response states."""
    RESPONDING = "responding"
    ARRIVED    = "arrived"
    CANCELLED  = "cancelled"
    COMPLETED  = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RESPONSE_STATUSES


TERMINAL_RESPONSE_STATUSES = frozenset({
    ResponseStatus.CANCELLED,
    ResponseStatus.COMPLETED,
})


class CoordinatorState(str, Enum):
    """Lifecycle of one dispatch session (not of the alert document)."""
    IDLE       = "idle"
    TRIGGERING = "triggering"
    ACTIVE     = "active"
    CANCELLED  = "cancelled"
    RESOLVED   = "resolved"
    ERROR      = "error"

    @property
    def is_final(self) -> bool:
        return self in (
            CoordinatorState.CANCELLED,
            CoordinatorState.RESOLVED,
            CoordinatorState.ERROR,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Location
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Location:
    """
    A geographic fix in decimal degrees.

    ``accuracy`` is the reported horizontal accuracy in metres, or None
    when the provider did not report one.
    """
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    address: Optional[str] = None
    captured_at_ms: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        if not (-90.0 <= self.latitude <= 90.0):
            raise InvalidCoordinate("latitude", self.latitude, -90.0, 90.0)
        if not (-180.0 <= self.longitude <= 180.0):
            raise InvalidCoordinate("longitude", self.longitude, -180.0, 180.0)

    @property
    def coordinates(self) -> str:
        return f"{self.latitude:.6f}, {self.longitude:.6f}"

    @property
    def display_address(self) -> str:
        return self.address or self.coordinates

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "address": self.address,
            "captured_at_ms": self.captured_at_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Location":
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            accuracy=data.get("accuracy"),
            address=data.get("address"),
            captured_at_ms=int(data.get("captured_at_ms") or now_ms()),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Alert
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Alert:
    """A single SOS request."""
    requester_id: str
    requester_name: str
    requester_phone: str
    location: Location
    alert_type: AlertType = AlertType.EMERGENCY
    message: Optional[str] = None
    status: AlertStatus = AlertStatus.PENDING
    id: str = field(default_factory=lambda: new_id("SOS"))
    created_at: int = field(default_factory=now_ms)
    updated_at: Optional[int] = None
    responders_count: int = 0
    resolved_at: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    @property
    def duration_minutes(self) -> int:
        end = self.resolved_at or now_ms()
        return max(0, (end - self.created_at) // 60_000)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "requester_id": self.requester_id,
            "requester_name": self.requester_name,
            "requester_phone": self.requester_phone,
            "location": self.location.to_dict(),
            "alert_type": self.alert_type.value,
            "message": self.message,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "responders_count": self.responders_count,
            "resolved_at": self.resolved_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        return cls(
            id=data["id"],
            requester_id=data["requester_id"],
            requester_name=data.get("requester_name", ""),
            requester_phone=data.get("requester_phone", ""),
            location=Location.from_dict(data["location"]),
            alert_type=AlertType.parse(data.get("alert_type", "emergency")),
            message=data.get("message"),
            status=AlertStatus(data.get("status", "pending")),
            created_at=int(data.get("created_at") or now_ms()),
            updated_at=data.get("updated_at"),
            responders_count=int(data.get("responders_count", 0)),
            resolved_at=data.get("resolved_at"),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Contacts and helpers
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class EmergencyContact:
    """A personal contact notified by SMS when the owner raises an alert."""
    owner_id: str
    name: str
    phone: str
    relationship: Relationship = Relationship.OTHER
    is_primary: bool = False
    notify_by_sms: bool = True
    notify_by_call: bool = False
    id: str = field(default_factory=lambda: new_id("CON"))
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @property
    def display_name(self) -> str:
        return self.name or self.phone

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "phone": self.phone,
            "relationship": self.relationship.value,
            "is_primary": self.is_primary,
            "notify_by_sms": self.notify_by_sms,
            "notify_by_call": self.notify_by_call,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class HelperProfile:
    """A volunteer responder. Lifecycle independent of any alert."""
    user_id: str
    name: str = ""
    phone: str = ""
    location: Optional[Location] = None
    status: HelperStatus = HelperStatus.OFFLINE
    verification_status: VerificationStatus = VerificationStatus.NOT_VERIFIED
    radius_km: float = 10.0
    rating: float = 0.0
    total_responses: int = 0
    successful_responses: int = 0
    id: str = field(default_factory=lambda: new_id("HLP"))

    @property
    def is_available(self) -> bool:
        return self.status == HelperStatus.AVAILABLE and self.location is not None

    @property
    def success_rate(self) -> float:
        if self.total_responses == 0:
            return 0.0
        return self.successful_responses / self.total_responses * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "phone": self.phone,
            "location": self.location.to_dict() if self.location else None,
            "status": self.status.value,
            "verification_status": self.verification_status.value,
            "radius_km": self.radius_km,
            "rating": self.rating,
            "total_responses": self.total_responses,
            "successful_responses": self.successful_responses,
        }


@dataclass
class HelperResponse:
    """A helper's commitment to one alert."""
    alert_id: str
    helper_id: str
    status: ResponseStatus = ResponseStatus.RESPONDING
    id: str = field(default_factory=lambda: new_id("RSP"))
    responded_at: int = field(default_factory=now_ms)
    arrived_at: Optional[int] = None
    completed_at: Optional[int] = None
    notes: Optional[str] = None
    location: Optional[Location] = None
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alert_id": self.alert_id,
            "helper_id": self.helper_id,
            "status": self.status.value,
            "responded_at": self.responded_at,
            "arrived_at": self.arrived_at,
            "completed_at": self.completed_at,
            "notes": self.notes,
            "location": self.location.to_dict() if self.location else None,
            "distance_km": self.distance_km,
            "eta_minutes": self.eta_minutes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HelperResponse":
        loc = data.get("location")
        return cls(
            id=data["id"],
            alert_id=data["alert_id"],
            helper_id=data["helper_id"],
            status=ResponseStatus(data.get("status", "responding")),
            responded_at=int(data.get("responded_at") or now_ms()),
            arrived_at=data.get("arrived_at"),
            completed_at=data.get("completed_at"),
            notes=data.get("notes"),
            location=Location.from_dict(loc) if loc else None,
            distance_km=data.get("distance_km"),
            eta_minutes=data.get("eta_minutes"),
        )


@dataclass
class NearbyHelper:
    """A helper inside the search radius, with display metadata."""
    helper: HelperProfile
    distance_km: float
    eta_minutes: int
    bearing_degrees: float
    direction: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "helper": self.helper.to_dict(),
            "distance_km": round(self.distance_km, 3),
            "eta_minutes": self.eta_minutes,
            "bearing_degrees": round(self.bearing_degrees, 1),
            "direction": self.direction,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Fan-out result
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class FanoutFailure:
    """One recipient that could not be notified."""
    contact: EmergencyContact
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contact_id": self.contact.id,
            "name": self.contact.name,
            "phone": self.contact.phone,
            "reason": self.reason,
        }


@dataclass
class FanoutResult:
    """Aggregate outcome of one fan-out, available only once all sends end."""
    alert_id: str
    attempted: int = 0
    succeeded: int = 0
    failed: List[FanoutFailure] = field(default_factory=list)
    started_at: Optional[int] = None
    completed_at: Optional[int] = None

    @property
    def all_failed(self) -> bool:
        return self.attempted > 0 and self.succeeded == 0

    def partial_failure(self) -> Optional[PartialFailure]:
        """PartialFailure when some, but not all, recipients failed."""
        if self.failed and self.succeeded > 0:
            return PartialFailure(self.alert_id, self.attempted, len(self.failed))
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": [f.to_dict() for f in self.failed],
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Coordinator events
# ═══════════════════════════════════════════════════════════════════════════

class EventKind(str, Enum):
    STATE     = "state"       # coordinator state changed
    ALERT     = "alert"       # authoritative alert snapshot accepted
    RESPONSES = "responses"   # helper responses changed
    FANOUT    = "fanout"      # SMS fan-out finished
    HELPERS   = "helpers"     # nearby-helper lookup finished
    ERROR     = "error"       # non-fatal problem (sync lost, push failed)


@dataclass
class CoordinatorEvent:
    kind: EventKind
    state: CoordinatorState
    alert: Optional[Alert] = None
    responses: Optional[List[HelperResponse]] = None
    fanout: Optional[FanoutResult] = None
    nearby_helpers: Optional[List[NearbyHelper]] = None
    error: Optional[str] = None
    at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "state": self.state.value,
            "alert": self.alert.to_dict() if self.alert else None,
            "responses": (
                [r.to_dict() for r in self.responses]
                if self.responses is not None else None
            ),
            "fanout": self.fanout.to_dict() if self.fanout else None,
            "nearby_helpers": (
                [h.to_dict() for h in self.nearby_helpers]
                if self.nearby_helpers is not None else None
            ),
            "error": self.error,
            "at": self.at,
        }
