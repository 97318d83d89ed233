"""
memory.py — In-process collaborators for development and tests.

Provides:
    • InMemoryAlertStore    alert / response documents with listeners
    • InMemoryContactStore  emergency contacts with write-side invariants
    • InMemoryHelperStore   helper profiles with a bounding-box query
    • StaticLocationProvider, ApiLocationProvider
    • NullFeedback, NullAudioCapture

The alert store behaves like the remote authority: it enforces one
non-terminal alert per requester atomically on ``create``, refuses to
mutate an alert that reached a terminal status, and pushes full
snapshots to listeners after every write.

Fault injection (tests):
    store.fail_create = True     create() raises TransportError
    store.fail_update = True     update() raises TransportError
    store.fail_listen = True     listen_*() raises TransportError
    store.emit_error(alert_id, exc)   fail every listener of one alert
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from backend.app.alerts.models import (
    MAX_EMERGENCY_CONTACTS,
    Alert,
    EmergencyContact,
    HelperProfile,
    HelperResponse,
    Location,
    now_ms,
)
from backend.app.alerts.stores.base import (
    AlertCallback,
    ErrorCallback,
    ResponsesCallback,
)
from backend.app.core.errors import (
    DuplicateActiveAlert,
    InvalidTransition,
    NotFoundError,
    TransportError,
    ValidationError,
)
from backend.app.spatial.geo_matcher import BoundingBox

logger = logging.getLogger(__name__)


class _Registration:
    """Handle returned by ``listen_*``; ``remove`` detaches exactly once."""

    def __init__(self, store: "InMemoryAlertStore", bucket: List["_Registration"], on_snapshot, on_error):
        self._store = store
        self._bucket = bucket
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True

    def remove(self) -> None:
        if not self.active:
            return
        self.active = False
        if self in self._bucket:
            self._bucket.remove(self)
        self._store.removed_listeners += 1


# ═══════════════════════════════════════════════════════════════════════════
# Alert store
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryAlertStore:
    def __init__(self):
        self._alerts: Dict[str, Alert] = {}
        self._responses: Dict[str, HelperResponse] = {}
        self._active_by_requester: Dict[str, str] = {}
        self._alert_listeners: Dict[str, List[_Registration]] = {}
        self._response_listeners: Dict[str, List[_Registration]] = {}
        self._lock = asyncio.Lock()

        self.fail_create = False
        self.fail_update = False
        self.fail_listen = False
        self.removed_listeners = 0

    # ── Alerts ──

    async def create(self, alert: Alert) -> Alert:
        if self.fail_create:
            raise TransportError("alert_store", "simulated create failure")
        async with self._lock:
            existing_id = self._active_by_requester.get(alert.requester_id)
            if existing_id is not None:
                raise DuplicateActiveAlert(alert.requester_id, existing_id)
            stored = replace(alert, updated_at=alert.updated_at or alert.created_at)
            self._alerts[stored.id] = stored
            if not stored.is_terminal:
                self._active_by_requester[stored.requester_id] = stored.id
        logger.info(
            "Alert %s created for requester %s",
            stored.id, stored.requester_id,
            extra={"alert_id": stored.id, "requester_id": stored.requester_id},
        )
        return replace(stored)

    async def get(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return replace(alert) if alert else None

    async def update(self, alert_id: str, patch: Dict[str, Any]) -> Alert:
        if self.fail_update:
            raise TransportError("alert_store", "simulated update failure", alert_id=alert_id)
        async with self._lock:
            current = self._alerts.get(alert_id)
            if current is None:
                raise NotFoundError("Alert", alert_id=alert_id)
            if current.is_terminal:
                target = patch.get("status", current.status)
                raise InvalidTransition(current.status.value, target.value, actor="authority")

            stamp = now_ms()
            changes = dict(patch)
            # strictly increasing so observers never see a stale timestamp
            changes["updated_at"] = max(stamp, (current.updated_at or 0) + 1)
            updated = replace(current, **changes)
            if updated.is_terminal:
                if updated.resolved_at is None:
                    updated = replace(updated, resolved_at=changes["updated_at"])
                if self._active_by_requester.get(updated.requester_id) == alert_id:
                    del self._active_by_requester[updated.requester_id]
            self._alerts[alert_id] = updated

        self._notify_alert(updated)
        return replace(updated)

    async def find_active_for_requester(self, requester_id: str) -> Optional[Alert]:
        alert_id = self._active_by_requester.get(requester_id)
        if alert_id is None:
            return None
        return await self.get(alert_id)

    async def listen_alert(
        self,
        alert_id: str,
        on_snapshot: AlertCallback,
        on_error: ErrorCallback,
    ) -> _Registration:
        if self.fail_listen:
            raise TransportError("alert_store", "simulated listen failure", alert_id=alert_id)
        if alert_id not in self._alerts:
            raise NotFoundError("Alert", alert_id=alert_id)
        bucket = self._alert_listeners.setdefault(alert_id, [])
        registration = _Registration(self, bucket, on_snapshot, on_error)
        bucket.append(registration)
        on_snapshot(replace(self._alerts[alert_id]))
        return registration

    # ── Responses ──

    async def create_response(self, response: HelperResponse) -> HelperResponse:
        if response.alert_id not in self._alerts:
            raise NotFoundError("Alert", alert_id=response.alert_id)
        self._responses[response.id] = replace(response)
        self._notify_responses(response.alert_id)
        return replace(response)

    async def get_response(self, response_id: str) -> Optional[HelperResponse]:
        response = self._responses.get(response_id)
        return replace(response) if response else None

    async def update_response(self, response_id: str, patch: Dict[str, Any]) -> HelperResponse:
        current = self._responses.get(response_id)
        if current is None:
            raise NotFoundError("HelperResponse", response_id=response_id)
        updated = replace(current, **patch)
        self._responses[response_id] = updated
        self._notify_responses(updated.alert_id)
        return replace(updated)

    async def list_responses(self, alert_id: str) -> List[HelperResponse]:
        return self._responses_for(alert_id)

    async def list_active_responses_for_helper(self, helper_id: str) -> List[HelperResponse]:
        return [
            replace(r) for r in self._responses.values()
            if r.helper_id == helper_id and r.is_active
        ]

    async def listen_responses(
        self,
        alert_id: str,
        on_snapshot: ResponsesCallback,
        on_error: ErrorCallback,
    ) -> _Registration:
        if self.fail_listen:
            raise TransportError("alert_store", "simulated listen failure", alert_id=alert_id)
        bucket = self._response_listeners.setdefault(alert_id, [])
        registration = _Registration(self, bucket, on_snapshot, on_error)
        bucket.append(registration)
        on_snapshot(self._responses_for(alert_id))
        return registration

    # ── Fault injection ──

    def emit_error(self, alert_id: str, exc: Exception) -> None:
        """Fail every listener attached to ``alert_id`` (both kinds)."""
        for bucket in (
            self._alert_listeners.get(alert_id, []),
            self._response_listeners.get(alert_id, []),
        ):
            for registration in list(bucket):
                bucket.remove(registration)
                registration.on_error(exc)

    def listener_count(self, alert_id: str) -> int:
        return (
            len(self._alert_listeners.get(alert_id, []))
            + len(self._response_listeners.get(alert_id, []))
        )

    # ── Internals ──

    def _responses_for(self, alert_id: str) -> List[HelperResponse]:
        responses = [replace(r) for r in self._responses.values() if r.alert_id == alert_id]
        responses.sort(key=lambda r: r.responded_at)
        return responses

    def _notify_alert(self, alert: Alert) -> None:
        for registration in list(self._alert_listeners.get(alert.id, [])):
            registration.on_snapshot(replace(alert))

    def _notify_responses(self, alert_id: str) -> None:
        listeners = list(self._response_listeners.get(alert_id, []))
        if not listeners:
            return
        snapshot = self._responses_for(alert_id)
        for registration in listeners:
            registration.on_snapshot(list(snapshot))


# ═══════════════════════════════════════════════════════════════════════════
# Contact store
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryContactStore:
    def __init__(self, contacts: Sequence[EmergencyContact] = ()):
        self._contacts: Dict[str, EmergencyContact] = {}
        for contact in contacts:
            self._contacts[contact.id] = contact

    async def list_contacts(self, owner_id: str) -> List[EmergencyContact]:
        return [c for c in self._contacts.values() if c.owner_id == owner_id]

    async def save_contact(self, contact: EmergencyContact) -> EmergencyContact:
        """
        Insert or update a contact.

        Enforces at most MAX_EMERGENCY_CONTACTS per owner and a single
        primary contact: saving a new primary clears the previous one.
        """
        owned = [c for c in self._contacts.values() if c.owner_id == contact.owner_id]
        if contact.id not in self._contacts and len(owned) >= MAX_EMERGENCY_CONTACTS:
            raise ValidationError(
                f"A user may have at most {MAX_EMERGENCY_CONTACTS} emergency contacts",
                field="contacts",
                error_code="CONTACT_LIMIT",
                owner_id=contact.owner_id,
            )
        stamp = now_ms()
        if contact.is_primary:
            for other in owned:
                if other.id != contact.id and other.is_primary:
                    other.is_primary = False
                    other.updated_at = stamp
        contact.updated_at = stamp
        self._contacts[contact.id] = contact
        return contact

    async def delete_contact(self, contact_id: str) -> bool:
        return self._contacts.pop(contact_id, None) is not None


# ═══════════════════════════════════════════════════════════════════════════
# Helper store
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryHelperStore:
    def __init__(self, helpers: Sequence[HelperProfile] = ()):
        self._helpers: Dict[str, HelperProfile] = {h.id: h for h in helpers}
        self.box_queries: List[BoundingBox] = []

    async def get_helper(self, helper_id: str) -> Optional[HelperProfile]:
        return self._helpers.get(helper_id)

    async def query_helpers_in_box(self, box: BoundingBox) -> List[HelperProfile]:
        self.box_queries.append(box)
        return [
            h for h in self._helpers.values()
            if h.location is not None and box.contains(h.location)
        ]

    async def update_helper(self, helper: HelperProfile) -> HelperProfile:
        self._helpers[helper.id] = helper
        return helper


# ═══════════════════════════════════════════════════════════════════════════
# Device collaborators
# ═══════════════════════════════════════════════════════════════════════════

class StaticLocationProvider:
    """
    Location provider replaying a fixed track.

    ``location_updates`` yields each point of ``track`` in turn, then keeps
    repeating the last one.
    """

    def __init__(self, location: Location, track: Sequence[Location] = ()):
        self._location = location
        self._track = list(track)

    async def current_location(self) -> Location:
        return self._location

    def move_to(self, location: Location) -> None:
        self._location = location

    async def location_updates(self, interval_seconds: float) -> AsyncIterator[Location]:
        index = 0
        while True:
            await asyncio.sleep(interval_seconds)
            if index < len(self._track):
                self._location = self._track[index]
                index += 1
            yield self._location


class ApiLocationProvider:
    """
    Location provider for server-hosted sessions.

    There is no device to poll: fixes arrive through the HTTP API and are
    written straight to the alert, so ``location_updates`` ends at once.
    """

    def __init__(self, location: Optional[Location] = None):
        self._location = location

    async def current_location(self) -> Location:
        if self._location is None:
            raise NotFoundError("Location")
        return self._location

    def move_to(self, location: Location) -> None:
        self._location = location

    async def location_updates(self, interval_seconds: float) -> AsyncIterator[Location]:
        return
        yield


class NullFeedback:
    """Records siren / vibration calls instead of driving hardware."""

    def __init__(self):
        self.started = 0
        self.stopped = 0

    @property
    def running(self) -> bool:
        return self.started > self.stopped

    async def start(self) -> None:
        self.started += 1

    async def stop(self) -> None:
        if self.running:
            self.stopped += 1


class NullAudioCapture:
    def __init__(self):
        self.sessions: List[str] = []
        self.max_seconds: Optional[float] = None
        self.recording = False

    async def start(self, alert_id: str, max_seconds: float) -> None:
        self.sessions.append(alert_id)
        self.max_seconds = max_seconds
        self.recording = True

    async def stop(self) -> None:
        self.recording = False
