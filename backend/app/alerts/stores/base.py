"""
base.py — Narrow interfaces to the collaborators the dispatch core needs.

    AlertStore        authoritative alert / response documents with push
                      change notification (callback listeners)
    ContactStore      read side of the requester's emergency contacts
    HelperStore       helper profiles with a bounding-box range query
    LocationProvider  current fix + periodic updates
    AlertFeedback     audible / haptic cue on the requester's device
    AudioCapture      time-capped raw audio recording

Listener callbacks are plain functions invoked from the store's own task;
they must not block. ``on_snapshot`` receives the full current document
(never a delta). ``on_error`` is called at most once, after which the
listener is dead and must be re-registered.

Alert patches are dicts of ``Alert`` attribute names to values, e.g.
``{"status": AlertStatus.CANCELLED}`` or ``{"location": loc}``. The store
stamps ``updated_at`` itself.
"""

from __future__ import annotations

from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
)

from backend.app.alerts.models import (
    Alert,
    EmergencyContact,
    HelperProfile,
    HelperResponse,
    Location,
)
from backend.app.spatial.geo_matcher import BoundingBox


AlertCallback = Callable[[Alert], None]
ResponsesCallback = Callable[[List[HelperResponse]], None]
ErrorCallback = Callable[[Exception], None]


class ListenerRegistration(Protocol):
    def remove(self) -> None:
        """Detach the listener. Idempotent."""


class AlertStore(Protocol):
    async def create(self, alert: Alert) -> Alert: ...

    async def get(self, alert_id: str) -> Optional[Alert]: ...

    async def update(self, alert_id: str, patch: Dict[str, Any]) -> Alert: ...

    async def find_active_for_requester(self, requester_id: str) -> Optional[Alert]: ...

    async def listen_alert(
        self,
        alert_id: str,
        on_snapshot: AlertCallback,
        on_error: ErrorCallback,
    ) -> ListenerRegistration: ...

    async def create_response(self, response: HelperResponse) -> HelperResponse: ...

    async def get_response(self, response_id: str) -> Optional[HelperResponse]: ...

    async def update_response(self, response_id: str, patch: Dict[str, Any]) -> HelperResponse: ...

    async def list_responses(self, alert_id: str) -> List[HelperResponse]: ...

    async def list_active_responses_for_helper(self, helper_id: str) -> List[HelperResponse]: ...

    async def listen_responses(
        self,
        alert_id: str,
        on_snapshot: ResponsesCallback,
        on_error: ErrorCallback,
    ) -> ListenerRegistration: ...


class ContactStore(Protocol):
    async def list_contacts(self, owner_id: str) -> List[EmergencyContact]: ...


class HelperStore(Protocol):
    async def get_helper(self, helper_id: str) -> Optional[HelperProfile]: ...

    async def query_helpers_in_box(self, box: BoundingBox) -> List[HelperProfile]: ...

    async def update_helper(self, helper: HelperProfile) -> HelperProfile: ...


class LocationProvider(Protocol):
    async def current_location(self) -> Location: ...

    def location_updates(self, interval_seconds: float) -> AsyncIterator[Location]: ...


class AlertFeedback(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class AudioCapture(Protocol):
    async def start(self, alert_id: str, max_seconds: float) -> None: ...

    async def stop(self) -> None: ...
