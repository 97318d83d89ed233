"""
responder.py — Helper-side actions on an alert.

    respond       helper commits      response RESPONDING, alert → HELP_ON_WAY
    mark_arrived  helper on scene     response ARRIVED,    alert → RESPONDED
    complete      helper done         response COMPLETED,  helper → AVAILABLE
    cancel        helper withdraws    response CANCELLED,  helper → AVAILABLE

Alert moves are made as Actor.HELPER and only when the lifecycle allows
them; a response on an alert that already progressed further (a second
helper arriving, say) leaves the alert status untouched.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from backend.app.alerts.lifecycle import (
    Actor,
    can_transition,
    ensure_no_active_response,
    validate_response_transition,
)
from backend.app.alerts.models import (
    AlertStatus,
    HelperProfile,
    HelperResponse,
    HelperStatus,
    Location,
    ResponseStatus,
    now_ms,
)
from backend.app.alerts.stores.base import AlertStore, HelperStore
from backend.app.core.config import settings
from backend.app.core.errors import InvalidTransition, NotFoundError, ValidationError
from backend.app.spatial.geo_matcher import distance_km, estimate_eta_minutes

logger = logging.getLogger(__name__)


class HelperResponseService:
    def __init__(self, alert_store: AlertStore, helper_store: HelperStore):
        self.alert_store = alert_store
        self.helper_store = helper_store
        self._helper_locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    @asynccontextmanager
    async def _helper_lock(self, helper_id: str) -> AsyncIterator[None]:
        """Serialise every action of one helper; the lock is dropped once idle."""
        lock = self._helper_locks.setdefault(helper_id, asyncio.Lock())
        self._lock_holders[helper_id] = self._lock_holders.get(helper_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[helper_id] -= 1
            if self._lock_holders[helper_id] == 0:
                del self._lock_holders[helper_id]
                del self._helper_locks[helper_id]

    async def _helper(self, helper_id: str) -> HelperProfile:
        helper = await self.helper_store.get_helper(helper_id)
        if helper is None:
            raise NotFoundError("Helper", helper_id=helper_id)
        return helper

    async def _response(self, response_id: str) -> HelperResponse:
        response = await self.alert_store.get_response(response_id)
        if response is None:
            raise NotFoundError("HelperResponse", response_id=response_id)
        return response

    async def respond(
        self,
        helper_id: str,
        alert_id: str,
        location: Optional[Location] = None,
    ) -> HelperResponse:
        """
        Commit ``helper_id`` to ``alert_id``.

        Raises
        ------
        NotFoundError
            Unknown helper or alert.
        InvalidTransition
            The alert already reached a terminal status.
        ResponseConflict
            The helper already holds a live response (on any alert).
        """
        async with self._helper_lock(helper_id):
            helper = await self._helper(helper_id)
            alert = await self.alert_store.get(alert_id)
            if alert is None:
                raise NotFoundError("Alert", alert_id=alert_id)
            if alert.is_terminal:
                raise InvalidTransition(
                    alert.status.value, AlertStatus.HELP_ON_WAY.value,
                    actor=Actor.HELPER.value,
                )

            existing = await self.alert_store.list_active_responses_for_helper(helper_id)
            ensure_no_active_response(helper_id, alert_id, existing)

            origin = location or helper.location
            dist = eta = None
            if origin is not None:
                dist = distance_km(origin, alert.location)
                eta = estimate_eta_minutes(dist * 1000.0, settings.ETA_SPEED_KMH)

            response = await self.alert_store.create_response(HelperResponse(
                alert_id=alert_id,
                helper_id=helper_id,
                location=origin,
                distance_km=dist,
                eta_minutes=eta,
            ))

            patch = {"responders_count": alert.responders_count + 1}
            if can_transition(alert.status, Actor.HELPER, AlertStatus.HELP_ON_WAY):
                patch["status"] = AlertStatus.HELP_ON_WAY
            await self.alert_store.update(alert_id, patch)

            helper.status = HelperStatus.RESPONDING
            if location is not None:
                helper.location = location
            await self.helper_store.update_helper(helper)

        logger.info(
            "Helper %s responding to alert %s (%s km)",
            helper_id, alert_id, f"{dist:.1f}" if dist is not None else "?",
            extra={"alert_id": alert_id, "helper_id": helper_id},
        )
        return response

    async def mark_arrived(self, response_id: str) -> HelperResponse:
        helper_id = (await self._response(response_id)).helper_id
        async with self._helper_lock(helper_id):
            # re-read under the lock, a concurrent action may have moved it
            response = await self._response(response_id)
            validate_response_transition(response.status, ResponseStatus.ARRIVED)
            updated = await self.alert_store.update_response(
                response_id, {"status": ResponseStatus.ARRIVED, "arrived_at": now_ms()},
            )

            alert = await self.alert_store.get(response.alert_id)
            if alert and can_transition(alert.status, Actor.HELPER, AlertStatus.RESPONDED):
                await self.alert_store.update(alert.id, {"status": AlertStatus.RESPONDED})

        logger.info(
            "Helper %s arrived at alert %s", response.helper_id, response.alert_id,
            extra={"alert_id": response.alert_id, "helper_id": response.helper_id},
        )
        return updated

    async def complete(self, response_id: str, notes: Optional[str] = None) -> HelperResponse:
        helper_id = (await self._response(response_id)).helper_id
        async with self._helper_lock(helper_id):
            response = await self._response(response_id)
            validate_response_transition(response.status, ResponseStatus.COMPLETED)
            updated = await self.alert_store.update_response(response_id, {
                "status": ResponseStatus.COMPLETED,
                "completed_at": now_ms(),
                "notes": notes if notes is not None else response.notes,
            })
            await self._release_helper(helper_id, successful=True)
        return updated

    async def cancel(self, response_id: str) -> HelperResponse:
        helper_id = (await self._response(response_id)).helper_id
        async with self._helper_lock(helper_id):
            response = await self._response(response_id)
            validate_response_transition(response.status, ResponseStatus.CANCELLED)
            updated = await self.alert_store.update_response(
                response_id, {"status": ResponseStatus.CANCELLED, "completed_at": now_ms()},
            )
            await self._release_helper(helper_id, successful=False)
        return updated

    async def _release_helper(self, helper_id: str, *, successful: bool) -> None:
        helper = await self.helper_store.get_helper(helper_id)
        if helper is None:
            return
        helper.total_responses += 1
        if successful:
            helper.successful_responses += 1
        if helper.status == HelperStatus.RESPONDING:
            helper.status = HelperStatus.AVAILABLE
        await self.helper_store.update_helper(helper)

    async def set_helper_status(self, helper_id: str, status: HelperStatus) -> HelperProfile:
        helper = await self._helper(helper_id)
        helper.status = status
        return await self.helper_store.update_helper(helper)

    async def update_helper_location(self, helper_id: str, location: Location) -> HelperProfile:
        """Refresh a helper's position; refused while the helper is offline."""
        helper = await self._helper(helper_id)
        if helper.status == HelperStatus.OFFLINE:
            raise ValidationError(
                "Location updates are only accepted while the helper is online",
                field="status",
                error_code="HELPER_OFFLINE",
                helper_id=helper_id,
            )
        helper.location = location
        return await self.helper_store.update_helper(helper)
