"""
sessions.py — At most one live dispatch session per requester.

The registry is the long-lived owner the application layer talks to. It
serialises ``start`` per requester with an asyncio.Lock, so two trigger
requests from the same requester arriving together produce one alert and
one DuplicateActiveAlert. Sessions drop out of the registry on their own
when they tear down.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from backend.app.alerts.coordinator import DispatchCoordinator, Requester
from backend.app.alerts.models import AlertType, CoordinatorState, Location
from backend.app.core.errors import DuplicateActiveAlert

logger = logging.getLogger(__name__)

CoordinatorFactory = Callable[[Requester], DispatchCoordinator]


class SessionRegistry:
    def __init__(self, factory: CoordinatorFactory):
        self._factory = factory
        self._sessions: Dict[str, DispatchCoordinator] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, requester_id: str) -> Optional[DispatchCoordinator]:
        session = self._sessions.get(requester_id)
        if session is not None and session.is_finished:
            return None
        return session

    def active_sessions(self) -> List[DispatchCoordinator]:
        return [s for s in self._sessions.values() if not s.is_finished]

    async def start(
        self,
        requester: Requester,
        location: Location,
        alert_type: AlertType = AlertType.EMERGENCY,
        message: Optional[str] = None,
        *,
        contacts_only: bool = False,
        silent: bool = False,
        record_audio: bool = False,
    ) -> DispatchCoordinator:
        """Create a session for ``requester`` and trigger its alert."""
        lock = self._locks.setdefault(requester.id, asyncio.Lock())
        async with lock:
            existing = self.get(requester.id)
            if existing is not None:
                raise DuplicateActiveAlert(
                    requester.id, existing.alert.id if existing.alert else None,
                )

            session = self._factory(requester)
            self._sessions[requester.id] = session
            session.add_teardown_callback(self._release)
            await session.trigger(
                location,
                alert_type,
                message,
                contacts_only=contacts_only,
                silent=silent,
                record_audio=record_audio,
            )
            return session

    def _release(self, session: DispatchCoordinator) -> None:
        if self._sessions.get(session.requester.id) is session:
            del self._sessions[session.requester.id]

    async def shutdown(self) -> None:
        """Tear down every live session (the alerts themselves stay open)."""
        sessions = self.active_sessions()
        for session in sessions:
            await session.teardown(CoordinatorState.CANCELLED)
        if sessions:
            logger.info("Shut down %d dispatch sessions", len(sessions))
