"""
coordinator.py — Owns one active SOS alert from trigger to teardown.

═══════════════════════════════════════════════════════════════════════════
SESSION LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    IDLE → TRIGGERING → ACTIVE → CANCELLED | RESOLVED
                 │
                 └──→ ERROR   (duplicate alert, store unreachable)

═══════════════════════════════════════════════════════════════════════════
TRIGGER FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Uniqueness      │  find_active_for_requester → DuplicateActiveAlert
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  2. Create alert    │  TransportError → ERROR, nothing retained
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  3. Dispatch        │  PENDING → ACTIVE (SYSTEM)
    │                     │  SMS fan-out         (detached task)
    │                     │  nearby helpers      (unless contacts_only)
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  4. Sync            │  alert + response subscriptions,
    │                     │  every snapshot through lifecycle.reconcile
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  5. Timers          │  feedback auto-silence   ALERT_FEEDBACK_SECONDS
    │                     │  location push           LOCATION_PUSH_INTERVAL_SECONDS
    │                     │  audio capture cap       MAX_AUDIO_CAPTURE_SECONDS
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
TEARDOWN
═══════════════════════════════════════════════════════════════════════════

Entered from a requester action or from a terminal snapshot pushed by the
store, possibly both at once. The first call cancels timers and
subscriptions, stops feedback and audio, publishes the final state and
ends every event stream; later calls do nothing.

The SMS fan-out is NOT cancelled: a send that already started completes or
fails on its own, and its result is still recorded on ``fanout_result``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Coroutine, List, Optional, Set

from backend.app.alerts.fanout import NotificationFanoutDispatcher, select_sms_recipients
from backend.app.alerts.helper_matching import clamp_radius, find_nearby_helpers
from backend.app.alerts.lifecycle import Actor, reconcile, validate_transition
from backend.app.alerts.models import (
    Alert,
    AlertStatus,
    AlertType,
    CoordinatorEvent,
    CoordinatorState,
    EventKind,
    FanoutResult,
    HelperResponse,
    Location,
    NearbyHelper,
)
from backend.app.alerts.status_sync import StatusSyncObserver, Subscription
from backend.app.alerts.stores.base import (
    AlertFeedback,
    AlertStore,
    AudioCapture,
    ContactStore,
    HelperStore,
    LocationProvider,
)
from backend.app.core.config import Settings
from backend.app.core.config import settings as app_settings
from backend.app.core.errors import (
    DuplicateActiveAlert,
    InvalidTransition,
    TransportError,
    ValidationError,
)
from backend.app.core.logging_config import bind_alert_context

logger = logging.getLogger(__name__)

# Strong references to fan-out tasks that outlive their session
_detached_tasks: Set["asyncio.Task[Any]"] = set()

_FINAL_STATE = {
    AlertStatus.RESOLVED: CoordinatorState.RESOLVED,
    AlertStatus.CANCELLED: CoordinatorState.CANCELLED,
    AlertStatus.FALSE_ALARM: CoordinatorState.CANCELLED,
}


@dataclass(frozen=True)
class Requester:
    """The person raising the alert."""
    id: str
    name: str
    phone: str


class DispatchCoordinator:
    """
    One requester's dispatch session.

    Usage:
        coordinator = DispatchCoordinator(requester, alert_store=..., ...)
        events = coordinator.events()
        alert = await coordinator.trigger(location, AlertType.MEDICAL)
        async for event in events:
            ...
        await coordinator.resolve()
    """

    def __init__(
        self,
        requester: Requester,
        *,
        alert_store: AlertStore,
        contact_store: ContactStore,
        helper_store: HelperStore,
        dispatcher: NotificationFanoutDispatcher,
        location_provider: LocationProvider,
        feedback: AlertFeedback,
        audio_capture: AudioCapture,
        settings: Optional[Settings] = None,
    ):
        self.requester = requester
        self.alert_store = alert_store
        self.contact_store = contact_store
        self.helper_store = helper_store
        self.dispatcher = dispatcher
        self.location_provider = location_provider
        self.feedback = feedback
        self.audio_capture = audio_capture
        self.settings = settings or app_settings

        self.state = CoordinatorState.IDLE
        self.alert: Optional[Alert] = None
        self.responses: List[HelperResponse] = []
        self.nearby_helpers: List[NearbyHelper] = []
        self.fanout_result: Optional[FanoutResult] = None
        self.fanout_task: Optional["asyncio.Task[Any]"] = None
        self.sync_lost = False

        self._observer = StatusSyncObserver(
            alert_store, buffer_size=self.settings.SUBSCRIPTION_BUFFER_SIZE,
        )
        self._streams: List[Subscription[CoordinatorEvent]] = []
        self._subscriptions: List[Subscription[Any]] = []
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._teardown_callbacks: List[Callable[["DispatchCoordinator"], None]] = []
        self._feedback_on = False
        self._recording = False
        self._torn_down = False

    # ── Observation ──

    @property
    def is_finished(self) -> bool:
        return self._torn_down

    def events(self) -> Subscription[CoordinatorEvent]:
        """A new event stream; ends after the final state event."""
        stream: Subscription[CoordinatorEvent] = Subscription(
            maxsize=self.settings.SUBSCRIPTION_BUFFER_SIZE,
            name=f"session:{self.requester.id}",
        )
        if self._torn_down:
            stream.finish()
        else:
            self._streams.append(stream)
        return stream

    def add_teardown_callback(self, callback: Callable[["DispatchCoordinator"], None]) -> None:
        if self._torn_down:
            callback(self)
        else:
            self._teardown_callbacks.append(callback)

    def _publish(self, kind: EventKind, **fields: Any) -> None:
        event = CoordinatorEvent(kind=kind, state=self.state, **fields)
        for stream in self._streams:
            stream.publish(event)

    def _set_state(self, state: CoordinatorState) -> None:
        if state == self.state:
            return
        logger.info(
            "Session %s: %s → %s", self.requester.id, self.state.value, state.value,
            extra={"requester_id": self.requester.id},
        )
        self.state = state
        self._publish(EventKind.STATE, alert=self.alert)

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> "asyncio.Task[Any]":
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Trigger ──

    async def trigger(
        self,
        location: Location,
        alert_type: AlertType = AlertType.EMERGENCY,
        message: Optional[str] = None,
        *,
        contacts_only: bool = False,
        silent: bool = False,
        record_audio: bool = False,
    ) -> Alert:
        """
        Raise the alert and start everything that runs while it is live.

        Parameters
        ----------
        location : Location
            Requester position at trigger time.
        alert_type : AlertType
        message : str | None
            Free-text note included in the SMS.
        contacts_only : bool
            Notify personal contacts only; skip the nearby-helper lookup.
        silent : bool
            Skip the audible / haptic feedback.
        record_audio : bool
            Start time-capped audio capture.

        Raises
        ------
        DuplicateActiveAlert
            The requester already has a live alert.
        TransportError
            The alert could not be created. Nothing was kept.
        Exception
            Anything raised once the alert exists ends the session in ERROR;
            the alert itself stays open in the store.
        """
        if self.state != CoordinatorState.IDLE:
            raise ValidationError(
                f"Session is {self.state.value}, trigger needs idle",
                field="state",
                error_code="SESSION_NOT_IDLE",
                state=self.state.value,
            )

        bind_alert_context(requester_id=self.requester.id)
        self._set_state(CoordinatorState.TRIGGERING)

        try:
            existing = await self.alert_store.find_active_for_requester(self.requester.id)
            if existing is not None:
                raise DuplicateActiveAlert(self.requester.id, existing.id)

            alert = await self.alert_store.create(Alert(
                requester_id=self.requester.id,
                requester_name=self.requester.name,
                requester_phone=self.requester.phone,
                location=location,
                alert_type=alert_type,
                message=message,
            ))
        except (DuplicateActiveAlert, TransportError) as exc:
            logger.warning(
                "Trigger failed for %s: %s", self.requester.id, exc,
                extra={"requester_id": self.requester.id},
            )
            self._publish(EventKind.ERROR, error=str(exc))
            await self.teardown(CoordinatorState.ERROR)
            raise

        self.alert = alert
        bind_alert_context(alert_id=alert.id)
        logger.info(
            "SOS %s raised by %s (%s)", alert.id, self.requester.id, alert.alert_type.value,
            extra={"alert_id": alert.id, "requester_id": self.requester.id},
        )

        try:
            await self._run_live(contacts_only=contacts_only, silent=silent, record_audio=record_audio)
        except Exception as exc:
            # The alert stays in the store, only the session is released.
            logger.exception(
                "Session for alert %s failed after creation", alert.id,
                extra={"alert_id": alert.id, "requester_id": self.requester.id},
            )
            self._publish(EventKind.ERROR, alert=self.alert, error=str(exc))
            await self.teardown(CoordinatorState.ERROR)
            raise
        return self.alert

    async def _run_live(self, *, contacts_only: bool, silent: bool, record_audio: bool) -> None:
        alert_id = self.alert.id
        await self._activate()
        self._set_state(CoordinatorState.ACTIVE)

        self._launch_fanout()
        if not contacts_only:
            self._spawn(self._lookup_helpers(), name=f"helpers:{alert_id}")

        await self._start_sync()

        if self._torn_down:
            return

        if not silent:
            await self.feedback.start()
            self._feedback_on = True
            self._spawn(self._feedback_timer(), name=f"feedback:{alert_id}")
        if record_audio:
            await self.audio_capture.start(alert_id, self.settings.MAX_AUDIO_CAPTURE_SECONDS)
            self._recording = True
            self._spawn(self._audio_timer(), name=f"audio:{alert_id}")
        self._spawn(self._location_pusher(), name=f"location:{alert_id}")

    async def _activate(self) -> None:
        validate_transition(self.alert.status, Actor.SYSTEM, AlertStatus.ACTIVE)
        try:
            updated = await self.alert_store.update(self.alert.id, {"status": AlertStatus.ACTIVE})
        except TransportError as exc:
            # The alert exists; contacts still need to hear about it.
            logger.warning("Could not mark alert %s active: %s", self.alert.id, exc.message)
            self._publish(EventKind.ERROR, alert=self.alert, error=exc.message)
            return
        self.alert = reconcile(self.alert, updated)

    # ── Dispatch ──

    def _launch_fanout(self) -> None:
        task = asyncio.get_running_loop().create_task(
            self._run_fanout(self.alert), name=f"fanout:{self.alert.id}",
        )
        _detached_tasks.add(task)
        task.add_done_callback(_detached_tasks.discard)
        self.fanout_task = task

    async def _run_fanout(self, alert: Alert) -> Optional[FanoutResult]:
        try:
            contacts = await self.contact_store.list_contacts(self.requester.id)
        except TransportError as exc:
            logger.error("Contact lookup for alert %s failed: %s", alert.id, exc.message)
            self._publish(EventKind.ERROR, error=exc.message)
            return None

        recipients = select_sms_recipients(contacts)
        if not recipients:
            logger.warning(
                "Alert %s: requester has no SMS contacts", alert.id,
                extra={"alert_id": alert.id},
            )

        result = await self.dispatcher.dispatch(alert, recipients)
        self.fanout_result = result

        partial = result.partial_failure()
        if partial is not None:
            logger.warning(partial.message, extra={"alert_id": alert.id})
        self._publish(EventKind.FANOUT, fanout=result)
        return result

    async def _lookup_helpers(self) -> None:
        try:
            helpers = await find_nearby_helpers(
                self.helper_store,
                self.alert.location,
                clamp_radius(self.settings.DEFAULT_HELPER_RADIUS_KM),
                exclude_user_ids=(self.requester.id,),
            )
        except TransportError as exc:
            logger.warning("Nearby-helper lookup failed: %s", exc.message)
            self._publish(EventKind.ERROR, error=exc.message)
            return
        self.nearby_helpers = helpers
        self._publish(EventKind.HELPERS, nearby_helpers=helpers)

    # ── Status sync ──

    async def _start_sync(self) -> None:
        alert_id = self.alert.id
        try:
            alert_sub = await self._observer.subscribe(alert_id)
        except TransportError as exc:
            self._sync_failed(exc)
            return
        try:
            responses_sub = await self._observer.subscribe_responses(alert_id)
        except TransportError as exc:
            alert_sub.close()
            self._sync_failed(exc)
            return

        self._subscriptions = [alert_sub, responses_sub]
        self.sync_lost = False
        self._spawn(self._watch_alert(alert_sub), name=f"sync:{alert_id}")
        self._spawn(self._watch_responses(responses_sub), name=f"responses:{alert_id}")

    def _sync_failed(self, exc: TransportError) -> None:
        logger.warning(
            "Status sync lost for alert %s: %s", self.alert.id, exc.message,
            extra={"alert_id": self.alert.id},
        )
        self.sync_lost = True
        self._publish(EventKind.ERROR, alert=self.alert, error=exc.message)

    async def _watch_alert(self, sub: Subscription[Alert]) -> None:
        try:
            async for snapshot in sub:
                await self._apply_snapshot(snapshot)
        except TransportError as exc:
            self._sync_failed(exc)

    async def _watch_responses(self, sub: Subscription[List[HelperResponse]]) -> None:
        try:
            async for responses in sub:
                if self._torn_down:
                    return
                self.responses = responses
                self._publish(EventKind.RESPONSES, alert=self.alert, responses=responses)
        except TransportError as exc:
            self._sync_failed(exc)

    async def _apply_snapshot(self, incoming: Alert) -> None:
        if self._torn_down or self.alert is None:
            return
        accepted = reconcile(self.alert, incoming)
        if accepted is not incoming:
            return
        self.alert = accepted
        self._publish(EventKind.ALERT, alert=accepted)
        if accepted.is_terminal:
            await self.teardown(_FINAL_STATE[accepted.status])

    async def resubscribe(self) -> None:
        """Re-open the store subscriptions after ``sync_lost``."""
        if self._torn_down or self.alert is None:
            raise ValidationError(
                "No live alert to resubscribe to",
                error_code="NO_ACTIVE_ALERT",
                requester_id=self.requester.id,
            )
        for sub in self._subscriptions:
            sub.close()
        self._subscriptions = []
        await self._start_sync()

    # ── Timers ──

    async def _feedback_timer(self) -> None:
        await asyncio.sleep(self.settings.ALERT_FEEDBACK_SECONDS)
        await self._stop_feedback()

    async def _audio_timer(self) -> None:
        await asyncio.sleep(self.settings.MAX_AUDIO_CAPTURE_SECONDS)
        await self._stop_audio()

    async def _location_pusher(self) -> None:
        interval = self.settings.LOCATION_PUSH_INTERVAL_SECONDS
        async for location in self.location_provider.location_updates(interval):
            if self._torn_down:
                return
            try:
                await self.update_location(location)
            except TransportError as exc:
                logger.warning("Location push failed: %s", exc.message)
                self._publish(EventKind.ERROR, alert=self.alert, error=exc.message)
            except InvalidTransition:
                # closed remotely; the snapshot will tear us down
                return

    async def _stop_feedback(self) -> None:
        if not self._feedback_on:
            return
        self._feedback_on = False
        await self.feedback.stop()

    async def _stop_audio(self) -> None:
        if not self._recording:
            return
        self._recording = False
        await self.audio_capture.stop()

    # ── Requester actions ──

    def _require_alert(self) -> Alert:
        if self.alert is None:
            raise ValidationError(
                "No alert has been raised in this session",
                error_code="NO_ACTIVE_ALERT",
                requester_id=self.requester.id,
            )
        return self.alert

    async def cancel(self) -> Alert:
        return await self._finish(AlertStatus.CANCELLED, CoordinatorState.CANCELLED)

    async def resolve(self) -> Alert:
        """Requester marks themself safe."""
        return await self._finish(AlertStatus.RESOLVED, CoordinatorState.RESOLVED)

    async def mark_false_alarm(self) -> Alert:
        return await self._finish(AlertStatus.FALSE_ALARM, CoordinatorState.CANCELLED)

    async def _finish(self, target: AlertStatus, final_state: CoordinatorState) -> Alert:
        alert = self._require_alert()
        validate_transition(alert.status, Actor.REQUESTER, target)

        try:
            updated = await self.alert_store.update(alert.id, {"status": target})
        except InvalidTransition as exc:
            # The store already closed the alert; adopt its version.
            logger.info(
                "Alert %s already closed remotely, requester %s ignored: %s",
                alert.id, target.value, exc.message,
                extra={"alert_id": alert.id, "requester_id": self.requester.id},
            )
            remote = await self.alert_store.get(alert.id)
            if remote is not None:
                await self._apply_snapshot(remote)
            raise

        if not self._torn_down:
            self.alert = reconcile(self.alert, updated)
            self._publish(EventKind.ALERT, alert=self.alert)
        await self.teardown(final_state)
        return self.alert

    async def update_location(self, location: Location) -> Alert:
        """Patch the alert position locally, then push it to the store."""
        alert = self._require_alert()
        if alert.is_terminal:
            raise InvalidTransition(alert.status.value, alert.status.value, actor=Actor.REQUESTER.value)
        self.alert = replace(alert, location=location)
        updated = await self.alert_store.update(alert.id, {"location": location})
        if not self._torn_down:
            self.alert = reconcile(self.alert, updated)
        return self.alert

    # ── Teardown ──

    async def teardown(self, final_state: CoordinatorState = CoordinatorState.CANCELLED) -> None:
        """Release everything the session holds. Safe to call repeatedly."""
        if self._torn_down:
            return
        self._torn_down = True

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current]
        for task in pending:
            task.cancel()

        for sub in self._subscriptions:
            sub.close()
        self._subscriptions = []

        await self._stop_feedback()
        await self._stop_audio()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._set_state(final_state)
        for stream in self._streams:
            stream.finish()

        logger.info(
            "Session %s torn down (%s)", self.requester.id, final_state.value,
            extra={
                "requester_id": self.requester.id,
                "alert_id": self.alert.id if self.alert else None,
            },
        )

        callbacks, self._teardown_callbacks = self._teardown_callbacks, []
        for callback in callbacks:
            callback(self)
