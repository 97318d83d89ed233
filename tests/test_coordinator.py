"""
test_coordinator.py — Dispatch session orchestration.

Covers:
    • Trigger flow: create, activate, fan-out, helper lookup, sync, timers
    • Trigger failures leave nothing behind
    • Remote snapshots drive the session (terminal status tears down)
    • Requester actions racing a remote close
    • Teardown is idempotent and never cancels an in-flight fan-out
    • Session registry: one live session per requester

Run with:
    pytest tests/test_coordinator.py -v
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List

import pytest

from backend.app.alerts.channels.sms_gateway import SimulatedSmsTransport
from backend.app.alerts.coordinator import DispatchCoordinator, Requester
from backend.app.alerts.fanout import NotificationFanoutDispatcher
from backend.app.alerts.models import (
    Alert,
    AlertStatus,
    AlertType,
    CoordinatorEvent,
    CoordinatorState,
    EmergencyContact,
    EventKind,
    HelperProfile,
    HelperStatus,
    Location,
)
from backend.app.alerts.responder import HelperResponseService
from backend.app.alerts.sessions import SessionRegistry
from backend.app.alerts.stores.memory import (
    InMemoryAlertStore,
    InMemoryContactStore,
    InMemoryHelperStore,
    NullAudioCapture,
    NullFeedback,
    StaticLocationProvider,
)
from backend.app.core.config import Settings
from backend.app.core.errors import (
    DuplicateActiveAlert,
    InvalidTransition,
    TransportError,
    ValidationError,
)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

DELHI = Location(28.6139, 77.2090)
REQUESTER = Requester(id="U-1", name="Priya Sharma", phone="+919810000001")


class _Harness:
    """One coordinator plus every collaborator, all in memory."""

    def __init__(
        self,
        *,
        contacts: int = 3,
        transport: SimulatedSmsTransport = None,
        track: List[Location] = (),
        **overrides,
    ):
        config = {
            "ALERT_FEEDBACK_SECONDS": 60.0,
            "LOCATION_PUSH_INTERVAL_SECONDS": 60.0,
            "MAX_AUDIO_CAPTURE_SECONDS": 60.0,
        }
        config.update(overrides)
        self.settings = Settings(**config)
        self.alert_store = InMemoryAlertStore()
        self.contact_store = InMemoryContactStore([
            EmergencyContact(owner_id=REQUESTER.id, name=f"Contact {i}", phone=f"+91980000000{i}")
            for i in range(contacts)
        ])
        self.helper_store = InMemoryHelperStore([
            HelperProfile(
                user_id="U-H1", name="Ravi", location=Location(28.62, 77.21),
                status=HelperStatus.AVAILABLE, id="HLP-1",
            ),
        ])
        self.transport = transport or SimulatedSmsTransport()
        self.dispatcher = NotificationFanoutDispatcher(self.transport)
        self.location = StaticLocationProvider(DELHI, track=track)
        self.feedback = NullFeedback()
        self.audio = NullAudioCapture()
        self.responder = HelperResponseService(self.alert_store, self.helper_store)

    def coordinator(self, requester: Requester = REQUESTER) -> DispatchCoordinator:
        return DispatchCoordinator(
            requester,
            alert_store=self.alert_store,
            contact_store=self.contact_store,
            helper_store=self.helper_store,
            dispatcher=self.dispatcher,
            location_provider=self.location,
            feedback=self.feedback,
            audio_capture=self.audio,
            settings=self.settings,
        )


class _BrokenSiren(NullFeedback):
    async def start(self) -> None:
        raise RuntimeError("siren driver unavailable")


async def _wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def _drain(stream) -> List[CoordinatorEvent]:
    return [event async for event in stream]


# ═══════════════════════════════════════════════════════════════════════════
# Trigger
# ═══════════════════════════════════════════════════════════════════════════

class TestTrigger:
    def test_happy_path(self):
        async def run():
            h = _Harness()
            c = h.coordinator()
            alert = await c.trigger(DELHI, AlertType.MEDICAL, "chest pain")
            result = await c.fanout_task
            await _wait_for(lambda: c.nearby_helpers)
            stored = await h.alert_store.get(alert.id)
            state = c.state
            await c.teardown()
            return h, c, alert, result, stored, state

        h, c, alert, result, stored, state = asyncio.run(run())
        assert state == CoordinatorState.ACTIVE
        assert alert.status == AlertStatus.ACTIVE
        assert stored.status == AlertStatus.ACTIVE
        assert stored.alert_type == AlertType.MEDICAL
        assert result.attempted == 3
        assert result.succeeded == 3
        assert c.fanout_result is result
        assert [n.helper.id for n in c.nearby_helpers] == ["HLP-1"]
        assert h.feedback.started == 1

    def test_event_sequence(self):
        async def run():
            h = _Harness()
            c = h.coordinator()
            stream = c.events()
            await c.trigger(DELHI)
            await c.fanout_task
            await c.resolve()
            return await asyncio.wait_for(_drain(stream), 1.0)

        events = asyncio.run(run())
        states = [e.state for e in events if e.kind == EventKind.STATE]
        assert states == [
            CoordinatorState.TRIGGERING,
            CoordinatorState.ACTIVE,
            CoordinatorState.RESOLVED,
        ]
        assert events[-1].kind == EventKind.STATE
        assert any(e.kind == EventKind.FANOUT for e in events)

    def test_create_failure_leaves_nothing(self):
        async def run():
            h = _Harness()
            h.alert_store.fail_create = True
            c = h.coordinator()
            stream = c.events()
            with pytest.raises(TransportError):
                await c.trigger(DELHI)
            return h, c, await asyncio.wait_for(_drain(stream), 1.0)

        h, c, events = asyncio.run(run())
        assert c.state == CoordinatorState.ERROR
        assert c.alert is None
        assert c.fanout_task is None
        assert c.is_finished
        assert h.transport.sent == []
        assert h.feedback.started == 0
        assert [e.kind for e in events][-2:] == [EventKind.ERROR, EventKind.STATE]

    def test_failure_after_creation_ends_session(self):
        async def run():
            h = _Harness()
            h.feedback = _BrokenSiren()
            c = h.coordinator()
            stream = c.events()
            with pytest.raises(RuntimeError):
                await c.trigger(DELHI)
            result = await c.fanout_task
            stored = await h.alert_store.get(c.alert.id)
            return c, result, stored, await asyncio.wait_for(_drain(stream), 1.0)

        c, result, stored, events = asyncio.run(run())
        assert c.state == CoordinatorState.ERROR
        assert c.is_finished
        assert c._tasks == set()
        # contacts were already being told; the alert stays open
        assert result.succeeded == 3
        assert stored.status == AlertStatus.ACTIVE
        assert [e.kind for e in events][-2:] == [EventKind.ERROR, EventKind.STATE]

    def test_duplicate_active_alert(self):
        async def run():
            h = _Harness()
            existing = await h.alert_store.create(Alert(
                requester_id=REQUESTER.id, requester_name="", requester_phone="", location=DELHI,
            ))
            c = h.coordinator()
            with pytest.raises(DuplicateActiveAlert) as exc_info:
                await c.trigger(DELHI)
            return c, existing, exc_info.value

        c, existing, err = asyncio.run(run())
        assert err.details["alert_id"] == existing.id
        assert c.state == CoordinatorState.ERROR

    def test_trigger_only_from_idle(self):
        async def run():
            c = _Harness().coordinator()
            await c.trigger(DELHI)
            try:
                with pytest.raises(ValidationError) as exc_info:
                    await c.trigger(DELHI)
            finally:
                await c.teardown()
            return exc_info.value

        assert asyncio.run(run()).error_code == "SESSION_NOT_IDLE"

    def test_activation_failure_still_notifies_contacts(self):
        async def run():
            h = _Harness()
            c = h.coordinator()
            original_update = h.alert_store.update
            calls = []

            async def flaky_update(alert_id, patch):
                calls.append(patch)
                if len(calls) == 1:
                    raise TransportError("alert_store", "timeout")
                return await original_update(alert_id, patch)

            h.alert_store.update = flaky_update
            alert = await c.trigger(DELHI)
            result = await c.fanout_task
            await c.teardown()
            return c, alert, result

        c, alert, result = asyncio.run(run())
        assert alert.status == AlertStatus.PENDING
        assert result.succeeded == 3

    def test_contacts_only_skips_helper_lookup(self):
        async def run():
            h = _Harness()
            c = h.coordinator()
            await c.trigger(DELHI, contacts_only=True)
            await c.fanout_task
            await asyncio.sleep(0.05)
            await c.teardown()
            return h, c

        h, c = asyncio.run(run())
        assert h.helper_store.box_queries == []
        assert c.nearby_helpers == []
        assert c.fanout_result.succeeded == 3

    def test_silent_mode(self):
        async def run():
            h = _Harness()
            c = h.coordinator()
            await c.trigger(DELHI, silent=True)
            await c.teardown()
            return h

        assert asyncio.run(run()).feedback.started == 0


# ═══════════════════════════════════════════════════════════════════════════
# Timers
# ═══════════════════════════════════════════════════════════════════════════

class TestTimers:
    def test_feedback_auto_silences(self):
        async def run():
            h = _Harness(ALERT_FEEDBACK_SECONDS=0.05)
            c = h.coordinator()
            await c.trigger(DELHI)
            running_at_start = h.feedback.running
            await _wait_for(lambda: not h.feedback.running)
            state = c.state
            await c.teardown()
            return h, running_at_start, state

        h, running_at_start, state = asyncio.run(run())
        assert running_at_start
        assert h.feedback.stopped == 1
        # silencing the siren does not end the alert
        assert state == CoordinatorState.ACTIVE

    def test_audio_capture_capped(self):
        async def run():
            h = _Harness(MAX_AUDIO_CAPTURE_SECONDS=0.05)
            c = h.coordinator()
            alert = await c.trigger(DELHI, record_audio=True)
            recording_at_start = h.audio.recording
            await _wait_for(lambda: not h.audio.recording)
            await c.teardown()
            return h, alert, recording_at_start

        h, alert, recording_at_start = asyncio.run(run())
        assert recording_at_start
        assert h.audio.sessions == [alert.id]
        assert h.audio.max_seconds == 0.05

    def test_location_pushed_to_store(self):
        moved = Location(28.6200, 77.2150)

        async def run():
            h = _Harness(LOCATION_PUSH_INTERVAL_SECONDS=0.02, track=[moved])
            c = h.coordinator()
            alert = await c.trigger(DELHI)

            async def stored_location():
                return (await h.alert_store.get(alert.id)).location

            for _ in range(100):
                if await stored_location() == moved:
                    break
                await asyncio.sleep(0.01)
            location = await stored_location()
            await c.teardown()
            return location

        assert asyncio.run(run()) == moved


# ═══════════════════════════════════════════════════════════════════════════
# Remote sync
# ═══════════════════════════════════════════════════════════════════════════

class TestRemoteSync:
    def test_remote_resolution_tears_down(self):
        async def run():
            h = _Harness()
            c = h.coordinator()
            alert = await c.trigger(DELHI, record_audio=True)
            await h.alert_store.update(alert.id, {"status": AlertStatus.RESOLVED})
            await _wait_for(lambda: c.is_finished)
            return h, c

        h, c = asyncio.run(run())
        assert c.state == CoordinatorState.RESOLVED
        assert c.alert.status == AlertStatus.RESOLVED
        assert not h.feedback.running
        assert not h.audio.recording
        assert h.alert_store.listener_count(c.alert.id) == 0

    def test_remote_false_alarm_maps_to_cancelled(self):
        async def run():
            h = _Harness()
            c = h.coordinator()
            alert = await c.trigger(DELHI)
            await h.alert_store.update(alert.id, {"status": AlertStatus.FALSE_ALARM})
            await _wait_for(lambda: c.is_finished)
            return c

        assert asyncio.run(run()).state == CoordinatorState.CANCELLED

    def test_helper_progress_reaches_session(self):
        async def run():
            h = _Harness()
            c = h.coordinator()
            alert = await c.trigger(DELHI)
            response = await h.responder.respond("HLP-1", alert.id)
            await _wait_for(lambda: c.alert.status == AlertStatus.HELP_ON_WAY and c.responses)
            await h.responder.mark_arrived(response.id)
            await _wait_for(lambda: c.alert.status == AlertStatus.RESPONDED)
            responses = list(c.responses)
            await c.resolve()
            return c, response, responses

        c, response, responses = asyncio.run(run())
        assert [r.id for r in responses] == [response.id]
        assert c.state == CoordinatorState.RESOLVED

    def test_lost_sync_and_resubscribe(self):
        async def run():
            h = _Harness()
            c = h.coordinator()
            stream = c.events()
            alert = await c.trigger(DELHI)
            h.alert_store.emit_error(alert.id, ConnectionError("socket reset"))
            await _wait_for(lambda: c.sync_lost)
            assert c.state == CoordinatorState.ACTIVE

            await c.resubscribe()
            listeners = h.alert_store.listener_count(alert.id)
            await c.cancel()
            events = await asyncio.wait_for(_drain(stream), 1.0)
            return c, listeners, events

        c, listeners, events = asyncio.run(run())
        assert not c.sync_lost
        assert listeners == 2
        assert any(e.kind == EventKind.ERROR and "socket reset" in e.error for e in events)


# ═══════════════════════════════════════════════════════════════════════════
# Requester actions
# ═══════════════════════════════════════════════════════════════════════════

class TestRequesterActions:
    @pytest.mark.parametrize("action,status,state", [
        ("cancel", AlertStatus.CANCELLED, CoordinatorState.CANCELLED),
        ("resolve", AlertStatus.RESOLVED, CoordinatorState.RESOLVED),
        ("mark_false_alarm", AlertStatus.FALSE_ALARM, CoordinatorState.CANCELLED),
    ])
    def test_finishing_actions(self, action, status, state):
        async def run():
            h = _Harness()
            c = h.coordinator()
            alert = await c.trigger(DELHI)
            await getattr(c, action)()
            return c, await h.alert_store.get(alert.id)

        c, stored = asyncio.run(run())
        assert stored.status == status
        assert stored.resolved_at is not None
        assert c.state == state
        assert c.is_finished

    def test_cancel_after_remote_close_adopts_remote(self):
        async def run():
            h = _Harness()
            c = h.coordinator()
            alert = await c.trigger(DELHI)
            # remote resolves; the session has not processed the snapshot yet
            await h.alert_store.update(alert.id, {"status": AlertStatus.RESOLVED})
            with pytest.raises(InvalidTransition):
                await c.cancel()
            return c

        c = asyncio.run(run())
        assert c.alert.status == AlertStatus.RESOLVED
        assert c.state == CoordinatorState.RESOLVED

    def test_remote_close_race_is_logged(self, caplog):
        async def run():
            h = _Harness()
            c = h.coordinator()
            alert = await c.trigger(DELHI)
            await h.alert_store.update(alert.id, {"status": AlertStatus.CANCELLED})
            with pytest.raises(InvalidTransition):
                await c.resolve()
            return alert

        with caplog.at_level(logging.INFO, logger="backend.app.alerts.coordinator"):
            alert = asyncio.run(run())
        assert any(
            "already closed remotely" in r.getMessage() and alert.id in r.getMessage()
            for r in caplog.records
        )

    def test_action_before_trigger(self):
        with pytest.raises(ValidationError):
            asyncio.run(_Harness().coordinator().cancel())

    def test_manual_location_update(self):
        moved = Location(28.63, 77.22, address="Gate 2")

        async def run():
            h = _Harness()
            c = h.coordinator()
            alert = await c.trigger(DELHI)
            await c.update_location(moved)
            stored = await h.alert_store.get(alert.id)
            await c.teardown()
            return stored

        assert asyncio.run(run()).location == moved


# ═══════════════════════════════════════════════════════════════════════════
# Teardown
# ═══════════════════════════════════════════════════════════════════════════

class TestTeardown:
    def test_idempotent(self):
        async def run():
            h = _Harness()
            c = h.coordinator()
            released = []
            c.add_teardown_callback(released.append)
            await c.trigger(DELHI, record_audio=True)
            await asyncio.gather(c.teardown(), c.teardown())
            await c.teardown(CoordinatorState.RESOLVED)
            return h, c, released

        h, c, released = asyncio.run(run())
        # one alert listener and one response listener, each removed once
        assert h.alert_store.removed_listeners == 2
        assert h.feedback.stopped == 1
        assert released == [c]
        assert c.state == CoordinatorState.CANCELLED

    def test_fanout_survives_teardown(self):
        async def run():
            h = _Harness(transport=SimulatedSmsTransport(delay_seconds=0.2))
            c = h.coordinator()
            await c.trigger(DELHI)
            await c.cancel()
            assert not c.fanout_task.done()
            return c, await c.fanout_task

        c, result = asyncio.run(run())
        assert result.succeeded == 3
        assert c.fanout_result is result

    def test_events_after_teardown_end_immediately(self):
        async def run():
            c = _Harness().coordinator()
            await c.trigger(DELHI)
            await c.teardown()
            return await asyncio.wait_for(_drain(c.events()), 1.0)

        assert asyncio.run(run()) == []


# ═══════════════════════════════════════════════════════════════════════════
# Session registry
# ═══════════════════════════════════════════════════════════════════════════

class TestSessionRegistry:
    def test_second_start_rejected(self):
        async def run():
            h = _Harness()
            registry = SessionRegistry(h.coordinator)
            first = await registry.start(REQUESTER, DELHI)
            with pytest.raises(DuplicateActiveAlert):
                await registry.start(REQUESTER, DELHI)
            await registry.shutdown()
            return first

        assert asyncio.run(run()).is_finished

    def test_concurrent_starts(self):
        async def run():
            h = _Harness()
            registry = SessionRegistry(h.coordinator)
            results = await asyncio.gather(
                registry.start(REQUESTER, DELHI),
                registry.start(REQUESTER, DELHI),
                return_exceptions=True,
            )
            await registry.shutdown()
            return results

        results = asyncio.run(run())
        assert sum(isinstance(r, DispatchCoordinator) for r in results) == 1
        assert sum(isinstance(r, DuplicateActiveAlert) for r in results) == 1

    def test_finished_session_released(self):
        async def run():
            h = _Harness()
            registry = SessionRegistry(h.coordinator)
            first = await registry.start(REQUESTER, DELHI)
            await first.cancel()
            assert registry.get(REQUESTER.id) is None
            second = await registry.start(REQUESTER, DELHI)
            await registry.shutdown()
            return first, second

        first, second = asyncio.run(run())
        assert first.alert.id != second.alert.id

    def test_failed_trigger_not_registered(self):
        async def run():
            h = _Harness()
            h.alert_store.fail_create = True
            registry = SessionRegistry(h.coordinator)
            with pytest.raises(TransportError):
                await registry.start(REQUESTER, DELHI)
            return registry

        registry = asyncio.run(run())
        assert registry.get(REQUESTER.id) is None
        assert registry.active_sessions() == []

    def test_failure_after_creation_releases_session(self):
        async def run():
            h = _Harness()
            h.feedback = _BrokenSiren()
            registry = SessionRegistry(h.coordinator)
            with pytest.raises(RuntimeError):
                await registry.start(REQUESTER, DELHI)
            return registry

        registry = asyncio.run(run())
        assert registry.get(REQUESTER.id) is None
        assert registry.active_sessions() == []

    def test_shutdown_leaves_alerts_open(self):
        async def run():
            h = _Harness()
            registry = SessionRegistry(h.coordinator)
            session = await registry.start(REQUESTER, DELHI)
            await registry.shutdown()
            return session, await h.alert_store.get(session.alert.id), registry

        session, stored, registry = asyncio.run(run())
        assert session.is_finished
        assert stored.status == AlertStatus.ACTIVE
        assert registry.active_sessions() == []
