"""
test_lifecycle.py — Alert and helper-response state machines.

Covers:
    • Actor permissions on each alert transition
    • Terminal statuses are absorbing
    • Remote snapshots may skip forward, never backward
    • Helper response machine and the one-live-response rule

Run with:
    pytest tests/test_lifecycle.py -v
"""

from __future__ import annotations

import pytest

from backend.app.alerts.lifecycle import (
    Actor,
    can_transition,
    can_transition_response,
    ensure_no_active_response,
    reconcile,
    validate_response_transition,
    validate_transition,
)
from backend.app.alerts.models import (
    Alert,
    AlertStatus,
    HelperResponse,
    Location,
    ResponseStatus,
    TERMINAL_ALERT_STATUSES,
)
from backend.app.core.errors import InvalidTransition, ResponseConflict


def _make_alert(status: AlertStatus = AlertStatus.ACTIVE, updated_at: int = 1000) -> Alert:
    return Alert(
        requester_id="U-1",
        requester_name="Asha",
        requester_phone="+919810000001",
        location=Location(28.6139, 77.2090),
        status=status,
        id="SOS-TEST",
        created_at=900,
        updated_at=updated_at,
    )


class TestAlertTransitions:
    """Actor checks on single moves."""

    def test_system_activates_pending(self):
        assert can_transition(AlertStatus.PENDING, Actor.SYSTEM, AlertStatus.ACTIVE)

    def test_requester_cannot_activate(self):
        assert not can_transition(AlertStatus.PENDING, Actor.REQUESTER, AlertStatus.ACTIVE)

    def test_helper_moves_active_to_help_on_way(self):
        assert can_transition(AlertStatus.ACTIVE, Actor.HELPER, AlertStatus.HELP_ON_WAY)

    def test_helper_moves_help_on_way_to_responded(self):
        assert can_transition(AlertStatus.HELP_ON_WAY, Actor.HELPER, AlertStatus.RESPONDED)

    def test_helper_cannot_skip_to_responded(self):
        assert not can_transition(AlertStatus.ACTIVE, Actor.HELPER, AlertStatus.RESPONDED)

    @pytest.mark.parametrize("actor", [Actor.HELPER, Actor.SYSTEM])
    def test_only_requester_resolves(self, actor):
        assert can_transition(AlertStatus.ACTIVE, Actor.REQUESTER, AlertStatus.RESOLVED)
        assert not can_transition(AlertStatus.ACTIVE, actor, AlertStatus.RESOLVED)

    @pytest.mark.parametrize("current", [
        AlertStatus.PENDING, AlertStatus.ACTIVE,
        AlertStatus.HELP_ON_WAY, AlertStatus.RESPONDED,
    ])
    def test_requester_cancels_any_live_alert(self, current):
        assert can_transition(current, Actor.REQUESTER, AlertStatus.CANCELLED)

    def test_helper_cannot_cancel_alert(self):
        assert not can_transition(AlertStatus.HELP_ON_WAY, Actor.HELPER, AlertStatus.CANCELLED)

    def test_false_alarm_by_requester_or_system(self):
        assert can_transition(AlertStatus.ACTIVE, Actor.REQUESTER, AlertStatus.FALSE_ALARM)
        assert can_transition(AlertStatus.ACTIVE, Actor.SYSTEM, AlertStatus.FALSE_ALARM)
        assert not can_transition(AlertStatus.ACTIVE, Actor.HELPER, AlertStatus.FALSE_ALARM)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_ALERT_STATUSES, key=lambda s: s.value))
    @pytest.mark.parametrize("actor", list(Actor))
    def test_terminal_statuses_are_absorbing(self, terminal, actor):
        for target in AlertStatus:
            assert not can_transition(terminal, actor, target)

    def test_same_status_is_not_a_transition(self):
        assert not can_transition(AlertStatus.ACTIVE, Actor.AUTHORITY, AlertStatus.ACTIVE)

    def test_validate_raises_with_details(self):
        with pytest.raises(InvalidTransition) as exc_info:
            validate_transition(AlertStatus.RESOLVED, Actor.REQUESTER, AlertStatus.CANCELLED)
        assert exc_info.value.status_code == 409
        assert exc_info.value.details["current"] == "resolved"
        assert exc_info.value.details["target"] == "cancelled"


class TestAuthorityTransitions:
    """Remote snapshots are not delta-complete."""

    def test_skip_forward(self):
        assert can_transition(AlertStatus.PENDING, Actor.AUTHORITY, AlertStatus.RESPONDED)

    def test_no_backwards(self):
        assert not can_transition(AlertStatus.RESPONDED, Actor.AUTHORITY, AlertStatus.ACTIVE)

    @pytest.mark.parametrize("target", sorted(TERMINAL_ALERT_STATUSES, key=lambda s: s.value))
    def test_any_terminal(self, target):
        assert can_transition(AlertStatus.PENDING, Actor.AUTHORITY, target)


class TestReconcile:
    def test_accepts_forward_snapshot(self):
        current = _make_alert(AlertStatus.ACTIVE)
        incoming = _make_alert(AlertStatus.RESPONDED, updated_at=2000)
        assert reconcile(current, incoming) is incoming

    def test_accepts_content_refresh(self):
        current = _make_alert(AlertStatus.ACTIVE)
        incoming = _make_alert(AlertStatus.ACTIVE, updated_at=2000)
        assert reconcile(current, incoming) is incoming

    def test_keeps_current_on_backwards_snapshot(self):
        current = _make_alert(AlertStatus.HELP_ON_WAY)
        incoming = _make_alert(AlertStatus.ACTIVE, updated_at=2000)
        assert reconcile(current, incoming) is current

    def test_keeps_terminal(self):
        current = _make_alert(AlertStatus.RESOLVED)
        incoming = _make_alert(AlertStatus.ACTIVE, updated_at=2000)
        assert reconcile(current, incoming) is current


class TestResponseTransitions:
    def test_happy_path(self):
        assert can_transition_response(ResponseStatus.RESPONDING, ResponseStatus.ARRIVED)
        assert can_transition_response(ResponseStatus.ARRIVED, ResponseStatus.COMPLETED)

    def test_cancel_before_completion(self):
        assert can_transition_response(ResponseStatus.RESPONDING, ResponseStatus.CANCELLED)
        assert can_transition_response(ResponseStatus.ARRIVED, ResponseStatus.CANCELLED)

    def test_cannot_complete_without_arriving(self):
        assert not can_transition_response(ResponseStatus.RESPONDING, ResponseStatus.COMPLETED)

    @pytest.mark.parametrize("terminal", [ResponseStatus.COMPLETED, ResponseStatus.CANCELLED])
    def test_terminal_responses_absorbing(self, terminal):
        with pytest.raises(InvalidTransition):
            validate_response_transition(terminal, ResponseStatus.ARRIVED)


class TestOneLiveResponse:
    def test_conflict_on_other_alert(self):
        existing = [HelperResponse(alert_id="SOS-X", helper_id="HLP-1")]
        with pytest.raises(ResponseConflict) as exc_info:
            ensure_no_active_response("HLP-1", "SOS-Y", existing)
        assert exc_info.value.status_code == 409
        assert exc_info.value.details["active_alert_id"] == "SOS-X"
        assert exc_info.value.details["requested_alert_id"] == "SOS-Y"

    def test_conflict_on_same_alert(self):
        existing = [HelperResponse(alert_id="SOS-X", helper_id="HLP-1")]
        with pytest.raises(ResponseConflict):
            ensure_no_active_response("HLP-1", "SOS-X", existing)

    def test_finished_responses_do_not_block(self):
        existing = [
            HelperResponse(alert_id="SOS-X", helper_id="HLP-1", status=ResponseStatus.COMPLETED),
            HelperResponse(alert_id="SOS-Z", helper_id="HLP-1", status=ResponseStatus.CANCELLED),
        ]
        ensure_no_active_response("HLP-1", "SOS-Y", existing)

    def test_other_helpers_ignored(self):
        existing = [HelperResponse(alert_id="SOS-X", helper_id="HLP-2")]
        ensure_no_active_response("HLP-1", "SOS-Y", existing)
