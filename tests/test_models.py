"""
test_models.py — Shared data structures.

Covers:
    • Coordinate range checks on Location
    • Alert type parsing and terminal statuses
    • Alert document decoding as stored by the Redis backend
    • Helper success rate and fan-out outcome rules

Run with:
    pytest tests/test_models.py -v
"""

from __future__ import annotations

import pytest

from backend.app.alerts.models import (
    Alert,
    AlertStatus,
    AlertType,
    EmergencyContact,
    FanoutFailure,
    FanoutResult,
    HelperProfile,
    HelperStatus,
    Location,
)
from backend.app.core.errors import InvalidCoordinate


def _make_alert(**overrides) -> Alert:
    fields = dict(
        requester_id="U-1",
        requester_name="Asha",
        requester_phone="+919810000001",
        location=Location(28.6139, 77.2090, address="Connaught Place"),
    )
    fields.update(overrides)
    return Alert(**fields)


class TestLocation:
    @pytest.mark.parametrize("lat,lon,field", [
        (90.5, 77.0, "latitude"),
        (-91.0, 77.0, "latitude"),
        (28.6, 180.01, "longitude"),
    ])
    def test_out_of_range(self, lat, lon, field):
        with pytest.raises(InvalidCoordinate) as exc_info:
            Location(lat, lon)
        assert exc_info.value.error_code == "INVALID_COORDINATE"
        assert exc_info.value.details["field"] == field

    def test_edges_are_valid(self):
        Location(90.0, 180.0)
        Location(-90.0, -180.0)

    def test_display_address(self):
        assert Location(28.6139, 77.209).display_address == "28.613900, 77.209000"
        assert Location(28.6139, 77.209, address="Gate 2").display_address == "Gate 2"


class TestAlertStatus:
    def test_parse_is_lenient(self):
        assert AlertType.parse("MEDICAL") is AlertType.MEDICAL
        assert AlertType.parse("fire") is AlertType.EMERGENCY

    def test_terminal(self):
        terminal = {s for s in AlertStatus if s.is_terminal}
        assert terminal == {AlertStatus.RESOLVED, AlertStatus.CANCELLED, AlertStatus.FALSE_ALARM}
        assert _make_alert(status=AlertStatus.HELP_ON_WAY).is_active

    def test_decode_stored_document(self):
        stored = _make_alert(status=AlertStatus.ACTIVE, alert_type=AlertType.ACCIDENT).to_dict()
        decoded = Alert.from_dict(stored)
        assert decoded.id.startswith("SOS-")
        assert decoded.status is AlertStatus.ACTIVE
        assert decoded.alert_type is AlertType.ACCIDENT
        assert decoded.location.address == "Connaught Place"

    def test_duration_uses_resolution_time(self):
        alert = _make_alert(created_at=0, resolved_at=5 * 60_000 + 59_000)
        assert alert.duration_minutes == 5


class TestHelperProfile:
    def test_success_rate(self):
        assert HelperProfile(user_id="U-H").success_rate == 0.0
        helper = HelperProfile(user_id="U-H", total_responses=4, successful_responses=3)
        assert helper.success_rate == 75.0

    def test_available_needs_location(self):
        helper = HelperProfile(user_id="U-H", status=HelperStatus.AVAILABLE)
        assert not helper.is_available


class TestFanoutResult:
    def _failure(self) -> FanoutFailure:
        return FanoutFailure(EmergencyContact(owner_id="U-1", name="Mum", phone="+91980"), "timeout")

    def test_partial(self):
        result = FanoutResult("SOS-1", attempted=3, succeeded=2, failed=[self._failure()])
        err = result.partial_failure()
        assert err is not None
        assert err.details == {"alert_id": "SOS-1", "attempted": 3, "failed": 1}
        assert not result.all_failed

    def test_all_failed_is_not_partial(self):
        result = FanoutResult("SOS-1", attempted=1, succeeded=0, failed=[self._failure()])
        assert result.partial_failure() is None
        assert result.all_failed

    def test_nothing_to_send(self):
        assert not FanoutResult("SOS-1").all_failed
