"""
lifecycle.py — Alert and helper-response state machines.

═══════════════════════════════════════════════════════════════════════════
ALERT TRANSITIONS
═══════════════════════════════════════════════════════════════════════════

    From            To             Allowed actor(s)
    ──────────      ──────────     ───────────────────────────────
    PENDING         ACTIVE         SYSTEM (dispatch started)
    ACTIVE          HELP_ON_WAY    HELPER (response created)
    HELP_ON_WAY     RESPONDED      HELPER (helper arrived)
    non-terminal    CANCELLED      REQUESTER
    non-terminal    RESOLVED       REQUESTER
    non-terminal    FALSE_ALARM    REQUESTER, SYSTEM
    any forward     any forward    AUTHORITY (remote snapshot)
    terminal        anything       nobody

AUTHORITY is the remote store. Its snapshots are not guaranteed to be
delta-complete, so it may skip intermediate happy-path states, but it may
never move an alert backwards or out of a terminal status.

═══════════════════════════════════════════════════════════════════════════
RESPONSE TRANSITIONS
═══════════════════════════════════════════════════════════════════════════

    RESPONDING → ARRIVED → COMPLETED
    RESPONDING | ARRIVED → CANCELLED

A helper holds at most one non-terminal response across all alerts.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable

from backend.app.alerts.models import (
    Alert,
    AlertStatus,
    HelperResponse,
    ResponseStatus,
)
from backend.app.core.errors import InvalidTransition, ResponseConflict

logger = logging.getLogger(__name__)


class Actor(str, Enum):
    """Who is asking for a transition."""
    REQUESTER = "requester"
    HELPER    = "helper"
    AUTHORITY = "authority"
    SYSTEM    = "system"


# Happy-path order; terminal statuses other than RESOLVED are off-path
_HAPPY_PATH = (
    AlertStatus.PENDING,
    AlertStatus.ACTIVE,
    AlertStatus.HELP_ON_WAY,
    AlertStatus.RESPONDED,
    AlertStatus.RESOLVED,
)
_RANK = {status: i for i, status in enumerate(_HAPPY_PATH)}

_REQUESTER_ONLY = frozenset({AlertStatus.CANCELLED, AlertStatus.RESOLVED})

_FIXED_STEPS = {
    (AlertStatus.PENDING, AlertStatus.ACTIVE): frozenset({Actor.SYSTEM}),
    (AlertStatus.ACTIVE, AlertStatus.HELP_ON_WAY): frozenset({Actor.HELPER}),
    (AlertStatus.HELP_ON_WAY, AlertStatus.RESPONDED): frozenset({Actor.HELPER}),
}

_RESPONSE_STEPS = {
    ResponseStatus.RESPONDING: frozenset({ResponseStatus.ARRIVED, ResponseStatus.CANCELLED}),
    ResponseStatus.ARRIVED: frozenset({ResponseStatus.COMPLETED, ResponseStatus.CANCELLED}),
    ResponseStatus.CANCELLED: frozenset(),
    ResponseStatus.COMPLETED: frozenset(),
}


# ═══════════════════════════════════════════════════════════════════════════
# Alert machine
# ═══════════════════════════════════════════════════════════════════════════

def can_transition(current: AlertStatus, requested_by: Actor, target: AlertStatus) -> bool:
    """Whether ``requested_by`` may move an alert from ``current`` to ``target``."""
    if current.is_terminal or current == target:
        return False

    if requested_by == Actor.AUTHORITY:
        if target.is_terminal:
            return True
        return _RANK[target] > _RANK[current]

    if target in _REQUESTER_ONLY:
        return requested_by == Actor.REQUESTER
    if target == AlertStatus.FALSE_ALARM:
        return requested_by in (Actor.REQUESTER, Actor.SYSTEM)

    return requested_by in _FIXED_STEPS.get((current, target), frozenset())


def validate_transition(current: AlertStatus, requested_by: Actor, target: AlertStatus) -> None:
    """Raise InvalidTransition unless the move is legal."""
    if not can_transition(current, requested_by, target):
        raise InvalidTransition(current.value, target.value, actor=requested_by.value)


def reconcile(current: Alert, incoming: Alert) -> Alert:
    """
    Decide which snapshot of an alert to keep.

    The remote store is authoritative, but its snapshots are still checked:
    a status it reports is accepted only when the store itself could
    legally have produced it from the status we hold. Content refreshes
    that keep the status are always accepted. Never raises.
    """
    if incoming.status == current.status:
        return incoming
    if can_transition(current.status, Actor.AUTHORITY, incoming.status):
        return incoming

    logger.warning(
        "Ignoring illegal remote transition %s -> %s",
        current.status.value, incoming.status.value,
        extra={"alert_id": current.id, "status": incoming.status.value},
    )
    return current


# ═══════════════════════════════════════════════════════════════════════════
# Helper-response machine
# ═══════════════════════════════════════════════════════════════════════════

def can_transition_response(current: ResponseStatus, target: ResponseStatus) -> bool:
    return target in _RESPONSE_STEPS[current]


def validate_response_transition(current: ResponseStatus, target: ResponseStatus) -> None:
    if not can_transition_response(current, target):
        raise InvalidTransition(current.value, target.value, actor=Actor.HELPER.value)


def ensure_no_active_response(
    helper_id: str,
    alert_id: str,
    existing: Iterable[HelperResponse],
) -> None:
    """
    Raise ResponseConflict if ``helper_id`` already holds a live response.

    Applies to the same alert too: a second commitment to one alert is a
    duplicate, not a refresh.
    """
    for response in existing:
        if response.helper_id == helper_id and response.is_active:
            raise ResponseConflict(helper_id, response.alert_id, alert_id)
